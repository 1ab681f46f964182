"""Command-line access to initialization and connection-string helpers."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from .config import EnvironmentConfigProvider, load_config
from .connstring import (
    ConnectionParameterError,
    InvalidConnectionStringError,
    build_connection_string,
    generate_connection_string_with_fallback,
    parse_connection_string,
)
from .credentials import CredentialResolver
from .initialization import InitializationStepError, initialize_databases_on_startup

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="studiodb", description=__doc__)
    parser.add_argument("--log-level", default="WARNING", choices=LOG_LEVELS, help="Logging verbosity")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init", help="Create the system, template and bookkeeping databases")

    conn = commands.add_parser("connection-string", help="Print the connection string for a database")
    conn.add_argument("database", help="Database name")
    conn.add_argument("--project-ref", help="Project reference recorded when fallback credentials are used")
    conn.add_argument("--user", help="Project database user")
    conn.add_argument("--password", help="Project database password")
    conn.add_argument("--read-only", action="store_true", help="Use the read-only administrative role")
    conn.add_argument("--reveal", action="store_true", help="Print the real password instead of masking it")

    parse = commands.add_parser("parse", help="Parse a connection string and print its parts")
    parse.add_argument("uri", help="postgresql:// connection string")
    parse.add_argument("--no-validate", action="store_true", help="Skip format validation")
    return parser.parse_args(argv)


def run_init() -> int:
    settings = load_config().initialization
    try:
        report = asyncio.run(initialize_databases_on_startup(settings=settings))
    except InitializationStepError as exc:
        print(f"Initialization failed at step '{exc.step}': {exc}", file=sys.stderr)
        return 1
    for step in report.steps:
        suffix = f" ({step.detail})" if step.detail else ""
        print(f"{step.name}: {step.outcome}{suffix}")
    return 0


def run_connection_string(args: argparse.Namespace) -> int:
    resolver = CredentialResolver(EnvironmentConfigProvider())
    try:
        result = asyncio.run(
            generate_connection_string_with_fallback(
                resolver,
                database_name=args.database,
                project_ref=args.project_ref,
                read_only=args.read_only,
                user=args.user,
                password=args.password,
                mask_password=not args.reveal,
            )
        )
    except ConnectionParameterError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    print(result.connection_string)
    if result.used_fallback:
        print(f"Fallback credentials used: {result.fallback_reason}", file=sys.stderr)
    return 0


def run_parse(args: argparse.Namespace) -> int:
    try:
        target = parse_connection_string(args.uri, validate_format=not args.no_validate)
    except InvalidConnectionStringError as exc:
        for error in exc.errors:
            print(error, file=sys.stderr)
        return 1
    print(f"host: {target.host}")
    print(f"port: {target.port}")
    print(f"user: {target.user}")
    print(f"database: {target.database_name}")
    print(f"password: {'masked' if target.is_masked else 'set' if target.password else 'missing'}")
    if target.user and target.host and target.database_name:
        print(f"masked: {build_connection_string(target, mask=True)}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.command == "init":
        return run_init()
    if args.command == "connection-string":
        return run_connection_string(args)
    return run_parse(args)


if __name__ == "__main__":
    raise SystemExit(main())
