"""
CLI entry point for Barvaz DNS.

This module provides the command-line interface for running the service
and for sending control requests to a running service.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import timedelta
from pathlib import Path

from barvaz_dns import __version__
from barvaz_dns.client import ControlClient, ControlClientError
from barvaz_dns.config import (
    Config,
    ConfigValidationError,
    RuntimeSettings,
    dump_config,
    load_settings,
    parse_duration,
)
from barvaz_dns.runtime import ExitCode, SignalLifecycleManager, run_service


def _duration(value: str) -> timedelta:
    """Argparse type for human-readable durations."""
    try:
        return parse_duration(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def parse_args(args: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Parameters
    ----------
    args : list[str] | None, optional
        Command-line arguments. If None, uses sys.argv.

    Returns
    -------
    argparse.Namespace
        Parsed arguments.
    """
    parser = argparse.ArgumentParser(
        prog="barvaz-dns",
        description="Barvaz DNS - A DuckDNS dynamic DNS updater",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    # Settings arguments
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Directory holding the configuration and log files",
    )
    parser.add_argument(
        "--socket",
        type=Path,
        dest="control_socket",
        default=None,
        help="Path of the control socket (default: <config dir>/control.sock)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    commands = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    # Service
    service = commands.add_parser("service", help="Run the service")
    service_commands = service.add_subparsers(dest="service_command", required=True)
    run = service_commands.add_parser("run", help="Run the service in the foreground")
    log_file_group = run.add_mutually_exclusive_group()
    log_file_group.add_argument(
        "--log-file-enabled",
        action="store_true",
        dest="log_file_enabled",
        default=None,
        help="Log to a file in the configuration directory",
    )
    log_file_group.add_argument(
        "--log-file-disabled",
        action="store_false",
        dest="log_file_enabled",
        default=None,
        help="Log to the console only",
    )

    # Control requests
    interval = commands.add_parser("interval", help="Set the minimum time between updates")
    interval.add_argument("interval", type=_duration, help='Duration, e.g. "10m" or "1d 2h"')

    token = commands.add_parser("token", help="Set the DuckDNS token")
    token.add_argument("token", help="DuckDNS account token")

    domain = commands.add_parser("domain", help="Add or remove a domain")
    domain.add_argument("action", choices=["add", "remove"])
    domain.add_argument("domain", help='DuckDNS subdomain, without ".duckdns.org"')

    ipv6 = commands.add_parser("ipv6", help="Enable or disable IPv6 updates")
    ipv6.add_argument("action", choices=["enable", "disable"])

    commands.add_parser("update", help="Reload the configuration file and update now")

    log_level = commands.add_parser("log-level", help="Change the service log level")
    log_level.add_argument("level", help="DEBUG, INFO, WARNING, ERROR or CRITICAL")

    commands.add_parser("config", help="Show the service configuration")
    commands.add_parser("status", help="Show whether the last update succeeded")

    return parser.parse_args(args)


async def _serve(settings: RuntimeSettings) -> ExitCode:
    lifecycle = SignalLifecycleManager()
    lifecycle.install_signal_handlers()
    return await run_service(settings, lifecycle)


async def _control(args: argparse.Namespace, settings: RuntimeSettings) -> str:
    """
    Send the control request matching the command.

    Returns
    -------
    str
        Text to print on success.
    """
    client = ControlClient(settings.socket_path)

    match args.command:
        case "interval":
            await client.set_interval(args.interval)
        case "token":
            await client.set_token(args.token)
        case "domain" if args.action == "add":
            await client.add_domain(args.domain)
        case "domain":
            await client.remove_domain(args.domain)
        case "ipv6":
            await client.set_ipv6(enabled=args.action == "enable")
        case "update":
            await client.force_update()
        case "log-level":
            await client.set_log_level(args.level)
        case "config":
            service = await client.get_config()
            return dump_config(Config(service=service)).rstrip()
        case "status":
            succeeded = await client.get_status()
            return "Last update succeeded" if succeeded else "Last update failed"
        case _:
            msg = f"Unknown command: {args.command}"
            raise ValueError(msg)

    return "OK"


def main(argv: list[str] | None = None) -> None:
    """
    Run the Barvaz DNS command line.

    Parse command-line arguments, resolve the runtime settings, then either
    run the service or send one control request to it.
    """
    args = parse_args(argv)
    try:
        settings = load_settings(args)
    except ConfigValidationError as e:
        print(e, file=sys.stderr)  # noqa: T201
        sys.exit(ExitCode.CONFIG)

    if args.command == "service":
        sys.exit(asyncio.run(_serve(settings)))

    try:
        output = asyncio.run(_control(args, settings))
    except ControlClientError as e:
        print(f"Error: {e}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    print(output)  # noqa: T201


if __name__ == "__main__":
    main()
