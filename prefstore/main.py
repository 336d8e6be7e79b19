"""
Command-line entry point for prefstore.

Runs single operations against the configured store, for operators and
local debugging. Configuration comes from the environment (see config.py).

Usage:
    prefstore get-all user-1
    prefstore set-toggle user-1 dark_mode true --expected-version 3
    prefstore replace-sortable user-1 dashboard a=Alpha b=Beta c=Gamma
    prefstore move user-1 dashboard c --after a

Exit codes:
    0  success
    2  usage error (argparse) or invalid value
    3  version conflict
    4  renumber required
    5  not found
    6  store unavailable or timed out

Invariants:
    - Results are printed as JSON on stdout, errors on stderr
    - Backends are always closed before exit

How to change safely:
    - Add new commands, don't change the meaning of existing ones
    - Keep exit codes stable; scripts branch on them
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import Any

import json_log_formatter

from .config import ServiceConfig
from .errors import (
    InvalidValueKindError,
    NotFoundError,
    PartitionLimitError,
    RenumberRequiredError,
    UnavailableError,
    VersionConflictError,
)
from .service import PreferenceService

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_INVALID = 2
EXIT_CONFLICT = 3
EXIT_RENUMBER = 4
EXIT_NOT_FOUND = 5
EXIT_UNAVAILABLE = 6


def setup_logging(config: ServiceConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Service configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("redis").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def _parse_bool(text: str) -> bool:
    lowered = text.lower()
    if lowered in ("true", "1", "yes", "on"):
        return True
    if lowered in ("false", "0", "no", "off"):
        return False
    raise argparse.ArgumentTypeError(f"Expected a boolean, got '{text}'")


def _parse_item(text: str) -> tuple[str, str]:
    key, sep, value = text.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"Expected key=value, got '{text}'")
    return key, value


def build_parser() -> argparse.ArgumentParser:
    """Argument parser for all commands."""
    parser = argparse.ArgumentParser(prog="prefstore", description="User preference store tool")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # get-all command
    get_all = subparsers.add_parser("get-all", help="Print the aggregate view of an owner")
    get_all.add_argument("owner_id")

    # get-category command
    get_category = subparsers.add_parser("get-category", help="Print one category in order")
    get_category.add_argument("owner_id")
    get_category.add_argument("category", help="e.g. toggleable, preference, sortable:dashboard")

    # set-toggle command
    set_toggle = subparsers.add_parser("set-toggle", help="Set a boolean toggle")
    set_toggle.add_argument("owner_id")
    set_toggle.add_argument("key")
    set_toggle.add_argument("value", type=_parse_bool)

    # set-preference command
    set_preference = subparsers.add_parser("set-preference", help="Set a string preference")
    set_preference.add_argument("owner_id")
    set_preference.add_argument("key")
    set_preference.add_argument("value")

    for sub in (set_toggle, set_preference):
        sub.add_argument("--expected-version", type=int, help="Fail unless stored version matches")

    # replace-sortable command
    replace_sortable = subparsers.add_parser(
        "replace-sortable", help="Replace a sortable list with items in the given order"
    )
    replace_sortable.add_argument("owner_id")
    replace_sortable.add_argument("domain")
    replace_sortable.add_argument("items", nargs="*", type=_parse_item, help="key=value")

    # move command
    move = subparsers.add_parser("move", help="Move a sortable item after another one")
    move.add_argument("owner_id")
    move.add_argument("domain")
    move.add_argument("key")
    move.add_argument("--after", help="Key to place the item after (default: front)")

    # renumber command
    renumber = subparsers.add_parser("renumber", help="Re-space a sortable list")
    renumber.add_argument("owner_id")
    renumber.add_argument("domain")

    # delete-owner command
    delete_owner = subparsers.add_parser("delete-owner", help="Remove every entry of an owner")
    delete_owner.add_argument("owner_id")

    # stats command
    stats = subparsers.add_parser("stats", help="Entry counts per category")
    stats.add_argument("owner_id")

    for sub in (set_toggle, set_preference, replace_sortable, move, renumber, delete_owner):
        sub.add_argument("--token", help="Idempotency token")

    return parser


def _dispatch(
    service: PreferenceService,
    args: argparse.Namespace,
) -> Callable[[], Awaitable[Any]]:
    command = args.command

    if command == "get-all":

        async def run() -> Any:
            return (await service.get_all(args.owner_id)).to_dict()

    elif command == "get-category":

        async def run() -> Any:
            entries = await service.get_category(args.owner_id, args.category)
            return [e.to_dict() for e in entries]

    elif command == "set-toggle":

        async def run() -> Any:
            return await service.set_toggle(
                args.owner_id, args.key, args.value,
                expected_version=args.expected_version, idempotency_token=args.token,
            )

    elif command == "set-preference":

        async def run() -> Any:
            return await service.set_preference(
                args.owner_id, args.key, args.value,
                expected_version=args.expected_version, idempotency_token=args.token,
            )

    elif command == "replace-sortable":

        async def run() -> Any:
            return await service.replace_sortable(
                args.owner_id, args.domain, args.items, idempotency_token=args.token
            )

    elif command == "move":

        async def run() -> Any:
            return await service.move_sortable_item(
                args.owner_id, args.domain, args.key,
                after_key=args.after, idempotency_token=args.token,
            )

    elif command == "renumber":

        async def run() -> Any:
            return await service.renumber_sortable(
                args.owner_id, args.domain, idempotency_token=args.token
            )

    elif command == "delete-owner":

        async def run() -> Any:
            return await service.delete_owner(args.owner_id, idempotency_token=args.token)

    elif command == "stats":

        async def run() -> Any:
            return await service.stats(args.owner_id)

    else:
        raise ValueError(f"Unknown command: {command}")

    return run


async def run_command(config: ServiceConfig, args: argparse.Namespace) -> int:
    """Execute one parsed command and print its result.

    Returns:
        Process exit code
    """
    service = await PreferenceService.from_config(config)
    try:
        result = await _dispatch(service, args)()
    except VersionConflictError as e:
        return _fail(e.message, e.details, EXIT_CONFLICT)
    except RenumberRequiredError as e:
        return _fail(e.message, e.details, EXIT_RENUMBER)
    except NotFoundError as e:
        return _fail(e.message, e.details, EXIT_NOT_FOUND)
    except UnavailableError as e:
        return _fail(e.message, e.details, EXIT_UNAVAILABLE)
    except (InvalidValueKindError, PartitionLimitError, ValueError) as e:
        return _fail(str(e), getattr(e, "details", {}), EXIT_INVALID)
    finally:
        await service.close()

    if hasattr(result, "to_dict"):
        result = result.to_dict()
    print(json.dumps(result, indent=2, sort_keys=True))
    return EXIT_OK


def _fail(message: str, details: dict[str, Any], code: int) -> int:
    print(json.dumps({"error": message, "details": details}, sort_keys=True), file=sys.stderr)
    return code


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = ServiceConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(EXIT_INVALID)

    setup_logging(config)
    config.log_config()

    sys.exit(asyncio.run(run_command(config, args)))


if __name__ == "__main__":
    main()
