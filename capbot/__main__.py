"""Command line for capbot: ``python -m capbot`` or the ``capbot`` script.

Usage:
    capbot run [--dry-run]
    capbot state {init,health,stats,print,limit-status,check-limit,
                  clear-limits,set-limit,reset,verify,purge} ...
    capbot lifecycle list SHAPE
    capbot lifecycle rotate SHAPE [--dry-run]

``run`` performs one bounded acquisition run and exits; scheduling is left
to the external trigger (cron, a CI workflow).  The exit code of ``run`` is
the process exit code: ``0`` when any request is satisfied, otherwise the
code of the most severe failure.

``SHAPE`` accepts the full shape name or the aliases ``a1`` / ``e2``.

Logging is configured first so that every subsequent import already has a
working logger.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from pydantic import ValidationError

from capbot.core import configure_logging
from capbot.core.exceptions import ConfigError, OrchestratorError, ProvisionerError
from capbot.core.models import EXIT_CODES, ErrorKind
from capbot.core.run_context import RunContext
from capbot.core.settings import Settings

_EXIT_CONFIG = EXIT_CODES[ErrorKind.CONFIG]
_EXIT_PROVIDER = EXIT_CODES[ErrorKind.NETWORK]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="capbot",
        description="Acquire scarce free-tier OCI compute capacity on a schedule.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        metavar="LEVEL",
        help="DEBUG, INFO, WARNING or ERROR; wins over $LOG_LEVEL.",
    )
    parser.add_argument(
        "--log-format",
        default=None,
        metavar="FORMAT",
        help="text or json; wins over $LOG_FORMAT.",
    )
    commands = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    run = commands.add_parser("run", help="Run one acquisition pass and exit.")
    run.add_argument(
        "--dry-run",
        action="store_true",
        help="Log notifications and terminations instead of performing them.",
    )

    # Lazy import keeps ``capbot --help`` from loading the storage stack.
    from capbot.storage.cli import add_state_parser  # noqa: PLC0415

    add_state_parser(commands)

    lifecycle = commands.add_parser("lifecycle", help="Inspect or run instance rotation.")
    lifecycle_commands = lifecycle.add_subparsers(
        dest="lifecycle_command", required=True, metavar="COMMAND"
    )
    listing = lifecycle_commands.add_parser("list", help="Show ranked rotation candidates.")
    listing.add_argument("shape")
    rotate = lifecycle_commands.add_parser("rotate", help="Retire instances of SHAPE now.")
    rotate.add_argument("shape")
    rotate.add_argument("--dry-run", action="store_true", help="Select but do not terminate.")
    return parser


def _resolve_shape(value: str, settings: Settings) -> str:
    aliases = {"a1": settings.a1_shape, "e2": settings.e2_shape}
    return aliases.get(value.lower(), value)


async def _lifecycle(args: argparse.Namespace, settings: Settings) -> int:
    from capbot.orchestrator.runner import list_rotation_candidates, rotate_shape  # noqa: PLC0415

    shape = _resolve_shape(args.shape, settings)
    if args.lifecycle_command == "list":
        ranked, skipped = await list_rotation_candidates(settings, shape)
        print(f"{len(ranked)} candidate(s) for {shape}, {skipped} too young:")  # noqa: T201
        for rank, instance in enumerate(ranked, start=1):
            print(  # noqa: T201
                f"  {rank}. {instance.id} {instance.display_name} "
                f"created {instance.created_at:%Y-%m-%d %H:%M} health {instance.health_score}"
            )
        return 0

    outcome = await rotate_shape(settings, shape, dry_run=args.dry_run)
    print(  # noqa: T201
        f"{shape}: {outcome.succeeded}/{outcome.attempted} retired"
        f"{' (dry-run)' if outcome.dry_run else ''}"
        f"{f', {outcome.already_gone} already gone' if outcome.already_gone else ''}"
        f"{f', {outcome.reason}' if outcome.reason else ''}"
    )
    return 0


def main(argv: list[str] | None = None) -> None:
    """Parse *argv*, dispatch the sub-command and exit with its code."""
    args = _build_parser().parse_args(argv)

    try:
        configure_logging(level=args.log_level, fmt=args.log_format)
    except ValueError as exc:
        print(f"capbot: {exc}", file=sys.stderr)  # noqa: T201
        sys.exit(_EXIT_CONFIG)

    logger = logging.getLogger(__name__)

    try:
        settings = Settings()
    except ValidationError as exc:
        logger.critical("Invalid configuration: %s", exc)
        sys.exit(_EXIT_CONFIG)

    try:
        if args.command == "state":
            from capbot.storage.cli import run_state_command  # noqa: PLC0415

            sys.exit(run_state_command(args, settings))

        if args.command == "lifecycle":
            sys.exit(asyncio.run(_lifecycle(args, settings)))

        from capbot.orchestrator.runner import run_once  # noqa: PLC0415

        ctx = RunContext(dry_run=args.dry_run or settings.dry_run)
        logger.info("Capbot starting (%s)", ctx)
        sys.exit(asyncio.run(run_once(ctx, settings)))
    except (ConfigError, OrchestratorError, ValidationError) as exc:
        logger.critical("Configuration error: %s", exc)
        sys.exit(_EXIT_CONFIG)
    except ProvisionerError as exc:
        logger.error("Provider error: %s", exc)
        sys.exit(_EXIT_PROVIDER)
    except KeyboardInterrupt:
        logger.info("Interrupted; exiting.")
        sys.exit(130)


if __name__ == "__main__":
    main()
