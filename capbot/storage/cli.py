"""``capbot state ...`` sub-commands.

Each command is a thin read or write over the state store and returns a
process exit code: ``0`` on success, ``1`` on an I/O problem, an unhealthy
file or an unknown record.  Argument validation errors exit ``2`` through
argparse.

========================  ==================================================
``init``                  create an empty state file if none exists
``health``                version, permissions, age / expiry, counts
``stats``                 counts, circuit states, rotation history
``print``                 the raw state document (JSON)
``limit-status``          every shape limit flag with its age
``check-limit SHAPE``     ``true`` / ``false`` (fresh flags only)
``clear-limits``          drop every limit flag
``set-limit SHAPE BOOL``  set or clear one flag
``reset REQUEST_ID``      forget a satisfied request (manual re-acquire)
``verify REQUEST_ID``     mark a satisfied request as verified
``purge --confirm``       delete the state file
========================  ==================================================

``health`` and ``print`` read the file without the quarantine side effect
of :meth:`~capbot.storage.file_store.FileStateStore.load`, so inspecting a
corrupt file does not move it away.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import time
from collections.abc import Callable

from capbot.core.exceptions import StateCorruptError, StorageError
from capbot.core.settings import Settings
from capbot.storage.cache import build_state_store, get_dynamic_ttl_hours, is_expired
from capbot.storage.file_store import FILE_MODE, FileStateStore
from capbot.storage.state import (
    STATE_SCHEMA_VERSION,
    LimitRecord,
    State,
    StateStore,
    dump_state,
    parse_state,
)

__all__ = ["add_state_parser", "run_state_command", "parse_bool"]

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAIL = 1

_TRUE = frozenset({"true", "1", "yes", "on"})
_FALSE = frozenset({"false", "0", "no", "off"})


def parse_bool(value: str) -> bool:
    """argparse ``type=`` for strict booleans."""
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise argparse.ArgumentTypeError(f"expected true/false, got {value!r}")


def _out(text: str) -> None:
    print(text)  # noqa: T201


def _age(epoch: float, now: float) -> str:
    hours = max(now - epoch, 0.0) / 3600
    return f"{hours:.1f}h ago"


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_init(args: argparse.Namespace, store: StateStore, settings: Settings) -> int:
    file_store = FileStateStore(settings.state_path)
    if file_store.exists():
        _out(f"State already present at {file_store.path}")
        return EXIT_OK
    store.save(State.empty())
    _out(f"Initialised empty state at {file_store.path}")
    return EXIT_OK


def _cmd_health(args: argparse.Namespace, store: StateStore, settings: Settings) -> int:
    file_store = FileStateStore(settings.state_path)
    if not file_store.exists():
        _out(f"missing: {file_store.path}")
        return EXIT_FAIL

    try:
        state = parse_state(file_store.path.read_bytes(), str(file_store.path))
    except (OSError, StateCorruptError) as exc:
        _out(f"unhealthy: {exc}")
        return EXIT_FAIL

    now = time.time()
    ttl = get_dynamic_ttl_hours(settings.to_cache_config())
    mode = file_store.file_mode()
    mode_ok = mode is not None and mode & 0o077 == 0
    _out(f"path:        {file_store.path}")
    _out(f"version:     {state.version} (expected {STATE_SCHEMA_VERSION})")
    shown = oct(mode) if mode is not None else "?"
    _out(f"permissions: {shown}{'' if mode_ok else ' (too open)'}")
    _out(f"updated:     {_age(state.updated, now)}")
    _out(f"expired:     {is_expired(state.updated, ttl, now=now)} (ttl {ttl}h)")
    _out(
        f"records={len(state.records)} failures={len(state.failures)} "
        f"limits={len(state.limits)} rotations={len(state.rotations)}"
    )
    if not mode_ok:
        _out(f"fix with: chmod {FILE_MODE:o} {file_store.path}")
        return EXIT_FAIL
    return EXIT_OK


def _cmd_stats(args: argparse.Namespace, store: StateStore, settings: Settings) -> int:
    state = store.load()
    now = time.time()
    threshold = settings.circuit_breaker_threshold
    _out(f"Satisfied requests: {len(state.records)}")
    for rid, record in sorted(state.records.items()):
        verified = "verified" if record.verified else "unverified"
        _out(f"  {rid}: {record.resource_id or '?'} in {record.target_used or '?'} ({verified})")
    _out(f"Tracked targets (shape:target): {len(state.failures)}")
    for key, failure in sorted(state.failures.items()):
        status = "OPEN" if failure.count >= threshold else "closed"
        _out(
            f"  {key}: {failure.count} failure(s), {status}, last {_age(failure.last_failure, now)}"
        )
    _out(f"Rotations: {len(state.rotations)}")
    for entry in state.rotations[-5:]:
        _out(
            f"  {_age(entry.timestamp, now)} {entry.shape_class}: "
            f"{entry.succeeded}/{entry.attempted} retired{' (dry-run)' if entry.dry_run else ''}"
        )
    return EXIT_OK


def _cmd_print(args: argparse.Namespace, store: StateStore, settings: Settings) -> int:
    path = settings.state_path
    try:
        state = parse_state(path.read_bytes(), str(path))
    except FileNotFoundError:
        state = State.empty()
    except (OSError, StateCorruptError) as exc:
        logger.error("Cannot read state: %s", exc)
        return EXIT_FAIL
    _out(dump_state(state).decode("utf-8"))
    return EXIT_OK


def _flag_fresh(flag: LimitRecord | None, ttl_hours: int) -> bool:
    return flag is not None and flag.reached and not is_expired(flag.updated, ttl_hours)


def _cmd_limit_status(args: argparse.Namespace, store: StateStore, settings: Settings) -> int:
    state = store.load()
    ttl = get_dynamic_ttl_hours(settings.to_cache_config())
    if not state.limits:
        _out("No limit flags set.")
        return EXIT_OK
    now = time.time()
    for shape, flag in sorted(state.limits.items()):
        stale = "" if _flag_fresh(flag, ttl) or not flag.reached else " (stale)"
        reached = str(flag.reached).lower()
        _out(f"{shape}: reached={reached} updated {_age(flag.updated, now)}{stale}")
    return EXIT_OK


def _cmd_check_limit(args: argparse.Namespace, store: StateStore, settings: Settings) -> int:
    ttl = get_dynamic_ttl_hours(settings.to_cache_config())
    _out(str(_flag_fresh(store.load().limits.get(args.shape), ttl)).lower())
    return EXIT_OK


def _cmd_clear_limits(args: argparse.Namespace, store: StateStore, settings: Settings) -> int:
    def _mutate(state: State) -> int:
        count = len(state.limits)
        state.limits.clear()
        return count

    _out(f"Cleared {store.update(_mutate)} limit flag(s).")
    return EXIT_OK


def _cmd_set_limit(args: argparse.Namespace, store: StateStore, settings: Settings) -> int:
    def _mutate(state: State) -> None:
        state.limits[args.shape] = LimitRecord(reached=args.reached)

    store.update(_mutate)
    _out(f"{args.shape}: reached={str(args.reached).lower()}")
    return EXIT_OK


def _cmd_reset(args: argparse.Namespace, store: StateStore, settings: Settings) -> int:
    def _mutate(state: State) -> bool:
        return state.records.pop(args.request_id, None) is not None

    if not store.update(_mutate):
        _out(f"No record for {args.request_id}.")
        return EXIT_FAIL
    _out(f"Record for {args.request_id} removed; the next run will acquire it again.")
    return EXIT_OK


def _cmd_verify(args: argparse.Namespace, store: StateStore, settings: Settings) -> int:
    def _mutate(state: State) -> bool:
        record = state.records.get(args.request_id)
        if record is None:
            return False
        record.verified = True
        return True

    if not store.update(_mutate):
        _out(f"No record for {args.request_id}.")
        return EXIT_FAIL
    _out(f"{args.request_id} marked verified.")
    return EXIT_OK


def _cmd_purge(args: argparse.Namespace, store: StateStore, settings: Settings) -> int:
    if not args.confirm:
        _out("Refusing to purge without --confirm.")
        return EXIT_FAIL
    removed = FileStateStore(settings.state_path).delete()
    _out("State file deleted." if removed else "No state file to delete.")
    return EXIT_OK


_Handler = Callable[[argparse.Namespace, StateStore, Settings], int]

_COMMANDS: dict[str, tuple[_Handler, bool]] = {
    # name: (handler, mutates)
    "init": (_cmd_init, True),
    "health": (_cmd_health, False),
    "stats": (_cmd_stats, False),
    "print": (_cmd_print, False),
    "limit-status": (_cmd_limit_status, False),
    "check-limit": (_cmd_check_limit, False),
    "clear-limits": (_cmd_clear_limits, True),
    "set-limit": (_cmd_set_limit, True),
    "reset": (_cmd_reset, True),
    "verify": (_cmd_verify, True),
    "purge": (_cmd_purge, True),
}


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def add_state_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register ``state`` and its sub-commands on *subparsers*."""
    state = subparsers.add_parser("state", help="Inspect or edit the persisted state.")
    commands = state.add_subparsers(dest="state_command", required=True, metavar="COMMAND")

    commands.add_parser("init", help="Create an empty state file if none exists.")
    commands.add_parser("health", help="Check version, permissions and expiry.")
    commands.add_parser("stats", help="Records, circuit states and rotation history.")
    commands.add_parser("print", help="Print the state document as JSON.")
    commands.add_parser("limit-status", help="List shape limit flags.")

    check = commands.add_parser("check-limit", help="Print whether SHAPE is at its limit.")
    check.add_argument("shape")

    commands.add_parser("clear-limits", help="Clear every limit flag.")

    set_limit = commands.add_parser("set-limit", help="Set the limit flag of SHAPE.")
    set_limit.add_argument("shape")
    set_limit.add_argument("reached", type=parse_bool, metavar="BOOL")

    reset = commands.add_parser("reset", help="Forget a satisfied request.")
    reset.add_argument("request_id")

    verify = commands.add_parser("verify", help="Mark a satisfied request verified.")
    verify.add_argument("request_id")

    purge = commands.add_parser("purge", help="Delete the state file.")
    purge.add_argument("--confirm", action="store_true", help="Required.")


def run_state_command(
    args: argparse.Namespace, settings: Settings, store: StateStore | None = None
) -> int:
    """Dispatch ``args.state_command`` and return its exit code."""
    return asyncio.run(_dispatch(args, settings, store or build_state_store(settings)))


async def _dispatch(args: argparse.Namespace, settings: Settings, store: StateStore) -> int:
    handler, mutates = _COMMANDS[args.state_command]
    try:
        await store.restore()
        code = handler(args, store, settings)
        if mutates:
            await store.flush()
        return code
    except StorageError as exc:
        logger.error("state %s failed: %s", args.state_command, exc)
        return EXIT_FAIL
    finally:
        await store.close()
