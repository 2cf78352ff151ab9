"""Local JSON-file adapter for the :class:`~capbot.storage.state.StateStore` port.

Files and directories are created owner-only (``0600`` / ``0700``), since
the state contains instance OCIDs.  Writes go to a temporary file in the
same directory followed by :func:`os.replace`, so a crash mid-write leaves
the previous document intact.

A corrupt document is renamed to ``<name>.corrupt-<epoch>`` and replaced by
an empty state on the next save; the bad bytes are kept for inspection but
never parsed again.

Typical usage::

    from capbot.storage.file_store import FileStateStore

    store = FileStateStore(Path(".cache/oci-state/instance-state.json"))
    state = store.load()          # empty State if missing or corrupt
"""

from __future__ import annotations

import contextlib
import logging
import os
import stat
import tempfile
import time
from pathlib import Path
from typing import Final

from capbot.core import events
from capbot.core.exceptions import StateCorruptError, StorageError
from capbot.storage.state import State, StateStore, dump_state, parse_state

__all__ = ["FileStateStore", "DIR_MODE", "FILE_MODE"]

logger = logging.getLogger(__name__)

DIR_MODE: Final[int] = 0o700
FILE_MODE: Final[int] = 0o600


class FileStateStore(StateStore):
    """State persisted as a single JSON file.

    Args:
        path: Location of the state file.  Parent directories are created
            on first save.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.is_file()

    def file_mode(self) -> int | None:
        """Permission bits of the state file, or ``None`` if it does not exist."""
        try:
            return stat.S_IMODE(self._path.stat().st_mode)
        except FileNotFoundError:
            return None

    # ------------------------------------------------------------------
    # StateStore
    # ------------------------------------------------------------------

    def load(self) -> State:
        if not self._path.is_file():
            logger.debug("No state file at %s; starting empty.", self._path)
            return State.empty()

        try:
            raw = self._path.read_bytes()
        except OSError:
            logger.warning(
                "Cannot read state file %s; starting empty.",
                self._path,
                exc_info=True,
                extra={"event": events.STATE_CORRUPT},
            )
            return State.empty()

        try:
            return parse_state(raw, str(self._path))
        except StateCorruptError as exc:
            quarantined = self._quarantine()
            logger.warning(
                "%s; reinitialising state (bad file kept at %s).",
                exc,
                quarantined,
                extra={"event": events.STATE_CORRUPT},
            )
            return State.empty()

    def save(self, state: State) -> None:
        payload = dump_state(state)
        try:
            self._ensure_dir()
            fd, tmp_name = tempfile.mkstemp(
                dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(payload)
                os.chmod(tmp_name, FILE_MODE)
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise StorageError(f"Cannot write state file {self._path}: {exc}") from exc
        logger.debug("State saved to %s (%d bytes).", self._path, len(payload))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def delete(self) -> bool:
        """Remove the state file.  Returns ``True`` if a file was removed."""
        try:
            self._path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageError(f"Cannot delete state file {self._path}: {exc}") from exc
        return True

    def _ensure_dir(self) -> None:
        parent = self._path.parent
        if not parent.is_dir():
            parent.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
            os.chmod(parent, DIR_MODE)

    def _quarantine(self) -> Path | None:
        target = self._path.with_name(f"{self._path.name}.corrupt-{int(time.time())}")
        try:
            os.replace(self._path, target)
        except OSError:
            logger.warning("Could not move corrupt state file aside; deleting it.", exc_info=True)
            with contextlib.suppress(OSError):
                self._path.unlink(missing_ok=True)
            return None
        return target
