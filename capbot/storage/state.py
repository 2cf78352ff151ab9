"""Persisted state document and the :class:`StateStore` port.

The state document is the only memory Capbot has between stateless
invocations.  Its JSON shape::

    {
        "version": "v1",
        "created": 1767225600,
        "updated": 1767229200,
        "records":   {"a1-flex-sg": {StateRecord}},
        "failures":  {"AD-1": {FailureRecord}},
        "limits":    {"VM.Standard.A1.Flex": {LimitRecord}},
        "rotations": [{RotationLogEntry}, ...]
    }

``records``, ``failures`` and ``updated`` are required; the other keys are
filled with defaults when absent so documents written by older versions
still load.

Ownership:

* ``failures`` is owned by :class:`~capbot.orchestrator.circuit_breaker.CircuitBreaker`.
* ``records`` and ``limits`` by :class:`~capbot.orchestrator.attempt.AcquisitionAttempt`.
* ``rotations`` by :class:`~capbot.orchestrator.lifecycle.LifecycleManager`.

Every mutation goes through :meth:`StateStore.update`, which performs
load → mutate → save with no ``await`` in between.  Both attempt tasks run
on the same event loop, so each update is atomic with respect to the other.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Final, TypeVar

from pydantic import BaseModel, Field, ValidationError

from capbot.core.exceptions import StateCorruptError

__all__ = [
    "STATE_SCHEMA_VERSION",
    "FailureRecord",
    "StateRecord",
    "LimitRecord",
    "RotationLogEntry",
    "State",
    "StateStore",
    "parse_state",
    "dump_state",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")

#: Schema version stored in the document; a mismatch reinitialises state.
STATE_SCHEMA_VERSION: Final[str] = "v1"

#: Rotation history entries kept in the document.
MAX_ROTATION_LOG: Final[int] = 20

_REQUIRED_KEYS: Final[tuple[str, ...]] = ("updated", "records", "failures")


def _now() -> int:
    return int(time.time())


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class FailureRecord(BaseModel):
    """Consecutive failure count of one resource key (target)."""

    key: str
    count: int = Field(default=0, ge=0)
    last_failure: int = Field(default=0, ge=0, description="Epoch seconds.")


class StateRecord(BaseModel):
    """Proof that a logical request has been satisfied.

    Created once on success; only ``verified`` changes afterwards.  Cleared
    only by the ``state reset`` command.
    """

    request_id: str
    resource_id: str = ""
    target_used: str = ""
    shape: str = ""
    created_at: int = Field(default_factory=_now, description="Epoch seconds.")
    verified: bool = False


class LimitRecord(BaseModel):
    """Whether a shape class was last seen at its hard quota."""

    reached: bool
    updated: int = Field(default_factory=_now, description="Epoch seconds.")


class RotationLogEntry(BaseModel):
    """One lifecycle rotation, for ``state stats``."""

    timestamp: int = Field(default_factory=_now)
    shape_class: str
    attempted: int = 0
    succeeded: int = 0
    terminated_ids: list[str] = Field(default_factory=list)
    dry_run: bool = False


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------


class State(BaseModel):
    """In-memory form of the persisted state document."""

    version: str = STATE_SCHEMA_VERSION
    created: int = Field(default_factory=_now)
    updated: int = Field(default_factory=_now)
    records: dict[str, StateRecord] = Field(default_factory=dict)
    failures: dict[str, FailureRecord] = Field(default_factory=dict)
    limits: dict[str, LimitRecord] = Field(default_factory=dict)
    rotations: list[RotationLogEntry] = Field(default_factory=list)

    @classmethod
    def empty(cls) -> State:
        return cls()

    def touch(self) -> None:
        self.updated = _now()

    def log_rotation(self, entry: RotationLogEntry) -> None:
        """Append *entry*, keeping only the last :data:`MAX_ROTATION_LOG`."""
        self.rotations.append(entry)
        del self.rotations[:-MAX_ROTATION_LOG]


def parse_state(raw: bytes | str, source: str) -> State:
    """Parse and validate a serialised state document.

    Args:
        raw: JSON bytes or text.
        source: Path or cache key, used in error messages.

    Returns:
        The validated :class:`State`.

    Raises:
        StateCorruptError: On invalid JSON, a non-object root, a version
            mismatch, missing required keys, or a schema violation.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise StateCorruptError(source, f"invalid JSON ({exc})") from exc

    if not isinstance(data, dict):
        raise StateCorruptError(source, f"root is {type(data).__name__}, expected object")

    version = data.get("version", STATE_SCHEMA_VERSION)
    if version != STATE_SCHEMA_VERSION:
        raise StateCorruptError(
            source, f"schema version {version!r} != {STATE_SCHEMA_VERSION!r}"
        )

    missing = [key for key in _REQUIRED_KEYS if key not in data]
    if missing:
        raise StateCorruptError(source, f"missing keys {missing}")

    try:
        return State.model_validate(data)
    except ValidationError as exc:
        raise StateCorruptError(source, f"schema violation ({exc.error_count()} errors)") from exc


def dump_state(state: State) -> bytes:
    """Serialise *state* to pretty-printed UTF-8 JSON."""
    return json.dumps(state.model_dump(mode="json"), indent=2, sort_keys=True).encode("utf-8")


# ---------------------------------------------------------------------------
# Port
# ---------------------------------------------------------------------------


class StateStore(ABC):
    """Persistence port for the state document.

    Adapters: :class:`~capbot.storage.file_store.FileStateStore` (local
    JSON file) and :class:`~capbot.storage.cache.MirroredStateStore` (local
    file mirrored to an external cache service).
    """

    @abstractmethod
    def load(self) -> State:
        """Return the persisted state.

        Must never raise because of missing or corrupt data: such cases
        are logged and an empty :class:`State` is returned.
        """

    @abstractmethod
    def save(self, state: State) -> None:
        """Persist *state*.

        Raises:
            StorageError: If the primary backend cannot be written.
        """

    async def restore(self) -> None:  # noqa: B027
        """Seed the primary backend from a secondary one.  No-op by default.

        Called once per process, before any attempt starts.
        """

    async def flush(self) -> None:  # noqa: B027
        """Push deferred writes to secondary backends.  No-op by default."""

    async def close(self) -> None:  # noqa: B027
        """Release backend resources.  No-op by default."""

    def update(self, mutate: Callable[[State], T]) -> T:
        """Load, apply *mutate*, stamp ``updated`` and save.

        Args:
            mutate: Callable that edits the state in place; its return value
                is passed through.

        Returns:
            Whatever *mutate* returned.
        """
        state = self.load()
        result = mutate(state)
        state.touch()
        self.save(state)
        return result
