"""Provisioner interface contract.

The orchestrator consumes these operations from the cloud provider:

* :meth:`Provisioner.acquire`: launch one instance for a request in one
  target.  Classified failures (capacity, quota, throttling...) are
  returned as :meth:`ProvisionResult.failure` carrying the **raw** error
  payload; the orchestrator classifies it.
* :meth:`Provisioner.list_instances`: inventory of one shape class.
* :meth:`Provisioner.terminate`: retire one instance.
* :meth:`Provisioner.get_instance`: fresh state of one instance, read just
  before it is terminated.

Implementations must bound every call with a client-side timeout and, when
the calling task is cancelled, stop whatever external work they started
(kill child processes, close connections) before re-raising
:exc:`asyncio.CancelledError`.

Design decisions
----------------
* **Abstract base class** rather than a ``Protocol``, so the async context
  manager lifecycle (``close`` / ``__aenter__`` / ``__aexit__``) is shared.
* **Per-attempt working directory**: ``acquire`` receives the isolated
  directory the orchestrator created for the attempt; adapters put any
  temporary files there (never in a shared location).

Typical usage::

    async with OciCliProvisioner(settings) as provisioner:
        result = await provisioner.acquire("AD-1", request, workdir=workdir)
        if result.ok:
            print(result.descriptor.id)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from types import TracebackType

from capbot.core.models import InstanceDescriptor, LaunchRequest, ProvisionResult

__all__ = ["Provisioner"]

logger = logging.getLogger(__name__)


class Provisioner(ABC):
    """Abstract base for provisioner adapters."""

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:  # noqa: B027
        """Release any resources held by this provisioner (no-op by default)."""

    async def __aenter__(self) -> Provisioner:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Core contract
    # ------------------------------------------------------------------

    @abstractmethod
    async def acquire(
        self,
        target: str,
        request: LaunchRequest,
        *,
        workdir: Path | None = None,
    ) -> ProvisionResult:
        """Try to launch one instance for *request* in *target*.

        Args:
            target: Fallback target (availability domain).
            request: Logical request (shape, sizing, display name).
            workdir: Isolated temporary directory of the calling attempt.

        Returns:
            Success with the new instance's descriptor, or failure with the
            raw error payload.

        Raises:
            ProvisionerError: When the provisioner cannot be driven at all.
        """

    @abstractmethod
    async def list_instances(self, shape_class: str) -> list[InstanceDescriptor]:
        """Return live (non-terminated) instances of *shape_class*.

        Raises:
            ProvisionerError: When the inventory cannot be read.
        """

    @abstractmethod
    async def terminate(self, instance_id: str) -> bool:
        """Request termination of *instance_id*.

        Returns:
            ``True`` if the provider accepted the request.
        """


    async def get_instance(
        self, instance_id: str, *, shape_class: str
    ) -> InstanceDescriptor | None:
        """Return the current view of *instance_id*, or ``None`` if it is gone.

        The default looks the id up in :meth:`list_instances`; adapters
        with a direct lookup override it and may return a descriptor whose
        :attr:`~capbot.core.models.InstanceDescriptor.gone` is ``True``.

        Raises:
            ProvisionerError: When the instance cannot be looked up.
        """
        for instance in await self.list_instances(shape_class):
            if instance.id == instance_id:
                return instance
        return None
