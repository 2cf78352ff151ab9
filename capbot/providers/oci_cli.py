"""OCI CLI provisioner adapter.

Drives the ``oci`` command-line tool through :func:`asyncio.create_subprocess_exec`.
Each invocation:

* passes ``--connection-timeout`` / ``--read-timeout`` / ``--no-retry`` so the
  CLI itself never sleeps through our budget with its own retry loop;
* is bounded by ``call_timeout_s`` on our side; on expiry the child process
  is killed and :class:`~capbot.core.exceptions.ProvisionerTimeoutError` is
  raised (the classifier maps it to ``NETWORK``);
* kills the child process when the calling task is cancelled, so a forced
  orchestrator shutdown never leaves an orphaned ``oci`` process behind.

Error payloads are returned verbatim (stderr, falling back to stdout) so the
classifier sees the CLI's ``ServiceError`` JSON.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

from capbot.core.exceptions import (
    LaunchUnconfirmedError,
    ProvisionerError,
    ProvisionerTimeoutError,
)
from capbot.core.models import GONE_STATES, InstanceDescriptor, LaunchRequest, ProvisionResult
from capbot.core.settings import Settings
from capbot.providers.base import Provisioner

__all__ = ["OciCliProvisioner", "health_score_for", "HEALTH_SCORES"]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Health score per OCI lifecycle state; anything else scores 50.
HEALTH_SCORES: Final[dict[str, int]] = {
    "RUNNING": 100,
    "STARTING": 75,
    "PROVISIONING": 75,
    "STOPPED": 25,
    "STOPPING": 0,
    "TERMINATING": 0,
    "TERMINATED": 0,
}

_UNKNOWN_HEALTH: Final[int] = 50

#: ``instance get`` error for an id that does not exist (or is not visible).
_NOT_FOUND_RE: Final[re.Pattern[str]] = re.compile(r"NotAuthorizedOrNotFound|\"status\": 404")

#: Seconds to wait for a killed child to be reaped.
_KILL_WAIT_S: Final[float] = 2.0

_INSTANCE_OCID_RE = re.compile(r"ocid1\.instance[^\"'\s]*")


def health_score_for(lifecycle_state: str | None) -> int:
    """Map an OCI lifecycle state to a 0-100 health score."""
    if not lifecycle_state:
        return _UNKNOWN_HEALTH
    return HEALTH_SCORES.get(lifecycle_state.upper(), _UNKNOWN_HEALTH)


def _parse_time(value: Any) -> datetime:
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
        if parsed is not None:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return datetime.now(tz=UTC)


def _descriptor_from(data: dict[str, Any]) -> InstanceDescriptor:
    state = str(data.get("lifecycle-state") or "UNKNOWN")
    shape_config = data.get("shape-config") or {}
    return InstanceDescriptor(
        id=str(data["id"]),
        shape_class=str(data.get("shape") or ""),
        created_at=_parse_time(data.get("time-created")),
        health_score=health_score_for(state),
        display_name=str(data.get("display-name") or ""),
        lifecycle_state=state,
        ocpus=shape_config.get("ocpus"),
    )


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        proc.kill()
    with contextlib.suppress(TimeoutError, ProcessLookupError):
        await asyncio.wait_for(proc.wait(), timeout=_KILL_WAIT_S)


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class OciCliProvisioner(Provisioner):
    """Provisioner backed by the ``oci`` CLI.

    Args:
        compartment_id: Compartment OCID.
        subnet_id: Subnet OCID for new instances.
        image_id: Image OCID for new instances.
        ssh_public_key: Public key content; written to the attempt working
            directory and passed as ``--ssh-authorized-keys-file``.
        assign_public_ip: Assign a public IP on launch.
        boot_volume_size_gb: Boot volume size (>= 50).
        cli_path: ``oci`` executable.
        connection_timeout_s: CLI ``--connection-timeout``.
        read_timeout_s: CLI ``--read-timeout``.
        call_timeout_s: Our bound on one whole invocation.
    """

    def __init__(
        self,
        *,
        compartment_id: str,
        subnet_id: str,
        image_id: str,
        ssh_public_key: str = "",
        assign_public_ip: bool = True,
        boot_volume_size_gb: int = 50,
        cli_path: str = "oci",
        connection_timeout_s: int = 5,
        read_timeout_s: int = 15,
        call_timeout_s: float = 25.0,
    ) -> None:
        self._compartment_id = compartment_id
        self._subnet_id = subnet_id
        self._image_id = image_id
        self._ssh_public_key = ssh_public_key.strip()
        self._assign_public_ip = assign_public_ip
        self._boot_volume_size_gb = max(boot_volume_size_gb, 50)
        self._cli_path = cli_path
        self._global_args = [
            "--connection-timeout",
            str(connection_timeout_s),
            "--read-timeout",
            str(read_timeout_s),
            "--no-retry",
        ]
        self._call_timeout_s = call_timeout_s

    @classmethod
    def from_settings(cls, settings: Settings) -> OciCliProvisioner:
        return cls(
            compartment_id=settings.oci_compartment_id,
            subnet_id=settings.oci_subnet_id,
            image_id=settings.oci_image_id,
            ssh_public_key=settings.ssh_public_key,
            assign_public_ip=settings.assign_public_ip,
            boot_volume_size_gb=settings.boot_volume_size_gb,
            cli_path=settings.oci_cli_path,
            connection_timeout_s=settings.oci_connection_timeout_s,
            read_timeout_s=settings.oci_read_timeout_s,
            call_timeout_s=settings.oci_call_timeout_s,
        )

    # ------------------------------------------------------------------
    # Subprocess plumbing
    # ------------------------------------------------------------------

    async def _run(self, operation: str, args: list[str]) -> tuple[int, str, str]:
        """Run one CLI command and return ``(returncode, stdout, stderr)``.

        Raises:
            ProvisionerError: The CLI binary cannot be started.
            ProvisionerTimeoutError: The call exceeded ``call_timeout_s``.
        """
        cmd = [self._cli_path, *self._global_args, *args]
        logger.debug("Running %s", " ".join(cmd[:6]))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ProvisionerError(operation, f"cannot start {self._cli_path!r}: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self._call_timeout_s
            )
        except TimeoutError:
            await _kill(proc)
            raise ProvisionerTimeoutError(operation, self._call_timeout_s) from None
        except asyncio.CancelledError:
            logger.info("Cancelled during %s; killing oci process %d.", operation, proc.pid)
            await _kill(proc)
            raise

        return (
            proc.returncode if proc.returncode is not None else -1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    def _write_ssh_key(self, workdir: Path | None) -> Path | None:
        if not self._ssh_public_key or workdir is None:
            return None
        key_path = workdir / "authorized_keys.pub"
        fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(self._ssh_public_key + "\n")
        return key_path

    def _launch_args(self, target: str, request: LaunchRequest, key_file: Path | None) -> list[str]:
        args = [
            "compute", "instance", "launch",
            "--availability-domain", target,
            "--compartment-id", self._compartment_id,
            "--shape", request.shape,
            "--subnet-id", self._subnet_id,
            "--image-id", self._image_id,
            "--display-name", request.request_id,
            "--assign-private-dns-record", "true",
            "--assign-public-ip", "true" if self._assign_public_ip else "false",
            "--boot-volume-size-in-gbs", str(self._boot_volume_size_gb),
            "--availability-config", json.dumps({"recoveryAction": "RESTORE_INSTANCE"}),
        ]  # fmt: skip
        if request.is_flex:
            args += [
                "--shape-config",
                json.dumps({"ocpus": request.ocpus, "memoryInGBs": request.memory_gb}),
            ]
        if key_file is not None:
            args += ["--ssh-authorized-keys-file", str(key_file)]
        return args

    # ------------------------------------------------------------------
    # Provisioner contract
    # ------------------------------------------------------------------

    async def acquire(
        self,
        target: str,
        request: LaunchRequest,
        *,
        workdir: Path | None = None,
    ) -> ProvisionResult:
        key_file = self._write_ssh_key(workdir)
        code, stdout, stderr = await self._run(
            "acquire", self._launch_args(target, request, key_file)
        )
        if code != 0:
            return ProvisionResult.failure(stderr.strip() or stdout.strip())

        try:
            data = json.loads(stdout).get("data") or {}
            return ProvisionResult.success(_descriptor_from(data))
        except (ValueError, AttributeError, KeyError):
            match = _INSTANCE_OCID_RE.search(stdout)
            if match is None:
                raise LaunchUnconfirmedError(request.request_id) from None
            return ProvisionResult.success(
                InstanceDescriptor(
                    id=match.group(0),
                    shape_class=request.shape,
                    display_name=request.request_id,
                    lifecycle_state="PROVISIONING",
                    health_score=health_score_for("PROVISIONING"),
                )
            )

    async def list_instances(self, shape_class: str) -> list[InstanceDescriptor]:
        code, stdout, stderr = await self._run(
            "list",
            ["compute", "instance", "list", "--compartment-id", self._compartment_id, "--all"],
        )
        if code != 0:
            raise ProvisionerError("list", stderr.strip() or f"exit code {code}")
        if not stdout.strip():
            return []
        try:
            items = json.loads(stdout).get("data") or []
        except (ValueError, AttributeError) as exc:
            raise ProvisionerError("list", f"unparsable inventory: {exc}") from exc

        descriptors: list[InstanceDescriptor] = []
        for item in items:
            if item.get("shape") != shape_class:
                continue
            if str(item.get("lifecycle-state", "")).upper() in GONE_STATES:
                continue
            descriptors.append(_descriptor_from(item))
        return descriptors

    async def get_instance(
        self, instance_id: str, *, shape_class: str
    ) -> InstanceDescriptor | None:
        code, stdout, stderr = await self._run(
            "get", ["compute", "instance", "get", "--instance-id", instance_id]
        )
        if code != 0:
            if _NOT_FOUND_RE.search(stderr):
                return None
            raise ProvisionerError("get", stderr.strip()[:300] or f"exit code {code}")
        try:
            return _descriptor_from(json.loads(stdout)["data"])
        except (ValueError, KeyError, TypeError) as exc:
            raise ProvisionerError("get", f"unparsable instance: {exc}") from exc

    async def terminate(self, instance_id: str) -> bool:
        code, _stdout, stderr = await self._run(
            "terminate",
            ["compute", "instance", "terminate", "--instance-id", instance_id, "--force"],
        )
        if code != 0:
            logger.warning("Terminate %s failed: %s", instance_id, stderr.strip()[:300])
            return False
        return True
