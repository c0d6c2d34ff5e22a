"""Remote provisioner runner.

Runs a script on a freshly created resource through a ``RemoteExecutor``.
A run moves through ``connecting -> authenticating -> executing`` and ends in
``completed`` or ``failed``. Connection refusals and timeouts are retried with
bounded exponential backoff because the target is often still booting;
authentication errors and non-zero exit codes fail immediately.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from cloud_provisioner.engine.errors import ProvisionerFailure

logger = logging.getLogger(__name__)


class ProvisionerPhase(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class RemoteConnectionError(Exception):
    """Transient failure to reach the remote host (refused, unreachable, timeout)."""


class RemoteAuthenticationError(Exception):
    """The remote host rejected the supplied credentials."""


class ConnectionInfo(BaseModel):
    """Fully resolved connection parameters for one provisioner run.

    Credential values are opaque to the engine and never logged.
    """

    model_config = ConfigDict(extra="forbid")

    type: Literal["ssh"] = "ssh"
    host: str = Field(min_length=1)
    port: int = Field(default=22, ge=1, le=65535)
    user: str = "root"
    password: SecretStr | None = None
    private_key: SecretStr | None = None
    timeout: float = Field(default=10.0, gt=0)


class RemoteExecutor(Protocol):
    async def connect(self, host: str, port: int, timeout: float) -> Any: ...

    async def authenticate(self, session: Any, connection: ConnectionInfo) -> None: ...

    async def run(self, session: Any, script: str) -> tuple[int, str]: ...

    async def close(self, session: Any) -> None: ...


@dataclass
class ProvisionerRun:
    """Record of a single provisioner run."""

    address: str
    phase: ProvisionerPhase = ProvisionerPhase.CONNECTING
    attempts: int = 0
    exit_code: int | None = None
    output: str = ""
    transitions: list[ProvisionerPhase] = field(
        default_factory=lambda: [ProvisionerPhase.CONNECTING]
    )

    def enter(self, phase: ProvisionerPhase) -> None:
        logger.debug("Provisioner %s: %s -> %s", self.address, self.phase.value, phase.value)
        self.phase = phase
        self.transitions.append(phase)


def _describe(exc: BaseException | None) -> str:
    if exc is None:
        return "unknown error"
    return str(exc) or type(exc).__name__


class ProvisionerRunner:
    """Drives a ``RemoteExecutor`` through the provisioner state machine.

    Args:
        executor: Remote execution backend.
        max_attempts: Total connection attempts before giving up.
        base_delay: Backoff before the second attempt, doubled after each failure.
        max_delay: Upper bound for a single backoff.
        sleep: Awaitable used between attempts (injectable for tests).
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        *,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        max_delay: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._executor = executor
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._sleep = sleep

    def backoff(self, attempt: int) -> float:
        """Delay after failed attempt number *attempt* (1-based)."""
        return min(self._base_delay * (2 ** (attempt - 1)), self._max_delay)

    def _fail(self, run: ProvisionerRun, message: str) -> ProvisionerFailure:
        run.enter(ProvisionerPhase.FAILED)
        return ProvisionerFailure(
            run.address,
            message,
            exit_code=run.exit_code,
            output=run.output,
            attempts=run.attempts,
        )

    async def _connect(self, run: ProvisionerRun, connection: ConnectionInfo) -> Any:
        target = f"{connection.host}:{connection.port}"
        last_error: BaseException | None = None
        for attempt in range(1, self._max_attempts + 1):
            run.attempts = attempt
            try:
                return await asyncio.wait_for(
                    self._executor.connect(connection.host, connection.port, connection.timeout),
                    timeout=connection.timeout,
                )
            except (RemoteConnectionError, OSError, TimeoutError) as exc:
                last_error = exc
                logger.warning(
                    "Attempt %d/%d to connect to %s for %s failed: %s",
                    attempt,
                    self._max_attempts,
                    target,
                    run.address,
                    _describe(exc),
                )
                if attempt < self._max_attempts:
                    await self._sleep(self.backoff(attempt))

        raise self._fail(
            run,
            f"could not connect to {target} after {self._max_attempts} attempts: "
            f"{_describe(last_error)}",
        )

    async def run(self, address: str, connection: ConnectionInfo, script: str) -> ProvisionerRun:
        """Run *script* on the target. Raises ``ProvisionerFailure`` on any failure."""
        run = ProvisionerRun(address=address)
        logger.info("Provisioning %s via %s@%s", address, connection.user, connection.host)
        session = await self._connect(run, connection)
        try:
            run.enter(ProvisionerPhase.AUTHENTICATING)
            try:
                await self._executor.authenticate(session, connection)
            except (RemoteAuthenticationError, RemoteConnectionError, OSError) as exc:
                raise self._fail(run, f"authentication failed: {exc}") from exc

            run.enter(ProvisionerPhase.EXECUTING)
            try:
                run.exit_code, run.output = await self._executor.run(session, script)
            except (RemoteConnectionError, OSError) as exc:
                raise self._fail(run, f"remote execution failed: {exc}") from exc

            if run.exit_code != 0:
                raise self._fail(run, f"script exited with status {run.exit_code}")

            run.enter(ProvisionerPhase.COMPLETED)
            logger.info("Provisioner for %s completed", address)
            return run
        finally:
            await self._executor.close(session)
