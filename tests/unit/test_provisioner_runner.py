from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock

import pytest

from cloud_provisioner.engine.errors import ProvisionerFailure
from cloud_provisioner.provisioners.runner import (
    ConnectionInfo,
    ProvisionerPhase,
    ProvisionerRunner,
    RemoteAuthenticationError,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from conftest import FakeExecutor

CONN = ConnectionInfo(host="10.0.0.5", user="admin", password="s3cret")


def _runner(
    make_runner: Callable[..., tuple[ProvisionerRunner, FakeExecutor]], **kwargs: object
) -> tuple[ProvisionerRunner, FakeExecutor, list[float]]:
    _, executor = make_runner(**kwargs)
    delays: list[float] = []

    async def record(delay: float) -> None:
        delays.append(delay)

    runner = ProvisionerRunner(executor, max_attempts=3, base_delay=2.0, sleep=record)
    return runner, executor, delays


def test_successful_run(
    make_runner: Callable[..., tuple[ProvisionerRunner, FakeExecutor]],
) -> None:
    runner, executor, delays = _runner(make_runner)

    run = asyncio.run(runner.run("vm.web", CONN, "echo hi\n"))

    assert run.phase == ProvisionerPhase.COMPLETED
    assert run.transitions == [
        ProvisionerPhase.CONNECTING,
        ProvisionerPhase.AUTHENTICATING,
        ProvisionerPhase.EXECUTING,
        ProvisionerPhase.COMPLETED,
    ]
    assert run.attempts == 1
    assert run.exit_code == 0
    assert run.output == "ok\n"
    assert executor.connects == [("10.0.0.5", 22)]
    assert executor.scripts == ["echo hi\n"]
    assert executor.closed == 1
    assert delays == []


def test_refused_connections_are_retried(
    make_runner: Callable[..., tuple[ProvisionerRunner, FakeExecutor]],
) -> None:
    runner, executor, delays = _runner(make_runner, refusals=2)

    run = asyncio.run(runner.run("vm.web", CONN, "true\n"))

    assert run.phase == ProvisionerPhase.COMPLETED
    assert run.attempts == 3
    assert len(executor.connects) == 3
    assert delays == [2.0, 4.0]


def test_gives_up_after_max_attempts(
    make_runner: Callable[..., tuple[ProvisionerRunner, FakeExecutor]],
) -> None:
    runner, executor, delays = _runner(make_runner, refusals=5)

    with pytest.raises(ProvisionerFailure, match="after 3 attempts") as exc_info:
        asyncio.run(runner.run("vm.web", CONN, "true\n"))

    assert exc_info.value.attempts == 3
    assert exc_info.value.address == "vm.web"
    assert len(executor.connects) == 3
    assert delays == [2.0, 4.0]
    assert executor.closed == 0


def test_connect_timeout_is_retried(
    make_runner: Callable[..., tuple[ProvisionerRunner, FakeExecutor]],
) -> None:
    runner, executor, _delays = _runner(make_runner)

    async def hang(host: str, port: int, timeout: float) -> str:
        await asyncio.sleep(10)
        return "never"

    executor.connect = hang  # type: ignore[method-assign]
    conn = CONN.model_copy(update={"timeout": 0.01})

    with pytest.raises(ProvisionerFailure, match="could not connect"):
        asyncio.run(runner.run("vm.web", conn, "true\n"))


def test_authentication_failure_is_not_retried(
    make_runner: Callable[..., tuple[ProvisionerRunner, FakeExecutor]],
) -> None:
    runner, executor, delays = _runner(make_runner)
    executor.authenticate = AsyncMock(  # type: ignore[method-assign]
        side_effect=RemoteAuthenticationError("Permission denied")
    )

    with pytest.raises(ProvisionerFailure, match="authentication failed: Permission denied"):
        asyncio.run(runner.run("vm.web", CONN, "true\n"))

    assert len(executor.connects) == 1
    assert delays == []
    assert executor.closed == 1


def test_non_zero_exit_keeps_output(
    make_runner: Callable[..., tuple[ProvisionerRunner, FakeExecutor]],
) -> None:
    runner, _executor, _delays = _runner(
        make_runner, exit_code=127, output="bash: nginx: not found\n"
    )

    with pytest.raises(ProvisionerFailure) as exc_info:
        asyncio.run(runner.run("vm.web", CONN, "nginx\n"))

    assert exc_info.value.exit_code == 127
    assert exc_info.value.output == "bash: nginx: not found\n"
    assert "status 127" in str(exc_info.value)


def test_backoff_is_capped() -> None:
    runner = ProvisionerRunner(AsyncMock(), base_delay=10.0, max_delay=15.0)
    assert [runner.backoff(n) for n in (1, 2, 3)] == [10.0, 15.0, 15.0]


def test_max_attempts_must_be_positive() -> None:
    with pytest.raises(ValueError, match="max_attempts"):
        ProvisionerRunner(AsyncMock(), max_attempts=0)


class TestConnectionInfo:
    def test_credentials_are_not_printed(self) -> None:
        conn = ConnectionInfo(host="h", password="s3cret", private_key="-----BEGIN KEY-----")
        assert "s3cret" not in repr(conn)
        assert "BEGIN KEY" not in str(conn)
        assert conn.port == 22
        assert conn.user == "root"

    def test_rejects_unknown_fields(self) -> None:
        with pytest.raises(ValueError, match="agent"):
            ConnectionInfo.model_validate({"host": "h", "agent": True})

    def test_rejects_empty_host(self) -> None:
        with pytest.raises(ValueError):
            ConnectionInfo(host="")
