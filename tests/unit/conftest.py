"""Shared fixtures for unit tests."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from cloud_provisioner.config import load
from cloud_provisioner.engine import Engine, ResourceHandler, ResourceKindRegistry
from cloud_provisioner.provisioners.runner import ProvisionerRunner, RemoteConnectionError

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from cloud_provisioner.config.schema import Config
    from cloud_provisioner.core.state import ResourceInstance
    from cloud_provisioner.engine.handlers import EngineContext
    from cloud_provisioner.provisioners.runner import ConnectionInfo

_ENV_VARS = ("PROVISIONER_LOG", "PROVISIONER_PARALLELISM", "PROVISIONER_LOCK_TIMEOUT")


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove PROVISIONER_* env vars so unit tests don't leak host config."""
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)


class FakeCloudHandler(ResourceHandler):
    """In-memory cloud: hands out ids and IPs, keyed by id so replacements can coexist."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.store: dict[str, dict[str, Any]] = {}
        self.created_with: dict[str, dict[str, Any]] = {}
        self.fail_on: set[str] = set()
        self._counter = 0

    def _call(self, op: str, address: str) -> None:
        # fail_on holds bare addresses (every call fails) or "op:address".
        self.calls.append((op, address))
        if address in self.fail_on or f"{op}:{address}" in self.fail_on:
            raise RuntimeError(f"{op} rejected by the cloud")

    def validate(self, ctx: EngineContext, attributes: dict[str, Any]) -> list[str]:
        size = attributes.get("size")
        if isinstance(size, int) and size < 0:
            return ["size must not be negative"]
        return []

    async def read(self, ctx: EngineContext, prior: ResourceInstance) -> dict[str, Any] | None:
        attrs = self.store.get(prior.attributes.get("id", ""))
        return None if attrs is None else dict(attrs)

    async def create(self, ctx: EngineContext, attributes: dict[str, Any]) -> dict[str, Any]:
        self._call("create", ctx.address)
        self._counter += 1
        self.created_with[ctx.address] = dict(attributes)
        result = {**attributes, "id": f"id-{self._counter}", "ip": f"10.0.0.{self._counter}"}
        self.store[result["id"]] = dict(result)
        return result

    async def update(
        self, ctx: EngineContext, attributes: dict[str, Any], prior: ResourceInstance
    ) -> dict[str, Any]:
        self._call("update", ctx.address)
        result = {**attributes, "id": prior.attributes["id"], "ip": prior.attributes["ip"]}
        self.store[result["id"]] = dict(result)
        return result

    async def delete(self, ctx: EngineContext, prior: ResourceInstance) -> None:
        self._call("delete", ctx.address)
        self.store.pop(prior.attributes.get("id", ""), None)

    def addresses(self, op: str) -> list[str]:
        return [addr for name, addr in self.calls if name == op]


class FakeExecutor:
    """``RemoteExecutor`` that refuses the first *refusals* connections."""

    def __init__(self, *, refusals: int = 0, exit_code: int = 0, output: str = "ok\n") -> None:
        self.refusals = refusals
        self.exit_code = exit_code
        self.output = output
        self.connects: list[tuple[str, int]] = []
        self.scripts: list[str] = []
        self.connections: list[ConnectionInfo] = []
        self.closed = 0

    async def connect(self, host: str, port: int, timeout: float) -> str:
        self.connects.append((host, port))
        if len(self.connects) <= self.refusals:
            raise RemoteConnectionError(f"connection refused by {host}:{port}")
        return f"session-{len(self.connects)}"

    async def authenticate(self, session: Any, connection: ConnectionInfo) -> None:
        self.connections.append(connection)

    async def run(self, session: Any, script: str) -> tuple[int, str]:
        self.scripts.append(script)
        return self.exit_code, self.output

    async def close(self, session: Any) -> None:
        self.closed += 1


async def no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def handler() -> FakeCloudHandler:
    return FakeCloudHandler()


@pytest.fixture
def registry(handler: FakeCloudHandler) -> ResourceKindRegistry:
    reg = ResourceKindRegistry()
    reg.register("vm", handler, replace_on_change=("image",))
    reg.register("net", handler)
    return reg


@pytest.fixture
def make_runner() -> Callable[..., tuple[ProvisionerRunner, FakeExecutor]]:
    """Factory fixture: a runner with instant backoff over a scripted executor."""

    def _make(**executor_kwargs: Any) -> tuple[ProvisionerRunner, FakeExecutor]:
        executor = FakeExecutor(**executor_kwargs)
        return ProvisionerRunner(executor, max_attempts=3, sleep=no_sleep), executor

    return _make


@pytest.fixture
def make_engine(
    tmp_path: Path, registry: ResourceKindRegistry
) -> Callable[..., Engine]:
    def _make(*, runner: ProvisionerRunner | None = None, parallelism: int = 10) -> Engine:
        return Engine(
            registry=registry,
            state_path=tmp_path / "state.json",
            runner=runner,
            parallelism=parallelism,
        )

    return _make


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., Config]:
    """Factory fixture: write YAML + optional .env, return loaded Config."""

    def _make(
        yaml_str: str,
        *,
        dotenv: str | None = None,
        variables: dict[str, Any] | None = None,
        expand: bool = True,
    ) -> Config:
        (tmp_path / "provisioner.yaml").write_text(yaml_str)
        if dotenv is not None:
            (tmp_path / ".env").write_text(dotenv)
        return load(tmp_path / "provisioner.yaml", variables=variables, expand=expand)

    return _make
