from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import pytest

from cloud_provisioner.core.state import State
from cloud_provisioner.engine.errors import (
    ApplyError,
    StalePlanError,
    StateLockError,
    UnknownOutputNameError,
)
from cloud_provisioner.engine.expressions import parse_value
from cloud_provisioner.engine.graph import AttributeGraph
from cloud_provisioner.engine.lock import StateLock
from cloud_provisioner.engine.types import (
    Action,
    ApplyResult,
    Lifecycle,
    NodeStatus,
    Plan,
    ProvisionerSpec,
)

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from conftest import FakeCloudHandler, FakeExecutor

    from cloud_provisioner.engine import Engine
    from cloud_provisioner.provisioners.runner import ProvisionerRunner


def _graph(*nodes: tuple[Any, ...], outputs: dict[str, Any] | None = None) -> AttributeGraph:
    """Build a graph from (address, attributes[, add_node kwargs]) tuples."""
    graph = AttributeGraph()
    for address, attrs, *rest in nodes:
        kind, name = address.split(".")
        graph.add_node(kind, name, parse_value(attrs), **(rest[0] if rest else {}))
    graph.outputs = parse_value(outputs or {})
    return graph


def _plan(engine: Engine, graph: AttributeGraph | None, **kwargs: Any) -> Plan:
    return asyncio.run(engine.plan(graph, **kwargs))


def _apply(engine: Engine, graph: AttributeGraph | None, **kwargs: Any) -> ApplyResult:
    return asyncio.run(engine.apply(_plan(engine, graph, **kwargs)))


def _failed_apply(engine: Engine, graph: AttributeGraph) -> ApplyResult:
    with pytest.raises(ApplyError) as exc_info:
        _apply(engine, graph)
    return exc_info.value.result


def _provisioned() -> dict[str, Any]:
    spec = ProvisionerSpec(
        inline=["apt-get install -y nginx"],
        connection={"host": "${self.ip}", "user": "admin", "password": "s3cret"},
    )
    return {"provisioners": [spec]}


def test_dependent_receives_committed_value(
    make_engine: Callable[..., Engine], handler: FakeCloudHandler
) -> None:
    engine = make_engine()
    graph = _graph(
        ("vm.a", {"size": 1}),
        ("vm.b", {"peer": "${vm.a.ip}", "url": "http://${vm.a.ip}:8080"}),
    )

    result = _apply(engine, graph)

    assert result.ok
    state = State.load(engine.state_path)
    ip = state.resources["vm.a"].attributes["ip"]
    assert handler.created_with["vm.b"] == {"peer": ip, "url": f"http://{ip}:8080"}
    assert state.resources["vm.b"].dependencies == ["vm.a"]


def test_independent_branch_survives_failure(
    make_engine: Callable[..., Engine], handler: FakeCloudHandler
) -> None:
    engine = make_engine()
    handler.fail_on.add("vm.d")
    graph = _graph(
        ("vm.d", {}),
        ("vm.e", {}),
        ("vm.f", {"upstream": "${vm.e.id}"}),
    )

    result = _failed_apply(engine, graph)

    assert result.statuses == {
        "vm.d": NodeStatus.FAILED,
        "vm.e": NodeStatus.APPLIED,
        "vm.f": NodeStatus.APPLIED,
    }
    assert "create rejected" in result.errors["vm.d"]
    assert set(State.load(engine.state_path).resources) == {"vm.e", "vm.f"}
    assert result.summary()["create"] == 2


def test_failure_blocks_dependents(
    make_engine: Callable[..., Engine], handler: FakeCloudHandler
) -> None:
    engine = make_engine()
    handler.fail_on.add("vm.e")
    graph = _graph(("vm.e", {}), ("vm.f", {"upstream": "${vm.e.id}"}), ("vm.g", {}))

    result = _failed_apply(engine, graph)

    assert result.failed == ["vm.e"]
    assert result.blocked == ["vm.f"]
    assert result.statuses["vm.g"] == NodeStatus.APPLIED
    assert "vm.f" not in handler.created_with


def test_failed_apply_then_retry(
    make_engine: Callable[..., Engine], handler: FakeCloudHandler
) -> None:
    engine = make_engine()
    handler.fail_on.add("vm.e")
    graph = _graph(("vm.e", {}), ("vm.f", {"upstream": "${vm.e.id}"}))
    _failed_apply(engine, graph)

    handler.fail_on.clear()
    plan = _plan(engine, graph)
    assert [c.action for c in plan.changes] == [Action.CREATE, Action.CREATE]
    assert asyncio.run(engine.apply(plan)).ok


class TestProvisioners:
    def test_runs_after_create_with_self_attributes(
        self,
        make_engine: Callable[..., Engine],
        make_runner: Callable[..., tuple[ProvisionerRunner, FakeExecutor]],
    ) -> None:
        runner, executor = make_runner()
        engine = make_engine(runner=runner)

        _apply(engine, _graph(("vm.web", {"size": 1}, _provisioned())))

        (conn,) = executor.connections
        assert conn.host == "10.0.0.1"
        assert conn.user == "admin"
        assert conn.password is not None
        assert conn.password.get_secret_value() == "s3cret"
        assert executor.scripts == ["apt-get install -y nginx\n"]
        assert executor.closed == 1

    def test_exhausted_retries_taint_then_replace(
        self,
        make_engine: Callable[..., Engine],
        make_runner: Callable[..., tuple[ProvisionerRunner, FakeExecutor]],
        handler: FakeCloudHandler,
    ) -> None:
        runner, executor = make_runner(refusals=3)
        engine = make_engine(runner=runner)
        graph = _graph(
            ("vm.c", {"size": 1}, _provisioned()),
            ("vm.after", {"peer": "${vm.c.ip}"}),
        )

        result = _failed_apply(engine, graph)

        assert result.tainted == ["vm.c"]
        assert result.blocked == ["vm.after"]
        assert len(executor.connects) == 3
        assert executor.scripts == []
        state = State.load(engine.state_path)
        assert state.resources["vm.c"].tainted
        assert "vm.after" not in state.resources

        plan = _plan(engine, graph)
        change = plan.get("vm.c")
        assert change is not None
        assert change.action == Action.REPLACE
        assert change.reason == "tainted"
        assert change.diff is None

        result = asyncio.run(engine.apply(plan))
        assert result.ok
        assert executor.scripts == ["apt-get install -y nginx\n"]
        assert handler.addresses("delete") == ["vm.c"]
        state = State.load(engine.state_path)
        assert not state.resources["vm.c"].tainted
        assert state.resources["vm.c"].attributes["id"] == "id-2"

    def test_not_run_on_update(
        self,
        make_engine: Callable[..., Engine],
        make_runner: Callable[..., tuple[ProvisionerRunner, FakeExecutor]],
    ) -> None:
        runner, executor = make_runner()
        engine = make_engine(runner=runner)
        _apply(engine, _graph(("vm.web", {"size": 1}, _provisioned())))

        plan = _plan(engine, _graph(("vm.web", {"size": 2}, _provisioned())))
        assert plan.changes[0].action == Action.UPDATE
        asyncio.run(engine.apply(plan))

        assert len(executor.scripts) == 1

    def test_non_zero_exit_taints(
        self,
        make_engine: Callable[..., Engine],
        make_runner: Callable[..., tuple[ProvisionerRunner, FakeExecutor]],
    ) -> None:
        runner, _executor = make_runner(exit_code=2, output="E: package not found\n")
        engine = make_engine(runner=runner)

        result = _failed_apply(engine, _graph(("vm.web", {}, _provisioned())))

        assert result.tainted == ["vm.web"]
        assert "status 2" in result.errors["vm.web"]

    def test_without_runner_taints(self, make_engine: Callable[..., Engine]) -> None:
        result = _failed_apply(make_engine(), _graph(("vm.web", {}, _provisioned())))
        assert result.tainted == ["vm.web"]
        assert "no remote executor" in result.errors["vm.web"]


class TestReplace:
    def _graph(self, image: str, *, cbd: bool) -> AttributeGraph:
        lifecycle = {"lifecycle": Lifecycle(create_before_destroy=cbd)}
        return _graph(
            ("vm.web", {"image": image}, lifecycle),
            ("vm.app", {"peer": "${vm.web.ip}"}),
        )

    def test_destroy_then_create(
        self, make_engine: Callable[..., Engine], handler: FakeCloudHandler
    ) -> None:
        engine = make_engine()
        _apply(engine, self._graph("a", cbd=False))
        handler.calls.clear()

        result = _apply(engine, self._graph("b", cbd=False))

        assert handler.calls == [
            ("delete", "vm.web"),
            ("create", "vm.web"),
            ("update", "vm.app"),
        ]
        assert result.summary()["replace"] == 1
        state = State.load(engine.state_path)
        assert state.resources["vm.app"].attributes["peer"] == "10.0.0.3"

    def test_create_before_destroy(
        self, make_engine: Callable[..., Engine], handler: FakeCloudHandler
    ) -> None:
        engine = make_engine()
        _apply(engine, self._graph("a", cbd=True))
        handler.calls.clear()

        _apply(engine, self._graph("b", cbd=True))

        assert handler.calls == [
            ("create", "vm.web"),
            ("update", "vm.app"),
            ("delete", "vm.web"),
        ]
        state = State.load(engine.state_path)
        assert state.deposed == {}
        assert state.resources["vm.web"].attributes["id"] == "id-3"
        assert set(handler.store) == {"id-2", "id-3"}

    def test_failed_deposed_destroy_is_retried(
        self, make_engine: Callable[..., Engine], handler: FakeCloudHandler
    ) -> None:
        engine = make_engine()
        graph = self._graph("b", cbd=True)
        _apply(engine, self._graph("a", cbd=True))
        handler.fail_on.add("delete:vm.web")

        result = _failed_apply(engine, graph)
        assert result.failed == ["vm.web"]
        state = State.load(engine.state_path)
        assert state.deposed["vm.web"].attributes["id"] == "id-1"
        assert state.resources["vm.web"].attributes["id"] == "id-3"

        handler.fail_on.clear()
        plan = _plan(engine, graph)
        assert [(c.action, c.reason) for c in plan.changes] == [
            (Action.NOOP, None),
            (Action.NOOP, None),
            (Action.DESTROY, "deposed"),
        ]
        asyncio.run(engine.apply(plan))
        state = State.load(engine.state_path)
        assert state.deposed == {}
        assert "id-1" not in handler.store


def test_destroy_in_reverse_dependency_order(
    make_engine: Callable[..., Engine], handler: FakeCloudHandler
) -> None:
    engine = make_engine()
    _apply(
        engine,
        _graph(
            ("net.main", {}),
            ("vm.web", {"subnet": "${net.main.id}"}),
            ("vm.app", {"peer": "${vm.web.ip}"}),
        ),
    )
    handler.calls.clear()

    result = _apply(engine, None, destroy=True)

    assert handler.addresses("delete") == ["vm.app", "vm.web", "net.main"]
    assert result.summary()["destroy"] == 3
    assert State.load(engine.state_path).resources == {}


def test_outputs_are_committed(make_engine: Callable[..., Engine]) -> None:
    engine = make_engine()
    graph = _graph(
        ("vm.web", {}),
        outputs={"ip": "${vm.web.ip}", "url": "https://${vm.web.ip}/", "static": 42},
    )

    result = _apply(engine, graph)

    expected = {"ip": "10.0.0.1", "url": "https://10.0.0.1/", "static": 42}
    assert result.outputs == expected
    assert engine.output() == expected
    assert engine.output("ip") == "10.0.0.1"
    with pytest.raises(UnknownOutputNameError):
        engine.output("missing")


def test_unresolved_output_is_skipped(
    make_engine: Callable[..., Engine], handler: FakeCloudHandler
) -> None:
    engine = make_engine()
    handler.fail_on.add("vm.web")
    graph = _graph(("vm.web", {}), outputs={"ip": "${vm.web.ip}", "static": "x"})

    result = _failed_apply(engine, graph)

    assert result.outputs == {"static": "x"}


def test_saved_plan_roundtrip(make_engine: Callable[..., Engine], tmp_path: Path) -> None:
    engine = make_engine()
    path = tmp_path / "plan.json"
    _plan(engine, _graph(("vm.web", {"size": 1}))).save(path)

    assert asyncio.run(engine.apply(Plan.load(path))).ok
    assert "vm.web" in State.load(engine.state_path).resources


def test_stale_plan_is_rejected(make_engine: Callable[..., Engine]) -> None:
    engine = make_engine()
    _apply(engine, _graph(("vm.web", {"size": 1})))
    graph = _graph(("vm.web", {"size": 2}))
    first = _plan(engine, graph)
    second = _plan(engine, graph)
    asyncio.run(engine.apply(first))

    with pytest.raises(StalePlanError, match="serial"):
        asyncio.run(engine.apply(second))


def test_apply_refuses_held_lock(make_engine: Callable[..., Engine]) -> None:
    engine = make_engine()
    plan = _plan(engine, _graph(("vm.web", {})))

    with StateLock(engine.state_path, operation="apply"), pytest.raises(StateLockError):
        asyncio.run(engine.apply(plan))


def test_parallelism_one_still_applies_everything(make_engine: Callable[..., Engine]) -> None:
    engine = make_engine(parallelism=1)
    graph = _graph(*[(f"vm.n{i}", {"i": i}) for i in range(5)])

    result = _apply(engine, graph)

    assert result.ok
    assert sorted(c.address for c in result.applied) == [f"vm.n{i}" for i in range(5)]
