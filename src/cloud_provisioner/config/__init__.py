"""YAML configuration loading and convenience plan/apply API."""

from __future__ import annotations

import asyncio
import contextlib
import signal
from typing import TYPE_CHECKING, Any

from cloud_provisioner.config.loader import ConfigError, load_config
from cloud_provisioner.config.registry import default_registry
from cloud_provisioner.config.schema import Config, EngineSettings
from cloud_provisioner.core.state import State
from cloud_provisioner.engine.engine import Engine, ProgressCallback
from cloud_provisioner.engine.types import Action, ResourceChange

if TYPE_CHECKING:
    from collections.abc import Mapping
    from pathlib import Path

    from cloud_provisioner.engine.types import ApplyResult, Plan
    from cloud_provisioner.provisioners.runner import RemoteExecutor

__all__ = [
    "Config",
    "ConfigError",
    "EngineSettings",
    "State",
    "apply",
    "destroy",
    "engine_from_config",
    "load",
    "load_config",
    "output",
    "plan",
    "plan_and_apply",
    "refresh",
    "save_state",
]


def load(
    path: Path | str, *, variables: Mapping[str, Any] | None = None, expand: bool = True
) -> Config:
    """Load a YAML configuration file."""
    return load_config(path, variables=variables, expand=expand)


def engine_from_config(config: Config, *, executor: RemoteExecutor | None = None) -> Engine:
    """Build an ``Engine`` from a ``Config`` instance.

    Provisioners run over OpenSSH unless another *executor* is given.
    """
    from cloud_provisioner.provisioners import ProvisionerRunner, SSHExecutor

    settings = config.engine_settings
    runner = ProvisionerRunner(
        executor if executor is not None else SSHExecutor(),
        max_attempts=settings.provisioner_max_attempts,
        base_delay=settings.provisioner_base_delay,
        max_delay=settings.provisioner_max_delay,
    )
    return Engine(
        registry=default_registry(config.providers),
        state_path=config.state_path,
        runner=runner,
        parallelism=settings.parallelism,
        lock_timeout=settings.lock_timeout,
    )


def plan(config: Config, *, destroy: bool = False, refresh: bool = True) -> Plan:
    """Plan changes for the given configuration."""
    engine = engine_from_config(config)
    # Destroy plans only need state, so the config may be unexpanded.
    graph = None if destroy else config.graph
    return asyncio.run(engine.plan(graph, destroy=destroy, refresh=refresh))


async def _apply_interruptible(
    engine: Engine, plan_obj: Plan, progress: ProgressCallback | None
) -> ApplyResult:
    # Ctrl-C stops scheduling; running operations finish and state stays consistent.
    loop = asyncio.get_running_loop()
    installed = False
    with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
        loop.add_signal_handler(signal.SIGINT, engine.abort)
        installed = True
    try:
        return await engine.apply(plan_obj, progress=progress)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


def apply(
    plan_obj: Plan,
    config: Config,
    *,
    progress: ProgressCallback | None = None,
    executor: RemoteExecutor | None = None,
) -> ApplyResult:
    """Apply a previously computed plan."""
    engine = engine_from_config(config, executor=executor)
    return asyncio.run(_apply_interruptible(engine, plan_obj, progress))


def plan_and_apply(config: Config, *, destroy: bool = False, refresh: bool = True) -> ApplyResult:
    """Plan and apply in one step."""
    plan_obj = plan(config, destroy=destroy, refresh=refresh)
    return apply(plan_obj, config)


def destroy(config: Config, *, progress: ProgressCallback | None = None) -> ApplyResult:
    """Destroy every tracked resource."""
    return apply(plan(config, destroy=True), config, progress=progress)


def output(config: Config, name: str | None = None) -> Any:
    """Read root outputs recorded by the last apply."""
    return engine_from_config(config).output(name)


def refresh(config: Config, *, persist: bool = False) -> tuple[list[ResourceChange], State]:
    """Read every tracked resource back through its provider.

    Returns the drift found and the refreshed state. The state file is only
    rewritten when *persist* is set.
    """
    engine = engine_from_config(config)
    old_state, new_state = asyncio.run(engine.refresh(persist=persist))
    return _build_drift_changes(old_state, new_state), new_state


def save_state(config: Config, state: State) -> None:
    """Persist a refreshed state to disk."""
    from cloud_provisioner.engine.lock import StateLock

    with StateLock(config.state_path, operation="refresh"):
        state.serial += 1
        state.save(config.state_path)


def _build_drift_changes(old_state: State, new_state: State) -> list[ResourceChange]:
    """Compare old vs new state and return a list of drift changes."""
    changes: list[ResourceChange] = []
    for addr, inst in new_state.resources.items():
        old = old_state.resources.get(addr)
        if old is None or old.attributes == inst.attributes:
            continue
        all_keys = set(old.attributes) | set(inst.attributes)
        diff = {
            k: {"from": old.attributes.get(k), "to": inst.attributes.get(k)}
            for k in sorted(all_keys)
            if old.attributes.get(k) != inst.attributes.get(k)
        }
        changes.append(
            ResourceChange(
                address=addr,
                kind=inst.kind,
                action=Action.UPDATE,
                prior=dict(old.attributes),
                planned=dict(inst.attributes),
                diff=diff,
            )
        )
    for addr in sorted(set(old_state.resources) - set(new_state.resources)):
        old = old_state.resources[addr]
        changes.append(
            ResourceChange(
                address=addr,
                kind=old.kind,
                action=Action.DESTROY,
                prior=dict(old.attributes),
            )
        )
    return changes
