"""Plan/apply engine."""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from cloud_provisioner import __version__
from cloud_provisioner.core.state import (
    State,
    StateStore,
    compute_attributes_hash,
    compute_state_digest,
)
from cloud_provisioner.engine.errors import (
    ApplyCanceled,
    ApplyError,
    EngineError,
    PreventDestroyViolation,
    ProviderOperationError,
    StalePlanError,
    UnknownOutputNameError,
    ValidationError,
)
from cloud_provisioner.engine.executor import ApplyExecutor, ProgressCallback
from cloud_provisioner.engine.expressions import (
    contains_unknown,
    display_value,
    dump_value,
    parse_value,
)
from cloud_provisioner.engine.graph import DependencyGraph, evaluate
from cloud_provisioner.engine.handlers import EngineContext
from cloud_provisioner.engine.lock import StateLock
from cloud_provisioner.engine.operations import (
    BARRIER_KEY,
    BarrierOperation,
    CreateOperation,
    DestroyOperation,
    OperationContext,
    UpdateOperation,
    operation_key,
)
from cloud_provisioner.engine.types import Action, ApplyResult, Plan, PlanMetadata, ResourceChange

if TYPE_CHECKING:
    from pathlib import Path

    from cloud_provisioner.core.state import ResourceInstance
    from cloud_provisioner.engine.graph import AttributeGraph, Node
    from cloud_provisioner.engine.operations import Operation
    from cloud_provisioner.engine.registry import ResourceKindRegistry
    from cloud_provisioner.engine.types import Lifecycle
    from cloud_provisioner.provisioners.runner import ProvisionerRunner

logger = logging.getLogger(__name__)

__all__ = ["Engine", "ProgressCallback"]


def _values_differ(desired: Any, prior: Any) -> bool:
    """Check whether a desired value differs from the prior (stored) value.

    - For dict values, only keys present in *desired* are compared.
      Extra keys present only in *prior* (provider-added defaults) are ignored.
    - Lists and scalars use strict equality.
    - Unknown values never compare equal to anything.
    """
    if isinstance(desired, dict) and isinstance(prior, dict):
        return any(_values_differ(v, prior.get(k)) for k, v in desired.items())
    return desired != prior


def _record_outdated(inst: ResourceInstance, deps: list[str], lifecycle: Lifecycle) -> bool:
    """Whether the persisted dependencies or prevent_destroy flag no longer match config."""
    return (
        sorted(inst.dependencies) != sorted(deps)
        or inst.prevent_destroy != lifecycle.prevent_destroy
    )


def _canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def _sha256_hex(payload: str) -> str:
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _compute_config_digest(graph: AttributeGraph | None) -> str:
    if graph is None:
        return _sha256_hex(_canonical_json([]))
    items: list[dict[str, Any]] = [
        {
            "address": node.address,
            "kind": node.kind,
            "attributes": dump_value(node.attributes),
            "depends_on": sorted(node.depends_on),
            "lifecycle": node.lifecycle.model_dump(),
            "provisioners": [p.model_dump() for p in node.provisioners],
        }
        for node in graph
    ]
    items.sort(key=lambda x: x["address"])
    outputs = dump_value(graph.outputs)
    return _sha256_hex(_canonical_json({"resources": items, "outputs": outputs}))


class Engine:
    """Terraform-like plan/apply engine over registered resource kinds.

    Args:
        registry: Handlers and replacement rules per resource kind.
        state_path: Location of the JSON state file.
        runner: Runs remote provisioners after create; without one, any
            resource declaring a provisioner ends up tainted.
        parallelism: Maximum number of operations in flight during apply.
        lock_timeout: Seconds to wait for a state lock held by another process.
    """

    def __init__(
        self,
        *,
        registry: ResourceKindRegistry,
        state_path: Path,
        runner: ProvisionerRunner | None = None,
        parallelism: int = 10,
        lock_timeout: float = 0.0,
    ) -> None:
        self._registry = registry
        self._state_path = state_path
        self._runner = runner
        self._parallelism = parallelism
        self._lock_timeout = lock_timeout
        self._executor: ApplyExecutor | None = None

    @property
    def state_path(self) -> Path:
        return self._state_path

    @property
    def registry(self) -> ResourceKindRegistry:
        return self._registry

    def _lock(self, operation: str) -> StateLock:
        return StateLock(self._state_path, operation=operation, timeout=self._lock_timeout)

    def _load_state(self) -> State:
        state = State.load_or_create(self._state_path)
        logger.debug("State loaded: serial=%d, %d resources", state.serial, len(state.resources))
        return state

    def _load_state_for_apply(self, plan: Plan) -> State:
        if self._state_path.exists():
            return self._load_state()
        # If no state exists, bootstrap from the plan metadata (saved-plan semantics).
        return State(
            lineage=plan.metadata.state_lineage,
            serial=plan.metadata.state_serial,
        )

    @staticmethod
    def _ctx(inst: ResourceInstance) -> EngineContext:
        return EngineContext(
            address=inst.address,
            kind=inst.kind,
            name=inst.name,
            module_path=tuple(inst.module_path),
        )

    # ── Refresh ──────────────────────────────────────────────────────

    async def _read_one(self, inst: ResourceInstance) -> dict[str, Any] | None:
        handler = self._registry.get(inst.kind).handler
        try:
            return await handler.read(self._ctx(inst), inst)
        except EngineError:
            raise
        except Exception as e:
            raise ProviderOperationError(inst.address, "read", str(e) or type(e).__name__) from e

    async def _refresh_state_in_place(self, state: State) -> bool:
        logger.debug("Refreshing %d resources", len(state.resources))
        semaphore = asyncio.Semaphore(self._parallelism)

        async def _read(inst: ResourceInstance) -> dict[str, Any] | None:
            async with semaphore:
                return await self._read_one(inst)

        instances = list(state.resources.values())
        observed = await asyncio.gather(*(_read(inst) for inst in instances))

        changed = False
        for inst, attrs in zip(instances, observed, strict=True):
            if attrs is None:
                logger.info("%s no longer exists; dropping it from state", inst.address)
                del state.resources[inst.address]
                changed = True
                continue

            new_hash = compute_attributes_hash(attrs)
            if attrs != inst.attributes or new_hash != inst.attributes_hash:
                inst.attributes = attrs
                inst.attributes_hash = new_hash
                inst.updated_at = datetime.now(UTC)
                changed = True

        logger.debug("State refreshed, changed=%s", changed)
        return changed

    async def refresh(self, *, persist: bool = True) -> tuple[State, State]:
        """Read every tracked resource back. Returns (pre_refresh, post_refresh)."""
        with self._lock("refresh"):
            state = self._load_state()
            snapshot = state.model_copy(deep=True)
            changed = await self._refresh_state_in_place(state)
            if changed and persist:
                state.serial += 1
                state.save(self._state_path)
            return snapshot, state

    # ── Plan ─────────────────────────────────────────────────────────

    def _classify_change(
        self,
        node: Node,
        state: State,
        deps: list[str],
        planned_values: dict[str, dict[str, Any]],
        errors: list[str],
    ) -> ResourceChange:
        """Classify one node as CREATE, REPLACE, UPDATE or NOOP.

        Records the values the node exposes to its dependents in *planned_values*.
        """
        addr = node.address
        reg = self._registry.get(node.kind)
        desired = evaluate(node.attributes, planned_values.get)

        ctx = EngineContext(
            address=addr, kind=node.kind, name=node.name, module_path=node.module_path
        )
        errors.extend(f"{addr}: {e}" for e in reg.handler.validate(ctx, desired))

        common: dict[str, Any] = {
            "address": addr,
            "kind": node.kind,
            "desired": dump_value(node.attributes),
            "planned": display_value(desired),
            "depends_on": deps,
            "lifecycle": node.lifecycle,
            "provisioners": node.provisioners,
        }

        prior_inst = state.resources.get(addr)
        if prior_inst is None:
            logger.debug("Classified %s as create", addr)
            planned_values[addr] = desired
            return ResourceChange(action=Action.CREATE, **common)

        prior = dict(prior_inst.attributes)
        if prior_inst.tainted:
            logger.debug("Classified %s as replace (tainted)", addr)
            planned_values[addr] = desired
            return ResourceChange(
                action=Action.REPLACE, prior=prior, reason="tainted", **common
            )

        ignored = set(node.lifecycle.ignore_changes)
        diff = {
            k: {"from": prior.get(k), "to": display_value(v)}
            for k, v in desired.items()
            if k not in ignored and _values_differ(v, prior.get(k))
        }
        removed = [
            k
            for k in prior_inst.declared_attributes
            if k not in desired and k not in ignored and prior.get(k) is not None
        ]
        for k in removed:
            diff[k] = {"from": prior[k], "to": None}
        requires_replace = sorted(k for k in diff if k in reg.replace_on_change)

        if requires_replace:
            action = Action.REPLACE
            planned_values[addr] = desired
        elif diff:
            action = Action.UPDATE
            planned_values[addr] = {
                **prior,
                **dict.fromkeys(removed),
                **{k: v for k, v in desired.items() if k not in ignored},
            }
        else:
            action = Action.NOOP
            planned_values[addr] = prior

        reason = None
        if requires_replace:
            reason = "replace_on_change"
        elif action == Action.NOOP and _record_outdated(prior_inst, deps, node.lifecycle):
            reason = "record"

        logger.debug("Classified %s as %s", addr, action.value)
        return ResourceChange(
            action=action,
            prior=prior,
            diff=diff or None,
            requires_replace=requires_replace,
            reason=reason,
            **common,
        )

    def _delete_order(self, state: State, delete_set: set[str]) -> list[str]:
        dep_map = {
            addr: [d for d in state.resources[addr].dependencies if d in delete_set]
            for addr in delete_set
        }
        return DependencyGraph(delete_set, dep_map).reverse_topological_order()

    def _plan_deletes(self, state: State, addrs: set[str]) -> list[ResourceChange]:
        """Plan destroy changes for the given addresses in reverse dependency order."""
        changes: list[ResourceChange] = []
        for addr in self._delete_order(state, addrs):
            inst = state.resources[addr]
            self._registry.get(inst.kind)  # fail early if unknown
            changes.append(
                ResourceChange(
                    address=addr,
                    kind=inst.kind,
                    action=Action.DESTROY,
                    prior=dict(inst.attributes),
                    depends_on=list(inst.dependencies),
                )
            )
        return changes

    def _plan_deposed(self, state: State) -> list[ResourceChange]:
        """Leftovers of interrupted create-before-destroy replacements."""
        return [
            ResourceChange(
                address=addr,
                kind=inst.kind,
                action=Action.DESTROY,
                prior=dict(inst.attributes),
                reason="deposed",
            )
            for addr, inst in sorted(state.deposed.items())
        ]

    @staticmethod
    def _check_prevent_destroy(changes: list[ResourceChange], state: State) -> None:
        # A declared node follows its configured lifecycle; the flag recorded in
        # state only guards nodes whose declaration is gone.
        protected: list[str] = []
        for c in changes:
            if c.reason == "deposed":
                continue
            if c.action == Action.DESTROY:
                inst = state.resources.get(c.address)
                if inst is not None and inst.prevent_destroy:
                    protected.append(c.address)
            elif c.action == Action.REPLACE and c.lifecycle.prevent_destroy:
                protected.append(c.address)
        if protected:
            raise PreventDestroyViolation(protected)

    async def plan(
        self,
        graph: AttributeGraph | None,
        *,
        destroy: bool = False,
        refresh: bool = True,
    ) -> Plan:
        """Compute the changes needed to make state match *graph*.

        With ``destroy=True`` every tracked resource is planned for destruction
        and *graph* is ignored.
        """
        count = 0 if graph is None else len(graph)
        logger.info("Planning %d resources (destroy=%s, refresh=%s)", count, destroy, refresh)
        # Only lock when refresh may write state.
        lock_cm = self._lock("plan") if refresh else contextlib.nullcontext()
        with lock_cm:
            state = self._load_state()

            if refresh:
                changed = await self._refresh_state_in_place(state)
                if changed:
                    state.serial += 1
                    state.save(self._state_path)

            state_addrs = set(state.resources)
            outputs: dict[str, Any] = {}
            planned_outputs: dict[str, Any] = {}

            if destroy or graph is None:
                changes = self._plan_deletes(state, state_addrs)
            else:
                for node in graph:
                    self._registry.get(node.kind)
                dep_map = graph.resolve_references()
                order = graph.topological_order(dep_map)

                errors: list[str] = []
                planned_values: dict[str, dict[str, Any]] = {}
                changes = [
                    self._classify_change(
                        graph.get(addr), state, dep_map[addr], planned_values, errors
                    )
                    for addr in order
                ]
                if errors:
                    raise ValidationError(errors)
                changes.extend(self._plan_deletes(state, state_addrs - set(graph.addresses)))

                outputs = dump_value(graph.outputs)
                planned_outputs = {
                    name: display_value(evaluate(value, planned_values.get))
                    for name, value in graph.outputs.items()
                }

            changes.extend(self._plan_deposed(state))
            self._check_prevent_destroy(changes, state)

            metadata = PlanMetadata(
                created_at=datetime.now(UTC),
                destroy=destroy,
                refresh=refresh,
                state_lineage=state.lineage,
                state_serial=state.serial,
                state_digest=compute_state_digest(state),
                config_digest=_compute_config_digest(None if destroy else graph),
                engine_version=__version__,
            )

            plan = Plan(
                metadata=metadata,
                changes=changes,
                outputs=outputs,
                planned_outputs=planned_outputs,
            )
            logger.info("Plan: %s", plan.summary())
            return plan

    # ── Apply ────────────────────────────────────────────────────────

    def _build_apply_operations(self, plan: Plan, state: State) -> dict[str, Operation]:
        ops: dict[str, Operation] = {}
        # address -> op dependents wait on (create half of a replace, or the create/update)
        provides: dict[str, str] = {}
        deposed_keys: dict[str, str] = {}
        destroy_first: dict[str, str] = {}
        before_destroy: dict[str, str] = {}
        orphans: set[str] = set()
        changes_by_addr: dict[str, ResourceChange] = {}

        def _add(op: Operation) -> None:
            if op.key in ops:
                raise ValueError(f"Duplicate operation key in plan: {op.key}")
            ops[op.key] = op

        for c in plan.changes:
            addr = c.address
            match c.action:
                case Action.NOOP:
                    continue
                case Action.CREATE:
                    _add(CreateOperation(key=operation_key(addr, "create"), change=c))
                    provides[addr] = operation_key(addr, "create")
                case Action.UPDATE:
                    _add(UpdateOperation(key=operation_key(addr, "update"), change=c))
                    provides[addr] = operation_key(addr, "update")
                case Action.REPLACE:
                    cbd = c.lifecycle.create_before_destroy
                    create_key = operation_key(addr, "create")
                    destroy_key = operation_key(addr, "destroy")
                    _add(CreateOperation(key=create_key, change=c, depose_prior=cbd))
                    _add(DestroyOperation(key=destroy_key, change=c, deposed=cbd))
                    provides[addr] = create_key
                    if cbd:
                        ops[destroy_key].deps.append(create_key)
                        before_destroy[addr] = destroy_key
                    else:
                        ops[create_key].deps.append(destroy_key)
                        destroy_first[addr] = destroy_key
                case Action.DESTROY if c.reason == "deposed":
                    key = operation_key(addr, "destroy") + "#deposed"
                    _add(DestroyOperation(key=key, change=c, deposed=True))
                    deposed_keys[addr] = key
                case Action.DESTROY:
                    _add(DestroyOperation(key=operation_key(addr, "destroy"), change=c))
                    orphans.add(addr)
                case _:
                    raise ValueError(f"Unknown action: {c.action}")
            if c.reason != "deposed":
                changes_by_addr[addr] = c

        # create/update: dependencies must run before dependents
        for addr, key in provides.items():
            op = ops[key]
            change = changes_by_addr[addr]
            op.deps.extend(provides[d] for d in change.depends_on if d in provides and d != addr)
            # A leftover deposed record must be gone before a new one is deposed.
            if addr in deposed_keys:
                op.deps.append(deposed_keys[addr])

        # destroy-first replace: dependents being replaced the same way go first
        for addr, key in destroy_first.items():
            for other, other_key in destroy_first.items():
                inst = state.resources.get(other)
                if other != addr and inst is not None and addr in inst.dependencies:
                    ops[key].deps.append(other_key)

        # create-before-destroy: dependents move to the new resource first
        for addr, key in before_destroy.items():
            for other, change in changes_by_addr.items():
                if other != addr and other in provides and addr in change.depends_on:
                    ops[key].deps.append(provides[other])

        # deletes: dependents must be deleted before dependencies (invert edges)
        for addr in orphans:
            inst = state.resources.get(addr)
            if inst is None:
                raise ValueError(f"Missing state for destroy operation: {addr}")
            for dep in inst.dependencies:
                if dep in orphans:
                    ops[operation_key(dep, "destroy")].deps.append(operation_key(addr, "destroy"))

        # Ensure create/update runs before deletes (Terraform-like default ordering).
        if provides and orphans:
            if BARRIER_KEY in ops:
                raise ValueError(f"Barrier operation key conflicts with plan: {BARRIER_KEY}")
            _add(BarrierOperation(key=BARRIER_KEY, deps=sorted(provides.values())))
            for addr in orphans:
                ops[operation_key(addr, "destroy")].deps.append(BARRIER_KEY)

        return ops

    def _operation_order(self, plan: Plan, state: State) -> list[Operation]:
        """Compute a deterministic operation order using an operation graph."""
        ops = self._build_apply_operations(plan, state)
        dep_map = {k: op.deps for k, op in ops.items()}
        position = {c.address: i for i, c in enumerate(plan.changes)}
        priorities = {
            k: position.get(op.address, len(plan.changes)) for k, op in ops.items()
        }
        order = DependencyGraph(ops.keys(), dep_map, priorities=priorities).topological_order()
        return [ops[k] for k in order]

    def operation_order(self, plan: Plan) -> list[Operation]:
        """Order in which *plan*'s operations would run with no parallelism."""
        return self._operation_order(plan, self._load_state_for_apply(plan))

    def abort(self) -> None:
        """Stop the running apply from starting new operations."""
        if self._executor is not None:
            self._executor.abort()

    async def _sync_records(self, plan: Plan, store: StateStore) -> None:
        """Rewrite dependencies and prevent_destroy of unchanged nodes whose record is stale."""
        for c in plan.changes:
            if c.action != Action.NOOP or c.reason != "record":
                continue
            inst = store.get(c.address)
            if inst is None:
                continue
            logger.debug("Updating recorded lifecycle of %s", c.address)
            await store.commit(
                inst.model_copy(
                    update={
                        "dependencies": list(c.depends_on),
                        "prevent_destroy": c.lifecycle.prevent_destroy,
                    }
                )
            )

    async def _commit_outputs(self, plan: Plan, store: StateStore) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for name, raw in plan.outputs.items():
            value = evaluate(parse_value(raw), store.attributes)
            if contains_unknown(value):
                logger.warning("Output %s could not be resolved; leaving it unset", name)
                continue
            values[name] = value
        await store.commit_outputs(values)
        return values

    async def apply(self, plan: Plan, *, progress: ProgressCallback | None = None) -> ApplyResult:
        """Apply *plan*, raising ``ApplyError`` unless every change applied."""
        with self._lock("apply"):
            state = self._load_state_for_apply(plan)

            # Stale plan detection
            if state.lineage != plan.metadata.state_lineage:
                raise StalePlanError("State lineage changed; re-run plan")
            if state.serial != plan.metadata.state_serial:
                raise StalePlanError("State serial changed; re-run plan")
            if compute_state_digest(state) != plan.metadata.state_digest:
                raise StalePlanError("State digest changed; re-run plan")

            store = StateStore(self._state_path, state)
            await self._sync_records(plan, store)
            ordered_ops = self._operation_order(plan, state)
            executor = ApplyExecutor(
                {op.key: op for op in ordered_ops},
                OperationContext(store=store, registry=self._registry, runner=self._runner),
                parallelism=self._parallelism,
                progress=progress,
            )
            self._executor = executor
            try:
                result = await executor.run()
            finally:
                self._executor = None

            result.outputs = await self._commit_outputs(plan, store)

        logger.info("Apply finished: %s", result.summary())
        if executor.aborted and result.canceled:
            raise ApplyCanceled(result)
        if not result.ok:
            raise ApplyError(result)
        return result

    # ── Outputs ──────────────────────────────────────────────────────

    def output(self, name: str | None = None) -> Any:
        """Return one root output value, or all of them when *name* is None."""
        state = self._load_state()
        if name is None:
            return dict(state.outputs)
        if name not in state.outputs:
            raise UnknownOutputNameError(name)
        return state.outputs[name]
