"""Apply operations.

Apply runs a graph of operations rather than a list of changes. Each operation
knows how to apply itself and lists the operations it waits for. A replace
becomes two operations (create and destroy) so that ordering between the two
halves is just another edge in the graph.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Protocol

from pydantic import ValidationError as PydanticValidationError

from cloud_provisioner.core.state import ResourceInstance
from cloud_provisioner.engine.errors import (
    EngineError,
    ProviderOperationError,
    ProvisionerFailure,
)
from cloud_provisioner.engine.expressions import contains_unknown, parse_value
from cloud_provisioner.engine.graph import evaluate
from cloud_provisioner.engine.handlers import EngineContext

if TYPE_CHECKING:
    from cloud_provisioner.core.state import StateStore
    from cloud_provisioner.engine.registry import ResourceKindRegistry
    from cloud_provisioner.engine.types import ProvisionerSpec, ResourceChange
    from cloud_provisioner.provisioners.runner import ProvisionerRunner

logger = logging.getLogger(__name__)

Phase = Literal["create", "update", "destroy", "barrier"]

BARRIER_KEY = "__engine__.apply_barrier"


@dataclass
class OperationContext:
    """Everything an operation needs while it runs."""

    store: StateStore
    registry: ResourceKindRegistry
    runner: ProvisionerRunner | None = None


class Operation(Protocol):
    key: str
    deps: list[str]
    change: ResourceChange | None

    @property
    def address(self) -> str: ...

    @property
    def phase(self) -> Phase: ...

    async def run(self, ctx: OperationContext) -> bool:
        """Execute this operation.

        Returns:
            True if the operation changed state.
        """


def operation_key(address: str, phase: Phase) -> str:
    return f"{phase}:{address}"


def _engine_ctx(change: ResourceChange) -> EngineContext:
    return EngineContext(
        address=change.address,
        kind=change.kind,
        name=change.name,
        module_path=change.module_path,
    )


def _resolve_desired(
    change: ResourceChange, ctx: OperationContext, operation: str
) -> dict[str, Any]:
    if change.desired is None:
        raise ValueError(f"Missing desired config for {operation}: {change.address}")
    attrs = evaluate(parse_value(change.desired), ctx.store.attributes)
    unresolved = sorted(k for k, v in attrs.items() if contains_unknown(v))
    if unresolved:
        raise ProviderOperationError(
            change.address,
            operation,
            f"unresolved attribute values: {', '.join(unresolved)}",
        )
    return attrs


async def _call_handler(address: str, operation: str, coro: Any) -> Any:
    try:
        return await coro
    except EngineError:
        raise
    except Exception as e:
        raise ProviderOperationError(address, operation, str(e) or type(e).__name__) from e


@dataclass
class BarrierOperation:
    """A no-op node used to enforce ordering between operation phases."""

    key: str
    deps: list[str] = field(default_factory=list)
    change: ResourceChange | None = None

    @property
    def address(self) -> str:
        return self.key

    @property
    def phase(self) -> Phase:
        return "barrier"

    async def run(self, ctx: OperationContext) -> bool:
        _ = ctx
        return False


@dataclass
class CreateOperation:
    key: str
    change: ResourceChange
    deps: list[str] = field(default_factory=list)
    # Set for the create half of a create-before-destroy replace: the current
    # record is deposed once the new resource exists.
    depose_prior: bool = False

    @property
    def address(self) -> str:
        return self.change.address

    @property
    def phase(self) -> Phase:
        return "create"

    async def run(self, ctx: OperationContext) -> bool:
        change = self.change
        handler = ctx.registry.get(change.kind).handler
        attrs = _resolve_desired(change, ctx, "create")

        result = await _call_handler(
            change.address, "create", handler.create(_engine_ctx(change), attrs)
        )
        if self.depose_prior:
            await ctx.store.depose(change.address)

        inst = ResourceInstance(
            address=change.address,
            kind=change.kind,
            name=change.name,
            module_path=list(change.module_path),
            attributes=dict(result),
            declared_attributes=sorted(change.desired or {}),
            dependencies=list(change.depends_on),
            prevent_destroy=change.lifecycle.prevent_destroy,
        )
        await ctx.store.commit(inst)

        if change.provisioners:
            try:
                for spec in change.provisioners:
                    await self._provision(ctx, inst, spec)
            except ProvisionerFailure:
                tainted = inst.model_copy(update={"tainted": True})
                await ctx.store.commit(tainted)
                raise
        return True

    async def _provision(
        self, ctx: OperationContext, inst: ResourceInstance, spec: ProvisionerSpec
    ) -> None:
        from cloud_provisioner.provisioners.runner import ConnectionInfo

        address = inst.address
        if ctx.runner is None:
            raise ProvisionerFailure(address, "no remote executor configured")

        raw = evaluate(
            parse_value(spec.connection), ctx.store.attributes, self_attributes=inst.attributes
        )
        if contains_unknown(raw):
            raise ProvisionerFailure(address, "connection settings reference unknown values")
        try:
            connection = ConnectionInfo.model_validate(raw)
        except PydanticValidationError as e:
            raise ProvisionerFailure(address, f"invalid connection settings: {e}") from e
        try:
            script = spec.load_script()
        except OSError as e:
            raise ProvisionerFailure(address, f"cannot read script {spec.script}: {e}") from e

        await ctx.runner.run(address, connection, script)


@dataclass
class UpdateOperation:
    key: str
    change: ResourceChange
    deps: list[str] = field(default_factory=list)

    @property
    def address(self) -> str:
        return self.change.address

    @property
    def phase(self) -> Phase:
        return "update"

    async def run(self, ctx: OperationContext) -> bool:
        change = self.change
        handler = ctx.registry.get(change.kind).handler
        attrs = _resolve_desired(change, ctx, "update")

        prior_inst = ctx.store.get(change.address)
        if prior_inst is None:
            raise ProviderOperationError(change.address, "update", "resource missing from state")
        for key in change.lifecycle.ignore_changes:
            if key in prior_inst.attributes:
                attrs[key] = prior_inst.attributes[key]
        # Attributes dropped from the declaration are cleared.
        for key in change.diff or {}:
            attrs.setdefault(key, None)

        result = await _call_handler(
            change.address, "update", handler.update(_engine_ctx(change), attrs, prior_inst)
        )
        inst = prior_inst.model_copy(
            update={
                "attributes": dict(result),
                "declared_attributes": sorted(change.desired or {}),
                "dependencies": list(change.depends_on),
                "prevent_destroy": change.lifecycle.prevent_destroy,
            }
        )
        await ctx.store.commit(inst)
        return True


@dataclass
class DestroyOperation:
    key: str
    change: ResourceChange
    deps: list[str] = field(default_factory=list)
    # Destroy the deposed record instead of the current one.
    deposed: bool = False

    @property
    def address(self) -> str:
        return self.change.address

    @property
    def phase(self) -> Phase:
        return "destroy"

    async def run(self, ctx: OperationContext) -> bool:
        change = self.change
        state = ctx.store.state
        prior_inst = (state.deposed if self.deposed else state.resources).get(change.address)
        if prior_inst is None:
            logger.debug("Nothing to destroy for %s", change.address)
            return False

        handler = ctx.registry.get(prior_inst.kind).handler
        await _call_handler(
            change.address, "destroy", handler.delete(_engine_ctx(change), prior_inst)
        )
        if self.deposed:
            await ctx.store.remove_deposed(change.address)
        else:
            await ctx.store.remove(change.address)
        return True
