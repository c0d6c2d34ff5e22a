"""Concurrent execution of an apply operation graph."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Literal

from cloud_provisioner.engine.errors import ProvisionerFailure
from cloud_provisioner.engine.types import ApplyResult, NodeStatus

if TYPE_CHECKING:
    from collections.abc import Mapping

    from cloud_provisioner.engine.operations import Operation, OperationContext
    from cloud_provisioner.engine.types import ResourceChange

logger = logging.getLogger(__name__)

ProgressCallback = Callable[["ResourceChange", Literal["start", "done"]], None]

# When both halves of a replace end differently, the address reports the worst.
_SEVERITY = {
    NodeStatus.APPLIED: 0,
    NodeStatus.CANCELED: 1,
    NodeStatus.BLOCKED: 2,
    NodeStatus.TAINTED: 3,
    NodeStatus.FAILED: 4,
}


class ApplyExecutor:
    """Runs operations as soon as their dependencies have completed.

    Every operation gets its own task that waits on its dependencies' completion
    events; a semaphore bounds how many run at once. A failed or tainted
    operation blocks everything downstream of it while independent branches
    carry on. ``abort()`` stops new operations from starting: those already
    running finish, the rest are reported canceled.

    Barrier operations only order phases. They complete even when something
    they wait on failed, so a failure in one branch never blocks unrelated
    deletes.
    """

    def __init__(
        self,
        operations: Mapping[str, Operation],
        ctx: OperationContext,
        *,
        parallelism: int = 10,
        progress: ProgressCallback | None = None,
    ) -> None:
        if parallelism < 1:
            raise ValueError("parallelism must be at least 1")
        self._ops = dict(operations)
        self._ctx = ctx
        self._parallelism = parallelism
        self._progress = progress
        self._abort = asyncio.Event()
        self._done: dict[str, asyncio.Event] = {}
        self._outcomes: dict[str, NodeStatus] = {}
        self._remaining: dict[str, int] = {}
        self._result = ApplyResult()

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def abort(self) -> None:
        """Stop scheduling new operations."""
        if not self._abort.is_set():
            logger.warning("Abort requested; waiting for running operations to finish")
        self._abort.set()

    def _record(self, op: Operation, status: NodeStatus, error: str | None = None) -> None:
        self._outcomes[op.key] = status
        self._done[op.key].set()
        if op.change is None:
            return

        address = op.address
        current = self._result.statuses.get(address)
        if current is None or _SEVERITY[status] > _SEVERITY[current]:
            self._result.statuses[address] = status
        if error is not None:
            self._result.errors.setdefault(address, error)

        self._remaining[address] -= 1
        if self._remaining[address] == 0 and self._result.statuses[address] == NodeStatus.APPLIED:
            self._result.applied.append(op.change)
            if self._progress:
                self._progress(op.change, "done")

    async def _run_one(self, op: Operation, semaphore: asyncio.Semaphore) -> None:
        for dep in op.deps:
            await self._done[dep].wait()

        is_barrier = op.change is None
        upstream = [self._outcomes[d] for d in op.deps]
        if not is_barrier and any(s != NodeStatus.APPLIED for s in upstream):
            if all(s in (NodeStatus.APPLIED, NodeStatus.CANCELED) for s in upstream):
                self._record(op, NodeStatus.CANCELED)
            else:
                logger.debug("Skipping %s: a dependency did not apply", op.key)
                self._record(op, NodeStatus.BLOCKED, "blocked by a failed dependency")
            return

        async with semaphore:
            if self._abort.is_set():
                self._record(op, NodeStatus.CANCELED)
                return

            if op.change is not None and self._progress:
                self._progress(op.change, "start")
            logger.debug("Running %s", op.key)
            try:
                await op.run(self._ctx)
            except ProvisionerFailure as e:
                logger.error("%s", e)
                self._record(op, NodeStatus.TAINTED, str(e))
            except Exception as e:
                logger.error("%s failed: %s", op.key, e)
                self._record(op, NodeStatus.FAILED, str(e))
            else:
                self._record(op, NodeStatus.APPLIED)

    async def run(self) -> ApplyResult:
        """Run every operation and return the per-address outcome."""
        self._done = {key: asyncio.Event() for key in self._ops}
        self._remaining = {}
        for op in self._ops.values():
            if op.change is not None:
                self._remaining[op.address] = self._remaining.get(op.address, 0) + 1

        missing = {d for op in self._ops.values() for d in op.deps} - set(self._ops)
        if missing:
            raise ValueError(f"Operations depend on unknown keys: {sorted(missing)}")

        logger.info(
            "Applying %d operations (parallelism=%d)", len(self._ops), self._parallelism
        )
        semaphore = asyncio.Semaphore(self._parallelism)
        # Preserve the given order so that ties start in plan order.
        async with asyncio.TaskGroup() as tg:
            for op in self._ops.values():
                tg.create_task(self._run_one(op, semaphore))

        return self._result
