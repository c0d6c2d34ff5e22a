"""Engine-facing handler interfaces."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from cloud_provisioner.core.state import ResourceInstance


@dataclass(frozen=True)
class EngineContext:
    """Context passed to handlers: which declared resource is being acted on."""

    address: str
    kind: str
    name: str
    module_path: tuple[str, ...] = ()


class ResourceHandler:
    """Base class for resource handlers.

    A handler implements one or more resource kinds against a remote API.
    The engine hands it fully resolved attribute values (no expressions, no
    unknowns) and stores whatever attribute mapping it returns. Subclass and
    override the CRUD coroutines. Validation is optional.
    """

    def validate(self, ctx: EngineContext, attributes: dict[str, Any]) -> list[str]:
        """Single-resource validation on the declared (possibly unknown) values.

        Return list of error messages (empty = valid).
        """
        _ = ctx, attributes
        return []

    async def read(self, ctx: EngineContext, prior: ResourceInstance) -> dict[str, Any] | None:
        """Read the resource back. Return None if it no longer exists."""
        raise NotImplementedError

    async def create(self, ctx: EngineContext, attributes: dict[str, Any]) -> dict[str, Any]:
        """Create the resource. Return stored attributes."""
        raise NotImplementedError

    async def update(
        self, ctx: EngineContext, attributes: dict[str, Any], prior: ResourceInstance
    ) -> dict[str, Any]:
        """Update the resource in place. Return stored attributes."""
        raise NotImplementedError

    async def delete(self, ctx: EngineContext, prior: ResourceInstance) -> None:
        """Delete the resource."""
        raise NotImplementedError
