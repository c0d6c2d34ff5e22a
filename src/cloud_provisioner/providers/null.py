"""The ``null`` provider.

``null_resource`` manages nothing remote. It stores its attributes, gets a
generated ``id`` and is replaced whenever its ``triggers`` change, which makes
it the usual anchor for provisioners that should re-run on demand.
"""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Any

from cloud_provisioner.engine.expressions import UNKNOWN
from cloud_provisioner.engine.handlers import ResourceHandler

if TYPE_CHECKING:
    from cloud_provisioner.core.state import ResourceInstance
    from cloud_provisioner.engine.handlers import EngineContext
    from cloud_provisioner.engine.registry import ResourceKindRegistry

PROVIDER_NAME = "null"
NULL_RESOURCE = "null_resource"


class NullResourceHandler(ResourceHandler):
    def validate(self, ctx: EngineContext, attributes: dict[str, Any]) -> list[str]:
        triggers = attributes.get("triggers")
        if triggers is None or triggers is UNKNOWN or isinstance(triggers, dict):
            return []
        return ["triggers must be a mapping"]

    async def read(self, ctx: EngineContext, prior: ResourceInstance) -> dict[str, Any] | None:
        return dict(prior.attributes)

    async def create(self, ctx: EngineContext, attributes: dict[str, Any]) -> dict[str, Any]:
        return {**attributes, "id": str(secrets.randbits(63))}

    async def update(
        self, ctx: EngineContext, attributes: dict[str, Any], prior: ResourceInstance
    ) -> dict[str, Any]:
        return {**attributes, "id": prior.attributes.get("id")}

    async def delete(self, ctx: EngineContext, prior: ResourceInstance) -> None:
        return None


def register(registry: ResourceKindRegistry, settings: dict[str, Any]) -> None:
    _ = settings
    registry.register(NULL_RESOURCE, NullResourceHandler(), replace_on_change=("triggers",))
