"""Default resource kind registry factory."""

from __future__ import annotations

import importlib.metadata
import logging
from typing import TYPE_CHECKING, Any

from cloud_provisioner.config.loader import ConfigError
from cloud_provisioner.engine.registry import ResourceKindRegistry
from cloud_provisioner.providers import null

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "cloud_provisioner.providers"


def _load_provider(name: str) -> Any:
    eps = list(importlib.metadata.entry_points(group=ENTRY_POINT_GROUP, name=name))
    if not eps:
        raise ConfigError(f"No provider named '{name}' in entry point group '{ENTRY_POINT_GROUP}'")
    register = eps[0].load()
    if not callable(register):
        raise ConfigError(f"Provider '{name}' entry point is not callable")
    return register


def default_registry(
    providers: Mapping[str, Mapping[str, Any]] | None = None,
) -> ResourceKindRegistry:
    """Create a fresh registry with the built-in kinds plus the configured providers.

    Each provider is an entry point whose target is called as
    ``register(registry, settings)``.
    """
    registry = ResourceKindRegistry()
    null.register(registry, {})

    for name, settings in (providers or {}).items():
        if name == null.PROVIDER_NAME:
            continue
        register = _load_provider(name)
        try:
            register(registry, dict(settings))
        except ValueError as exc:
            raise ConfigError(f"Provider '{name}' failed to register: {exc}") from exc
        logger.debug("Registered provider %s", name)

    return registry
