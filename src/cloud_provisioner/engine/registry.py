"""Resource kind registry for handler dispatch."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from cloud_provisioner.engine.errors import UnknownResourceKindError

if TYPE_CHECKING:
    from cloud_provisioner.engine.handlers import ResourceHandler


@dataclass(frozen=True)
class ResourceKindRegistration:
    kind: str
    handler: ResourceHandler
    # Attributes that cannot change in place; a diff on any of them forces replace.
    replace_on_change: frozenset[str] = field(default_factory=frozenset)


class ResourceKindRegistry:
    """Registry mapping kind -> (handler, replacement rules)."""

    def __init__(self) -> None:
        self._registrations: dict[str, ResourceKindRegistration] = {}

    def register(
        self,
        kind: str,
        handler: ResourceHandler,
        *,
        replace_on_change: Iterable[str] = (),
    ) -> None:
        if not isinstance(kind, str) or not kind:
            raise ValueError("Resource kind must be a non-empty string")

        if kind in self._registrations:
            raise ValueError(f"Resource kind already registered: {kind}")

        self._registrations[kind] = ResourceKindRegistration(
            kind=kind,
            handler=handler,
            replace_on_change=frozenset(replace_on_change),
        )

    def get(self, kind: str) -> ResourceKindRegistration:
        try:
            return self._registrations[kind]
        except KeyError as e:
            raise UnknownResourceKindError(kind) from e

    def __contains__(self, kind: object) -> bool:
        return kind in self._registrations

    @property
    def kinds(self) -> list[str]:
        return sorted(self._registrations)
