"""Engine types (lifecycle, plan, changes, apply results)."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

from cloud_provisioner.engine.errors import StalePlanError

if TYPE_CHECKING:
    from cloud_provisioner.engine.graph import AttributeGraph


# Connection settings masked whenever a plan is written to disk.
SENSITIVE_CONNECTION_KEYS = ("password", "private_key")
SENSITIVE_LABEL = "(sensitive)"


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DESTROY = "destroy"
    NOOP = "no-op"


class NodeStatus(str, Enum):
    APPLIED = "applied"
    FAILED = "failed"
    BLOCKED = "blocked"
    TAINTED = "tainted"
    CANCELED = "canceled"


class Lifecycle(BaseModel):
    """Per-resource lifecycle policy."""

    model_config = ConfigDict(extra="forbid")

    create_before_destroy: bool = False
    prevent_destroy: bool = False
    ignore_changes: list[str] = Field(default_factory=list)


class ProvisionerSpec(BaseModel):
    """A remote script run once after the resource is created.

    ``connection`` keeps its raw (unevaluated) form; values may reference
    ``self`` or other resources and are resolved right before the run.
    """

    model_config = ConfigDict(extra="forbid")

    type: Literal["remote-exec"] = "remote-exec"
    script: str | None = None
    inline: list[str] = Field(default_factory=list)
    connection: dict[str, Any]

    @model_validator(mode="after")
    def _exactly_one_source(self) -> Self:
        if (self.script is None) == (not self.inline):
            msg = "Exactly one of 'script' or 'inline' must be provided"
            raise ValueError(msg)
        return self

    def load_script(self) -> str:
        if self.script is not None:
            return Path(self.script).read_text(encoding="utf-8")
        return "\n".join(self.inline) + "\n"


class PlanMetadata(BaseModel):
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    destroy: bool
    refresh: bool
    state_lineage: str
    state_serial: int
    state_digest: str
    config_digest: str
    engine_version: str


class ResourceChange(BaseModel):
    address: str
    kind: str
    action: Action
    desired: dict[str, Any] | None = None
    prior: dict[str, Any] | None = None
    planned: dict[str, Any] | None = None
    diff: dict[str, Any] | None = None
    depends_on: list[str] = Field(default_factory=list)
    lifecycle: Lifecycle = Field(default_factory=Lifecycle)
    provisioners: list[ProvisionerSpec] = Field(default_factory=list)
    requires_replace: list[str] = Field(default_factory=list)
    reason: str | None = None

    @property
    def name(self) -> str:
        return self.address.rsplit(".", 1)[-1]

    @property
    def module_path(self) -> tuple[str, ...]:
        parts = self.address.split(".")[:-2]
        return tuple(parts[1::2])


class Plan(BaseModel):
    metadata: PlanMetadata
    changes: list[ResourceChange]
    # Output expressions in source form; evaluated against state after apply.
    outputs: dict[str, Any] = Field(default_factory=dict)
    planned_outputs: dict[str, Any] = Field(default_factory=dict)

    def summary(self) -> dict[str, int]:
        counts = {a.value: 0 for a in Action}
        for c in self.changes:
            counts[c.action.value] += 1
        return counts

    def get(self, address: str) -> ResourceChange | None:
        return next(
            (c for c in self.changes if c.address == address and c.reason != "deposed"), None
        )

    @property
    def has_changes(self) -> bool:
        return any(c.action != Action.NOOP for c in self.changes)

    @property
    def has_outdated_records(self) -> bool:
        """Unchanged nodes whose recorded dependencies or lifecycle need rewriting."""
        return any(c.action == Action.NOOP and c.reason == "record" for c in self.changes)

    @property
    def has_masked_connections(self) -> bool:
        return any(
            spec.connection.get(key) == SENSITIVE_LABEL
            for c in self.changes
            for spec in c.provisioners
            for key in SENSITIVE_CONNECTION_KEYS
        )

    def restore_connections(self, graph: AttributeGraph) -> None:
        """Put back connection secrets masked by :meth:`save` from the expanded config."""
        for c in self.changes:
            masked = [
                (i, key)
                for i, spec in enumerate(c.provisioners)
                for key in SENSITIVE_CONNECTION_KEYS
                if spec.connection.get(key) == SENSITIVE_LABEL
            ]
            if not masked:
                continue
            node = graph.get(c.address) if c.address in graph else None
            if node is None or len(node.provisioners) != len(c.provisioners):
                raise StalePlanError(
                    f"Provisioners of {c.address} changed since the plan was saved"
                )
            for i, key in masked:
                c.provisioners[i].connection[key] = node.provisioners[i].connection.get(key)

    def save(self, path: Path) -> None:
        """Write the plan as JSON with connection secrets masked."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(mode="json")
        for change in data["changes"]:
            for spec in change["provisioners"]:
                for key in SENSITIVE_CONNECTION_KEYS:
                    if spec["connection"].get(key) is not None:
                        spec["connection"][key] = SENSITIVE_LABEL
        path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")

    @classmethod
    def load(cls, path: Path) -> Plan:
        path = Path(path)
        return cls.model_validate_json(path.read_text(encoding="utf-8"))


class ApplyResult(BaseModel):
    """Per-node outcome of an apply run."""

    applied: list[ResourceChange] = Field(default_factory=list)
    statuses: dict[str, NodeStatus] = Field(default_factory=dict)
    errors: dict[str, str] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)

    def _with_status(self, status: NodeStatus) -> list[str]:
        return [addr for addr, s in self.statuses.items() if s == status]

    @property
    def failed(self) -> list[str]:
        return self._with_status(NodeStatus.FAILED)

    @property
    def blocked(self) -> list[str]:
        return self._with_status(NodeStatus.BLOCKED)

    @property
    def tainted(self) -> list[str]:
        return self._with_status(NodeStatus.TAINTED)

    @property
    def canceled(self) -> list[str]:
        return self._with_status(NodeStatus.CANCELED)

    @property
    def ok(self) -> bool:
        return all(s == NodeStatus.APPLIED for s in self.statuses.values())

    def summary(self) -> dict[str, int]:
        counts = {a.value: 0 for a in Action}
        for c in self.applied:
            counts[c.action.value] += 1
        return counts
