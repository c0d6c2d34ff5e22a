"""State management for tracking deployed resources."""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
import os
import tempfile
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

logger = logging.getLogger(__name__)


def _canonical_json(obj: Any) -> str:
    # Stable encoding for hashes/digests. `default=str` keeps it robust for
    # datetimes/paths/etc while staying deterministic enough for our use.
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def compute_attributes_hash(attrs: Mapping[str, Any]) -> str:
    """Compute a stable hash for a resource's stored attributes."""
    payload = _canonical_json(attrs)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _now() -> datetime:
    return datetime.now(UTC)


class ResourceInstance(BaseModel):
    """A tracked resource instance in the state file.

    Attributes:
        address: Unique resource address (e.g., "module.net.azurerm_subnet.web")
        kind: Resource kind (e.g., "azurerm_subnet")
        name: Resource name (e.g., "web")
        module_path: Module instance names the resource was expanded under
        attributes: Attribute values last observed from the provider
        attributes_hash: SHA256 hash for change detection
        declared_attributes: Attribute names set by the configuration
        dependencies: Addresses of dependencies (used for destroy ordering)
        prevent_destroy: Persisted lifecycle flag, checked when the declaration is gone
        tainted: Set when a provisioner failed; forces replacement on next plan
        created_at: When the resource was created
        updated_at: When the resource was last updated
    """

    address: str
    kind: str
    name: str
    module_path: list[str] = Field(default_factory=list)
    attributes: dict[str, Any] = Field(default_factory=dict)
    attributes_hash: str = ""
    declared_attributes: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    prevent_destroy: bool = False
    tainted: bool = False
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class State(BaseModel):
    """Terraform-style state file for tracking deployed resources.

    Attributes:
        version: State file format version
        serial: Incremented on every write
        lineage: Random id of this state's history, set on creation
        resources: Mapping of resource addresses to instances
        deposed: Old halves of in-flight create-before-destroy replacements
        outputs: Root output values from the last apply
    """

    version: int = 1
    serial: int = 0
    lineage: str = Field(default_factory=lambda: str(uuid.uuid4()))
    resources: dict[str, ResourceInstance] = Field(default_factory=dict)
    deposed: dict[str, ResourceInstance] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)

    def save(self, path: Path) -> None:
        """Save state to a JSON file.

        - Writes atomically (temp file + rename)
        - Writes a `.backup` copy of the previous state when overwriting
        """
        path.parent.mkdir(parents=True, exist_ok=True)

        backup_path = Path(str(path) + ".backup")
        # Avoid TOCTOU race between exists() and read_bytes().
        with contextlib.suppress(FileNotFoundError):
            backup_path.write_bytes(path.read_bytes())

        data = self.model_dump(mode="json")
        content = json.dumps(data, indent=2, sort_keys=True) + "\n"

        fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
        tmp_file = Path(tmp_path)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            tmp_file.replace(path)
        finally:
            with contextlib.suppress(FileNotFoundError):
                tmp_file.unlink()
        logger.debug("State saved: serial=%d path=%s", self.serial, path)

    @classmethod
    def load(cls, path: Path) -> State:
        """Load state from a JSON file."""
        from cloud_provisioner.engine.errors import CorruptStateError

        try:
            state = cls.model_validate_json(path.read_bytes())
        except (OSError, PydanticValidationError, UnicodeDecodeError) as exc:
            raise CorruptStateError(f"Cannot read state file {path}: {exc}") from exc
        logger.debug("State loaded from %s", path)
        return state

    @classmethod
    def load_or_create(cls, path: Path) -> State:
        """Load existing state or create a new one."""
        if path.exists():
            return cls.load(path)
        logger.debug("Created new state for %s", path)
        return cls()


def compute_state_digest(state: State) -> str:
    """Compute a stable digest of state content (excluding timestamps).

    Used for stale-plan detection. Timestamps are left out so that
    they never force a re-plan.
    """
    resources = []
    for address, inst in sorted(state.resources.items(), key=lambda kv: kv[0]):
        resources.append(
            {
                "address": address,
                "kind": inst.kind,
                "attributes_hash": inst.attributes_hash,
                "dependencies": sorted(inst.dependencies),
                "tainted": inst.tainted,
            }
        )

    digestable = {
        "version": state.version,
        "lineage": state.lineage,
        "serial": state.serial,
        "resources": resources,
        "deposed": sorted(state.deposed),
    }
    payload = _canonical_json(digestable)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class StateStore:
    """Single-writer access to the state file during an apply.

    Every mutation bumps the serial and rewrites the whole file atomically.
    Mutations are serialized, so concurrent operations never interleave
    partial writes; readers of the file see either the old or the new
    snapshot.
    """

    def __init__(self, path: Path, state: State | None = None) -> None:
        self._path = path
        self._state = state
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def state(self) -> State:
        if self._state is None:
            self._state = self.load()
        return self._state

    def load(self) -> State:
        self._state = State.load_or_create(self._path)
        return self._state

    def get(self, address: str) -> ResourceInstance | None:
        return self.state.resources.get(address)

    def attributes(self, address: str) -> dict[str, Any] | None:
        inst = self.get(address)
        return None if inst is None else inst.attributes

    async def _persist(self) -> None:
        state = self.state
        state.serial += 1
        snapshot = state.model_copy(deep=True)
        await asyncio.to_thread(snapshot.save, self._path)

    async def commit(self, instance: ResourceInstance) -> None:
        """Record the latest observed attributes for one resource."""
        async with self._lock:
            instance.attributes_hash = compute_attributes_hash(instance.attributes)
            instance.updated_at = _now()
            self.state.resources[instance.address] = instance
            await self._persist()
        logger.debug("Committed %s", instance.address)

    async def remove(self, address: str) -> None:
        """Delete a record after a successful destroy."""
        async with self._lock:
            self.state.resources.pop(address, None)
            await self._persist()
        logger.debug("Removed %s", address)

    async def depose(self, address: str) -> ResourceInstance | None:
        """Move the current record aside while its replacement is created."""
        async with self._lock:
            inst = self.state.resources.pop(address, None)
            if inst is None:
                return None
            self.state.deposed[address] = inst
            await self._persist()
        logger.debug("Deposed %s", address)
        return inst

    async def remove_deposed(self, address: str) -> None:
        async with self._lock:
            self.state.deposed.pop(address, None)
            await self._persist()

    async def commit_outputs(self, outputs: Mapping[str, Any]) -> None:
        async with self._lock:
            if dict(outputs) == self.state.outputs:
                return
            self.state.outputs = dict(outputs)
            await self._persist()
