"""Configuration models for YAML-based provisioning."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PrivateAttr
from pydantic_settings import BaseSettings, SettingsConfigDict

from cloud_provisioner.engine.graph import AttributeGraph
from cloud_provisioner.engine.types import (
    Lifecycle,  # noqa: TC001 (pydantic needs it at runtime)
    ProvisionerSpec,  # noqa: TC001 (pydantic needs it at runtime)
)

_NAME_PATTERN = r"^[A-Za-z0-9_-]+$"


class EngineSettings(BaseSettings):
    """Engine tuning knobs.

    Fields can be set via the YAML ``settings`` section (constructor kwargs) or
    environment variables with the ``PROVISIONER_`` prefix. Constructor kwargs
    take precedence.
    """

    model_config = SettingsConfigDict(env_prefix="PROVISIONER_", extra="ignore")

    parallelism: int = Field(default=10, ge=1)
    max_module_depth: int = Field(default=16, ge=1)
    provisioner_max_attempts: int = Field(default=3, ge=1)
    provisioner_base_delay: float = Field(default=2.0, ge=0)
    provisioner_max_delay: float = Field(default=30.0, ge=0)
    lock_timeout: float = Field(default=0.0, ge=0)


def _none_to_list(v: Any) -> Any:
    return v if v is not None else []


def _none_to_dict(v: Any) -> Any:
    return v if v is not None else {}


class VariableDecl(BaseModel):
    """A module (or root) input. A variable without ``default`` is required."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["string", "number", "bool", "list", "map"] | None = None
    description: str | None = None
    default: Any = None

    @property
    def required(self) -> bool:
        return "default" not in self.model_fields_set


class ResourceDecl(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: str = Field(pattern=_NAME_PATTERN)
    name: str = Field(pattern=_NAME_PATTERN)
    attributes: Annotated[dict[str, Any], BeforeValidator(_none_to_dict)] = {}
    depends_on: Annotated[list[str], BeforeValidator(_none_to_list)] = []
    lifecycle: Lifecycle = Field(default_factory=Lifecycle)
    provisioners: Annotated[list[ProvisionerSpec], BeforeValidator(_none_to_list)] = []


class ModuleDecl(BaseModel):
    """A module instance: a named child scope built from ``source``."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(pattern=_NAME_PATTERN)
    source: str = Field(min_length=1)
    inputs: Annotated[dict[str, Any], BeforeValidator(_none_to_dict)] = {}


def _variables(v: Any) -> Any:
    if not isinstance(v, dict):
        return _none_to_dict(v)
    # YAML reads a bare `null:` key as None.
    if None in v:
        raise ValueError('a key was read as null; quote it in YAML, for example "null":')
    return {k: ({} if d is None else d) for k, d in v.items()}


class ModuleDefinition(BaseModel):
    """Contents of a ``module.yaml`` file; also the body of the root config."""

    model_config = ConfigDict(extra="forbid")

    variables: Annotated[dict[str, VariableDecl], BeforeValidator(_variables)] = {}
    resources: Annotated[list[ResourceDecl], BeforeValidator(_none_to_list)] = []
    modules: Annotated[list[ModuleDecl], BeforeValidator(_none_to_list)] = []
    outputs: Annotated[dict[str, Any], BeforeValidator(_none_to_dict)] = {}


class Config(ModuleDefinition):
    """Root configuration file: a module definition plus engine-wide settings."""

    settings: Annotated[dict[str, Any], BeforeValidator(_none_to_dict)] = {}
    state_path: Path = Path(".provisioner-state.json")
    providers: Annotated[dict[str, dict[str, Any]], BeforeValidator(_variables)] = {}
    config_dir: Path = Path()

    _engine_settings: EngineSettings | None = PrivateAttr(default=None)
    _variable_values: dict[str, Any] = PrivateAttr(default_factory=dict)
    _graph: AttributeGraph | None = PrivateAttr(default=None)

    @property
    def engine_settings(self) -> EngineSettings:
        if self._engine_settings is None:
            self._engine_settings = EngineSettings(**self.settings)
        return self._engine_settings

    @property
    def variable_values(self) -> dict[str, Any]:
        """Resolved root variable values."""
        return self._variable_values

    @property
    def graph(self) -> AttributeGraph:
        """The expanded attribute graph (set by the loader)."""
        if self._graph is None:
            raise RuntimeError("Configuration has not been expanded; use load_config()")
        return self._graph
