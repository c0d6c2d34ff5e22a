"""Plan and apply engine for declarative resources."""

from cloud_provisioner.engine.engine import Engine
from cloud_provisioner.engine.errors import (
    ApplyCanceled,
    ApplyError,
    CyclicDependencyError,
    DuplicateNodeError,
    EngineError,
    PreventDestroyViolation,
    ProviderOperationError,
    ProvisionerFailure,
    StalePlanError,
    StateLockError,
    UnknownReferenceError,
    UnknownResourceKindError,
    ValidationError,
)
from cloud_provisioner.engine.graph import AttributeGraph, DependencyGraph, Node
from cloud_provisioner.engine.handlers import EngineContext, ResourceHandler
from cloud_provisioner.engine.registry import ResourceKindRegistration, ResourceKindRegistry
from cloud_provisioner.engine.types import (
    Action,
    ApplyResult,
    Lifecycle,
    NodeStatus,
    Plan,
    PlanMetadata,
    ProvisionerSpec,
    ResourceChange,
)

__all__ = [
    "Action",
    "ApplyCanceled",
    "ApplyError",
    "ApplyResult",
    "AttributeGraph",
    "CyclicDependencyError",
    "DependencyGraph",
    "DuplicateNodeError",
    "Engine",
    "EngineContext",
    "EngineError",
    "Lifecycle",
    "Node",
    "NodeStatus",
    "Plan",
    "PlanMetadata",
    "PreventDestroyViolation",
    "ProviderOperationError",
    "ProvisionerFailure",
    "ProvisionerSpec",
    "ResourceChange",
    "ResourceHandler",
    "ResourceKindRegistration",
    "ResourceKindRegistry",
    "StalePlanError",
    "StateLockError",
    "UnknownReferenceError",
    "UnknownResourceKindError",
    "ValidationError",
]
