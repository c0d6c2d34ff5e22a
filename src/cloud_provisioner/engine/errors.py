"""Engine error types."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Sequence


class EngineError(Exception):
    """Base exception for engine errors."""


class UnknownResourceKindError(EngineError):
    """Raised when a resource kind has no registration/handler."""

    def __init__(self, kind: str) -> None:
        super().__init__(f"Unknown resource kind: {kind}")
        self.kind = kind


class DuplicateNodeError(EngineError):
    """Raised when two declarations share the same address."""

    def __init__(self, address: str) -> None:
        super().__init__(f"Duplicate resource address: {address}")
        self.address = address


class ExpressionError(EngineError):
    """Raised for malformed ``${...}`` expressions."""


class UnknownReferenceError(EngineError):
    """Raised when an expression or ``depends_on`` entry names a missing target."""

    def __init__(self, source: str, target: str) -> None:
        super().__init__(f"{source} references unknown target '{target}'")
        self.source = source
        self.target = target


class CyclicDependencyError(EngineError):
    """Raised when dependencies contain a cycle.

    ``cycle`` lists the nodes along the cycle, first node repeated at the end.
    """

    def __init__(self, cycle: list[str]) -> None:
        msg = "Dependency cycle detected"
        if cycle:
            msg += f": {' -> '.join(cycle)}"
        super().__init__(msg)
        self.cycle = cycle

    @property
    def nodes(self) -> list[str]:
        return self.cycle[:-1] if len(self.cycle) > 1 else list(self.cycle)


class ExpansionError(EngineError):
    """Base class for module expansion failures."""


class MissingRequiredVariableError(ExpansionError):
    def __init__(self, scope: str, variable: str) -> None:
        super().__init__(f"{scope}: required variable '{variable}' is not set")
        self.scope = scope
        self.variable = variable


class UndeclaredVariableError(ExpansionError):
    def __init__(self, scope: str, variable: str) -> None:
        super().__init__(f"{scope}: variable '{variable}' is not declared")
        self.scope = scope
        self.variable = variable


class UnknownOutputError(ExpansionError):
    def __init__(self, module: str, output: str) -> None:
        super().__init__(f"{module} does not declare an output named '{output}'")
        self.module = module
        self.output = output


class ModuleRecursionLimitError(ExpansionError):
    def __init__(self, chain: Sequence[str], limit: int) -> None:
        super().__init__(
            f"Module nesting exceeds the limit of {limit}: {' -> '.join(chain)}"
        )
        self.chain = list(chain)
        self.limit = limit


class ModuleSourceError(ExpansionError):
    """Raised when a module source cannot be located or read."""


class CorruptStateError(EngineError):
    """Raised when the persisted state cannot be parsed."""


class StalePlanError(EngineError):
    """Raised when applying a plan against a different state than planned."""


class StateLockError(EngineError):
    """Raised when the state lock cannot be acquired or released."""


class ValidationError(EngineError):
    """One or more resources failed plan validation."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        msg = "Validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        super().__init__(msg)


class PreventDestroyViolation(EngineError):
    """Raised when a plan would destroy a resource protected by ``prevent_destroy``."""

    def __init__(self, addresses: list[str]) -> None:
        super().__init__(
            "Plan would destroy resources with lifecycle.prevent_destroy set: "
            + ", ".join(addresses)
        )
        self.addresses = addresses


class ProviderOperationError(EngineError):
    """Wraps a failure reported by a resource handler."""

    def __init__(self, address: str, operation: str, message: str) -> None:
        super().__init__(f"{operation} {address} failed: {message}")
        self.address = address
        self.operation = operation


class ProvisionerFailure(EngineError):
    """Remote provisioning exhausted its connection attempts or the script failed."""

    def __init__(
        self,
        address: str,
        message: str,
        *,
        exit_code: int | None = None,
        output: str = "",
        attempts: int = 0,
    ) -> None:
        super().__init__(f"Provisioner for {address} failed: {message}")
        self.address = address
        self.exit_code = exit_code
        self.output = output
        self.attempts = attempts


class UnknownOutputNameError(EngineError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Output '{name}' not found in state")
        self.name = name


class ApplyError(EngineError):
    """Raised when an apply finished with failed, blocked or tainted nodes.

    Carries the per-node result so callers can inspect what succeeded.
    """

    def __init__(self, result: Any) -> None:
        self.result = result
        problems = [
            f"{address} ({status.value})"
            for address, status in sorted(result.statuses.items())
            if status.value != "applied"
        ]
        super().__init__(f"Apply finished with errors: {', '.join(problems) or 'none'}")


class ApplyCanceled(EngineError):
    """Raised when an apply is canceled (e.g., Ctrl-C)."""

    def __init__(self, result: Any) -> None:
        self.result = result
        super().__init__("Apply canceled")
