"""Map exceptions to clean stderr messages and exit codes."""

from __future__ import annotations

import typer


def _err(msg: str, *, fg: str | None) -> None:
    """Print a styled message to stderr."""
    typer.echo(typer.style(msg, fg=fg), err=True)


def _report_result(result: object, *, fg: str | None) -> None:
    from cloud_provisioner.engine.types import ApplyResult, NodeStatus

    if not isinstance(result, ApplyResult):
        return
    for address, status in sorted(result.statuses.items()):
        if status == NodeStatus.APPLIED:
            continue
        detail = result.errors.get(address)
        _err(f"  {address}: {status.value}" + (f" ({detail})" if detail else ""), fg=fg)

    s = result.summary()
    parts = [
        f"{n} {verb}"
        for n, verb in (
            (s["create"] + s["replace"], "added"),
            (s["update"], "changed"),
            (s["destroy"] + s["replace"], "destroyed"),
        )
        if n
    ]
    if parts:
        _err(f"  Partial result: {', '.join(parts)}.", fg=fg)


def handle_error(exc: Exception, *, color: bool = True) -> int:
    """Print a clean error message to stderr and return an exit code.

    All errors map to exit code 1.  No tracebacks are printed.
    """
    from cloud_provisioner.config.loader import ConfigError
    from cloud_provisioner.engine.errors import (
        ApplyCanceled,
        ApplyError,
        CyclicDependencyError,
        ExpansionError,
        PreventDestroyViolation,
        StalePlanError,
        StateLockError,
        ValidationError,
    )

    fg = typer.colors.RED if color else None

    if isinstance(exc, ConfigError):
        _err(f"Configuration error: {exc}", fg=fg)
    elif isinstance(exc, ExpansionError):
        _err(f"Module error: {exc}", fg=fg)
    elif isinstance(exc, ValidationError):
        _err("Validation failed:", fg=fg)
        for e in exc.errors:
            _err(f"  - {e}", fg=fg)
    elif isinstance(exc, CyclicDependencyError):
        _err(f"Dependency cycle: {' -> '.join(exc.cycle)}", fg=fg)
    elif isinstance(exc, PreventDestroyViolation):
        _err("Refusing to destroy protected resources:", fg=fg)
        for address in exc.addresses:
            _err(f"  - {address}", fg=fg)
    elif isinstance(exc, StalePlanError):
        _err(f"Plan is stale: {exc}", fg=fg)
    elif isinstance(exc, StateLockError):
        _err(f"Cannot lock state: {exc}", fg=fg)
    elif isinstance(exc, ApplyError):
        _err("Apply failed:", fg=fg)
        _report_result(exc.result, fg=fg)
    elif isinstance(exc, ApplyCanceled):
        _err("Apply canceled.", fg=fg)
        _report_result(exc.result, fg=fg)
    else:
        _err(f"Error: {exc}", fg=fg)

    return 1
