"""CLI command implementations."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Literal

import typer

from cloud_provisioner.cli import app
from cloud_provisioner.cli.errors import handle_error

if TYPE_CHECKING:
    from cloud_provisioner.config.schema import Config
    from cloud_provisioner.engine.types import ApplyResult, Plan

DEFAULT_CONFIG = Path("provisioner.yaml")

ConfigPath = Annotated[
    Path,
    typer.Option("--config", "-c", help="Path to the configuration file."),
]

NoColor = Annotated[
    bool,
    typer.Option("--no-color", help="Disable colored output."),
]

AutoApprove = Annotated[
    bool,
    typer.Option("--auto-approve", help="Skip interactive approval."),
]

NoRefresh = Annotated[
    bool,
    typer.Option("--no-refresh", help="Skip reading tracked resources back before planning."),
]

Vars = Annotated[
    list[str] | None,
    typer.Option("--var", help="Set a root variable (name=value). Repeatable."),
]


def _use_color(no_color: bool) -> bool:
    """Determine whether to use color output."""
    return not (no_color or os.environ.get("NO_COLOR"))


def _parse_vars(values: list[str] | None) -> dict[str, str]:
    from cloud_provisioner.config.loader import ConfigError

    parsed: dict[str, str] = {}
    for item in values or []:
        name, sep, value = item.partition("=")
        if not sep or not name:
            raise ConfigError(f"Invalid --var '{item}': expected name=value")
        parsed[name.strip()] = value
    return parsed


def _load(config: Path, var: list[str] | None, *, expand: bool = True) -> Config:
    from cloud_provisioner.config import load

    return load(config, variables=_parse_vars(var), expand=expand)


def _apply_with_progress(plan_obj: Plan, cfg: Config, *, color: bool) -> ApplyResult:
    """Apply a plan with a Rich progress bar and per-resource status lines."""
    from rich.console import Console
    from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

    from cloud_provisioner.cli.formatting import _ACTION_STYLES
    from cloud_provisioner.config import apply
    from cloud_provisioner.engine.types import Action, ResourceChange

    console = Console(no_color=not color)
    actionable = [c for c in plan_obj.changes if c.action != Action.NOOP]

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Applying", total=len(actionable))

        def on_progress(change: ResourceChange, event: Literal["start", "done"]) -> None:
            s = _ACTION_STYLES[change.action.value]
            if event == "start":
                progress.update(task, description=f"{change.address}: {s.progress_verb}...")
            elif event == "done":
                progress.console.print(f"  {change.address}: {s.done_verb}")
                progress.advance(task)

        return apply(plan_obj, cfg, progress=on_progress)


def _confirm_and_apply(
    plan_obj: Plan,
    cfg: Config,
    *,
    color: bool,
    auto_approve: bool,
    confirm_msg: str,
    empty_msg: str,
) -> None:
    """Shared flow: show plan -> confirm -> apply with progress -> print summary.

    Exits with code 0 if no actionable changes.
    """
    from cloud_provisioner.cli.formatting import (
        format_apply_summary,
        format_outputs,
        format_plan,
        format_plan_summary,
        has_actionable_changes,
    )

    if not has_actionable_changes(plan_obj):
        if plan_obj.has_outdated_records:
            from cloud_provisioner.config import apply

            try:
                apply(plan_obj, cfg)
            except Exception as exc:
                raise typer.Exit(handle_error(exc, color=color)) from exc
        typer.echo(empty_msg)
        raise typer.Exit(0)

    typer.echo(format_plan(plan_obj, color=color))
    typer.echo()
    typer.echo(format_plan_summary(plan_obj.summary(), color=color))
    typer.echo()

    if not auto_approve:
        try:
            typer.confirm(confirm_msg, abort=True)
        except typer.Abort as e:
            typer.echo("Apply canceled.", err=True)
            raise typer.Exit(1) from e

    try:
        result = _apply_with_progress(plan_obj, cfg, color=color)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    typer.echo()
    typer.echo(format_apply_summary(result.summary(), color=color))
    if result.outputs:
        typer.echo()
        typer.echo(format_outputs(result.outputs))


@app.command()
def plan(
    config: ConfigPath = DEFAULT_CONFIG,
    out: Annotated[
        Path | None,
        typer.Option("--out", "-o", help="Save plan to file."),
    ] = None,
    var: Vars = None,
    no_color: NoColor = False,
    no_refresh: NoRefresh = False,
) -> None:
    """Show changes required by the current configuration.

    Exits 0 when nothing changes and 2 when changes are pending.
    """
    from cloud_provisioner.cli.formatting import (
        format_plan,
        format_plan_summary,
        has_actionable_changes,
    )
    from cloud_provisioner.config import plan as plan_fn

    color = _use_color(no_color)
    try:
        cfg = _load(config, var)
        plan_obj = plan_fn(cfg, refresh=not no_refresh)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    typer.echo(format_plan(plan_obj, color=color))
    typer.echo()
    typer.echo(format_plan_summary(plan_obj.summary(), color=color))

    if out is not None:
        plan_obj.save(out)
        typer.echo(f"\nPlan saved to {out}")

    if has_actionable_changes(plan_obj):
        raise typer.Exit(2)


@app.command(name="apply")
def apply_cmd(
    plan_file: Annotated[
        Path | None,
        typer.Argument(help="Saved plan file to apply."),
    ] = None,
    config: ConfigPath = DEFAULT_CONFIG,
    var: Vars = None,
    auto_approve: AutoApprove = False,
    no_color: NoColor = False,
    no_refresh: NoRefresh = False,
) -> None:
    """Apply the changes required by the current configuration."""
    from cloud_provisioner.config import plan as plan_fn
    from cloud_provisioner.engine.types import Plan

    color = _use_color(no_color)
    try:
        if plan_file is not None:
            plan_obj = Plan.load(plan_file)
            # A saved plan carries everything but engine settings, providers and
            # connection secrets; only the latter need the expanded config.
            cfg = _load(config, var, expand=plan_obj.has_masked_connections)
            if plan_obj.has_masked_connections:
                plan_obj.restore_connections(cfg.graph)
        else:
            cfg = _load(config, var)
            plan_obj = plan_fn(cfg, refresh=not no_refresh)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    _confirm_and_apply(
        plan_obj,
        cfg,
        color=color,
        auto_approve=auto_approve or plan_file is not None,
        confirm_msg="Do you want to apply these changes?",
        empty_msg="No changes. Resources are up-to-date.",
    )


@app.command()
def destroy(
    config: ConfigPath = DEFAULT_CONFIG,
    var: Vars = None,
    auto_approve: AutoApprove = False,
    no_color: NoColor = False,
) -> None:
    """Destroy all managed resources."""
    from cloud_provisioner.config import plan as plan_fn

    color = _use_color(no_color)
    try:
        cfg = _load(config, var, expand=False)
        plan_obj = plan_fn(cfg, destroy=True)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    _confirm_and_apply(
        plan_obj,
        cfg,
        color=color,
        auto_approve=auto_approve,
        confirm_msg="Do you really want to destroy all resources?",
        empty_msg="No resources to destroy.",
    )


@app.command()
def output(
    name: Annotated[
        str | None,
        typer.Argument(help="Output to show; all outputs when omitted."),
    ] = None,
    config: ConfigPath = DEFAULT_CONFIG,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print values as JSON."),
    ] = False,
    no_color: NoColor = False,
) -> None:
    """Show root outputs recorded by the last apply."""
    from cloud_provisioner.cli.formatting import format_outputs, format_value
    from cloud_provisioner.config import output as output_fn

    color = _use_color(no_color)
    try:
        cfg = _load(config, None, expand=False)
        value = output_fn(cfg, name)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    if as_json:
        typer.echo(json.dumps(value, indent=2, sort_keys=True))
    elif name is not None:
        typer.echo(value if isinstance(value, str) else format_value(value))
    elif value:
        typer.echo(format_outputs(value))
    else:
        typer.echo("No outputs found.")


@app.command(name="refresh")
def refresh_cmd(
    config: ConfigPath = DEFAULT_CONFIG,
    auto_approve: AutoApprove = False,
    no_color: NoColor = False,
) -> None:
    """Read tracked resources back and update the state file."""
    from cloud_provisioner.cli.formatting import changes_summary, format_changes, format_plan_summary
    from cloud_provisioner.config import refresh as refresh_fn
    from cloud_provisioner.config import save_state

    color = _use_color(no_color)
    try:
        cfg = _load(config, None, expand=False)
        changes, state = refresh_fn(cfg)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    if not changes:
        typer.echo("No changes. State is up-to-date.")
        raise typer.Exit(0)

    typer.echo(format_changes(changes, color=color))
    typer.echo()
    typer.echo(format_plan_summary(changes_summary(changes), color=color, header="Refresh"))
    typer.echo()

    if not auto_approve:
        try:
            typer.confirm("Do you want to update the state file?", abort=True)
        except typer.Abort as e:
            typer.echo("Refresh canceled.", err=True)
            raise typer.Exit(1) from e

    try:
        save_state(cfg, state)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc
    count = len(state.resources)
    typer.echo(f"State refreshed. {count} resource{'s' if count != 1 else ''} tracked.")


@app.command()
def validate(
    config: ConfigPath = DEFAULT_CONFIG,
    var: Vars = None,
    no_color: NoColor = False,
) -> None:
    """Validate the configuration: modules, references, cycles and resource attributes."""
    from cloud_provisioner.cli.formatting import styler
    from cloud_provisioner.config import plan as plan_fn

    color = _use_color(no_color)
    try:
        cfg = _load(config, var)
        plan_fn(cfg, refresh=False)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    typer.echo(styler(color)("Configuration is valid.", fg="green"))
