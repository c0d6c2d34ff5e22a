"""Plan and apply output rendering (Terraform-style)."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, NamedTuple

import typer

from cloud_provisioner.engine.expressions import UNKNOWN_LABEL
from cloud_provisioner.engine.types import Action

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from cloud_provisioner.engine.types import Plan, ResourceChange


class _ActionStyle(NamedTuple):
    color: str
    symbol: str
    progress_verb: str
    done_verb: str


_ACTION_STYLES: dict[str, _ActionStyle] = {
    "create": _ActionStyle("green", "+", "Creating", "Creation complete"),
    "update": _ActionStyle("yellow", "~", "Updating", "Update complete"),
    "replace": _ActionStyle("magenta", "-/+", "Replacing", "Replacement complete"),
    "destroy": _ActionStyle("red", "-", "Destroying", "Destroy complete"),
    "no-op": _ActionStyle("bright_black", " ", "", ""),
}

_ACTION_DESC: dict[str, str] = {
    "create": "will be created",
    "update": "will be updated in-place",
    "replace": "must be replaced",
    "destroy": "will be destroyed",
    "no-op": "is up-to-date",
}


def styler(color: bool) -> Callable[..., str]:
    """Return ``typer.style`` when *color* is True, otherwise a passthrough."""
    if color:
        return typer.style
    return lambda text, **_kw: text


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def has_actionable_changes(plan: Plan) -> bool:
    """Return True if the plan contains any non-NOOP changes."""
    return plan.has_changes


def action_symbol(change: ResourceChange) -> str:
    """``-/+`` for destroy-then-create replacements, ``+/-`` for create-before-destroy."""
    if change.action == Action.REPLACE and change.lifecycle.create_before_destroy:
        return "+/-"
    return _ACTION_STYLES[change.action.value].symbol


def _align_values(items: dict[str, str]) -> list[tuple[str, str]]:
    """Right-pad keys so ``=`` signs align."""
    if not items:
        return []
    max_key = max(len(k) for k in items)
    return [(k.ljust(max_key), v) for k, v in items.items()]


def format_value(value: Any) -> str:
    """Format a value for display in a plan diff block."""
    if value == UNKNOWN_LABEL:
        return value
    if isinstance(value, str):
        return f'"{value}"'
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


# ---------------------------------------------------------------------------
# Plan rendering
# ---------------------------------------------------------------------------


def _describe(change: ResourceChange) -> str:
    if change.reason == "tainted":
        return "is tainted, so must be replaced"
    if change.reason == "deposed":
        return "(deposed object) will be destroyed"
    return _ACTION_DESC[change.action.value]


def _change_attrs(change: ResourceChange) -> dict[str, str]:
    """Extract displayable ``key → formatted value`` pairs from a change."""
    if change.action == Action.CREATE and change.planned:
        return {k: format_value(v) for k, v in change.planned.items()}
    if change.action == Action.REPLACE and change.diff:
        forced = set(change.requires_replace)
        return {
            k: f"{format_value(d['from'])} -> {format_value(d['to'])}"
            + ("  # forces replacement" if k in forced else "")
            for k, d in change.diff.items()
        }
    if change.action == Action.REPLACE and change.planned:
        return {k: format_value(v) for k, v in change.planned.items()}
    if change.action == Action.UPDATE and change.diff:
        return {
            k: f"{format_value(d['from'])} -> {format_value(d['to'])}"
            for k, d in change.diff.items()
        }
    return {}


def format_change(change: ResourceChange, *, color: bool = True) -> str:
    """Render a single ResourceChange as a Terraform-style block."""
    style = styler(color)
    sc = {"fg": _ACTION_STYLES[change.action.value].color}
    symbol = action_symbol(change)

    lines = [
        style(f"  # {change.address} {_describe(change)}", bold=True, **sc),
        style(f'  {symbol} resource "{change.kind}" "{change.name}" {{', **sc),
        *[
            style(f"      {k} = {v}", **sc)
            for k, v in _align_values(_change_attrs(change))
        ],
        style("    }", **sc),
    ]
    return "\n".join(lines)


def format_changes(changes: list[ResourceChange], *, color: bool = True) -> str:
    """Render a list of changes as Terraform-style diff blocks."""
    blocks = [format_change(c, color=color) for c in changes if c.action != Action.NOOP]
    if not blocks:
        return "No changes. Resources are up-to-date."
    return "\n\n".join(blocks)


def format_outputs(outputs: Mapping[str, Any], *, header: str = "Outputs:") -> str:
    """Render ``name = value`` lines for root outputs."""
    if not outputs:
        return ""
    lines = [header, ""]
    lines.extend(f"{k} = {format_value(v)}" for k, v in _align_values(dict(outputs)))
    return "\n".join(lines)


def format_plan(plan: Plan, *, color: bool = True) -> str:
    """Render the full plan output with per-change diff blocks."""
    text = format_changes(plan.changes, color=color)
    if plan.planned_outputs:
        text += "\n\n" + format_outputs(plan.planned_outputs, header="Changes to Outputs:")
    return text


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------

_PLAN_VERBS = ("to add", "to change", "to destroy")
_APPLY_VERBS = ("added", "changed", "destroyed")
_SUMMARY_COLORS = ("green", "yellow", "red")


def _counts(summary: Mapping[str, int]) -> tuple[int, int, int]:
    # A replacement is one add plus one destroy.
    replaced = summary.get("replace", 0)
    return (
        summary.get("create", 0) + replaced,
        summary.get("update", 0),
        summary.get("destroy", 0) + replaced,
    )


def _format_summary(summary: Mapping[str, int], verbs: tuple[str, ...], *, color: bool) -> str:
    """Build the ``N verb, N verb, N verb`` part of a summary line."""
    style = styler(color)
    parts = [
        style(f"{n} {verb}", fg=fg) if n and color else f"{n} {verb}"
        for n, verb, fg in zip(_counts(summary), verbs, _SUMMARY_COLORS, strict=True)
    ]
    return ", ".join(parts)


def changes_summary(changes: list[ResourceChange]) -> dict[str, int]:
    """Count changes by action type."""
    summary: dict[str, int] = {a.value: 0 for a in Action}
    for c in changes:
        summary[c.action.value] += 1
    return summary


def format_plan_summary(
    summary: Mapping[str, int], *, color: bool = True, header: str = "Plan"
) -> str:
    """Render ``Plan: 2 to add, 1 to change, 0 to destroy.``"""
    return f"{header}: {_format_summary(summary, _PLAN_VERBS, color=color)}."


def format_apply_summary(summary: Mapping[str, int], *, color: bool = True) -> str:
    """Render ``Apply complete! Resources: 2 added, 0 changed, 0 destroyed.``"""
    style = styler(color)
    header = style("Apply complete!", fg="green", bold=True)
    return f"{header} Resources: {_format_summary(summary, _APPLY_VERBS, color=color)}."
