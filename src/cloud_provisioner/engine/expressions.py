"""Attribute values: literals, references and string templates.

Declarations carry plain JSON-like values. Strings may embed ``${...}``
expressions, which are parsed into a small tagged union:

- ``Reference``  : ``${kind.name.attr}``, attribute of another resource
- ``VariableRef``: ``${var.name}``, replaced during module expansion
- ``OutputRef``  : ``${module.child.output}``, replaced during module expansion
- ``SelfRef``    : ``${self.attr}``, only valid in provisioner connections
- ``Template``   : string interpolation mixing text and expressions

A string that is exactly one ``${...}`` keeps the type of the referenced value;
anything else renders to a string. ``$${`` escapes a literal ``${``.

Values that cannot be known before apply evaluate to the ``UNKNOWN`` sentinel.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any, TypeAlias

from cloud_provisioner.engine.errors import ExpressionError

_INTERPOLATION = re.compile(r"\$\$\{|\$\{([^}]*)\}")
_SEGMENT = re.compile(r"^[A-Za-z0-9_-]+$")
_INDEX = re.compile(r"\[(\d+)\]")

UNKNOWN_LABEL = "(known after apply)"


class _Unknown:
    """Placeholder for a value only known once upstream resources are applied."""

    _instance: _Unknown | None = None

    def __new__(cls) -> _Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return UNKNOWN_LABEL

    def __reduce__(self) -> str:
        return "UNKNOWN"


UNKNOWN = _Unknown()


def _render_path(head: list[str], path: tuple[str, ...]) -> str:
    return "${" + ".".join([*head, *path]) + "}"


@dataclass(frozen=True, slots=True)
class Reference:
    """Attribute ``path`` of the resource at ``address``."""

    address: str
    path: tuple[str, ...]

    def __str__(self) -> str:
        return _render_path([self.address], self.path)


@dataclass(frozen=True, slots=True)
class VariableRef:
    name: str
    path: tuple[str, ...] = ()

    def __str__(self) -> str:
        return _render_path(["var", self.name], self.path)


@dataclass(frozen=True, slots=True)
class OutputRef:
    module: str
    output: str
    path: tuple[str, ...] = ()

    def __str__(self) -> str:
        return _render_path(["module", self.module, self.output], self.path)


@dataclass(frozen=True, slots=True)
class SelfRef:
    path: tuple[str, ...]

    def __str__(self) -> str:
        return _render_path(["self"], self.path)


Expression: TypeAlias = Reference | VariableRef | OutputRef | SelfRef
_EXPRESSION_TYPES = (Reference, VariableRef, OutputRef, SelfRef)


@dataclass(frozen=True, slots=True)
class Template:
    parts: tuple[str | Expression, ...]

    def __str__(self) -> str:
        return "".join(_escape(p) if isinstance(p, str) else str(p) for p in self.parts)


# ── Parsing ─────────────────────────────────────────────────────────


def parse_expression(text: str) -> Expression:
    """Parse the body of a ``${...}`` expression."""
    body = _INDEX.sub(r".\1", text.strip())
    segments = body.split(".")
    if not all(_SEGMENT.match(s) for s in segments):
        raise ExpressionError(f"Invalid expression: ${{{text}}}")

    head, rest = segments[0], segments[1:]
    if head == "var":
        if not rest:
            raise ExpressionError(f"Expected var.<name>: ${{{text}}}")
        return VariableRef(rest[0], tuple(rest[1:]))
    if head == "module":
        if len(rest) < 2:
            raise ExpressionError(f"Expected module.<name>.<output>: ${{{text}}}")
        return OutputRef(rest[0], rest[1], tuple(rest[2:]))
    if head == "self":
        if not rest:
            raise ExpressionError(f"Expected self.<attribute>: ${{{text}}}")
        return SelfRef(tuple(rest))
    if len(rest) < 2:
        raise ExpressionError(f"Expected <kind>.<name>.<attribute>: ${{{text}}}")
    return Reference(f"{head}.{rest[0]}", tuple(rest[1:]))


def _parse_string(raw: str) -> Any:
    parts: list[str | Expression] = []
    buf = ""
    pos = 0
    for m in _INTERPOLATION.finditer(raw):
        chunk = raw[pos : m.start()]
        if "${" in chunk:
            raise ExpressionError(f"Unterminated expression in {raw!r}")
        buf += chunk
        if m.group(1) is None:
            buf += "${"
        else:
            if buf:
                parts.append(buf)
                buf = ""
            parts.append(parse_expression(m.group(1)))
        pos = m.end()
    tail = raw[pos:]
    if "${" in tail:
        raise ExpressionError(f"Unterminated expression in {raw!r}")
    buf += tail
    if buf:
        parts.append(buf)

    if not parts:
        return ""
    if len(parts) == 1:
        return parts[0]
    return Template(tuple(parts))


def parse_value(raw: Any) -> Any:
    """Parse a raw declaration value, turning ``${...}`` strings into expressions."""
    if isinstance(raw, str):
        return _parse_string(raw)
    if isinstance(raw, list):
        return [parse_value(v) for v in raw]
    if isinstance(raw, dict):
        return {k: parse_value(v) for k, v in raw.items()}
    return raw


def _escape(text: str) -> str:
    return text.replace("${", "$${")


def dump_value(value: Any) -> Any:
    """Inverse of :func:`parse_value`: render expressions back to source strings."""
    if isinstance(value, str):
        return _escape(value)
    if isinstance(value, (*_EXPRESSION_TYPES, Template)):
        return str(value)
    if isinstance(value, list):
        return [dump_value(v) for v in value]
    if isinstance(value, dict):
        return {k: dump_value(v) for k, v in value.items()}
    if value is UNKNOWN:
        raise ValueError("Cannot serialize an unknown value")
    return value


def display_value(value: Any) -> Any:
    """JSON-safe rendering of an evaluated value; unknowns become a label."""
    if value is UNKNOWN:
        return UNKNOWN_LABEL
    if isinstance(value, list):
        return [display_value(v) for v in value]
    if isinstance(value, dict):
        return {k: display_value(v) for k, v in value.items()}
    return value


# ── Traversal ───────────────────────────────────────────────────────


def iter_expressions(value: Any) -> Iterator[Expression]:
    """Yield every expression embedded in *value*."""
    if isinstance(value, _EXPRESSION_TYPES):
        yield value
    elif isinstance(value, Template):
        for part in value.parts:
            if not isinstance(part, str):
                yield part
    elif isinstance(value, list):
        for v in value:
            yield from iter_expressions(v)
    elif isinstance(value, dict):
        for v in value.values():
            yield from iter_expressions(v)


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    return False


def stringify(value: Any) -> str:
    """Render a literal for string interpolation."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def _join_template(parts: list[Any]) -> Any:
    flat: list[str | Expression] = []
    for part in parts:
        if part is UNKNOWN:
            return UNKNOWN
        if isinstance(part, Template):
            flat.extend(part.parts)
        elif isinstance(part, _EXPRESSION_TYPES):
            flat.append(part)
        else:
            text = stringify(part)
            if flat and isinstance(flat[-1], str):
                flat[-1] += text
            elif text:
                flat.append(text)

    if all(isinstance(p, str) for p in flat):
        return "".join(flat)  # type: ignore[arg-type]
    return Template(tuple(flat))


def transform(value: Any, fn: Callable[[Expression], Any]) -> Any:
    """Replace every expression in *value* with ``fn(expression)``.

    Template parts are re-joined: literal results are stringified, nested
    templates are spliced and any unknown part makes the whole string unknown.
    """
    if isinstance(value, _EXPRESSION_TYPES):
        return fn(value)
    if isinstance(value, Template):
        return _join_template(
            [p if isinstance(p, str) else fn(p) for p in value.parts]
        )
    if isinstance(value, list):
        return [transform(v, fn) for v in value]
    if isinstance(value, dict):
        return {k: transform(v, fn) for k, v in value.items()}
    return value


def index_value(value: Any, path: tuple[str, ...]) -> Any:
    """Walk *path* into *value*.

    Expressions absorb the remaining path; unknown values stay unknown.
    """
    current = value
    for i, segment in enumerate(path):
        if current is UNKNOWN:
            return UNKNOWN
        if isinstance(current, Reference):
            return Reference(current.address, current.path + path[i:])
        if isinstance(current, VariableRef):
            return VariableRef(current.name, current.path + path[i:])
        if isinstance(current, OutputRef):
            return OutputRef(current.module, current.output, current.path + path[i:])
        if isinstance(current, SelfRef):
            return SelfRef(current.path + path[i:])
        if isinstance(current, dict):
            if segment not in current:
                raise ExpressionError(f"Key '{segment}' not found")
            current = current[segment]
        elif isinstance(current, list):
            if not segment.isdigit() or int(segment) >= len(current):
                raise ExpressionError(f"Index '{segment}' out of range")
            current = current[int(segment)]
        else:
            raise ExpressionError(f"Cannot index into {type(current).__name__} with '{segment}'")
    return current
