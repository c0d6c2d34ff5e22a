"""Module expansion: flatten nested module instances into one attribute graph.

Expansion is a pure pass over the declarations. Each module instance becomes
a namespace (``module.<name>.``) for the nodes it declares:

- ``${var.x}`` is replaced by the value the caller bound to ``x``;
- ``${kind.name.attr}`` is rewritten to the namespaced address;
- ``${module.child.out}`` is replaced by the child's (already rewritten)
  output expression.

Module sources are either local directories holding a ``module.yaml`` file
(relative to the declaring file) or names registered under the
``cloud_provisioner.modules`` entry point group.
"""

from __future__ import annotations

import importlib.metadata
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from cloud_provisioner.config.schema import ModuleDefinition
from cloud_provisioner.engine.errors import (
    ExpansionError,
    MissingRequiredVariableError,
    ModuleRecursionLimitError,
    ModuleSourceError,
    UndeclaredVariableError,
    UnknownOutputError,
    UnknownReferenceError,
)
from cloud_provisioner.engine.expressions import (
    OutputRef,
    Reference,
    SelfRef,
    VariableRef,
    dump_value,
    index_value,
    iter_expressions,
    parse_value,
    transform,
)
from cloud_provisioner.engine.graph import AttributeGraph, DependencyGraph, node_address

if TYPE_CHECKING:
    from collections.abc import Mapping

    from cloud_provisioner.config.schema import ModuleDecl, ResourceDecl
    from cloud_provisioner.engine.expressions import Expression

logger = logging.getLogger(__name__)

MODULE_FILE = "module.yaml"
ENTRY_POINT_GROUP = "cloud_provisioner.modules"
ROOT_SCOPE = "root"


def _module_dir_from_entry_point(source: str) -> Path:
    eps = list(importlib.metadata.entry_points(group=ENTRY_POINT_GROUP, name=source))
    if not eps:
        raise ModuleSourceError(
            f"Module source '{source}' is neither a local directory nor an entry point "
            f"in group '{ENTRY_POINT_GROUP}'"
        )
    target = eps[0].load()
    if callable(target):
        target = target()
    return Path(target)


def resolve_source(source: str, base_dir: Path) -> Path:
    """Return the directory holding the module's ``module.yaml``."""
    local = base_dir / source
    if source.startswith((".", "/")) or local.is_dir():
        module_dir = local
    else:
        module_dir = _module_dir_from_entry_point(source)

    if not (module_dir / MODULE_FILE).is_file():
        raise ModuleSourceError(f"Module source '{source}' has no {MODULE_FILE} in {module_dir}")
    return module_dir.resolve()


def load_definition(module_dir: Path) -> ModuleDefinition:
    path = module_dir / MODULE_FILE
    try:
        raw = YAML(typ="safe").load(path)
    except (OSError, YAMLError) as exc:
        raise ModuleSourceError(f"Failed to read {path}: {exc}") from exc
    try:
        return ModuleDefinition.model_validate(raw or {})
    except ValidationError as exc:
        raise ModuleSourceError(f"Invalid module definition {path}: {exc}") from exc


def _prefix(module_path: tuple[str, ...]) -> str:
    return "".join(f"module.{m}." for m in module_path)


class _Scope:
    """One module instance being expanded (the root config is a scope too)."""

    def __init__(
        self,
        definition: ModuleDefinition,
        *,
        base_dir: Path,
        module_path: tuple[str, ...],
        inputs: Mapping[str, Any],
    ) -> None:
        self.definition = definition
        self.base_dir = base_dir
        self.module_path = module_path
        self.label = _prefix(module_path).rstrip(".") or ROOT_SCOPE
        self.bindings = self._bind(inputs)
        self.child_outputs: dict[str, dict[str, Any]] = {}

    def _bind(self, inputs: Mapping[str, Any]) -> dict[str, Any]:
        declared = self.definition.variables
        for name in inputs:
            if name not in declared:
                raise UndeclaredVariableError(self.label, name)

        bindings: dict[str, Any] = {}
        for name, decl in declared.items():
            if name in inputs:
                bindings[name] = inputs[name]
            elif decl.required:
                raise MissingRequiredVariableError(self.label, name)
            else:
                bindings[name] = decl.default
        return bindings

    def rewrite(self, expr: Expression) -> Any:
        if isinstance(expr, VariableRef):
            if expr.name not in self.bindings:
                raise UndeclaredVariableError(self.label, expr.name)
            return index_value(self.bindings[expr.name], expr.path)
        if isinstance(expr, OutputRef):
            outputs = self.child_outputs.get(expr.module)
            if outputs is None:
                raise UnknownReferenceError(self.label, f"module.{expr.module}")
            if expr.output not in outputs:
                raise UnknownOutputError(f"module.{expr.module}", expr.output)
            return index_value(outputs[expr.output], expr.path)
        if isinstance(expr, Reference):
            return Reference(_prefix(self.module_path) + expr.address, expr.path)
        return expr

    def rewrite_value(self, raw: Any) -> Any:
        return transform(parse_value(raw), self.rewrite)

    def rewrite_address(self, entry: str) -> str:
        return _prefix(self.module_path) + entry


class ModuleExpander:
    """Builds an ``AttributeGraph`` from a root definition and its modules.

    Args:
        max_depth: Deepest allowed module nesting; the root is depth 0.
    """

    def __init__(self, *, max_depth: int = 16) -> None:
        self._max_depth = max_depth

    def expand(
        self,
        definition: ModuleDefinition,
        *,
        base_dir: Path,
        variables: Mapping[str, Any] | None = None,
    ) -> AttributeGraph:
        graph = AttributeGraph()
        root = _Scope(definition, base_dir=base_dir, module_path=(), inputs=variables or {})
        graph.outputs = self._expand_scope(root, graph, chain=[])
        logger.debug("Expanded configuration into %d nodes", len(graph))
        return graph

    def _module_order(self, scope: _Scope) -> list[ModuleDecl]:
        """Order sibling modules so that outputs are expanded before use."""
        decls: dict[str, ModuleDecl] = {}
        for decl in scope.definition.modules:
            if decl.name in decls:
                raise ExpansionError(f"{scope.label}: module '{decl.name}' is declared twice")
            decls[decl.name] = decl

        deps: dict[str, list[str]] = {}
        for decl in decls.values():
            refs = iter_expressions(parse_value(decl.inputs))
            deps[decl.name] = [r.module for r in refs if isinstance(r, OutputRef)]
        priorities = {name: i for i, name in enumerate(decls)}
        order = DependencyGraph(decls, deps, priorities=priorities).topological_order()
        return [decls[name] for name in order]

    def _expand_scope(
        self, scope: _Scope, graph: AttributeGraph, chain: list[str]
    ) -> dict[str, Any]:
        for decl in self._module_order(scope):
            scope.child_outputs[decl.name] = self._expand_child(scope, decl, graph, chain)

        for res in scope.definition.resources:
            self._add_resource(scope, res, graph)

        return {name: scope.rewrite_value(raw) for name, raw in scope.definition.outputs.items()}

    def _expand_child(
        self, parent: _Scope, decl: ModuleDecl, graph: AttributeGraph, chain: list[str]
    ) -> dict[str, Any]:
        module_path = (*parent.module_path, decl.name)
        child_chain = [*chain, f"{_prefix(module_path).rstrip('.')} ({decl.source})"]
        if len(module_path) > self._max_depth:
            raise ModuleRecursionLimitError(child_chain, self._max_depth)

        module_dir = resolve_source(decl.source, parent.base_dir)
        definition = load_definition(module_dir)
        inputs = {name: parent.rewrite_value(raw) for name, raw in decl.inputs.items()}
        logger.debug("Expanding module %s from %s", ".".join(module_path), module_dir)

        child = _Scope(definition, base_dir=module_dir, module_path=module_path, inputs=inputs)
        return self._expand_scope(child, graph, child_chain)

    def _add_resource(self, scope: _Scope, res: ResourceDecl, graph: AttributeGraph) -> None:
        provisioners = []
        for spec in res.provisioners:
            update: dict[str, Any] = {"connection": dump_value(scope.rewrite_value(spec.connection))}
            if spec.script is not None:
                update["script"] = str(scope.base_dir / spec.script)
            provisioners.append(spec.model_copy(update=update))

        for expr in iter_expressions(parse_value(res.attributes)):
            if isinstance(expr, SelfRef):
                address = node_address(res.kind, res.name, scope.module_path)
                raise UnknownReferenceError(address, str(expr))

        graph.add_node(
            res.kind,
            res.name,
            scope.rewrite_value(res.attributes),
            module_path=scope.module_path,
            depends_on=[scope.rewrite_address(d) for d in res.depends_on],
            lifecycle=res.lifecycle,
            provisioners=provisioners,
        )


def expand_modules(
    definition: ModuleDefinition,
    base_dir: Path,
    *,
    variables: Mapping[str, Any] | None = None,
    max_depth: int = 16,
) -> AttributeGraph:
    """Expand *definition* and every module it instantiates into one graph."""
    return ModuleExpander(max_depth=max_depth).expand(
        definition, base_dir=base_dir, variables=variables
    )
