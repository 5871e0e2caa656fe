"""Dependency resolver for formula and lookup references.

Scans formula expressions and lookup conditions for nested shortcode
references, builds a dependency graph, and provides evaluation order via
depth-first topological sort.

Example:
    order = resolve("annual_savings", catalog)
    # ["current_cost", "heat_pump_cost", "annual_savings"]
"""

import logging
import re
from dataclasses import dataclass, field

from . import ast
from .catalog import Catalog, FormulaDefinition, LookupTable
from .parser import ParseError, parse

logger = logging.getLogger(__name__)

# [calc:name] / [lookup:name], optionally followed by a format spec
REFERENCE = re.compile(r"\[(calc|lookup):([^\]\[:]+)(?::[^\]\[]*)?\]", re.IGNORECASE)
FIELD_REFERENCE = re.compile(r"\[field:([^\]\[:]+)(?::[^\]\[]*)?\]|\{([^{}]+)\}", re.IGNORECASE)
FORMAT_REFERENCE = re.compile(r"\[format:([^\]\[:]+)(?::[^\]\[]*)?\]", re.IGNORECASE)

LOOKUP_PREFIX = "lookup:"


class CycleError(Exception):
    """Raised when formulas reference each other (or themselves) in a loop."""

    def __init__(self, path: list[str]):
        super().__init__(f"circular reference: {' -> '.join(path)}")
        self.path = path


class MissingDefinitionError(Exception):
    """Raised when a reference names no active formula or lookup table."""

    def __init__(self, kind: str, name: str, referenced_by: str | None = None):
        where = f" (referenced by {referenced_by})" if referenced_by else ""
        super().__init__(f"{kind} not found: {name!r}{where}")
        self.kind = kind
        self.name = name
        self.referenced_by = referenced_by


def lookup_node(name: str) -> str:
    return f"{LOOKUP_PREFIX}{name}"


def is_lookup_node(node: str) -> bool:
    return node.startswith(LOOKUP_PREFIX)


def scan_references(text: str) -> list[tuple[str, str]]:
    """(kind, name) pairs for every [calc:..] / [lookup:..] in text."""
    return [(m.group(1).lower(), m.group(2).strip()) for m in REFERENCE.finditer(text)]


@dataclass
class DependencyGraph:
    """Directed graph of formula/lookup dependencies.

    Supports:
    - Adding nodes with their dependencies
    - Querying dependencies
    - Topological sorting, for the whole graph or a single target
    - Cycle detection with the full offending path
    """

    _adjacency: dict[str, list[str]] = field(default_factory=dict)
    # references that could not be matched to a definition: node -> [(kind, name)]
    dangling: dict[str, list[tuple[str, str]]] = field(default_factory=dict)

    def add_node(self, name: str, dependencies: list[str]) -> None:
        self._adjacency[name] = dependencies
        for dep in dependencies:
            if dep not in self._adjacency:
                self._adjacency[dep] = []

    def dependencies_of(self, name: str) -> list[str]:
        return self._adjacency.get(name, [])

    def __contains__(self, name: str) -> bool:
        return name in self._adjacency

    @property
    def nodes(self) -> list[str]:
        return list(self._adjacency)

    def topological_sort(self) -> list[str]:
        """All nodes, dependencies before dependents.

        Raises:
            CycleError: If any cycle exists in the graph
        """
        visited: set[str] = set()
        order: list[str] = []
        for node in self._adjacency:
            self._visit(node, visited, [], order, check_dangling=False)
        return order

    def order_for(self, target: str, strict: bool = True) -> list[str]:
        """Nodes reachable from target, dependencies first, target last.

        With ``strict=False`` only cycles are reported; dangling references
        are left for evaluation to trip over.

        Raises:
            CycleError: If the target's dependency closure contains a cycle
            MissingDefinitionError: If a formula in the closure references
                a definition that does not exist
        """
        order: list[str] = []
        self._visit(target, set(), [], order, check_dangling=strict)
        return order

    def _visit(
        self,
        node: str,
        visited: set[str],
        path: list[str],
        order: list[str],
        check_dangling: bool,
    ) -> None:
        if node in path:
            raise CycleError(path[path.index(node) :] + [node])
        if node in visited:
            return

        # Below a lookup table only the selected row is ever evaluated, so
        # dangling references there are reported lazily.
        if check_dangling and not is_lookup_node(node) and self.dangling.get(node):
            kind, name = self.dangling[node][0]
            raise MissingDefinitionError(kind, name, referenced_by=node)

        path.append(node)
        below = check_dangling and not is_lookup_node(node)
        for dep in self._adjacency.get(node, []):
            self._visit(dep, visited, path, order, below)
        path.pop()

        visited.add(node)
        order.append(node)


def _canonical(kind: str, name: str, catalog: Catalog) -> str | None:
    if kind == "calc":
        formula = catalog.formula(name)
        return formula.name if formula else None
    table = catalog.lookup(name)
    return lookup_node(table.name) if table else None


def _lookup_texts(table: LookupTable) -> list[str]:
    texts = []
    for condition in table.active_conditions():
        texts.append(condition.condition_expression)
        texts.append(condition.target_value)
    if table.default_value:
        texts.append(table.default_value)
    return texts


def build_graph(catalog: Catalog) -> DependencyGraph:
    """Build the dependency graph of every active formula and lookup table."""
    graph = DependencyGraph()

    def add(node: str, texts: list[str]) -> None:
        deps: list[str] = []
        for text in texts:
            for kind, name in scan_references(text):
                target = _canonical(kind, name, catalog)
                if target is None:
                    graph.dangling.setdefault(node, []).append((kind, name))
                elif target not in deps:
                    deps.append(target)
        graph.add_node(node, deps)

    for formula in catalog.formulas:
        add(formula.name, [formula.expression])
    for table in catalog.lookups:
        add(lookup_node(table.name), _lookup_texts(table))

    return graph


def resolve(target: str, catalog: Catalog, graph: DependencyGraph | None = None) -> list[str]:
    """Evaluation order for a formula: its dependencies first, itself last.

    Lookup tables in the closure appear as ``lookup:<name>`` nodes.

    Raises:
        MissingDefinitionError: If the target is not an active formula
        CycleError: If the target's closure contains a cycle
    """
    formula = catalog.formula(target)
    if formula is None:
        raise MissingDefinitionError("formula", target)
    graph = graph or build_graph(catalog)
    order = graph.order_for(formula.name)
    logger.debug("evaluation order for %s: %s", formula.name, order)
    return order


def _expression_fields(expression: str) -> list[str]:
    try:
        tree = parse(expression)
    except ParseError:
        # Unparseable text still yields its explicit field references
        return [m.group(1) or m.group(2) for m in FIELD_REFERENCE.finditer(expression)]
    return [
        node.name
        for node in ast.walk(tree)
        if isinstance(node, ast.Var) or (isinstance(node, ast.Ref) and node.kind == "field")
    ]


def field_dependencies(text: str, catalog: Catalog) -> list[str]:
    """Form fields that text transitively depends on, in discovery order.

    Follows [calc:..] into formula expressions and [lookup:..] into every
    active condition and target of the table.
    """
    fields: list[str] = []
    seen: set[tuple[str, str]] = set()

    def note(name: str) -> None:
        name = name.strip()
        if name and name.lower() not in (f.lower() for f in fields):
            fields.append(name)

    def walk_text(chunk: str, as_expression: bool) -> None:
        if as_expression:
            for name in _expression_fields(chunk):
                note(name)
        else:
            for m in FIELD_REFERENCE.finditer(chunk):
                note(m.group(1) or m.group(2))
            for m in FORMAT_REFERENCE.finditer(chunk):
                formula = catalog.formula(m.group(1))
                if formula is None:
                    note(m.group(1))
                else:
                    walk_formula(formula)
        for kind, name in scan_references(chunk):
            if (kind, name.lower()) in seen:
                continue
            seen.add((kind, name.lower()))
            if kind == "calc":
                formula = catalog.formula(name)
                if formula is not None:
                    walk_formula(formula)
            else:
                table = catalog.lookup(name)
                if table is not None:
                    for condition in table.active_conditions():
                        walk_text(condition.condition_expression, as_expression=True)
                        walk_text(condition.target_value, as_expression=False)

    def walk_formula(formula: FormulaDefinition) -> None:
        seen.add(("calc", formula.name.lower()))
        walk_text(formula.expression, as_expression=True)

    walk_text(text, as_expression=False)
    return fields
