"""Tests for formula dependency resolution.

The resolver must:
1. Scan formula expressions and lookup rows for nested references
2. Order evaluation so dependencies come first
3. Reject cycles with the full path before anything is evaluated
4. Report references to missing definitions
"""

import pytest

from formula_engine.catalog import Catalog
from formula_engine.dependencies import (
    CycleError,
    DependencyGraph,
    MissingDefinitionError,
    build_graph,
    field_dependencies,
    resolve,
    scan_references,
)


def make_catalog(formulas, lookups=()):
    return Catalog.from_records(
        formulas=[{"name": name, "expression": expr} for name, expr in formulas.items()],
        lookups=list(lookups),
    )


class TestScanReferences:
    def test_kinds_and_names(self):
        refs = scan_references("[calc:a] + [LOOKUP:b] * [calc: c :currency] + {field}")
        assert refs == [("calc", "a"), ("lookup", "b"), ("calc", "c")]


class TestDependencyGraph:
    def test_topological_sort(self):
        graph = DependencyGraph()
        graph.add_node("total", ["net", "tax"])
        graph.add_node("net", ["gross"])
        graph.add_node("tax", ["gross"])
        graph.add_node("gross", [])
        order = graph.topological_sort()
        assert order.index("gross") < order.index("net") < order.index("total")
        assert order.index("tax") < order.index("total")

    def test_dependencies_of(self):
        graph = DependencyGraph()
        graph.add_node("a", ["b"])
        assert graph.dependencies_of("a") == ["b"]
        assert graph.dependencies_of("b") == []
        assert "b" in graph

    def test_order_for_only_closure(self):
        graph = DependencyGraph()
        graph.add_node("a", ["b"])
        graph.add_node("b", [])
        graph.add_node("unrelated", [])
        assert graph.order_for("a") == ["b", "a"]

    def test_cycle_path(self):
        graph = DependencyGraph()
        graph.add_node("a", ["b"])
        graph.add_node("b", ["c"])
        graph.add_node("c", ["a"])
        with pytest.raises(CycleError) as exc:
            graph.topological_sort()
        assert exc.value.path == ["a", "b", "c", "a"]


class TestResolve:
    def test_dependencies_first(self):
        catalog = make_catalog(
            {
                "annual_savings": "[calc:current_cost] - [calc:heat_pump_cost]",
                "current_cost": "energy * 0.1",
                "heat_pump_cost": "energy * 0.03",
            }
        )
        assert resolve("annual_savings", catalog) == ["current_cost", "heat_pump_cost", "annual_savings"]

    def test_canonical_names(self):
        catalog = make_catalog({"Total cost": "[calc:BASE] * 2", "base": "1"})
        assert resolve("total-cost", catalog) == ["base", "Total cost"]

    def test_two_formula_cycle(self):
        catalog = make_catalog({"A": "[calc:B] + 1", "B": "[calc:A] * 2"})
        with pytest.raises(CycleError) as exc:
            resolve("A", catalog)
        assert exc.value.path == ["A", "B", "A"]

    def test_self_reference(self):
        catalog = make_catalog({"A": "[calc:A] + 1"})
        with pytest.raises(CycleError) as exc:
            resolve("A", catalog)
        assert exc.value.path == ["A", "A"]

    def test_cycle_through_lookup(self):
        catalog = make_catalog(
            {"price": "[lookup:tariff] * 2"},
            lookups=[
                {
                    "name": "tariff",
                    "conditions": [
                        {"order": 1, "condition_expression": "[calc:price] > 1", "target_value": "3"},
                    ],
                }
            ],
        )
        with pytest.raises(CycleError) as exc:
            resolve("price", catalog)
        assert exc.value.path == ["price", "lookup:tariff", "price"]

    def test_missing_target(self):
        with pytest.raises(MissingDefinitionError) as exc:
            resolve("nope", make_catalog({}))
        assert exc.value.referenced_by is None

    def test_missing_dependency(self):
        catalog = make_catalog({"a": "[calc:ghost] + 1"})
        with pytest.raises(MissingDefinitionError) as exc:
            resolve("a", catalog)
        assert exc.value.name == "ghost"
        assert exc.value.referenced_by == "a"

    def test_missing_reference_below_lookup_is_lazy(self):
        catalog = make_catalog(
            {"a": "[lookup:pick]"},
            lookups=[
                {
                    "name": "pick",
                    "conditions": [
                        {"order": 1, "condition_expression": "x == 1", "target_value": "[calc:ghost]"},
                        {"order": 2, "condition_expression": "true", "target_value": "0"},
                    ],
                }
            ],
        )
        assert resolve("a", catalog) == ["lookup:pick", "a"]

    def test_graph_reused(self):
        catalog = make_catalog({"a": "[calc:b]", "b": "1"})
        graph = build_graph(catalog)
        assert resolve("a", catalog, graph) == ["b", "a"]


class TestFieldDependencies:
    def test_template_fields(self):
        catalog = make_catalog({})
        assert field_dependencies("{first_name} [field:email:text]", catalog) == ["first_name", "email"]

    def test_through_formulas(self):
        catalog = make_catalog({"total": "[calc:base] * factor", "base": "area * {height}"})
        assert field_dependencies("[calc:total]", catalog) == ["factor", "area", "height"]

    def test_format_token(self):
        catalog = make_catalog({"total": "area * 2"})
        assert field_dependencies("[format:total:number] [format:email]", catalog) == ["area", "email"]

    def test_cycles_terminate(self):
        catalog = make_catalog({"a": "[calc:b] + x", "b": "[calc:a] + y"})
        assert field_dependencies("[calc:a]", catalog) == ["x", "y"]
