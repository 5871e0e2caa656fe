"""Decision table evaluator tests."""

import pytest

from formula_engine.catalog import LookupCondition, LookupTable
from formula_engine.parser import ParseError
from formula_engine.tables import NoMatchError, condition_holds, evaluate_table


def table(*rows, default=None):
    conditions = []
    for order, expr, target, *extra in rows:
        options = extra[0] if extra else {}
        conditions.append(
            LookupCondition(order=order, condition_expression=expr, target_value=target, **options)
        )
    return LookupTable(name="heating_factor", conditions=conditions, default_value=default)


class TestEvaluateTable:
    def test_first_match_wins(self):
        t = table(
            (1, "area > 200", "large"),
            (2, "area > 100", "medium"),
            (3, "true", "small"),
        )
        match = evaluate_table(t, {"area": 250})
        assert match.value == "large"
        assert match.order == 1
        assert evaluate_table(t, {"area": 150}).value == "medium"
        assert evaluate_table(t, {"area": 50}).value == "small"

    def test_ascending_order_not_list_order(self):
        t = table((5, "true", "five"), (2, "true", "two"))
        assert evaluate_table(t, {}).value == "two"

    def test_later_conditions_not_evaluated(self):
        seen = []

        def resolve(ref):
            seen.append(ref.name)
            return 1.0

        t = table((1, "[calc:a] > 0", "a"), (2, "[calc:b] > 0", "b"))
        assert evaluate_table(t, {}, resolve).value == "a"
        assert seen == ["a"]

    def test_inactive_conditions_skipped(self):
        t = table((1, "true", "off", {"is_active": False}), (2, "true", "on"))
        assert evaluate_table(t, {}).value == "on"

    def test_default_row(self):
        t = table((1, "heating == 'oil'", "1.2"), default="1.0")
        match = evaluate_table(t, {"heating": "gas"})
        assert match.value == "1.0"
        assert match.is_default
        assert match.order is None

    def test_no_match(self):
        t = table((1, "heating == 'oil'", "1.2"))
        with pytest.raises(NoMatchError) as exc:
            evaluate_table(t, {"heating": "gas"})
        assert exc.value.table_name == "heating_factor"

    def test_condition_on_missing_field_does_not_match(self):
        t = table((1, "floor_area > 100", "big"), (2, "heating == 'oil'", "oil"))
        match = evaluate_table(t, {"heating": "oil"})
        assert match.value == "oil"

    def test_skipped_conditions_reported(self):
        t = table((1, "floor_area > 100", "big"))
        with pytest.raises(NoMatchError) as exc:
            evaluate_table(t, {})
        assert exc.value.skipped[0][0] == 1

    def test_malformed_condition_raises(self):
        t = table((1, "area >", "x"))
        with pytest.raises(ParseError):
            evaluate_table(t, {"area": 1})


class TestConditionHolds:
    @pytest.mark.parametrize(
        "expression,expected",
        [
            ("1", True),
            ("0", False),
            ("'yes'", True),
            ("''", False),
            ("heating == 'oil' and area >= 100", True),
            ("not (area < 100)", True),
        ],
    )
    def test_coercion(self, expression, expected):
        assert condition_holds(expression, {"heating": "oil", "area": 100}) is expected


class TestLookupTableModel:
    def test_duplicate_orders_rejected(self):
        with pytest.raises(ValueError):
            table((1, "true", "a"), (1, "false", "b"))

    def test_numbers_coerced_to_text(self):
        t = LookupTable.model_validate(
            {"name": "t", "conditions": [{"order": 1, "condition_expression": "true", "target_value": 4000}]}
        )
        assert t.conditions[0].target_value == "4000"
