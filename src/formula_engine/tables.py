"""Decision tables: ordered condition -> value rules, first match wins."""

import logging
from collections.abc import Mapping

from pydantic import BaseModel

from .catalog import LookupTable
from .evaluator import EvalError, RefResolver, Scalar, evaluate, truthy
from .parser import parse

logger = logging.getLogger(__name__)


class NoMatchError(Exception):
    """Raised when no condition matches and the table has no default row."""

    def __init__(self, table_name: str, skipped: list[tuple[int, str]] | None = None):
        super().__init__(f"no condition matched in lookup table {table_name!r}")
        self.table_name = table_name
        self.skipped = skipped or []


class TableMatch(BaseModel):
    table: str
    order: int | None  # None when the default row was used
    value: str
    is_default: bool = False


def condition_holds(
    expression: str,
    bindings: Mapping[str, Scalar] | None,
    resolve_ref: RefResolver | None = None,
) -> bool:
    """Evaluate a condition expression and coerce the result to a boolean."""
    return truthy(evaluate(parse(expression), bindings, resolve_ref))


def evaluate_table(
    table: LookupTable,
    bindings: Mapping[str, Scalar] | None,
    resolve_ref: RefResolver | None = None,
) -> TableMatch:
    """Return the target value of the first active condition that holds.

    Conditions are tried in ascending ``order`` and evaluation stops at the
    first match. A condition that cannot be evaluated against the current
    data (for example, a field the user has not filled in yet) counts as not
    matching. Malformed condition syntax is an authoring error and raises
    ``ParseError``.

    Raises:
        NoMatchError: If nothing matches and the table has no default row
    """
    skipped: list[tuple[int, str]] = []

    for condition in table.active_conditions():
        try:
            holds = condition_holds(condition.condition_expression, bindings, resolve_ref)
        except EvalError as e:
            logger.debug(
                "lookup %s: condition %d skipped: %s", table.name, condition.order, e
            )
            skipped.append((condition.order, str(e)))
            continue

        if holds:
            logger.debug(
                "lookup %s: condition %d matched -> %r",
                table.name,
                condition.order,
                condition.target_value,
            )
            return TableMatch(table=table.name, order=condition.order, value=condition.target_value)

    if table.default_value is not None:
        logger.debug("lookup %s: default row -> %r", table.name, table.default_value)
        return TableMatch(table=table.name, order=None, value=table.default_value, is_default=True)

    raise NoMatchError(table.name, skipped)
