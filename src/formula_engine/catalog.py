"""Formula and lookup-table catalog.

The catalog is a read-only snapshot of the definitions an administrator has
authored. The persistence layer hands it over once per render batch, either
as plain records or as a YAML export:

    formulas:
      - name: annual_savings
        expression: "[calc:current_cost] - [calc:heat_pump_cost]"
        result_unit: "€"
    lookups:
      - name: heating_bonus
        fallback_value: "0"
        conditions:
          - order: 1
            condition_expression: "[field:heating_type] == 'oil'"
            target_value: "4000"
"""

import logging
import re
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

logger = logging.getLogger(__name__)


class CatalogError(Exception):
    pass


def name_key(name: str) -> str:
    """Case-insensitive lookup key for a formula or table name."""
    return name.strip().lower()


def slug_key(name: str) -> str:
    """Key under which 'Heat pump cost' is also reachable as 'heat-pump-cost'."""
    return re.sub(r"\s+", "-", name_key(name))


class FormulaDefinition(BaseModel):
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    name: str
    expression: str
    result_unit: str | None = None
    is_active: bool = True
    description: str | None = None
    display_format: str | None = None  # e.g. "currency:decimals=2"


class LookupCondition(BaseModel):
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    order: int
    condition_expression: str
    target_value: str  # literal, or a shortcode such as "[calc:oil_cost]"
    description: str | None = None
    is_active: bool = True


class LookupTable(BaseModel):
    """Ordered decision table: first truthy condition wins."""

    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    name: str
    conditions: tuple[LookupCondition, ...] = ()
    is_active: bool = True
    default_value: str | None = None
    fallback_value: str | None = None
    description: str | None = None

    @model_validator(mode="after")
    def _unique_orders(self) -> "LookupTable":
        orders = [c.order for c in self.conditions]
        if len(orders) != len(set(orders)):
            raise ValueError(f"lookup table {self.name!r} has duplicate condition orders")
        return self

    def active_conditions(self) -> list[LookupCondition]:
        """Active conditions in ascending evaluation order."""
        return sorted((c for c in self.conditions if c.is_active), key=lambda c: c.order)


class Catalog:
    """Immutable, case-insensitive index of active formulas and lookup tables."""

    def __init__(
        self,
        formulas: Iterable[FormulaDefinition] = (),
        lookups: Iterable[LookupTable] = (),
    ):
        self._formulas = self._index(formulas, "formula")
        self._lookups = self._index(lookups, "lookup table")
        logger.debug(
            "catalog loaded: %d formulas, %d lookup tables",
            len(self.formulas),
            len(self.lookups),
        )

    @staticmethod
    def _index(records: Iterable[Any], label: str) -> dict[str, Any]:
        index: dict[str, Any] = {}
        for record in records:
            if not record.is_active:
                continue
            key = name_key(record.name)
            if key in index:
                raise CatalogError(f"duplicate {label}: {record.name!r}")
            index[key] = record
        return index

    @classmethod
    def from_records(
        cls,
        formulas: Iterable[dict[str, Any]] = (),
        lookups: Iterable[dict[str, Any]] = (),
    ) -> "Catalog":
        """Build a catalog from plain dicts as returned by the persistence layer."""
        return cls(
            formulas=[FormulaDefinition.model_validate(f) for f in formulas],
            lookups=[LookupTable.model_validate(t) for t in lookups],
        )

    @staticmethod
    def _find(index: dict[str, Any], name: str) -> Any | None:
        key = name_key(name)
        if key in index:
            return index[key]
        for record_key, record in index.items():
            if slug_key(record_key) == key:
                return record
        return None

    def formula(self, name: str) -> FormulaDefinition | None:
        return self._find(self._formulas, name)

    def lookup(self, name: str) -> LookupTable | None:
        return self._find(self._lookups, name)

    def has_formula(self, name: str) -> bool:
        return self.formula(name) is not None

    @property
    def formulas(self) -> list[FormulaDefinition]:
        return list(self._formulas.values())

    @property
    def lookups(self) -> list[LookupTable]:
        return list(self._lookups.values())


def load_catalog(path: str | Path) -> Catalog:
    """Load a catalog snapshot from a YAML file."""
    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise CatalogError(f"{path}: expected a mapping with 'formulas' and 'lookups'")

    try:
        return Catalog.from_records(
            formulas=data.get("formulas") or [],
            lookups=data.get("lookups") or [],
        )
    except ValidationError as e:
        raise CatalogError(f"{path}: {e}") from e
