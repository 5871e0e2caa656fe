"""Shared fixtures: a small heat-pump savings catalog."""

from datetime import datetime

import pytest

from formula_engine import Catalog, SessionCache, Settings, ShortcodeResolver

FORMULAS = [
    {
        "name": "current_cost",
        "expression": "annual_energy * [lookup:energy_price]",
        "result_unit": "€",
    },
    {
        "name": "heat_pump_cost",
        "expression": "annual_energy * 0.03125",
        "result_unit": "€",
    },
    {
        "name": "annual_savings",
        "expression": "[calc:current_cost] - [calc:heat_pump_cost]",
        "result_unit": "€",
    },
    {
        "name": "Monthly savings",
        "expression": "[calc:annual_savings] / 12",
        "result_unit": "€",
    },
    {
        "name": "payback_years",
        "expression": "[field:install_price] / [calc:annual_savings]",
        "result_unit": "years",
        "display_format": "number:decimals=1",
    },
    {
        "name": "retired_formula",
        "expression": "1",
        "is_active": False,
    },
]

LOOKUPS = [
    {
        "name": "energy_price",
        "conditions": [
            {"order": 1, "condition_expression": "heating_type == 'oil'", "target_value": "0.125"},
            {"order": 2, "condition_expression": "heating_type == 'gas'", "target_value": "0.0625"},
        ],
    },
    {
        "name": "heating_bonus",
        "fallback_value": "0",
        "conditions": [
            {
                "order": 1,
                "condition_expression": "[field:heating_type] == 'oil'",
                "target_value": "[calc:heat_pump_cost]",
            },
            {"order": 2, "condition_expression": "heating_type == 'gas'", "target_value": "1000"},
        ],
    },
    {
        "name": "savings_label",
        "default_value": "Some savings",
        "conditions": [
            {
                "order": 1,
                "condition_expression": "[calc:annual_savings] > 1000",
                "target_value": "Great savings",
            },
        ],
    },
]

FIXED_NOW = datetime(2026, 3, 5, 14, 30)

OIL_HOUSE = {"annual_energy": 20000, "heating_type": "oil", "install_price": 15000}


@pytest.fixture
def catalog():
    return Catalog.from_records(formulas=FORMULAS, lookups=LOOKUPS)


@pytest.fixture
def cache():
    return SessionCache()


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def resolver(catalog, cache, settings):
    return ShortcodeResolver(catalog, cache, settings=settings, clock=lambda: FIXED_NOW)
