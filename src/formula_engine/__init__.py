"""Formula engine: parse, evaluate, and render calculator shortcodes.

Pipeline: catalog of formulas and lookup tables -> dependency-ordered,
session-cached evaluation -> formatted template text.

Example:
    from formula_engine import Catalog, ShortcodeResolver, load_catalog

    catalog = load_catalog("catalog.yaml")
    resolver = ShortcodeResolver(catalog)
    result = resolver.render(
        "Savings: [calc:annual_savings:currency] €",
        {"annual_energy": 20000, "heating_type": "oil"},
        session_id="a1b2c3",
    )
    result.text  # "Savings: 1842 €"
"""

__version__ = "0.1.0"

from .ast import BinOp, Expr, Group, Literal, Ref, UnaryOp, Var
from .cache import CalculationEntry, ResolutionTimeout, SessionCache
from .catalog import Catalog, CatalogError, FormulaDefinition, LookupCondition, LookupTable, load_catalog
from .config import Settings, configure_logging, load_settings
from .dependencies import CycleError, DependencyGraph, MissingDefinitionError, build_graph, resolve
from .evaluator import (
    DivisionByZero,
    EvalError,
    NonFiniteResult,
    TypeMismatch,
    UnknownVariable,
    VariableBindings,
    evaluate,
)
from .formatting import FormatError, FormatSpec, format_value, parse_format_spec
from .parser import Lexer, ParseError, Parser, UnbalancedParentheses, UnexpectedToken, UnterminatedString, parse
from .reveal import Card, CardProgression, CardState, CardStateError, RevealCondition, is_revealed
from .shortcodes import (
    RenderError,
    RenderResult,
    ShortcodeResolver,
    ShortcodeToken,
    SourceType,
    TokenFailure,
    tokenize,
)
from .specials import BUILTIN_SPECIALS, SpecialContext
from .tables import NoMatchError, TableMatch, evaluate_table

__all__ = [
    # Parse
    "parse",
    "Lexer",
    "Parser",
    "ParseError",
    "UnexpectedToken",
    "UnterminatedString",
    "UnbalancedParentheses",
    # AST
    "Expr",
    "Literal",
    "Var",
    "Ref",
    "Group",
    "BinOp",
    "UnaryOp",
    # Evaluate
    "evaluate",
    "VariableBindings",
    "EvalError",
    "UnknownVariable",
    "DivisionByZero",
    "TypeMismatch",
    "NonFiniteResult",
    # Catalog
    "Catalog",
    "CatalogError",
    "FormulaDefinition",
    "LookupCondition",
    "LookupTable",
    "load_catalog",
    # Dependencies
    "DependencyGraph",
    "build_graph",
    "resolve",
    "CycleError",
    "MissingDefinitionError",
    # Cache
    "SessionCache",
    "CalculationEntry",
    "ResolutionTimeout",
    # Tables
    "evaluate_table",
    "TableMatch",
    "NoMatchError",
    # Rendering
    "ShortcodeResolver",
    "ShortcodeToken",
    "SourceType",
    "RenderResult",
    "RenderError",
    "TokenFailure",
    "tokenize",
    "FormatSpec",
    "FormatError",
    "format_value",
    "parse_format_spec",
    "BUILTIN_SPECIALS",
    "SpecialContext",
    # Reveal
    "Card",
    "CardProgression",
    "CardState",
    "CardStateError",
    "RevealCondition",
    "is_revealed",
    # Config
    "Settings",
    "load_settings",
    "configure_logging",
]
