"""Shortcode resolver: renders templates such as "Savings: [calc:annual_savings:currency] €".

Recognised tokens:
    [calc:name]            formula result
    [lookup:name]          decision table result
    [field:name], {name}   form field value ([lead:name] is accepted too)
    [format:name:spec]     field or formula, whichever the catalog knows
    [static:text]          literal text
    [special:name]         special function; also bare [CURRENT_DATE] etc.

Any token except static may carry a trailing format spec, e.g.
[calc:annual_savings:currency:decimals=2].
"""

import logging
import re
import time
from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel

from . import ast
from .cache import CalculationEntry, ResolutionTimeout, SessionCache
from .catalog import Catalog
from .config import Settings
from .dependencies import (
    CycleError,
    MissingDefinitionError,
    build_graph,
    field_dependencies,
    lookup_node,
    resolve,
)
from .evaluator import (
    EvalError,
    Scalar,
    UnknownVariable,
    VariableBindings,
    as_bindings,
    evaluate,
    is_numeric,
    to_number,
)
from .formatting import FormatError, FormatSpec, format_value, parse_format_spec
from .parser import ParseError, parse
from .specials import BUILTIN_SPECIALS, SpecialContext, SpecialFunction
from .tables import NoMatchError, evaluate_table

logger = logging.getLogger(__name__)

TOKEN = re.compile(
    r"\[(?P<kind>[A-Za-z_]+)(?::(?P<body>[^\[\]]*))?\]"
    r"|\{(?P<field>\w[\w\s.\-]*)\}"
)

BARE_SPECIALS = {
    "CURRENT_DATE",
    "CURRENT_TIME",
    "CALCULATION_NUMBER",
    "FULL_NAME",
    "FULL_ADDRESS",
}


class SourceType(str, Enum):
    FIELD = "field"
    FORMULA = "formula"
    STATIC = "static"
    LOOKUP = "lookup"
    SPECIAL = "special"


PREFIXES = {
    "calc": SourceType.FORMULA,
    "lookup": SourceType.LOOKUP,
    "field": SourceType.FIELD,
    "lead": SourceType.FIELD,
    "static": SourceType.STATIC,
    "special": SourceType.SPECIAL,
}


class UnknownFunction(EvalError):
    pass


class NestingTooDeep(EvalError):
    pass


class ShortcodeToken(BaseModel):
    raw: str
    source_type: SourceType
    reference_name: str
    format_spec: FormatSpec | None = None
    format_error: str | None = None
    start: int
    end: int


class TokenFailure(BaseModel):
    token: str
    error: str
    error_type: str
    hard: bool = False
    fallback_used: bool = False


class RenderResult(BaseModel):
    text: str
    unresolved_tokens: list[str] = []
    failures: list[TokenFailure] = []


class RenderError(Exception):
    """Raised when a template hits a catalog-level inconsistency with no fallback.

    ``result`` still carries the partially rendered text.
    """

    def __init__(self, failures: list[TokenFailure], result: RenderResult):
        names = ", ".join(f.token for f in failures)
        super().__init__(f"unresolvable tokens: {names}")
        self.failures = failures
        self.result = result


RECOVERABLE = (
    ParseError,
    EvalError,
    CycleError,
    MissingDefinitionError,
    NoMatchError,
    ResolutionTimeout,
    FormatError,
)


def _classify(kind: str, body: str | None, catalog: Catalog | None) -> tuple[SourceType, str, str | None] | None:
    if body is None:
        if kind in BARE_SPECIALS:
            return SourceType.SPECIAL, kind.lower(), None
        return None

    prefix = kind.lower()
    if prefix == "static":
        return SourceType.STATIC, body, None

    name, _, spec = body.partition(":")
    name = name.strip()
    if not name:
        return None
    if prefix == "format":
        is_formula = catalog is not None and catalog.has_formula(name)
        return (SourceType.FORMULA if is_formula else SourceType.FIELD), name, spec
    if prefix not in PREFIXES:
        return None
    return PREFIXES[prefix], name, spec


def tokenize(template: str, catalog: Catalog | None = None) -> list[ShortcodeToken]:
    """Find and classify every shortcode in a template, in order.

    Bracketed text that is not a known shortcode (e.g. "[1]") is left alone.
    """
    tokens = []
    for m in TOKEN.finditer(template):
        if m.group("field") is not None:
            classified = (SourceType.FIELD, m.group("field").strip(), None)
        else:
            classified = _classify(m.group("kind"), m.group("body"), catalog)
        if classified is None:
            continue

        source_type, name, spec_text = classified
        spec, error = None, None
        try:
            spec = parse_format_spec(spec_text)
        except FormatError as e:
            error = str(e)

        tokens.append(
            ShortcodeToken(
                raw=m.group(0),
                source_type=source_type,
                reference_name=name,
                format_spec=spec,
                format_error=error,
                start=m.start(),
                end=m.end(),
            )
        )
    return tokens


class Budget:
    """Cooperative time budget for one render call."""

    def __init__(self, seconds: float | None = None):
        self.seconds = seconds
        self.started = time.monotonic()

    def remaining(self) -> float | None:
        if self.seconds is None:
            return None
        return max(0.0, self.seconds - (time.monotonic() - self.started))

    def check(self, what: str) -> None:
        if self.seconds is not None and self.remaining() <= 0:
            raise ResolutionTimeout(f"time budget exhausted while resolving {what}")


@dataclass(frozen=True)
class _Context:
    session_id: str
    bindings: VariableBindings
    budget: Budget
    depth: int = 0
    referrer: str | None = None


class ShortcodeResolver:
    """Renders templates against a catalog snapshot and a session cache."""

    def __init__(
        self,
        catalog: Catalog,
        cache: SessionCache | None = None,
        settings: Settings | None = None,
        specials: Mapping[str, SpecialFunction] | None = None,
        fallbacks: Mapping[str, str] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.catalog = catalog
        self.settings = settings or Settings()
        self.cache = cache or SessionCache(self.settings.session_ttl_seconds)
        self.specials: dict[str, SpecialFunction] = dict(BUILTIN_SPECIALS)
        self.specials.update(specials or {})
        self.fallbacks = {k.strip().lower(): v for k, v in (fallbacks or {}).items()}
        self.clock = clock
        self.graph = build_graph(catalog)

    # -- public API ---------------------------------------------------------

    def render(
        self,
        template: str,
        bindings: Mapping[str, Scalar] | None,
        session_id: str,
        deadline: float | None = None,
    ) -> RenderResult:
        """Substitute every shortcode in template.

        Tokens that fail degrade to a fallback or a visible placeholder.

        Raises:
            RenderError: If a failure is a catalog-level inconsistency with
                no fallback configured anywhere
        """
        ctx = _Context(session_id=session_id, bindings=as_bindings(bindings), budget=Budget(deadline))
        pieces: list[str] = []
        failures: list[TokenFailure] = []
        unresolved: list[str] = []
        pos = 0

        for token in tokenize(template, self.catalog):
            pieces.append(template[pos : token.start])
            pos = token.end
            try:
                ctx.budget.check(token.raw)
                value, unit = self._resolve_token(token, ctx)
                pieces.append(self._format(token, value, unit))
            except RECOVERABLE as e:
                failure = TokenFailure(
                    token=token.raw,
                    error=str(e),
                    error_type=type(e).__name__,
                    hard=self._is_hard(e),
                )
                fallback = self._fallback(token)
                if fallback is not None:
                    failure.fallback_used = True
                    pieces.append(self._format_fallback(token, fallback))
                else:
                    unresolved.append(token.raw)
                    pieces.append(self.settings.placeholder.format(token=token.raw[1:-1]))
                log = logger.warning if failure.hard else logger.info
                log("token %s failed (%s): %s", token.raw, failure.error_type, e)
                failures.append(failure)

        pieces.append(template[pos:])
        result = RenderResult(text="".join(pieces), unresolved_tokens=unresolved, failures=failures)

        hard = [f for f in failures if f.hard and not f.fallback_used]
        if hard:
            raise RenderError(hard, result)
        return result

    def value_of(
        self,
        formula_name: str,
        bindings: Mapping[str, Scalar] | None,
        session_id: str,
        deadline: float | None = None,
    ) -> Scalar:
        """Raw value of a formula for a session (computed at most once)."""
        ctx = _Context(session_id=session_id, bindings=as_bindings(bindings), budget=Budget(deadline))
        value, _ = self._formula_value(formula_name, ctx)
        return value

    def compute(
        self,
        expression: str,
        bindings: Mapping[str, Scalar] | None,
        session_id: str,
        deadline: float | None = None,
    ) -> Scalar:
        """Evaluate an ad-hoc expression that may embed shortcodes, e.g. "[calc:energy] / 10"."""
        ctx = _Context(session_id=session_id, bindings=as_bindings(bindings), budget=Budget(deadline))
        return evaluate(parse(expression), ctx.bindings, lambda ref: self._ref_value(ref, ctx))

    def field_dependencies(self, template: str) -> list[str]:
        """Form fields a template transitively depends on."""
        return field_dependencies(template, self.catalog)

    def debug_snapshot(self, session_id: str) -> dict[str, CalculationEntry]:
        return self.cache.snapshot(session_id)

    def invalidate(self, session_id: str) -> None:
        self.cache.invalidate(session_id)

    # -- resolution ---------------------------------------------------------

    def _resolve_token(self, token: ShortcodeToken, ctx: _Context) -> tuple[Any, str | None]:
        if token.format_error:
            raise FormatError(token.format_error)

        match token.source_type:
            case SourceType.FIELD:
                return self._field_value(token.reference_name, ctx), None
            case SourceType.FORMULA:
                return self._formula_value(token.reference_name, ctx)
            case SourceType.LOOKUP:
                return self._lookup_value(token.reference_name, ctx)
            case SourceType.STATIC:
                return token.reference_name, None
            case SourceType.SPECIAL:
                return self._special_value(token.reference_name, ctx), None

    def _field_value(self, name: str, ctx: _Context) -> Scalar:
        if name not in ctx.bindings:
            raise UnknownVariable(name)
        return ctx.bindings[name]

    def _special_value(self, name: str, ctx: _Context) -> str:
        fn = self.specials.get(name.lower())
        if fn is None:
            raise UnknownFunction(f"unknown special function: {name}")
        special_ctx = SpecialContext(
            session_id=ctx.session_id,
            bindings=ctx.bindings,
            now=self.clock(),
            settings=self.settings,
        )
        return fn(special_ctx)

    def _override(self, formula_name: str, bindings: VariableBindings) -> Scalar | None:
        base = formula_name.strip()
        candidates = [
            base,
            base.replace("-", "_"),
            base.replace("_", "-"),
            re.sub(r"\s+", "_", base),
            re.sub(r"\s+", "-", base),
        ]
        for candidate in candidates:
            key = f"override_{candidate}"
            if key in bindings and bindings[key] not in (None, ""):
                value = bindings[key]
                logger.debug("using override %s=%r instead of computing", key, value)
                return to_number(value) if is_numeric(value) else value
        return None

    def _formula_value(self, name: str, ctx: _Context) -> tuple[Scalar, str | None]:
        formula = self.catalog.formula(name)
        if formula is None:
            raise MissingDefinitionError("formula", name, referenced_by=ctx.referrer)

        override = self._override(formula.name, ctx.bindings)
        if override is not None:
            return override, formula.result_unit

        inner = replace(ctx, referrer=formula.name)

        def compute() -> tuple[Scalar, str | None]:
            ctx.budget.check(formula.name)
            # rejects cycles and dangling references before anything is evaluated
            resolve(formula.name, self.catalog, self.graph)
            tree = parse(formula.expression)
            value = evaluate(tree, ctx.bindings, lambda ref: self._ref_value(ref, inner))
            return value, formula.result_unit

        entry = self.cache.get_or_compute(
            ctx.session_id, formula.name, compute, timeout=ctx.budget.remaining()
        )
        return entry.value, entry.unit

    def _ref_value(self, ref: ast.Ref, ctx: _Context) -> Scalar:
        match ref.kind:
            case "field":
                return self._field_value(ref.name, ctx)
            case "calc":
                return self._formula_value(ref.name, ctx)[0]
            case "lookup":
                return self._lookup_value(ref.name, ctx)[0]
            case _:
                raise EvalError(f"unknown reference kind: {ref.kind}")

    def _lookup_value(self, name: str, ctx: _Context) -> tuple[Any, str | None]:
        table = self.catalog.lookup(name)
        if table is None:
            raise MissingDefinitionError("lookup", name, referenced_by=ctx.referrer)
        if ctx.depth >= self.settings.max_nesting:
            raise NestingTooDeep(f"lookup {table.name!r} nested deeper than {self.settings.max_nesting}")

        node = lookup_node(table.name)
        self.graph.order_for(node, strict=False)
        inner = replace(ctx, depth=ctx.depth + 1, referrer=node)

        try:
            match = evaluate_table(table, ctx.bindings, lambda ref: self._ref_value(ref, inner))
        except NoMatchError:
            if table.fallback_value is None:
                raise
            logger.info("lookup %s: no match, using fallback %r", table.name, table.fallback_value)
            return self._literal(table.fallback_value), None

        return self._target_value(match.value, inner)

    def _target_value(self, text: str, ctx: _Context) -> tuple[Any, str | None]:
        """Resolve a decision-table target.

        A target is a literal, a single shortcode, an expression over
        shortcodes, or text with shortcodes embedded ("Bonus [calc:x] €"),
        which is rendered like a template.
        """
        text = text.strip()
        tokens = tokenize(text, self.catalog)
        if not tokens:
            return self._literal(text), None
        if len(tokens) == 1 and tokens[0].start == 0 and tokens[0].end == len(text):
            return self._resolve_token(tokens[0], ctx)
        try:
            tree = parse(text)
        except ParseError:
            return self._render_target(text, tokens, ctx), None
        return evaluate(tree, ctx.bindings, lambda ref: self._ref_value(ref, ctx)), None

    def _render_target(self, text: str, tokens: list[ShortcodeToken], ctx: _Context) -> str:
        # any token failure fails the whole target
        pieces = []
        pos = 0
        for token in tokens:
            pieces.append(text[pos : token.start])
            value, unit = self._resolve_token(token, ctx)
            pieces.append(self._format(token, value, unit))
            pos = token.end
        pieces.append(text[pos:])
        return "".join(pieces)

    @staticmethod
    def _literal(text: str) -> Scalar:
        text = text.strip()
        if is_numeric(text):
            return to_number(text)
        if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'":
            return text[1:-1]
        return text

    # -- failure handling and formatting -------------------------------------

    @staticmethod
    def _is_hard(error: Exception) -> bool:
        if isinstance(error, MissingDefinitionError):
            return error.referenced_by is not None
        return isinstance(error, NoMatchError)

    def _fallback(self, token: ShortcodeToken) -> str | None:
        if token.format_spec is not None and token.format_spec.fallback is not None:
            return token.format_spec.fallback
        for key in (token.raw, token.reference_name):
            if key.strip().lower() in self.fallbacks:
                return self.fallbacks[key.strip().lower()]
        if token.source_type is SourceType.LOOKUP:
            table = self.catalog.lookup(token.reference_name)
            if table is not None and table.fallback_value is not None:
                return table.fallback_value
        return None

    def _format_fallback(self, token: ShortcodeToken, fallback: str) -> str:
        try:
            return format_value(fallback, token.format_spec, self.settings)
        except (ValueError, ArithmeticError) as e:
            logger.warning("fallback for %s could not be formatted, using it as-is: %s", token.raw, e)
            return fallback

    def _format(self, token: ShortcodeToken, value: Any, unit: str | None) -> str:
        spec = token.format_spec
        if spec is None and token.source_type is SourceType.FORMULA:
            formula = self.catalog.formula(token.reference_name)
            if formula is not None and formula.display_format:
                spec = parse_format_spec(formula.display_format)

        if spec is None and token.source_type in (SourceType.FORMULA, SourceType.LOOKUP) and is_numeric(value):
            text = format_value(value, FormatSpec(kind="number"), self.settings)
            if unit and self.settings.append_units:
                text = f"{text} {unit}"
            return text

        return format_value(value, spec, self.settings)
