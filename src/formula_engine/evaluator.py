"""Evaluator: walks an expression AST against variable bindings."""

import math
import re
from collections.abc import Callable, Iterator, Mapping
from typing import Any

from . import ast

Scalar = float | int | str | bool

_NUMERIC = re.compile(r"^\s*[+-]?(\d+([.,]\d*)?|[.,]\d+)\s*$")


class EvalError(Exception):
    pass


class UnknownVariable(EvalError):
    def __init__(self, name: str):
        super().__init__(f"unknown variable: {name}")
        self.name = name


class DivisionByZero(EvalError):
    def __init__(self):
        super().__init__("division by zero")


class TypeMismatch(EvalError):
    pass


class NonFiniteResult(EvalError):
    pass


class VariableBindings(Mapping[str, Scalar]):
    """Read-only, case-insensitive mapping of field/formula names to scalars."""

    def __init__(self, values: Mapping[str, Scalar] | None = None):
        self._values: dict[str, Scalar] = {}
        self._names: dict[str, str] = {}
        for name, value in (values or {}).items():
            key = name.strip().lower()
            self._values[key] = value
            self._names[key] = name

    def __getitem__(self, name: str) -> Scalar:
        return self._values[name.strip().lower()]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.strip().lower() in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._names.values())

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"VariableBindings({dict(self.items())!r})"

    def merged(self, extra: Mapping[str, Scalar]) -> "VariableBindings":
        """New bindings with `extra` layered on top."""
        combined = dict(self.items())
        combined.update(extra)
        return VariableBindings(combined)


def as_bindings(values: Mapping[str, Scalar] | None) -> VariableBindings:
    if isinstance(values, VariableBindings):
        return values
    return VariableBindings(values)


def is_numeric(value: Any) -> bool:
    """True for real numbers and numeric-looking strings (never for booleans)."""
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    return isinstance(value, str) and bool(_NUMERIC.match(value))


def to_number(value: Any) -> float:
    """Coerce a number or numeric-looking string to float."""
    if isinstance(value, bool):
        raise TypeMismatch(f"expected a number, got boolean {value!r}")
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise NonFiniteResult(f"non-finite number: {value!r}")
        return float(value)
    if isinstance(value, str) and _NUMERIC.match(value):
        return float(value.strip().replace(",", "."))
    raise TypeMismatch(f"expected a number, got {value!r}")


def truthy(value: Any) -> bool:
    """Boolean coercion used by conditions."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if is_numeric(text):
            return to_number(text) != 0
        return text not in ("", "false", "no", "off")
    return value is not None


def _checked(result: float) -> float:
    if not math.isfinite(result):
        raise NonFiniteResult(f"arithmetic produced a non-finite result: {result!r}")
    return result


def _arithmetic(op: str, left: Any, right: Any) -> float:
    a = to_number(left)
    b = to_number(right)
    match op:
        case "+":
            return _checked(a + b)
        case "-":
            return _checked(a - b)
        case "*":
            return _checked(a * b)
        case "/":
            if b == 0:
                raise DivisionByZero()
            return _checked(a / b)
        case _:
            raise EvalError(f"unknown op: {op}")


def _compare(op: str, left: Any, right: Any) -> bool:
    equality = op in ("==", "!=")

    if isinstance(left, bool) or isinstance(right, bool):
        if not equality:
            raise TypeMismatch(f"cannot order booleans with {op}")
        same = truthy(left) == truthy(right)
        return same if op == "==" else not same

    if isinstance(left, str) and isinstance(right, str):
        a, b = left, right
    elif is_numeric(left) and is_numeric(right):
        a, b = to_number(left), to_number(right)
    elif equality:
        # number vs non-numeric string
        return op == "!="
    else:
        raise TypeMismatch(f"cannot compare {left!r} {op} {right!r}")

    match op:
        case "<":
            return a < b
        case ">":
            return a > b
        case "<=":
            return a <= b
        case ">=":
            return a >= b
        case "==":
            return a == b
        case "!=":
            return a != b
        case _:
            raise EvalError(f"unknown comparison: {op}")


RefResolver = Callable[[ast.Ref], Scalar]


def evaluate(
    expr: ast.Expr,
    bindings: Mapping[str, Scalar] | None,
    resolve_ref: RefResolver | None = None,
) -> Scalar:
    """Evaluate an expression against bindings.

    Embedded shortcode references are handed to ``resolve_ref``. Without a
    resolver, ``field`` references read the bindings directly and any other
    reference is an unknown variable.
    """
    return _evaluate(expr, as_bindings(bindings), resolve_ref)


def _evaluate(
    expr: ast.Expr, bindings: VariableBindings, resolve_ref: RefResolver | None
) -> Scalar:
    match expr:
        case ast.Literal(value=v):
            return v

        case ast.Var(name=name):
            if name not in bindings:
                raise UnknownVariable(name)
            return bindings[name]

        case ast.Ref(kind=kind, name=name):
            if resolve_ref is not None:
                return resolve_ref(expr)
            if kind == "field" and name in bindings:
                return bindings[name]
            raise UnknownVariable(name if kind == "field" else f"{kind}:{name}")

        case ast.Group(inner=inner):
            return _evaluate(inner, bindings, resolve_ref)

        case ast.BinOp(op="and", left=left, right=right):
            return truthy(_evaluate(left, bindings, resolve_ref)) and truthy(
                _evaluate(right, bindings, resolve_ref)
            )

        case ast.BinOp(op="or", left=left, right=right):
            return truthy(_evaluate(left, bindings, resolve_ref)) or truthy(
                _evaluate(right, bindings, resolve_ref)
            )

        case ast.BinOp(op=op, left=left, right=right):
            left_val = _evaluate(left, bindings, resolve_ref)
            right_val = _evaluate(right, bindings, resolve_ref)
            if op in ("+", "-", "*", "/"):
                return _arithmetic(op, left_val, right_val)
            return _compare(op, left_val, right_val)

        case ast.UnaryOp(op=op, operand=operand):
            v = _evaluate(operand, bindings, resolve_ref)
            match op:
                case "-":
                    return -to_number(v)
                case "+":
                    return to_number(v)
                case "not":
                    return not truthy(v)
                case _:
                    raise EvalError(f"unknown unary op: {op}")

        case _:
            raise EvalError(f"unknown expr type: {type(expr)}")
