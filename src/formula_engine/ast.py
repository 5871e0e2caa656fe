"""AST nodes for formula and condition expressions."""

from collections.abc import Iterator
from typing import Annotated, Any
from typing import Literal as TypingLiteral

from pydantic import BaseModel, Field


# Expressions - using discriminated union for type safety
class Literal(BaseModel):
    type: TypingLiteral["literal"] = "literal"
    value: Any  # float, str, bool


class Var(BaseModel):
    """Bare identifier, resolved against the variable bindings."""

    type: TypingLiteral["var"] = "var"
    name: str


class Ref(BaseModel):
    """Embedded shortcode reference (e.g. '[calc:annual_savings]' or '{floor-area}')."""

    type: TypingLiteral["ref"] = "ref"
    kind: TypingLiteral["calc", "lookup", "field"]
    name: str


class Group(BaseModel):
    """Parenthesized sub-expression."""

    type: TypingLiteral["group"] = "group"
    inner: "Expr"


class BinOp(BaseModel):
    type: TypingLiteral["binop"] = "binop"
    op: str  # +, -, *, /, >, <, >=, <=, ==, !=, and, or
    left: "Expr"
    right: "Expr"


class UnaryOp(BaseModel):
    type: TypingLiteral["unaryop"] = "unaryop"
    op: str  # -, +, not
    operand: "Expr"


# Expression union type
Expr = Annotated[
    Literal | Var | Ref | Group | BinOp | UnaryOp,
    Field(discriminator="type"),
]


# Rebuild models for forward references
Group.model_rebuild()
BinOp.model_rebuild()
UnaryOp.model_rebuild()


def walk(expr: Expr) -> Iterator[Expr]:
    """Yield every node of an expression tree, parents first."""
    yield expr
    match expr:
        case Group(inner=inner):
            yield from walk(inner)
        case BinOp(left=left, right=right):
            yield from walk(left)
            yield from walk(right)
        case UnaryOp(operand=operand):
            yield from walk(operand)


def references(expr: Expr) -> list[Ref]:
    """Shortcode references embedded in an expression, in source order."""
    return [node for node in walk(expr) if isinstance(node, Ref)]


def variables(expr: Expr) -> list[str]:
    """Bare variable names used by an expression, in source order."""
    return [node.name for node in walk(expr) if isinstance(node, Var)]
