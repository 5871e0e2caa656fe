"""Parser for formula and condition expressions.

Grammar:
    expr        = or_expr
    or_expr     = and_expr ("or" and_expr)*
    and_expr    = cmp_expr ("and" cmp_expr)*
    cmp_expr    = add_expr (("<" | ">" | "<=" | ">=" | "==" | "!=") add_expr)?
    add_expr    = mul_expr (("+" | "-") mul_expr)*
    mul_expr    = unary (("*" | "/") unary)*
    unary       = "-" unary | "+" unary | "not" unary | primary
    primary     = NUMBER | STRING | "true" | "false" | NAME | REF | "(" expr ")"
    REF         = "[" ("calc" | "lookup" | "field") ":" name (":" spec)? "]" | "{" name "}"

A format spec on a reference (e.g. [calc:savings:currency]) is dropped; the
reference yields the raw value.

Input is screened against a character allow-list before lexing, but the
grammar is what decides validity: nothing outside it is ever evaluated.
"""

import re
from dataclasses import dataclass
from functools import lru_cache

from . import ast

# Punctuation permitted anywhere in an expression, on top of alphanumerics,
# Latin-1 letters and whitespace.
ALLOWED_PUNCTUATION = frozenset("+-*/<>=!()\"'[]{}:_.,")


@dataclass
class Token:
    type: str
    value: str
    offset: int


class ParseError(Exception):
    def __init__(self, msg: str, offset: int):
        super().__init__(f"offset {offset}: {msg}")
        self.msg = msg
        self.offset = offset


class UnexpectedToken(ParseError):
    pass


class UnterminatedString(ParseError):
    pass


class UnbalancedParentheses(ParseError):
    pass


def _allowed(char: str) -> bool:
    if char.isspace() or char in ALLOWED_PUNCTUATION:
        return True
    return char.isalnum() and ord(char) <= 0xFF


class Lexer:
    """Lexer for expression strings."""

    KEYWORDS = {"and", "or", "not", "true", "false"}
    REF_KINDS = {"calc", "lookup", "field"}

    TOKEN_PATTERNS = [
        (re.compile(r"\s+"), "WS"),
        (re.compile(r"\d+\.\d+|\.\d+"), "NUMBER"),
        (re.compile(r"\d+"), "NUMBER"),
        (re.compile(r"\[([A-Za-z]+):([^\]\[]+)\]"), "REF"),
        (re.compile(r"\{([^{}]+)\}"), "FIELD"),
        (re.compile(r"[^\W\d]\w*"), "IDENT"),
        (re.compile(r"<="), "LE"),
        (re.compile(r">="), "GE"),
        (re.compile(r"=="), "EQ"),
        (re.compile(r"!="), "NE"),
        (re.compile(r"\+"), "PLUS"),
        (re.compile(r"-"), "MINUS"),
        (re.compile(r"\*"), "STAR"),
        (re.compile(r"/"), "SLASH"),
        (re.compile(r"<"), "LT"),
        (re.compile(r">"), "GT"),
        (re.compile(r"\("), "LPAREN"),
        (re.compile(r"\)"), "RPAREN"),
    ]

    def __init__(self, source: str):
        self.source = source
        self.pos = 0
        self.tokens: list[Token] = []
        self._screen()
        self._tokenise()

    def _screen(self) -> None:
        for offset, char in enumerate(self.source):
            if not _allowed(char):
                raise UnexpectedToken(f"character not allowed: {char!r}", offset)

    def _tokenise(self) -> None:
        while self.pos < len(self.source):
            char = self.source[self.pos]
            if char in "\"'":
                self._string(char)
                continue
            for pattern, ttype in self.TOKEN_PATTERNS:
                m = pattern.match(self.source, self.pos)
                if m:
                    if ttype == "REF":
                        self._ref(m)
                    elif ttype == "FIELD":
                        self.tokens.append(Token("REF", f"field:{m.group(1).strip()}", self.pos))
                    elif ttype == "IDENT" and m.group(0).lower() in self.KEYWORDS:
                        self.tokens.append(Token(m.group(0).upper(), m.group(0), self.pos))
                    elif ttype != "WS":
                        self.tokens.append(Token(ttype, m.group(0), self.pos))
                    self.pos = m.end()
                    break
            else:
                raise UnexpectedToken(f"unexpected char: {char!r}", self.pos)

        self.tokens.append(Token("EOF", "", self.pos))

    def _string(self, quote: str) -> None:
        end = self.source.find(quote, self.pos + 1)
        if end == -1:
            raise UnterminatedString("unterminated string literal", self.pos)
        self.tokens.append(Token("STRING", self.source[self.pos + 1 : end], self.pos))
        self.pos = end + 1

    def _ref(self, m: re.Match) -> None:
        kind = m.group(1).lower()
        if kind not in self.REF_KINDS:
            raise UnexpectedToken(f"unknown reference kind: {m.group(1)!r}", self.pos)
        name = m.group(2).partition(":")[0].strip()
        if not name:
            raise UnexpectedToken("empty reference name", self.pos)
        self.tokens.append(Token("REF", f"{kind}:{name}", self.pos))


class Parser:
    """Recursive descent parser for expressions."""

    def __init__(self, tokens: list[Token]):
        self.tokens = tokens
        self.pos = 0

    def peek(self, offset: int = 0) -> Token:
        idx = self.pos + offset
        if idx >= len(self.tokens):
            return self.tokens[-1]
        return self.tokens[idx]

    def at(self, *types: str) -> bool:
        return self.peek().type in types

    def match(self, *types: str) -> Token | None:
        if self.at(*types):
            tok = self.peek()
            self.pos += 1
            return tok
        return None

    def parse(self) -> ast.Expr:
        """Parse a complete expression; trailing input is an error."""
        expr = self.parse_expr()
        tok = self.peek()
        if tok.type == "RPAREN":
            raise UnbalancedParentheses("unmatched ')'", tok.offset)
        if tok.type != "EOF":
            raise UnexpectedToken(f"unexpected token: {tok.value!r}", tok.offset)
        return expr

    def parse_expr(self) -> ast.Expr:
        return self.parse_or()

    def parse_or(self) -> ast.Expr:
        left = self.parse_and()
        while self.match("OR"):
            right = self.parse_and()
            left = ast.BinOp(op="or", left=left, right=right)
        return left

    def parse_and(self) -> ast.Expr:
        left = self.parse_cmp()
        while self.match("AND"):
            right = self.parse_cmp()
            left = ast.BinOp(op="and", left=left, right=right)
        return left

    def parse_cmp(self) -> ast.Expr:
        left = self.parse_add()
        op_map = {
            "LT": "<",
            "GT": ">",
            "LE": "<=",
            "GE": ">=",
            "EQ": "==",
            "NE": "!=",
        }
        if tok := self.match("LT", "GT", "LE", "GE", "EQ", "NE"):
            right = self.parse_add()
            return ast.BinOp(op=op_map[tok.type], left=left, right=right)
        return left

    def parse_add(self) -> ast.Expr:
        left = self.parse_mul()
        op_map = {"PLUS": "+", "MINUS": "-"}
        while tok := self.match("PLUS", "MINUS"):
            right = self.parse_mul()
            left = ast.BinOp(op=op_map[tok.type], left=left, right=right)
        return left

    def parse_mul(self) -> ast.Expr:
        left = self.parse_unary()
        op_map = {"STAR": "*", "SLASH": "/"}
        while tok := self.match("STAR", "SLASH"):
            right = self.parse_unary()
            left = ast.BinOp(op=op_map[tok.type], left=left, right=right)
        return left

    def parse_unary(self) -> ast.Expr:
        if self.match("MINUS"):
            return ast.UnaryOp(op="-", operand=self.parse_unary())
        if self.match("PLUS"):
            return ast.UnaryOp(op="+", operand=self.parse_unary())
        if self.match("NOT"):
            return ast.UnaryOp(op="not", operand=self.parse_unary())
        return self.parse_primary()

    def parse_primary(self) -> ast.Expr:
        if tok := self.match("NUMBER"):
            return ast.Literal(value=float(tok.value))
        if tok := self.match("STRING"):
            return ast.Literal(value=tok.value)
        if self.match("TRUE"):
            return ast.Literal(value=True)
        if self.match("FALSE"):
            return ast.Literal(value=False)
        if tok := self.match("IDENT"):
            return ast.Var(name=tok.value)
        if tok := self.match("REF"):
            kind, name = tok.value.split(":", 1)
            return ast.Ref(kind=kind, name=name)
        if opening := self.match("LPAREN"):
            inner = self.parse_expr()
            if not self.match("RPAREN"):
                tok = self.peek()
                if tok.type == "EOF":
                    raise UnbalancedParentheses("unclosed '('", opening.offset)
                raise UnexpectedToken(f"expected ')', got {tok.value!r}", tok.offset)
            return ast.Group(inner=inner)

        tok = self.peek()
        if tok.type == "RPAREN":
            raise UnbalancedParentheses("unmatched ')'", tok.offset)
        if tok.type == "EOF":
            raise UnexpectedToken("unexpected end of expression", tok.offset)
        raise UnexpectedToken(f"unexpected token in expression: {tok.value!r}", tok.offset)


@lru_cache(maxsize=2048)
def parse(source: str) -> ast.Expr:
    """Parse an expression string into an AST.

    Results are memoised per source string; callers must treat the
    returned tree as read-only.
    """
    lexer = Lexer(source)
    parser = Parser(lexer.tokens)
    return parser.parse()
