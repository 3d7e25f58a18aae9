from __future__ import annotations
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Dict, Optional, Tuple

from lexer import REFERENCE_SIGIL, MathParseError, Token
from tokens import TokenCursor


class Precedence(IntEnum):
    NONE = 0
    CONDITIONAL = 1
    SUM = 2
    PRODUCT = 3
    FUNCTION_INVOCATION = 4
    PREFIX = 5
    ASSIGNMENT = 6

    def one_less(self) -> "Precedence":
        return Precedence(max(self.value - 1, Precedence.NONE.value))


class PartExpression:
    """Unresolved parse tree node: names are not bound yet."""


@dataclass(frozen=True)
class NoneExpression(PartExpression):
    pass


@dataclass(frozen=True)
class Comment(PartExpression):
    pass


@dataclass(frozen=True)
class Number(PartExpression):
    value: int
    token: Token


@dataclass(frozen=True)
class Identifier(PartExpression):
    name: str
    token: Token

    @property
    def is_reference(self) -> bool:
        return self.name.endswith(REFERENCE_SIGIL)

    @property
    def base_name(self) -> str:
        return self.name.rstrip(REFERENCE_SIGIL)


@dataclass(frozen=True)
class PrefixOperator(PartExpression):
    symbol: str
    operand: PartExpression
    token: Token


@dataclass(frozen=True)
class InfixOperator(PartExpression):
    symbol: str
    left: PartExpression
    right: PartExpression
    token: Token


@dataclass(frozen=True)
class FunctionCall(PartExpression):
    callee: PartExpression
    arguments: Tuple[PartExpression, ...]
    token: Token


PrefixRunner = Callable[["ExpressionParser", Token], PartExpression]
InfixRunner = Callable[["ExpressionParser", PartExpression, Token, Precedence], PartExpression]


@dataclass(frozen=True)
class InfixRule:
    precedence: Precedence
    runner: InfixRunner


class ExpressionParser:
    """Precedence-climbing parser over one bounded token span."""

    def __init__(self, cursor: TokenCursor, *, anchor: Optional[Token] = None) -> None:
        self.cursor = cursor
        # Token blamed for errors when the span itself is empty.
        self.anchor = anchor

    def parse(self) -> PartExpression:
        expression = self.parse_expression(Precedence.NONE)
        if not self.cursor.is_empty():
            leftover = self.cursor.current()
            if leftover.type == "CLOSE_PARENTHESIS":
                raise MathParseError("Too many CLOSE_PARENTHESIS", location=leftover.location(), rule="parse")
            raise MathParseError(f"Unknown infix ('{leftover.type}')", location=leftover.location(), rule="parse")
        return expression

    def parse_expression(self, precedence: Precedence) -> PartExpression:
        cursor = self.cursor
        if cursor.is_empty():
            blame = cursor.previous() or self.anchor
            raise MathParseError(
                "Expression expected",
                location=blame.location() if blame else None,
                offset=1 if blame else 0,
                rule="parse",
            )
        token = cursor.peek()
        prefix = PREFIX_RULES.get(token.type)
        if prefix is None:
            raise MathParseError(f"Unknown prefix ('{token.type}')", location=token.location(), rule="parse")
        left = prefix(self, token)

        while not cursor.is_empty():
            token = cursor.current()
            rule = INFIX_RULES.get(token.type)
            if rule is None or rule.precedence <= precedence:
                break
            cursor.advance()
            left = rule.runner(self, left, token, rule.precedence)
        return left

    # Prefix parselets
    def _parse_negation(self, token: Token) -> PartExpression:
        # Binds calls, not binary operators: `-f(1) * 2` is `(-f(1)) * 2`.
        operand = self.parse_expression(Precedence.FUNCTION_INVOCATION.one_less())
        return PrefixOperator(symbol=token.value, operand=operand, token=token)

    def _parse_number(self, token: Token) -> PartExpression:
        digits = token.value.replace("_", "")
        if not digits:
            raise MathParseError(f"Invalid number ('{token.value}')", location=token.location(), rule="parse")
        return Number(value=int(digits), token=token)

    def _parse_identifier(self, token: Token) -> PartExpression:
        return Identifier(name=token.value, token=token)

    def _parse_group(self, token: Token) -> PartExpression:
        span = TokenCursor()
        depth = 1
        while not self.cursor.is_empty():
            nxt = self.cursor.peek()
            if nxt.type == "OPEN_PARENTHESIS":
                depth += 1
            elif nxt.type == "CLOSE_PARENTHESIS":
                depth -= 1
            if depth < 0:
                raise MathParseError("Too many CLOSE_PARENTHESIS", location=nxt.location(), rule="parse")
            if depth == 0:
                if span.is_empty():
                    raise MathParseError("Empty block", location=nxt.location(), rule="parse")
                return ExpressionParser(span, anchor=token).parse()
            span.append(nxt)
        raise MathParseError("Missing CLOSE_PARENTHESIS", location=token.location(), offset=1, rule="parse")

    # Infix parselets
    def _parse_binary(self, left: PartExpression, token: Token, precedence: Precedence) -> PartExpression:
        right = self.parse_expression(precedence)
        return InfixOperator(symbol=token.value, left=left, right=right, token=token)

    def _parse_assignment(self, left: PartExpression, token: Token, precedence: Precedence) -> PartExpression:
        right = self.parse_expression(Precedence.NONE)
        return InfixOperator(symbol=token.value, left=left, right=right, token=token)

    def _parse_call(self, left: PartExpression, token: Token, precedence: Precedence) -> PartExpression:
        if not isinstance(left, Identifier):
            raise MathParseError("Identifier expected", location=token.location(), rule="parse")
        cursor = self.cursor
        arguments = []
        if not cursor.is_empty() and cursor.current().type == "CLOSE_PARENTHESIS":
            cursor.advance()
            return FunctionCall(callee=left, arguments=(), token=token)
        while True:
            arguments.append(self.parse_expression(Precedence.NONE))
            if cursor.is_empty():
                raise MathParseError("Missing CLOSE_PARENTHESIS", location=token.location(), offset=1, rule="parse")
            separator = cursor.peek()
            if separator.type == "CLOSE_PARENTHESIS":
                break
            if separator.type != "COMMA":
                raise MathParseError("CLOSE_PARENTHESIS or COMMA expected", location=separator.location(), rule="parse")
        return FunctionCall(callee=left, arguments=tuple(arguments), token=token)


PREFIX_RULES: Dict[str, PrefixRunner] = {
    "MINUS": ExpressionParser._parse_negation,
    "NUMBER": ExpressionParser._parse_number,
    "IDENTIFIER": ExpressionParser._parse_identifier,
    "OPEN_PARENTHESIS": ExpressionParser._parse_group,
}

_binary = ExpressionParser._parse_binary

INFIX_RULES: Dict[str, InfixRule] = {
    "PLUS": InfixRule(Precedence.SUM, _binary),
    "MINUS": InfixRule(Precedence.SUM, _binary),
    "MULTIPLY": InfixRule(Precedence.PRODUCT, _binary),
    "DIVIDE": InfixRule(Precedence.PRODUCT, _binary),
    "POW": InfixRule(Precedence.PRODUCT, _binary),
    "EQUALS": InfixRule(Precedence.CONDITIONAL, _binary),
    "NOT_EQUALS": InfixRule(Precedence.CONDITIONAL, _binary),
    "BIGGER_OR_EQUALS": InfixRule(Precedence.CONDITIONAL, _binary),
    "BIGGER": InfixRule(Precedence.CONDITIONAL, _binary),
    "SMALLER_OR_EQUALS": InfixRule(Precedence.CONDITIONAL, _binary),
    "SMALLER": InfixRule(Precedence.CONDITIONAL, _binary),
    "ASSIGN": InfixRule(Precedence.ASSIGNMENT, ExpressionParser._parse_assignment),
    "OPEN_PARENTHESIS": InfixRule(Precedence.FUNCTION_INVOCATION, ExpressionParser._parse_call),
}


def parse_span(tokens, *, anchor: Optional[Token] = None) -> PartExpression:
    cursor = tokens if isinstance(tokens, TokenCursor) else TokenCursor(tokens)
    return ExpressionParser(cursor, anchor=anchor).parse()
