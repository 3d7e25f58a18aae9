from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from expression import NoneExpression, PartExpression
from lexer import MathInternalError, SourceLocation


class ArithmeticOp(Enum):
    ADD = "+"
    SUBTRACT = "-"
    MULTIPLY = "*"
    DIVIDE = "/"
    EQUALS = "=="
    NOT_EQUALS = "=!"
    GREATER_EQ = ">="
    GREATER = ">"
    LESS_EQ = "<="
    LESS = "<"
    POWER = "^"

    @property
    def symbol(self) -> str:
        return self.value

    @classmethod
    def of(cls, symbol: str) -> "ArithmeticOp":
        try:
            return cls(symbol)
        except ValueError:
            raise MathInternalError(f"Operator not found ('{symbol}')", rule="resolve")


class Expression:
    """Resolved expression node. Equality never looks at source positions."""

    location: Optional[SourceLocation] = None


@dataclass(frozen=True)
class NoneValue(Expression):
    pass


@dataclass(frozen=True)
class External(Expression):
    pass


@dataclass(frozen=True)
class NumberValue(Expression):
    value: int
    location: Optional[SourceLocation] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class VariableAccess(Expression):
    name: str
    location: Optional[SourceLocation] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class Arithmetic(Expression):
    lhs: Expression
    rhs: Expression
    op: ArithmeticOp
    location: Optional[SourceLocation] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class FunctionInvocation(Expression):
    name: str
    arguments: Tuple[Expression, ...]
    location: Optional[SourceLocation] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class VariableAssignment(Expression):
    name: str
    value: Expression
    location: Optional[SourceLocation] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class Reference(Expression):
    name: str
    location: Optional[SourceLocation] = field(default=None, compare=False, repr=False)


NONE = NoneValue()
EXTERNAL = External()


@dataclass
class Variable:
    name: str
    definition: Expression = NONE
    guards: List[Expression] = field(default_factory=list)
    constant: bool = False
    location: Optional[SourceLocation] = None
    # Raw parse trees held between the pre-parse and post-parse phases.
    pending: PartExpression = field(default_factory=NoneExpression, repr=False)
    pending_guards: List[PartExpression] = field(default_factory=list, repr=False)


@dataclass
class Function:
    name: str
    parameters: List[str]
    definition: Expression = NONE
    cached: bool = False
    reference_parameters: List[bool] = field(default_factory=list)
    location: Optional[SourceLocation] = None
    pending: PartExpression = field(default_factory=NoneExpression, repr=False)

    @property
    def arity(self) -> int:
        return len(self.parameters)

    @property
    def is_external(self) -> bool:
        return self.definition == EXTERNAL

    def takes_reference(self, index: int) -> bool:
        return index < len(self.reference_parameters) and self.reference_parameters[index]


@dataclass
class Program:
    functions: List[Function]
    variables: List[Variable]
    loose_expressions: List[Expression]

    def find_variable(self, name: str) -> Optional[Variable]:
        for variable in self.variables:
            if variable.name == name:
                return variable
        return None

    def find_function(self, name: str, arity: int) -> Optional[Function]:
        for function in self.functions:
            if function.name == name and function.arity == arity:
                return function
        return None


def render(expression: Expression) -> str:
    if isinstance(expression, NoneValue):
        return "none"
    if isinstance(expression, External):
        return "external"
    if isinstance(expression, NumberValue):
        return str(expression.value)
    if isinstance(expression, VariableAccess):
        return expression.name
    if isinstance(expression, Reference):
        return f"{expression.name}*"
    if isinstance(expression, Arithmetic):
        return f"({render(expression.lhs)}) {expression.op.symbol} ({render(expression.rhs)})"
    if isinstance(expression, FunctionInvocation):
        return f"{expression.name}({', '.join(render(arg) for arg in expression.arguments)})"
    if isinstance(expression, VariableAssignment):
        return f"{expression.name} = {render(expression.value)}"
    return repr(expression)
