from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from expression import (
    Comment,
    FunctionCall,
    Identifier,
    InfixOperator,
    NoneExpression,
    Number,
    PartExpression,
    PrefixOperator,
    parse_span,
)
from extensions import ExternalFunction
from lexer import MathError, MathInternalError, MathParseError, Token
from program import (
    EXTERNAL,
    Arithmetic,
    ArithmeticOp,
    Expression,
    Function,
    FunctionInvocation,
    NumberValue,
    Program,
    Reference,
    Variable,
    VariableAccess,
    VariableAssignment,
)
from tokens import TokenCursor


class MathResolveError(MathError):
    """Raised when a name cannot be bound to a declaration."""


@dataclass(frozen=True)
class ExternalDeclaration:
    name: str
    arity: int
    token: Token


_NO_STOP: FrozenSet[str] = frozenset()


class DeclarationResolver:
    """Two-phase parser: collect raw declaration trees first, bind names second.

    Phase one walks the token stream once, cuts out the span of every
    declaration and loose expression and runs the expression parser on it.
    Phase two runs once every declared name is known, so declarations may
    refer to names that appear later in the file.
    """

    def __init__(
        self,
        tokens: Iterable[Token],
        externals: Sequence[ExternalFunction] = (),
        *,
        predeclared: Optional[Program] = None,
    ) -> None:
        self.cursor = TokenCursor(tokens)
        self.externals = list(externals)
        self.predeclared = predeclared
        self.variables: List[Variable] = []
        self.functions: List[Function] = []
        self.loose: List[PartExpression] = []
        self.external_declarations: List[ExternalDeclaration] = []
        if predeclared is None:
            self.functions.extend(external_function(f) for f in self.externals)

    def parse(self) -> Program:
        self.cursor.remove_all("WHITESPACE")
        self._pre_parse()
        return self._post_parse()

    # ---- phase one ----
    def _pre_parse(self) -> None:
        cursor = self.cursor
        while not cursor.is_empty():
            token = cursor.current()
            kind = token.type
            if kind == "NEW_LINE":
                cursor.advance()
            elif kind in ("LET", "CONST"):
                cursor.advance()
                variable = self._pre_parse_variable(token)
                variable.constant = kind == "CONST"
                self.variables.append(variable)
            elif kind == "DEFINE":
                cursor.advance()
                self.functions.append(self._pre_parse_function(token))
            elif kind == "EXTERNAL":
                cursor.advance()
                self.external_declarations.append(self._pre_parse_external(token))
            else:
                self.loose.append(self._pre_parse_loose_expression())

    def _capture_span(self, lines_left: int, stop: FrozenSet[str] = _NO_STOP) -> Tuple[List[Token], int]:
        """Collect tokens until the declaration's last line ends.

        `|` opens one more physical line, a newline closes one. Tokens whose
        type is in `stop` end the span early and stay unconsumed.
        """
        cursor = self.cursor
        span: List[Token] = []
        while lines_left > 0 and not cursor.is_empty():
            token = cursor.peek()
            if token.type == "PIPE":
                lines_left += 1
            elif token.type == "NEW_LINE":
                lines_left -= 1
            elif token.type in stop:
                cursor.retreat()
                break
            else:
                span.append(token)
        return span, lines_left

    def _next_or(self, fallback: Token) -> Token:
        if self.cursor.is_empty():
            raise MathParseError("Unexpected end of input", location=fallback.location(), offset=1, rule="parse")
        return self.cursor.peek()

    def _expect_name(self, keyword: Token) -> Token:
        token = self._next_or(keyword)
        if token.type != "IDENTIFIER" or token.value.endswith("*"):
            raise MathParseError("Expected identifier", location=token.location(), rule="parse")
        return token

    def _expect_assign(self, after: Token) -> Token:
        token = self._next_or(after)
        if token.type == "ASSIGN":
            return token
        if token.type == "IDENTIFIER":
            raise MathParseError(f"Invalid token ('{token.value}')", location=token.location(), rule="parse")
        raise MathParseError("Expected =", location=token.location(), rule="parse")

    def _pre_parse_variable(self, keyword: Token) -> Variable:
        name = self._expect_name(keyword)
        assign = self._expect_assign(name)
        span, lines_left = self._capture_span(1, stop=frozenset({"WHERE"}))
        if not span:
            blame = self.cursor.current() if not self.cursor.is_empty() and lines_left > 0 else assign
            raise MathParseError("Expected definition", location=blame.location(), rule="parse")
        variable = Variable(name=name.value, location=name.location())
        variable.pending = parse_span(span, anchor=assign)

        if lines_left > 0 and not self.cursor.is_empty():
            where = self.cursor.peek()
            guard_span, _ = self._capture_span(lines_left)
            if not guard_span:
                raise MathParseError("Expected guard clause", location=where.location(), offset=1, rule="parse")
            variable.pending_guards = [parse_span(part, anchor=where) for part in _split_top_level(guard_span, where)]
        return variable

    def _pre_parse_function(self, keyword: Token) -> Function:
        # `cache` may appear anywhere in the header before `=`.
        cached = self._match_cache()
        name = self._expect_name(keyword)
        cached = self._match_cache() or cached
        parameters: List[str] = []
        references: List[bool] = []
        after = name
        if not self.cursor.is_empty() and self.cursor.current().type == "OPEN_PARENTHESIS":
            after = self.cursor.peek()
            parameters, references = self._parse_parameters(after)
        cached = self._match_cache() or cached
        assign = self._expect_assign(after)
        span, _ = self._capture_span(1)
        if not span:
            raise MathParseError("Expected definition", location=assign.location(), offset=1, rule="parse")
        function = Function(
            name=name.value,
            parameters=parameters,
            cached=cached,
            reference_parameters=references,
            location=name.location(),
        )
        function.pending = parse_span(span, anchor=assign)
        return function

    def _pre_parse_external(self, keyword: Token) -> ExternalDeclaration:
        name = self._expect_name(keyword)
        parameters: List[str] = []
        if not self.cursor.is_empty() and self.cursor.current().type == "OPEN_PARENTHESIS":
            parameters, _ = self._parse_parameters(self.cursor.peek())
        trailing, _ = self._capture_span(1)
        if trailing:
            raise MathParseError(f"Invalid token ('{trailing[0].value}')", location=trailing[0].location(), rule="parse")
        return ExternalDeclaration(name=name.value, arity=len(parameters), token=name)

    def _match_cache(self) -> bool:
        found = False
        while not self.cursor.is_empty() and self.cursor.current().type == "CACHE":
            self.cursor.advance()
            found = True
        return found

    def _parse_parameters(self, opening: Token) -> Tuple[List[str], List[bool]]:
        cursor = self.cursor
        names: List[str] = []
        references: List[bool] = []
        if not cursor.is_empty() and cursor.current().type == "CLOSE_PARENTHESIS":
            cursor.advance()
            return names, references
        while True:
            if cursor.is_empty() or cursor.current().type == "NEW_LINE":
                raise MathParseError("Missing CLOSE_PARENTHESIS", location=opening.location(), offset=1, rule="parse")
            token = cursor.peek()
            if token.type != "IDENTIFIER":
                raise MathParseError("Identifier expected", location=token.location(), rule="parse")
            plain = token.value.rstrip("*")
            if plain in names:
                raise MathParseError(f"Duplicate parameter ('{plain}')", location=token.location(), rule="parse")
            names.append(plain)
            references.append(token.value.endswith("*"))
            if cursor.is_empty() or cursor.current().type == "NEW_LINE":
                raise MathParseError("Missing CLOSE_PARENTHESIS", location=opening.location(), offset=1, rule="parse")
            separator = cursor.peek()
            if separator.type == "CLOSE_PARENTHESIS":
                return names, references
            if separator.type != "COMMA":
                raise MathParseError("CLOSE_PARENTHESIS or COMMA expected", location=separator.location(), rule="parse")

    def _pre_parse_loose_expression(self) -> PartExpression:
        first = self.cursor.current()
        span, _ = self._capture_span(1)
        if not span:
            return Comment()
        return parse_span(span, anchor=first)

    # ---- phase two ----
    def _post_parse(self) -> Program:
        self._check_duplicates()
        self._check_external_declarations()

        scope = self._scope()
        for variable in self.variables:
            variable.definition = self.resolve(variable.pending, scope)
            variable.guards = [self.resolve(guard, scope) for guard in variable.pending_guards]
            variable.pending = NoneExpression()
            variable.pending_guards = []

        for function in self.functions:
            if function.is_external:
                continue
            function_scope = dict(scope)
            for parameter in function.parameters:
                function_scope[parameter] = Variable(name=parameter)
            function.definition = self.resolve(function.pending, function_scope)
            function.pending = NoneExpression()

        loose_expressions: List[Expression] = []
        for expression in self.loose:
            if expression == Comment():
                continue
            loose_expressions.append(self.resolve(expression, scope))
        return Program(functions=self.functions, variables=self.variables, loose_expressions=loose_expressions)

    def _scope(self) -> Dict[str, Variable]:
        scope: Dict[str, Variable] = {}
        if self.predeclared is not None:
            for variable in self.predeclared.variables:
                scope.setdefault(variable.name, variable)
        for variable in self.variables:
            scope.setdefault(variable.name, variable)
        return scope

    def _all_functions(self) -> List[Function]:
        if self.predeclared is None:
            return self.functions
        return self.predeclared.functions + self.functions

    def _find_function(self, name: str, arity: int) -> Optional[Function]:
        for function in self._all_functions():
            if function.name == name and function.arity == arity:
                return function
        return None

    def _check_duplicates(self) -> None:
        seen_variables = {v.name for v in self.predeclared.variables} if self.predeclared else set()
        for variable in self.variables:
            if variable.name in seen_variables:
                raise MathResolveError(f"Variable already declared ('{variable.name}')", location=variable.location, rule="resolve")
            seen_variables.add(variable.name)
        seen_functions = {(f.name, f.arity) for f in self.predeclared.functions} if self.predeclared else set()
        for function in self.functions:
            key = (function.name, function.arity)
            if key in seen_functions:
                raise MathResolveError(
                    f"Function already declared ('{function.name}' with {function.arity} parameters)",
                    location=function.location,
                    rule="resolve",
                )
            seen_functions.add(key)

    def _check_external_declarations(self) -> None:
        for declaration in self.external_declarations:
            function = self._find_function(declaration.name, declaration.arity)
            if function is None or not function.is_external:
                raise MathResolveError(
                    "External function not registered",
                    location=declaration.token.location(),
                    rule="resolve",
                )

    def resolve(self, expression: PartExpression, scope: Dict[str, Variable]) -> Expression:
        if isinstance(expression, Number):
            return NumberValue(expression.value, location=expression.token.location())
        if isinstance(expression, Identifier):
            if expression.is_reference:
                raise MathResolveError(
                    "Reference only allowed as function argument",
                    location=expression.token.location(),
                    rule="resolve",
                )
            if expression.name not in scope:
                raise MathResolveError("Variable not found", location=expression.token.location(), rule="resolve")
            return VariableAccess(expression.name, location=expression.token.location())
        if isinstance(expression, PrefixOperator):
            if expression.symbol != "-":
                raise MathResolveError("Unknown prefix", location=expression.token.location(), rule="resolve")
            operand = self.resolve(expression.operand, scope)
            location = expression.token.location()
            # -x is rewritten to x - x * 2, so the operand runs twice.
            return Arithmetic(
                operand,
                Arithmetic(operand, NumberValue(2), ArithmeticOp.MULTIPLY, location=location),
                ArithmeticOp.SUBTRACT,
                location=location,
            )
        if isinstance(expression, InfixOperator):
            if expression.symbol == "=":
                return self._resolve_assignment(expression, scope)
            return Arithmetic(
                self.resolve(expression.left, scope),
                self.resolve(expression.right, scope),
                ArithmeticOp.of(expression.symbol),
                location=expression.token.location(),
            )
        if isinstance(expression, FunctionCall):
            return self._resolve_call(expression, scope)
        raise MathInternalError(
            f"Can't resolve {type(expression).__name__}",
            rule="resolve",
        )

    def _resolve_assignment(self, expression: InfixOperator, scope: Dict[str, Variable]) -> Expression:
        target = self.resolve(expression.left, scope)
        if not isinstance(target, VariableAccess):
            raise MathResolveError(
                "Expected variable access on left side of infix operator",
                location=expression.token.location(),
                rule="resolve",
            )
        if scope[target.name].constant:
            raise MathResolveError("Cannot reassign constant", location=expression.token.location(), rule="resolve")
        return VariableAssignment(
            target.name,
            self.resolve(expression.right, scope),
            location=expression.token.location(),
        )

    def _resolve_call(self, expression: FunctionCall, scope: Dict[str, Variable]) -> Expression:
        callee = expression.callee
        if not isinstance(callee, Identifier):
            raise MathInternalError("Function call without identifier callee", location=expression.token.location(), rule="resolve")
        if callee.is_reference:
            raise MathResolveError("Function not found", location=callee.token.location(), rule="resolve")
        function = self._find_function(callee.name, len(expression.arguments))
        arguments: List[Expression] = []
        for index, argument in enumerate(expression.arguments):
            by_reference = function is not None and function.takes_reference(index)
            if isinstance(argument, Identifier) and (argument.is_reference or by_reference):
                name = argument.base_name
                if name not in scope:
                    raise MathResolveError("Variable not found", location=argument.token.location(), rule="resolve")
                arguments.append(Reference(name, location=argument.token.location()))
            else:
                arguments.append(self.resolve(argument, scope))
        if function is None:
            raise MathResolveError("Function not found", location=callee.token.location(), rule="resolve")
        return FunctionInvocation(callee.name, tuple(arguments), location=callee.token.location())


def external_function(descriptor: ExternalFunction) -> Function:
    return Function(
        name=descriptor.name,
        parameters=[f"p{i}" for i in range(descriptor.arity)],
        definition=EXTERNAL,
    )


def _split_top_level(span: List[Token], where: Token) -> List[List[Token]]:
    parts: List[List[Token]] = [[]]
    depth = 0
    for token in span:
        if token.type == "OPEN_PARENTHESIS":
            depth += 1
        elif token.type == "CLOSE_PARENTHESIS":
            depth -= 1
        if token.type == "COMMA" and depth == 0:
            if not parts[-1]:
                raise MathParseError("Expected guard clause", location=token.location(), rule="parse")
            parts.append([])
            continue
        parts[-1].append(token)
    if not parts[-1]:
        raise MathParseError("Expected guard clause", location=where.location(), offset=1, rule="parse")
    return parts


def parse(tokens: Iterable[Token], external_functions: Sequence[ExternalFunction] = ()) -> Program:
    return DeclarationResolver(tokens, external_functions).parse()
