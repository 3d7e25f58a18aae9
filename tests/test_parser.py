import pytest

from hostlib import default_externals
from lexer import MathParseError, tokenize
from parser import DeclarationResolver, MathResolveError, parse
from program import (
	Arithmetic,
	ArithmeticOp,
	FunctionInvocation,
	NumberValue,
	Reference,
	VariableAccess,
	VariableAssignment,
)


def _program(source: str):
	return parse(tokenize(source), default_externals())


def test_variables_and_loose_expressions():
	program = _program("let x = 1\nconst y = x + 1\nprintln(y)\n# only a comment\n")
	assert [v.name for v in program.variables] == ["x", "y"]
	assert program.find_variable("y").constant
	assert not program.find_variable("x").constant
	assert program.find_variable("y").definition == Arithmetic(VariableAccess("x"), NumberValue(1), ArithmeticOp.ADD)
	assert program.loose_expressions == [FunctionInvocation("println", (VariableAccess("y"),))]


def test_forward_references_resolve():
	program = _program("let a = b + f(1)\nlet b = 2\ndefine f(n) = n")
	assert program.find_variable("a").definition.rhs == FunctionInvocation("f", (NumberValue(1),))


def test_function_declarations():
	program = _program("define add(a, b) = a + b\ndefine cache fib(n) = n\ndefine sq(n) cache = n * n\ndefine one = 1")
	add = program.find_function("add", 2)
	assert add.parameters == ["a", "b"]
	assert not add.cached
	assert add.definition == Arithmetic(VariableAccess("a"), VariableAccess("b"), ArithmeticOp.ADD)
	assert program.find_function("fib", 1).cached
	assert program.find_function("sq", 1).cached
	assert program.find_function("one", 0).definition == NumberValue(1)


@pytest.mark.parametrize(
	"header",
	["define cache f(n)", "define f cache (n)", "define f(n) cache", "define cache f cache (n) cache"],
)
def test_cache_keyword_anywhere_in_header(header):
	program = _program(f"{header} = n * 2\nf(3)")
	f = program.find_function("f", 1)
	assert f.cached
	assert f.parameters == ["n"]


def test_externals_are_declared_functions():
	program = _program("")
	println = program.find_function("println", 1)
	assert println.is_external
	assert println.parameters == ["p0"]
	assert program.find_function("if", 3).parameters == ["p0", "p1", "p2"]


def test_external_declaration_must_match_host():
	_program("external println(value)")
	with pytest.raises(MathResolveError, match="External function not registered"):
		_program("external launch(a, b)")


def test_pipe_continues_a_declaration():
	program = _program("let x = 1 + |\n    2\nprintln(x)")
	assert program.find_variable("x").definition == Arithmetic(NumberValue(1), NumberValue(2), ArithmeticOp.ADD)
	assert len(program.loose_expressions) == 1


def test_where_guards_are_resolved():
	program = _program("let x = 5 where x > 0, f(x, 1) < 10\ndefine f(a, b) = a")
	guards = program.find_variable("x").guards
	assert len(guards) == 2
	assert guards[0] == Arithmetic(VariableAccess("x"), NumberValue(0), ArithmeticOp.GREATER)


def test_negation_is_rewritten_as_subtraction():
	program = _program("-3")
	three = NumberValue(3)
	assert program.loose_expressions[0] == Arithmetic(
		three, Arithmetic(three, NumberValue(2), ArithmeticOp.MULTIPLY), ArithmeticOp.SUBTRACT
	)


def test_assignment_chain():
	program = _program("let a = 0\nlet b = 0\na = b = 3")
	assert program.loose_expressions[0] == VariableAssignment("a", VariableAssignment("b", NumberValue(3)))


def test_reference_arguments():
	program = _program("let v = 1\ndefine inc(n*) = n = n + 1\ndefine id(n) = n\ninc(v)\nid(v*)\nid(v)")
	inc = program.find_function("inc", 1)
	assert inc.reference_parameters == [True]
	by_declaration, by_sigil, by_value = program.loose_expressions
	assert by_declaration.arguments == (Reference("v"),)
	assert by_sigil.arguments == (Reference("v"),)
	assert by_value.arguments == (VariableAccess("v"),)


def test_reference_outside_argument_list():
	with pytest.raises(MathResolveError, match="Reference only allowed as function argument"):
		_program("let v = 1\nlet w = (v*)")


def test_function_parameters_shadow_globals():
	program = _program("const n = 1\ndefine set(n) = n = 2")
	assert program.find_function("set", 1).definition == VariableAssignment("n", NumberValue(2))


@pytest.mark.parametrize(
	"source, message",
	[
		("let x = y", "Variable not found"),
		("nope(1)", "Function not found"),
		("define f(a) = a\nf(1, 2)", "Function not found"),
		("const c = 1\nc = 2", "Cannot reassign constant"),
		("let x = 1\nlet x = 2", "Variable already declared ('x')"),
		("define f(a) = a\ndefine f(b) = b", "Function already declared ('f' with 1 parameters)"),
		("define println(a) = a", "Function already declared ('println' with 1 parameters)"),
		("let x = 1\n1 + 1 = x", "Expected variable access on left side of infix operator"),
	],
)
def test_resolve_errors(source, message):
	with pytest.raises(MathResolveError) as info:
		_program(source)
	assert info.value.message == message


def test_same_name_different_arity_is_allowed():
	program = _program("define f(a) = a\ndefine f(a, b) = a + b\nf(1) + f(1, 2)")
	assert program.find_function("f", 1) is not program.find_function("f", 2)


@pytest.mark.parametrize(
	"source, message",
	[
		("let = 5", "Expected identifier"),
		("let x 5", "Expected ="),
		("let x y = 5", "Invalid token ('y')"),
		("let x =", "Expected definition"),
		("define f(a, a) = a", "Duplicate parameter ('a')"),
		("define f(a = a", "CLOSE_PARENTHESIS or COMMA expected"),
		("define f(1) = 1", "Identifier expected"),
		("let x = 1 where", "Expected guard clause"),
		("let", "Expected identifier"),
	],
)
def test_declaration_syntax_errors(source, message):
	with pytest.raises(MathParseError) as info:
		_program(source)
	assert info.value.message == message


def test_error_location_points_at_name():
	with pytest.raises(MathResolveError) as info:
		_program("let a = 1\nlet x = y + a")
	location = info.value.location
	assert (location.line, location.column) == (1, 8)
	assert location.statement == "let x = y + a"


def test_predeclared_program_extends_scope():
	externals = default_externals()
	first = parse(tokenize("let x = 2\ndefine sq(n) = n * n"), externals)
	second = DeclarationResolver(tokenize("let y = sq(x)"), externals, predeclared=first).parse()
	assert [v.name for v in second.variables] == ["y"]
	assert second.functions == []
	with pytest.raises(MathResolveError, match="already declared"):
		DeclarationResolver(tokenize("let x = 3"), externals, predeclared=first).parse()
