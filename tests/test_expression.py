import pytest

from expression import (
	FunctionCall,
	Identifier,
	InfixOperator,
	Number,
	Precedence,
	PrefixOperator,
	parse_span,
)
from lexer import MathParseError, tokenize


def _parse(source: str):
	return parse_span([t for t in tokenize(source) if t.type not in ("WHITESPACE", "NEW_LINE")])


def test_product_binds_tighter_than_sum():
	tree = _parse("1 + 2 * 3")
	assert isinstance(tree, InfixOperator) and tree.symbol == "+"
	assert isinstance(tree.left, Number) and tree.left.value == 1
	assert isinstance(tree.right, InfixOperator) and tree.right.symbol == "*"


def test_same_level_operators_fold_left():
	tree = _parse("10 - 3 - 2")
	assert tree.symbol == "-"
	assert isinstance(tree.left, InfixOperator) and tree.left.symbol == "-"
	assert tree.right.value == 2


def test_power_shares_product_level():
	tree = _parse("2 ^ 3 * 2")
	assert tree.symbol == "*"
	assert tree.left.symbol == "^"


def test_comparison_is_loosest():
	tree = _parse("1 + 1 < 3")
	assert tree.symbol == "<"
	assert tree.left.symbol == "+"


def test_assignment_takes_whole_right_side():
	tree = _parse("a = b = 1 + 2")
	assert tree.symbol == "="
	assert isinstance(tree.left, Identifier) and tree.left.name == "a"
	inner = tree.right
	assert inner.symbol == "=" and inner.left.name == "b"
	assert inner.right.symbol == "+"


def test_grouping():
	tree = _parse("(1 + 2) * 3")
	assert tree.symbol == "*"
	assert tree.left.symbol == "+"


def test_calls_and_nesting():
	tree = _parse("f(1, g(2), x)")
	assert isinstance(tree, FunctionCall)
	assert tree.callee.name == "f"
	assert len(tree.arguments) == 3
	assert isinstance(tree.arguments[1], FunctionCall)
	assert _parse("f()").arguments == ()


def test_negation_binds_calls_not_products():
	tree = _parse("-f(1) * 2")
	assert tree.symbol == "*"
	assert isinstance(tree.left, PrefixOperator)
	assert isinstance(tree.left.operand, FunctionCall)


def test_reference_identifier():
	tree = _parse("f(a*)")
	argument = tree.arguments[0]
	assert argument.is_reference
	assert argument.base_name == "a"


def test_number_separators():
	assert _parse("1_000_000").value == 1000000
	with pytest.raises(MathParseError, match="Invalid number"):
		_parse("_")


@pytest.mark.parametrize(
	"source, message",
	[
		("(1 + 2", "Missing CLOSE_PARENTHESIS"),
		("1 + 2)", "Too many CLOSE_PARENTHESIS"),
		("()", "Empty block"),
		("1 2", "Unknown infix ('NUMBER')"),
		("1 +", "Expression expected"),
		("f(1 2)", "CLOSE_PARENTHESIS or COMMA expected"),
		("f(1,", "Expression expected"),
		("(1)(2)", "Identifier expected"),
		("* 2", "Unknown prefix ('MULTIPLY')"),
	],
)
def test_syntax_errors(source, message):
	with pytest.raises(MathParseError) as info:
		_parse(source)
	assert info.value.message == message


def test_precedence_one_less():
	assert Precedence.PRODUCT.one_less() is Precedence.SUM
	assert Precedence.NONE.one_less() is Precedence.NONE
