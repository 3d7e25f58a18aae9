from typing import Iterable, List

import pytest

from hostlib import default_externals
from interpreter import Interpreter
from lexer import tokenize
from parser import parse


class Captured:
	def __init__(self) -> None:
		self.chunks: List[str] = []

	def __call__(self, text: str) -> None:
		self.chunks.append(text)

	@property
	def text(self) -> str:
		return "".join(self.chunks)


@pytest.fixture
def output() -> Captured:
	return Captured()


@pytest.fixture
def host(output):
	"""Host externals wired to an in-memory sink; `inputs` feeds input()."""
	def _host(inputs: Iterable[str] = (), sleeps: List[float] = None):
		feed = iter(inputs)
		return default_externals(
			output_sink=output,
			input_provider=lambda: next(feed),
			sleeper=(sleeps.append if sleeps is not None else (lambda seconds: None)),
		)
	return _host


@pytest.fixture
def run(host):
	def _run(source: str, *, extra=(), inputs=(), verbose=False, services=None):
		externals = host(inputs) + list(extra)
		program = parse(tokenize(source), externals)
		interpreter = Interpreter(program, external_functions=externals, services=services, verbose=verbose)
		env = interpreter.run()
		return interpreter, env
	return _run
