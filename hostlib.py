"""Built-in external functions available to every program."""

from __future__ import annotations
import sys
import time
from typing import Any, Callable, List, Optional

from extensions import ExternalFunction
from interpreter import MathRuntimeError


def _default_output(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


def _default_input() -> str:
    return input()


def default_externals(
    *,
    output_sink: Optional[Callable[[str], None]] = None,
    input_provider: Optional[Callable[[], str]] = None,
    sleeper: Optional[Callable[[float], None]] = None,
) -> List[ExternalFunction]:
    out = output_sink or _default_output
    read = input_provider or _default_input
    pause = sleeper or time.sleep

    def _println(args: List[Any], env: Any) -> int:
        out(f"{env.evaluate(args[0])}\n")
        return 0

    def _print(args: List[Any], env: Any) -> int:
        out(str(env.evaluate(args[0])))
        return 0

    def _if(args: List[Any], env: Any) -> int:
        # Only the selected branch is evaluated.
        if env.evaluate(args[0]) == 1:
            return env.evaluate(args[1])
        return env.evaluate(args[2])

    def _input(args: List[Any], env: Any) -> int:
        text = read().strip()
        try:
            return int(text)
        except ValueError:
            raise MathRuntimeError("Input must be a number", rule="input")

    def _sleep(args: List[Any], env: Any) -> int:
        millis = env.evaluate(args[0])
        if millis < 0:
            raise MathRuntimeError(f"Sleep duration must not be negative ({millis})", rule="sleep")
        pause(millis / 1000)
        return 0

    def _newline(args: List[Any], env: Any) -> int:
        out("\n")
        return 0

    def _empty(args: List[Any], env: Any) -> int:
        out(" ")
        return 0

    return [
        ExternalFunction("println", 1, _println, doc="println(output): print a value and a newline"),
        ExternalFunction("print", 1, _print, doc="print(output): print a value"),
        ExternalFunction("if", 3, _if, doc="if(condition, true, false): 1 selects the second argument"),
        ExternalFunction("input", 0, _input, doc="input(): read an integer from standard input"),
        ExternalFunction("sleep", 1, _sleep, doc="sleep(millis)"),
        ExternalFunction("newline", 0, _newline, doc="newline(): print a line break"),
        ExternalFunction("empty", 0, _empty, doc="empty(): print a single space"),
    ]
