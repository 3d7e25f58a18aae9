"""math-DSL Extension: integer number theory helpers.

Adds gcd(a, b), lcm(a, b), abs(x), mod(a, b), min(a, b) and max(a, b).
`mod` follows the sign of the divisor, like Python's `%`.
"""

from __future__ import annotations

import math
from typing import Any, List

from extensions import CallEvent, ExtensionAPI, RunEvent


MATH_DSL_EXTENSION_NAME = "numtheory"
MATH_DSL_EXTENSION_API_VERSION = 1


def _values(args: List[Any], env: Any) -> List[int]:
    return [env.evaluate(arg) for arg in args]


def _gcd(args: List[Any], env: Any) -> int:
    a, b = _values(args, env)
    return math.gcd(a, b)


def _lcm(args: List[Any], env: Any) -> int:
    a, b = _values(args, env)
    return math.lcm(a, b)


def _abs(args: List[Any], env: Any) -> int:
    (x,) = _values(args, env)
    return abs(x)


def _mod(args: List[Any], env: Any) -> int:
    a, b = _values(args, env)
    if b == 0:
        raise ZeroDivisionError("modulo by zero")
    return a % b


def _min(args: List[Any], env: Any) -> int:
    return min(_values(args, env))


def _max(args: List[Any], env: Any) -> int:
    return max(_values(args, env))


def math_dsl_register(ext: ExtensionAPI) -> None:
    ext.metadata(name=MATH_DSL_EXTENSION_NAME, version="1.0.0")
    ext.register_external("gcd", 2, _gcd, doc="gcd(a, b): greatest common divisor")
    ext.register_external("lcm", 2, _lcm, doc="lcm(a, b): least common multiple")
    ext.register_external("abs", 1, _abs, doc="abs(x)")
    ext.register_external("mod", 2, _mod, doc="mod(a, b): remainder with the sign of b")
    ext.register_external("min", 2, _min, doc="min(a, b)")
    ext.register_external("max", 2, _max, doc="max(a, b)")

    # Count cache hits so `--verbose` runs can see how much memoization saved.
    hits = {"count": 0}

    @ext.on_event("cache_hit")
    def _count_hit(event: CallEvent) -> None:
        hits["count"] += 1

    @ext.on_event("program_end")
    def _report(event: RunEvent) -> None:
        if event.interpreter.verbose and hits["count"]:
            print(f"[numtheory] {hits['count']} cache hits")
