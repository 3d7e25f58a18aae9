from __future__ import annotations
import json
import sys
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from extensions import (
    CallEvent,
    ErrorEvent,
    ExternalFunction,
    HookRegistry,
    RunEvent,
    RuntimeServices,
    Step,
    build_default_services,
)
from lexer import MathError, MathInternalError, SourceLocation, format_diagnostic
from program import (
    Arithmetic,
    ArithmeticOp,
    Expression,
    Function,
    FunctionInvocation,
    NumberValue,
    Program,
    Reference,
    VariableAccess,
    VariableAssignment,
    render,
)


# Exponents must fit an unsigned 32-bit integer.
MAX_EXPONENT = 2**32 - 1

# Python stack needed by programs that recurse a few thousand calls deep.
RECURSION_LIMIT = 20000

# Steps kept by a non-verbose trace.
TRACE_HISTORY = 256


class MathRuntimeError(MathError):
    """Raised for runtime faults."""


@dataclass(frozen=True)
class ValueBinding:
    """Binds a name to an expression; parameters always hold a NumberValue."""

    expression: Expression

    @property
    def is_reference(self) -> bool:
        return False


@dataclass(frozen=True)
class ReferenceBinding:
    """Aliases another variable's storage."""

    variable: "RuntimeVariable"

    @property
    def is_reference(self) -> bool:
        return True


Binding = Union[ValueBinding, ReferenceBinding]


@dataclass(eq=False)
class RuntimeVariable:
    name: str
    binding: Binding
    is_parameter: bool = False
    constant: bool = False


class MemoCache:
    """One store for every cached function, keyed by (function, arguments)."""

    def __init__(self) -> None:
        self._entries: Dict[Tuple[str, int, Tuple[Binding, ...]], int] = {}

    @staticmethod
    def _key(function: Function, arguments: Sequence[Binding]) -> Tuple[str, int, Tuple[Binding, ...]]:
        return (function.name, function.arity, tuple(arguments))

    def lookup(self, function: Function, arguments: Sequence[Binding]) -> Optional[int]:
        return self._entries.get(self._key(function, arguments))

    def contains(self, function: Function, arguments: Sequence[Binding]) -> bool:
        return self._key(function, arguments) in self._entries

    def record(self, function: Function, arguments: Sequence[Binding], result: int) -> None:
        self._entries.setdefault(self._key(function, arguments), result)

    def entries_for(self, function: Function) -> List[Tuple[List[int], int]]:
        out: List[Tuple[List[int], int]] = []
        for (name, arity, arguments), result in self._entries.items():
            if name == function.name and arity == function.arity:
                out.append(([_binding_value(b) for b in arguments], result))
        return out

    def __len__(self) -> int:
        return len(self._entries)


def _binding_value(binding: Binding) -> Any:
    if isinstance(binding, ValueBinding) and isinstance(binding.expression, NumberValue):
        return binding.expression.value
    return _render_binding(binding)


def _render_binding(binding: Binding) -> str:
    if isinstance(binding, ReferenceBinding):
        return f"&{binding.variable.name}"
    return render(binding.expression)


class Environment:
    """Live program state for one run; every evaluation mutates it in place."""

    def __init__(
        self,
        program: Program,
        external_functions: Sequence[ExternalFunction],
        interpreter: "Interpreter",
    ) -> None:
        self.interpreter = interpreter
        self.variables: List[RuntimeVariable] = []
        self.functions: List[Function] = []
        self.external_functions: List[ExternalFunction] = list(external_functions)
        self.memo = MemoCache()
        self.declare(program)

    def declare(self, program: Program) -> None:
        for variable in program.variables:
            self.variables.append(
                RuntimeVariable(name=variable.name, binding=ValueBinding(variable.definition), constant=variable.constant)
            )
        self.functions.extend(f for f in program.functions if not f.is_external)

    # ---- lookups ----
    def lookup_variable(self, name: str, location: Optional[SourceLocation] = None) -> RuntimeVariable:
        found: Optional[RuntimeVariable] = None
        for variable in self.variables:
            if variable.name != name:
                continue
            if variable.is_parameter:
                return variable
            if found is None:
                found = variable
        if found is None:
            raise MathRuntimeError(f"Variable not found ('{name}')", location=location, rule="IDENT")
        return found

    def lookup_function(self, name: str, arity: int) -> Optional[Function]:
        for function in self.functions:
            if function.name == name and function.arity == arity:
                return function
        return None

    def lookup_external_function(self, name: str, arity: int) -> Optional[ExternalFunction]:
        for function in self.external_functions:
            if function.name == name and function.arity == arity:
                return function
        return None

    # ---- evaluation entry points for external functions ----
    def evaluate(self, binding: Union[Binding, Expression]) -> int:
        if isinstance(binding, (ValueBinding, ReferenceBinding)):
            return self.interpreter.evaluate_binding(binding, self)
        return self.interpreter.evaluate(binding, self)

    # ---- mutation ----
    def assign(self, name: str, value: int, location: Optional[SourceLocation] = None) -> int:
        variable = self.lookup_variable(name, location)
        while isinstance(variable.binding, ReferenceBinding):
            variable = variable.binding.variable
        if variable.constant:
            raise MathRuntimeError("Cannot reassign constant", location=location, rule="ASSIGN")
        variable.binding = ValueBinding(NumberValue(value))
        return value

    def enter_call(self, function: Function, arguments: Sequence[Binding]) -> List[RuntimeVariable]:
        """Bind parameters; the caller's own parameters are hidden until leave_call."""
        hidden = [v for v in self.variables if v.is_parameter]
        self.variables = [v for v in self.variables if not v.is_parameter]
        for name, binding in zip(function.parameters, arguments):
            self.variables.append(RuntimeVariable(name=name, binding=binding, is_parameter=True))
        return hidden

    def leave_call(self, hidden: List[RuntimeVariable]) -> None:
        self.variables = [v for v in self.variables if not v.is_parameter]
        self.variables.extend(hidden)

    def discard_parameters(self) -> None:
        self.variables = [v for v in self.variables if not v.is_parameter]

    def snapshot(self) -> Dict[str, str]:
        def _render(variable: RuntimeVariable) -> str:
            rendered = _render_binding(variable.binding)
            if len(rendered) > 80:
                rendered = rendered[:77] + "..."
            return rendered

        return {v.name: _render(v) for v in self.variables}


@dataclass
class CallFrame:
    """An active function call; `last_step` is the newest step traced inside it."""

    function: str
    frame_id: str
    call_location: Optional[SourceLocation]
    last_step: Optional["TraceStep"] = None


@dataclass(frozen=True)
class TraceStep:
    index: int
    rule: str
    location: Optional[SourceLocation]
    frame_id: Optional[str]
    detail: Dict[str, Any]
    snapshot: Optional[Dict[str, str]] = None

    @property
    def state_id(self) -> str:
        return f"s_{self.index:06d}"


class ExecutionTrace:
    """Recent evaluation steps.

    Only the newest `history` steps are kept, plus the last step of every frame
    still on the call stack. A verbose trace keeps every step together with a
    snapshot of the environment.
    """

    def __init__(self, verbose: bool, history: int = TRACE_HISTORY) -> None:
        self.verbose = verbose
        self.steps: Deque[TraceStep] = deque(maxlen=None if verbose else history)
        self.count = 0

    @property
    def last(self) -> Optional[TraceStep]:
        return self.steps[-1] if self.steps else None

    def record(
        self,
        frame: Optional[CallFrame],
        rule: str,
        location: Optional[SourceLocation],
        detail: Dict[str, Any],
        snapshot: Optional[Dict[str, str]] = None,
    ) -> TraceStep:
        step = TraceStep(self.count, rule, location, frame.frame_id if frame else None, detail, snapshot)
        self.count += 1
        self.steps.append(step)
        if frame is not None:
            frame.last_step = step
        return step


@contextmanager
def recursion_headroom(limit: int = RECURSION_LIMIT) -> Iterator[None]:
    """Let deeply recursive programs run; the previous limit is restored on exit."""
    previous = sys.getrecursionlimit()
    if previous < limit:
        sys.setrecursionlimit(limit)
    try:
        yield
    finally:
        sys.setrecursionlimit(previous)


def _truncating_divide(a: int, b: int) -> int:
    quotient = abs(a) // abs(b)
    return quotient if (a < 0) == (b < 0) else -quotient


OPERATIONS: Dict[ArithmeticOp, Callable[[int, int], int]] = {
    ArithmeticOp.ADD: lambda a, b: a + b,
    ArithmeticOp.SUBTRACT: lambda a, b: a - b,
    ArithmeticOp.MULTIPLY: lambda a, b: a * b,
    ArithmeticOp.DIVIDE: _truncating_divide,
    ArithmeticOp.EQUALS: lambda a, b: 1 if a == b else 0,
    ArithmeticOp.NOT_EQUALS: lambda a, b: 1 if a != b else 0,
    ArithmeticOp.GREATER_EQ: lambda a, b: 1 if a >= b else 0,
    ArithmeticOp.GREATER: lambda a, b: 1 if a > b else 0,
    ArithmeticOp.LESS_EQ: lambda a, b: 1 if a <= b else 0,
    ArithmeticOp.LESS: lambda a, b: 1 if a < b else 0,
    ArithmeticOp.POWER: lambda a, b: a**b,
}


class Interpreter:
    def __init__(
        self,
        program: Program,
        *,
        external_functions: Sequence[ExternalFunction] = (),
        services: Optional[RuntimeServices] = None,
        verbose: bool = False,
        history: int = TRACE_HISTORY,
    ) -> None:
        self.program = program
        self.external_functions = list(external_functions)
        self.verbose = verbose
        self.services = services or build_default_services()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.trace = ExecutionTrace(verbose=verbose, history=history)
        self.call_stack: List[CallFrame] = []
        self.frame_counter = 0
        self.environment: Optional[Environment] = None

    def create_environment(self) -> Environment:
        env = Environment(self.program, self.external_functions, self)
        self.environment = env
        return env

    def push_top_level(self) -> CallFrame:
        frame = self._new_frame("<top-level>", None)
        self.call_stack.append(frame)
        return frame

    def run(self) -> Environment:
        env = self.create_environment()
        self.push_top_level()
        self._emit("program_start", RunEvent, env=env, program=self.program)
        self.execute(self.program, env)
        self._emit("program_end", RunEvent, env=env, program=self.program)
        self.call_stack.pop()
        return env

    def execute(self, program: Program, env: Environment) -> List[int]:
        """Run the loose expressions of `program` in order and return their values."""
        results: List[int] = []
        try:
            with recursion_headroom():
                for variable in program.variables:
                    if variable.guards:
                        # Guard clauses are accepted by the grammar but have no runtime meaning yet.
                        self._trace(
                            "WHERE",
                            variable.location,
                            env,
                            variable=variable.name,
                            guards=len(variable.guards),
                            status="not evaluated",
                        )
                for expression in program.loose_expressions:
                    self._trace("STATEMENT", expression.location, env, expression=render(expression))
                    results.append(self.evaluate(expression, env))
        except MathError as error:
            error.step_index = self._failing_step()
            self._emit("on_error", ErrorEvent, error=error)
            raise
        except RecursionError:
            wrapped = MathRuntimeError("Maximum recursion depth exceeded", location=self._last_location(), rule="CALL")
            wrapped.step_index = self._failing_step()
            raise wrapped
        except Exception as exc:
            self._emit("on_error", ErrorEvent, error=exc)
            # Convert unexpected Python-level exceptions so callers can format them.
            wrapped = MathRuntimeError(f"Internal interpreter error: {exc}", location=self._last_location(), rule="internal")
            wrapped.step_index = self._failing_step()
            raise wrapped
        return results

    def evaluate(self, expression: Expression, env: Environment) -> int:
        if isinstance(expression, NumberValue):
            return expression.value
        if isinstance(expression, VariableAccess):
            variable = env.lookup_variable(expression.name, expression.location)
            return self.evaluate_binding(variable.binding, env)
        if isinstance(expression, Arithmetic):
            left = self.evaluate(expression.lhs, env)
            right = self.evaluate(expression.rhs, env)
            return self._apply(expression.op, left, right, expression.location)
        if isinstance(expression, FunctionInvocation):
            return self._invoke(expression, env)
        if isinstance(expression, VariableAssignment):
            value = self.evaluate(expression.value, env)
            self._trace("ASSIGN", expression.location, env, variable=expression.name, value=value)
            return env.assign(expression.name, value, expression.location)
        raise MathInternalError(
            f"Can not execute {type(expression).__name__} => {render(expression)}",
            location=expression.location,
            rule="internal",
        )

    def evaluate_binding(self, binding: Binding, env: Environment) -> int:
        while isinstance(binding, ReferenceBinding):
            binding = binding.variable.binding
        return self.evaluate(binding.expression, env)

    def _apply(self, op: ArithmeticOp, left: int, right: int, location: Optional[SourceLocation]) -> int:
        if op is ArithmeticOp.DIVIDE and right == 0:
            raise MathRuntimeError("Division by zero", location=location, rule=op.symbol)
        if op is ArithmeticOp.POWER and not 0 <= right <= MAX_EXPONENT:
            raise MathRuntimeError(f"Exponent out of range ({right})", location=location, rule=op.symbol)
        return OPERATIONS[op](left, right)

    def _invoke(self, call: FunctionInvocation, env: Environment) -> int:
        arity = len(call.arguments)
        function = env.lookup_function(call.name, arity)
        if function is not None:
            return self._call_user_function(function, call, env)
        external = env.lookup_external_function(call.name, arity)
        if external is not None:
            return self._call_external_function(external, call, env)
        raise MathRuntimeError(
            f"Function not found ('{call.name}' with {arity} parameters)",
            location=call.location,
            rule="CALL",
        )

    def _bind_arguments(self, call: FunctionInvocation, env: Environment) -> List[Binding]:
        bindings: List[Binding] = []
        for argument in call.arguments:
            if isinstance(argument, Reference):
                bindings.append(ReferenceBinding(env.lookup_variable(argument.name, argument.location)))
            else:
                bindings.append(ValueBinding(NumberValue(self.evaluate(argument, env))))
        return bindings

    def _call_user_function(self, function: Function, call: FunctionInvocation, env: Environment) -> int:
        arguments = self._bind_arguments(call, env)
        values = [_binding_value(a) for a in arguments]
        if function.cached:
            if any(binding.is_reference for binding in arguments):
                raise MathRuntimeError(
                    "Cannot invoke cached function with reference",
                    location=call.location,
                    rule=function.name,
                )
            if env.memo.contains(function, arguments):
                result = env.memo.lookup(function, arguments)
                self._trace("CACHE_HIT", call.location, env, function=function.name, arguments=values, result=result)
                self._emit(
                    "cache_hit", CallEvent,
                    env=env, function=function.name, arguments=tuple(values), location=call.location,
                    result=result, cached=True,
                )
                return result

        self._trace("CALL", call.location, env, function=function.name, arguments=values)
        self._emit(
            "before_call", CallEvent,
            env=env, function=function.name, arguments=tuple(values), location=call.location, cached=function.cached,
        )
        frame = self._new_frame(function.name, call.location)
        self.call_stack.append(frame)
        hidden = env.enter_call(function, arguments)
        result = self.evaluate(function.definition, env)
        env.leave_call(hidden)
        self.call_stack.pop()
        if function.cached:
            env.memo.record(function, arguments, result)
        self._emit(
            "after_call", CallEvent,
            env=env, function=function.name, arguments=tuple(values), location=call.location,
            result=result, cached=function.cached,
        )
        return result

    def _call_external_function(self, external: ExternalFunction, call: FunctionInvocation, env: Environment) -> int:
        arguments: List[Binding] = []
        for argument in call.arguments:
            if isinstance(argument, Reference):
                arguments.append(ReferenceBinding(env.lookup_variable(argument.name, argument.location)))
            else:
                arguments.append(ValueBinding(argument))
        # External arguments are unevaluated; events see their source text.
        shown = tuple(_render_binding(a) for a in arguments)
        self._emit("before_call", CallEvent, env=env, function=external.name, arguments=shown, location=call.location)
        try:
            result = external.impl(arguments, env)
        except MathError as error:
            if error.location is None:
                error.location = call.location
            raise
        except RecursionError:
            raise
        except Exception as exc:
            raise MathRuntimeError(
                f"External function '{external.name}' failed: {exc}",
                location=call.location,
                rule=external.name,
            )
        if isinstance(result, bool):
            result = int(result)
        if not isinstance(result, int):
            raise MathRuntimeError(
                f"External function '{external.name}' must return an integer",
                location=call.location,
                rule=external.name,
            )
        self._trace(external.name, call.location, env, result=result)
        self._emit(
            "after_call", CallEvent,
            env=env, function=external.name, arguments=shown, location=call.location, result=result,
        )
        return result

    def _new_frame(self, function: str, call_location: Optional[SourceLocation]) -> CallFrame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return CallFrame(function=function, frame_id=frame_id, call_location=call_location)

    def _failing_step(self) -> Optional[int]:
        return self.trace.count - 1 if self.trace.count else None

    def _last_location(self) -> Optional[SourceLocation]:
        for step in reversed(self.trace.steps):
            if step.location is not None:
                return step.location
        return None

    def _emit(self, event: str, payload_type: type, **fields: Any) -> None:
        if not self.hook_registry.has_handlers(event):
            return
        try:
            self.hook_registry.emit(event, payload_type(interpreter=self, **fields))
        except (MathError, RecursionError):
            raise
        except Exception as exc:
            raise MathRuntimeError(
                f"Extension hook '{event}' failed: {exc}",
                location=self._last_location(),
                rule="EXT",
            )

    def _trace(self, rule: str, location: Optional[SourceLocation], env: Environment, **detail: Any) -> None:
        frame = self.call_stack[-1] if self.call_stack else None
        snapshot = env.snapshot() if self.verbose else None
        step = self.trace.record(frame, rule, location, detail, snapshot)
        if not self.hook_registry.has_step_rules:
            return
        try:
            self.hook_registry.after_step(Step(self, step.index, rule, location, detail))
        except (MathError, RecursionError):
            raise
        except Exception as exc:
            raise MathRuntimeError(f"Extension step rule failed: {exc}", location=location, rule="EXT")


def interpret(
    program: Program,
    external_functions: Sequence[ExternalFunction] = (),
    *,
    services: Optional[RuntimeServices] = None,
    verbose: bool = False,
) -> Environment:
    interpreter = Interpreter(program, external_functions=external_functions, services=services, verbose=verbose)
    return interpreter.run()


def _location_json(location: SourceLocation) -> Dict[str, Any]:
    return {
        "file": location.file,
        "line": location.line + 1,
        "column": location.column + 1,
        "statement": location.statement,
    }


class TracebackFormatter:
    """Renders the call stack left behind by a failed run, outermost call first."""

    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def frames(self) -> List[Tuple[CallFrame, Optional[SourceLocation]]]:
        return [
            (frame, frame.last_step.location if frame.last_step else frame.call_location)
            for frame in self.interpreter.call_stack
        ]

    def format_text(self, error: MathError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame, location in self.frames():
            if location is None:
                lines.append(f"  <unknown location> in {frame.function}")
            else:
                lines.append(f"  File \"{location.file}\", line {location.line + 1}, in {frame.function}")
                lines.append(f"    {location.statement.strip()}")
            step = frame.last_step
            if step is None:
                continue
            lines.append(f"    step {step.index} ({step.state_id}, {step.rule})")
            if verbose and step.snapshot is not None:
                lines.append("    env: " + ", ".join(f"{k}={v}" for k, v in step.snapshot.items()))
        lines.append(format_diagnostic(error) + f" (rule: {error.rule or 'runtime'})")
        return "\n".join(lines)

    def to_json(self, error: MathError) -> str:
        traceback: List[Dict[str, Any]] = []
        for depth, (frame, location) in enumerate(self.frames()):
            entry: Dict[str, Any] = {"frame_index": depth, "name": frame.function, "frame_id": frame.frame_id}
            if location is not None:
                entry["source_location"] = _location_json(location)
            step = frame.last_step
            if step is not None:
                entry.update(step_index=step.index, state_id=step.state_id, rule=step.rule, detail=step.detail)
                if step.snapshot is not None:
                    entry["env_snapshot"] = step.snapshot
            traceback.append(entry)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "rule": error.rule,
                "failing_step_index": error.step_index,
            },
            "traceback": traceback,
        }
        return json.dumps(data, indent=2, default=str)
