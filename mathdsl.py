"""math-DSL entry point and REPL wiring."""

from __future__ import annotations
import argparse
import sys
import time
from typing import Callable, List, Optional, Sequence

from extensions import ExternalFunction, MathExtensionError, RuntimeServices, load_runtime_services, merge_externals
from hostlib import default_externals
from interpreter import Interpreter, MathRuntimeError, TracebackFormatter
from lexer import MathError, format_diagnostic, tokenize
from parser import DeclarationResolver
from program import FunctionInvocation, Program


def _format_duration(micros: int) -> str:
    millis = micros // 1000
    return f"{millis}ms" if millis != 0 else f"{micros}µs"


def _read_source(path: str) -> str:
    with open(path, "r", encoding="utf-8") as handle:
        return handle.read()


def _collect_externals(services: RuntimeServices, sink: Optional[Callable[[str], None]] = None) -> List[ExternalFunction]:
    return merge_externals(default_externals(output_sink=sink), services.externals)


def run_repl(
    *,
    verbose: bool,
    comment: str,
    services: RuntimeServices,
    input_func: Callable[[str], str] = input,
) -> int:
    try:
        externals = _collect_externals(services)
    except MathExtensionError as exc:
        print(f"ExtensionError: {exc}", file=sys.stderr)
        return 1
    print("math-DSL REPL. Enter declarations or expressions, end a line with | to continue it.")
    declared = DeclarationResolver([], externals).parse()
    interpreter = Interpreter(declared, external_functions=externals, services=services, verbose=verbose)
    env = interpreter.create_environment()
    global_frame = interpreter.push_top_level()
    buffer: List[str] = []

    while True:
        prompt = ">>> " if not buffer else "..> "
        try:
            line = input_func(prompt)
        except EOFError:
            print()
            break

        buffer.append(line)
        if line.rstrip().endswith("|"):
            continue
        source_text = "\n".join(buffer)
        buffer.clear()
        if not source_text.strip():
            continue

        try:
            piece = DeclarationResolver(tokenize(source_text, "<repl>", comment=comment), externals, predeclared=declared).parse()
            env.declare(piece)
            declared.functions.extend(piece.functions)
            declared.variables.extend(piece.variables)
            results = interpreter.execute(piece, env)
        except MathRuntimeError as error:
            formatter = TracebackFormatter(interpreter)
            print(formatter.format_text(error, verbose=interpreter.verbose), file=sys.stderr)
            # reset call stack to single top-level frame to keep REPL usable
            interpreter.call_stack = [global_frame]
            env.discard_parameters()
            continue
        except MathError as error:
            print(format_diagnostic(error), file=sys.stderr)
            interpreter.call_stack = [global_frame]
            env.discard_parameters()
            continue

        for expression, value in zip(piece.loose_expressions, results):
            # Host output functions already wrote what they had to say.
            if isinstance(expression, FunctionInvocation) and env.lookup_function(expression.name, len(expression.arguments)) is None:
                continue
            print(value)
    return 0


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="math-DSL interpreter")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit env snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--timing", action="store_true", help="Report how long each phase took")
    parser.add_argument("--comment", default="#", help="Line comment marker (default: #)")
    parser.add_argument(
        "--ext",
        action="append",
        default=[],
        help="Path to a Python extension module, or a .mathx file listing them (repeatable)",
    )
    args = parser.parse_args(argv)

    try:
        services = load_runtime_services(args.ext)
    except MathExtensionError as exc:
        print(f"ExtensionError: {exc}", file=sys.stderr)
        return 1

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_repl(verbose=args.verbose, comment=args.comment, services=services)

    start = time.perf_counter_ns()
    try:
        externals = _collect_externals(services)
    except MathExtensionError as exc:
        print(f"ExtensionError: {exc}", file=sys.stderr)
        return 1
    setup_done = time.perf_counter_ns()

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            source_text = _read_source(filename)
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1
    read_done = time.perf_counter_ns()

    interpreter: Optional[Interpreter] = None
    try:
        tokens = tokenize(source_text, filename, comment=args.comment)
        lex_done = time.perf_counter_ns()
        program: Program = DeclarationResolver(tokens, externals).parse()
        parse_done = time.perf_counter_ns()
        interpreter = Interpreter(program, external_functions=externals, services=services, verbose=args.verbose)
        interpreter.run()
        run_done = time.perf_counter_ns()
    except MathRuntimeError as error:
        if interpreter is None:
            print(format_diagnostic(error), file=sys.stderr)
            return 1
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    except MathError as error:
        print(format_diagnostic(error), file=sys.stderr)
        return 1

    if args.timing:
        micros = lambda a, b: (b - a) // 1000  # noqa: E731
        print(
            f"Finished in {_format_duration(micros(start, run_done))} "
            f"(T: {_format_duration(micros(start, setup_done))}, "
            f"R: {_format_duration(micros(setup_done, read_done))} "
            f"L: {_format_duration(micros(read_done, lex_done))} "
            f"P: {_format_duration(micros(lex_done, parse_done))} "
            f"I: {_format_duration(micros(parse_done, run_done))})"
        )
    return 0


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
