"""External functions, interpreter hooks and loading of extension modules.

An extension is a Python file defining ``math_dsl_register(ext)``. It may set
``MATH_DSL_EXTENSION_NAME`` and ``MATH_DSL_EXTENSION_API_VERSION``.
"""

from __future__ import annotations

import importlib.util
import itertools
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple


EXTENSION_API_VERSION = 1

# Events an extension can subscribe to, with the payload each one receives.
EVENTS: Dict[str, str] = {
    "program_start": "RunEvent",
    "program_end": "RunEvent",
    "before_call": "CallEvent",
    "after_call": "CallEvent",
    "cache_hit": "CallEvent",
    "on_error": "ErrorEvent",
}


class MathExtensionError(Exception):
    pass


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


# impl(arguments, environment) -> int. Arguments are unevaluated bindings;
# call environment.evaluate(argument) to get a value.
ExternalImpl = Callable[[List[Any], Any], int]


@dataclass(frozen=True)
class ExternalFunction:
    name: str
    arity: int
    impl: ExternalImpl
    doc: str = ""

    @property
    def key(self) -> Tuple[str, int]:
        return (self.name, self.arity)


def merge_externals(*groups: Iterable[ExternalFunction]) -> List[ExternalFunction]:
    """Concatenate groups; a (name, arity) pair may only be defined once."""
    merged: Dict[Tuple[str, int], ExternalFunction] = {}
    for function in itertools.chain(*groups):
        if function.key in merged:
            raise MathExtensionError(
                f"Cannot override existing external function '{function.name}' ({function.arity} parameters)"
            )
        merged[function.key] = function
    return list(merged.values())


@dataclass(frozen=True)
class RunEvent:
    interpreter: Any
    env: Any
    program: Any


@dataclass(frozen=True)
class CallEvent:
    """A user or external call. `result` is None until the call returns."""

    interpreter: Any
    env: Any
    function: str
    arguments: Tuple[Any, ...]
    location: Any
    result: Optional[int] = None
    cached: bool = False


@dataclass(frozen=True)
class ErrorEvent:
    interpreter: Any
    error: BaseException


@dataclass(frozen=True)
class Step:
    """One evaluation step as seen by step rules."""

    interpreter: Any
    index: int
    rule: str
    location: Any
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class _Hook:
    priority: int
    order: int
    handler: Callable[[Any], None]
    owner: str


@dataclass(frozen=True)
class _StepRule:
    every: int
    handler: Callable[[Step], None]
    owner: str
    name: str


class HookRegistry:
    def __init__(self) -> None:
        self._hooks: Dict[str, List[_Hook]] = {event: [] for event in EVENTS}
        self._step_rules: List[_StepRule] = []
        self._order = itertools.count()

    def on_event(self, event: str, handler: Callable[[Any], None], *, priority: int = 0, owner: str = "") -> None:
        if event not in self._hooks:
            raise MathExtensionError(f"Unknown event '{event}' (expected one of {', '.join(EVENTS)})")
        hooks = self._hooks[event]
        hooks.append(_Hook(priority, next(self._order), handler, owner))
        # Higher priority first, registration order among equals.
        hooks.sort(key=lambda hook: (-hook.priority, hook.order))

    def has_handlers(self, event: str) -> bool:
        return bool(self._hooks.get(event))

    def emit(self, event: str, payload: Any) -> None:
        for hook in self._hooks[event]:
            hook.handler(payload)

    def add_step_rule(self, handler: Callable[[Step], None], *, every: int, owner: str = "", name: str = "") -> None:
        if every < 1:
            raise MathExtensionError("Step rules must run at least every 1 step")
        self._step_rules.append(_StepRule(every, handler, owner, name or getattr(handler, "__name__", "rule")))

    @property
    def has_step_rules(self) -> bool:
        return bool(self._step_rules)

    def after_step(self, step: Step) -> None:
        for rule in self._step_rules:
            if step.index % rule.every == 0:
                rule.handler(step)


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)
    externals: List[ExternalFunction] = field(default_factory=list)


def _register_or_decorate(register: Callable[[Callable[..., Any]], None], handler: Optional[Callable[..., Any]]):
    if handler is not None:
        register(handler)
        return handler

    def deco(fn: Callable[..., Any]) -> Callable[..., Any]:
        register(fn)
        return fn

    return deco


class ExtensionAPI:
    """Handle passed to an extension's math_dsl_register(ext)."""

    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self.name = ext_name

    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION) -> None:
        self._services.metadata.append(ExtensionMetadata(name=name, version=version, requires_api=requires_api))

    def register_external(self, name: str, arity: int, impl: ExternalImpl, *, doc: str = "") -> None:
        if not name:
            raise MathExtensionError("External function name must be non-empty")
        if arity < 0:
            raise MathExtensionError(f"External function '{name}' cannot take a negative number of parameters")
        self._services.externals.append(ExternalFunction(name=name, arity=arity, impl=impl, doc=doc))

    def external(self, name: str, arity: int, *, doc: str = ""):
        return _register_or_decorate(lambda fn: self.register_external(name, arity, fn, doc=doc), None)

    def on_event(self, event: str, handler: Optional[Callable[[Any], None]] = None, *, priority: int = 0):
        registry = self._services.hook_registry
        return _register_or_decorate(
            lambda fn: registry.on_event(event, fn, priority=priority, owner=self.name), handler
        )

    def every_n_steps(self, every_n: int, handler: Optional[Callable[[Step], None]] = None, *, name: str = ""):
        registry = self._services.hook_registry
        return _register_or_decorate(
            lambda fn: registry.add_step_rule(fn, every=every_n, owner=self.name, name=name), handler
        )


_module_ids = itertools.count()


def load_extension_module(path: Path) -> Any:
    if not path.is_file():
        raise MathExtensionError(f"Extension not found: {path}")
    module_name = f"mathdsl_ext_{path.stem}_{next(_module_ids)}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise MathExtensionError(f"Failed to load extension module: {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def read_mathx(pointer_file: Path) -> List[Path]:
    """Read a .mathx file: one extension path per line, `#` starts a comment."""
    if not pointer_file.is_file():
        raise MathExtensionError(f".mathx file not found: {pointer_file}")
    paths: List[Path] = []
    for raw in pointer_file.read_text(encoding="utf-8").splitlines():
        entry = raw.partition("#")[0].strip()
        if entry:
            paths.append(pointer_file.parent / entry)
    return paths


def gather_extension_paths(paths: Sequence[str]) -> List[str]:
    expanded: List[Path] = []
    for raw in paths:
        path = Path(raw)
        if path.suffix.lower() == ".mathx":
            expanded.extend(read_mathx(path))
        else:
            expanded.append(path)
    return [str(path.resolve()) for path in expanded]


def build_default_services() -> RuntimeServices:
    return RuntimeServices()


def _register_module(services: RuntimeServices, module: Any, path: str) -> None:
    wanted = getattr(module, "MATH_DSL_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
    if wanted != EXTENSION_API_VERSION:
        raise MathExtensionError(f"Extension {path} requires API {wanted}, host supports {EXTENSION_API_VERSION}")
    register = getattr(module, "math_dsl_register", None)
    if not callable(register):
        raise MathExtensionError(f"Extension {path} must define callable math_dsl_register(ext)")
    name = str(getattr(module, "MATH_DSL_EXTENSION_NAME", Path(path).stem))
    register(ExtensionAPI(services=services, ext_name=name))


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = build_default_services()
    for path in gather_extension_paths(paths):
        _register_module(services, load_extension_module(Path(path)), path)
    return services
