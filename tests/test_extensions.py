from pathlib import Path

import pytest

from extensions import (
	ExtensionAPI,
	ExternalFunction,
	HookRegistry,
	MathExtensionError,
	RunEvent,
	RuntimeServices,
	gather_extension_paths,
	load_runtime_services,
	merge_externals,
)
from hostlib import default_externals
from interpreter import MathRuntimeError


NUMTHEORY = Path(__file__).resolve().parent.parent / "ext" / "numtheory.py"


def test_merge_rejects_duplicate_signatures():
	extra = [ExternalFunction("println", 1, lambda args, env: 0)]
	with pytest.raises(MathExtensionError, match="println"):
		merge_externals(default_externals(), extra)
	other_arity = [ExternalFunction("println", 2, lambda args, env: 0)]
	assert len(merge_externals(default_externals(), other_arity)) == len(default_externals()) + 1


def test_register_external_validates():
	api = ExtensionAPI(services=RuntimeServices(), ext_name="t")
	with pytest.raises(MathExtensionError):
		api.register_external("", 1, lambda args, env: 0)
	with pytest.raises(MathExtensionError):
		api.register_external("f", -1, lambda args, env: 0)


def test_hook_priority_order():
	registry = HookRegistry()
	seen = []
	registry.on_event("program_end", lambda event: seen.append(("low", event)), priority=0, owner="a")
	registry.on_event("program_end", lambda event: seen.append(("high", event)), priority=10, owner="b")
	registry.on_event("program_end", lambda event: seen.append(("low-2", event)), priority=0, owner="c")
	registry.emit("program_end", "payload")
	assert seen == [("high", "payload"), ("low", "payload"), ("low-2", "payload")]
	with pytest.raises(MathExtensionError, match="Unknown event 'program_stop'"):
		registry.on_event("program_stop", lambda event: None)
	with pytest.raises(MathExtensionError):
		registry.add_step_rule(lambda step: None, every=0, owner="a")


def test_numtheory_extension(run, output):
	services = load_runtime_services([str(NUMTHEORY)])
	assert [m.name for m in services.metadata] == ["numtheory"]
	run(
		"println(gcd(12, 18))\nprintln(lcm(4, 6))\nprintln(mod(-7, 3))\nprintln(abs(-4))\nprintln(max(2, min(9, 5)))",
		extra=services.externals,
		services=services,
	)
	assert output.text == "6\n12\n2\n4\n5\n"


def test_extension_error_becomes_runtime_error(run):
	services = load_runtime_services([str(NUMTHEORY)])
	with pytest.raises(MathRuntimeError, match="External function 'mod' failed"):
		run("mod(1, 0)", extra=services.externals, services=services)


def test_mathx_pointer_file(tmp_path: Path):
	pointer = tmp_path / "bundle.mathx"
	pointer.write_text(f"# extensions\n{NUMTHEORY}  # number theory\n\n")
	assert gather_extension_paths([str(pointer)]) == [str(NUMTHEORY)]


def test_extension_module_contract(tmp_path: Path):
	missing = tmp_path / "missing_register.py"
	missing.write_text("MATH_DSL_EXTENSION_NAME = 'x'\n")
	with pytest.raises(MathExtensionError, match="math_dsl_register"):
		load_runtime_services([str(missing)])

	future = tmp_path / "future.py"
	future.write_text("MATH_DSL_EXTENSION_API_VERSION = 99\ndef math_dsl_register(ext):\n    pass\n")
	with pytest.raises(MathExtensionError, match="requires API 99"):
		load_runtime_services([str(future)])

	with pytest.raises(MathExtensionError, match="not found"):
		load_runtime_services([str(tmp_path / "absent.py")])


def test_hooks_observe_a_run(run):
	services = RuntimeServices()
	api = ExtensionAPI(services=services, ext_name="observer")
	events = []
	steps = []
	api.external("triple", 1)(lambda args, env: env.evaluate(args[0]) * 3)
	api.on_event("program_start", lambda event: events.append(("start", type(event))))
	api.on_event("before_call", lambda event: events.append(("call", event.function, event.arguments)))
	api.on_event("after_call", lambda event: events.append(("done", event.function, event.result)))
	api.on_event("cache_hit", lambda event: events.append(("hit", event.function, event.result, event.cached)))
	api.on_event("program_end", lambda event: events.append(("end", type(event))))
	api.every_n_steps(1, steps.append)

	interpreter, _ = run("define cache f(n) = triple(n)\nf(2)\nf(2)", extra=services.externals, services=services)
	assert events == [
		("start", RunEvent),
		("call", "f", (2,)),
		("call", "triple", ("n",)),
		("done", "triple", 6),
		("done", "f", 6),
		("hit", "f", 6, True),
		("end", RunEvent),
	]
	assert [step.index for step in steps] == list(range(interpreter.trace.count))
	assert all(step.interpreter is interpreter for step in steps)
	assert [step.rule for step in steps].count("CACHE_HIT") == 1


def test_every_n_steps_samples_the_trace(run):
	services = RuntimeServices()
	api = ExtensionAPI(services=services, ext_name="sampler")
	seen = []

	@api.every_n_steps(3)
	def _sample(step):
		seen.append(step.index)

	interpreter, _ = run("1\n2\n3\n4\n5\n6\n7", services=services)
	assert interpreter.trace.count == 7
	assert seen == [0, 3, 6]


def test_error_event(run):
	services = RuntimeServices()
	api = ExtensionAPI(services=services, ext_name="watcher")
	errors = []
	api.on_event("on_error", lambda event: errors.append(event.error))
	with pytest.raises(MathRuntimeError) as info:
		run("1 / 0", services=services)
	assert errors == [info.value]


def test_numtheory_counts_cache_hits(run, capsys):
	services = load_runtime_services([str(NUMTHEORY)])
	run(
		"define cache sq(n) = n * n\nsq(3)\nsq(3)\nsq(3)",
		extra=services.externals,
		services=services,
		verbose=True,
	)
	assert capsys.readouterr().out == "[numtheory] 2 cache hits\n"


def test_failing_hook_is_reported(run):
	services = RuntimeServices()
	api = ExtensionAPI(services=services, ext_name="broken")

	@api.on_event("program_start")
	def _explode(event):
		raise RuntimeError("boom")

	with pytest.raises(MathRuntimeError) as info:
		run("1", services=services)
	assert info.value.rule == "EXT"
	assert "program_start" in info.value.message
