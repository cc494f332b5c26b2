import os
import textwrap

import pytest

from assembler import assemble
from extensions import (
    BFExtensionError,
    ExtensionAPI,
    HookRegistry,
    RuntimeServices,
    load_runtime_services,
)
from machine import BFRuntimeError, CellRangeError, ExecutionCancelled, Machine, bytes_input


PROFILE_EXT = os.path.join(os.path.dirname(__file__), os.pardir, "ext", "profile.py")


def make_machine(services):
    return Machine(input_provider=bytes_input(b""), output_sink=lambda value: None, services=services)


def test_program_events_are_emitted():
    services = RuntimeServices()
    ext = ExtensionAPI(services=services, ext_name="test")
    seen = []

    @ext.on_event("program_start")
    def on_start(machine, program):
        seen.append(("start", len(program)))

    @ext.on_event("program_end")
    def on_end(machine, state):
        seen.append(("end", state.steps))

    make_machine(services).run(assemble("+>+"))
    assert seen == [("start", 3), ("end", 3)]


def test_on_error_receives_the_error():
    services = RuntimeServices()
    errors = []
    ExtensionAPI(services=services, ext_name="test").on_event("on_error", lambda machine, error: errors.append(error))
    with pytest.raises(CellRangeError) as excinfo:
        make_machine(services).run(assemble("<"))
    assert errors == [excinfo.value]


def test_event_priority_orders_handlers():
    registry = HookRegistry()
    calls = []
    registry.on_event("ping", lambda: calls.append("low"), priority=0, ext_name="a")
    registry.on_event("ping", lambda: calls.append("high"), priority=10, ext_name="b")
    registry.emit("ping")
    assert calls == ["high", "low"]


def test_step_rules_fire_every_n_steps():
    services = RuntimeServices()
    ext = ExtensionAPI(services=services, ext_name="test")
    steps = []
    ext.every_n_steps(2, lambda machine, ctx: steps.append((ctx.step_index, str(ctx.instruction), ctx.cursor)))
    make_machine(services).run(assemble("+>+>+"))
    assert steps == [(2, "MoveRight(1)", 1), (4, "MoveRight(1)", 2)]


def test_step_rule_requires_positive_interval():
    with pytest.raises(BFExtensionError):
        HookRegistry().add_step_rule(name="bad", every_n=0, handler=lambda m, c: None, ext_name="x")


def test_step_rule_may_stop_execution():
    services = RuntimeServices()

    def stop(machine, ctx):
        raise ExecutionCancelled("stopped by watchdog", pc=ctx.pc)

    ExtensionAPI(services=services, ext_name="watchdog").every_n_steps(3, stop)
    machine = make_machine(services)
    with pytest.raises(ExecutionCancelled):
        machine.run(assemble("+[]"))
    assert machine.state.steps == 3


def test_failing_hooks_become_runtime_errors():
    services = RuntimeServices()

    def explode(machine, program):
        raise KeyError("boom")

    ExtensionAPI(services=services, ext_name="test").on_event("program_start", explode)
    with pytest.raises(BFRuntimeError) as excinfo:
        make_machine(services).run(assemble("+"))
    assert excinfo.value.kind == "EXT"
    assert "program_start" in excinfo.value.message


def test_failing_step_rule_becomes_runtime_error():
    services = RuntimeServices()
    ExtensionAPI(services=services, ext_name="test").every_n_steps(1, lambda machine, ctx: 1 / 0)
    with pytest.raises(BFRuntimeError) as excinfo:
        make_machine(services).run(assemble("+"))
    assert excinfo.value.kind == "EXT"


def test_load_extension_from_file(tmp_path):
    path = tmp_path / "counter.py"
    path.write_text(
        textwrap.dedent(
            """
            BFVM_EXTENSION_NAME = "counter"
            HITS = []

            def bfvm_register(ext):
                ext.metadata(name="counter", version="0.2.0")
                ext.every_n_steps(1, lambda machine, ctx: HITS.append(ctx.pc))
            """
        )
    )
    services = load_runtime_services([str(path)])
    assert [meta.name for meta in services.metadata] == ["counter"]
    assert services.hook_registry.has_step_rules


def test_extension_without_register_is_rejected(tmp_path):
    path = tmp_path / "empty.py"
    path.write_text("VALUE = 1\n")
    with pytest.raises(BFExtensionError):
        load_runtime_services([str(path)])


def test_extension_api_version_mismatch(tmp_path):
    path = tmp_path / "future.py"
    path.write_text("BFVM_EXTENSION_API_VERSION = 99\ndef bfvm_register(ext):\n    pass\n")
    with pytest.raises(BFExtensionError) as excinfo:
        load_runtime_services([str(path)])
    assert "requires API 99" in str(excinfo.value)


def test_missing_extension_file(tmp_path):
    with pytest.raises(BFExtensionError):
        load_runtime_services([str(tmp_path / "absent.py")])


def test_profile_extension_reports_counts(capsys):
    services = load_runtime_services([PROFILE_EXT])
    make_machine(services).run(assemble("++[->+<]"))
    err = capsys.readouterr().err
    assert "profile: 12 instructions executed" in err
    assert "Decrement" in err


def test_failing_on_error_hook_keeps_the_runtime_fault():
    services = RuntimeServices()
    ExtensionAPI(services=services, ext_name="test").on_event("on_error", lambda machine, error: 1 / 0)
    machine = make_machine(services)
    with pytest.raises(CellRangeError) as excinfo:
        machine.run(assemble("+<<"))
    error = excinfo.value
    assert error.step_index == 2
    assert error.hook_error is not None
    assert error.hook_error.kind == "EXT"
    assert "on_error" in error.hook_error.message


def test_extension_raising_during_register(tmp_path):
    path = tmp_path / "angry.py"
    path.write_text("def bfvm_register(ext):\n    raise RuntimeError('nope')\n")
    with pytest.raises(BFExtensionError) as excinfo:
        load_runtime_services([str(path)])
    assert "nope" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, RuntimeError)


def test_extension_with_syntax_error(tmp_path):
    path = tmp_path / "broken.py"
    path.write_text("def (:\n")
    with pytest.raises(BFExtensionError) as excinfo:
        load_runtime_services([str(path)])
    assert isinstance(excinfo.value.__cause__, SyntaxError)
