import json

import pytest

from extensions import ExtensionAPI, OpcodeTable, build_default_services
from interpreter import Interpreter, TracebackFormatter, run
from stack import OperandStack
from values import (
    ERR_DIVISION_BY_ZERO,
    ERR_INTERNAL,
    ERR_INVALID_INSTRUCTION,
    ERR_RETURN_UNDERFLOW,
    ERR_STACK_UNDERFLOW,
    ERR_TYPE_MISMATCH,
    TYPE_FLT,
    TYPE_INT,
    Value,
    VMRuntimeError,
)


def I(n):
    return Value(TYPE_INT, n)


def F(x):
    return Value(TYPE_FLT, x)


def fault(program, **kwargs):
    with pytest.raises(VMRuntimeError) as exc:
        run(program, **kwargs)
    return exc.value


# Layout:  0 '#'  1 '8'  2 "'"  3 'c'  4 '#'  5 '2'  6 "'"  7 ';'
#          8 '#'  9 '9' 10 "'" 11 ';'
CALL_PROGRAM = b"#8'c#2';#9';"


def test_unknown_opcode_reports_pc_after_byte():
    error = fault(b"#1'Q")
    assert error.kind == ERR_INVALID_INSTRUCTION
    assert error.pc == 4
    assert error.opcode == ord("Q")
    assert error.rule == "EXT"


def test_whitespace_is_skipped_but_tab_is_not():
    assert run(b" \n\r#4' ").values() == [I(4)]
    error = fault(b"\t")
    assert error.kind == ERR_INVALID_INSTRUCTION
    assert error.pc == 1


def test_call_returns_one_byte_past_call_site():
    interpreter = Interpreter(trace=True)
    stack = interpreter.run(CALL_PROGRAM)
    assert stack.values() == [I(9), I(2)]

    pcs = [e.pc for e in interpreter.logger.entries]
    first_return = next(i for i, e in enumerate(interpreter.logger.entries) if e.rule == "RETURN")
    assert pcs[first_return + 1] == 4


def test_unmatched_return_ends_the_run_by_default():
    assert run(b"#1';#2'").values() == [I(1)]


def test_strict_return_reports_underflow():
    with pytest.raises(VMRuntimeError) as exc:
        Interpreter(strict_return=True).run(CALL_PROGRAM)
    assert exc.value.kind == ERR_RETURN_UNDERFLOW
    assert exc.value.pc == 8
    assert exc.value.message == "Return Without Call"

    error = fault(b";", strict_return=True)
    assert error.kind == ERR_RETURN_UNDERFLOW
    assert error.pc == 1


def test_call_with_float_address_is_type_mismatch():
    error = fault(b'#1"c')
    assert error.kind == ERR_TYPE_MISMATCH
    assert error.pc == 4
    assert error.rule == "CALL"


def test_branch_is_unconditional():
    assert run(b"#7'b#1'#2'").values() == [I(2)]


def test_branch_to_negative_address_ends_the_run():
    assert run(b"#1$'b#5'").values() == []


# Layout: 0 '#' 1 data 2 "'"/'"'  3 '#' 4 '1' 5 '1' 6 "'"  7 jump
#         8 '#' 9 '5' 10 "'"  11 '#' 12 '7' 13 "'"
@pytest.mark.parametrize(
    "program, expected",
    [
        (b"#1'#11'y#5'#7'", [I(7)]),
        (b"#0'#11'y#5'#7'", [I(5), I(7)]),
        (b"#0'#11'z#5'#7'", [I(7)]),
        (b"#1'#11'z#5'#7'", [I(5), I(7)]),
        (b'#0"#11\'z#5\'#7\'', [I(7)]),
        (b'#3"#11\'y#5\'#7\'', [I(7)]),
    ],
)
def test_conditional_jumps(program, expected):
    assert run(program).values() == expected


def test_conditional_jump_checks_underflow_before_type():
    error = fault(b'#1"y')
    assert error.kind == ERR_STACK_UNDERFLOW

    error = fault(b'#1\'#1"z')
    assert error.kind == ERR_TYPE_MISMATCH
    assert error.pc == 7


def test_faults_carry_pc_after_opcode():
    error = fault(b"+")
    assert error.kind == ERR_STACK_UNDERFLOW
    assert error.pc == 1

    error = fault(b"#1'#2\"+")
    assert error.kind == ERR_TYPE_MISMATCH
    assert error.pc == 7
    assert error.rule == "ADD"


@pytest.mark.parametrize("op", [b"/", b"%"])
def test_int_division_by_zero_faults_the_same_way(op):
    error = fault(b"#1'#0'" + op)
    assert error.kind == ERR_DIVISION_BY_ZERO
    assert error.pc == 7


def test_debug_opcode_writes_to_sink():
    out = []
    run(b"#4'p#5.\"p", output_sink=out.append)
    assert out == ["Int:4", "Float:0.005"]

    error = fault(b"p", output_sink=out.append)
    assert error.kind == ERR_STACK_UNDERFLOW


def test_stack_opcodes():
    assert run(b"#1'#2'sd").values() == [I(2), I(1), I(1)]
    assert run(b"#1'#2'v").values() == [I(1), I(2), I(1)]
    assert run(b"#1'#2'r").values() == [I(1)]
    assert run(b"#7'f").values() == [F(7.0)]
    assert run(b'#2500."i').values() == [I(2)]


def test_start_offset_and_seeded_stack():
    assert run(b"#1'#2'", pc=3).values() == [I(2)]

    stack = OperandStack([I(2), I(3)])
    result = run(b"*", stack)
    assert result is stack
    assert stack.values() == [I(6)]


def test_start_offset_past_end_is_empty_run():
    assert run(b"#1'", pc=10).values() == []


def test_explicit_extension_handles_unknown_opcodes():
    table = OpcodeTable()
    table.register(ord("Q"), lambda op, stack: stack.push(Value(TYPE_INT, stack.pop().value * 2)))
    assert run(b"#4'Q", extension=table).values() == [I(8)]


def test_unexpected_extension_exception_becomes_internal_error():
    table = OpcodeTable()

    def broken(op, stack):
        raise KeyError("boom")

    table.register(ord("Q"), broken)
    error = fault(b"  Q", extension=table)
    assert error.kind == ERR_INTERNAL
    assert error.pc == 3
    assert isinstance(error.__cause__, KeyError)


def test_hooks_see_start_end_and_errors():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="recorder")
    seen = []
    ext.on_event("program_start", lambda interp, program: seen.append(("start", program)))
    ext.on_event("program_end", lambda interp, stack: seen.append(("end", len(stack))))
    ext.on_event("on_error", lambda interp, error: seen.append(("error", error.kind)))

    interpreter = Interpreter(services=services)
    interpreter.run(b"#1'")
    with pytest.raises(VMRuntimeError):
        interpreter.run(b"r")
    assert seen == [
        ("start", b"#1'"),
        ("end", 1),
        ("start", b"r"),
        ("error", ERR_STACK_UNDERFLOW),
    ]


def test_step_rules_run_every_n_steps():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="recorder")
    ticks = []

    @ext.every_n_steps(2)
    def tick(interp, ctx):
        ticks.append((ctx.step_index, ctx.rule))

    Interpreter(services=services).run(b"#1'd")
    assert ticks == [(0, "RESET"), (2, "PUSH_INT")]


def test_failing_hook_is_reported_at_current_pc():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="recorder")

    @ext.every_n_steps(3)
    def explode(interp, ctx):
        if ctx.step_index:
            raise RuntimeError("nope")

    with pytest.raises(VMRuntimeError) as exc:
        Interpreter(services=services).run(b"#1'#2'")
    assert exc.value.kind == ERR_INTERNAL
    assert exc.value.pc == 4


def test_traceback_formatter_text_and_json():
    interpreter = Interpreter(verbose=True)
    with pytest.raises(VMRuntimeError) as exc:
        interpreter.run(b"#4'c#1\"c")
    error = exc.value
    assert error.step_index == 7

    formatter = TracebackFormatter(interpreter)
    text = formatter.format_text(error, verbose=True)
    assert "Type Mismatch" in text
    assert "pc=0008" in text
    assert "rule: CALL" in text
    assert "Return stack: 4" in text
    assert "Float:1.0" in text

    data = json.loads(formatter.to_json(error))
    assert data["error"]["kind"] == ERR_TYPE_MISMATCH
    assert data["error"]["pc"] == 8
    assert data["return_stack"] == [4]
    assert data["steps"][-1]["rule"] == "CALL"


def test_negative_start_offset_is_rejected():
    with pytest.raises(ValueError):
        run(b"#1'", pc=-1)


def test_failing_error_hook_keeps_the_original_fault():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="recorder")

    @ext.on_event("on_error")
    def broken(interp, error):
        raise RuntimeError("hook broke")

    with pytest.raises(VMRuntimeError) as exc:
        Interpreter(services=services).run(b"#1'rr")
    assert exc.value.kind == ERR_STACK_UNDERFLOW
    assert exc.value.pc == 5
    assert isinstance(exc.value.__context__, RuntimeError)


def test_failing_end_hook_is_reported_to_error_hooks():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_name="recorder")
    seen = []

    @ext.on_event("program_end")
    def broken(interp, stack):
        raise RuntimeError("nope")

    ext.on_event("on_error", lambda interp, error: seen.append(error.kind))

    with pytest.raises(VMRuntimeError) as exc:
        Interpreter(services=services).run(b"#1'")
    assert exc.value.kind == ERR_INTERNAL
    assert exc.value.pc == 3
    assert exc.value.step_index == 2
    assert seen == [ERR_INTERNAL]
