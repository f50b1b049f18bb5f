import pytest

from interpreter import Interpreter, run
from memory import Memory
from stack import OperandStack
from values import ERR_MEMORY_FAULT, ERR_TYPE_MISMATCH, TYPE_FLT, TYPE_INT, Value, VMRuntimeError


def I(n):
    return Value(TYPE_INT, n)


def F(x):
    return Value(TYPE_FLT, x)


def test_write_then_read_wraps_addresses():
    memory = Memory.zeros(4)
    stack = run(b"#42'#7'!#3'@", memory=memory)
    assert stack.values() == [I(42)]
    assert memory[3] == I(42)
    assert memory.values() == [I(0), I(0), I(0), I(42)]


def test_write_takes_value_from_beneath_address():
    memory = Memory.zeros(2)
    stack = OperandStack([I(99)])
    run(b"#5.\"#1's", stack, memory=memory)
    # '!' takes the top of stack, now the float, as its address
    with pytest.raises(VMRuntimeError) as exc:
        run(b"!", stack, memory=memory)
    assert exc.value.kind == ERR_TYPE_MISMATCH

    run(b"#7'#0'!", memory=memory)
    assert memory[0] == I(7)


def test_write_overwrites_tag():
    memory = Memory.zeros(1)
    run(b"#5'#0'!", memory=memory)
    run(b'#5"#0\'!', memory=memory)
    assert memory[0] == F(5.0)


def test_negative_address_counts_from_end():
    memory = Memory.from_values([I(1), I(2), I(3)])
    assert run(b"#1$'@", memory=memory).values() == [I(3)]


def test_read_with_float_address_is_type_mismatch():
    with pytest.raises(VMRuntimeError) as exc:
        run(b'#1"@', memory=Memory.zeros(4))
    assert exc.value.kind == ERR_TYPE_MISMATCH
    assert exc.value.rule == "READ"


@pytest.mark.parametrize("memory", [None, Memory.zeros(0)])
def test_missing_or_empty_memory_faults(memory):
    with pytest.raises(VMRuntimeError) as exc:
        run(b"#0'@", memory=memory)
    assert exc.value.kind == ERR_MEMORY_FAULT
    assert exc.value.pc == 4


def test_memory_persists_across_runs():
    interpreter = Interpreter()
    memory = Memory.zeros(8)
    interpreter.run(b"#12'#3'!", memory=memory)
    stack = interpreter.run(b"#3'@#3'@+", memory=memory)
    assert stack.values() == [I(24)]


def test_memory_helpers():
    memory = Memory.zeros(3, type=TYPE_FLT)
    assert len(memory) == 3
    assert memory.values() == [F(0.0)] * 3

    memory.write(4, I(8))
    assert memory.read(1) == I(8)

    memory.fill(I(-1))
    assert memory.values() == [I(-1)] * 3

    with pytest.raises(ValueError):
        Memory.zeros(-1)
