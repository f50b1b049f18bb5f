"""forthvm extension: bitwise operators on Int values.

Opcodes (second-from-top is the left operand, as with '-' and '/'):

    &  and        |  or        ^  xor
    ~  invert     <  shift left        >  arithmetic shift right
"""

from __future__ import annotations

from typing import Tuple

from extensions import ExtensionAPI

FORTHVM_EXTENSION_NAME = "bitwise"
FORTHVM_EXTENSION_API_VERSION = 1


def _pop_ints(stack) -> Tuple[int, int]:
    from values import ERR_TYPE_MISMATCH, TYPE_INT, VMRuntimeError

    pair = stack.pop_two()
    if pair.type != TYPE_INT:
        raise VMRuntimeError(ERR_TYPE_MISMATCH)
    return pair.x, pair.y


def _push_int(stack, n: int) -> None:
    from values import Value

    stack.push(Value.from_int(n))


def _and(_op: int, stack) -> None:
    x, y = _pop_ints(stack)
    _push_int(stack, y & x)


def _or(_op: int, stack) -> None:
    x, y = _pop_ints(stack)
    _push_int(stack, y | x)


def _xor(_op: int, stack) -> None:
    x, y = _pop_ints(stack)
    _push_int(stack, y ^ x)


def _invert(_op: int, stack) -> None:
    from values import ERR_TYPE_MISMATCH, TYPE_INT, VMRuntimeError

    value = stack.pop()
    if value.type != TYPE_INT:
        raise VMRuntimeError(ERR_TYPE_MISMATCH)
    _push_int(stack, ~value.value)


def _shift_amount(x: int) -> int:
    # Shift counts use the low six bits.
    return x & 63


def _shl(_op: int, stack) -> None:
    x, y = _pop_ints(stack)
    _push_int(stack, y << _shift_amount(x))


def _shr(_op: int, stack) -> None:
    x, y = _pop_ints(stack)
    _push_int(stack, y >> _shift_amount(x))


def forthvm_register(ext: ExtensionAPI) -> None:
    ext.metadata(name="bitwise", version="0.1.0")
    ext.register_opcode("&", _and, doc="y x & -> y AND x")
    ext.register_opcode("|", _or, doc="y x | -> y OR x")
    ext.register_opcode("^", _xor, doc="y x ^ -> y XOR x")
    ext.register_opcode("~", _invert, doc="x ~ -> NOT x")
    ext.register_opcode("<", _shl, doc="y x < -> y << x")
    ext.register_opcode(">", _shr, doc="y x > -> y >> x")
