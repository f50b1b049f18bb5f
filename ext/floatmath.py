"""forthvm extension: floating-point math.

All opcodes take and return Float values and follow IEEE 754, so a square
root of a negative number gives NaN rather than a fault.
"""

from __future__ import annotations

from typing import Any, Callable

import numpy as np

from extensions import ExtensionAPI

FORTHVM_EXTENSION_NAME = "floatmath"
FORTHVM_EXTENSION_API_VERSION = 1


def _expect_flt(value: Any) -> float:
    from values import ERR_TYPE_MISMATCH, TYPE_FLT, VMRuntimeError

    if getattr(value, "type", None) != TYPE_FLT:
        raise VMRuntimeError(ERR_TYPE_MISMATCH)
    return float(value.value)


def _push_flt(stack, x: Any) -> None:
    from values import Value

    stack.push(Value.from_float(float(x)))


def _unary(fn: Callable[[np.float64], Any]):
    def impl(_op: int, stack) -> None:
        x = _expect_flt(stack.pop())
        with np.errstate(all="ignore"):
            _push_flt(stack, fn(np.float64(x)))

    return impl


def _binary(fn: Callable[[np.float64, np.float64], Any]):
    # Left operand is the second-from-top value.
    def impl(_op: int, stack) -> None:
        from values import ERR_TYPE_MISMATCH, TYPE_FLT, VMRuntimeError

        pair = stack.pop_two()
        if pair.type != TYPE_FLT:
            raise VMRuntimeError(ERR_TYPE_MISMATCH)
        with np.errstate(all="ignore"):
            _push_flt(stack, fn(np.float64(pair.y), np.float64(pair.x)))

    return impl


def forthvm_register(ext: ExtensionAPI) -> None:
    ext.metadata(name="floatmath", version="0.1.0")
    ext.register_opcode("q", _unary(np.sqrt), doc="x q -> sqrt(x)")
    ext.register_opcode("a", _unary(np.abs), doc="x a -> |x|")
    ext.register_opcode("n", _unary(np.negative), doc="x n -> -x")
    ext.register_opcode("e", _unary(np.exp), doc="x e -> exp(x)")
    ext.register_opcode("l", _unary(np.log), doc="x l -> ln(x)")
    ext.register_opcode("m", _binary(np.fmin), doc="y x m -> min(y, x)")
    ext.register_opcode("x", _binary(np.fmax), doc="y x x -> max(y, x)")
    ext.register_opcode("w", _binary(np.power), doc="y x w -> y ** x")
