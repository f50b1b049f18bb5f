from __future__ import annotations
import math
from typing import Iterable, Iterator, List, Optional

import numpy as np

from values import (
    ERR_DIVISION_BY_ZERO,
    ERR_STACK_UNDERFLOW,
    INT64_MAX,
    INT64_MIN,
    TYPE_FLT,
    TYPE_INT,
    Pair,
    Value,
    VMRuntimeError,
    unknown_tag,
    wrap_int,
)


def _trunc_div(y: int, x: int) -> int:
    if x == 0:
        raise VMRuntimeError(ERR_DIVISION_BY_ZERO)
    q = abs(y) // abs(x)
    return q if (y < 0) == (x < 0) else -q


def _trunc_mod(y: int, x: int) -> int:
    if x == 0:
        raise VMRuntimeError(ERR_DIVISION_BY_ZERO)
    # Remainder carries the sign of the dividend.
    return y - x * _trunc_div(y, x)


def _float_div(y: float, x: float) -> float:
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        return float(np.divide(np.float64(y), np.float64(x)))


def _float_mod(y: float, x: float) -> float:
    with np.errstate(divide="ignore", invalid="ignore"):
        return float(np.fmod(np.float64(y), np.float64(x)))


def _float_to_int(x: float) -> int:
    # Truncate toward zero, saturating at the 64-bit bounds; NaN maps to 0.
    if math.isnan(x):
        return 0
    if x >= 9.2233720368547758e18:
        return INT64_MAX
    if x <= -9.2233720368547758e18:
        return INT64_MIN
    return int(x)


class OperandStack:
    def __init__(self, values: Optional[Iterable[Value]] = None) -> None:
        self._items: List[Value] = list(values) if values is not None else []

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Value]:
        # bottom to top
        return iter(self._items)

    def __repr__(self) -> str:
        inner = " ".join(v.describe() for v in self._items)
        return f"<OperandStack [{inner}]>"

    def values(self) -> List[Value]:
        return list(self._items)

    def clear(self) -> None:
        self._items.clear()

    def peek(self) -> Value:
        if not self._items:
            raise VMRuntimeError(ERR_STACK_UNDERFLOW)
        return self._items[-1]

    def push(self, value: Value) -> None:
        self._items.append(value)

    def pop(self) -> Value:
        if not self._items:
            raise VMRuntimeError(ERR_STACK_UNDERFLOW)
        return self._items.pop()

    def pop_two(self) -> Pair:
        x = self.pop()
        y = self.pop()
        return Pair.of(x, y)

    def dup(self) -> None:
        value = self.pop()
        self.push(value)
        self.push(value)

    def swap(self) -> None:
        x = self.pop()
        y = self.pop()
        self.push(x)
        self.push(y)

    def over(self) -> None:
        x = self.pop()
        y = self.pop()
        self.push(y)
        self.push(x)
        self.push(y)

    def cast_to_int(self) -> None:
        value = self.pop()
        if value.type == TYPE_INT:
            self.push(value)
        elif value.type == TYPE_FLT:
            self.push(Value(TYPE_INT, _float_to_int(value.value)))
        else:
            raise unknown_tag(value.type)

    def cast_to_float(self) -> None:
        value = self.pop()
        if value.type == TYPE_INT:
            self.push(Value(TYPE_FLT, float(value.value)))
        elif value.type == TYPE_FLT:
            self.push(value)
        else:
            raise unknown_tag(value.type)

    # Arithmetic. For a pair (x, y), x was on top and y beneath it, so the
    # non-commutative operators compute ``y OP x``.

    def add(self) -> None:
        p = self.pop_two()
        if p.type == TYPE_INT:
            self.push(Value(TYPE_INT, wrap_int(p.x + p.y)))
        elif p.type == TYPE_FLT:
            self.push(Value(TYPE_FLT, p.x + p.y))
        else:
            raise unknown_tag(p.type)

    def sub(self) -> None:
        p = self.pop_two()
        if p.type == TYPE_INT:
            self.push(Value(TYPE_INT, wrap_int(p.y - p.x)))
        elif p.type == TYPE_FLT:
            self.push(Value(TYPE_FLT, p.y - p.x))
        else:
            raise unknown_tag(p.type)

    def mul(self) -> None:
        p = self.pop_two()
        if p.type == TYPE_INT:
            self.push(Value(TYPE_INT, wrap_int(p.x * p.y)))
        elif p.type == TYPE_FLT:
            self.push(Value(TYPE_FLT, p.x * p.y))
        else:
            raise unknown_tag(p.type)

    def div(self) -> None:
        p = self.pop_two()
        if p.type == TYPE_INT:
            self.push(Value(TYPE_INT, wrap_int(_trunc_div(p.y, p.x))))
        elif p.type == TYPE_FLT:
            self.push(Value(TYPE_FLT, _float_div(p.y, p.x)))
        else:
            raise unknown_tag(p.type)

    def modulus(self) -> None:
        p = self.pop_two()
        if p.type == TYPE_INT:
            self.push(Value(TYPE_INT, wrap_int(_trunc_mod(p.y, p.x))))
        elif p.type == TYPE_FLT:
            self.push(Value(TYPE_FLT, _float_mod(p.y, p.x)))
        else:
            raise unknown_tag(p.type)
