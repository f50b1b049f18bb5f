from __future__ import annotations
from typing import Any, Iterable, List

import numpy as np
from numpy.typing import NDArray

from values import ERR_MEMORY_FAULT, TYPE_FLT, TYPE_INT, Value, VMRuntimeError


class Memory:
    """Fixed-length array of Values shared between a host and its runs.

    Cells are stored in a numpy object array. Addresses wrap modulo the
    length using the floored remainder, so negative addresses count back
    from the end.
    """

    def __init__(self, data: NDArray[Any]) -> None:
        if data.ndim != 1:
            raise ValueError("Memory must be one-dimensional")
        self.data = data

    @classmethod
    def zeros(cls, size: int, type: str = TYPE_INT) -> "Memory":
        if size < 0:
            raise ValueError("Memory size must be non-negative")
        if type == TYPE_INT:
            fill = Value(TYPE_INT, 0)
        elif type == TYPE_FLT:
            fill = Value(TYPE_FLT, 0.0)
        else:
            raise ValueError(f"Unknown value type '{type}'")
        data = np.empty(size, dtype=object)
        data.fill(fill)
        return cls(data)

    @classmethod
    def from_values(cls, values: Iterable[Value]) -> "Memory":
        items = list(values)
        data = np.empty(len(items), dtype=object)
        for i, v in enumerate(items):
            data[i] = v
        return cls(data)

    def __len__(self) -> int:
        return int(self.data.shape[0])

    def __getitem__(self, index: int) -> Value:
        return self.data[index]

    def index_for(self, address: int) -> int:
        size = len(self)
        if size == 0:
            raise VMRuntimeError(ERR_MEMORY_FAULT, "Memory Fault: memory is empty")
        return address % size

    def read(self, address: int) -> Value:
        return self.data[self.index_for(address)]

    def write(self, address: int, value: Value) -> None:
        self.data[self.index_for(address)] = value

    def fill(self, value: Value) -> None:
        self.data.fill(value)

    def values(self) -> List[Value]:
        return list(self.data.tolist())
