from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Optional, Union


TYPE_INT = "INT"
TYPE_FLT = "FLT"

INT64_MIN = -(1 << 63)
INT64_MAX = (1 << 63) - 1

# Error kinds
ERR_STACK_UNDERFLOW = "StackUnderflow"
ERR_TYPE_MISMATCH = "TypeMismatch"
ERR_INVALID_INSTRUCTION = "InvalidInstruction"
ERR_RETURN_UNDERFLOW = "ReturnStackUnderflow"
ERR_DIVISION_BY_ZERO = "DivisionByZero"
ERR_MEMORY_FAULT = "MemoryFault"
ERR_INTERNAL = "InternalError"

ERROR_MESSAGES = {
    ERR_STACK_UNDERFLOW: "Stack Underflow",
    ERR_TYPE_MISMATCH: "Type Mismatch",
    ERR_INVALID_INSTRUCTION: "Invalid Instruction",
    ERR_RETURN_UNDERFLOW: "Return Without Call",
    ERR_DIVISION_BY_ZERO: "Division By Zero",
    ERR_MEMORY_FAULT: "Memory Fault",
    ERR_INTERNAL: "Internal Error",
}


class VMError(Exception):
    """Base class for virtual machine errors."""


class VMRuntimeError(VMError):
    """Raised for faults while executing a program.

    Stack and extension code raise it with only a kind; the interpreter loop
    fills in ``pc`` (the offset just past the faulting opcode), ``opcode``
    and ``rule`` before the error reaches the host.
    """

    def __init__(
        self,
        kind: str,
        message: Optional[str] = None,
        *,
        pc: Optional[int] = None,
        opcode: Optional[int] = None,
        rule: Optional[str] = None,
    ) -> None:
        if kind not in ERROR_MESSAGES:
            raise ValueError(f"Unknown error kind '{kind}'")
        text = message or ERROR_MESSAGES[kind]
        super().__init__(text)
        self.kind = kind
        self.message = text
        self.pc = pc
        self.opcode = opcode
        self.rule = rule
        self.step_index: Optional[int] = None

    def __str__(self) -> str:
        if self.pc is None:
            return self.message
        return f"{self.message} at pc={self.pc}"


class VMExtensionError(VMError):
    pass


class VMLoadError(VMError):
    pass


def wrap_int(n: int) -> int:
    """Reduce ``n`` to the signed 64-bit range (two's complement)."""
    n &= 0xFFFFFFFFFFFFFFFF
    if n > INT64_MAX:
        n -= 1 << 64
    return n


@dataclass(frozen=True)
class Value:
    type: str
    value: Union[int, float]

    @classmethod
    def from_int(cls, n: int) -> "Value":
        return cls(TYPE_INT, wrap_int(int(n)))

    @classmethod
    def from_float(cls, x: float) -> "Value":
        return cls(TYPE_FLT, float(x))

    def is_zero(self) -> bool:
        if self.type == TYPE_INT:
            return self.value == 0
        if self.type == TYPE_FLT:
            return self.value == 0.0
        raise unknown_tag(self.type)

    def describe(self) -> str:
        if self.type == TYPE_INT:
            return f"Int:{self.value}"
        if self.type == TYPE_FLT:
            return f"Float:{self.value}"
        raise unknown_tag(self.type)


@dataclass(frozen=True)
class Pair:
    type: str
    x: Any
    y: Any

    @classmethod
    def of(cls, x: Value, y: Value) -> "Pair":
        # x is the value popped first (top of stack), y the one beneath it.
        if x.type != y.type:
            raise VMRuntimeError(ERR_TYPE_MISMATCH)
        if x.type not in (TYPE_INT, TYPE_FLT):
            raise unknown_tag(x.type)
        return cls(x.type, x.value, y.value)


def unknown_tag(tag: str) -> VMRuntimeError:
    return VMRuntimeError(ERR_INTERNAL, f"Unhandled value type '{tag}'")


def show_opcode(opcode: int) -> str:
    if 33 <= opcode < 127:
        return f"'{chr(opcode)}'"
    return f"0x{opcode:02x}"


def parse_value(text: str) -> Value:
    """Parse ``3`` as an Int and ``2.5`` / ``1e3`` as a Float."""
    raw = text.strip()
    try:
        return Value.from_int(int(raw, 10))
    except ValueError:
        pass
    try:
        return Value.from_float(float(raw))
    except ValueError:
        raise VMError(f"Not a number: {text!r}")
