from __future__ import annotations
import json
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from extensions import Extension, HookRegistry, RuntimeServices, StepContext, build_default_services
from memory import Memory
from stack import OperandStack
from values import (
    ERR_INTERNAL,
    ERR_MEMORY_FAULT,
    ERR_RETURN_UNDERFLOW,
    ERR_TYPE_MISMATCH,
    TYPE_FLT,
    TYPE_INT,
    Value,
    VMRuntimeError,
    show_opcode,
    unknown_tag,
    wrap_int,
)


# byte -> (rule, handler method)
OPCODES: Dict[int, Tuple[str, str]] = {
    10: ("NOP", "_op_nop"),   # line feed
    13: ("NOP", "_op_nop"),   # carriage return
    32: ("NOP", "_op_nop"),   # space; tabs are not whitespace
    ord("!"): ("WRITE", "_op_write"),
    ord('"'): ("PUSH_FLT", "_op_push_float"),
    ord("#"): ("RESET", "_op_reset"),
    ord("$"): ("NEGATE", "_op_negate"),
    ord("%"): ("MOD", "_op_mod"),
    ord("'"): ("PUSH_INT", "_op_push_int"),
    ord("*"): ("MUL", "_op_mul"),
    ord("+"): ("ADD", "_op_add"),
    ord("-"): ("SUB", "_op_sub"),
    ord("."): ("SCALE", "_op_scale"),
    ord("/"): ("DIV", "_op_div"),
    ord(";"): ("RETURN", "_op_return"),
    ord("@"): ("READ", "_op_read"),
    ord("b"): ("BRANCH", "_op_branch"),
    ord("c"): ("CALL", "_op_call"),
    ord("d"): ("DUP", "_op_dup"),
    ord("f"): ("CAST_FLT", "_op_cast_float"),
    ord("i"): ("CAST_INT", "_op_cast_int"),
    ord("p"): ("DEBUG", "_op_debug"),
    ord("r"): ("DROP", "_op_drop"),
    ord("s"): ("SWAP", "_op_swap"),
    ord("v"): ("OVER", "_op_over"),
    ord("y"): ("JNZ", "_op_jump_nonzero"),
    ord("z"): ("JZ", "_op_jump_zero"),
}
for _digit in range(ord("0"), ord("9") + 1):
    OPCODES[_digit] = ("DIGIT", "_op_digit")
del _digit

BUILTIN_OPCODES = frozenset(OPCODES)

ADDRESS_MASK = 0xFFFFFFFFFFFFFFFF


def rule_for(opcode: int) -> str:
    entry = OPCODES.get(opcode)
    return entry[0] if entry else "EXT"


@dataclass
class LiteralAccumulator:
    value: int = 0
    divider: float = 1.0

    def reset(self) -> None:
        self.value = 0
        self.divider = 1.0

    def digit(self, d: int) -> None:
        self.value = wrap_int(self.value * 10 + d)

    def negate(self) -> None:
        self.value = wrap_int(-self.value)

    def scale(self) -> None:
        self.divider *= 1000.0

    def as_int(self) -> Value:
        return Value(TYPE_INT, self.value)

    def as_float(self) -> Value:
        return Value(TYPE_FLT, float(self.value) / self.divider)


@dataclass
class RunContext:
    """Per-run state; built fresh by every call to ``Interpreter.run``."""

    program: bytes
    stack: OperandStack
    pc: int
    memory: Optional[Memory]
    return_stack: List[int] = field(default_factory=list)
    literal: LiteralAccumulator = field(default_factory=LiteralAccumulator)
    halted: bool = False
    steps: int = 0


@dataclass
class StepEntry:
    step_index: int
    pc: int
    opcode: int
    rule: str
    stack_depth: int
    stack_snapshot: Optional[List[str]]


class StepLogger:
    def __init__(self, verbose: bool, limit: Optional[int] = 10000) -> None:
        self.verbose = verbose
        self.entries: Deque[StepEntry] = deque(maxlen=limit)

    def record(self, *, step_index: int, pc: int, opcode: int, rule: str, stack: OperandStack) -> StepEntry:
        snapshot = [v.describe() for v in stack] if self.verbose else None
        entry = StepEntry(
            step_index=step_index,
            pc=pc,
            opcode=opcode,
            rule=rule,
            stack_depth=len(stack),
            stack_snapshot=snapshot,
        )
        self.entries.append(entry)
        return entry

    def clear(self) -> None:
        self.entries.clear()


class Interpreter:
    def __init__(
        self,
        *,
        services: Optional[RuntimeServices] = None,
        extension: Optional[Extension] = None,
        output_sink: Optional[Callable[[str], None]] = None,
        strict_return: bool = False,
        trace: bool = False,
        verbose: bool = False,
    ) -> None:
        self.services = services or build_default_services()
        self.hook_registry: HookRegistry = self.services.hook_registry
        # Host opcodes live in the services table; an explicit extension
        # replaces it.
        self.extension: Extension = extension if extension is not None else self.services.opcodes
        self.output_sink = output_sink or (lambda text: print(text))
        self.strict_return = strict_return
        self.trace = trace or verbose
        self.logger = StepLogger(verbose=verbose)
        self.context: Optional[RunContext] = None
        self._handlers: Dict[int, Callable[[RunContext, int], None]] = {
            opcode: getattr(self, method) for opcode, (_rule, method) in OPCODES.items()
        }

    def run(
        self,
        program: bytes,
        stack: Optional[OperandStack] = None,
        pc: int = 0,
        memory: Optional[Memory] = None,
    ) -> OperandStack:
        if pc < 0:
            raise ValueError("Start offset must be non-negative")
        if stack is None:
            stack = OperandStack()
        ctx = RunContext(program=bytes(program), stack=stack, pc=pc, memory=memory)
        self.context = ctx
        self.logger.clear()
        try:
            self._emit_event("program_start", self, ctx.program)
            self._execute(ctx)
            self._emit_event("program_end", self, stack)
        except VMRuntimeError as error:
            error.step_index = ctx.steps - 1 if ctx.steps else None
            try:
                self.hook_registry.emit("on_error", self, error)
            except Exception:
                # The fault being reported wins; the hook failure is its __context__.
                raise error
            raise
        return stack

    def _execute(self, ctx: RunContext) -> None:
        code = ctx.program
        n = len(code)
        handlers = self._handlers
        log_step = self.trace or self.hook_registry.has_step_rules()

        while ctx.pc < n and not ctx.halted:
            opcode = code[ctx.pc]
            ctx.pc += 1
            try:
                if log_step:
                    self._log_step(ctx, opcode)
                ctx.steps += 1
                handler = handlers.get(opcode)
                if handler is None:
                    self.extension.execute(opcode, ctx.stack)
                else:
                    handler(ctx, opcode)
            except VMRuntimeError as error:
                if error.pc is None:
                    error.pc = ctx.pc
                if error.opcode is None:
                    error.opcode = opcode
                    error.rule = rule_for(opcode)
                raise
            except Exception as exc:
                raise VMRuntimeError(
                    ERR_INTERNAL,
                    f"Internal error: {exc}",
                    pc=ctx.pc,
                    opcode=opcode,
                    rule=rule_for(opcode),
                ) from exc

    def _emit_event(self, event: str, *args: Any) -> None:
        try:
            self.hook_registry.emit(event, *args)
        except VMRuntimeError:
            raise
        except Exception as exc:
            pc = self.context.pc if self.context else None
            raise VMRuntimeError(ERR_INTERNAL, f"Extension hook '{event}' failed: {exc}", pc=pc, rule="EXT") from exc

    def _log_step(self, ctx: RunContext, opcode: int) -> None:
        rule = rule_for(opcode)
        if self.trace:
            self.logger.record(step_index=ctx.steps, pc=ctx.pc - 1, opcode=opcode, rule=rule, stack=ctx.stack)
        self.hook_registry.after_step(
            self,
            StepContext(step_index=ctx.steps, pc=ctx.pc - 1, opcode=opcode, rule=rule),
        )

    # ---- helpers ----

    def _pop_int(self, ctx: RunContext) -> int:
        value = ctx.stack.pop()
        if value.type == TYPE_FLT:
            raise VMRuntimeError(ERR_TYPE_MISMATCH)
        if value.type != TYPE_INT:
            raise unknown_tag(value.type)
        return int(value.value)

    def _memory(self, ctx: RunContext) -> Memory:
        if ctx.memory is None:
            raise VMRuntimeError(ERR_MEMORY_FAULT, "Memory Fault: no memory attached")
        return ctx.memory

    def _conditional_jump(self, ctx: RunContext, when_zero: bool) -> None:
        # Both operands are popped before the address type is checked.
        address = ctx.stack.pop()
        data = ctx.stack.pop()
        if address.type == TYPE_FLT:
            raise VMRuntimeError(ERR_TYPE_MISMATCH)
        if address.type != TYPE_INT:
            raise unknown_tag(address.type)
        if data.is_zero() == when_zero:
            ctx.pc = int(address.value) & ADDRESS_MASK

    # ---- opcodes ----

    def _op_nop(self, ctx: RunContext, opcode: int) -> None:
        pass

    def _op_reset(self, ctx: RunContext, opcode: int) -> None:
        ctx.literal.reset()

    def _op_digit(self, ctx: RunContext, opcode: int) -> None:
        ctx.literal.digit(opcode - ord("0"))

    def _op_negate(self, ctx: RunContext, opcode: int) -> None:
        ctx.literal.negate()

    def _op_scale(self, ctx: RunContext, opcode: int) -> None:
        ctx.literal.scale()

    def _op_push_int(self, ctx: RunContext, opcode: int) -> None:
        ctx.stack.push(ctx.literal.as_int())

    def _op_push_float(self, ctx: RunContext, opcode: int) -> None:
        ctx.stack.push(ctx.literal.as_float())

    def _op_add(self, ctx: RunContext, opcode: int) -> None:
        ctx.stack.add()

    def _op_sub(self, ctx: RunContext, opcode: int) -> None:
        ctx.stack.sub()

    def _op_mul(self, ctx: RunContext, opcode: int) -> None:
        ctx.stack.mul()

    def _op_div(self, ctx: RunContext, opcode: int) -> None:
        ctx.stack.div()

    def _op_mod(self, ctx: RunContext, opcode: int) -> None:
        ctx.stack.modulus()

    def _op_dup(self, ctx: RunContext, opcode: int) -> None:
        ctx.stack.dup()

    def _op_drop(self, ctx: RunContext, opcode: int) -> None:
        ctx.stack.pop()

    def _op_swap(self, ctx: RunContext, opcode: int) -> None:
        ctx.stack.swap()

    def _op_over(self, ctx: RunContext, opcode: int) -> None:
        ctx.stack.over()

    def _op_cast_int(self, ctx: RunContext, opcode: int) -> None:
        ctx.stack.cast_to_int()

    def _op_cast_float(self, ctx: RunContext, opcode: int) -> None:
        ctx.stack.cast_to_float()

    def _op_debug(self, ctx: RunContext, opcode: int) -> None:
        value = ctx.stack.pop()
        self.output_sink(value.describe())

    def _op_call(self, ctx: RunContext, opcode: int) -> None:
        address = self._pop_int(ctx)
        ctx.return_stack.append(ctx.pc)
        ctx.pc = address & ADDRESS_MASK

    def _op_branch(self, ctx: RunContext, opcode: int) -> None:
        ctx.pc = self._pop_int(ctx) & ADDRESS_MASK

    def _op_return(self, ctx: RunContext, opcode: int) -> None:
        if ctx.return_stack:
            ctx.pc = ctx.return_stack.pop()
            return
        if self.strict_return:
            raise VMRuntimeError(ERR_RETURN_UNDERFLOW)
        # An unmatched return is the program's exit.
        ctx.halted = True

    def _op_jump_nonzero(self, ctx: RunContext, opcode: int) -> None:
        self._conditional_jump(ctx, when_zero=False)

    def _op_jump_zero(self, ctx: RunContext, opcode: int) -> None:
        self._conditional_jump(ctx, when_zero=True)

    def _op_read(self, ctx: RunContext, opcode: int) -> None:
        address = self._pop_int(ctx)
        ctx.stack.push(self._memory(ctx).read(address))

    def _op_write(self, ctx: RunContext, opcode: int) -> None:
        address = self._pop_int(ctx)
        value = ctx.stack.pop()
        self._memory(ctx).write(address, value)


def run(
    program: bytes,
    stack: Optional[OperandStack] = None,
    pc: int = 0,
    extension: Optional[Extension] = None,
    memory: Optional[Memory] = None,
    *,
    strict_return: bool = False,
    output_sink: Optional[Callable[[str], None]] = None,
) -> OperandStack:
    """Execute ``program`` from ``pc`` until it runs off the end.

    ``stack`` and ``memory`` are mutated in place so the caller can read
    results back. Faults raise ``VMRuntimeError`` whose ``kind`` names the
    error and whose ``pc`` is the offset just past the faulting opcode.
    """
    interpreter = Interpreter(extension=extension, output_sink=output_sink, strict_return=strict_return)
    return interpreter.run(program, stack, pc=pc, memory=memory)


@dataclass
class TracebackStep:
    step_index: int
    pc: int
    opcode: str
    rule: str
    stack_depth: int
    stack_snapshot: Optional[List[str]]


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter, limit: int = 10) -> None:
        self.interpreter = interpreter
        self.limit = limit

    def build_steps(self) -> List[TracebackStep]:
        entries = list(self.interpreter.logger.entries)[-self.limit:]
        return [
            TracebackStep(
                step_index=e.step_index,
                pc=e.pc,
                opcode=show_opcode(e.opcode),
                rule=e.rule,
                stack_depth=e.stack_depth,
                stack_snapshot=e.stack_snapshot,
            )
            for e in entries
        ]

    def _return_stack(self) -> List[int]:
        ctx = self.interpreter.context
        return list(ctx.return_stack) if ctx else []

    def format_text(self, error: VMRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent step last):"]
        steps = self.build_steps()
        if not steps:
            lines.append("  <no step log; run with -verbose to record steps>")
        for step in steps:
            lines.append(f"  step {step.step_index}: pc={step.pc:04d} op {step.opcode} {step.rule} (depth {step.stack_depth})")
            if verbose and step.stack_snapshot is not None:
                lines.append(f"    Stack: {' '.join(step.stack_snapshot) or '<empty>'}")
        rstack = self._return_stack()
        if rstack:
            lines.append(f"  Return stack: {', '.join(str(a) for a in rstack)}")
        where = f"pc={error.pc:04d}" if error.pc is not None else "pc=?"
        if error.opcode is not None:
            where += f", opcode {show_opcode(error.opcode)}"
        rule = error.rule or "runtime"
        lines.append(f"{error.__class__.__name__}: {error.message} at {where} (rule: {rule})")
        return "\n".join(lines)

    def to_json(self, error: VMRuntimeError) -> str:
        steps_json: List[Dict[str, Any]] = []
        for step in self.build_steps():
            entry: Dict[str, Any] = {
                "step_index": step.step_index,
                "pc": step.pc,
                "opcode": step.opcode,
                "rule": step.rule,
                "stack_depth": step.stack_depth,
            }
            if step.stack_snapshot is not None:
                entry["stack"] = step.stack_snapshot
            steps_json.append(entry)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "kind": error.kind,
                "message": error.message,
                "pc": error.pc,
                "opcode": error.opcode,
                "rule": error.rule,
                "failing_step_index": error.step_index,
            },
            "return_stack": self._return_stack(),
            "steps": steps_json,
        }
        return json.dumps(data, indent=2)
