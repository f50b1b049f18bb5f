"""forthvm entry point and REPL wiring."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from extensions import RuntimeServices, build_default_services, load_runtime_services
from interpreter import Interpreter, TracebackFormatter
from loader import load_program, program_from_text
from memory import Memory
from stack import OperandStack
from values import VMError, VMRuntimeError, parse_value


def format_stack(stack: OperandStack) -> str:
    if not len(stack):
        return "<empty>"
    return " ".join(v.describe() for v in stack)


def _report(interpreter: Interpreter, error: VMRuntimeError, verbose: bool, as_json: bool) -> None:
    formatter = TracebackFormatter(interpreter)
    print(formatter.format_text(error, verbose=verbose), file=sys.stderr)
    if as_json:
        print(formatter.to_json(error), file=sys.stderr)


def run_repl(interpreter: Interpreter, stack: OperandStack, memory: Memory, verbose: bool) -> int:
    print("\x1b[38;2;153;221;255mforthvm\033[0m REPL. Each line runs as a program; :q quits.") # "forthvm" in light blue
    while True:
        try:
            line = input("\x1b[38;2;153;221;255m>>>\033[0m ")
        except EOFError:
            print()
            break

        stripped = line.strip()
        if stripped in (":q", ":quit"):
            break
        if stripped == ":stack":
            print(format_stack(stack))
            continue
        if stripped == ":clear":
            stack.clear()
            continue
        if not stripped:
            continue

        try:
            program = program_from_text(line)
            interpreter.run(program, stack, memory=memory)
        except VMRuntimeError as error:
            # Stack and memory keep whatever the failing line left behind.
            _report(interpreter, error, verbose=verbose, as_json=False)
            continue
        except VMError as error:
            print(f"Error: {error}", file=sys.stderr)
            continue
        print(format_stack(stack))

    return 0


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="forthvm bytecode interpreter")
    parser.add_argument("program", nargs="?", help="Program file path or literal program with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal program bytes")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Record steps and stack snapshots for tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--ext", dest="extensions", action="append", default=[], metavar="PATH", help="Load an extension file or .vmx list (repeatable)")
    parser.add_argument("--memory", type=int, default=256, metavar="N", help="Number of memory cells (default 256)")
    parser.add_argument("--pc", type=int, default=0, metavar="N", help="Start offset into the program")
    parser.add_argument("--push", dest="push", action="append", default=[], metavar="VALUE", help="Seed the stack with a value before running (repeatable)")
    parser.add_argument("--strict-return", action="store_true", help="Fail on ';' with an empty return stack instead of halting")
    args = parser.parse_args(argv)

    if args.memory < 0:
        print("--memory must be non-negative", file=sys.stderr)
        return 1
    if args.pc < 0:
        print("--pc must be non-negative", file=sys.stderr)
        return 1

    try:
        services: RuntimeServices = load_runtime_services(args.extensions) if args.extensions else build_default_services()
        stack = OperandStack(parse_value(v) for v in args.push)
    except VMError as error:
        print(f"Error: {error}", file=sys.stderr)
        return 1

    memory = Memory.zeros(args.memory)
    interpreter = Interpreter(services=services, strict_return=args.strict_return, verbose=args.verbose)

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_repl(interpreter, stack, memory, verbose=args.verbose)

    try:
        if args.source_mode:
            program = program_from_text(args.program)
        else:
            program = load_program(args.program)
    except VMError as error:
        print(f"Error: {error}", file=sys.stderr)
        return 1

    try:
        interpreter.run(program, stack, pc=args.pc, memory=memory)
    except VMRuntimeError as error:
        _report(interpreter, error, verbose=args.verbose, as_json=args.traceback_json)
        return 1
    print(format_stack(stack))
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
