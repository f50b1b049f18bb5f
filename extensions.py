from __future__ import annotations

import hashlib
import importlib.util
import os
from dataclasses import dataclass, field
from types import ModuleType
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, Union

from values import ERR_INVALID_INSTRUCTION, VMExtensionError, VMRuntimeError, show_opcode

if TYPE_CHECKING:
    from stack import OperandStack


EXTENSION_API_VERSION = 1

OpcodeImpl = Callable[[int, "OperandStack"], None]


class Extension(Protocol):
    """Handles opcode bytes the interpreter does not recognise.

    ``execute`` either returns normally or raises ``VMRuntimeError``; the
    interpreter attaches the program counter to anything it raises.
    """

    def execute(self, opcode: int, stack: "OperandStack") -> None: ...


class NoExtension:
    """Default extension: every opcode outside the built-in set is invalid."""

    def execute(self, opcode: int, stack: "OperandStack") -> None:
        raise VMRuntimeError(ERR_INVALID_INSTRUCTION)


@dataclass(frozen=True)
class OpcodeSpec:
    opcode: int
    impl: OpcodeImpl
    ext_name: str
    doc: str = ""


class OpcodeTable:
    """Extension dispatching single opcode bytes to host handlers."""

    def __init__(self, fallback: Optional[Extension] = None, reserved: Optional[Sequence[int]] = None) -> None:
        self.fallback = fallback if fallback is not None else NoExtension()
        # Built-in bytes never reach an extension.
        self._reserved = frozenset(_builtin_opcodes() if reserved is None else reserved)
        self._table: Dict[int, OpcodeSpec] = {}

    def register(self, opcode: int, impl: OpcodeImpl, *, ext_name: str = "<host>", doc: str = "") -> None:
        if not isinstance(opcode, int) or not 0 <= opcode <= 255:
            raise VMExtensionError(f"Opcode must be a byte value, got {opcode!r}")
        if opcode in self._reserved:
            raise VMExtensionError(f"Cannot override built-in opcode {show_opcode(opcode)}")
        if opcode in self._table:
            owner = self._table[opcode].ext_name
            raise VMExtensionError(f"Opcode {show_opcode(opcode)} is already registered by '{owner}'")
        self._table[opcode] = OpcodeSpec(opcode=opcode, impl=impl, ext_name=ext_name, doc=doc)

    def has(self, opcode: int) -> bool:
        return opcode in self._table

    def get(self, opcode: int) -> Optional[OpcodeSpec]:
        return self._table.get(opcode)

    def opcodes(self) -> List[OpcodeSpec]:
        return [self._table[k] for k in sorted(self._table)]

    def execute(self, opcode: int, stack: "OperandStack") -> None:
        spec = self._table.get(opcode)
        if spec is None:
            self.fallback.execute(opcode, stack)
            return
        spec.impl(opcode, stack)


class ChainedExtension:
    """Try each extension in turn; InvalidInstruction moves on to the next."""

    def __init__(self, *extensions: Extension) -> None:
        self.extensions = list(extensions)

    def execute(self, opcode: int, stack: "OperandStack") -> None:
        for ext in self.extensions:
            try:
                ext.execute(opcode, stack)
            except VMRuntimeError as error:
                if error.kind == ERR_INVALID_INSTRUCTION:
                    continue
                raise
            return
        raise VMRuntimeError(ERR_INVALID_INSTRUCTION)


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


@dataclass(frozen=True)
class StepContext:
    step_index: int
    pc: int
    opcode: int
    rule: str


StepRule = Callable[[Any, StepContext], None]


@dataclass
class HookRegistry:
    """Event handlers and every-N-step rules, called in registration order."""

    events: Dict[str, List[Callable[..., None]]] = field(default_factory=dict)
    step_rules: List[Tuple[int, StepRule]] = field(default_factory=list)

    def on_event(self, event: str, handler: Callable[..., None]) -> None:
        self.events.setdefault(event, []).append(handler)

    def emit(self, event: str, *args: Any) -> None:
        for handler in self.events.get(event, ()):
            handler(*args)

    def add_step_rule(self, every_n: int, handler: StepRule) -> None:
        if every_n <= 0:
            raise VMExtensionError("every_n_steps must be >= 1")
        self.step_rules.append((every_n, handler))

    def has_step_rules(self) -> bool:
        return bool(self.step_rules)

    def after_step(self, interpreter: Any, ctx: StepContext) -> None:
        for every_n, handler in self.step_rules:
            if ctx.step_index % every_n == 0:
                handler(interpreter, ctx)


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)
    opcodes: OpcodeTable = field(default_factory=OpcodeTable)


def _builtin_opcodes() -> Sequence[int]:
    from interpreter import BUILTIN_OPCODES

    return tuple(BUILTIN_OPCODES)


class ExtensionAPI:
    """The object handed to an extension's ``forthvm_register(ext)``."""

    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self._ext_name = ext_name

    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION) -> None:
        self._services.metadata.append(ExtensionMetadata(name=name, version=version, requires_api=requires_api))

    def register_opcode(self, opcode: Union[int, str], impl: OpcodeImpl, *, doc: str = "") -> None:
        if isinstance(opcode, str):
            if len(opcode) != 1:
                raise VMExtensionError(f"Opcode character must be a single character, got {opcode!r}")
            opcode = ord(opcode)
        self._services.opcodes.register(opcode, impl, ext_name=self._ext_name, doc=doc)

    def opcode(self, opcode: Union[int, str], *, doc: str = ""):
        def deco(fn: OpcodeImpl) -> OpcodeImpl:
            self.register_opcode(opcode, fn, doc=doc)
            return fn

        return deco

    def on_event(self, event: str, handler: Optional[Callable[..., None]] = None):
        """Register ``handler`` for ``event``; without one, act as a decorator."""
        registry = self._services.hook_registry
        if handler is None:
            def deco(fn: Callable[..., None]) -> Callable[..., None]:
                registry.on_event(event, fn)
                return fn
            return deco
        registry.on_event(event, handler)
        return handler

    def every_n_steps(self, every_n: int, handler: Optional[StepRule] = None):
        registry = self._services.hook_registry
        if handler is None:
            def deco(fn: StepRule) -> StepRule:
                registry.add_step_rule(every_n, fn)
                return fn
            return deco
        registry.add_step_rule(every_n, handler)
        return handler


class ExtensionLoader:
    """Imports extension files by path and registers them into ``services``.

    A ``.vmx`` pointer file stands for the extension paths it lists, one per
    line, relative to the pointer file. ``#`` starts a comment.
    """

    def __init__(self, services: Optional[RuntimeServices] = None) -> None:
        self.services = services if services is not None else build_default_services()

    def expand(self, paths: Iterable[str]) -> List[str]:
        out: List[str] = []
        for path in paths:
            if path.lower().endswith(".vmx"):
                out.extend(self._pointer_entries(path))
            else:
                out.append(os.path.abspath(path))
        return out

    def _pointer_entries(self, pointer_file: str) -> List[str]:
        try:
            with open(pointer_file, "r", encoding="utf-8") as handle:
                lines = handle.readlines()
        except OSError as exc:
            raise VMExtensionError(f".vmx file not found: {pointer_file}") from exc
        here = os.path.dirname(os.path.abspath(pointer_file))
        entries = (line.partition("#")[0].strip() for line in lines)
        return [os.path.abspath(os.path.join(here, entry)) for entry in entries if entry]

    def import_file(self, path: str) -> ModuleType:
        if not os.path.isfile(path):
            raise VMExtensionError(f"Extension not found: {path}")
        # One module name per absolute path.
        digest = hashlib.sha1(path.encode("utf-8")).hexdigest()[:16]
        module_spec = importlib.util.spec_from_file_location(f"forthvm_ext_{digest}", path)
        if module_spec is None or module_spec.loader is None:
            raise VMExtensionError(f"Failed to load extension module: {path}")
        module = importlib.util.module_from_spec(module_spec)
        module_spec.loader.exec_module(module)
        return module

    def install(self, path: str) -> None:
        module = self.import_file(path)
        wanted = getattr(module, "FORTHVM_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
        if wanted != EXTENSION_API_VERSION:
            raise VMExtensionError(f"Extension {path} requires API {wanted}, host supports {EXTENSION_API_VERSION}")
        register = getattr(module, "forthvm_register", None)
        if not callable(register):
            raise VMExtensionError(f"Extension {path} must define callable forthvm_register(ext)")
        name = getattr(module, "FORTHVM_EXTENSION_NAME", None) or os.path.splitext(os.path.basename(path))[0]
        register(ExtensionAPI(services=self.services, ext_name=str(name)))

    def load(self, paths: Iterable[str]) -> RuntimeServices:
        for path in self.expand(paths):
            self.install(path)
        return self.services


def build_default_services() -> RuntimeServices:
    return RuntimeServices()


def load_runtime_services(paths: Iterable[str]) -> RuntimeServices:
    return ExtensionLoader().load(paths)
