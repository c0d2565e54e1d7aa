"""Path-loaded bakescript extensions.

An extension is a Python file that defines ``bakescript_register(ext)``. The
register function adds script commands and subscribes to build events through
the `ExtensionAPI` it receives. Event handlers are called as
``handler(interpreter, event)`` where `event` is one of the payload classes
below. A ``.bsx`` file lists extension paths, one per line.
"""

from __future__ import annotations

import importlib.util
import os
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence

from lexer import BakeError

if TYPE_CHECKING:
    from interpreter import CallContext, Interpreter
    from parser import Instruction
    from script import Script, Section


BAKESCRIPT_EXTENSION_API_VERSION = 1
POINTER_SUFFIX = ".bsx"


class ExtensionError(BakeError):
    pass


@dataclass(frozen=True)
class ProgramStarted:
    script: Script


@dataclass(frozen=True)
class ProgramFinished:
    reason: str  # done | error | user | halt | exit


@dataclass(frozen=True)
class SectionEvent:
    section: Section
    ctx: CallContext


@dataclass(frozen=True)
class InstructionEvent:
    instruction: Instruction
    ctx: CallContext
    # Instructions finished so far in this run.
    executed: int


@dataclass(frozen=True)
class ErrorEvent:
    error: BaseException


EVENTS: Dict[str, type] = {
    "program_start": ProgramStarted,
    "program_end": ProgramFinished,
    "section_start": SectionEvent,
    "section_end": SectionEvent,
    "before_instruction": InstructionEvent,
    "after_instruction": InstructionEvent,
    "on_error": ErrorEvent,
}

EventHandler = Callable[["Interpreter", Any], None]


@dataclass(frozen=True)
class CommandRegistration:
    name: str
    min_args: int
    max_args: Optional[int]
    impl: Callable[..., Any]
    extension: str


@dataclass
class RuntimeServices:
    """Everything the loaded extensions contributed to one interpreter."""

    extensions: List[str] = field(default_factory=list)
    commands: List[CommandRegistration] = field(default_factory=list)
    handlers: Dict[str, List[EventHandler]] = field(default_factory=dict)

    def emit(self, interpreter: Interpreter, event: str, payload: Any) -> None:
        for handler in self.handlers.get(event, ()):
            handler(interpreter, payload)


class ExtensionAPI:
    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self.name = ext_name

    def register_command(self, name: str, min_args: int, max_args: Optional[int], impl: Callable[..., Any]) -> None:
        """Add a script command; `impl(interpreter, args, ctx, instruction)` returns LogRecords."""
        if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name or ""):
            raise ExtensionError(f"[{name}] is not a valid command name")
        for registered in self._services.commands:
            if registered.name.lower() == name.lower():
                raise ExtensionError(f"Command [{name}] is already registered by [{registered.extension}]")
        self._services.commands.append(CommandRegistration(name, min_args, max_args, impl, self.name))

    def command(self, name: str, min_args: int, max_args: Optional[int] = None):
        def deco(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.register_command(name, min_args, max_args, fn)
            return fn

        return deco

    def on_event(self, event: str, handler: EventHandler) -> EventHandler:
        if event not in EVENTS:
            raise ExtensionError(f"Unknown event '{event}'")
        self._services.handlers.setdefault(event, []).append(handler)
        return handler


def read_pointer_file(path: str) -> List[str]:
    """Extension paths listed in a .bsx file, resolved against its directory."""
    try:
        with open(path, "r", encoding="utf-8") as handle:
            lines = handle.read().splitlines()
    except OSError as exc:
        raise ExtensionError(f"Cannot read extension list [{path}]: {exc.strerror}") from exc
    base_dir = os.path.dirname(os.path.abspath(path))
    entries = (line.split("#", 1)[0].strip() for line in lines)
    return [os.path.normpath(os.path.join(base_dir, entry)) for entry in entries if entry]


def gather_extension_paths(paths: Sequence[str]) -> List[str]:
    found: List[str] = []
    for path in paths:
        if path.lower().endswith(POINTER_SUFFIX):
            found.extend(read_pointer_file(path))
        else:
            found.append(os.path.abspath(path))
    return found


def _import_extension(path: str) -> Any:
    if not os.path.isfile(path):
        raise ExtensionError(f"Extension not found: {path}")
    stem = os.path.splitext(os.path.basename(path))[0]
    spec = importlib.util.spec_from_file_location("bakescript_ext_" + re.sub(r"\W", "_", stem), path)
    if spec is None or spec.loader is None:
        raise ExtensionError(f"Failed to load extension module: {path}")
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except (SyntaxError, ImportError) as exc:
        raise ExtensionError(f"Failed to load extension module: {path}: {exc}") from exc
    return module


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = RuntimeServices()
    for path in gather_extension_paths(paths):
        module = _import_extension(path)
        wanted = getattr(module, "BAKESCRIPT_EXTENSION_API_VERSION", BAKESCRIPT_EXTENSION_API_VERSION)
        if wanted != BAKESCRIPT_EXTENSION_API_VERSION:
            raise ExtensionError(
                f"Extension {path} requires API {wanted}, host supports {BAKESCRIPT_EXTENSION_API_VERSION}"
            )
        register = getattr(module, "bakescript_register", None)
        if not callable(register):
            raise ExtensionError(f"Extension {path} must define callable bakescript_register(ext)")
        name = str(getattr(module, "BAKESCRIPT_EXTENSION_NAME", os.path.splitext(os.path.basename(path))[0]))
        register(ExtensionAPI(services=services, ext_name=name))
        services.extensions.append(name)
    return services
