from __future__ import annotations
import os
import platform
import re
import shlex
import subprocess
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from extensions import ExtensionError
from lexer import ExecuteError, ScriptParseError
from logger import ERROR, IGNORE, INFO, SUCCESS, WARNING, LogRecord
from numhelper import parse_int32
from parser import MACRO_NAME_RE, Instruction, parse_instruction_line
from script import parse_key_values, trim_percent
from variables import FIXED, GLOBAL, LOCAL

if TYPE_CHECKING:
    from interpreter import CallContext, Interpreter


CommandImpl = Callable[["Interpreter", List[str], "CallContext", Instruction], List[LogRecord]]

SECTION_PARAM_KEY_RE = re.compile(r"^#([0-9]+)$")
OUT_PARAM_KEY_RE = re.compile(r"^#[oO]([0-9]+)$")

NIL = "NIL"


@dataclass
class CommandSpec:
    name: str
    min_args: int
    max_args: Optional[int]
    impl: CommandImpl

    def validate(self, supplied: int) -> None:
        if supplied < self.min_args:
            raise ExecuteError(f"[{self.name}] expects at least {self.min_args} arguments")
        if self.max_args is not None and supplied > self.max_args:
            raise ExecuteError(f"[{self.name}] expects at most {self.max_args} arguments")


class SubprocessSlot:
    """The one external process a running script may own at a time."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._proc: Optional[subprocess.Popen] = None

    def run(self, args: List[str], *, cwd: Optional[str], hidden: bool) -> subprocess.CompletedProcess:
        kwargs: Dict[str, object] = {"stdout": subprocess.PIPE, "stderr": subprocess.PIPE, "text": True}
        if cwd:
            kwargs["cwd"] = cwd
        # On Windows, keep hidden processes from opening a console window.
        if hidden and platform.system().lower().startswith("win"):
            kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW
        with self._lock:
            if self._proc is not None:
                raise ExecuteError("Another process is already running")
            proc = subprocess.Popen(args, **kwargs)
            self._proc = proc
        try:
            out, err = proc.communicate()
        finally:
            with self._lock:
                self._proc = None
        return subprocess.CompletedProcess(args, proc.returncode, out, err)

    def terminate(self) -> bool:
        with self._lock:
            proc = self._proc
        if proc is None or proc.poll() is not None:
            return False
        proc.kill()
        return True


def _is_nil(value: str) -> bool:
    return value.strip().upper() == NIL


def _global_flag(args: List[str], index: int, command: str) -> bool:
    if len(args) <= index:
        return False
    if args[index].strip().upper() != "GLOBAL":
        raise ExecuteError(f"Invalid argument [{args[index]}] for [{command}]")
    return True


def set_variable(interp: "Interpreter", key: str, value: str, *, is_global: bool = False) -> LogRecord:
    """Write a %Var%, #N, #r, #oN or #c key. The value is already expanded."""
    key = key.strip()
    state = interp.state

    name = trim_percent(key)
    if name is not None:
        variables = interp.variables
        if variables.get(name, FIXED) is not None:
            if not interp.compat.overridable_fixed_variables:
                raise ExecuteError(f"Fixed variable [{key}] cannot be overwritten")
            if _is_nil(value):
                raise ExecuteError(f"Fixed variable [{key}] cannot be deleted")
            variables.set(FIXED, name, value)
            return LogRecord(WARNING, f"Fixed variable [{key}] overwritten with [{value}]")
        scope = GLOBAL if is_global else LOCAL
        label = "Global" if is_global else "Local"
        if _is_nil(value):
            if variables.delete(scope, name):
                return LogRecord(SUCCESS, f"{label} variable [{key}] was deleted")
            return LogRecord(IGNORE, f"{label} variable [{key}] does not exist")
        variables.set(scope, name, value)
        return LogRecord(SUCCESS, f"{label} variable [{key}] set to [{value}]")

    match = SECTION_PARAM_KEY_RE.match(key)
    if match is not None:
        index = int(match.group(1))
        if index < 1:
            raise ExecuteError(f"Section parameter [{key}] is out of range")
        state.cur_in_params[index] = value
        return LogRecord(SUCCESS, f"Section parameter [{key}] set to [{value}]")

    lowered = key.lower()
    if lowered == "#r":
        state.return_value = value
        return LogRecord(SUCCESS, f"Return value [#r] set to [{value}]")

    match = OUT_PARAM_KEY_RE.match(key)
    if match is not None:
        index = int(match.group(1))
        if not 1 <= index <= len(state.out_params):
            raise ExecuteError(f"Section out parameter [{key}] is out of range")
        target = state.out_params[index - 1]
        target_name = trim_percent(target)
        if target_name is None:
            raise ExecuteError(f"[{key}] is not referencing any variables")
        interp.variables.set(LOCAL, target_name, value)
        return LogRecord(SUCCESS, f"[{target}], reference of [{key}], set to [{value}]")

    if lowered == "#c":
        if not interp.compat.overridable_loop_counter:
            raise ExecuteError("Loop counter [#c] cannot be overwritten")
        frame = interp.loops.stack.peek()
        if frame is None:
            raise ExecuteError("Loop is not running")
        frame.counter = value
        return LogRecord(SUCCESS, f"Loop counter [#c] set to [{value}]")

    raise ExecuteError(f"Invalid variable name [{key}]")


class Commands:
    """Dispatch table for every instruction that is not control flow."""

    def __init__(self) -> None:
        self.table: Dict[str, CommandSpec] = {}
        self._register_custom("Echo", 1, 2, self._echo)
        self._register_custom("Set", 2, 3, self._set)
        self._register_custom("SetMacro", 2, 3, self._set_macro)
        self._register_custom("AddVariables", 2, 3, self._add_variables)
        self._register_custom("GetParam", 2, 2, self._get_param)
        self._register_custom("PackParam", 2, 3, self._pack_param)
        self._register_custom("Exit", 1, 2, self._exit)
        self._register_custom("Halt", 1, 1, self._halt)
        self._register_custom("Wait", 1, 1, self._wait)
        self._register_custom("ShellExecute", 2, 4, self._shell_execute)

    def _register_custom(self, name: str, min_args: int, max_args: Optional[int], impl: CommandImpl) -> None:
        self.table[name.lower()] = CommandSpec(name=name, min_args=min_args, max_args=max_args, impl=impl)

    def register_extension_command(self, *, name: str, min_args: int, max_args: Optional[int], impl: CommandImpl) -> None:
        if name.lower() in self.table:
            raise ExtensionError(f"Cannot override existing command '{name}'")
        self.table[name.lower()] = CommandSpec(name=name, min_args=min_args, max_args=max_args, impl=impl)

    def names(self) -> List[str]:
        return [spec.name for spec in self.table.values()]

    def invoke(self, interp: "Interpreter", instruction: Instruction, args: List[str], ctx: "CallContext") -> List[LogRecord]:
        spec = self.table.get(instruction.kind.lower())
        if spec is None:
            raise ExecuteError(f"Invalid command [{instruction.kind}]")
        spec.validate(len(args))
        return list(spec.impl(interp, args, ctx, instruction))

    # ---- output ----

    def _echo(self, interp: "Interpreter", args: List[str], ctx: "CallContext", ins: Instruction) -> List[LogRecord]:
        message = interp.expand(args[0])
        warn = False
        if len(args) == 2:
            if args[1].strip().upper() != "WARN":
                raise ExecuteError(f"Invalid argument [{args[1]}] for [Echo]")
            warn = True
        interp.output_sink(message)
        return [LogRecord(WARNING if warn else SUCCESS, message)]

    # ---- variables and macros ----

    def _set(self, interp: "Interpreter", args: List[str], ctx: "CallContext", ins: Instruction) -> List[LogRecord]:
        is_global = _global_flag(args, 2, "Set")
        return [set_variable(interp, args[0], interp.expand(args[1]), is_global=is_global)]

    def _set_macro(self, interp: "Interpreter", args: List[str], ctx: "CallContext", ins: Instruction) -> List[LogRecord]:
        name = interp.expand(args[0]).strip()
        if not MACRO_NAME_RE.match(name):
            raise ExecuteError(f"Invalid macro name [{name}]")
        is_global = _global_flag(args, 2, "SetMacro")
        label = "Global" if is_global else "Local"
        command = args[1]
        if _is_nil(command):
            if interp.macros.delete(name, is_global=is_global):
                return [LogRecord(SUCCESS, f"{label} macro [{name}] deleted")]
            return [LogRecord(IGNORE, f"{label} macro [{name}] does not exist")]
        try:
            macro = parse_instruction_line(command, ins.address, line_idx=ins.line_idx, command_names=self.names())
        except ScriptParseError as exc:
            raise ExecuteError(f"Invalid macro command [{command}]: {exc}") from exc
        interp.macros.set(name, macro, is_global=is_global)
        return [LogRecord(SUCCESS, f"{label} macro [{name}] set to [{command}]")]

    def _add_variables(self, interp: "Interpreter", args: List[str], ctx: "CallContext", ins: Instruction) -> List[LogRecord]:
        script = interp.resolver.resolve(interp.state.current_script, interp.expand(args[0]))
        section_name = interp.expand(args[1])
        if not interp.resolver.section_exists(script, section_name):
            raise ExecuteError(f"[{script.path}] does not have section [{section_name}]")
        is_global = _global_flag(args, 2, "AddVariables")
        label = "Global" if is_global else "Local"

        logs: List[LogRecord] = []
        for key, value in parse_key_values(script.raw_lines(section_name)):
            if trim_percent(key) is not None:
                logs.append(set_variable(interp, key, interp.expand(value), is_global=is_global))
                continue
            if not MACRO_NAME_RE.match(key):
                logs.append(LogRecord(ERROR, f"Invalid macro name [{key}]"))
                continue
            try:
                macro = parse_instruction_line(value, ins.address, line_idx=ins.line_idx, command_names=self.names())
            except ScriptParseError as exc:
                logs.append(LogRecord(ERROR, f"Invalid macro [{key}]: {exc}"))
                continue
            interp.macros.set(key, macro, is_global=is_global)
            logs.append(LogRecord(SUCCESS, f"{label} macro [{key}] set to [{value}]"))
        if not logs:
            logs.append(LogRecord(IGNORE, f"Section [{section_name}] has no variables"))
        return logs

    def _get_param(self, interp: "Interpreter", args: List[str], ctx: "CallContext", ins: Instruction) -> List[LogRecord]:
        index_text = interp.expand(args[0])
        index = parse_int32(index_text)
        if index is None or index < 1:
            raise ExecuteError(f"[{index_text}] is not a valid positive integer")
        value = interp.state.cur_in_params.get(index, "")
        return [set_variable(interp, args[1], value)]

    def _pack_param(self, interp: "Interpreter", args: List[str], ctx: "CallContext", ins: Instruction) -> List[LogRecord]:
        start_text = interp.expand(args[0])
        start = parse_int32(start_text)
        if start is None or start < 1:
            raise ExecuteError(f"[{start_text}] is not a valid positive integer")
        params = interp.state.cur_in_params
        last = max(params.keys(), default=0)
        packed = [params.get(idx, "") for idx in range(start, last + 1)]
        text = ",".join(f'"{value}"' for value in packed)
        logs = [set_variable(interp, args[1], text)]
        if len(args) == 3:
            logs.append(set_variable(interp, args[2], str(len(packed))))
        return logs

    # ---- process control ----

    def _exit(self, interp: "Interpreter", args: List[str], ctx: "CallContext", ins: Instruction) -> List[LogRecord]:
        message = interp.expand(args[0])
        no_warn = False
        if len(args) == 2:
            if args[1].strip().upper() != "NOWARN":
                raise ExecuteError(f"Invalid argument [{args[1]}] for [Exit]")
            no_warn = True
        interp.state.exit_requested = True
        return [LogRecord(INFO if no_warn else WARNING, message)]

    def _halt(self, interp: "Interpreter", args: List[str], ctx: "CallContext", ins: Instruction) -> List[LogRecord]:
        message = interp.expand(args[0])
        interp.state.halt_requested = True
        interp.state.subprocess.terminate()
        return [LogRecord(WARNING, message)]

    def _wait(self, interp: "Interpreter", args: List[str], ctx: "CallContext", ins: Instruction) -> List[LogRecord]:
        text = interp.expand(args[0])
        seconds = parse_int32(text)
        if seconds is None or seconds < 0:
            raise ExecuteError(f"Argument [{text}] is not a valid integer")
        if interp.state.abort_event.wait(seconds):
            return [LogRecord(WARNING, f"Waiting [{seconds}] seconds was interrupted")]
        return [LogRecord(SUCCESS, f"Slept [{seconds}] seconds")]

    def _shell_execute(self, interp: "Interpreter", args: List[str], ctx: "CallContext", ins: Instruction) -> List[LogRecord]:
        action = interp.expand(args[0]).strip().lower()
        if action not in ("open", "hide", "min"):
            raise ExecuteError(f"Invalid ShellExecute action [{args[0]}]")
        exe = interp.expand(args[1])
        params = interp.expand(args[2]) if len(args) > 2 else ""
        work_dir = interp.expand(args[3]) if len(args) > 3 else None
        if work_dir and not os.path.isdir(work_dir):
            raise ExecuteError(f"Directory [{work_dir}] does not exist")

        posix = not platform.system().lower().startswith("win")
        try:
            argv = [exe] + shlex.split(params, posix=posix)
        except ValueError as exc:
            raise ExecuteError(f"Invalid parameters [{params}]: {exc}") from exc
        try:
            completed = interp.state.subprocess.run(argv, cwd=work_dir, hidden=action != "open")
        except OSError as exc:
            raise ExecuteError(f"Failed to execute [{exe}]: {exc}") from exc

        if completed.stdout:
            interp.output_sink(completed.stdout)
        if completed.stderr:
            interp.output_sink(completed.stderr)
        code = int(completed.returncode)
        interp.variables.set(LOCAL, "ExitCode", str(code))
        shown = f"{exe} {params}".strip()
        return [
            LogRecord(SUCCESS, f"Executed [{shown}], returned exit code [{code}]"),
            LogRecord(INFO, f"Local variable [%ExitCode%] set to [{code}]"),
        ]
