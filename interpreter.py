from __future__ import annotations
import json
import os
import threading
from dataclasses import dataclass, field, fields, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from branch import BranchEvaluator, BranchProbes
from commands import Commands, SubprocessSlot
from errorsuppress import ErrorSuppressionWindow
from extensions import ErrorEvent, InstructionEvent, ProgramFinished, ProgramStarted, RuntimeServices, SectionEvent
from lexer import CriticalError, ExecuteError
from logger import ERROR, IGNORE, INFO, SUCCESS, WARNING, CRITICAL, BuildLogger, LogEntry, LogRecord
from loops import LoopController, LoopTarget, parse_loop_bounds
from numhelper import parse_int32
from parser import (
    CommandInfo,
    ElseInfo,
    ErrorInfo,
    IfInfo,
    Instruction,
    LoopBreakInfo,
    LoopInfo,
    MacroInfo,
    Parser,
    RunExecInfo,
    SectionAddress,
    SystemInfo,
    is_single_kind,
)
from preprocess import Preprocessor
from script import Script, ScriptResolver, Section, load_script_text
from variables import FIXED, LOCAL, MacroTable, ScopeStack, Variables


ENTRY_SECTION = "Process"


@dataclass(frozen=True)
class CallContext:
    """Per-invocation call data. Callees get a modified copy, never the caller's own value."""

    depth: int = 0
    is_macro: bool = False
    ref_script_id: Optional[str] = None

    def deeper(self, **changes: Any) -> "CallContext":
        return replace(self, depth=self.depth + 1, **changes)


@dataclass(frozen=True)
class CompatOptions:
    allow_letter_in_loop: bool = False
    overridable_loop_counter: bool = False
    overridable_fixed_variables: bool = False
    disable_extended_section_params: bool = False

    @classmethod
    def from_names(cls, names: Iterable[str]) -> "CompatOptions":
        known = {f.name.replace("_", ""): f.name for f in fields(cls)}
        enabled: Dict[str, bool] = {}
        for name in names:
            key = name.strip().lower().replace("_", "").replace("-", "")
            if key not in known:
                raise ValueError(f"Unknown compat option '{name}'")
            enabled[known[key]] = True
        return cls(**enabled)


class HaltSignal(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


@dataclass
class EngineState:
    """Mutable state of one run, owned by the thread executing it."""

    current_script: Script
    cur_in_params: Dict[int, str] = field(default_factory=dict)
    out_params: Tuple[str, ...] = ()
    return_value: str = ""
    else_flag: bool = False
    exit_requested: bool = False
    halt_requested: bool = False
    error_halt: bool = False
    abort_event: threading.Event = field(default_factory=threading.Event)
    scopes: ScopeStack = field(default_factory=ScopeStack)
    error_off: ErrorSuppressionWindow = field(default_factory=ErrorSuppressionWindow)
    subprocess: SubprocessSlot = field(default_factory=SubprocessSlot)

    def halt_reason(self) -> Optional[str]:
        if self.error_halt:
            return "error"
        if self.abort_event.is_set():
            return "user"
        if self.halt_requested:
            return "halt"
        if self.exit_requested:
            return "exit"
        return None


@dataclass
class Frame:
    script: str
    section: str
    depth: int
    last: Optional[Instruction] = None


class Interpreter:
    def __init__(
        self,
        script: Script,
        *,
        resolver: Optional[ScriptResolver] = None,
        compat: Optional[CompatOptions] = None,
        services: Optional[RuntimeServices] = None,
        probes: Optional[BranchProbes] = None,
        output_sink: Optional[Callable[[str], None]] = None,
        verbose: bool = False,
        fixed_variables: Optional[Dict[str, str]] = None,
    ) -> None:
        self.script = script
        self.resolver = resolver or ScriptResolver(root=script.directory or None)
        self.compat = compat or CompatOptions()
        self.services = services or RuntimeServices()
        self.output_sink = output_sink or (lambda text: print(text))
        self.verbose = verbose

        self.commands = Commands()
        # Extension commands are appended but cannot replace built-in ones.
        for reg in self.services.commands:
            self.commands.register_extension_command(name=reg.name, min_args=reg.min_args, max_args=reg.max_args, impl=reg.impl)
        self.resolver.set_command_names(self.commands.names())
        self.resolver.register(script)

        self.variables = Variables()
        self.macros = MacroTable()
        self.variables.set(FIXED, "BaseDir", os.getcwd())
        self.variables.set(FIXED, "ProjectDir", self.resolver.root)
        for name, value in (fixed_variables or {}).items():
            self.variables.set(FIXED, name, value)

        self.state = EngineState(current_script=script)
        self.loops = LoopController(self)
        self.logger = BuildLogger(mute_check=lambda: self.state.error_off.is_muting())
        self.preprocessor = Preprocessor(self.variables, extended_params=not self.compat.disable_extended_section_params)
        self.branch = BranchEvaluator(self.variables, self.macros, probes)

        self.call_stack: List[Frame] = []
        self.failed_frames: List[Frame] = []
        self.failed_variables: Optional[Dict[str, str]] = None
        self.instruction_count = 0

    # ---- entry points ----

    def run(self, section: str = ENTRY_SECTION) -> List[LogEntry]:
        self._reset_state()
        ctx = CallContext()
        self._emit_event("program_start", ProgramStarted(self.script))
        try:
            try:
                self._load_script_scope(self.script)
                entry = self.resolver.load_section(self.script, section)
            except ExecuteError as exc:
                self.log(LogRecord(ERROR, str(exc)), ctx)
            else:
                self.log(LogRecord(INFO, f"Processing Section [{entry.name}]"), ctx)
                self.run_section(self.script, entry, {}, (), ctx.deeper())
                self.log(LogRecord(INFO, f"End of Section [{entry.name}]"), ctx)
        except HaltSignal as signal:
            self._log_halt(signal, ctx)
        except CriticalError as error:
            if error.step_index is None:
                self._fail(error, ctx, None)
            self._emit_event("on_error", ErrorEvent(error))
            raise
        except Exception as exc:
            self._emit_event("on_error", ErrorEvent(exc))
            # Unexpected Python-level exceptions surface as CriticalError.
            wrapped = CriticalError(f"Internal interpreter error: {exc}", rule="internal")
            self._fail(wrapped, ctx, None)
            raise wrapped from exc
        self._emit_event("program_end", ProgramFinished(self.state.halt_reason() or "done"))
        return self.logger.entries

    def run_lines(self, lines: Sequence[str], section: str = "REPL") -> List[LogEntry]:
        """Run loose lines against the current scopes; used by the REPL."""
        start = len(self.logger.entries)
        address = SectionAddress(script=self.script.path, section=section)
        instructions = Parser(lines, address, command_names=self.commands.names()).parse()
        self.state.exit_requested = False
        self.state.halt_requested = False
        self.state.error_halt = False
        ctx = CallContext()
        self.call_stack.append(Frame(script=self.script.path, section=section, depth=ctx.depth))
        try:
            self.run_commands(address, instructions, ctx)
        except HaltSignal as signal:
            self._log_halt(signal, ctx)
        finally:
            self.call_stack.pop()
        return self.logger.entries[start:]

    def request_stop(self) -> None:
        """Ask the running script to stop; safe to call from another thread."""
        self.state.abort_event.set()
        self.state.subprocess.terminate()

    def _reset_state(self) -> None:
        self.state = EngineState(current_script=self.script, subprocess=self.state.subprocess)
        self.loops.stack.clear()
        self.call_stack = []
        self.failed_frames = []
        self.failed_variables = None

    def _load_script_scope(self, script: Script) -> Tuple[int, int]:
        defaults = self.resolver.script_defaults(script)
        self.variables.restore(LOCAL, defaults.variables)
        self.macros.reset_local(defaults.macros)
        return len(defaults.variables), len(defaults.macros)

    def _log_halt(self, signal: HaltSignal, ctx: CallContext) -> None:
        if signal.reason == "user":
            self.log(LogRecord(WARNING, "Build stopped by user"), ctx)
        elif signal.reason == "halt":
            self.log(LogRecord(WARNING, "Build halted"), ctx)

    # ---- sections ----

    def run_section(
        self,
        script: Script,
        section: Section,
        in_params: Dict[int, str],
        out_params: Sequence[str],
        ctx: CallContext,
    ) -> None:
        state = self.state
        saved = (state.current_script, state.cur_in_params, state.out_params)
        state.current_script = script
        state.cur_in_params = dict(in_params)
        state.out_params = tuple(out_params)
        state.return_value = ""
        self.call_stack.append(Frame(script=script.path, section=section.name, depth=ctx.depth))
        try:
            self._emit_event("section_start", SectionEvent(section, ctx))
            self.run_commands(section.address, section.instructions, ctx)
        finally:
            self.call_stack.pop()
            state.current_script, state.cur_in_params, state.out_params = saved
        self._emit_event("section_end", SectionEvent(section, ctx))

    def run_commands(self, address: SectionAddress, instructions: Sequence[Instruction], ctx: CallContext) -> None:
        state = self.state
        if not instructions:
            title = state.current_script.title
            self.log(LogRecord(WARNING, f"No code in script [{title}]'s section [{address.section}]"), ctx)
            return

        scope_mark = len(state.scopes)
        completed = False
        try:
            for instruction in instructions:
                reason = state.halt_reason()
                if reason is not None:
                    raise HaltSignal(reason)
                self.execute(instruction, ctx)
            completed = True
        finally:
            self._release_scopes(scope_mark, ctx, log=completed)
            state.error_off.finish_section(address, ctx.depth)

    def _release_scopes(self, mark: int, ctx: CallContext, *, log: bool) -> None:
        scopes = self.state.scopes
        while len(scopes) > mark:
            depth = len(scopes)
            scopes.pop_into(self.variables, self.macros)
            if log:
                self.log(LogRecord(WARNING, f"Local variable isolation (depth {depth}) implicitly disabled"), ctx)
                self.log(LogRecord(INFO, "Explicit use of [System.EndLocal] is recommended"), ctx)

    # ---- single instruction ----

    def execute(self, instruction: Instruction, ctx: CallContext) -> None:
        state = self.state
        # A window armed by the previous instruction starts muting from here.
        state.error_off.activate()
        if self.call_stack:
            self.call_stack[-1].last = instruction
        try:
            self._emit_event("before_instruction", InstructionEvent(instruction, ctx, self.instruction_count))
            self._execute_instruction(instruction, ctx)
        except HaltSignal:
            raise
        except (ExecuteError, OSError) as exc:
            self.log(LogRecord(ERROR, str(exc)), ctx, instruction)
        except CriticalError as error:
            if error.step_index is None:
                self._fail(error, ctx, instruction)
            raise
        except Exception as exc:
            wrapped = CriticalError(f"Internal interpreter error: {exc}", rule="internal")
            self._fail(wrapped, ctx, instruction)
            raise wrapped from exc
        state.error_off.after_line(instruction.address, ctx.depth, instruction.line_idx)
        self.instruction_count += 1
        self._emit_event("after_instruction", InstructionEvent(instruction, ctx, self.instruction_count))

    def _execute_instruction(self, ins: Instruction, ctx: CallContext) -> None:
        info = ins.info
        if ins.kind == "Comment":
            return
        if isinstance(info, ErrorInfo):
            raise ExecuteError(info.message)
        if isinstance(info, RunExecInfo):
            self._run_exec(ins, info, ctx)
            return
        if isinstance(info, LoopBreakInfo):
            self.log(self.loops.break_loop(), ctx, ins)
            return
        if isinstance(info, LoopInfo):
            self._run_loop(ins, info, ctx)
            return
        if isinstance(info, IfInfo):
            self._execute_if(ins, info, ctx)
            return
        if isinstance(info, ElseInfo):
            self._execute_else(ins, info, ctx)
            return
        if isinstance(info, SystemInfo):
            self._execute_system(ins, info, ctx)
            return
        if isinstance(info, MacroInfo):
            self._execute_macro(ins, info, ctx)
            return
        if isinstance(info, CommandInfo):
            records = self.commands.invoke(self, ins, list(info.args), ctx)
            self.log_many(records, ctx, ins)
            return
        raise CriticalError(f"Unsupported instruction [{ins.kind}]", rule="DISPATCH")

    # ---- Run / Exec / RunEx ----

    def _build_in_params(self, params: Sequence[str]) -> Dict[int, str]:
        return {idx: self.expand(param) for idx, param in enumerate(params, start=1)}

    def _run_exec(
        self,
        ins: Instruction,
        info: RunExecInfo,
        ctx: CallContext,
        *,
        preserve_params: bool = False,
        is_macro: bool = False,
    ) -> None:
        state = self.state
        script_file = self.expand(info.script_file)
        section_name = self.expand(info.section)
        script = self.resolver.resolve(state.current_script, script_file)
        in_current = script.path == state.current_script.path
        if not self.resolver.section_exists(script, section_name):
            raise ExecuteError(f"[{script_file}] does not have section [{section_name}]")
        section = self.resolver.load_section(script, section_name)

        in_params = dict(state.cur_in_params) if preserve_params else self._build_in_params(info.params)
        out_params = info.out_params

        if in_current:
            self.log(LogRecord(INFO, f"Processing Section [{section.name}]"), ctx, ins)
        else:
            self.log(LogRecord(INFO, f"Processing [{script.title}]'s Section [{section.name}]"), ctx, ins)
        self.log_section_params(in_params, out_params, ctx, ins)

        call_ctx = ctx.deeper(
            is_macro=is_macro or ctx.is_macro,
            ref_script_id=None if in_current else script.path,
        )
        if ins.kind == "Exec":
            variables = self.variables
            local_vars = variables.snapshot(LOCAL)
            fixed_vars = variables.snapshot(FIXED)
            local_macros = self.macros.snapshot_local()
            try:
                var_count, macro_count = self._load_script_scope(script)
                self.log(
                    LogRecord(INFO, f"Loaded [{var_count}] local variables and [{macro_count}] local macros of [{script.title}]"),
                    call_ctx,
                    ins,
                )
                self.run_section(script, section, in_params, out_params, call_ctx)
            finally:
                variables.restore(LOCAL, local_vars)
                variables.restore(FIXED, fixed_vars)
                self.macros.restore_local(local_macros)
        else:
            self.run_section(script, section, in_params, out_params, call_ctx)

        if in_current:
            self.log(LogRecord(INFO, f"End of Section [{section.name}]"), ctx, ins)
        else:
            self.log(LogRecord(INFO, f"End of [{script.title}]'s Section [{section.name}]"), ctx, ins)

    def log_section_params(
        self,
        in_params: Dict[int, str],
        out_params: Sequence[str],
        ctx: CallContext,
        instruction: Optional[Instruction] = None,
    ) -> None:
        inner = ctx.deeper()
        if in_params:
            body = ", ".join(f"#{idx}:[{value}]" for idx, value in sorted(in_params.items()))
            self.log(LogRecord(INFO, f"InParams = {{ {body} }}"), inner, instruction)
        if out_params and not self.compat.disable_extended_section_params:
            body = ", ".join(f"#o{idx}:[{name}]" for idx, name in enumerate(out_params, start=1))
            self.log(LogRecord(INFO, f"OutParams = {{ {body} }}"), inner, instruction)

    # ---- Loop ----

    def _run_loop(self, ins: Instruction, info: LoopInfo, ctx: CallContext) -> None:
        state = self.state
        bounds = parse_loop_bounds(
            self.expand(info.start),
            self.expand(info.end),
            letter=info.letter,
            allow_letter_in_loop=self.compat.allow_letter_in_loop,
        )
        script_file = self.expand(info.script_file)
        section_name = self.expand(info.section)
        script = self.resolver.resolve(state.current_script, script_file)
        if not self.resolver.section_exists(script, section_name):
            raise ExecuteError(f"[{script_file}] does not have section [{section_name}]")
        section = self.resolver.load_section(script, section_name)
        target = LoopTarget(script=script, section=section, in_current_script=script.path == state.current_script.path)
        self.loops.run_loop(bounds, target, self._build_in_params(info.params), info.out_params, ctx, ins)

    # ---- If / Else ----

    def _execute_if(self, ins: Instruction, info: IfInfo, ctx: CallContext) -> None:
        matched, message = self.branch.evaluate(info.condition, self.expand)
        if matched:
            self.log(LogRecord(SUCCESS, message), ctx, ins)
            self._run_branch_link(ins, info.link, ctx)
            self.log(LogRecord(INFO, "End of CodeBlock"), ctx, ins)
            self.state.else_flag = False
        else:
            self.log(LogRecord(IGNORE, message), ctx, ins)
            self.state.else_flag = True

    def _execute_else(self, ins: Instruction, info: ElseInfo, ctx: CallContext) -> None:
        if not self.state.else_flag:
            self.log(LogRecord(IGNORE, "Else condition not met"), ctx, ins)
            return
        self.log(LogRecord(SUCCESS, "Else condition met"), ctx, ins)
        self._run_branch_link(ins, info.link, ctx)
        self.log(LogRecord(INFO, "End of CodeBlock"), ctx, ins)
        # A lone If keeps the flag it set itself, so Else,If chains work.
        if not is_single_kind(info.link, "If"):
            self.state.else_flag = False

    def _run_branch_link(self, ins: Instruction, link: Sequence[Instruction], ctx: CallContext) -> None:
        window = self.state.error_off
        if is_single_kind(link, "System", "ErrorOff"):
            window.depth_minus_one = True
        try:
            self.run_commands(ins.address, link, ctx.deeper())
        finally:
            window.depth_minus_one = False

    # ---- System ----

    def _execute_system(self, ins: Instruction, info: SystemInfo, ctx: CallContext) -> None:
        state = self.state
        if info.subtype == "ErrorOff":
            text = self.expand(info.args[0]) if info.args else "1"
            lines = parse_int32(text)
            if lines is None or lines <= 0:
                raise ExecuteError(f"[{text}] is not a positive integer")
            if state.error_off.arm(ins.address, ctx.depth, ins.line_idx, lines):
                self.log(LogRecord(SUCCESS, f"Error and warning logs will be muted for [{lines}] lines"), ctx, ins)
            else:
                self.log(LogRecord(IGNORE, "ErrorOff is already enabled"), ctx, ins)
            return
        if info.subtype == "SetLocal":
            depth = state.scopes.push(
                self.variables,
                self.macros,
                script=ins.address.script,
                section=ins.address.section,
                depth=ctx.depth,
            )
            self.log(LogRecord(SUCCESS, f"Local variable isolation (depth {depth}) enabled"), ctx, ins)
            return
        if info.subtype == "EndLocal":
            top = state.scopes.peek()
            if top is None or not top.owned_by(ins.address.script, ins.address.section, ctx.depth):
                raise ExecuteError("[System,EndLocal] must be used with [System,SetLocal]")
            depth = len(state.scopes)
            state.scopes.pop_into(self.variables, self.macros)
            self.log(LogRecord(SUCCESS, f"Local variable isolation (depth {depth}) disabled"), ctx, ins)
            return
        raise CriticalError(f"Unsupported System sub command [{info.subtype}]", rule="DISPATCH")

    # ---- Macro ----

    def _execute_macro(self, ins: Instruction, info: MacroInfo, ctx: CallContext) -> None:
        state = self.state
        macro = self.macros.get(info.name)
        if macro is None:
            raise ExecuteError(f"Invalid command [{info.name}]")
        params = {
            idx: self.preprocessor.expand_section_params(
                arg,
                in_params=state.cur_in_params,
                out_params=state.out_params,
                return_value=state.return_value,
                loop_counter=self.loops.current_counter(),
            )
            for idx, arg in enumerate(info.args, start=1)
        }
        self.log(LogRecord(INFO, f"Executing command [{info.name}]"), ctx, ins)

        target = replace(macro, raw=ins.raw)
        saved = state.cur_in_params
        state.cur_in_params = params
        try:
            if isinstance(macro.info, RunExecInfo):
                self._run_exec(target, macro.info, ctx, preserve_params=True, is_macro=True)
            else:
                self.execute(target, ctx.deeper(is_macro=True))
        finally:
            state.cur_in_params = saved

    # ---- services for handlers ----

    def expand(self, text: str) -> str:
        state = self.state
        return self.preprocessor.preprocess(
            text,
            in_params=state.cur_in_params,
            out_params=state.out_params,
            return_value=state.return_value,
            loop_counter=self.loops.current_counter(),
        )

    def log(self, record: LogRecord, ctx: CallContext, instruction: Optional[Instruction] = None) -> LogEntry:
        return self.logger.write(record, ctx.depth, instruction=instruction, ref_script=ctx.ref_script_id)

    def log_many(self, records: Iterable[LogRecord], ctx: CallContext, instruction: Optional[Instruction] = None) -> None:
        self.logger.write_many(records, ctx.depth, instruction=instruction, ref_script=ctx.ref_script_id)

    def _fail(self, error: CriticalError, ctx: CallContext, instruction: Optional[Instruction]) -> None:
        entry = self.log(LogRecord(CRITICAL, f"Critical Error! {error.message}"), ctx, instruction)
        error.step_index = entry.step_index
        self.state.error_halt = True
        self.failed_frames = [replace(frame) for frame in self.call_stack]
        if self.verbose:
            self.failed_variables = self.variables.snapshot(LOCAL)

    def _emit_event(self, event: str, payload: Any) -> None:
        try:
            self.services.emit(self, event, payload)
        except CriticalError:
            raise
        except Exception as exc:
            raise CriticalError(f"Extension hook '{event}' failed: {exc}", rule="EXT") from exc


def interpreter_from_text(text: str, filename: str = "<string>", **kwargs: Any) -> Interpreter:
    return Interpreter(load_script_text(text, filename), **kwargs)


@dataclass
class TracebackFrame:
    script: str
    section: str
    depth: int
    line_idx: Optional[int]
    raw: Optional[str]


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self) -> List[TracebackFrame]:
        frames: List[TracebackFrame] = []
        for frame in self.interpreter.failed_frames or self.interpreter.call_stack:
            last = frame.last
            frames.append(
                TracebackFrame(
                    script=frame.script,
                    section=frame.section,
                    depth=frame.depth,
                    line_idx=last.line_idx if last else None,
                    raw=last.raw if last else None,
                )
            )
        return frames

    def format_text(self, error: CriticalError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames():
            if frame.line_idx is not None:
                lines.append(f"  Script \"{frame.script}\", section [{frame.section}], line {frame.line_idx + 1}")
                if frame.raw:
                    lines.append(f"    {frame.raw}")
            else:
                lines.append(f"  Script \"{frame.script}\", section [{frame.section}]")
        if error.step_index is not None:
            lines.append(f"  Log index: {error.step_index}")
        variables = self.interpreter.failed_variables
        if verbose and variables is not None:
            snapshot = ", ".join(f"%{k}%={v}" for k, v in variables.items())
            lines.append(f"  Local variables: {snapshot}")
        rule = error.rule or "runtime"
        lines.append(f"{error.__class__.__name__}: {error.message} (rule: {rule})")
        return "\n".join(lines)

    def to_json(self, error: CriticalError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames()):
            entry: Dict[str, Any] = {
                "frame_index": index,
                "script": frame.script,
                "section": frame.section,
                "depth": frame.depth,
            }
            if frame.line_idx is not None:
                entry["line"] = frame.line_idx + 1
                entry["raw"] = frame.raw
            frames_json.append(entry)
        data: Dict[str, Any] = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "rule": error.rule,
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
        }
        if self.interpreter.failed_variables is not None:
            data["local_variables"] = self.interpreter.failed_variables
        return json.dumps(data, indent=2)
