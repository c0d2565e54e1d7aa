from __future__ import annotations
import re
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from lexer import ScriptParseError, is_comment, split_arguments


OPCODE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
MACRO_NAME_RE = re.compile(r"^[A-Za-z0-9_]+$")
QUESTION_TIMEOUT_RE = re.compile(r"[0-9]+$")

# Instruction kinds the interpreter handles itself. Every other known opcode
# goes through the command table.
CONTROL_KINDS = (
    "Comment",
    "Error",
    "Begin",
    "End",
    "Run",
    "Exec",
    "RunEx",
    "Loop",
    "LoopLetter",
    "LoopEx",
    "LoopLetterEx",
    "If",
    "Else",
    "System",
    "Macro",
)

SYSTEM_SUBTYPES = {"erroroff": "ErrorOff", "setlocal": "SetLocal", "endlocal": "EndLocal"}

COMPARISON_OPERATORS = {
    "equal": "Equal",
    "==": "Equal",
    "equalx": "EqualX",
    "===": "EqualX",
    "smaller": "Smaller",
    "<": "Smaller",
    "bigger": "Bigger",
    ">": "Bigger",
    "smallerequal": "SmallerEqual",
    "<=": "SmallerEqual",
    "biggerequal": "BiggerEqual",
    ">=": "BiggerEqual",
    "notequal": "NotEqual",
    "!=": "NotEqual",
}

COMPARISON_KINDS = ("Equal", "EqualX", "Smaller", "Bigger", "SmallerEqual", "BiggerEqual")

# Condition name -> (canonical kind, argument count). Question is variadic.
CONDITION_ARGC: Dict[str, Tuple[str, int]] = {
    "existfile": ("ExistFile", 1),
    "existdir": ("ExistDir", 1),
    "existsection": ("ExistSection", 2),
    "existregsection": ("ExistRegSubKey", 2),
    "existregsubkey": ("ExistRegSubKey", 2),
    "existregkey": ("ExistRegValue", 3),
    "existregvalue": ("ExistRegValue", 3),
    "existregmulti": ("ExistRegMulti", 4),
    "existvar": ("ExistVar", 1),
    "existmacro": ("ExistMacro", 1),
    "wimexistindex": ("WimExistIndex", 2),
    "wimexistfile": ("WimExistFile", 3),
    "wimexistdir": ("WimExistDir", 3),
    "wimexistimageinfo": ("WimExistImageInfo", 3),
    "ping": ("Ping", 1),
    "online": ("Online", 0),
    "question": ("Question", 1),
}

LEGACY_NOT_CONDITIONS = {
    "notexistfile": "existfile",
    "notexistdir": "existdir",
    "notexistsection": "existsection",
    "notexistregsection": "existregsection",
    "notexistregkey": "existregkey",
    "notexistvar": "existvar",
}


@dataclass(frozen=True)
class SectionAddress:
    script: str
    section: str

    def same_section(self, other: "SectionAddress") -> bool:
        return self.script == other.script and self.section.lower() == other.section.lower()


@dataclass(frozen=True)
class InstructionInfo:
    pass


@dataclass(frozen=True)
class NoInfo(InstructionInfo):
    pass


@dataclass(frozen=True)
class ErrorInfo(InstructionInfo):
    message: str


@dataclass(frozen=True)
class RunExecInfo(InstructionInfo):
    script_file: str
    section: str
    params: Tuple[str, ...] = ()
    out_params: Tuple[str, ...] = ()


@dataclass(frozen=True)
class LoopInfo(InstructionInfo):
    script_file: str
    section: str
    start: str
    end: str
    letter: bool = False
    params: Tuple[str, ...] = ()
    out_params: Tuple[str, ...] = ()


@dataclass(frozen=True)
class LoopBreakInfo(InstructionInfo):
    pass


@dataclass(frozen=True)
class BranchCondition:
    kind: str
    not_flag: bool
    args: Tuple[str, ...]


@dataclass(frozen=True)
class IfInfo(InstructionInfo):
    condition: BranchCondition
    embed: "Instruction"
    link: Tuple["Instruction", ...] = ()


@dataclass(frozen=True)
class ElseInfo(InstructionInfo):
    embed: "Instruction"
    link: Tuple["Instruction", ...] = ()


@dataclass(frozen=True)
class SystemInfo(InstructionInfo):
    subtype: str
    args: Tuple[str, ...] = ()


@dataclass(frozen=True)
class MacroInfo(InstructionInfo):
    name: str
    args: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CommandInfo(InstructionInfo):
    args: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Instruction:
    kind: str
    info: InstructionInfo
    address: SectionAddress
    line_idx: int
    raw: str


def is_single_kind(link: Sequence[Instruction], kind: str, subtype: Optional[str] = None) -> bool:
    """True when the link holds exactly one non-comment instruction of the given kind."""
    code = [ins for ins in link if ins.kind != "Comment"]
    if len(code) != 1 or code[0].kind != kind:
        return False
    if subtype is None:
        return True
    info = code[0].info
    return isinstance(info, SystemInfo) and info.subtype == subtype


class Parser:
    def __init__(
        self,
        lines: Sequence[str],
        address: SectionAddress,
        *,
        command_names: Optional[Iterable[str]] = None,
    ):
        self.lines = list(lines)
        self.address = address
        self.kinds: Dict[str, str] = {kind.lower(): kind for kind in CONTROL_KINDS if kind not in ("Comment", "Error", "Macro")}
        for name in command_names or ():
            self.kinds.setdefault(name.lower(), name)
        self._builders: Dict[str, Callable[[List[str]], InstructionInfo]] = {
            "Run": self._parse_run_exec,
            "Exec": self._parse_run_exec,
            "RunEx": self._parse_run_ex,
            "Loop": self._parse_loop,
            "LoopLetter": self._parse_loop,
            "LoopEx": self._parse_loop_ex,
            "LoopLetterEx": self._parse_loop_ex,
            "System": self._parse_system,
        }

    def parse(self) -> List[Instruction]:
        flat: List[Instruction] = []
        index = 0
        while index < len(self.lines):
            line_idx = index
            raw = self.lines[index].strip()
            index += 1
            if not raw:
                continue
            if is_comment(raw):
                flat.append(self._make("Comment", NoInfo(), raw, line_idx))
                continue
            try:
                args = split_arguments(raw)
                while len(args) > 1 and args[-1] == "\\":
                    if index >= len(self.lines):
                        raise ScriptParseError("Last command of a section cannot end with '\\'")
                    args = args[:-1] + split_arguments(self.lines[index].strip())
                    index += 1
                flat.append(self._build(args, raw, line_idx))
            except ScriptParseError as exc:
                flat.append(self._make("Error", ErrorInfo(str(exc)), raw, line_idx))
        return self._fold(flat)

    # ---- single line ----

    def _make(self, kind: str, info: InstructionInfo, raw: str, line_idx: int) -> Instruction:
        return Instruction(kind=kind, info=info, address=self.address, line_idx=line_idx, raw=raw)

    def _build(self, args: List[str], raw: str, line_idx: int) -> Instruction:
        opcode = args[0].strip()
        if not OPCODE_RE.match(opcode):
            raise ScriptParseError(f"Wrong opcode [{opcode}], only alphabet, digit and underscore can be used")
        operands = args[1:]
        kind = self.kinds.get(opcode.lower())
        if kind is None:
            if not MACRO_NAME_RE.match(opcode):
                raise ScriptParseError(f"Invalid macro name [{opcode}]")
            return self._make("Macro", MacroInfo(name=opcode, args=tuple(operands)), raw, line_idx)
        if kind == "If":
            condition, rest = self._parse_condition(operands)
            embed = self._build_embed(rest, line_idx)
            return self._make(kind, IfInfo(condition=condition, embed=embed), raw, line_idx)
        if kind == "Else":
            embed = self._build_embed(operands, line_idx)
            return self._make(kind, ElseInfo(embed=embed), raw, line_idx)
        if kind in ("Begin", "End"):
            if operands:
                raise ScriptParseError(f"[{kind}] does not take arguments")
            return self._make(kind, NoInfo(), raw, line_idx)
        builder = self._builders.get(kind)
        if builder is None:
            return self._make(kind, CommandInfo(args=tuple(operands)), raw, line_idx)
        if kind in ("LoopLetter", "LoopLetterEx"):
            info = builder(operands)
            if isinstance(info, LoopInfo):
                info = replace(info, letter=True)
            return self._make(kind, info, raw, line_idx)
        return self._make(kind, builder(operands), raw, line_idx)

    def _build_embed(self, args: List[str], line_idx: int) -> Instruction:
        if not args or not args[0]:
            raise ScriptParseError("Embedded command is missing")
        return self._build(list(args), ",".join(args), line_idx)

    def _parse_run_exec(self, args: List[str]) -> InstructionInfo:
        if len(args) < 2:
            raise ScriptParseError("Run requires <ScriptFile>,<Section>")
        return RunExecInfo(script_file=args[0], section=args[1], params=tuple(args[2:]))

    def _split_in_out(self, args: Sequence[str]) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
        in_params: List[str] = []
        out_params: List[str] = []
        for arg in args:
            lowered = arg.lower()
            if lowered.startswith("in="):
                in_params.append(arg[3:])
            elif lowered.startswith("out="):
                out_params.append(arg[4:])
            else:
                raise ScriptParseError(f"Invalid argument [{arg}], use [In=] or [Out=]")
        return tuple(in_params), tuple(out_params)

    def _parse_run_ex(self, args: List[str]) -> InstructionInfo:
        if len(args) < 2:
            raise ScriptParseError("RunEx requires <ScriptFile>,<Section>")
        in_params, out_params = self._split_in_out(args[2:])
        return RunExecInfo(script_file=args[0], section=args[1], params=in_params, out_params=out_params)

    def _parse_loop(self, args: List[str]) -> InstructionInfo:
        if len(args) == 1 and args[0].lower() == "break":
            return LoopBreakInfo()
        if len(args) < 4:
            raise ScriptParseError("Loop requires <ScriptFile>,<Section>,<Start>,<End>")
        return LoopInfo(script_file=args[0], section=args[1], start=args[2], end=args[3], params=tuple(args[4:]))

    def _parse_loop_ex(self, args: List[str]) -> InstructionInfo:
        if len(args) == 1 and args[0].lower() == "break":
            return LoopBreakInfo()
        if len(args) < 4:
            raise ScriptParseError("LoopEx requires <ScriptFile>,<Section>,<Start>,<End>")
        in_params, out_params = self._split_in_out(args[4:])
        return LoopInfo(
            script_file=args[0],
            section=args[1],
            start=args[2],
            end=args[3],
            params=in_params,
            out_params=out_params,
        )

    def _parse_system(self, args: List[str]) -> InstructionInfo:
        if not args:
            raise ScriptParseError("System requires a sub command")
        subtype = SYSTEM_SUBTYPES.get(args[0].lower())
        if subtype is None:
            raise ScriptParseError(f"Invalid System sub command [{args[0]}]")
        operands = tuple(args[1:])
        if subtype == "ErrorOff" and len(operands) > 1:
            raise ScriptParseError("System,ErrorOff takes at most one argument")
        if subtype in ("SetLocal", "EndLocal") and operands:
            raise ScriptParseError(f"System,{subtype} does not take arguments")
        return SystemInfo(subtype=subtype, args=operands)

    def _parse_condition(self, args: List[str]) -> Tuple[BranchCondition, List[str]]:
        if not args:
            raise ScriptParseError("Branch condition is missing")
        idx = 0
        not_flag = False
        if args[0].lower() == "not":
            not_flag = True
            idx = 1
        if idx >= len(args):
            raise ScriptParseError("Branch condition is missing")

        head = args[idx].lower()
        legacy = LEGACY_NOT_CONDITIONS.get(head)
        if legacy is not None:
            if not_flag:
                raise ScriptParseError("Branch condition [Not] cannot be duplicated")
            not_flag = True
            head = legacy

        entry = CONDITION_ARGC.get(head)
        if entry is not None:
            kind, argc = entry
            if kind == "Question" and idx + 2 < len(args) and QUESTION_TIMEOUT_RE.search(args[idx + 2]):
                argc = 3
            begin = idx + 1
            if len(args) < begin + argc:
                raise ScriptParseError(f"Branch condition [{kind}] requires {argc} argument(s)")
            cond_args = tuple(args[begin:begin + argc])
            return BranchCondition(kind=kind, not_flag=not_flag, args=cond_args), args[begin + argc:]

        if len(args) < idx + 3:
            raise ScriptParseError(f"Incorrect branch condition [{args[idx]}]")
        operator = COMPARISON_OPERATORS.get(args[idx + 1].lower())
        if operator is None:
            raise ScriptParseError(f"Incorrect branch condition [{args[idx + 1]}]")
        if operator == "NotEqual":
            if not_flag:
                raise ScriptParseError("Branch condition [Not] cannot be duplicated")
            operator = "Equal"
            not_flag = True
        condition = BranchCondition(kind=operator, not_flag=not_flag, args=(args[idx], args[idx + 2]))
        return condition, args[idx + 3:]

    # ---- block folding ----

    def _fold(self, flat: Sequence[Instruction]) -> List[Instruction]:
        out: List[Instruction] = []
        index = 0
        else_allowed = False
        while index < len(flat):
            ins = flat[index]
            try:
                if ins.kind == "If":
                    folded, index = self._fold_branch(flat, index)
                    out.append(folded)
                    else_allowed = True
                    continue
                if ins.kind == "Else":
                    if not else_allowed:
                        raise ScriptParseError("[Else] must be used after [If]")
                    folded, index = self._fold_branch(flat, index)
                    out.append(folded)
                    else_allowed = isinstance(folded.info, ElseInfo) and folded.info.embed.kind == "If"
                    continue
                if ins.kind == "Begin":
                    raise ScriptParseError("[Begin] must be used with [If] or [Else]")
                if ins.kind == "End":
                    raise ScriptParseError("[End] must be matched with [Begin]")
            except ScriptParseError as exc:
                out.append(self._make("Error", ErrorInfo(str(exc)), ins.raw, ins.line_idx))
                index += 1
                else_allowed = False
                continue
            if ins.kind != "Comment":
                else_allowed = False
            out.append(ins)
            index += 1
        return out

    def _fold_branch(self, flat: Sequence[Instruction], index: int) -> Tuple[Instruction, int]:
        ins = flat[index]
        info = ins.info
        if not isinstance(info, (IfInfo, ElseInfo)):
            raise ScriptParseError(f"Invalid payload for [{ins.kind}]")
        link, next_index = self._fold_embed(info.embed, flat, index)
        return replace(ins, info=replace(info, link=link)), next_index

    def _fold_embed(self, embed: Instruction, flat: Sequence[Instruction], index: int) -> Tuple[Tuple[Instruction, ...], int]:
        if embed.kind == "Begin":
            end = self._match_end(flat, index + 1)
            if end < 0:
                raise ScriptParseError("[Begin] must be matched with [End]")
            return tuple(self._fold(flat[index + 1:end])), end + 1
        if embed.kind == "If":
            info = embed.info
            if not isinstance(info, IfInfo):
                raise ScriptParseError("Invalid payload for [If]")
            inner, next_index = self._fold_embed(info.embed, flat, index)
            return (replace(embed, info=replace(info, link=inner)),), next_index
        if embed.kind in ("Else", "End"):
            raise ScriptParseError(f"[{embed.kind}] cannot be embedded")
        return (embed,), index + 1

    @staticmethod
    def _opens_block(ins: Instruction) -> bool:
        while isinstance(ins.info, (IfInfo, ElseInfo)):
            ins = ins.info.embed
        return ins.kind == "Begin"

    def _match_end(self, flat: Sequence[Instruction], start: int) -> int:
        nested = 1
        for index in range(start, len(flat)):
            ins = flat[index]
            if ins.kind in ("If", "Else") and self._opens_block(ins):
                nested += 1
            elif ins.kind == "End":
                nested -= 1
                if nested == 0:
                    return index
        return -1


def parse_instruction_line(
    line: str,
    address: SectionAddress,
    *,
    line_idx: int = 0,
    command_names: Optional[Iterable[str]] = None,
) -> Instruction:
    """Parse a single command line, used for macro definitions."""
    parsed = Parser([line], address, command_names=command_names).parse()
    if len(parsed) != 1:
        raise ScriptParseError(f"[{line}] is not a single command")
    return replace(parsed[0], line_idx=line_idx)
