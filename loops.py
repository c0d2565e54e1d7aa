from __future__ import annotations
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Union

from lexer import ExecuteError
from logger import ERROR, INFO, LogRecord
from numhelper import parse_int64
from parser import Instruction

if TYPE_CHECKING:
    from interpreter import CallContext, Interpreter
    from script import Script, Section


NUMERIC = "Numeric"
LETTER = "Letter"


@dataclass
class LoopFrame:
    kind: str
    counter: Union[int, str]

    def display(self) -> str:
        return str(self.counter)


class LoopStack:
    def __init__(self) -> None:
        self._frames: List[LoopFrame] = []

    def __len__(self) -> int:
        return len(self._frames)

    def push(self, frame: LoopFrame) -> int:
        self._frames.append(frame)
        return len(self._frames)

    def pop(self) -> LoopFrame:
        return self._frames.pop()

    def peek(self) -> Optional[LoopFrame]:
        return self._frames[-1] if self._frames else None

    def clear(self) -> None:
        self._frames.clear()


@dataclass(frozen=True)
class LoopBounds:
    kind: str
    start_text: str
    end_text: str
    first: int
    last: int
    lowercase: bool = False

    @property
    def count(self) -> int:
        return max(self.last - self.first + 1, 0)

    def counter_at(self, value: int) -> Union[int, str]:
        if self.kind == NUMERIC:
            return value
        letter = chr(value)
        return letter.lower() if self.lowercase else letter


@dataclass(frozen=True)
class LoopTarget:
    script: "Script"
    section: "Section"
    in_current_script: bool


def _is_letter(text: str) -> bool:
    return len(text) == 1 and text.isascii() and text.isalpha()


def parse_loop_bounds(start: str, end: str, *, letter: bool, allow_letter_in_loop: bool = False) -> LoopBounds:
    if not letter:
        first = parse_int64(start)
        last = parse_int64(end)
        if first is None and last is None and allow_letter_in_loop and _is_letter(start) and _is_letter(end):
            letter = True
        elif first is None:
            raise ExecuteError(f"Argument [{start}] is not a valid integer")
        elif last is None:
            raise ExecuteError(f"Argument [{end}] is not a valid integer")
        else:
            return LoopBounds(kind=NUMERIC, start_text=start, end_text=end, first=first, last=last)

    if not _is_letter(start):
        raise ExecuteError(f"Argument [{start}] is not a valid drive letter")
    if not _is_letter(end):
        raise ExecuteError(f"Argument [{end}] is not a valid drive letter")
    first = ord(start.upper())
    last = ord(end.upper())
    if last < first:
        raise ExecuteError("<StartLetter> must be smaller than <EndLetter> in lexicographic order")
    return LoopBounds(kind=LETTER, start_text=start, end_text=end, first=first, last=last, lowercase=start.islower())


class LoopController:
    def __init__(self, interpreter: "Interpreter") -> None:
        self.interpreter = interpreter
        self.stack = LoopStack()

    def current_counter(self) -> Optional[str]:
        frame = self.stack.peek()
        return frame.display() if frame is not None else None

    def break_loop(self) -> LogRecord:
        if not self.stack:
            return LogRecord(ERROR, "Loop is not running")
        self.stack.pop()
        return LogRecord(INFO, "Breaking loop")

    def run_loop(
        self,
        bounds: LoopBounds,
        target: LoopTarget,
        in_params: Dict[int, str],
        out_params: Sequence[str],
        ctx: "CallContext",
        instruction: Instruction,
    ) -> None:
        interp = self.interpreter
        count = bounds.count
        section_name = target.section.name
        if target.in_current_script:
            message = f"Loop Section [{section_name}] [{count}] times ({bounds.start_text} ~ {bounds.end_text})"
        else:
            message = f"Loop [{target.script.title}]'s Section [{section_name}] [{count}] times"
        interp.log(LogRecord(INFO, message), ctx, instruction)

        body_ctx = replace(ctx, ref_script_id=None if target.in_current_script else target.script.path)
        overridable = interp.compat.overridable_loop_counter
        for loop_idx, value in enumerate(range(bounds.first, bounds.last + 1), start=1):
            counter = bounds.counter_at(value)
            interp.log(LogRecord(INFO, f"Entering Loop with [{counter}] ({loop_idx}/{count})"), ctx, instruction)
            interp.log_section_params(in_params, out_params, ctx, instruction)

            expected = self.stack.push(LoopFrame(kind=bounds.kind, counter=counter))
            popped: Optional[LoopFrame] = None
            try:
                interp.run_section(target.script, target.section, dict(in_params), out_params, body_ctx)
            finally:
                # Loop,Break already removed this frame when the size dropped.
                if len(self.stack) == expected:
                    popped = self.stack.pop()
            if popped is None:
                break

            end_message = f"End of Loop with [{counter}] ({loop_idx}/{count})"
            if overridable and popped.display() != str(counter):
                end_message = f"End of Loop with [{popped.display()}] (Overridden) ({loop_idx}/{count})"
            interp.log(LogRecord(INFO, end_message), ctx, instruction)
