from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from parser import Instruction


SUCCESS = "Success"
INFO = "Info"
WARNING = "Warning"
ERROR = "Error"
IGNORE = "Ignore"
OVERWRITE = "Overwrite"
CRITICAL = "CriticalError"
MUTED = "Muted"

SEVERITIES = (SUCCESS, INFO, WARNING, ERROR, IGNORE, OVERWRITE, CRITICAL, MUTED)
MUTABLE_SEVERITIES = (WARNING, ERROR, OVERWRITE)


@dataclass(frozen=True)
class LogRecord:
    """What a handler reports; the interpreter attaches position and depth."""

    state: str
    message: str


@dataclass(frozen=True)
class LogEntry:
    step_index: int
    state: str
    message: str
    depth: int
    script: Optional[str] = None
    section: Optional[str] = None
    line_idx: Optional[int] = None
    raw: Optional[str] = None
    ref_script: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_index": self.step_index,
            "state": self.state,
            "message": self.message,
            "depth": self.depth,
            "script": self.script,
            "section": self.section,
            "line_idx": self.line_idx,
            "raw": self.raw,
            "ref_script": self.ref_script,
        }


class BuildLogger:
    """In-memory build log.

    `mute_check` is consulted for every Warning/Error/Overwrite entry; when it
    answers True the entry is recorded with the Muted state instead.
    """

    def __init__(self, *, mute_check: Optional[Callable[[], bool]] = None, sink: Optional[Callable[[LogEntry], None]] = None) -> None:
        self.entries: List[LogEntry] = []
        self.next_step_index = 0
        self.mute_check = mute_check
        self.sink = sink

    def write(
        self,
        record: LogRecord,
        depth: int,
        *,
        instruction: Optional[Instruction] = None,
        ref_script: Optional[str] = None,
    ) -> LogEntry:
        state = record.state
        if state in MUTABLE_SEVERITIES and self.mute_check is not None and self.mute_check():
            state = MUTED
        entry = LogEntry(
            step_index=self.next_step_index,
            state=state,
            message=record.message,
            depth=depth,
            script=instruction.address.script if instruction else None,
            section=instruction.address.section if instruction else None,
            line_idx=instruction.line_idx if instruction else None,
            raw=instruction.raw if instruction else None,
            ref_script=ref_script,
        )
        self.entries.append(entry)
        self.next_step_index += 1
        if self.sink is not None:
            self.sink(entry)
        return entry

    def write_many(
        self,
        records: Iterable[LogRecord],
        depth: int,
        *,
        instruction: Optional[Instruction] = None,
        ref_script: Optional[str] = None,
    ) -> List[LogEntry]:
        return [self.write(record, depth, instruction=instruction, ref_script=ref_script) for record in records]

    def states(self) -> List[str]:
        return [entry.state for entry in self.entries]

    def messages(self, state: Optional[str] = None) -> List[str]:
        return [entry.message for entry in self.entries if state is None or entry.state == state]


def format_entry(entry: LogEntry) -> str:
    indent = "  " * max(entry.depth, 0)
    text = f"{indent}[{entry.state}] {entry.message}"
    if entry.raw:
        text += f" ({entry.raw})"
    return text