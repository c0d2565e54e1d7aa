from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

from parser import SectionAddress


@dataclass(frozen=True)
class ErrorOffState:
    address: SectionAddress
    depth: int
    start_line: int
    line_count: int

    @property
    def last_line(self) -> int:
        return self.start_line + self.line_count - 1


class ErrorSuppressionWindow:
    """System,ErrorOff bookkeeping.

    Arming only registers a waiting state. The interpreter calls `activate`
    before the next instruction starts, so the arming instruction's own log
    entries are never muted. The arming line counts as the first of the
    window's lines: after every instruction `after_line` expires the window
    once the instruction at `start_line + line_count - 1` of the arming
    section (at the arming depth) has run. A window always covers at least
    the instruction that follows the arming line.
    """

    def __init__(self) -> None:
        self.active: Optional[ErrorOffState] = None
        self.waiting: Optional[ErrorOffState] = None
        self.depth_minus_one = False

    @property
    def engaged(self) -> bool:
        return self.active is not None or self.waiting is not None

    def is_muting(self) -> bool:
        return self.active is not None

    def arm(self, address: SectionAddress, depth: int, current_line: int, lines: int) -> bool:
        """Register a window; returns False when one is already enabled."""
        if self.engaged:
            self.depth_minus_one = False
            return False
        if self.depth_minus_one:
            depth -= 1
            self.depth_minus_one = False
        self.waiting = ErrorOffState(address=address, depth=depth, start_line=current_line, line_count=lines)
        return True

    def activate(self) -> None:
        if self.waiting is not None:
            self.active = self.waiting
            self.waiting = None

    def after_line(self, address: SectionAddress, depth: int, line_idx: int, *, force: bool = False) -> None:
        state = self.active
        if state is None:
            return
        if not state.address.same_section(address) or state.depth != depth:
            return
        if force or state.last_line <= line_idx:
            self.active = None

    def finish_section(self, address: SectionAddress, depth: int) -> None:
        self.after_line(address, depth, -1, force=True)
        waiting = self.waiting
        if waiting is not None and waiting.address.same_section(address) and waiting.depth == depth:
            self.waiting = None

    def reset(self) -> None:
        self.active = None
        self.waiting = None
        self.depth_minus_one = False
