"""bakescript Extension: section timing.

Records wall-clock time per section through the section_start/section_end
events and adds one command:

    SectionTimes[,<%Var%>]

which logs count, total and mean milliseconds per section and optionally
stores the slowest section name into a local variable.
"""

from __future__ import annotations

import time
from typing import Dict, List, Tuple

import numpy as np

from extensions import ExtensionAPI, ProgramStarted, SectionEvent


BAKESCRIPT_EXTENSION_NAME = "sectiontime"
BAKESCRIPT_EXTENSION_API_VERSION = 1


class _Timings:
    def __init__(self) -> None:
        self.open: List[Tuple[str, float]] = []
        self.samples: Dict[str, List[float]] = {}

    def start(self, name: str) -> None:
        self.open.append((name, time.perf_counter()))

    def stop(self, name: str) -> None:
        # Sections close in LIFO order; skip a mismatched pop rather than guessing.
        if not self.open or self.open[-1][0] != name:
            return
        _, started = self.open.pop()
        self.samples.setdefault(name, []).append((time.perf_counter() - started) * 1000.0)

    def summary(self) -> List[Tuple[str, int, float, float]]:
        rows = []
        for name, values in self.samples.items():
            arr = np.asarray(values, dtype=np.float64)
            rows.append((name, int(arr.size), float(arr.sum()), float(arr.mean())))
        rows.sort(key=lambda row: row[2], reverse=True)
        return rows


def bakescript_register(ext: ExtensionAPI) -> None:
    timings = _Timings()

    def _on_start(interpreter, event: SectionEvent) -> None:
        timings.start(event.section.name)

    def _on_end(interpreter, event: SectionEvent) -> None:
        timings.stop(event.section.name)

    def _on_program_start(interpreter, event: ProgramStarted) -> None:
        timings.open.clear()
        timings.samples.clear()

    ext.on_event("section_start", _on_start)
    ext.on_event("section_end", _on_end)
    ext.on_event("program_start", _on_program_start)

    @ext.command("SectionTimes", 0, 1)
    def _section_times(interpreter, args: List[str], ctx, instruction):
        from commands import set_variable
        from logger import IGNORE, INFO, LogRecord

        rows = timings.summary()
        if not rows:
            return [LogRecord(IGNORE, "No section has finished yet")]
        logs = [
            LogRecord(INFO, f"Section [{name}] ran {count} time(s), total {total:.3f} ms, mean {mean:.3f} ms")
            for name, count, total, mean in rows
        ]
        if args:
            logs.append(set_variable(interpreter, args[0], rows[0][0]))
        return logs
