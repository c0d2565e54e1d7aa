from __future__ import annotations
from typing import Callable, List, Tuple

import pytest

from interpreter import Interpreter, interpreter_from_text


RunResult = Tuple[Interpreter, List[str]]


@pytest.fixture
def run_script() -> Callable[..., RunResult]:
    """Run script text from [Process] and collect everything it echoes."""

    def _run(text: str, **kwargs) -> RunResult:
        out: List[str] = []
        interp = interpreter_from_text(text, output_sink=out.append, **kwargs)
        interp.run()
        return interp, out

    return _run
