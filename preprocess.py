from __future__ import annotations
import re
from typing import Dict, Optional, Sequence

from variables import Variables


VARIABLE_RE = re.compile(r"%([^ %]+)%")
SECTION_PARAM_RE = re.compile(r"(?<!#)#(\d+|[aArRcC]|[oO]\d+)")

# Order matters: "##" must be unescaped last so "##$q" stays "#$q".
ESCAPES = (
    ("#$c", ","),
    ("#$p", "%"),
    ("#$q", '"'),
    ("#$s", " "),
    ("#$t", "\t"),
    ("#$x", "\r\n"),
)

MAX_EXPAND_PASSES = 32


def unescape(text: str) -> str:
    if "#" not in text:
        return text
    parts = text.split("##")
    out = []
    for part in parts:
        for seq, char in ESCAPES:
            part = part.replace(seq, char)
        out.append(part)
    return "#".join(out)


class Preprocessor:
    """Expands section parameters and %Variables%, then resolves escapes."""

    def __init__(self, variables: Variables, *, extended_params: bool = True) -> None:
        self.variables = variables
        self.extended_params = extended_params

    def expand_section_params(
        self,
        text: str,
        *,
        in_params: Dict[int, str],
        out_params: Sequence[str] = (),
        return_value: str = "",
        loop_counter: Optional[str] = None,
    ) -> str:
        if "#" not in text:
            return text

        def _sub(match: "re.Match[str]") -> str:
            token = match.group(1)
            if token.isdigit():
                return in_params.get(int(token), "")
            if not self.extended_params:
                return match.group(0)
            lowered = token.lower()
            if lowered == "a":
                return str(max(in_params.keys(), default=0))
            if lowered == "r":
                return return_value
            if lowered == "c":
                return loop_counter if loop_counter is not None else ""
            index = int(token[1:])
            if 1 <= index <= len(out_params):
                value = self.variables.get(out_params[index - 1].strip("%"))
                return value if value is not None else ""
            return ""

        return SECTION_PARAM_RE.sub(_sub, text)

    def expand_variables(self, text: str) -> str:
        for _ in range(MAX_EXPAND_PASSES):
            if "%" not in text:
                return text
            changed = False

            def _sub(match: "re.Match[str]") -> str:
                nonlocal changed
                value = self.variables.get(match.group(1))
                if value is None:
                    return match.group(0)
                changed = True
                return value

            text = VARIABLE_RE.sub(_sub, text)
            if not changed:
                break
        return text

    def preprocess(
        self,
        text: str,
        *,
        in_params: Dict[int, str],
        out_params: Sequence[str] = (),
        return_value: str = "",
        loop_counter: Optional[str] = None,
        escape: bool = True,
    ) -> str:
        text = self.expand_section_params(
            text,
            in_params=in_params,
            out_params=out_params,
            return_value=return_value,
            loop_counter=loop_counter,
        )
        text = self.expand_variables(text)
        return unescape(text) if escape else text
