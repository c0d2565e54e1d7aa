from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Tuple


class BakeError(Exception):
    """Base class for interpreter errors."""


class ScriptParseError(BakeError):
    """Raised when a script file cannot be read or tokenized."""


@dataclass
class Token:
    type: str
    value: str
    line: int
    column: int


COMMENT_PREFIXES = ("//", "#", ";")


class Lexer:
    """Splits script text into SECTION and LINE tokens.

    Lines that appear before the first section header are ignored, the same
    way an INI reader skips them. LINE tokens keep the raw text so the parser
    can report it back in log entries.
    """

    def __init__(self, text: str, filename: str) -> None:
        self.text = text
        self.filename = filename
        self.line = 0

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        in_section = False
        text = self.text
        if text.startswith("\ufeff"):
            text = text[1:]

        for raw in text.splitlines():
            self.line += 1
            stripped = raw.strip()
            if stripped.startswith("[") and stripped.endswith("]") and len(stripped) > 2:
                name = stripped[1:-1].strip()
                if not name:
                    raise ScriptParseError(f"Empty section name at {self.filename}:{self.line}")
                tokens_append(Token("SECTION", name, self.line, 1))
                in_section = True
                continue
            if not in_section:
                continue
            tokens_append(Token("LINE", raw, self.line, 1))
        tokens_append(Token("EOF", "", self.line + 1, 1))
        return tokens


def is_comment(line: str) -> bool:
    return line.strip().startswith(COMMENT_PREFIXES)


def next_argument(text: str) -> Tuple[str, Optional[str]]:
    """Return the next comma separated argument and the unparsed remainder.

    A leading double quote groups the argument until the matching quote, so
    commas inside it do not split. A doubled quote inside a quoted argument is
    an escaped quote and is kept as-is. The remainder is None once the last
    argument has been consumed.
    """
    text = text.strip()
    if text.startswith('"'):
        close = text.find('"', 1)
        while True:
            if close == -1:
                raise ScriptParseError("Double-quote's number should be an even number")
            if close + 1 < len(text) and text[close + 1] == '"':
                close = text.find('"', close + 2)
                continue
            break
        value = text[1:close]
        rest = text[close + 1:]
        comma = rest.find(",")
        if comma == -1:
            if rest.strip():
                raise ScriptParseError(f"Unexpected text after a quoted argument [{rest.strip()}]")
            return value, None
        if rest[:comma].strip():
            raise ScriptParseError(f"Unexpected text after a quoted argument [{rest[:comma].strip()}]")
        return value, rest[comma + 1:]

    comma = text.find(",")
    if comma == -1:
        return text, None
    return text[:comma].strip(), text[comma + 1:]


def split_arguments(line: str) -> List[str]:
    args: List[str] = []
    remainder: Optional[str] = line
    while remainder is not None:
        value, remainder = next_argument(remainder)
        args.append(value)
    return args


class ExecuteError(BakeError):
    """Script-level failure; reported as an Error log entry for the current instruction."""


class CriticalError(BakeError):
    """Engine-invariant violation; aborts the whole run."""

    def __init__(self, message: str, *, rule: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.rule = rule
        self.step_index: Optional[int] = None
