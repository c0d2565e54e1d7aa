from __future__ import annotations
import os
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from lexer import ExecuteError, Lexer, ScriptParseError, is_comment
from parser import Instruction, Parser, SectionAddress, parse_instruction_line


MAIN_SECTION = "Main"
VARIABLES_SECTION = "Variables"


@dataclass(frozen=True)
class Section:
    address: SectionAddress
    lines: Tuple[str, ...]
    instructions: Tuple[Instruction, ...]

    @property
    def name(self) -> str:
        return self.address.section


@dataclass(frozen=True)
class Script:
    """A loaded script file. Never mutated; reloading builds a new value."""

    path: str
    title: str
    sections: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    section_names: Dict[str, str] = field(default_factory=dict)

    @property
    def directory(self) -> str:
        if self.path.startswith("<"):
            return ""
        return os.path.dirname(self.path)

    def has_section(self, name: str) -> bool:
        return name.lower() in self.sections

    def raw_lines(self, name: str) -> Tuple[str, ...]:
        return self.sections.get(name.lower(), ())

    def canonical_section_name(self, name: str) -> str:
        return self.section_names.get(name.lower(), name)


@dataclass(frozen=True)
class ScriptDefaults:
    variables: Dict[str, str]
    macros: Dict[str, Instruction]


def load_script_text(text: str, filename: str = "<string>") -> Script:
    tokens = Lexer(text, filename).tokenize()
    sections: Dict[str, List[str]] = {}
    names: Dict[str, str] = {}
    current: Optional[List[str]] = None
    for token in tokens:
        if token.type == "SECTION":
            key = token.value.lower()
            # A repeated header continues the earlier section.
            current = sections.setdefault(key, [])
            names.setdefault(key, token.value)
        elif token.type == "LINE" and current is not None:
            current.append(token.value)

    title = ""
    for raw in sections.get(MAIN_SECTION.lower(), []):
        key, sep, value = raw.partition("=")
        if sep and key.strip().lower() == "title":
            title = value.strip()
            break
    if not title:
        title = os.path.splitext(os.path.basename(filename))[0] or filename

    path = filename if filename.startswith("<") else os.path.abspath(filename)
    return Script(
        path=path,
        title=title,
        sections={key: tuple(lines) for key, lines in sections.items()},
        section_names=names,
    )


def load_script(path: str) -> Script:
    try:
        with open(path, "r", encoding="utf-8-sig") as handle:
            text = handle.read()
    except OSError as exc:
        raise ScriptParseError(f"Failed to read {path}: {exc}") from exc
    return load_script_text(text, path)


def parse_key_values(lines: Iterable[str]) -> List[Tuple[str, str]]:
    pairs: List[Tuple[str, str]] = []
    for raw in lines:
        line = raw.strip()
        if not line or is_comment(line):
            continue
        key, sep, value = line.partition("=")
        if not sep or not key.strip():
            continue
        pairs.append((key.strip(), value.strip()))
    return pairs


def trim_percent(key: str) -> Optional[str]:
    """Return the bare name of a %Name% key, or None when it is not one."""
    key = key.strip()
    if len(key) > 2 and key.startswith("%") and key.endswith("%") and "%" not in key[1:-1]:
        return key[1:-1]
    return None


class ScriptResolver:
    def __init__(self, root: Optional[str] = None, *, command_names: Optional[Iterable[str]] = None) -> None:
        self.root = os.path.abspath(root or os.getcwd())
        self.command_names = set(command_names or ())
        self._scripts: Dict[str, Script] = {}
        self._sections: Dict[Tuple[str, str], Section] = {}
        self._lock = threading.Lock()

    def set_command_names(self, names: Iterable[str]) -> None:
        with self._lock:
            self.command_names = set(names)
            self._sections.clear()

    def _key(self, path: str, base: Optional[str] = None) -> str:
        if path.startswith("<"):
            return path.lower()
        if not os.path.isabs(path):
            path = os.path.join(base or self.root, path)
        return os.path.normcase(os.path.normpath(path))

    def register(self, script: Script) -> Script:
        with self._lock:
            self._scripts[self._key(script.path)] = script
        return script

    def resolve(self, current: Script, target_path: str) -> Script:
        target = target_path.strip()
        if not target or self._key(target, current.directory or None) == self._key(current.path):
            return current
        bases: List[Optional[str]] = []
        if os.path.isabs(target) or target.startswith("<"):
            bases.append(None)
        else:
            if current.directory:
                bases.append(current.directory)
            bases.append(self.root)
        for base in bases:
            key = self._key(target, base)
            with self._lock:
                cached = self._scripts.get(key)
            if cached is not None:
                return cached
            if not target.startswith("<") and os.path.isfile(key):
                try:
                    script = load_script(key)
                except ScriptParseError as exc:
                    raise ExecuteError(str(exc)) from exc
                return self.register(script)
        raise ExecuteError(f"Unable to find script [{target_path}]")

    def section_exists(self, script: Script, name: str) -> bool:
        return script.has_section(name)

    def load_section(self, script: Script, name: str) -> Section:
        if not script.has_section(name):
            raise ExecuteError(f"[{script.path}] does not have section [{name}]")
        cache_key = (script.path, name.lower())
        with self._lock:
            section = self._sections.get(cache_key)
            command_names = set(self.command_names)
        if section is not None:
            return section
        address = SectionAddress(script=script.path, section=script.canonical_section_name(name))
        lines = script.raw_lines(name)
        instructions = Parser(lines, address, command_names=command_names).parse()
        section = Section(address=address, lines=lines, instructions=tuple(instructions))
        with self._lock:
            self._sections[cache_key] = section
        return section

    def script_defaults(self, script: Script) -> ScriptDefaults:
        variables: Dict[str, str] = {
            "ScriptFile": script.path,
            "ScriptDir": script.directory,
            "ScriptTitle": script.title,
        }
        macros: Dict[str, Instruction] = {}
        address = SectionAddress(script=script.path, section=script.canonical_section_name(VARIABLES_SECTION))
        for idx, (key, value) in enumerate(parse_key_values(script.raw_lines(VARIABLES_SECTION))):
            name = trim_percent(key)
            if name is not None:
                variables[name] = value
            else:
                try:
                    macros[key] = parse_instruction_line(value, address, line_idx=idx, command_names=self.command_names)
                except ScriptParseError as exc:
                    raise ExecuteError(f"Invalid macro [{key}] in [{script.title}]: {exc}") from exc
        return ScriptDefaults(variables=variables, macros=macros)
