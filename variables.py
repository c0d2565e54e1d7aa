from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from parser import Instruction


FIXED = "Fixed"
GLOBAL = "Global"
LOCAL = "Local"

# Lookup order used when a scope is not given explicitly.
LOOKUP_ORDER = (FIXED, LOCAL, GLOBAL)


@dataclass
class Scope:
    """Case-insensitive name -> value mapping that remembers the spelling used on first write."""

    values: Dict[str, Tuple[str, str]] = field(default_factory=dict)

    def get(self, name: str) -> Optional[str]:
        entry = self.values.get(name.lower())
        return entry[1] if entry is not None else None

    def set(self, name: str, value: str) -> None:
        key = name.lower()
        existing = self.values.get(key)
        self.values[key] = (existing[0] if existing else name, value)

    def delete(self, name: str) -> bool:
        return self.values.pop(name.lower(), None) is not None

    def has(self, name: str) -> bool:
        return name.lower() in self.values

    def snapshot(self) -> Dict[str, str]:
        return {original: value for original, value in self.values.values()}

    def replace(self, mapping: Dict[str, str]) -> None:
        self.values = {}
        for name, value in mapping.items():
            self.set(name, value)


class Variables:
    def __init__(self) -> None:
        self.scopes: Dict[str, Scope] = {FIXED: Scope(), GLOBAL: Scope(), LOCAL: Scope()}

    def get(self, name: str, scope: Optional[str] = None) -> Optional[str]:
        if scope is not None:
            return self.scopes[scope].get(name)
        for candidate in LOOKUP_ORDER:
            value = self.scopes[candidate].get(name)
            if value is not None:
                return value
        return None

    def scope_of(self, name: str) -> Optional[str]:
        for candidate in LOOKUP_ORDER:
            if self.scopes[candidate].has(name):
                return candidate
        return None

    def set(self, scope: str, name: str, value: str) -> None:
        self.scopes[scope].set(name, value)

    def delete(self, scope: str, name: str) -> bool:
        return self.scopes[scope].delete(name)

    def exists(self, name: str) -> bool:
        return self.scope_of(name) is not None

    def snapshot(self, scope: str) -> Dict[str, str]:
        return self.scopes[scope].snapshot()

    def restore(self, scope: str, mapping: Dict[str, str]) -> None:
        self.scopes[scope].replace(mapping)


class MacroTable:
    def __init__(self) -> None:
        self.global_macros: Dict[str, Instruction] = {}
        self.local_macros: Dict[str, Instruction] = {}

    def get(self, name: str) -> Optional[Instruction]:
        key = name.lower()
        if key in self.global_macros:
            return self.global_macros[key]
        return self.local_macros.get(key)

    def exists(self, name: str) -> bool:
        return self.get(name) is not None

    def set(self, name: str, instruction: Instruction, *, is_global: bool) -> None:
        table = self.global_macros if is_global else self.local_macros
        table[name.lower()] = instruction

    def delete(self, name: str, *, is_global: bool) -> bool:
        table = self.global_macros if is_global else self.local_macros
        return table.pop(name.lower(), None) is not None

    def snapshot_local(self) -> Dict[str, Instruction]:
        return dict(self.local_macros)

    def restore_local(self, mapping: Dict[str, Instruction]) -> None:
        self.local_macros = dict(mapping)

    def reset_local(self, mapping: Dict[str, Instruction]) -> None:
        self.local_macros = {name.lower(): ins for name, ins in mapping.items()}


@dataclass(frozen=True)
class ScopeSnapshot:
    """Local bindings saved by System,SetLocal, tied to the section and depth that pushed them."""

    script: str
    section: str
    depth: int
    local_vars: Dict[str, str]
    local_macros: Dict[str, Instruction]

    def owned_by(self, script: str, section: str, depth: int) -> bool:
        return self.script == script and self.section.lower() == section.lower() and self.depth == depth


class ScopeStack:
    def __init__(self) -> None:
        self._stack: List[ScopeSnapshot] = []

    def __len__(self) -> int:
        return len(self._stack)

    def push(self, variables: Variables, macros: MacroTable, *, script: str, section: str, depth: int) -> int:
        self._stack.append(
            ScopeSnapshot(
                script=script,
                section=section,
                depth=depth,
                local_vars=variables.snapshot(LOCAL),
                local_macros=macros.snapshot_local(),
            )
        )
        return len(self._stack)

    def peek(self) -> Optional[ScopeSnapshot]:
        return self._stack[-1] if self._stack else None

    def pop_into(self, variables: Variables, macros: MacroTable) -> ScopeSnapshot:
        snapshot = self._stack.pop()
        variables.restore(LOCAL, snapshot.local_vars)
        macros.restore_local(snapshot.local_macros)
        return snapshot
