from __future__ import annotations
import queue
import threading
import time
from typing import Dict, Optional, Tuple

import pytest

from branch import (
    WIMLIB_INVALID_IMAGE,
    WIMLIB_PATH_DOES_NOT_EXIST,
    BranchEvaluator,
    BranchProbes,
    ConsolePrompter,
    ImageError,
    parse_yes_no,
)
from lexer import ExecuteError
from parser import BranchCondition, SectionAddress, parse_instruction_line
from variables import LOCAL, MacroTable, Variables


REG_MULTI_SZ = 7


class FakeRegistry:
    def __init__(self) -> None:
        self.keys = {("HKEY_LOCAL_MACHINE", "Software\\Demo")}
        self.values: Dict[Tuple[str, str, str], Tuple[object, int]] = {
            ("HKEY_LOCAL_MACHINE", "Software\\Demo", "Paths"): (["C:\\A", "C:\\B"], REG_MULTI_SZ),
            ("HKEY_LOCAL_MACHINE", "Software\\Demo", "Name"): ("demo", 1),
        }

    def subkey_exists(self, root: str, subkey: str) -> bool:
        return (root, subkey) in self.keys

    def read_value(self, root: str, subkey: str, name: str) -> Optional[Tuple[object, int]]:
        return self.values.get((root, subkey, name))

    def is_multi_string(self, value_type: int) -> bool:
        return value_type == REG_MULTI_SZ


class FakeImage:
    def image_count(self, path: str) -> int:
        return 2

    def path_kind(self, path: str, index: int, inner: str) -> str:
        if index > 2:
            raise ImageError(WIMLIB_INVALID_IMAGE)
        if inner == "\\Windows":
            return "dir"
        if inner == "\\Windows\\notepad.exe":
            return "file"
        raise ImageError(WIMLIB_PATH_DOES_NOT_EXIST)

    def image_property(self, path: str, index: int, key: str) -> Optional[str]:
        return "Windows 10" if key == "NAME" else None


class FakeNetwork:
    def ping(self, host: str) -> bool:
        if host == "broken":
            raise OSError("no route")
        return host == "localhost"

    def online(self) -> bool:
        return True


class FakePrompter:
    def __init__(self, answer: bool, automatic: bool) -> None:
        self.answer = answer
        self.automatic = automatic
        self.asked = []

    def ask(self, message: str, timeout: Optional[int] = None, default: bool = False) -> Tuple[bool, bool]:
        self.asked.append((message, timeout, default))
        return self.answer, self.automatic


def _evaluator(prompter: Optional[FakePrompter] = None) -> BranchEvaluator:
    variables = Variables()
    variables.set(LOCAL, "Tool", "nasm")
    macros = MacroTable()
    address = SectionAddress(script="<string>", section="Variables")
    macros.set("Build", parse_instruction_line("Echo,build", address, command_names=["Echo"]), is_global=False)
    probes = BranchProbes(
        registry=FakeRegistry(),
        image=FakeImage(),
        network=FakeNetwork(),
        prompter=prompter or FakePrompter(True, False),
    )
    return BranchEvaluator(variables, macros, probes)


def _eval(kind: str, *args: str, negate: bool = False, prompter: Optional[FakePrompter] = None):
    return _evaluator(prompter).evaluate(BranchCondition(kind=kind, not_flag=negate, args=args), lambda text: text)


def test_comparison_messages() -> None:
    assert _eval("Equal", "5", "05") == (True, "[5] is equal to [05]")
    assert _eval("Smaller", "3", "10") == (True, "[3] is smaller than [10]")
    assert _eval("EqualX", "abc", "ABC") == (False, "[abc] is not equal to [ABC]")
    assert _eval("Equal", "1", "2", negate=True) == (True, "[1] is smaller than [2]")


def test_not_flag_keeps_message(tmp_path) -> None:
    missing = str(tmp_path / "missing.txt")
    assert _eval("ExistFile", missing, negate=True) == (True, f"File [{missing}] does not exist")


def test_exist_file_and_dir(tmp_path) -> None:
    target = tmp_path / "data.txt"
    target.write_text("x")
    (tmp_path / "sub").mkdir()
    assert _eval("ExistFile", str(target))[0]
    assert _eval("ExistFile", str(tmp_path / "*.txt"))[0]
    assert not _eval("ExistFile", str(tmp_path / "*.bin"))[0]
    assert not _eval("ExistFile", str(tmp_path / "sub"))[0]
    assert _eval("ExistDir", str(tmp_path / "sub"))[0]
    assert _eval("ExistDir", str(tmp_path / "s*"))[0]
    assert not _eval("ExistDir", str(target))[0]


def test_exist_section(tmp_path) -> None:
    ini = tmp_path / "settings.ini"
    ini.write_text("[General]\nkey=value\n")
    assert _eval("ExistSection", str(ini), "general") == (True, f"Section [general] exists in INI file [{ini}]")
    assert not _eval("ExistSection", str(ini), "Other")[0]
    assert not _eval("ExistSection", str(tmp_path / "nope.ini"), "General")[0]


def test_registry_conditions() -> None:
    assert _eval("ExistRegSubKey", "HKLM", "Software\\Demo") == (True, "Registry SubKey [HKLM\\Software\\Demo] exists")
    assert not _eval("ExistRegSubKey", "HKCU", "Software\\Demo")[0]
    assert _eval("ExistRegValue", "HKLM", "Software\\Demo", "Name")[0]
    assert not _eval("ExistRegValue", "HKLM", "Software\\Demo", "Missing")[0]


def test_registry_multi_string() -> None:
    matched, message = _eval("ExistRegMulti", "HKLM", "Software\\Demo", "Paths", "c:\\b")
    assert matched
    assert message == "Registry Value [HKLM\\Software\\Demo\\Paths] contains substring [c:\\b]"
    assert _eval("ExistRegMulti", "HKLM", "Software\\Demo", "Name", "demo") == (
        False,
        "Registry Value [HKLM\\Software\\Demo\\Name] is not REG_MULTI_SZ",
    )


def test_registry_root_must_be_known() -> None:
    with pytest.raises(ExecuteError):
        _eval("ExistRegSubKey", "HKXX", "Software")


def test_exist_var_and_macro() -> None:
    assert _eval("ExistVar", "%Tool%") == (True, "Variable [%Tool%] exists")
    assert _eval("ExistVar", "%Other%") == (False, "Variable [%Other%] does not exist")
    assert _eval("ExistVar", "Tool") == (False, "[Tool] is not a variable")
    assert _eval("ExistMacro", "build") == (True, "Macro [build] exists")
    assert not _eval("ExistMacro", "Deploy")[0]


def test_wim_conditions(tmp_path) -> None:
    wim = tmp_path / "install.wim"
    wim.write_bytes(b"MSWIM")
    path = str(wim)
    assert _eval("WimExistIndex", path, "2") == (True, f"ImageIndex [2] exists in [{path}]")
    assert not _eval("WimExistIndex", path, "3")[0]
    assert _eval("WimExistIndex", path, "0") == (False, "Index [0] is not a positive integer")
    assert _eval("WimExistDir", path, "1", "\\Windows")[0]
    assert not _eval("WimExistFile", path, "1", "\\Windows")[0]
    assert _eval("WimExistFile", path, "1", "\\Windows\\notepad.exe")[0]
    assert _eval("WimExistFile", path, "9", "\\Windows\\notepad.exe") == (
        False,
        "File [\\Windows\\notepad.exe] does not have image index [9]",
    )
    assert _eval("WimExistDir", path, "1", "\\Nope") == (False, f"Dir [\\Nope] does not exist in [{path}]")
    assert _eval("WimExistImageInfo", path, "1", "name") == (True, f"Key [NAME] exists in [{path}:1]")


def test_wim_file_must_exist(tmp_path) -> None:
    missing = str(tmp_path / "none.wim")
    assert _eval("WimExistIndex", missing, "1") == (False, f"Wim file [{missing}] does not exist")


def test_network_conditions() -> None:
    assert _eval("Ping", "localhost") == (True, "[localhost] responded to Ping")
    assert _eval("Ping", "example.invalid") == (False, "[example.invalid] did not respond to Ping")
    assert _eval("Ping", "broken") == (False, "Error while pinging [broken] : [no route]")
    assert _eval("Online") == (True, "Network is online")


def test_question_uses_prompter() -> None:
    prompter = FakePrompter(True, True)
    assert _eval("Question", "Continue?", "10", "True", prompter=prompter) == (True, "[Yes] was automatically chosen")
    assert prompter.asked == [("Continue?", 10, True)]
    assert _eval("Question", "Continue?", prompter=FakePrompter(False, False)) == (False, "[No] was chosen")


def test_parse_yes_no() -> None:
    assert parse_yes_no(" Yes ") is True
    assert parse_yes_no("n") is False
    assert parse_yes_no("maybe") is None


def test_console_prompter_reads_answer() -> None:
    shown = []
    prompter = ConsolePrompter(input_provider=lambda: "y", output_sink=shown.append)
    assert prompter.ask("Proceed?", timeout=5) == (True, False)
    assert shown == ["Proceed? [y/n, 5s]"]


def test_console_prompter_times_out_to_default() -> None:
    release = threading.Event()

    def _blocking_input() -> str:
        release.wait(5)
        return "n"

    prompter = ConsolePrompter(input_provider=_blocking_input, output_sink=lambda text: None)
    try:
        assert prompter.ask("Proceed?", timeout=1, default=True) == (True, True)
    finally:
        release.set()


def test_console_prompter_keeps_answer_after_timeout() -> None:
    lines: "queue.Queue[str]" = queue.Queue()
    shown = []

    def _show(text: str) -> None:
        shown.append(text)
        if text.startswith("Second?"):
            lines.put("y")

    prompter = ConsolePrompter(input_provider=lines.get, output_sink=_show)
    assert prompter.ask("First?", timeout=1, default=False) == (False, True)
    assert prompter.ask("Second?", timeout=5, default=False) == (True, False)
    assert shown == ["First? [y/n, 1s]", "Second? [y/n, 5s]"]


def test_console_prompter_discards_stale_reply() -> None:
    lines: "queue.Queue[str]" = queue.Queue()
    prompter = ConsolePrompter(input_provider=lines.get, output_sink=lambda text: None)
    assert prompter.ask("First?", timeout=1, default=True) == (True, True)
    lines.put("n")
    for _ in range(500):
        if prompter._replies.qsize():
            break
        time.sleep(0.01)
    lines.put("y")
    assert prompter.ask("Second?", timeout=5, default=False) == (True, False)
