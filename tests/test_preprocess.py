from __future__ import annotations

from interpreter import CompatOptions
from logger import ERROR, MUTED, WARNING, BuildLogger, LogRecord, format_entry
from preprocess import Preprocessor, unescape
from variables import GLOBAL, LOCAL, Variables


def _preprocessor(extended: bool = True) -> Preprocessor:
    variables = Variables()
    variables.set(LOCAL, "Name", "bake")
    variables.set(LOCAL, "Nested", "%Name%-script")
    variables.set(GLOBAL, "Target", "out")
    return Preprocessor(variables, extended_params=extended)


def test_variables_expand_recursively() -> None:
    pre = _preprocessor()
    assert pre.expand_variables("%Nested% to %TARGET%") == "bake-script to out"
    assert pre.expand_variables("100% sure, %Unknown%") == "100% sure, %Unknown%"


def test_section_params() -> None:
    pre = _preprocessor()
    params = {1: "a", 3: "c"}
    text = pre.expand_section_params(
        "#1/#2/#3/#a/#r/#c/#o1",
        in_params=params,
        out_params=("%Target%",),
        return_value="ret",
        loop_counter="7",
    )
    assert text == "a//c/3/ret/7/out"


def test_extended_params_can_be_disabled() -> None:
    pre = _preprocessor(extended=False)
    text = pre.expand_section_params("#1 #a #r #c", in_params={1: "x"}, return_value="ret", loop_counter="2")
    assert text == "x #a #r #c"


def test_escapes() -> None:
    assert unescape("a#$cb") == "a,b"
    assert unescape("#$p#$q#$s#$t") == '%" \t'
    assert unescape("##$q") == "#$q"
    assert unescape("line#$xnext") == "line\r\nnext"


def test_preprocess_runs_params_then_variables_then_escapes() -> None:
    pre = _preprocessor()
    text = pre.preprocess("%#1%#$c#2", in_params={1: "Name", 2: "two"})
    assert text == "bake,two"


def test_disable_extended_section_params_in_scripts(run_script) -> None:
    compat = CompatOptions(disable_extended_section_params=True)
    _, out = run_script("[Process]\nRun,%ScriptFile%,Show,x\n[Show]\nEcho,#1 #a\n", compat=compat)
    assert out == ["x #a"]


def test_logger_mutes_only_error_severities() -> None:
    muted = {"on": True}
    logger = BuildLogger(mute_check=lambda: muted["on"])
    logger.write(LogRecord(ERROR, "failed"), 1)
    logger.write(LogRecord(WARNING, "careful"), 1)
    logger.write(LogRecord("Success", "fine"), 1)
    muted["on"] = False
    logger.write(LogRecord(ERROR, "loud"), 2)
    assert logger.states() == [MUTED, MUTED, "Success", ERROR]
    assert [entry.step_index for entry in logger.entries] == [0, 1, 2, 3]
    assert format_entry(logger.entries[-1]) == "    [Error] loud"
    assert logger.entries[0].to_dict()["message"] == "failed"
