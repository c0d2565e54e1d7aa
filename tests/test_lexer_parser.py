from __future__ import annotations

import pytest

from lexer import Lexer, ScriptParseError, split_arguments
from parser import (
    CommandInfo,
    ElseInfo,
    ErrorInfo,
    IfInfo,
    LoopBreakInfo,
    LoopInfo,
    MacroInfo,
    Parser,
    RunExecInfo,
    SectionAddress,
    SystemInfo,
    parse_instruction_line,
)


ADDRESS = SectionAddress(script="<string>", section="Process")


def _parse(*lines: str):
    return Parser(list(lines), ADDRESS, command_names=["Echo", "Set"]).parse()


def test_lexer_emits_sections_and_skips_preamble() -> None:
    tokens = Lexer("ignored\n[Main]\nTitle=x\n[Process]\nEcho,1\n", "<string>").tokenize()
    kinds = [(token.type, token.value) for token in tokens]
    assert kinds == [
        ("SECTION", "Main"),
        ("LINE", "Title=x"),
        ("SECTION", "Process"),
        ("LINE", "Echo,1"),
        ("EOF", ""),
    ]


def test_split_arguments_honors_quotes() -> None:
    assert split_arguments('Echo,"a,b", c ') == ["Echo", "a,b", "c"]
    assert split_arguments('Echo,"say ""hi"""') == ["Echo", 'say ""hi""']


def test_split_arguments_rejects_odd_quotes() -> None:
    with pytest.raises(ScriptParseError):
        split_arguments('Echo,"unterminated')


def test_known_commands_and_macros() -> None:
    echo, macro = _parse("Echo,hello", "MyMacro,1,2")
    assert echo.kind == "Echo"
    assert isinstance(echo.info, CommandInfo)
    assert echo.info.args == ("hello",)
    assert macro.kind == "Macro"
    assert isinstance(macro.info, MacroInfo)
    assert macro.info.name == "MyMacro"
    assert macro.info.args == ("1", "2")


def test_comments_keep_line_indexes() -> None:
    comment, echo = _parse("// note", "Echo,x")
    assert comment.kind == "Comment"
    assert echo.line_idx == 1


def test_line_continuation_joins_arguments() -> None:
    (ins,) = _parse("Echo,\\", "joined")
    assert ins.info.args == ("joined",)
    assert ins.line_idx == 0


def test_run_and_runex_arguments() -> None:
    run, runex = _parse("Run,a.script,Sec,1,2", "RunEx,a.script,Sec,In=x,Out=%Y%")
    assert isinstance(run.info, RunExecInfo)
    assert run.info.params == ("1", "2")
    assert isinstance(runex.info, RunExecInfo)
    assert runex.info.params == ("x",)
    assert runex.info.out_params == ("%Y%",)


def test_runex_rejects_bare_arguments() -> None:
    (ins,) = _parse("RunEx,a.script,Sec,oops")
    assert ins.kind == "Error"
    assert isinstance(ins.info, ErrorInfo)
    assert "use [In=] or [Out=]" in ins.info.message


def test_loop_forms() -> None:
    loop, letter, brk = _parse("Loop,%ScriptFile%,Body,1,3", "LoopLetter,%ScriptFile%,Body,C,E", "Loop,BREAK")
    assert isinstance(loop.info, LoopInfo) and not loop.info.letter
    assert isinstance(letter.info, LoopInfo) and letter.info.letter
    assert isinstance(brk.info, LoopBreakInfo)


def test_system_subcommands() -> None:
    off, setlocal, bad = _parse("System,ErrorOff,3", "System,SetLocal", "System,Reboot")
    assert isinstance(off.info, SystemInfo)
    assert off.info.subtype == "ErrorOff"
    assert off.info.args == ("3",)
    assert setlocal.info.subtype == "SetLocal"
    assert bad.kind == "Error"


def test_if_with_embedded_command() -> None:
    (ins,) = _parse("If,%A%,Equal,1,Echo,yes")
    assert isinstance(ins.info, IfInfo)
    assert ins.info.condition.kind == "Equal"
    assert ins.info.condition.args == ("%A%", "1")
    assert [link.kind for link in ins.info.link] == ["Echo"]


def test_not_equal_folds_into_negated_equal() -> None:
    (ins,) = _parse("If,%A%,!=,1,Echo,yes")
    assert ins.info.condition.kind == "Equal"
    assert ins.info.condition.not_flag


def test_legacy_not_condition() -> None:
    (ins,) = _parse("If,NotExistFile,x.txt,Echo,missing")
    assert ins.info.condition.kind == "ExistFile"
    assert ins.info.condition.not_flag


def test_double_negation_is_an_error() -> None:
    (ins,) = _parse("If,Not,NotExistFile,x.txt,Echo,missing")
    assert ins.kind == "Error"
    assert "cannot be duplicated" in ins.info.message


def test_begin_end_block_folding() -> None:
    folded = _parse(
        "If,%A%,Equal,1,Begin",
        "Echo,one",
        "If,%B%,Equal,2,Begin",
        "Echo,two",
        "End",
        "End",
        "Else,Begin",
        "Echo,three",
        "End",
        "Echo,after",
    )
    assert [ins.kind for ins in folded] == ["If", "Else", "Echo"]
    outer = folded[0].info
    assert [ins.kind for ins in outer.link] == ["Echo", "If"]
    assert [ins.kind for ins in outer.link[1].info.link] == ["Echo"]
    assert isinstance(folded[1].info, ElseInfo)
    assert [ins.kind for ins in folded[1].info.link] == ["Echo"]


def test_else_if_chain() -> None:
    folded = _parse("If,1,Equal,1,Echo,a", "Else,If,1,Equal,2,Echo,b", "Else,Echo,c")
    assert [ins.kind for ins in folded] == ["If", "Else", "Else"]
    chained = folded[1].info.link
    assert [ins.kind for ins in chained] == ["If"]
    assert [ins.kind for ins in chained[0].info.link] == ["Echo"]


def test_else_without_if_is_an_error() -> None:
    folded = _parse("Echo,x", "Else,Echo,y")
    assert folded[1].kind == "Error"
    assert folded[1].info.message == "[Else] must be used after [If]"


def test_unmatched_begin_and_end() -> None:
    folded = _parse("If,1,Equal,1,Begin", "Echo,x")
    assert folded[0].kind == "Error"
    assert folded[0].info.message == "[Begin] must be matched with [End]"
    (stray,) = _parse("End")
    assert stray.info.message == "[End] must be matched with [Begin]"


def test_bad_opcode() -> None:
    (ins,) = _parse("Ech-o,x")
    assert ins.kind == "Error"
    assert ins.info.message.startswith("Wrong opcode [Ech-o]")


def test_parse_instruction_line() -> None:
    ins = parse_instruction_line("Echo,#1", ADDRESS, line_idx=4, command_names=["Echo"])
    assert ins.kind == "Echo"
    assert ins.line_idx == 4
    broken = parse_instruction_line("If,1,Equal,1,Begin", ADDRESS, command_names=["Echo"])
    assert broken.kind == "Error"
