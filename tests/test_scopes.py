from __future__ import annotations
import os

import pytest

from extensions import ExtensionAPI, RuntimeServices
from interpreter import CompatOptions, Interpreter
from lexer import CriticalError
from logger import ERROR, INFO, SUCCESS, WARNING
from script import load_script
from variables import FIXED, GLOBAL, LOCAL, Variables


def test_variable_lookup_order() -> None:
    variables = Variables()
    variables.set(GLOBAL, "Name", "global")
    assert variables.get("name") == "global"
    variables.set(LOCAL, "Name", "local")
    assert variables.get("NAME") == "local"
    variables.set(FIXED, "Name", "fixed")
    assert variables.get("Name") == "fixed"
    assert variables.scope_of("name") == FIXED


def test_set_and_echo(run_script) -> None:
    interp, out = run_script("[Process]\nSet,%A%,1\nSet,%G%,2,GLOBAL\nEcho,%A%-%G%-%Missing%\n")
    assert out == ["1-2-%Missing%"]
    assert "Local variable [%A%] set to [1]" in interp.logger.messages(SUCCESS)
    assert "Global variable [%G%] set to [2]" in interp.logger.messages(SUCCESS)
    assert interp.variables.get("G", GLOBAL) == "2"


def test_nil_deletes_variable(run_script) -> None:
    interp, _ = run_script("[Process]\nSet,%A%,1\nSet,%A%,NIL\nSet,%B%,NIL\n")
    assert interp.variables.get("A") is None
    assert "Local variable [%A%] was deleted" in interp.logger.messages(SUCCESS)
    assert "Local variable [%B%] does not exist" in interp.logger.messages()


def test_fixed_variables_are_protected(run_script) -> None:
    interp, _ = run_script("[Process]\nSet,%BaseDir%,elsewhere\n", fixed_variables={"Tools": "t"})
    assert interp.logger.messages(ERROR) == ["Fixed variable [%BaseDir%] cannot be overwritten"]

    compat = CompatOptions(overridable_fixed_variables=True)
    interp, _ = run_script("[Process]\nSet,%BaseDir%,elsewhere\n", compat=compat)
    assert interp.variables.get("BaseDir", FIXED) == "elsewhere"
    assert interp.logger.messages(WARNING) == ["Fixed variable [%BaseDir%] overwritten with [elsewhere]"]


def test_setlocal_endlocal_restores_bindings(run_script) -> None:
    script = (
        "[Process]\n"
        "Set,%A%,before\n"
        "System,SetLocal\n"
        "Set,%A%,inside\n"
        "Set,%B%,new\n"
        "Echo,%A%\n"
        "System,EndLocal\n"
        "Echo,%A%\n"
        "Echo,%B%\n"
    )
    interp, out = run_script(script)
    assert out == ["inside", "before", "%B%"]
    messages = interp.logger.messages(SUCCESS)
    assert "Local variable isolation (depth 1) enabled" in messages
    assert "Local variable isolation (depth 1) disabled" in messages


def test_setlocal_keeps_global_writes(run_script) -> None:
    interp, out = run_script("[Process]\nSystem,SetLocal\nSet,%G%,kept,GLOBAL\nSystem,EndLocal\nEcho,%G%\n")
    assert out == ["kept"]


def test_endlocal_without_setlocal(run_script) -> None:
    interp, _ = run_script("[Process]\nSystem,EndLocal\n")
    assert interp.logger.messages(ERROR) == ["[System,EndLocal] must be used with [System,SetLocal]"]


def test_endlocal_must_match_owner_section(run_script) -> None:
    script = "[Process]\nSystem,SetLocal\nRun,%ScriptFile%,Other\nSystem,EndLocal\n[Other]\nSystem,EndLocal\n"
    interp, _ = run_script(script)
    assert interp.logger.messages(ERROR) == ["[System,EndLocal] must be used with [System,SetLocal]"]
    assert "Local variable isolation (depth 1) disabled" in interp.logger.messages(SUCCESS)


def test_section_end_releases_open_scope(run_script) -> None:
    script = "[Process]\nSet,%A%,outer\nRun,%ScriptFile%,Inner\nEcho,%A%\n[Inner]\nSystem,SetLocal\nSet,%A%,inner\n"
    interp, out = run_script(script)
    assert out == ["outer"]
    assert "Local variable isolation (depth 1) implicitly disabled" in interp.logger.messages(WARNING)
    assert "Explicit use of [System.EndLocal] is recommended" in interp.logger.messages(INFO)
    assert len(interp.state.scopes) == 0


def test_exec_isolates_callee_scope(tmp_path) -> None:
    caller = tmp_path / "caller.script"
    callee = tmp_path / "callee.script"
    caller.write_text(
        "[Main]\nTitle=Caller\n"
        "[Variables]\n%Shared%=caller\n"
        "[Process]\nExec,callee.script,Work\nEcho,%Shared%\nEcho,%OnlyCallee%\n"
    )
    callee.write_text(
        "[Main]\nTitle=Callee\n"
        "[Variables]\n%Preset%=callee-default\n"
        "[Process]\nEcho,unused\n"
        "[Work]\nEcho,%Preset%\nSet,%Shared%,callee\nSet,%OnlyCallee%,x\nEcho,%Shared%\n"
    )
    out = []
    interp = Interpreter(load_script(str(caller)), output_sink=out.append)
    interp.run()
    assert out == ["callee-default", "callee", "caller", "%OnlyCallee%"]
    messages = interp.logger.messages(INFO)
    assert "Processing [Callee]'s Section [Work]" in messages
    assert "Loaded [4] local variables and [0] local macros of [Callee]" in messages
    assert "End of [Callee]'s Section [Work]" in messages


def _write_exec_pair(tmp_path, work: str) -> str:
    (tmp_path / "caller.script").write_text(
        "[Main]\nTitle=Caller\n"
        "[Variables]\n%X%=caller\nGreet=Echo,hi\n"
        "[Process]\nExec,callee.script,Work\nEcho,after\n"
    )
    (tmp_path / "callee.script").write_text(
        "[Main]\nTitle=Callee\n"
        "[Variables]\n%X%=callee\nOther=Echo,other\n"
        "[Work]\n" + work
    )
    return str(tmp_path / "caller.script")


def _assert_caller_scope(interp: Interpreter) -> None:
    assert interp.variables.get("X", LOCAL) == "caller"
    assert interp.variables.get("BaseDir", FIXED) == os.getcwd()
    assert set(interp.macros.local_macros) == {"greet"}


def test_exec_scope_restored_after_critical_error(tmp_path) -> None:
    def _boom(interpreter, args, ctx, instruction):
        raise RuntimeError("kaboom")

    services = RuntimeServices()
    ExtensionAPI(services=services, ext_name="test").register_command("Boom", 0, 0, _boom)
    path = _write_exec_pair(tmp_path, "Set,%BaseDir%,moved\nSet,%X%,changed\nBoom\n")
    interp = Interpreter(
        load_script(path),
        services=services,
        compat=CompatOptions(overridable_fixed_variables=True),
        output_sink=lambda text: None,
    )
    with pytest.raises(CriticalError):
        interp.run()
    assert "Fixed variable [%BaseDir%] overwritten with [moved]" in interp.logger.messages(WARNING)
    _assert_caller_scope(interp)


def test_exec_scope_restored_after_stop_request(tmp_path) -> None:
    out = []

    def _sink(text: str) -> None:
        out.append(text)
        if text == "inside":
            interp.request_stop()

    path = _write_exec_pair(tmp_path, "Set,%BaseDir%,moved\nSet,%X%,changed\nEcho,inside\nEcho,unreached\n")
    interp = Interpreter(
        load_script(path),
        compat=CompatOptions(overridable_fixed_variables=True),
        output_sink=_sink,
    )
    interp.run()
    assert out == ["inside"]
    assert "Build stopped by user" in interp.logger.messages(WARNING)
    _assert_caller_scope(interp)


def test_run_shares_caller_scope(tmp_path) -> None:
    (tmp_path / "main.script").write_text("[Process]\nRun,lib.script,Work\nEcho,%FromLib%\n")
    (tmp_path / "lib.script").write_text("[Main]\nTitle=Lib\n[Work]\nSet,%FromLib%,yes\n")
    out = []
    interp = Interpreter(load_script(str(tmp_path / "main.script")), output_sink=out.append)
    interp.run()
    assert out == ["yes"]
