"""bakescript entry point and REPL wiring."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from extensions import ExtensionError, load_runtime_services
from interpreter import ENTRY_SECTION, CompatOptions, Interpreter, TracebackFormatter
from lexer import CriticalError, ScriptParseError
from logger import LogEntry, format_entry
from script import Script, ScriptResolver, load_script, load_script_text


def _print_log(entries: List[LogEntry]) -> None:
    for entry in entries:
        print(format_entry(entry))


def run_repl(interpreter: Interpreter, show_log: bool) -> int:
    print("\x1b[38;2;153;221;255mbakescript\033[0m REPL. Enter commands, blank line to run buffer.")
    buffer: List[str] = []

    while True:
        prompt = "\x1b[38;2;153;221;255m>>>\033[0m " if not buffer else "\x1b[38;2;153;221;255m..>\033[0m "
        try:
            line = input(prompt)
        except EOFError:
            print()
            break

        stripped = line.strip()
        if stripped == "" and not buffer:
            continue
        if stripped != "":
            buffer.append(line)
            # Single commands run at once unless they open a Begin block or continue with '\'.
            opens_block = stripped.lower().endswith("begin") or stripped.endswith("\\")
            if len(buffer) > 1 or opens_block:
                continue

        lines = list(buffer)
        buffer.clear()
        try:
            entries = interpreter.run_lines(lines)
        except CriticalError as error:
            formatter = TracebackFormatter(interpreter)
            print(formatter.format_text(error, verbose=interpreter.verbose), file=sys.stderr)
            # keep the REPL usable after a fatal instruction
            interpreter.state.error_halt = False
            interpreter.state.error_off.reset()
            continue
        if show_log:
            _print_log(entries)
        if interpreter.state.exit_requested or interpreter.state.halt_requested:
            break

    return 0


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="bakescript section interpreter")
    parser.add_argument("script", nargs="?", help="Script file path or literal script text with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat script argument as literal script text")
    parser.add_argument("-section", "--section", dest="section", default=ENTRY_SECTION, help="Entry section (default: Process)")
    parser.add_argument("-ext", "--ext", dest="ext", action="append", default=[], help="Extension .py or .bsx pointer file (repeatable)")
    parser.add_argument("-compat", "--compat", dest="compat", action="append", default=[], help="Enable a compatibility option (repeatable)")
    parser.add_argument("-log", "--log", dest="show_log", action="store_true", help="Print the build log after the run")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Include local variables in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    args = parser.parse_args(argv)

    try:
        compat = CompatOptions.from_names(args.compat)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    try:
        services = load_runtime_services(args.ext)
    except ExtensionError as exc:
        print(f"ExtensionError: {exc}", file=sys.stderr)
        return 1

    if args.script is None:
        if args.source_mode:
            print("-source requires a script string", file=sys.stderr)
            return 1
        repl_script = load_script_text("", "<repl>")
        try:
            interpreter = Interpreter(repl_script, compat=compat, services=services, verbose=args.verbose)
        except ExtensionError as exc:
            print(f"ExtensionError: {exc}", file=sys.stderr)
            return 1
        return run_repl(interpreter, show_log=args.show_log)

    try:
        script: Script
        if args.source_mode:
            script = load_script_text(args.script, "<string>")
            resolver = ScriptResolver()
        else:
            script = load_script(args.script)
            resolver = ScriptResolver(root=script.directory or None)
    except ScriptParseError as error:
        print(f"ParseError: {error}", file=sys.stderr)
        return 1

    try:
        interpreter = Interpreter(
            script,
            resolver=resolver,
            compat=compat,
            services=services,
            verbose=args.verbose,
        )
    except ExtensionError as exc:
        print(f"ExtensionError: {exc}", file=sys.stderr)
        return 1

    try:
        entries = interpreter.run(args.section)
    except CriticalError as error:
        if args.show_log:
            _print_log(interpreter.logger.entries)
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    if args.show_log:
        _print_log(entries)
    if interpreter.state.halt_requested:
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
