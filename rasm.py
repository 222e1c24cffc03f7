"""RASM entry point, interactive shell and REPL wiring."""

from __future__ import annotations
import argparse
import os
import sys
from typing import List, Optional

from interpreter import DEFAULT_MAX_DEPTH, ExitSignal, Interpreter, RASMRuntimeError, TracebackFormatter
from lexer import RASMParseError
from parser import SourceLocation


MENU = "1. Run a file\n2. REPL mode\n3. Exit\n> "
REPL_PROMPT = "REPL> "
CLEAR_SCREEN = "\x1b[2J\x1b[1;1H"


def _report_runtime_error(interpreter: Interpreter, error: RASMRuntimeError, *, verbose: bool, traceback_json: bool) -> int:
    formatter = TracebackFormatter(interpreter)
    print(formatter.format_text(error, verbose=verbose), file=sys.stderr)
    if traceback_json:
        print(formatter.to_json(error), file=sys.stderr)
    return 1


def run_source(
    source_text: str,
    filename: str,
    *,
    verbose: bool = False,
    max_depth: int = DEFAULT_MAX_DEPTH,
    traceback_json: bool = False,
) -> Optional[int]:
    """Run a whole program.

    Returns None when the program finished without calling ``exit`` so that
    the interactive shell can continue, otherwise the process exit status.
    """
    try:
        interpreter = Interpreter(
            source=source_text,
            filename=filename,
            verbose=verbose,
            max_depth=max_depth,
        )
    except RASMParseError as error:
        print(f"ParseError: {error}", file=sys.stderr)
        return 1
    try:
        interpreter.run()
    except ExitSignal as sig:
        return sig.code
    except RASMRuntimeError as error:
        return _report_runtime_error(interpreter, error, verbose=verbose, traceback_json=traceback_json)
    return None


def run_repl(
    *,
    verbose: bool = False,
    max_depth: int = DEFAULT_MAX_DEPTH,
    traceback_json: bool = False,
) -> Optional[int]:
    """Execute instruction lines one at a time on a single machine.

    ``exit`` returns to the caller, ``reset`` replaces the machine state and
    ``clear`` clears the terminal. A fatal error ends the whole process.
    """
    interpreter = Interpreter(source="", filename="<repl>", verbose=verbose, max_depth=max_depth)
    line_number = 0
    while True:
        try:
            line = input(REPL_PROMPT)
        except EOFError:
            print()
            return None
        line_number += 1
        stripped = line.strip()
        if stripped == "exit":
            return None
        if stripped == "clear":
            print(CLEAR_SCREEN, end="", flush=True)
            continue
        if stripped == "reset":
            interpreter.reset()
            continue
        try:
            interpreter.execute_line(stripped, SourceLocation("<repl>", line_number, stripped))
        except ExitSignal as sig:
            return sig.code
        except RASMRuntimeError as error:
            return _report_runtime_error(interpreter, error, verbose=verbose, traceback_json=traceback_json)


def run_shell(
    *,
    verbose: bool = False,
    max_depth: int = DEFAULT_MAX_DEPTH,
    traceback_json: bool = False,
) -> int:
    while True:
        try:
            choice = input(MENU).strip()
        except EOFError:
            print()
            return 0
        if choice == "1":
            try:
                filename = input("Enter file name: ").strip()
            except EOFError:
                print()
                return 0
            if not os.path.isfile(filename):
                print(f"\nFile does not exist: {filename}\n", file=sys.stderr)
                continue
            try:
                with open(filename, "r", encoding="utf-8") as handle:
                    source_text = handle.read()
            except OSError as exc:
                print(f"Failed to read {filename}: {exc}", file=sys.stderr)
                continue
            status = run_source(
                source_text,
                filename,
                verbose=verbose,
                max_depth=max_depth,
                    traceback_json=traceback_json,
            )
        elif choice == "2":
            status = run_repl(verbose=verbose, max_depth=max_depth, traceback_json=traceback_json)
        elif choice == "3":
            return 0
        else:
            print("Invalid option.")
            continue
        if status is not None:
            return status


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="RASM register assembly interpreter")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit register snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--max-depth", type=int, default=DEFAULT_MAX_DEPTH, help="Maximum number of nested function frames")
    args = parser.parse_args(argv)

    if args.max_depth < 1:
        parser.error("--max-depth must be >= 1")

    options = dict(verbose=args.verbose, max_depth=args.max_depth, traceback_json=args.traceback_json)

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_shell(**options)

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    status = run_source(source_text, filename, **options)
    return 0 if status is None else status


def main() -> None:
    sys.exit(run_cli())


if __name__ == "__main__":
    main()
