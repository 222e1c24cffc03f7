from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from lexer import RASMParseError


FUNCTION_KEYWORD = "fun "
END_KEYWORD = "end"
COMMENT_PREFIX = "//"


@dataclass
class SourceLocation:
    file: str
    line: int
    statement: str


@dataclass(frozen=True)
class SourceLine:
    text: str
    location: Optional[SourceLocation] = None


@dataclass
class Function:
    name: str
    body: List[SourceLine]
    location: Optional[SourceLocation] = None


@dataclass
class Program:
    functions: Dict[str, Function] = field(default_factory=dict)


class Parser:
    """Groups the lines of a source file into named function bodies.

    A function starts at a line beginning with ``fun <name>`` and runs up to the
    next line starting with ``end``. Comment lines (``//``) and blank lines
    inside a body are dropped; everything outside a function is ignored.
    """

    def __init__(self, text: str, filename: str) -> None:
        self.text = text
        self.filename = filename
        self.lines = text.splitlines()
        self.index = 0

    def parse(self) -> Program:
        program = Program()
        while self.index < len(self.lines):
            number, line = self._next_line()
            if line == "":
                continue
            if line.startswith(FUNCTION_KEYWORD):
                function = self._parse_function(number, line)
                program.functions[function.name] = function
        return program

    def _parse_function(self, number: int, header: str) -> Function:
        parts = header.split()
        if len(parts) != 2:
            raise RASMParseError(
                f"Invalid function declaration: {header} at {self.filename}:{number}"
            )
        name = parts[1]
        body: List[SourceLine] = []
        while self.index < len(self.lines):
            line_no, line = self._next_line()
            if line == "":
                continue
            if line.startswith(END_KEYWORD):
                break
            stripped = line.lstrip()
            if stripped.startswith(COMMENT_PREFIX) or stripped == "":
                continue
            body.append(SourceLine(stripped, SourceLocation(self.filename, line_no, stripped)))
        return Function(name=name, body=body, location=SourceLocation(self.filename, number, header))

    def _next_line(self) -> Tuple[int, str]:
        line = self.lines[self.index]
        self.index += 1
        return self.index, line


def parse_source(text: str, filename: str) -> Program:
    return Parser(text, filename).parse()
