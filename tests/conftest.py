"""Shared fixtures for the RASM test suite."""

from typing import Iterable, List, Optional

import pytest

from interpreter import Interpreter


class Console:
    """In-memory stand-in for stdin/stdout/stderr of an interpreter."""

    def __init__(self, inputs: Iterable[str] = ()) -> None:
        self.output: List[str] = []
        self.errors: List[str] = []
        self.inputs: List[str] = list(inputs)

    def write(self, text: str) -> None:
        self.output.append(text)

    def write_error(self, text: str) -> None:
        self.errors.append(text)

    def read(self) -> str:
        if not self.inputs:
            return ""
        return self.inputs.pop(0)

    @property
    def text(self) -> str:
        return "".join(self.output)

    @property
    def error_text(self) -> str:
        return "".join(self.errors)


def make_interpreter(source: str = "", console: Optional[Console] = None, **kwargs) -> Interpreter:
    console = console if console is not None else Console()
    return Interpreter(
        source=source,
        filename="test.rasm",
        input_provider=console.read,
        output_sink=console.write,
        error_sink=console.write_error,
        **kwargs,
    )


def run_lines(interpreter: Interpreter, *lines: str) -> None:
    for line in lines:
        interpreter.execute_line(line)


@pytest.fixture
def console() -> Console:
    return Console()


@pytest.fixture
def vm(console: Console) -> Interpreter:
    return make_interpreter(console=console)
