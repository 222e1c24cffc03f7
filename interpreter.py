from __future__ import annotations
import json
import operator
import sys
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from lexer import RASMError, split_line
from parser import Function, SourceLine, SourceLocation, parse_source
from values import (
    NULL,
    TYPE_BOOL,
    TYPE_INT,
    TYPE_STR,
    LiteralError,
    Value,
    classify_literal,
    fits_int64,
    flt_value,
    int_value,
    loop_count,
    str_value,
    truncating_div,
)


GENERAL_REGISTERS = [f"R{i}" for i in range(13)]
PARAMETER_REGISTERS = [f"P{i}" for i in range(13)]
RETURN_REGISTERS = [f"RET{i}" for i in range(13)]
LOOP_REGISTERS = ["L0"]
REGISTER_NAMES = GENERAL_REGISTERS + PARAMETER_REGISTERS + RETURN_REGISTERS + LOOP_REGISTERS

ENTRY_FUNCTION = "main"
DEFAULT_MAX_DEPTH = 100_000
# Number of executed lines kept for tracebacks.
HISTORY_LIMIT = 1024


class RASMRuntimeError(RASMError):
    """Raised for runtime faults."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rule = rule
        self.step_index: Optional[int] = None


class ExitSignal(Exception):
    def __init__(self, code: int = 0) -> None:
        super().__init__(code)
        self.code = code


class RegisterFile:
    """The fixed set of named registers. Names outside the set are never created."""

    def __init__(self) -> None:
        self.values: Dict[str, Value] = {name: NULL for name in REGISTER_NAMES}

    def exists(self, name: str) -> bool:
        return name in self.values

    def read(self, name: str) -> Value:
        try:
            return self.values[name]
        except KeyError:
            raise RASMRuntimeError(f"Unknown register '{name}'", rule="REG")

    def write(self, name: str, value: Value) -> None:
        if name not in self.values:
            raise RASMRuntimeError(f"Unknown register '{name}'", rule="REG")
        self.values[name] = value

    def names(self) -> List[str]:
        return list(REGISTER_NAMES)

    def snapshot(self) -> Dict[str, str]:
        def _render(val: Value) -> str:
            rendered = val.debug()
            if len(rendered) > 80:
                rendered = rendered[:77] + "..."
            return rendered

        return {k: _render(v) for k, v in self.values.items()}


@dataclass
class Flags:
    equal: bool = False
    greater: bool = False
    lesser: bool = False
    zero: bool = False

    def set_comparison(self, equal: bool, greater: bool, lesser: bool) -> None:
        self.equal = equal
        self.greater = greater
        self.lesser = lesser

    def clear_comparison(self) -> None:
        self.set_comparison(False, False, False)


@dataclass
class Frame:
    name: str
    body: List[SourceLine]
    frame_id: str
    call_location: Optional[SourceLocation]
    cursor: int = 0
    # Further passes over the body still owed to a LOOP.
    repeat: int = 0


@dataclass
class StateEntry:
    step_index: int
    frame_id: Optional[str]
    source_location: Optional[SourceLocation]
    statement: Optional[str]
    register_snapshot: Optional[Dict[str, str]]
    # Mnemonic of the executed line.
    rule: Optional[str]


class StateLogger:
    def __init__(self, verbose: bool, history: int = HISTORY_LIMIT) -> None:
        self.verbose = verbose
        self.entries: Deque[StateEntry] = deque(maxlen=history)
        self.next_step_index = 0
        self.frame_last_entry: Dict[str, StateEntry] = {}

    def record(
        self,
        *,
        frame: Optional[Frame],
        location: Optional[SourceLocation],
        statement: Optional[str],
        rule: Optional[str] = None,
        register_snapshot: Optional[Dict[str, str]] = None,
    ) -> StateEntry:
        entry = StateEntry(
            step_index=self.next_step_index,
            frame_id=frame.frame_id if frame else None,
            source_location=location,
            statement=statement,
            register_snapshot=register_snapshot,
            rule=rule,
        )
        self.entries.append(entry)
        if frame:
            self.frame_last_entry[frame.frame_id] = entry
        self.next_step_index += 1
        return entry

    def last_entry_for_frame(self, frame_id: str) -> Optional[StateEntry]:
        return self.frame_last_entry.get(frame_id)

    def forget_frame(self, frame_id: str) -> None:
        self.frame_last_entry.pop(frame_id, None)


BuiltinImpl = Callable[["Interpreter", Optional[SourceLocation]], None]


@dataclass
class BuiltinTarget:
    name: str
    impl: BuiltinImpl


class Builtins:
    """Reserved jump targets. These always win over user functions of the same name."""

    def __init__(self) -> None:
        self.table: Dict[str, BuiltinTarget] = {}
        self._register("debug", self._debug)
        self._register("print", self._print)
        self._register("printline", self._printline)
        self._register("input", self._input)
        self._register("exit", self._exit)

    def _register(self, name: str, impl: BuiltinImpl) -> None:
        self.table[name] = BuiltinTarget(name=name, impl=impl)

    def names(self) -> List[str]:
        return list(self.table)

    def lookup(self, name: str) -> Optional[BuiltinTarget]:
        return self.table.get(name)

    def _print(self, interpreter: "Interpreter", _: Optional[SourceLocation]) -> None:
        interpreter.output_sink(interpreter.registers.read("P0").render())

    def _printline(self, interpreter: "Interpreter", _: Optional[SourceLocation]) -> None:
        interpreter.output_sink(interpreter.registers.read("P0").render() + "\n")

    def _input(self, interpreter: "Interpreter", _: Optional[SourceLocation]) -> None:
        line = interpreter.input_provider()
        interpreter.registers.write("RET0", str_value((line or "").strip()))

    def _debug(self, interpreter: "Interpreter", _: Optional[SourceLocation]) -> None:
        interpreter.output_sink(interpreter.dump_state() + "\n")

    def _exit(self, interpreter: "Interpreter", _: Optional[SourceLocation]) -> None:
        code = interpreter.registers.read("P0").render()
        interpreter.output_sink(f"Process exited with code '{code}'\n")
        raise ExitSignal(0)


def _default_output(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


def _default_error(text: str) -> None:
    sys.stderr.write(text)
    sys.stderr.flush()


InstructionImpl = Callable[[List[str], Optional[SourceLocation]], None]

# JL and JLE share the JGE condition.
JUMP_CONDITIONS: Dict[str, Callable[[Flags], bool]] = {
    "JMP": lambda flags: True,
    "JE": lambda flags: flags.equal,
    "JNE": lambda flags: not flags.equal,
    "JG": lambda flags: flags.greater,
    "JGE": lambda flags: flags.greater or flags.equal,
    "JL": lambda flags: flags.greater or flags.equal,
    "JLE": lambda flags: flags.greater or flags.equal,
    "JZ": lambda flags: flags.zero,
    "JNZ": lambda flags: not flags.zero,
}


class Interpreter:
    def __init__(
        self,
        *,
        source: str = "",
        filename: str = "<string>",
        verbose: bool = False,
        max_depth: int = DEFAULT_MAX_DEPTH,
        input_provider: Optional[Callable[[], str]] = None,
        output_sink: Optional[Callable[[str], None]] = None,
        error_sink: Optional[Callable[[str], None]] = None,
    ) -> None:
        if max_depth < 1:
            raise ValueError("max_depth must be >= 1")
        self.source = source
        self.filename = filename
        self.verbose = verbose
        self.max_depth = max_depth
        self.input_provider = input_provider or sys.stdin.readline
        self.output_sink = output_sink or _default_output
        self.error_sink = error_sink or _default_error
        self.builtins = Builtins()

        self.instructions: Dict[str, InstructionImpl] = {
            "MOV": self._mov,
            "PUSH": self._push,
            "POP": self._pop,
            "INC": self._inc,
            "DEC": self._dec,
            "ADD": self._add,
            "SUB": self._sub,
            "MUL": self._mul,
            "DIV": self._div,
            "CMP": self._cmp,
            "LOOP": self._loop,
        }
        for mnemonic in JUMP_CONDITIONS:
            self.instructions[mnemonic] = self._make_jump(mnemonic)

        self.reset()
        self.functions = parse_source(source, filename).functions

    def reset(self) -> None:
        """Drop all machine state: registers, stack, flags, functions and frames."""
        self.registers = RegisterFile()
        self.stack: List[Value] = []
        self.flags = Flags()
        self.functions: Dict[str, Function] = {}
        self.call_stack: List[Frame] = []
        self.frame_counter = 0
        self.logger = StateLogger(verbose=self.verbose)
        self.logger.record(frame=None, location=None, statement="<start>", rule="START")

    # ---- entry points ----

    def run(self) -> None:
        if ENTRY_FUNCTION not in self.functions:
            raise RASMRuntimeError("No main function found", rule="RUN")
        self._guarded(self._transfer, ENTRY_FUNCTION, 1, None, "RUN")

    def execute_line(self, line: str, location: Optional[SourceLocation] = None) -> None:
        """Execute one instruction line, including every function it transfers to."""
        self._guarded(self._step, line, location)

    def _guarded(self, fn: Callable[..., None], *args: Any) -> None:
        base = len(self.call_stack)
        try:
            fn(*args)
            self._drain(base)
        except ExitSignal:
            raise
        except RASMRuntimeError as error:
            if error.step_index is None:
                error.step_index = self.logger.entries[-1].step_index
            raise
        except Exception as exc:
            # Convert unexpected Python-level exceptions into RASMRuntimeError
            # so callers (REPL/CLI) can format them as tracebacks.
            last = self.logger.entries[-1]
            wrapped = RASMRuntimeError(
                f"Internal interpreter error: {exc}", location=last.source_location, rule="internal"
            )
            wrapped.step_index = last.step_index
            raise wrapped from exc

    # ---- driver ----

    def _drain(self, base: int) -> None:
        stack = self.call_stack
        step = self._step
        while len(stack) > base:
            frame = stack[-1]
            if frame.cursor >= len(frame.body):
                if frame.repeat > 0:
                    frame.repeat -= 1
                    frame.cursor = 0
                    continue
                stack.pop()
                self.logger.forget_frame(frame.frame_id)
                continue
            source = frame.body[frame.cursor]
            frame.cursor += 1
            step(source.text, source.location)

    def _step(self, line: str, location: Optional[SourceLocation]) -> None:
        tokens = split_line(line)
        rule = tokens[0].upper() if tokens else "<empty>"
        self._log_step(rule=rule, line=line, location=location)
        self._dispatch(line, tokens, location)

    def _dispatch(self, line: str, tokens: List[str], location: Optional[SourceLocation]) -> None:
        if len(tokens) < 2:
            self.error_sink(f"Invalid instruction: {line}\n")
            return
        handler = self.instructions.get(tokens[0].upper())
        if handler is None:
            self.output_sink(f"Unknown command: {tokens[0]}\n")
            return
        operands = tokens[1:]
        if operands[0].endswith(","):
            operands[0] = operands[0][:-1]
        handler(operands, location)

    # ---- operand helpers ----

    def _register_operand(self, name: str, rule: str, location: Optional[SourceLocation]) -> str:
        if not self.registers.exists(name):
            raise RASMRuntimeError(f"{rule} targets non-existent register '{name}'", location=location, rule=rule)
        return name

    def _source_operand(self, operands: List[str], rule: str, location: Optional[SourceLocation]) -> str:
        if len(operands) < 2:
            raise RASMRuntimeError(f"{rule} expects a source operand", location=location, rule=rule)
        return operands[1]

    def _value_of(self, token: str, rule: str, location: Optional[SourceLocation]) -> Value:
        if self.registers.exists(token):
            return self.registers.read(token)
        try:
            return classify_literal(token)
        except LiteralError as exc:
            raise RASMRuntimeError(exc.message, location=location, rule=rule)

    def _binary_operands(
        self, operands: List[str], rule: str, location: Optional[SourceLocation]
    ) -> Tuple[str, Value, Value]:
        dst = self._register_operand(operands[0], rule, location)
        other = self._value_of(self._source_operand(operands, rule, location), rule, location)
        return dst, self.registers.read(dst), other

    def _expect_numeric(self, value: Value, what: str, rule: str, location: Optional[SourceLocation]) -> None:
        if not value.is_numeric():
            raise RASMRuntimeError(
                f"{rule} expects a numeric {what}, got {value.type}", location=location, rule=rule
            )

    def _checked_int(self, result: int, rule: str, location: Optional[SourceLocation]) -> int:
        if not fits_int64(result):
            raise RASMRuntimeError("Integer overflow", location=location, rule=rule)
        return result

    def _arithmetic(
        self,
        rule: str,
        a: Value,
        b: Value,
        op: Callable[[Any, Any], Any],
        location: Optional[SourceLocation],
    ) -> Value:
        self._expect_numeric(a, "register", rule, location)
        self._expect_numeric(b, "operand", rule, location)
        if a.type == TYPE_INT and b.type == TYPE_INT:
            result = self._checked_int(op(a.value, b.value), rule, location)
            self.flags.zero = result == 0
            return int_value(result)
        flt = op(float(a.value), float(b.value))
        self.flags.zero = flt == 0.0
        return flt_value(flt)

    # ---- instructions ----

    def _mov(self, operands: List[str], location: Optional[SourceLocation]) -> None:
        dst = self._register_operand(operands[0], "MOV", location)
        value = self._value_of(self._source_operand(operands, "MOV", location), "MOV", location)
        self.registers.write(dst, value)

    def _push(self, operands: List[str], location: Optional[SourceLocation]) -> None:
        self.stack.append(self._value_of(operands[0], "PUSH", location))

    def _pop(self, operands: List[str], location: Optional[SourceLocation]) -> None:
        dst = self._register_operand(operands[0], "POP", location)
        if not self.stack:
            raise RASMRuntimeError("Attempted to pop from empty stack", location=location, rule="POP")
        self.registers.write(dst, self.stack.pop())

    def _inc(self, operands: List[str], location: Optional[SourceLocation]) -> None:
        self._step_register(operands, "INC", operator.add, location)

    def _dec(self, operands: List[str], location: Optional[SourceLocation]) -> None:
        self._step_register(operands, "DEC", operator.sub, location)

    def _step_register(
        self, operands: List[str], rule: str, op: Callable[[Any, Any], Any], location: Optional[SourceLocation]
    ) -> None:
        dst = self._register_operand(operands[0], rule, location)
        current = self.registers.read(dst)
        self._expect_numeric(current, "register", rule, location)
        self.registers.write(dst, self._arithmetic(rule, current, int_value(1), op, location))

    def _add(self, operands: List[str], location: Optional[SourceLocation]) -> None:
        dst, current, other = self._binary_operands(operands, "ADD", location)
        if current.type == TYPE_STR and other.type == TYPE_STR:
            self.registers.write(dst, str_value(current.value + other.value))
            return
        self.registers.write(dst, self._arithmetic("ADD", current, other, operator.add, location))

    def _sub(self, operands: List[str], location: Optional[SourceLocation]) -> None:
        dst, current, other = self._binary_operands(operands, "SUB", location)
        self.registers.write(dst, self._arithmetic("SUB", current, other, operator.sub, location))

    def _mul(self, operands: List[str], location: Optional[SourceLocation]) -> None:
        dst, current, other = self._binary_operands(operands, "MUL", location)
        self.registers.write(dst, self._arithmetic("MUL", current, other, operator.mul, location))

    def _div(self, operands: List[str], location: Optional[SourceLocation]) -> None:
        dst, current, other = self._binary_operands(operands, "DIV", location)
        self._expect_numeric(current, "register", "DIV", location)
        self._expect_numeric(other, "operand", "DIV", location)
        if other.value == 0:
            raise RASMRuntimeError("Attempted to divide by zero", location=location, rule="DIV")
        if current.type == TYPE_INT and other.type == TYPE_INT:
            # The zero flag follows the truncated integer quotient, not the stored float.
            quotient = self._checked_int(truncating_div(current.value, other.value), "DIV", location)
            self.flags.zero = quotient == 0
            self.registers.write(dst, flt_value(float(current.value) / float(other.value)))
            return
        result = float(current.value) / float(other.value)
        self.flags.zero = result == 0.0
        self.registers.write(dst, flt_value(result))

    def _cmp(self, operands: List[str], location: Optional[SourceLocation]) -> None:
        _dst, a, b = self._binary_operands(operands, "CMP", location)
        flags = self.flags
        if a.is_numeric() and b.is_numeric():
            if a.type == TYPE_INT and b.type == TYPE_INT:
                x, y = a.value, b.value
            else:
                x, y = float(a.value), float(b.value)
            flags.set_comparison(x == y, x > y, x < y)
        elif a.type == b.type and a.type in (TYPE_BOOL, TYPE_STR):
            flags.set_comparison(a.value == b.value, False, False)
        else:
            flags.clear_comparison()

    def _make_jump(self, mnemonic: str) -> InstructionImpl:
        condition = JUMP_CONDITIONS[mnemonic]

        def impl(operands: List[str], location: Optional[SourceLocation]) -> None:
            if condition(self.flags):
                self._transfer(operands[0], 1, location, mnemonic)

        return impl

    def _loop(self, operands: List[str], location: Optional[SourceLocation]) -> None:
        count = loop_count(self.registers.read("L0"))
        if count is None:
            raise RASMRuntimeError("Attempted to loop with non-numeric value in L0", location=location, rule="LOOP")
        self._transfer(operands[0], count, location, "LOOP")

    # ---- control transfer ----

    def _transfer(self, label: str, times: int, location: Optional[SourceLocation], rule: str) -> None:
        if times <= 0:
            return
        target = self.builtins.lookup(label)
        if target is not None:
            for _ in range(times):
                target.impl(self, location)
            return
        function = self.functions.get(label)
        if function is None:
            raise RASMRuntimeError(
                f"Attempted to jump to non-existent function '{label}'", location=location, rule=rule
            )
        if len(self.call_stack) >= self.max_depth:
            raise RASMRuntimeError(
                f"Call stack exhausted ({self.max_depth} frames) jumping to '{label}'",
                location=location,
                rule=rule,
            )
        frame = self._new_frame(function, location)
        frame.repeat = times - 1
        self.call_stack.append(frame)

    def _new_frame(self, function: Function, call_location: Optional[SourceLocation]) -> Frame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return Frame(name=function.name, body=function.body, frame_id=frame_id, call_location=call_location)

    # ---- introspection ----

    def dump_state(self) -> str:
        lines = ["Machine {"]
        if self.stack:
            lines.append("    stack: [")
            lines.extend(f"        {value.debug()}," for value in self.stack)
            lines.append("    ],")
        else:
            lines.append("    stack: [],")
        lines.append("    registers: {")
        lines.extend(f"        {name}: {self.registers.read(name).debug()}," for name in self.registers.names())
        lines.append("    },")
        if self.functions:
            lines.append("    functions: {")
            for name, function in self.functions.items():
                lines.append(f"        {name}: [")
                lines.extend(f"            {json.dumps(line.text)}," for line in function.body)
                lines.append("        ],")
            lines.append("    },")
        else:
            lines.append("    functions: {},")
        flags = self.flags
        lines.append(f"    equal_flag: {str(flags.equal).lower()},")
        lines.append(f"    greater_flag: {str(flags.greater).lower()},")
        lines.append(f"    lesser_flag: {str(flags.lesser).lower()},")
        lines.append(f"    zero_flag: {str(flags.zero).lower()},")
        lines.append("}")
        return "\n".join(lines)

    # ---- logging ----

    def _log_step(self, *, rule: str, line: str, location: Optional[SourceLocation]) -> StateEntry:
        frame = self.call_stack[-1] if self.call_stack else None
        snapshot = self.registers.snapshot() if self.verbose else None
        return self.logger.record(
            frame=frame,
            location=location,
            statement=line,
            register_snapshot=snapshot,
            rule=rule,
        )


@dataclass
class TracebackFrame:
    name: str
    location: Optional[SourceLocation]
    statement: Optional[str]
    state_entry: Optional[StateEntry]


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self, error: Optional[RASMRuntimeError] = None) -> List[TracebackFrame]:
        frames: List[TracebackFrame] = []
        logger = self.interpreter.logger
        for frame in self.interpreter.call_stack:
            entry = logger.last_entry_for_frame(frame.frame_id)
            location = entry.source_location if entry else frame.call_location
            frames.append(
                TracebackFrame(
                    name=frame.name,
                    location=location,
                    statement=entry.statement if entry else None,
                    state_entry=entry,
                )
            )
        if not frames and error is not None and error.location is not None:
            # Failure in a line executed outside any function (REPL input).
            frames.append(
                TracebackFrame(
                    name="<top-level>",
                    location=error.location,
                    statement=error.location.statement,
                    state_entry=logger.entries[-1] if logger.entries else None,
                )
            )
        return frames

    def format_text(self, error: RASMRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames(error):
            if frame.location:
                lines.append(f"  File \"{frame.location.file}\", line {frame.location.line}, in {frame.name}")
            else:
                lines.append(f"  <unknown location> in {frame.name}")
            if frame.statement:
                lines.append(f"    {frame.statement}")
            if frame.state_entry:
                lines.append(f"    Step: {frame.state_entry.step_index}")
                if verbose and frame.state_entry.register_snapshot is not None:
                    snapshot = ", ".join(
                        f"{k}={v}" for k, v in frame.state_entry.register_snapshot.items() if v != "Null"
                    )
                    lines.append(f"    Registers: {snapshot or '<all null>'}")
        rule = error.rule or "runtime"
        lines.append(f"{error.__class__.__name__}: {error.message} (rule: {rule})")
        return "\n".join(lines)

    def to_json(self, error: RASMRuntimeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames(error)):
            entry: Dict[str, Any] = {"frame_index": index, "name": frame.name}
            if frame.location:
                entry["source_location"] = {
                    "file": frame.location.file,
                    "line": frame.location.line,
                    "statement": frame.location.statement,
                }
            if frame.state_entry:
                entry["step_index"] = frame.state_entry.step_index
                entry["rule"] = frame.state_entry.rule
                if frame.state_entry.register_snapshot is not None:
                    entry["registers"] = frame.state_entry.register_snapshot
            frames_json.append(entry)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "rule": error.rule,
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
        }
        return json.dumps(data, indent=2)
