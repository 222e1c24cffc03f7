"""
Tests for jumps, loops and the frame stack that implements them.
"""

import pytest

from interpreter import RASMRuntimeError
from values import NULL, TYPE_INT, Value

from .conftest import make_interpreter


def program(*functions):
    """Build source text from (name, [lines]) pairs."""
    chunks = []
    for name, lines in functions:
        chunks.append(f"fun {name}")
        chunks.extend(f"    {line}" for line in lines)
        chunks.append("end")
    return "\n".join(chunks) + "\n"


class TestJmp:
    def test_jump_runs_whole_body_then_returns(self):
        vm = make_interpreter(program(
            ("main", ["MOV R0 0", "JMP add_one", "JMP add_one", "MOV R1 R0"]),
            ("add_one", ["INC R0"]),
        ))
        vm.run()
        assert vm.registers.read("R1") == Value(TYPE_INT, 2)
        assert vm.call_stack == []

    def test_caller_resumes_after_nested_calls(self, console):
        vm = make_interpreter(program(
            ("main", ['MOV P0 "a"', "JMP print", "JMP inner", 'MOV P0 "d"', "JMP print"]),
            ("inner", ['MOV P0 "b"', "JMP print", "JMP innermost"]),
            ("innermost", ['MOV P0 "c"', "JMP print"]),
        ), console=console)
        vm.run()
        assert console.text == "abcd"

    def test_self_recursion_counts_down(self):
        vm = make_interpreter(program(
            ("main", ["MOV R0 1000", "JMP countdown"]),
            ("countdown", ["DEC R0", "JNZ countdown"]),
        ))
        vm.run()
        assert vm.registers.read("R0") == Value(TYPE_INT, 0)

    def test_unknown_function_is_fatal(self):
        vm = make_interpreter(program(("main", ["JMP nowhere"])))
        with pytest.raises(RASMRuntimeError, match="non-existent function 'nowhere'") as excinfo:
            vm.run()
        assert excinfo.value.rule == "JMP"

    def test_jump_from_a_single_line(self):
        vm = make_interpreter(program(("bump", ["INC R0"])))
        vm.execute_line("MOV R0 1")
        vm.execute_line("JMP bump")
        assert vm.registers.read("R0") == Value(TYPE_INT, 2)

    def test_run_requires_main(self):
        vm = make_interpreter(program(("helper", ["INC R0"])))
        with pytest.raises(RASMRuntimeError, match="No main function found"):
            vm.run()

    def test_empty_function(self):
        vm = make_interpreter("fun main\nend\n")
        vm.run()
        assert vm.registers.read("R0") == NULL


class TestCallDepth:
    def test_unbounded_recursion_is_a_fatal_error(self):
        vm = make_interpreter(program(("main", ["JMP main"])), max_depth=50)
        with pytest.raises(RASMRuntimeError, match="Call stack exhausted") as excinfo:
            vm.run()
        assert len(vm.call_stack) == 50
        assert excinfo.value.step_index is not None

    def test_depth_limit_allows_exactly_max_depth_frames(self):
        vm = make_interpreter(program(
            ("main", ["MOV R0 3", "JMP down"]),
            ("down", ["DEC R0", "JNZ down"]),
        ), max_depth=4)
        vm.run()
        assert vm.registers.read("R0") == Value(TYPE_INT, 0)

    def test_sequential_jumps_do_not_accumulate_depth(self):
        vm = make_interpreter(program(
            ("main", ["MOV R0 0"] + ["JMP step"] * 20),
            ("step", ["INC R0"]),
        ), max_depth=2)
        vm.run()
        assert vm.registers.read("R0") == Value(TYPE_INT, 20)

    def test_max_depth_must_be_positive(self):
        with pytest.raises(ValueError):
            make_interpreter(max_depth=0)


FLAG_CASES = [
    # mnemonic, (equal, greater, lesser, zero), taken
    ("JE", (True, False, False, False), True),
    ("JE", (False, True, False, False), False),
    ("JNE", (False, False, True, False), True),
    ("JNE", (True, False, False, False), False),
    ("JG", (False, True, False, False), True),
    ("JG", (True, False, False, False), False),
    ("JGE", (True, False, False, False), True),
    ("JGE", (False, True, False, False), True),
    ("JGE", (False, False, True, False), False),
    ("JZ", (False, False, False, True), True),
    ("JZ", (False, False, False, False), False),
    ("JNZ", (False, False, False, False), True),
    ("JNZ", (False, False, False, True), False),
]


class TestConditionalJumps:
    @pytest.mark.parametrize("mnemonic, flags, taken", FLAG_CASES)
    def test_condition(self, mnemonic, flags, taken):
        vm = make_interpreter(program(("hit", ["INC R0"])))
        vm.execute_line("MOV R0 0")
        vm.flags.equal, vm.flags.greater, vm.flags.lesser, vm.flags.zero = flags
        vm.execute_line(f"{mnemonic} hit")
        assert vm.registers.read("R0") == Value(TYPE_INT, 1 if taken else 0)

    @pytest.mark.parametrize("mnemonic", ["JL", "JLE"])
    def test_jl_and_jle_share_the_jge_condition(self, mnemonic):
        """JL/JLE jump on greater-or-equal and ignore the lesser flag.

        This pins the observed behaviour; a "less than" reading would invert
        both assertions below.
        """
        vm = make_interpreter(program(("hit", ["INC R0"])))
        vm.execute_line("MOV R0 0")
        vm.execute_line("CMP R0 -1")
        vm.execute_line(f"{mnemonic} hit")
        assert vm.registers.read("R0") == Value(TYPE_INT, 1)

        vm.execute_line("CMP R0 100")
        assert vm.flags.lesser is True
        vm.execute_line(f"{mnemonic} hit")
        assert vm.registers.read("R0") == Value(TYPE_INT, 1)

    def test_compare_and_branch_loop(self, console):
        vm = make_interpreter(program(
            ("main", ["MOV R0 0", "JMP body"]),
            ("body", ["INC R0", "MOV P0 R0", "JMP print", "CMP R0 3", "JNE body"]),
        ), console=console)
        vm.run()
        assert console.text == "123"

    def test_flags_persist_across_function_boundaries(self):
        vm = make_interpreter(program(
            ("main", ["MOV R0 5", "JMP compare", "JE matched"]),
            ("compare", ["CMP R0 5"]),
            ("matched", ["MOV R1 true"]),
        ))
        vm.run()
        assert vm.registers.read("R1").value is True


class TestLoop:
    def test_loop_runs_l0_times(self):
        vm = make_interpreter(program(
            ("main", ["MOV R0 0", "MOV L0 3", "LOOP bump"]),
            ("bump", ["INC R0"]),
        ))
        vm.run()
        assert vm.registers.read("R0") == Value(TYPE_INT, 3)

    def test_float_count_is_truncated(self):
        vm = make_interpreter(program(
            ("main", ["MOV R0 0", "MOV L0 2.9", "LOOP bump"]),
            ("bump", ["INC R0"]),
        ))
        vm.run()
        assert vm.registers.read("R0") == Value(TYPE_INT, 2)

    @pytest.mark.parametrize("count", ["0", "-4", "-0.5"])
    def test_non_positive_count_never_transfers(self, count):
        vm = make_interpreter(program(
            ("main", ["MOV R0 0", f"MOV L0 {count}", "LOOP bump"]),
            ("bump", ["INC R0"]),
        ))
        vm.run()
        assert vm.registers.read("R0") == Value(TYPE_INT, 0)

    def test_count_is_read_once(self):
        vm = make_interpreter(program(
            ("main", ["MOV R0 0", "MOV L0 3", "LOOP body"]),
            ("body", ["INC R0", "MOV L0 100"]),
        ))
        vm.run()
        assert vm.registers.read("R0") == Value(TYPE_INT, 3)

    def test_nested_loops(self):
        vm = make_interpreter(program(
            ("main", ["MOV R0 0", "MOV L0 3", "LOOP outer"]),
            ("outer", ["PUSH L0", "MOV L0 2", "LOOP inner", "POP L0"]),
            ("inner", ["INC R0"]),
        ))
        vm.run()
        assert vm.registers.read("R0") == Value(TYPE_INT, 6)

    def test_loop_over_builtin(self, console):
        vm = make_interpreter(console=console)
        for line in ('MOV P0 "x"', "MOV L0 3", "LOOP print"):
            vm.execute_line(line)
        assert console.text == "xxx"

    def test_non_numeric_l0_is_fatal(self):
        vm = make_interpreter(program(("bump", ["INC R0"])))
        with pytest.raises(RASMRuntimeError, match="non-numeric") as excinfo:
            vm.execute_line("LOOP bump")
        assert excinfo.value.rule == "LOOP"

    def test_loop_frame_is_reused_not_stacked(self):
        vm = make_interpreter(program(
            ("main", ["MOV R0 0", "MOV L0 500", "LOOP bump"]),
            ("bump", ["INC R0"]),
        ), max_depth=2)
        vm.run()
        assert vm.registers.read("R0") == Value(TYPE_INT, 500)


class TestReservedTargets:
    def test_builtin_wins_over_same_named_function(self, console):
        vm = make_interpreter(program(
            ("main", ['MOV P0 "x"', "JMP print"]),
            ("print", ["MOV R5 1"]),
        ), console=console)
        vm.run()
        assert console.text == "x"
        assert vm.registers.read("R5") == NULL

    def test_shadowed_function_is_still_loaded(self):
        vm = make_interpreter(program(("exit", ["MOV R5 1"])))
        assert "exit" in vm.functions
