"""Tests for CLI module."""

import subprocess
import sys
from pathlib import Path
import pytest

from restring.cli import (
    RestringREPL, ScriptRunner, load_custom_prelude, count_parens, BUILTIN_PRELUDES,
)
from restring.rewriter import FULL_PRELUDE, NO_PRELUDE

EXAMPLES = Path(__file__).resolve().parents[2] / "examples"


def run_cli(*args, stdin=None):
    return subprocess.run(
        [sys.executable, "-m", "restring.cli", *args],
        input=stdin, capture_output=True, text=True
    )


class TestBuiltinPreludes:
    """Tests for built-in prelude names."""

    def test_builtin_prelude_names(self):
        """All expected built-in preludes exist."""
        assert set(BUILTIN_PRELUDES.keys()) == {"none", "arithmetic", "number", "full"}


class TestREPLCommands:
    """Tests for REPL command handling."""

    def test_help_command(self):
        """Help command returns help text."""
        result = RestringREPL().handle_command(":help")
        assert ":load" in result
        assert ":guard" in result

    def test_prelude_command(self):
        """Prelude command sets prelude."""
        repl = RestringREPL()
        result = repl.handle_command(":prelude full")
        assert "full" in result
        assert repl.prelude is FULL_PRELUDE
        assert repl.builder.prelude is FULL_PRELUDE

    def test_unknown_prelude(self):
        result = RestringREPL().handle_command(":prelude nonexistent")
        assert "Unknown" in result

    def test_trace_command(self):
        """Trace command toggles tracing."""
        repl = RestringREPL()
        assert repl.trace is False

        assert "enabled" in repl.handle_command(":trace on")
        assert repl.trace is True
        assert "disabled" in repl.handle_command(":trace off")
        assert repl.trace is False

        repl.handle_command(":trace")
        assert repl.trace is True

    def test_limit_command(self):
        repl = RestringREPL()
        assert repl.handle_command(":limit 7") == "Step limit set to: 7"
        assert repl.step_limit == 7
        assert "Usage" in repl.handle_command(":limit many")

    def test_guard_command(self):
        repl = RestringREPL()
        assert repl.guard == "stall"
        assert repl.handle_command(":guard strict") == "Guard set to: strict"
        assert repl.guard == "strict"
        assert "Unknown guard" in repl.handle_command(":guard sometimes")

    def test_rules_and_clear(self):
        repl = RestringREPL()
        assert repl.handle_command(":rules") == "No rules loaded"

        repl.process_line("@add-zero: ?x + 0 => :x")
        assert repl.handle_command(":rules") == "@add-zero: ?x + 0 => :x"

        assert repl.handle_command(":clear") == "Cleared all rules"
        assert repl.handle_command(":rules") == "No rules loaded"
        assert repl.process_line("y + 0") == "y + 0"

    def test_load_command(self, tmp_path):
        path = tmp_path / "algebra.rules"
        path.write_text("@add-zero: ?x + 0 => :x\n@mul-one: ?x * 1 => :x\n")

        repl = RestringREPL()
        assert repl.handle_command(f":load {path}") == f"Loaded 2 rules from {path}"
        assert repl.process_line("y * 1 + 0") == "y"

    def test_load_missing_file(self):
        result = RestringREPL().handle_command(":load /nonexistent/file.rules")
        assert result.startswith("Error loading")

    def test_groups_enable_disable(self):
        repl = RestringREPL()
        assert repl.handle_command(":groups") == "No groups defined"

        assert repl.process_line("[algebra]") == "Group: algebra"
        repl.process_line("@add-zero: ?x + 0 => :x")
        assert repl.handle_command(":groups") == "Groups: algebra"

        repl.handle_command(":disable algebra")
        assert repl.process_line("y + 0") == "y + 0"
        repl.handle_command(":enable algebra")
        assert repl.process_line("y + 0") == "y"

    def test_quit(self):
        repl = RestringREPL()
        assert repl.handle_command(":quit") is None
        assert repl.running is False

    def test_unknown_command(self):
        assert "Unknown command" in RestringREPL().handle_command(":frobnicate")


class TestREPLProcessLine:
    """Tests for rule definitions and rewriting in the REPL."""

    def test_define_and_rewrite(self):
        repl = RestringREPL()
        assert repl.process_line("@add-zero: ?x + 0 => :x") == "Added 1 rule(s)"
        assert repl.process_line("y + 0") == "y"

    def test_computed_slots(self):
        repl = RestringREPL()
        repl.handle_command(":prelude arithmetic")
        repl.process_line("@add: (?a:int + ?b:int) => (! + :a :b)")
        assert repl.process_line("(5 + 3)") == "8"

    def test_computed_slot_without_prelude(self):
        repl = RestringREPL()
        result = repl.process_line("@add: (?a:int + ?b:int) => (! + :a :b)")
        assert result.startswith("Error:")

    def test_trace_output(self):
        repl = RestringREPL()
        repl.process_line("@add-zero: ?x + 0 => :x")
        repl.handle_command(":trace on")
        assert repl.process_line("y + 0 + 0") == "y\nadd-zero -> add-zero"

    def test_step_limit_reported(self):
        repl = RestringREPL()
        repl.process_line("@a-to-b: a => b")
        repl.process_line("@b-to-a: b => a")
        repl.handle_command(":limit 3")
        result = repl.process_line("a")
        assert result.startswith("Error: [max steps] stopped after 3 steps")
        assert result.endswith("last: b")

    def test_comments_and_blank_lines(self):
        repl = RestringREPL()
        assert repl.process_line("") is None
        assert repl.process_line("# note") is None

    def test_bracketed_payload_is_rewritten(self):
        repl = RestringREPL()
        assert repl.process_line("[a,b]") == "[a,b]"

    def test_payload_unchanged(self):
        """Payload that no rule matches returns unchanged."""
        assert RestringREPL().process_line("f(x)") == "f(x)"

    def test_failing_prelude_handler_reported(self, tmp_path):
        path = tmp_path / "failing.py"
        path.write_text(
            "def boom(args):\n"
            "    raise RuntimeError('boom')\n"
            "PRELUDE = {'boom': boom}\n"
        )
        repl = RestringREPL()
        assert repl.set_prelude(str(path))
        repl.process_line("@boom: ?n:int! => (! boom :n)")
        assert repl.process_line("5!") == "Error: boom"

    def test_oversized_fold_does_not_raise(self):
        repl = RestringREPL()
        repl.handle_command(":prelude arithmetic")
        repl.process_line("@power: (?a:int ^ ?b:int) => (! ^ :a :b)")
        assert not repl.process_line("(10 ^ 5000)").startswith("Error")

    def test_invalid_step_limit_reported(self):
        repl = RestringREPL()
        repl.step_limit = -1
        assert repl.process_line("abc").startswith("Error: step_limit must be non-negative")


class TestScriptRunner:
    """Tests for script execution."""

    def test_run_script(self, tmp_path, capsys):
        script = tmp_path / "demo.restring"
        script.write_text(
            ":prelude arithmetic\n"
            "@add: (?a:int + ?b:int) => (! + :a :b)\n"
            "(5 + 3)\n"
            "((1 + 2) + 3)\n"
        )
        assert ScriptRunner().run_script(script) == 0
        assert capsys.readouterr().out.split() == ["8", "6"]

    def test_script_error_line(self, tmp_path, capsys):
        script = tmp_path / "bad.restring"
        script.write_text("@bad: ?x => :y\n")
        assert ScriptRunner().run_script(script) == 1
        assert "bad.restring:1" in capsys.readouterr().err

    def test_script_stops_on_raising_line(self, tmp_path, capsys, monkeypatch):
        script = tmp_path / "crash.restring"
        script.write_text("a\nb\n")
        runner = ScriptRunner()

        def fail(line):
            raise RuntimeError(f"cannot handle {line}")

        monkeypatch.setattr(runner.repl, "process_line", fail)
        assert runner.run_script(script) == 1
        assert "crash.restring:1: Error: cannot handle a" in capsys.readouterr().err

    def test_run_expression(self, capsys):
        runner = ScriptRunner()
        runner.repl.process_line("@add-zero: ?x + 0 => :x")
        assert runner.run_expression("y + 0") == 0
        assert capsys.readouterr().out.strip() == "y"


class TestCLIIntegration:
    """Integration tests using subprocess."""

    @pytest.fixture
    def rules_file(self, tmp_path):
        path = tmp_path / "math.rules"
        path.write_text(
            "@add: (?a:int + ?b:int) => (! + :a :b)\n"
            "@exp-mult: ?b^?m * ?b^?n => :b^(:m+:n)\n"
        )
        return path

    @pytest.fixture
    def cycle_file(self, tmp_path):
        path = tmp_path / "cycle.rules"
        path.write_text("@a-to-b: a => b\n@b-to-a: b => a\n")
        return path

    def test_help_flag(self):
        result = run_cli("--help")
        assert result.returncode == 0
        assert "RESTRING" in result.stdout

    def test_version_flag(self):
        result = run_cli("--version")
        assert result.returncode == 0
        assert "0.1.0" in result.stdout

    def test_expression_mode(self, rules_file):
        result = run_cli("-q", "-r", str(rules_file), "-e", "x^2 * x^3")
        assert result.returncode == 0
        assert result.stdout.strip() == "x^5"

    def test_expression_trace(self, rules_file):
        result = run_cli("-q", "-t", "-r", str(rules_file), "-e", "x^2 * x^3")
        assert result.stdout.split("\n")[:2] == ["x^5", "exp-mult -> add"]

    def test_step_limit_exit_code(self, cycle_file):
        result = run_cli("-q", "-r", str(cycle_file), "-n", "5", "-e", "a")
        assert result.returncode == 1
        assert "[max steps]" in result.stdout

    def test_strict_guard(self, cycle_file):
        result = run_cli("-q", "-g", "strict", "-r", str(cycle_file), "-e", "a")
        assert result.returncode == 0
        assert result.stdout.strip() == "a"

    def test_pipe_mode(self, rules_file):
        result = run_cli("-q", "-r", str(rules_file), stdin="(1 + 2)\nqqq\n")
        assert result.returncode == 0
        assert result.stdout.split() == ["3", "qqq"]

    def test_missing_rules_file(self):
        result = run_cli("-r", "/nonexistent/file.rules", "-e", "x")
        assert result.returncode == 1
        assert "Error loading" in result.stderr

    def test_unknown_prelude(self):
        result = run_cli("-p", "nonexistent", "-e", "x")
        assert result.returncode == 1

    def test_negative_max_steps_rejected(self):
        result = run_cli("-n", "-1", "-e", "x")
        assert result.returncode == 2
        assert "non-negative" in result.stderr
        assert "Traceback" not in result.stderr

    def test_verbose_logging(self, rules_file):
        result = run_cli("-vv", "-q", "-r", str(rules_file), "-e", "(1 + 2)")
        assert "restring.engine" in result.stderr


class TestCustomPreludeLoading:
    """Tests for custom prelude loading."""

    def test_load_nonexistent_prelude(self):
        assert load_custom_prelude("/nonexistent/path.py") is None

    def test_load_prelude_file(self, tmp_path):
        path = tmp_path / "tiny.py"
        path.write_text(
            "from restring import binary_only\n"
            "PRELUDE = {'max': binary_only(max)}\n"
        )
        prelude = load_custom_prelude(str(path))
        assert prelude["max"](["2", "7"]) == "7"

    def test_example_prelude(self):
        repl = RestringREPL()
        assert repl.set_prelude(str(EXAMPLES / "custom_prelude.py"))
        repl.process_line("@gcd: gcd(?a:int,?b:int) => (! gcd :a :b)")
        assert repl.process_line("gcd(12,8)") == "4"

    def test_builtin_prelude_names(self):
        """Built-in names should not trigger file search."""
        repl = RestringREPL()
        for name in ("full", "arithmetic", "number", "none"):
            assert repl.set_prelude(name)
        assert repl.prelude is NO_PRELUDE


class TestMultiLineInput:
    """Tests for multi-line input parsing."""

    def test_count_parens(self):
        assert count_parens("(a + b)") == 0
        assert count_parens("(a + (b") == 2
        assert count_parens("a)") == -1

    def test_escaped_parens_ignored(self):
        assert count_parens(r"\(a") == 0

    def test_repl_multi_line_buffer(self):
        assert RestringREPL().multi_line_buffer == ""


class TestTabCompletion:
    """Tests for tab completion."""

    def test_commands(self):
        matches = RestringREPL()._get_matches(":", ":")
        assert ":help" in matches
        assert ":guard" in matches

    def test_partial_command(self):
        matches = RestringREPL()._get_matches(":l", ":l")
        assert matches == [":load", ":limit"]

    def test_prelude_and_guard_names(self):
        repl = RestringREPL()
        assert "full" in repl._get_matches("", ":prelude ")
        assert repl._get_matches("", ":guard ") == ["stall", "strict"]

    def test_groups(self):
        repl = RestringREPL()
        repl.builder.load_dsl("[algebra]\n@add-zero: ?x + 0 => :x")
        assert repl._get_matches("al", ":disable al") == ["algebra"]
