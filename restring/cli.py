#!/usr/bin/env python3
"""
RESTRING Command-Line Interface

Provides interactive REPL, script execution, and pipe/filter modes.

Usage:
    restring                             # Start REPL
    restring script.restring             # Run script
    restring -r math.rules -e "(5 + 3)"  # One-shot with rules
    echo "sin(0)" | restring -r math.rules  # Filter mode

Script Format (.restring files):
    #!/usr/bin/env restring
    :prelude full
    :load math.rules

    @swap: ?a <-> ?b => :b <-> :a

    (5 + 3)
    d/dx x^4

REPL Commands:
    :help              Show help
    :load FILE         Load rules from file
    :rules             List loaded rules
    :clear             Clear all rules
    :prelude NAME      Set prelude (arithmetic, number, full, none, or path)
    :trace on|off      Toggle tracing
    :limit N           Set the step limit
    :guard NAME        Set the attempt guard (stall, strict)
    :groups            Show groups
    :enable GROUP      Enable group
    :disable GROUP     Disable group
    :quit              Exit
"""

import argparse
import importlib.util
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from . import __version__
from .engine import (
    RuleSet, RuleSetBuilder, Aborted, run,
    DEFAULT_STEP_LIMIT, DEFAULT_GUARD, GUARD_MODES,
)
from .rewriter import (
    ARITHMETIC_PRELUDE, NUMBER_PRELUDE, FULL_PRELUDE, NO_PRELUDE,
    PreludeType, RestringError,
)

try:
    import readline
    HAS_READLINE = True
except ImportError:
    HAS_READLINE = False

logger = logging.getLogger(__name__)

# Built-in preludes
BUILTIN_PRELUDES: Dict[str, PreludeType] = {
    "none": NO_PRELUDE,
    "arithmetic": ARITHMETIC_PRELUDE,
    "number": NUMBER_PRELUDE,
    "full": FULL_PRELUDE,
}

# Standard prelude search paths
PRELUDE_SEARCH_PATHS = [
    Path("./preludes"),
    Path.home() / ".config" / "restring" / "preludes",
]


def load_custom_prelude(name_or_path: str) -> Optional[PreludeType]:
    """
    Load a custom prelude from a Python file.

    The file should define a PRELUDE dict mapping operation names to
    computed slot handlers.

    Args:
        name_or_path: Either a path to a .py file, or a name to search for

    Returns:
        The PRELUDE dict from the file, or None if not found
    """
    path = Path(name_or_path)

    if path.suffix == ".py" or "/" in name_or_path or "\\" in name_or_path:
        search_paths = [path] if path.exists() else []
    else:
        search_paths = [d / f"{name_or_path}.py" for d in PRELUDE_SEARCH_PATHS
                        if (d / f"{name_or_path}.py").exists()]

    for prelude_path in search_paths:
        try:
            spec = importlib.util.spec_from_file_location("custom_prelude", prelude_path)
            if spec and spec.loader:
                module = importlib.util.module_from_spec(spec)
                spec.loader.exec_module(module)
                if hasattr(module, "PRELUDE"):
                    return module.PRELUDE
        except Exception as e:
            print(f"Error loading prelude from {prelude_path}: {e}", file=sys.stderr)

    return None


def count_parens(text: str) -> int:
    """Count unbalanced parentheses. Returns >0 if more open than close."""
    depth = 0
    escape = False

    for c in text:
        if escape:
            escape = False
            continue
        if c == '\\':
            escape = True
            continue
        if c == '(':
            depth += 1
        elif c == ')':
            depth -= 1

    return depth


class RestringREPL:
    """Interactive REPL for restring."""

    COMMANDS = [
        ":help", ":quit", ":exit", ":q",
        ":load", ":rules", ":clear",
        ":prelude", ":trace", ":limit", ":guard",
        ":groups", ":enable", ":disable",
    ]

    def __init__(self):
        self.builder = RuleSetBuilder("repl")
        self.prelude: PreludeType = NO_PRELUDE
        self.trace = False
        self.step_limit = DEFAULT_STEP_LIMIT
        self.guard = DEFAULT_GUARD
        self.disabled_groups: set = set()
        self.current_group: Optional[str] = None
        self.running = True
        self.multi_line_buffer = ""
        self._ruleset: Optional[RuleSet] = None

        if HAS_READLINE:
            self.history_file = Path.home() / ".restring_history"
            try:
                readline.read_history_file(self.history_file)
            except (FileNotFoundError, OSError):
                pass
            readline.set_history_length(1000)
            readline.set_completer(self.complete)
            readline.parse_and_bind("tab: complete")
            readline.set_completer_delims(" \t\n")

    def _get_matches(self, text: str, line: str) -> List[str]:
        line = line.lstrip()
        if line.startswith(":prelude "):
            options = list(BUILTIN_PRELUDES)
        elif line.startswith(":guard "):
            options = list(GUARD_MODES)
        elif line.startswith(":enable ") or line.startswith(":disable "):
            options = sorted(self.builder.groups())
        else:
            options = self.COMMANDS
        return [o for o in options if o.startswith(text)]

    def complete(self, text: str, state: int) -> Optional[str]:
        """Readline completer for commands, preludes, guards and groups."""
        line = readline.get_line_buffer() if HAS_READLINE else ""
        matches = self._get_matches(text, line)
        return matches[state] if state < len(matches) else None

    def save_history(self):
        if HAS_READLINE:
            try:
                readline.write_history_file(self.history_file)
            except OSError:
                pass

    @property
    def ruleset(self) -> RuleSet:
        """The loaded rules, frozen (cached until the rules or groups change)."""
        if self._ruleset is None:
            self._ruleset = self.builder.build(exclude=self.disabled_groups)
        return self._ruleset

    def _invalidate(self):
        self._ruleset = None

    def set_prelude(self, name: str) -> bool:
        """Set the prelude for rules added afterwards, by name or path."""
        name_lower = name.lower()

        if name_lower in BUILTIN_PRELUDES:
            prelude = BUILTIN_PRELUDES[name_lower]
        else:
            prelude = load_custom_prelude(name)
            if prelude is None:
                return False

        self.prelude = prelude
        self.builder.with_prelude(prelude)
        return True

    def load_file(self, path: Path) -> int:
        """Load rules from a file, returning the number of rules added."""
        before = len(self.builder)
        self.builder.load_file(path)
        self._invalidate()
        return len(self.builder) - before

    def handle_command(self, line: str) -> Optional[str]:
        """
        Handle a REPL command (starts with :).

        Returns a message to print, or None.
        """
        parts = line[1:].split(None, 1)
        if not parts:
            return "Unknown command. Type :help for help."

        cmd = parts[0].lower()
        arg = parts[1].strip() if len(parts) > 1 else ""

        if cmd == "help":
            return self.help_text()

        elif cmd in ("quit", "exit", "q"):
            self.running = False
            return None

        elif cmd == "load":
            if not arg:
                return "Usage: :load FILENAME"
            try:
                added = self.load_file(Path(arg))
                return f"Loaded {added} rules from {arg}"
            except (OSError, RestringError, ValueError) as e:
                return f"Error loading {arg}: {e}"

        elif cmd == "rules":
            rules = self.ruleset.list_rules()
            if not rules:
                return "No rules loaded"
            return "\n".join(rules)

        elif cmd == "clear":
            self.builder.clear()
            self._invalidate()
            return "Cleared all rules"

        elif cmd == "prelude":
            if not arg:
                available = ", ".join(BUILTIN_PRELUDES.keys())
                return f"Usage: :prelude NAME\nAvailable: {available}\nOr provide a path to a .py file"
            if self.set_prelude(arg):
                return f"Prelude set to: {arg}"
            return f"Unknown prelude: {arg}"

        elif cmd == "trace":
            if arg.lower() in ("on", "true", "1"):
                self.trace = True
            elif arg.lower() in ("off", "false", "0"):
                self.trace = False
            else:
                self.trace = not self.trace
            return f"Tracing {'enabled' if self.trace else 'disabled'}"

        elif cmd == "limit":
            if not arg.isdigit():
                return f"Usage: :limit N (current: {self.step_limit})"
            self.step_limit = int(arg)
            return f"Step limit set to: {self.step_limit}"

        elif cmd == "guard":
            if arg.lower() in GUARD_MODES:
                self.guard = arg.lower()
                return f"Guard set to: {self.guard}"
            return f"Unknown guard. Options: {', '.join(GUARD_MODES)}"

        elif cmd == "groups":
            groups = self.builder.groups()
            if not groups:
                return "No groups defined"
            return "Groups: " + ", ".join(sorted(groups))

        elif cmd == "enable":
            if not arg:
                return "Usage: :enable GROUP"
            self.disabled_groups.discard(arg)
            self._invalidate()
            return f"Enabled group: {arg}"

        elif cmd == "disable":
            if not arg:
                return "Usage: :disable GROUP"
            self.disabled_groups.add(arg)
            self._invalidate()
            return f"Disabled group: {arg}"

        return f"Unknown command: {cmd}. Type :help for help."

    def help_text(self) -> str:
        return """RESTRING REPL Commands:
  :help              Show this help
  :load FILE         Load rules from file (.rules or .json)
  :rules             List all loaded rules
  :clear             Clear all rules
  :prelude NAME      Set prelude (arithmetic, number, full, none, or path.py)
  :trace on|off      Toggle tracing
  :limit N           Set the step limit
  :guard NAME        Set the attempt guard (stall, strict)
  :groups            Show all groups
  :enable GROUP      Enable a group
  :disable GROUP     Disable a group
  :quit              Exit

Syntax:
  @name: pattern => skeleton               Define a rule
  @name[priority]: pattern => skeleton     Rule with priority
  [groupname]                              Tag following rules with a group
  anything else                            Rewrite it
"""

    def rewrite(self, payload: str) -> str:
        """Rewrite a payload with the loaded rules and format the outcome."""
        try:
            result = run(payload, [self.ruleset], step_limit=self.step_limit, guard=self.guard)
            output = result.payload

            if isinstance(result, Aborted):
                output = (f"Error: [max steps] stopped after {result.steps} steps\n"
                          f"  last: {output}")
            if self.trace and result.value.history:
                output += "\n" + result.value.trace().format("rules")
            return output

        except Exception as e:
            logger.debug("rewrite of %r failed", payload, exc_info=True)
            return f"Error: {e}"

    def process_line(self, line: str) -> Optional[str]:
        """
        Process a single line of input.

        Returns the result to print, or None.
        """
        line = line.strip()

        if not line or line.startswith("#"):
            return None

        if line.startswith(":"):
            return self.handle_command(line)

        # Group declaration
        if line.startswith("[") and line.endswith("]") and "=>" not in line \
                and line[1:-1].replace("-", "").replace("_", "").isalnum():
            self.current_group = line[1:-1]
            return f"Group: {self.current_group}"

        # Rule definition
        if "=>" in line:
            text = f"[{self.current_group}]\n{line}" if self.current_group else line
            before = len(self.builder)
            try:
                self.builder.load_dsl(text)
            except RestringError as e:
                return f"Error: {e}"
            added = len(self.builder) - before
            if not added:
                return "Failed to parse rule"
            self._invalidate()
            return f"Added {added} rule(s)"

        return self.rewrite(line)

    def run(self):
        """Run the REPL loop."""
        print("RESTRING - Rewriting Expression STRINGs")
        print("Type :help for help, :quit to exit")
        print()

        while self.running:
            try:
                prompt = "...... " if self.multi_line_buffer else "restring> "
                line = input(prompt)

                if self.multi_line_buffer:
                    self.multi_line_buffer += " " + line
                else:
                    self.multi_line_buffer = line

                if count_parens(self.multi_line_buffer) > 0:
                    continue

                complete_input = self.multi_line_buffer
                self.multi_line_buffer = ""

                result = self.process_line(complete_input)
                if result:
                    print(result)

            except EOFError:
                print()
                break
            except KeyboardInterrupt:
                if self.multi_line_buffer:
                    print("\nInput cancelled")
                    self.multi_line_buffer = ""
                else:
                    print()
                continue

        self.save_history()


class ScriptRunner:
    """Runs restring scripts, one-shot expressions and stdin filters."""

    def __init__(self):
        self.repl = RestringREPL()

    def run_script(self, path: Path, quiet: bool = False) -> int:
        """
        Run a script file.

        Returns:
            Exit code (0 for success)
        """
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            print(f"Error reading {path}: {e}", file=sys.stderr)
            return 1

        for lineno, line in enumerate(lines, 1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue

            try:
                result = self.repl.process_line(line)
            except Exception as e:
                print(f"{path}:{lineno}: Error: {e}", file=sys.stderr)
                return 1
            if result is None:
                continue

            if result.startswith("Error") or result.startswith("Unknown"):
                print(f"{path}:{lineno}: {result}", file=sys.stderr)
                return 1

            # Command confirmations and rule additions stay quiet in scripts
            if line.startswith(":") or "=>" in line or line.startswith("["):
                continue
            if not quiet:
                print(result)

        return 0

    def run_expression(self, payload: str) -> int:
        """Rewrite a single payload. Returns exit code (0 for success)."""
        result = self.repl.process_line(payload)
        if result:
            print(result)
            if result.startswith("Error"):
                return 1
        return 0

    def run_stdin(self) -> int:
        """Rewrite payloads read from stdin, one per line. Returns exit code."""
        status = 0
        for line in sys.stdin:
            line = line.strip()
            if not line or line.startswith("#"):
                continue

            result = self.repl.process_line(line)
            if result:
                print(result)
                if result.startswith("Error"):
                    status = 1

        return status


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="restring",
        description="RESTRING - Rewriting Expression STRINGs",
        epilog="Examples:\n"
               "  restring                              Start REPL\n"
               "  restring script.restring              Run script\n"
               "  restring -r math.rules -e '(5 + 3)'   Rewrite one payload\n"
               "  echo 'sin(0)' | restring -r math.rules  Filter mode\n",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument("script", nargs="?", help="Script file to run (.restring)")
    parser.add_argument(
        "-r", "--rules",
        action="append",
        default=[],
        help="Load rules from file (can be specified multiple times)"
    )
    parser.add_argument("-e", "--expr", help="Rewrite a single payload")
    parser.add_argument(
        "-p", "--prelude",
        default="full",
        help="Set prelude (arithmetic, number, full, none, or path.py)"
    )
    parser.add_argument("-t", "--trace", action="store_true", help="Show applied rules")
    parser.add_argument(
        "-n", "--max-steps",
        type=int,
        default=DEFAULT_STEP_LIMIT,
        help=f"Step limit per rewrite (default: {DEFAULT_STEP_LIMIT})"
    )
    parser.add_argument(
        "-g", "--guard",
        default=DEFAULT_GUARD,
        choices=list(GUARD_MODES),
        help="Attempt guard mode"
    )
    parser.add_argument("-q", "--quiet", action="store_true",
                        help="Quiet mode (suppress non-essential output)")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Log engine activity (-vv for every step)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    args = parser.parse_args()
    if args.max_steps < 0:
        parser.error(f"--max-steps must be non-negative, got {args.max_steps}")

    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG if args.verbose > 1 else logging.INFO,
            format="%(levelname)s %(name)s: %(message)s",
        )

    runner = ScriptRunner()

    if not runner.repl.set_prelude(args.prelude):
        print(f"Unknown prelude: {args.prelude}", file=sys.stderr)
        sys.exit(1)

    runner.repl.trace = args.trace
    runner.repl.step_limit = args.max_steps
    runner.repl.guard = args.guard

    for rules_file in args.rules:
        try:
            added = runner.repl.load_file(Path(rules_file))
            if not args.quiet:
                print(f"Loaded {added} rules from {rules_file}", file=sys.stderr)
        except (OSError, RestringError, ValueError) as e:
            print(f"Error loading {rules_file}: {e}", file=sys.stderr)
            sys.exit(1)

    if args.script:
        sys.exit(runner.run_script(Path(args.script), quiet=args.quiet))
    elif args.expr:
        sys.exit(runner.run_expression(args.expr))
    elif not sys.stdin.isatty():
        sys.exit(runner.run_stdin())
    else:
        runner.repl.run()


if __name__ == "__main__":
    main()
