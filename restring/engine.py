"""
Rule Sets, Sequencer and DSL Loader for RESTRING

RESTRING - Rewriting Expression STRINGs

This module turns rules into frozen RuleSets, drives rewrite runs with a
Sequencer, and loads rules from a line-oriented DSL or JSON.

DSL Format (.rules files):
    # Comment
    [topic]
    :include other.rules
    @rule-name: pattern => skeleton
    @rule-name "Description text": pattern => skeleton
    @rule-name[priority]: pattern => skeleton

    Examples:
    @add "Fold a parenthesised sum": (?a:int + ?b:int) => (! + :a :b)
    @exp-mult: ?b^?m * ?b^?n => :b^(:m+:n)
    @d-x: /d\\/dx\\s+x(?!\\^)/ => 1

JSON Format:
    {
        "name": "algebra",
        "rules": [
            {"name": "add-zero", "pattern": "?x + 0", "skeleton": ":x"},
            or just [pattern, skeleton]
        ]
    }

Runs:
    A run repeatedly hands the current value to the first applicable
    RuleSet, one rewrite per step, until no RuleSet applies (Terminated)
    or the step limit is reached (Aborted). Every step is recorded in the
    value's history.
"""

import json
import logging
import re
import uuid
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from .rewriter import (
    Captures, Rule, RestringError, RuleDefinitionError,
    PayloadType, PreludeType, NO_PRELUDE,
)

logger = logging.getLogger(__name__)

DEFAULT_STEP_LIMIT = 100
DEFAULT_GUARD = "stall"
GUARD_MODES = ("stall", "strict")

# Sequencer states
RUNNING = "running"
TERMINATED = "terminated"
ABORTED = "aborted"


class BoundedLoopExceeded(RestringError):
    """The step limit was reached before any value became terminal."""

    def __init__(self, value: "Value", steps: int):
        self.value = value
        self.steps = steps
        super().__init__(
            f"Step limit reached after {steps} steps; last value: {value.payload!r}"
        )


# ============================================================
# Values and History
# ============================================================

@dataclass(frozen=True)
class RewriteStep:
    """A single step in a value's history."""

    rule_name: str
    before: PayloadType
    after: PayloadType
    description: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.rule_name}: {self.before} → {self.after}"

    def to_dict(self) -> Dict:
        """Convert step to dictionary for serialization."""
        return {
            "rule_name": self.rule_name,
            "description": self.description,
            "before": self.before,
            "after": self.after,
        }


@dataclass(frozen=True)
class Value:
    """
    A payload plus the ordered history of rewrites that produced it.

    Values are never mutated; extend() returns a new value with one more
    step. Loop detection keys on the payload alone.
    """

    payload: PayloadType
    history: Tuple[RewriteStep, ...] = ()

    @property
    def seed(self) -> PayloadType:
        """The payload the history started from."""
        return self.history[0].before if self.history else self.payload

    def extend(self, rule: Rule, after: PayloadType) -> "Value":
        step = RewriteStep(rule.name, self.payload, after, rule.description)
        return Value(after, self.history + (step,))

    def trace(self) -> "RewriteTrace":
        return RewriteTrace(self.seed, list(self.history), self.payload)

    def __str__(self) -> str:
        return self.payload


class RewriteTrace:
    """
    A view of a value's history with formatting helpers.

    Provides multiple formatting options:
        - Default repr: verbose multi-line format
        - format("compact"): single line showing rule chain
        - format("rules"): just the rule names applied
        - format("chain"): payload transformations as a chain
        - to_dict(): JSON-serializable dictionary
    """

    def __init__(self, initial: PayloadType, steps: List[RewriteStep], final: PayloadType):
        self.initial = initial
        self.steps = steps
        self.final = final

    def format(self, style: str = "verbose") -> str:
        """
        Format the trace in different styles.

        Args:
            style: One of "verbose", "compact", "rules", "chain"

        Returns:
            Formatted string representation of the trace.
        """
        if style == "compact":
            return f"{self.initial} --[{', '.join(self.rules_applied())}]--> {self.final}"

        elif style == "rules":
            rules = self.rules_applied()
            return " -> ".join(rules) if rules else "(no rules applied)"

        elif style == "chain":
            parts = [self.initial]
            for step in self.steps:
                parts.append(f"  --({step.rule_name})-->")
                parts.append(step.after)
            return "\n".join(parts)

        elif style == "verbose":
            return repr(self)

        raise ValueError(f"Unknown trace style: {style}. "
                         f"Valid options: verbose, compact, rules, chain")

    def __repr__(self) -> str:
        lines = [f"Initial: {self.initial}"]
        for i, step in enumerate(self.steps, 1):
            if step.description:
                lines.append(f"  {i}. {step} ({step.description})")
            else:
                lines.append(f"  {i}. {step}")
        lines.append(f"Final: {self.final}")
        return "\n".join(lines)

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self):
        return iter(self.steps)

    def __bool__(self) -> bool:
        """True if any rewriting was done."""
        return len(self.steps) > 0

    def to_dict(self) -> Dict:
        return {
            "initial": self.initial,
            "final": self.final,
            "steps": [step.to_dict() for step in self.steps],
            "step_count": len(self.steps),
        }

    def rule_counts(self) -> Dict[str, int]:
        """Count how many times each rule was applied."""
        counts: Dict[str, int] = {}
        for step in self.steps:
            counts[step.rule_name] = counts.get(step.rule_name, 0) + 1
        return counts

    def rules_applied(self) -> List[str]:
        return [step.rule_name for step in self.steps]

    def summary(self) -> str:
        """Get a brief summary of the rewriting."""
        if not self.steps:
            return "No rewriting performed"
        counts = self.rule_counts()
        most_used = max(counts.items(), key=lambda x: x[1])
        return (f"{len(self.steps)} steps using {len(counts)} unique rules. "
                f"Most used: {most_used[0]} ({most_used[1]}x)")


# ============================================================
# DSL Loading
# ============================================================

class RuleMetadata:
    """Name, description, topic tags and priority parsed from a rule line."""

    def __init__(self, name: Optional[str] = None, description: Optional[str] = None,
                 tags: Optional[List[str]] = None, priority: int = 0):
        self.name = name
        self.description = description
        self.tags = tags or []
        self.priority = priority  # Higher priority fires first (default: 0)

    def __repr__(self) -> str:
        if not self.name:
            return "<anonymous>"
        if self.priority != 0:
            base = f"@{self.name}[{self.priority}]"
        else:
            base = f"@{self.name}"
        if self.description:
            base += f" \"{self.description}\""
        return base


RawRule = Tuple[RuleMetadata, str, str]  # (metadata, pattern text, skeleton text)

_GROUP_LINE = re.compile(r'\[([\w-]+)\]\Z')
_HEADERS = (
    re.compile(r'@([\w-]+)\[(-?\d+)\]\s+"([^"]+)":\s*(.+)'),
    re.compile(r'@([\w-]+)\[(-?\d+)\]:\s*(.+)'),
    re.compile(r'@([\w-]+)\s+"([^"]+)":\s*(.+)'),
    re.compile(r'@([\w-]+):\s*(.+)'),
)


def parse_rule_line(line: str) -> Optional[RawRule]:
    """
    Parse a single rule line.

    Formats:
        @name: pattern => skeleton
        @name[priority]: pattern => skeleton
        @name "description": pattern => skeleton
        @name[priority] "description": pattern => skeleton
        pattern => skeleton

    A skeleton wrapped in double quotes keeps its surrounding whitespace.

    Returns: (metadata, pattern, skeleton) or None if not a rule
    """
    line = line.strip()

    if not line or line.startswith('#'):
        return None

    metadata = RuleMetadata()
    if line.startswith('@'):
        for header in _HEADERS:
            match_obj = header.match(line)
            if not match_obj:
                continue
            groups = match_obj.groups()
            metadata.name = groups[0]
            if header is _HEADERS[0]:
                metadata.priority = int(groups[1])
                metadata.description = groups[2]
            elif header is _HEADERS[1]:
                metadata.priority = int(groups[1])
            elif header is _HEADERS[2]:
                metadata.description = groups[1]
            line = groups[-1]
            break

    if '=>' not in line:
        return None

    pattern_str, skeleton_str = line.split('=>', 1)
    pattern_str = pattern_str.strip()
    skeleton_str = skeleton_str.strip()

    if len(skeleton_str) >= 2 and skeleton_str.startswith('"') and skeleton_str.endswith('"'):
        skeleton_str = skeleton_str[1:-1]

    if not pattern_str:
        return None

    return (metadata, pattern_str, skeleton_str)


def load_rules_from_dsl(
    text: str,
    base_path: Optional[Path] = None,
    _included_files: Optional[set] = None
) -> List[RawRule]:
    """
    Load raw rules from DSL text.

    Supports:
    - Topic groups: [groupname]
    - File includes: :include path/to/file.rules

    Args:
        text: DSL text containing rules
        base_path: Base path for resolving relative :include paths
        _included_files: Internal tracking for circular include detection

    Returns:
        List of (metadata, pattern, skeleton) tuples
    """
    rules = []
    current_group = None

    if _included_files is None:
        _included_files = set()

    for line in text.split('\n'):
        line_stripped = line.strip()

        group = _GROUP_LINE.match(line_stripped)
        if group:
            current_group = group.group(1)
            continue

        if line_stripped.startswith(':include '):
            include_path_str = line_stripped[9:].strip()
            if include_path_str:
                if base_path:
                    include_path = base_path / include_path_str
                else:
                    include_path = Path(include_path_str)

                abs_path = include_path.resolve()
                if abs_path in _included_files:
                    raise RuleDefinitionError(f"Circular include detected: {include_path}")
                if not include_path.exists():
                    raise FileNotFoundError(f"Include file not found: {include_path}")

                _included_files.add(abs_path)
                included_rules = load_rules_from_file(
                    include_path,
                    _included_files=_included_files
                )
                for meta, _, _ in included_rules:
                    if current_group and not meta.tags:
                        meta.tags.append(current_group)
                rules.extend(included_rules)
            continue

        result = parse_rule_line(line)
        if result:
            metadata, pattern, skeleton = result
            if current_group and current_group not in metadata.tags:
                metadata.tags.append(current_group)
            rules.append(result)
    return rules


def load_rules_from_file(
    path: Union[str, Path],
    _included_files: Optional[set] = None
) -> List[RawRule]:
    """
    Load raw rules from a .rules or .json file.

    :include directives resolve relative to the containing file.
    """
    path = Path(path)
    text = path.read_text(encoding="utf-8")

    if path.suffix == '.json':
        return load_rules_from_json(text)
    if _included_files is None:
        _included_files = {path.resolve()}
    return load_rules_from_dsl(
        text,
        base_path=path.parent,
        _included_files=_included_files
    )


def load_rules_from_json(text: str) -> List[RawRule]:
    """
    Load raw rules from JSON text.

    Expected format:
        {
            "name": "ruleset-name",
            "rules": [
                {
                    "name": "rule-name",
                    "description": "...",   # optional
                    "pattern": "...",
                    "skeleton": "...",
                    "priority": 100,         # optional
                    "tags": ["group1"]       # optional
                },
                or just [pattern, skeleton]
            ]
        }
    """
    data = json.loads(text)
    rules = []

    for rule in data.get('rules', []):
        if isinstance(rule, dict):
            metadata = RuleMetadata(
                name=rule.get('name'),
                description=rule.get('description'),
                tags=list(rule.get('tags') or []),
                priority=rule.get('priority', 0),
            )
            pattern = rule['pattern']
            skeleton = rule['skeleton']
        else:
            metadata = RuleMetadata()
            pattern, skeleton = rule[0], rule[1]
        rules.append((metadata, pattern, skeleton))

    return rules


# ============================================================
# Rule Sets
# ============================================================

class RuleSet:
    """
    An ordered, immutable collection of rules.

    Rule order is priority: the first rule whose pattern matches a payload
    wins. RuleSets hold no run state and may be shared between concurrent
    runs; each run tracks its own attempts in an AttemptLog.

    Example:
        rules = RuleSet.from_dsl('''
            @exp-mult: ?b^?m * ?b^?n => :b^(:m+:n)
            @add: (?a:int + ?b:int) => (! + :a :b)
        ''', prelude=ARITHMETIC_PRELUDE)

        rules("x^2 * x^3")  # => "x^5"
    """

    __slots__ = ("_name", "_rules", "_index")

    def __init__(self, rules: Iterable[Rule], name: Optional[str] = None):
        self._name = name
        self._rules: Tuple[Rule, ...] = tuple(rules)
        self._index: Dict[str, int] = {}
        for idx, rule in enumerate(self._rules):
            if rule.name in self._index:
                raise RuleDefinitionError(f"Duplicate rule name '{rule.name}'")
            self._index[rule.name] = idx

    @property
    def name(self) -> str:
        return self._name or f"ruleset@{id(self):x}"

    @property
    def rules(self) -> Tuple[Rule, ...]:
        return self._rules

    def first_match(self, payload: PayloadType) -> Optional[Tuple[Rule, "re.Match"]]:
        """The first rule (in order) whose pattern occurs in payload, with its match."""
        for rule in self._rules:
            found = rule.search(payload)
            if found is not None:
                return rule, found
        return None

    def matches(self, payload: PayloadType) -> bool:
        return self.first_match(payload) is not None

    def applicable(self, value: "Value", attempts: Optional["AttemptLog"] = None) -> bool:
        """
        True iff some rule matches the value's payload and this run has not
        already recorded the payload as attempted by this RuleSet.
        """
        if attempts is not None and attempts.seen(self, value.payload):
            return False
        return self.matches(value.payload)

    def apply(self, value: "Value", attempts: Optional["AttemptLog"] = None) -> "Value":
        """
        Rewrite the value with the first matching rule.

        Returns a new Value with one appended history step; the input value
        is left untouched. The attempt is recorded in attempts, if given.

        Raises:
            ValueError: If no rule matches the value's payload.
        """
        found = self.first_match(value.payload)
        if found is None:
            raise ValueError(f"{self!r} has no rule matching {value.payload!r}")

        rule, match_obj = found
        after = rule.rewrite(value.payload, match_obj)
        if attempts is not None:
            attempts.record(self, value.payload, after)
        return value.extend(rule, after)

    def rules_matching(self, payload: PayloadType) -> List[Tuple[Rule, Captures]]:
        """
        Find all rules whose pattern occurs in payload.

        Useful for debugging shadowed rules.
        """
        matching = []
        for rule in self._rules:
            captures = rule.match(payload)
            if captures:
                matching.append((rule, captures))
        return matching

    def rewrite(self, seed: Union[PayloadType, "Value"], step_limit: int = DEFAULT_STEP_LIMIT,
                guard: str = DEFAULT_GUARD) -> Union["Terminated", "Aborted"]:
        """Run a rewrite with this RuleSet alone."""
        return run(seed, [self], step_limit=step_limit, guard=guard)

    def __call__(self, seed: Union[PayloadType, "Value"], **kwargs) -> PayloadType:
        """
        Shorthand: rules(payload) returns the terminal payload.

        Raises:
            BoundedLoopExceeded: If the run is aborted.
        """
        return self.rewrite(seed, **kwargs).unwrap().payload

    def groups(self) -> set:
        """Return all topic tags used by rules."""
        all_groups = set()
        for rule in self._rules:
            all_groups.update(rule.tags)
        return all_groups

    def list_rules(self) -> List[str]:
        """List all rules in DSL format."""
        return [rule.to_dsl() for rule in self._rules]

    def to_dsl(self, name: Optional[str] = None) -> str:
        """Export rules to DSL text, organized by topic."""
        lines = []
        if name:
            lines.append(f"# {name}")
            lines.append("")

        current_group = None
        for rule in self._rules:
            rule_group = rule.tags[0] if rule.tags else None
            if rule_group != current_group:
                if rule_group:
                    if lines and lines[-1] != "":
                        lines.append("")
                    lines.append(f"[{rule_group}]")
                current_group = rule_group
            lines.append(rule.to_dsl())

        return "\n".join(lines)

    def __len__(self) -> int:
        return len(self._rules)

    def __iter__(self):
        return iter(self._rules)

    def __contains__(self, name: str) -> bool:
        """Check if a named rule exists: 'add-zero' in rules."""
        return name in self._index

    def __getitem__(self, name: str) -> Rule:
        """Get rule by name: rules['add-zero']."""
        if name not in self._index:
            raise KeyError(f"No rule named '{name}'")
        return self._rules[self._index[name]]

    def __or__(self, other: "RuleSet") -> "RuleSet":
        """Concatenate two rule sets: self's rules keep precedence."""
        return RuleSet(self._rules + other._rules, name=self._name)

    def __repr__(self) -> str:
        return f"RuleSet({self.name!r}, {len(self._rules)} rules)"

    # Class method constructors for fluent creation
    @classmethod
    def from_dsl(cls, text: str, prelude: Optional[PreludeType] = None,
                 name: Optional[str] = None) -> "RuleSet":
        """Create a rule set from DSL text."""
        return RuleSetBuilder(name=name, prelude=prelude).load_dsl(text).build()

    @classmethod
    def from_file(cls, path: Union[str, Path], prelude: Optional[PreludeType] = None,
                  name: Optional[str] = None) -> "RuleSet":
        """Create a rule set from a .rules or .json file."""
        return RuleSetBuilder(name=name, prelude=prelude).load_file(path).build()

    @classmethod
    def from_rules(cls, rules: List[Tuple], prelude: Optional[PreludeType] = None,
                   name: Optional[str] = None) -> "RuleSet":
        """Create a rule set from (pattern, skeleton) or (name, pattern, skeleton) tuples."""
        return RuleSetBuilder(name=name, prelude=prelude).load_rules(rules).build()


class RuleSetBuilder:
    """
    Accumulates rules in load order, then freezes them into a RuleSet.

    Example:
        rules = (RuleSetBuilder("math")
            .with_prelude(FULL_PRELUDE)
            .load_file("arithmetic.rules")
            .add_rule("double", "dbl(?x:int)", lambda c: int(c["x"]) * 2)
            .build())
    """

    def __init__(self, name: Optional[str] = None, prelude: Optional[PreludeType] = None):
        self._name = name
        self._prelude: PreludeType = prelude if prelude is not None else NO_PRELUDE
        self._rules: List[Rule] = []
        self._names: Set[str] = set()

    @property
    def prelude(self) -> PreludeType:
        return self._prelude

    def with_prelude(self, prelude: PreludeType) -> "RuleSetBuilder":
        """
        Set the prelude for computed slots in templates added afterwards.

        Returns:
            self for chaining
        """
        self._prelude = prelude
        return self

    def add(self, rule: Rule) -> "RuleSetBuilder":
        """Append a constructed rule."""
        if rule.name in self._names:
            raise RuleDefinitionError(f"Duplicate rule name '{rule.name}'")
        self._names.add(rule.name)
        self._rules.append(rule)
        return self

    def add_rule(
        self,
        name: Optional[str],
        pattern: str,
        producer: Union[str, Callable[[Captures], object]],
        description: Optional[str] = None,
        tags: Optional[List[str]] = None,
        priority: int = 0,
    ) -> "RuleSetBuilder":
        """Append a rule built from pattern text and a template or function."""
        rule = Rule.create(
            name or self._anonymous_name(),
            pattern,
            producer,
            description=description,
            tags=tags,
            priority=priority,
            prelude=self._prelude,
        )
        return self.add(rule)

    def _anonymous_name(self) -> str:
        return f"rule-{len(self._rules)}"

    def _add_raw(self, raw_rules: List[RawRule]) -> "RuleSetBuilder":
        for metadata, pattern, skeleton in raw_rules:
            try:
                self.add_rule(
                    metadata.name,
                    pattern,
                    skeleton,
                    description=metadata.description,
                    tags=metadata.tags,
                    priority=metadata.priority,
                )
            except RuleDefinitionError as e:
                raise RuleDefinitionError(f"{metadata!r} {pattern} => {skeleton}: {e}") from e
        return self

    def load_dsl(self, text: str, base_path: Optional[Path] = None) -> "RuleSetBuilder":
        """Append rules from DSL text."""
        return self._add_raw(load_rules_from_dsl(text, base_path=base_path))

    def load_file(self, path: Union[str, Path]) -> "RuleSetBuilder":
        """Append rules from a file (.rules or .json)."""
        raw = load_rules_from_file(path)
        logger.debug("Loaded %d rules from %s", len(raw), path)
        return self._add_raw(raw)

    def load_json(self, text: str) -> "RuleSetBuilder":
        """Append rules from JSON text."""
        return self._add_raw(load_rules_from_json(text))

    def load_rules(self, rules: List[Tuple]) -> "RuleSetBuilder":
        """Append rules from (pattern, skeleton) or (name, pattern, skeleton) tuples."""
        for rule in rules:
            if len(rule) == 3:
                self.add_rule(rule[0], rule[1], rule[2])
            else:
                self.add_rule(None, rule[0], rule[1])
        return self

    def clear(self) -> "RuleSetBuilder":
        self._rules = []
        self._names = set()
        return self

    def groups(self) -> set:
        all_groups = set()
        for rule in self._rules:
            all_groups.update(rule.tags)
        return all_groups

    def build(self, groups: Optional[Iterable[str]] = None,
              exclude: Iterable[str] = ()) -> RuleSet:
        """
        Freeze the accumulated rules into a RuleSet.

        Rules are ordered by priority (descending); rules of equal priority
        keep their load order.

        Args:
            groups: If given, keep only rules tagged with one of these groups
                (untagged rules are always kept).
            exclude: Drop rules tagged with any of these groups.
        """
        selected = set(groups) if groups is not None else None
        excluded = set(exclude)

        def active(rule: Rule) -> bool:
            if not rule.tags:
                return True
            if any(tag in excluded for tag in rule.tags):
                return False
            if selected is not None:
                return any(tag in selected for tag in rule.tags)
            return True

        indexed = [(rule.priority, idx, rule) for idx, rule in enumerate(self._rules) if active(rule)]
        indexed.sort(key=lambda x: (-x[0], x[1]))
        return RuleSet([rule for _, _, rule in indexed], name=self._name)

    def __len__(self) -> int:
        return len(self._rules)

    def __repr__(self) -> str:
        return f"RuleSetBuilder({len(self._rules)} rules)"


# ============================================================
# Runs
# ============================================================

class AttemptLog:
    """
    Per-run record of (RuleSet, payload) pairs a RuleSet may no longer claim.

    Guard modes:
        "stall"  - record a payload when the RuleSet's rewrite left it unchanged
                   (default; genuine cycles run until the step limit)
        "strict" - record every payload the RuleSet rewrites
    """

    def __init__(self, guard: str = DEFAULT_GUARD):
        if guard not in GUARD_MODES:
            raise ValueError(f"Unknown guard: {guard}. "
                             f"Valid options: {', '.join(GUARD_MODES)}")
        self.guard = guard
        self._marks: Set[Tuple[RuleSet, PayloadType]] = set()

    def seen(self, ruleset: RuleSet, payload: PayloadType) -> bool:
        return (ruleset, payload) in self._marks

    def record(self, ruleset: RuleSet, before: PayloadType, after: PayloadType) -> None:
        if self.guard == "strict" or before == after:
            self._marks.add((ruleset, before))

    def __len__(self) -> int:
        return len(self._marks)

    def __repr__(self) -> str:
        return f"AttemptLog({self.guard!r}, {len(self._marks)} marks)"


@dataclass(frozen=True)
class Terminated:
    """A run that reached a value no RuleSet applies to."""

    value: Value
    steps: int

    terminated = True
    aborted = False

    @property
    def payload(self) -> PayloadType:
        return self.value.payload

    def unwrap(self) -> Value:
        return self.value


@dataclass(frozen=True)
class Aborted:
    """A run stopped by its step limit; value is the last one reached."""

    value: Value
    steps: int

    terminated = False
    aborted = True

    @property
    def payload(self) -> PayloadType:
        return self.value.payload

    def error(self) -> BoundedLoopExceeded:
        return BoundedLoopExceeded(self.value, self.steps)

    def unwrap(self) -> Value:
        """Raises BoundedLoopExceeded with the last value and step count."""
        raise self.error()


ResultType = Union[Terminated, Aborted]


class Sequencer:
    """
    Drives one rewrite chain to completion.

    Each step hands the pending value to the first applicable RuleSet (in
    registration order) and queues the rewritten value. The run terminates
    when no RuleSet applies and aborts when the step limit is reached.
    A Sequencer is single-use and owns its queue and attempt log.

    Example:
        seq = Sequencer([algebra, arithmetic], step_limit=50)
        seq.emit("x^2 * x^3")
        result = seq.process()
        print(result.payload, len(result.value.history))

    Callers wanting to cancel drive step() themselves and stop calling it.
    """

    def __init__(self, rulesets: Union[RuleSet, Iterable[RuleSet]],
                 step_limit: int = DEFAULT_STEP_LIMIT,
                 guard: str = DEFAULT_GUARD,
                 identifier: Optional[str] = None):
        self.identifier = identifier or f"seq_{uuid.uuid4().hex[:12]}"
        self._steps = 0
        self._state = RUNNING
        if isinstance(rulesets, RuleSet):
            rulesets = [rulesets]
        if step_limit < 0:
            raise ValueError(f"step_limit must be non-negative, got {step_limit}")
        self.step_limit = step_limit
        self._rulesets: Tuple[RuleSet, ...] = tuple(rulesets)
        self._attempts = AttemptLog(guard)
        self._pending: deque = deque()
        self._result: Optional[ResultType] = None

    @property
    def rulesets(self) -> Tuple[RuleSet, ...]:
        return self._rulesets

    @property
    def guard(self) -> str:
        return self._attempts.guard

    @property
    def state(self) -> str:
        return self._state

    @property
    def steps(self) -> int:
        return self._steps

    @property
    def pending(self) -> Tuple[Value, ...]:
        return tuple(self._pending)

    def emit(self, seed: Union[PayloadType, Value]) -> "Sequencer":
        """
        Queue the seed value.

        Raises:
            ValueError: If a value is already pending or the run has finished.
        """
        if self._state != RUNNING or self._pending or self._steps:
            raise ValueError(f"Sequencer {self.identifier} already has a value")
        value = seed if isinstance(seed, Value) else Value(seed)
        self._pending.append(value)
        return self

    def _select(self, value: Value) -> Optional[RuleSet]:
        for ruleset in self._rulesets:
            if ruleset.applicable(value, self._attempts):
                return ruleset
        return None

    def _finish(self, result: ResultType, state: str) -> None:
        self._state = state
        self._result = result

    def step(self) -> bool:
        """
        Perform one rewrite step.

        Returns:
            True if the run is still running afterwards, False once it has
            terminated or aborted.
        """
        if self._state != RUNNING:
            return False
        if not self._pending:
            raise ValueError(f"Sequencer {self.identifier} has nothing to rewrite; emit() a seed first")

        value = self._pending.popleft()
        ruleset = self._select(value)

        if ruleset is None:
            logger.debug("%s terminated after %d steps: %r",
                         self.identifier, self._steps, value.payload)
            self._finish(Terminated(value, self._steps), TERMINATED)
            return False

        if self._steps >= self.step_limit:
            logger.info("%s aborted: step limit %d reached at %r",
                        self.identifier, self.step_limit, value.payload)
            self._finish(Aborted(value, self._steps), ABORTED)
            return False

        new_value = ruleset.apply(value, self._attempts)
        self._steps += 1
        logger.debug("%s step %d [%s] %s", self.identifier, self._steps,
                     ruleset.name, new_value.history[-1])
        self._pending.append(new_value)
        return True

    def process(self) -> ResultType:
        """Run until termination or abort and return the result."""
        while self.step():
            pass
        return self._result

    def result(self, raise_on_abort: bool = False) -> Optional[ResultType]:
        """
        The run's result, or None while running.

        Raises:
            BoundedLoopExceeded: If raise_on_abort is set and the run aborted.
        """
        if raise_on_abort and isinstance(self._result, Aborted):
            raise self._result.error()
        return self._result

    def __repr__(self) -> str:
        return f"Sequencer({self.identifier!r}, {self._state}, {self._steps} steps)"


def run(
    seed: Union[PayloadType, Value],
    rulesets: Union[RuleSet, Iterable[RuleSet]],
    step_limit: int = DEFAULT_STEP_LIMIT,
    guard: str = DEFAULT_GUARD,
) -> ResultType:
    """
    Rewrite seed until no RuleSet applies or step_limit steps were taken.

    Args:
        seed: Payload string (or Value) to start from
        rulesets: RuleSets in dispatch order
        step_limit: Maximum number of rewrite steps (default: 100)
        guard: Attempt guard mode, "stall" (default) or "strict"

    Returns:
        Terminated(value, steps) or Aborted(last_value, steps); the value
        carries the full history either way.
    """
    return Sequencer(rulesets, step_limit=step_limit, guard=guard).emit(seed).process()
