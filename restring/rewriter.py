"""
Core rewriter module for symbolic string transformation.

RESTRING - Rewriting Expression STRINGs

This module provides pattern compilation, captures, producers and rules:
the pieces a RuleSet strings together. A rule matches the leftmost
occurrence of its pattern in a payload and replaces exactly that span
with the text its producer derives from the captures.
"""

import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

# Type aliases
PayloadType = str
NumericType = Union[int, float]
ProduceHandler = Callable[[List[str]], Optional[str]]  # computed slot handler
PreludeType = Dict[str, ProduceHandler]
SegmentType = Tuple  # ("lit", text) | ("ref", key) | ("call", op, args)

# Sentinel payload for results a rule cannot compute (e.g. division by zero)
UNDEFINED = "undefined"

# Computations above these bounds are left unevaluated
MAX_EXPONENT = 10000
MAX_FACTORIAL = 1000


class RestringError(Exception):
    """Base class for all RESTRING errors."""


class RuleDefinitionError(RestringError, ValueError):
    """A rule, pattern or template is malformed. Raised at construction time."""


# ============================================================
# Captures - Dict-like interface for match results
# ============================================================

class Captures:
    """
    Dict-like wrapper for the text captured by a pattern match.

    Named wildcards are reachable by name, every group by its 1-based
    position (as an int or a digit string):

        if captures := rule.match("x^2 * x^3"):
            print(captures["b"], captures[1], captures.get("z", "0"))

    Captures objects are truthy when a match succeeded.
    Use NoMatch (which is falsy) to represent failed matches.
    """

    __slots__ = ('_named', '_positional')

    def __init__(self, named: Dict[str, str], positional: Tuple[str, ...] = ()):
        self._named = dict(named)
        self._positional = tuple(positional)

    @classmethod
    def from_match(cls, match_obj: "re.Match") -> "Captures":
        """Build captures from a regex match. Groups that did not participate are ''."""
        named = {k: (v if v is not None else "") for k, v in match_obj.groupdict().items()}
        positional = tuple(g if g is not None else "" for g in match_obj.groups())
        return cls(named, positional)

    def __bool__(self) -> bool:
        """Captures are always truthy (use NoMatch for failed matches)."""
        return True

    def _position(self, key: Union[str, int]) -> Optional[int]:
        if isinstance(key, int):
            return key
        if isinstance(key, str) and key.isdigit():
            return int(key)
        return None

    def __getitem__(self, key: Union[str, int]) -> str:
        """Get captured text by name or 1-based position: captures["x"], captures[1]"""
        pos = self._position(key)
        if pos is not None:
            if 1 <= pos <= len(self._positional):
                return self._positional[pos - 1]
            raise KeyError(key)
        return self._named[key]

    def get(self, key: Union[str, int], default=None):
        """Get captured text with optional default."""
        try:
            return self[key]
        except KeyError:
            return default

    def __contains__(self, key: Union[str, int]) -> bool:
        pos = self._position(key)
        if pos is not None:
            return 1 <= pos <= len(self._positional)
        return key in self._named

    def keys(self):
        """Return wildcard names."""
        return self._named.keys()

    def values(self):
        return self._named.values()

    def items(self):
        return self._named.items()

    @property
    def groups(self) -> Tuple[str, ...]:
        """All captured groups in positional order."""
        return self._positional

    def __iter__(self):
        return iter(self._named)

    def __len__(self) -> int:
        return len(self._positional)

    def __repr__(self) -> str:
        if self._named:
            return f"Captures({self._named})"
        return f"Captures({list(self._positional)})"

    def __eq__(self, other):
        if isinstance(other, Captures):
            return self._named == other._named and self._positional == other._positional
        return False

    def to_dict(self) -> Dict[str, str]:
        """Convert named captures to a plain dictionary."""
        return self._named.copy()


class _NoMatch:
    """
    Singleton representing a failed pattern match.

    NoMatch is falsy, allowing natural use in conditionals:

        if captures := rule.match(payload):
            # matched
        else:
            # NoMatch
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NoMatch"

    def __getitem__(self, key):
        raise KeyError(f"NoMatch has no capture for '{key}'")

    def get(self, key, default=None):
        return default

    def __contains__(self, key) -> bool:
        return False

    def __len__(self) -> int:
        return 0

    def __iter__(self):
        return iter([])


# Singleton instance
NoMatch = _NoMatch()


# ============================================================
# Numbers
# ============================================================

_NUMBER = re.compile(r"[+-]?\d+(?:\.\d+)?\Z")


def parse_number(text: str) -> Optional[NumericType]:
    """
    Parse captured text as a number.

    Only plain decimal literals are accepted; "inf", "1e5" and the like
    are treated as symbols. Returns None for non-numeric text.
    """
    text = text.strip()
    if not _NUMBER.match(text):
        return None
    if '.' in text:
        return float(text)
    try:
        return int(text)
    except ValueError:
        # past the interpreter's int string conversion limit
        return None


def format_number(value: Any) -> str:
    """Render a computed value as payload text, preserving integers when possible."""
    if isinstance(value, bool):
        return "T" if value else "F"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


# ============================================================
# Prelude Builders
# ============================================================

def numeric(handler: Callable[[List[NumericType]], Optional[NumericType]]) -> ProduceHandler:
    """
    Lift a numeric fold handler to a computed slot handler.

    The handler receives parsed numbers and returns a number, or None
    when it can't fold. Non-numeric arguments leave the slot unevaluated.
    """
    def produce(args: List[str]) -> Optional[str]:
        values = [parse_number(a) for a in args]
        if any(v is None for v in values):
            return None
        try:
            result = handler(values)
            if result is None:
                return None
            return format_number(result)
        except (ValueError, OverflowError):
            return None
    return produce


def nary_fold(
    identity: NumericType,
    binary_op: Callable[[NumericType, NumericType], NumericType],
) -> ProduceHandler:
    """Create an n-ary folder with identity element.

    Examples:
        nary_fold(0, lambda a, b: a + b)  # (! +) = 0, (! + 2 3 4) = 9
        nary_fold(1, lambda a, b: a * b)  # (! *) = 1, (! * 2 3) = 6
    """
    def handler(args: List[NumericType]) -> NumericType:
        result = identity
        for a in args:
            result = binary_op(result, a)
        return result
    return numeric(handler)


def unary_only(f: Callable[[NumericType], NumericType]) -> ProduceHandler:
    """Create a unary-only folder (e.g., abs, factorial)."""
    def handler(args: List[NumericType]) -> Optional[NumericType]:
        if len(args) != 1:
            return None
        return f(args[0])
    return numeric(handler)


def binary_only(f: Callable[[NumericType, NumericType], Optional[NumericType]]) -> ProduceHandler:
    """Create a binary-only folder (e.g., ^, gcd, mod)."""
    def handler(args: List[NumericType]) -> Optional[NumericType]:
        if len(args) != 2:
            return None
        return f(args[0], args[1])
    return numeric(handler)


def special_minus() -> ProduceHandler:
    """Subtraction: (! - x) = -x, (! - x y) = x-y."""
    def handler(args: List[NumericType]) -> Optional[NumericType]:
        if len(args) == 1:
            return -args[0]
        if len(args) == 2:
            return args[0] - args[1]
        return None
    return numeric(handler)


def safe_div() -> ProduceHandler:
    """Division that yields the UNDEFINED sentinel on a literal zero divisor."""
    def divide(a: NumericType, b: NumericType) -> NumericType:
        if isinstance(a, int) and isinstance(b, int) and a % b == 0:
            return a // b
        return a / b

    fold = binary_only(divide)

    def produce(args: List[str]) -> Optional[str]:
        if len(args) == 2 and parse_number(args[1]) == 0:
            return UNDEFINED
        return fold(args)
    return produce


def _bounded_power(a: NumericType, b: NumericType) -> Optional[NumericType]:
    if abs(b) > MAX_EXPONENT:
        return None
    if a == 0 and b < 0:
        return None
    result = a ** b
    if isinstance(result, complex):
        return None
    return result


def _bounded_factorial(n: NumericType) -> Optional[int]:
    if not isinstance(n, int) or n < 0 or n > MAX_FACTORIAL:
        return None
    return math.factorial(n)


def _integer_only(f: Callable[[int, int], int]) -> Callable[[NumericType, NumericType], Optional[int]]:
    def handler(a: NumericType, b: NumericType) -> Optional[int]:
        if not isinstance(a, int) or not isinstance(b, int):
            return None
        return f(a, b)
    return handler


def _modulo(a: int, b: int) -> Optional[int]:
    if b == 0:
        return None
    return a % b


# ============================================================
# Standard Preludes for Computed Slots
# ============================================================

# Arithmetic prelude: basic arithmetic operators
ARITHMETIC_PRELUDE: PreludeType = {
    "+": nary_fold(0, lambda a, b: a + b),
    "*": nary_fold(1, lambda a, b: a * b),
    "-": special_minus(),
    "/": safe_div(),
    "^": binary_only(_bounded_power),
}

# Number prelude: integer helpers for counting and number theory rules
NUMBER_PRELUDE: PreludeType = {
    "factorial": unary_only(_bounded_factorial),
    "gcd": binary_only(_integer_only(math.gcd)),
    "lcm": binary_only(_integer_only(math.lcm)),
    "mod": binary_only(_integer_only(_modulo)),
    "abs": unary_only(abs),
    "neg": unary_only(lambda x: -x),
    "inc": unary_only(lambda x: x + 1),
    "dec": unary_only(lambda x: x - 1),
}

# Full prelude: arithmetic + number helpers
FULL_PRELUDE: PreludeType = {
    **ARITHMETIC_PRELUDE,
    **NUMBER_PRELUDE,
}

# Empty prelude (templates may not use computed slots)
NO_PRELUDE: PreludeType = {}


def unevaluated(op: str, args: List[str]) -> str:
    """
    Render a computed slot that could not be folded.

    Symbolic operators render infix in parentheses, named operations
    render as calls:
        unevaluated("+", ["a", "2"])   -> "(a+2)"
        unevaluated("gcd", ["a", "b"]) -> "gcd(a,b)"
    """
    if op[:1].isalpha():
        return f"{op}({','.join(args)})"
    return "(" + op.join(args) + ")"


def evaluate(op: str, args: List[str], prelude: PreludeType) -> str:
    """Evaluate a computed slot through the prelude, falling back to unevaluated text."""
    result = prelude[op](args)
    if result is None:
        return unevaluated(op, args)
    return result


# ============================================================
# Pattern Compilation
# ============================================================

WILDCARD_CLASSES: Dict[str, str] = {
    "word": r"\w+",
    "int": r"\d+",
    "const": r"\d+",
    "num": r"-?\d+(?:\.\d+)?",
    "var": r"[^\W\d]\w*",
    "expr": r".+",
}

_WILDCARD = re.compile(r"\?([A-Za-z_]\w*)(?::(" + "|".join(WILDCARD_CLASSES) + r")\b)?")


def translate_pattern(text: str) -> str:
    """
    Translate wildcard pattern syntax into a regular expression.

    Pattern syntax:
        ?x or ?x:word    - match a word (\\w+), capture as x
        ?x:int           - match digits
        ?x:num           - match a signed decimal
        ?x:var           - match an identifier
        ?x:expr          - match any non-empty text (greedy)
        ?x ... ?x        - second occurrence must repeat the first capture
        whitespace       - matches optional whitespace
        \\c              - literal character c
        anything else    - literal text

    Examples:
        "(?a:int + ?b:int)" -> r"\\((?P<a>\\d+)\\s*\\+\\s*(?P<b>\\d+)\\)"
        "?x ∧ ?x"           -> r"(?P<x>\\w+)\\s*∧\\s*(?P=x)"
    """
    parts = []
    seen = set()
    i = 0
    n = len(text)

    while i < n:
        c = text[i]
        if c == '\\' and i + 1 < n:
            parts.append(re.escape(text[i + 1]))
            i += 2
            continue
        if c.isspace():
            while i < n and text[i].isspace():
                i += 1
            parts.append(r"\s*")
            continue
        if c == '?':
            wildcard = _WILDCARD.match(text, i)
            if wildcard:
                name = wildcard.group(1)
                kind = wildcard.group(2) or "word"
                if name in seen:
                    # Back-reference: must be textually identical
                    parts.append(f"(?P={name})")
                else:
                    seen.add(name)
                    parts.append(f"(?P<{name}>{WILDCARD_CLASSES[kind]})")
                i = wildcard.end()
                continue
        parts.append(re.escape(c))
        i += 1

    return "".join(parts)


def compile_pattern(text: str) -> "re.Pattern":
    """
    Compile a rule pattern.

    Text wrapped in slashes (/.../) is a raw Python regular expression;
    anything else is wildcard syntax (see translate_pattern).

    Raises:
        RuleDefinitionError: If the pattern is empty or does not compile.
    """
    text = text.strip()
    if not text:
        raise RuleDefinitionError("Empty pattern")

    if len(text) >= 2 and text.startswith('/') and text.endswith('/'):
        source = text[1:-1]
    else:
        source = translate_pattern(text)

    try:
        return re.compile(source)
    except re.error as e:
        raise RuleDefinitionError(f"Invalid pattern {text!r}: {e}") from e


# ============================================================
# Producers
# ============================================================

_REF = re.compile(r":([A-Za-z_]\w*|\d+)")


def _find_close(text: str, start: int) -> int:
    """Index of the parenthesis closing the one opened at text[start]."""
    depth = 0
    for i in range(start, len(text)):
        if text[i] == '(':
            depth += 1
        elif text[i] == ')':
            depth -= 1
            if depth == 0:
                return i
    raise RuleDefinitionError(f"Unclosed computed slot in {text!r}")


def _split_top_level(body: str) -> List[str]:
    """Split on whitespace outside parentheses."""
    tokens = []
    current = ''
    depth = 0
    for c in body:
        if c == '(':
            depth += 1
        elif c == ')':
            depth -= 1
        if c.isspace() and depth == 0:
            if current:
                tokens.append(current)
            current = ''
        else:
            current += c
    if current:
        tokens.append(current)
    return tokens


def _parse_call(body: str, prelude: PreludeType) -> SegmentType:
    tokens = _split_top_level(body)
    if not tokens:
        raise RuleDefinitionError("Empty computed slot")

    op = tokens[0]
    if op not in prelude:
        raise RuleDefinitionError(
            f"Unknown operation '{op}' in computed slot (is a prelude configured?)"
        )

    args = []
    for token in tokens[1:]:
        if token.startswith("(!"):
            if not token.endswith(")"):
                raise RuleDefinitionError(f"Malformed computed slot {token!r}")
            args.append(_parse_call(token[2:-1], prelude))
        elif _REF.fullmatch(token):
            args.append(("ref", token[1:]))
        else:
            args.append(("lit", token))
    return ("call", op, tuple(args))


def parse_template(text: str, prelude: Optional[PreludeType] = None) -> Tuple[SegmentType, ...]:
    """
    Parse a template into segments.

    Template syntax:
        :x or :1         - captured text (by name or position)
        (! op arg ...)   - computed slot; args are :x, literals or nested slots
        \\c              - literal character c
        anything else    - literal text

    Example:
        "(! dec :n)" with n captured as "4"  -> "3"
        ":n*x^(! - :n 1)"                    -> "4*x^3"
    """
    prelude = prelude if prelude is not None else NO_PRELUDE
    segments: List[SegmentType] = []
    literal = ''
    i = 0

    while i < len(text):
        c = text[i]
        if c == '\\' and i + 1 < len(text):
            literal += text[i + 1]
            i += 2
            continue
        if text.startswith("(!", i):
            end = _find_close(text, i)
            if literal:
                segments.append(("lit", literal))
                literal = ''
            segments.append(_parse_call(text[i + 2:end], prelude))
            i = end + 1
            continue
        if c == ':':
            ref = _REF.match(text, i)
            if ref:
                if literal:
                    segments.append(("lit", literal))
                    literal = ''
                segments.append(("ref", ref.group(1)))
                i = ref.end()
                continue
        literal += c
        i += 1

    if literal:
        segments.append(("lit", literal))
    return tuple(segments)


def _segment_refs(segment: SegmentType) -> List[str]:
    if segment[0] == "ref":
        return [segment[1]]
    if segment[0] == "call":
        refs = []
        for arg in segment[2]:
            refs.extend(_segment_refs(arg))
        return refs
    return []


@dataclass(frozen=True)
class Template:
    """
    Producer that substitutes captured text into a fixed output shape.

    Computed slots inside the template are evaluated through the prelude
    the template was parsed with.
    """

    source: str
    segments: Tuple[SegmentType, ...] = field(repr=False)
    prelude: PreludeType = field(default=None, repr=False, compare=False)

    @classmethod
    def parse(cls, source: str, prelude: Optional[PreludeType] = None) -> "Template":
        prelude = prelude if prelude is not None else NO_PRELUDE
        return cls(source, parse_template(source, prelude), prelude)

    def references(self) -> List[str]:
        """Capture keys the template reads, in order of appearance."""
        refs = []
        for segment in self.segments:
            refs.extend(_segment_refs(segment))
        return refs

    def _render(self, segment: SegmentType, captures: Captures) -> str:
        kind = segment[0]
        if kind == "lit":
            return segment[1]
        if kind == "ref":
            return captures[segment[1]]
        op, raw_args = segment[1], segment[2]
        args = [self._render(arg, captures) for arg in raw_args]
        return evaluate(op, args, self.prelude)

    def produce(self, captures: Captures) -> str:
        return "".join(self._render(segment, captures) for segment in self.segments)


@dataclass(frozen=True)
class Computed:
    """
    Producer backed by a Python function of the captures.

    The function returns the replacement text; numbers are rendered with
    format_number. Functions must encode failure as a sentinel payload
    (see UNDEFINED) rather than raise.
    """

    func: Callable[[Captures], Any]
    label: Optional[str] = None

    @property
    def source(self) -> str:
        return f"<{self.label or getattr(self.func, '__name__', 'computed')}>"

    def references(self) -> List[str]:
        return []

    def produce(self, captures: Captures) -> str:
        result = self.func(captures)
        if isinstance(result, str):
            return result
        return format_number(result)


ProducerType = Union[Template, Computed]


# ============================================================
# Rules
# ============================================================

def _pattern_source(pattern: "re.Pattern") -> str:
    return f"/{pattern.pattern}/"


@dataclass(frozen=True)
class Rule:
    """
    A named, immutable (pattern, producer) pair.

    Applying a rule rewrites only the leftmost occurrence of its pattern;
    everything outside the matched span is preserved.

    Example:
        rule = Rule.create("add-zero", "?x + 0", ":x")
        rule.apply("y + 0 + 0")  # => "y + 0"
    """

    name: str
    pattern: "re.Pattern"
    producer: ProducerType
    description: Optional[str] = None
    tags: Tuple[str, ...] = ()
    priority: int = 0
    source: Optional[str] = None

    def __post_init__(self):
        if not self.name:
            raise RuleDefinitionError("Rule name must be a non-empty string")
        if not isinstance(self.producer, (Template, Computed)):
            raise RuleDefinitionError(
                f"Rule '{self.name}': producer must be a Template or Computed, "
                f"got {type(self.producer).__name__}"
            )
        for ref in self.producer.references():
            if ref.isdigit():
                if not 1 <= int(ref) <= self.pattern.groups:
                    raise RuleDefinitionError(
                        f"Rule '{self.name}': template refers to group {ref}, "
                        f"pattern has {self.pattern.groups}"
                    )
            elif ref not in self.pattern.groupindex:
                raise RuleDefinitionError(
                    f"Rule '{self.name}': template refers to unknown capture '{ref}'"
                )
        if self.source is None:
            object.__setattr__(self, "source", _pattern_source(self.pattern))

    @classmethod
    def create(
        cls,
        name: str,
        pattern: Union[str, "re.Pattern"],
        producer: Union[str, ProducerType, Callable[[Captures], Any]],
        description: Optional[str] = None,
        tags: Optional[List[str]] = None,
        priority: int = 0,
        prelude: Optional[PreludeType] = None,
    ) -> "Rule":
        """
        Build a rule from pattern text and a template string or function.

        Args:
            name: Unique rule name
            pattern: Wildcard pattern text, /regex/ text, or a compiled regex
            producer: Template text, a Template/Computed, or a function of the captures
            description: Optional human-readable description
            tags: Optional topic tags (groups)
            priority: Higher priority fires first when a RuleSet is built
            prelude: Operations available to computed slots in a template
        """
        if isinstance(pattern, str):
            source = pattern.strip()
            compiled = compile_pattern(pattern)
        else:
            source = None
            compiled = pattern

        if isinstance(producer, str):
            producer = Template.parse(producer, prelude)
        elif not isinstance(producer, (Template, Computed)):
            producer = Computed(producer)

        return cls(
            name=name,
            pattern=compiled,
            producer=producer,
            description=description,
            tags=tuple(tags or ()),
            priority=priority,
            source=source,
        )

    def search(self, payload: PayloadType) -> Optional["re.Match"]:
        """Leftmost occurrence of the pattern, or None."""
        return self.pattern.search(payload)

    def matches(self, payload: PayloadType) -> bool:
        return self.pattern.search(payload) is not None

    def match(self, payload: PayloadType) -> Union[Captures, _NoMatch]:
        """Captures of the leftmost occurrence, or NoMatch."""
        found = self.search(payload)
        if found is None:
            return NoMatch
        return Captures.from_match(found)

    def rewrite(self, payload: PayloadType, found: "re.Match") -> PayloadType:
        """Replace the matched span of payload with the producer's output."""
        replacement = self.producer.produce(Captures.from_match(found))
        return payload[:found.start()] + replacement + payload[found.end():]

    def apply(self, payload: PayloadType) -> PayloadType:
        """
        Rewrite the leftmost occurrence of the pattern in payload.

        Raises:
            ValueError: If the rule does not match the payload.
        """
        found = self.search(payload)
        if found is None:
            raise ValueError(f"Rule '{self.name}' does not match {payload!r}")
        return self.rewrite(payload, found)

    def to_dsl(self) -> str:
        """Format the rule as a DSL line."""
        if self.priority != 0:
            head = f"@{self.name}[{self.priority}]"
        else:
            head = f"@{self.name}"
        if self.description:
            head += f" \"{self.description}\""
        skeleton = self.producer.source
        if skeleton != skeleton.strip():
            skeleton = f"\"{skeleton}\""
        return f"{head}: {self.source} => {skeleton}"

    def __repr__(self) -> str:
        return f"Rule({self.to_dsl()})"
