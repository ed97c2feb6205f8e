"""
RESTRING - Rewriting Expression STRINGs

A single-chain string rewriting engine: ordered rules are applied, one
leftmost rewrite per step, until no rule applies or a step limit is hit.

Quick Start:
    from restring import RuleSet, ARITHMETIC_PRELUDE, run

    rules = RuleSet.from_dsl('''
        @exp-mult: ?b^?m * ?b^?n => :b^(:m+:n)
        @add: (?a:int + ?b:int) => (! + :a :b)
    ''', prelude=ARITHMETIC_PRELUDE)

    result = run("x^2 * x^3", [rules])
    result.payload                  # => "x^5"
    result.value.trace().format("rules")  # => "exp-mult -> add"

DSL Syntax:
    # Comments start with #
    [topic]
    @rule-name: pattern => skeleton
    @rule-name "Description": pattern => skeleton
    @rule-name[priority]: pattern => skeleton

Pattern Syntax:
    ?x or ?x:word     - match a word, bind to x
    ?x:int            - match digits
    ?x:num            - match a signed decimal
    ?x:var            - match an identifier
    ?x:expr           - match any text (greedy)
    ?x ... ?x         - repeated name must match identical text
    /regex/           - raw regular expression, groups as :1, :2, ...

Skeleton Syntax:
    :x                - substitute captured text
    (! op :a :b)      - computed slot, evaluated through the prelude

Example Rules File (math.rules):
    [arithmetic]
    @divide: (?a:int / ?b:int) => (! / :a :b)
    @add-zero: ?x + 0 => :x

    [calculus]
    @d-power: d/dx x^?n:int => :n*x^(! dec :n)
"""

__version__ = "0.1.0"

# Rules, patterns and producers
from .rewriter import (
    PayloadType,
    NumericType,
    ProduceHandler,
    PreludeType,
    UNDEFINED,
    # Errors
    RestringError,
    RuleDefinitionError,
    # Captures
    Captures,
    NoMatch,
    # Patterns and producers
    compile_pattern,
    translate_pattern,
    parse_template,
    Template,
    Computed,
    Rule,
    # Prelude builders
    numeric,
    nary_fold,
    unary_only,
    binary_only,
    special_minus,
    safe_div,
    parse_number,
    format_number,
    # Standard preludes
    ARITHMETIC_PRELUDE,
    NUMBER_PRELUDE,
    FULL_PRELUDE,
    NO_PRELUDE,
)

# Rule sets, runs and DSL
from .engine import (
    DEFAULT_STEP_LIMIT,
    DEFAULT_GUARD,
    GUARD_MODES,
    BoundedLoopExceeded,
    RewriteStep,
    RewriteTrace,
    Value,
    RuleMetadata,
    RuleSet,
    RuleSetBuilder,
    AttemptLog,
    Terminated,
    Aborted,
    Sequencer,
    run,
    parse_rule_line,
    load_rules_from_dsl,
    load_rules_from_file,
    load_rules_from_json,
)

__all__ = [
    "__version__",
    # Types
    "PayloadType",
    "NumericType",
    "ProduceHandler",
    "PreludeType",
    "UNDEFINED",
    # Errors
    "RestringError",
    "RuleDefinitionError",
    "BoundedLoopExceeded",
    # Captures
    "Captures",
    "NoMatch",
    # Patterns and producers
    "compile_pattern",
    "translate_pattern",
    "parse_template",
    "Template",
    "Computed",
    "Rule",
    # Prelude builders
    "numeric",
    "nary_fold",
    "unary_only",
    "binary_only",
    "special_minus",
    "safe_div",
    "parse_number",
    "format_number",
    # Standard preludes
    "ARITHMETIC_PRELUDE",
    "NUMBER_PRELUDE",
    "FULL_PRELUDE",
    "NO_PRELUDE",
    # Engine
    "DEFAULT_STEP_LIMIT",
    "DEFAULT_GUARD",
    "GUARD_MODES",
    "RewriteStep",
    "RewriteTrace",
    "Value",
    "RuleMetadata",
    "RuleSet",
    "RuleSetBuilder",
    "AttemptLog",
    "Terminated",
    "Aborted",
    "Sequencer",
    "run",
    # DSL utilities
    "parse_rule_line",
    "load_rules_from_dsl",
    "load_rules_from_file",
    "load_rules_from_json",
]
