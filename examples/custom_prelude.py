"""
Example custom prelude for RESTRING.

This file demonstrates how to create custom preludes that extend
RESTRING's computed slots.

Usage:
    restring -p examples/custom_prelude.py -r my.rules -e "gcd(12,8)"

Or in scripts:
    :prelude examples/custom_prelude.py
    @gcd: gcd(?a:int,?b:int) => (! gcd :a :b)
    gcd(12,8)
"""

import math
from restring import binary_only, unary_only, numeric, FULL_PRELUDE

# Start with the full prelude and extend it
PRELUDE = {
    **FULL_PRELUDE,

    # Rounding
    "floor": unary_only(math.floor),
    "ceil": unary_only(math.ceil),
    "round": unary_only(round),
    "sqrt": unary_only(lambda x: math.sqrt(x) if x >= 0 else None),

    # Min/max
    "min": numeric(lambda args: min(args) if args else None),
    "max": numeric(lambda args: max(args) if args else None),

    # Comparisons render as T/F
    "<": binary_only(lambda a, b: a < b),
    ">": binary_only(lambda a, b: a > b),
    "=": binary_only(lambda a, b: a == b),

    # Parity
    "even": unary_only(lambda x: isinstance(x, int) and x % 2 == 0),
    "odd": unary_only(lambda x: isinstance(x, int) and x % 2 == 1),

    # Text helpers work on raw captures
    "len": lambda args: str(len(args[0])) if len(args) == 1 else None,
    "upper": lambda args: args[0].upper() if len(args) == 1 else None,
}
