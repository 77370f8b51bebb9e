"""Read-only juggling pattern snapshot consumed by the margin optimizer."""

from .io import load_pattern, pattern_from_dict, pattern_to_dict
from .params import parse_modifier
from .types import (
    Event,
    Hand,
    PathLink,
    PatternError,
    PatternSnapshot,
    Prop,
    Symmetry,
    SymmetryType,
    Transition,
    TransitionType,
)

__all__ = [
    "Event",
    "Hand",
    "PathLink",
    "PatternError",
    "PatternSnapshot",
    "Prop",
    "Symmetry",
    "SymmetryType",
    "Transition",
    "TransitionType",
    "load_pattern",
    "parse_modifier",
    "pattern_from_dict",
    "pattern_to_dict",
]
