"""Parsing of `name=value;name=value` modifier strings attached to throws."""

from __future__ import annotations

from .types import PatternError


def parse_modifier(mod: str | None) -> dict[str, str]:
    """Parse a throw modifier into a dict keyed by lowercase parameter name.

    Later occurrences of a name override earlier ones. A non-empty token
    without a `name=` prefix is rejected.
    """
    params: dict[str, str] = {}
    if not mod:
        return params
    source = mod.replace("\n", "").replace("\r", "")
    for token in source.split(";"):
        idx = token.find("=")
        if idx > 0:
            name = token[:idx].strip()
            if name:
                params[name.lower()] = token[idx + 1 :].strip()
        elif token.strip():
            raise PatternError(f'Parameter "{token.strip()}" has no value')
    return params
