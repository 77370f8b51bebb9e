"""Margin-of-error equations for a laid-out pattern.

Every pair of in-air arcs that can come closest to each other while both are
in the air is a potential collision. For each one the angular margin of error
(in degrees) is a linear function of the throw and catch x-coordinates of the
two arcs:

    margin = |sum_i coef_i * x_i| + const

The free variables are the x-coordinates of the master throw/catch events.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Iterator, Sequence
from dataclasses import dataclass

import numpy as np
import pandas as pd

from pattern import (
    Event,
    Hand,
    PathLink,
    PatternError,
    PatternSnapshot,
    SymmetryType,
    TransitionType,
    parse_modifier,
)
from pattern.types import POSITION_TRANSITIONS

from .types import (
    EPSILON,
    ErrorCodes,
    LayoutInvariantError,
    LinearEquation,
    MarginSystem,
    MarginVariable,
    OptimizerError,
    VariableKind,
)

logger = logging.getLogger("processes.optimizer.margins")

DEFAULT_GRAVITY = 980.0  # cm/s^2


@dataclass(frozen=True)
class _Arc:
    link: PathLink
    start: Event
    end: Event


def _check_preconditions(pat: PatternSnapshot) -> tuple[float, bool]:
    """Validate the pattern and return (symmetry delay, switchdelay flag)."""
    if pat.jugglers > 1:
        raise OptimizerError(
            code=ErrorCodes.UNSUPPORTED_PASSING,
            message=f"Pattern has {pat.jugglers} jugglers",
            user_message="The optimizer does not support passing patterns.",
        )
    if pat.is_bounce_pattern:
        raise OptimizerError(
            code=ErrorCodes.UNSUPPORTED_BOUNCE,
            message="Pattern contains bounce paths",
            user_message="The optimizer does not support bouncing patterns.",
        )

    delay = -1.0
    switchdelay = False
    for sym in pat.symmetries:
        if sym.type is SymmetryType.DELAY:
            delay = sym.delay
        elif sym.type is SymmetryType.SWITCHDELAY:
            switchdelay = True
        elif sym.type is SymmetryType.SWITCH:
            raise OptimizerError(
                code=ErrorCodes.UNSUPPORTED_SYMMETRY,
                message="Pattern has switch symmetry",
                user_message="The optimizer does not support patterns with switch symmetry.",
            )
    if delay <= 0:
        raise OptimizerError(
            code=ErrorCodes.INVALID_PATTERN,
            message=f"Pattern has no positive delay symmetry (delay={delay})",
            user_message="The pattern needs a delay symmetry with a positive period.",
        )
    return delay, switchdelay


def find_variables(pat: PatternSnapshot) -> tuple[list[MarginVariable], float]:
    """Discover the free variables and the gravity constant.

    Walks master events in time order; the first throw or catch transition of
    each defines one variable.
    """
    found: list[tuple[Event, TransitionType]] = []
    max_value = 0.0
    g = DEFAULT_GRAVITY

    for ev in pat.master_events():
        for tr in ev.transitions:
            if tr.type not in POSITION_TRANSITIONS:
                continue
            found.append((ev, tr.type))
            max_value = max(max_value, abs(ev.x))
            if tr.type is TransitionType.THROW:
                gparam = parse_modifier(tr.mod).get("g")
                if gparam is not None:
                    try:
                        g = float(gparam)
                    except ValueError:
                        logger.warning(
                            json.dumps(
                                {"event": "bad_gravity", "event_id": ev.id, "g": gparam}
                            )
                        )
            break

    variables: list[MarginVariable] = []
    for i, (ev, ttype) in enumerate(found):
        kind = VariableKind.THROW if ttype is TransitionType.THROW else VariableKind.CATCH
        # never move an event to the other side of the body
        if ev.x > 0:
            lower, upper = 0.1 * max_value, max_value
            if kind is VariableKind.THROW:
                upper *= 0.9
        else:
            lower, upper = -max_value, -0.1 * max_value
            if kind is VariableKind.THROW:
                lower *= 0.9
        variables.append(
            MarginVariable(
                index=i, event_id=ev.id, kind=kind, value=ev.x, lower=lower, upper=upper
            )
        )
    return variables, g


def master_arcs(pat: PatternSnapshot) -> list[_Arc]:
    arcs: list[_Arc] = []
    for pl in pat.path_links:
        start = pat.event(pl.start)
        if pl.in_hand or not start.is_master:
            continue
        arcs.append(_Arc(link=pl, start=start, end=pat.event(pl.end)))
    return arcs


def symmetry_shifts(
    arc1_end: float, arc2_start: float, delay: float, switchdelay: bool
) -> Iterator[tuple[float, bool]]:
    """Yield (shift, invert) for each repetition of arc 2 to test against arc 1.

    The zero shift is always produced; further shifts continue while arc 1 is
    still in the air when the shifted arc 2 is thrown. Under switchdelay
    symmetry every half period mirrors the pattern, inverting arc 2.
    """
    shift = 0.0
    invert = False
    while True:
        yield shift, invert
        if switchdelay:
            shift += 0.5 * delay
            invert = not invert
        else:
            shift += delay
        if not arc1_end > arc2_start + shift:
            return


def _precedes(arc1: _Arc, arc2: _Arc, shift: float) -> bool:
    """Canonical ordering so each physical collision is generated once."""
    s1, e1 = arc1.start.t, arc1.end.t
    s2, e2 = arc2.start.t + shift, arc2.end.t + shift
    if s1 > s2:
        return False
    if s1 == s2:
        if e1 > e2:
            return False
        if e1 == e2:
            if arc1.start.juggler > arc2.start.juggler:
                return False
            if arc1.start.juggler == arc2.start.juggler and arc1.start.hand is Hand.LEFT:
                return False
    return True


def time_same(
    t_t1: float, t_c1: float, t_t2: float, t_c2: float
) -> float | None:
    """Time at which two arcs are at the same height, if both are in the air."""
    denom = (t_t2 + t_c2) - (t_t1 + t_c1)
    if denom == 0.0:
        return None
    tsame = (t_t2 * t_c2 - t_t1 * t_c1) / denom
    if not (t_t1 <= tsame <= t_c1) or tsame < t_t2 or tsame > t_c2:
        return None
    return tsame


class MarginEquationBuilder:
    """Derives the variables and margin equations of a pattern."""

    def __init__(self, pat: PatternSnapshot) -> None:
        self.pat = pat
        self._var_index: dict[str, int] = {}

    def build(self) -> MarginSystem:
        pat = self.pat
        delay, switchdelay = _check_preconditions(pat)

        variables, g = find_variables(pat)
        self._var_index = {v.event_id: v.index for v in variables}
        values = np.array([v.value for v in variables], dtype=float)
        radius = pat.max_prop_radius
        arcs = master_arcs(pat)
        logger.debug(
            json.dumps(
                {
                    "event": "margin_setup",
                    "variables": len(variables),
                    "g": g,
                    "prop_radius": radius,
                    "master_arcs": len(arcs),
                }
            )
        )

        rows: list[np.ndarray] = []
        for i, arc1 in enumerate(arcs):
            for j, arc2 in enumerate(arcs):
                for shift, invert in symmetry_shifts(
                    arc1.end.t, arc2.start.t, delay, switchdelay
                ):
                    row = self._collision_row(
                        arc1, arc2, shift, invert, g, radius, values
                    )
                    if row is not None:
                        logger.debug(
                            "potential collision arc[%d] / arc[%d] shift=%g", i, j, shift
                        )
                        rows.append(row)

        equations = sort_equations(dedupe_rows(rows), values)
        logger.info(
            json.dumps(
                {
                    "event": "margin_equations",
                    "variables": len(variables),
                    "candidates": len(rows),
                    "equations": len(equations),
                }
            )
        )
        return MarginSystem(
            variables=tuple(variables),
            equations=tuple(equations),
            gravity=g,
            prop_radius=radius,
        )

    def _variable_for(self, ev: Event, coef: float) -> tuple[int, float]:
        """Map an arc endpoint to its master's variable, flipping across hands."""
        if not ev.is_master:
            master = self.pat.master_of(ev)
            if ev.hand != master.hand:
                coef = -coef
            ev = master
        idx = self._var_index.get(ev.id)
        if idx is None:
            raise LayoutInvariantError(
                f"Could not find master event '{ev.id}' among optimizer variables"
            )
        return idx, coef

    def _collision_row(
        self,
        arc1: _Arc,
        arc2: _Arc,
        shift: float,
        invert: bool,
        g: float,
        radius: float,
        values: np.ndarray,
    ) -> np.ndarray | None:
        if shift == 0.0 and arc1.start.id == arc2.start.id:
            return None
        if not _precedes(arc1, arc2, shift):
            return None

        t_t1, t_c1 = arc1.start.t, arc1.end.t
        t_t2, t_c2 = arc2.start.t + shift, arc2.end.t + shift
        tsame = time_same(t_t1, t_c1, t_t2, t_c2)
        if tsame is None:
            return None

        # margin * (v_y1 * (tsame - t_t1) + v_y2 * (tsame - t_t2))
        #     = |x1(tsame) - x2(tsame)| - 2 * radius
        v_y1 = 0.5 * g * (t_c1 - t_t1)
        v_y2 = 0.5 * g * (t_c2 - t_t2)
        denom = v_y1 * (tsame - t_t1) + v_y2 * (tsame - t_t2)
        if denom <= EPSILON:
            return None
        denom *= math.pi / 180  # margin in degrees

        coef_t1 = (t_c1 - tsame) / ((t_c1 - t_t1) * denom)
        coef_c1 = (tsame - t_t1) / ((t_c1 - t_t1) * denom)
        coef_t2 = -(t_c2 - tsame) / ((t_c2 - t_t2) * denom)
        coef_c2 = -(tsame - t_t2) / ((t_c2 - t_t2) * denom)

        t1, coef_t1 = self._variable_for(arc1.start, coef_t1)
        c1, coef_c1 = self._variable_for(arc1.end, coef_c1)
        t2, coef_t2 = self._variable_for(arc2.start, coef_t2)
        c2, coef_c2 = self._variable_for(arc2.end, coef_c2)
        if invert:
            coef_t2 = -coef_t2
            coef_c2 = -coef_c2

        n = len(values)
        row = np.zeros(n + 1, dtype=float)
        row[t1] += coef_t1
        row[c1] += coef_c1
        row[t2] += coef_t2
        row[c2] += coef_c2
        row[n] = -2 * radius / denom

        # orient so the distance term is nonnegative at the current values
        if float(np.dot(row[:n], values)) < 0:
            nz = row[:n] != 0.0
            row[:n][nz] = -row[:n][nz]
        return row


def dedupe_rows(rows: Sequence[np.ndarray], eps: float = EPSILON) -> list[np.ndarray]:
    """Drop rows equal to an earlier row within `eps` on every entry."""
    kept: list[np.ndarray] = []
    for row in rows:
        if any(np.all(np.abs(row - other) <= eps) for other in kept):
            logger.debug("removed duplicate equation %s", np.round(row, 4).tolist())
            continue
        kept.append(row)
    return kept


def sort_equations(
    rows: Sequence[np.ndarray], values: np.ndarray, eps: float = EPSILON
) -> list[LinearEquation]:
    """Build equations ordered by current margin, resolved ones last.

    A row with no coefficients left cannot be improved by any variable and
    starts out resolved.
    """
    equations = [
        LinearEquation(row, resolved=not np.any(np.abs(row[:-1]) > eps)) for row in rows
    ]
    return sorted(equations, key=lambda eq: (eq.resolved, eq.margin(values)))


def build_margin_system(pat: PatternSnapshot) -> MarginSystem:
    try:
        return MarginEquationBuilder(pat).build()
    except PatternError as e:
        raise OptimizerError(
            code=ErrorCodes.INVALID_PATTERN,
            message=str(e),
            user_message=f"Invalid pattern: {e}",
        ) from e


def equations_frame(system: MarginSystem) -> pd.DataFrame:
    """Tabulate equations for diagnostics, one row per equation."""
    values = system.initial_values
    rows = []
    for k, eq in enumerate(system.equations):
        rows.append(
            {
                "equation": k,
                "resolved": bool(eq.resolved),
                "margin": eq.margin(values),
                "variables": sorted(eq.variables()),
                "coefficients": [float(c) for c in eq.coefficients],
                "constant": eq.constant,
            }
        )
    return pd.DataFrame(
        rows,
        columns=["equation", "resolved", "margin", "variables", "coefficients", "constant"],
    )
