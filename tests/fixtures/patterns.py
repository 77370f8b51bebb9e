from __future__ import annotations

import copy
import math
from typing import Any

# Vertical velocity scale shared by the two crossing arcs: both are in the air
# for 1s under g=980, so v_y = 490 and the collision denominator is 490 rad.
CROSSING_DENOM = 490.0 * math.pi / 180


def _ev(
    id: str,
    t: float,
    hand: str,
    x: float,
    kind: str,
    path: int,
    mod: str | None = None,
    master: str | None = None,
) -> dict[str, Any]:
    tr: dict[str, Any] = {"type": kind, "path": path}
    if mod is not None:
        tr["mod"] = mod
    ev: dict[str, Any] = {
        "id": id,
        "t": t,
        "juggler": 1,
        "hand": hand,
        "x": x,
        "transitions": [tr],
    }
    if master is not None:
        ev["master"] = master
    return ev


def crossing_doc() -> dict[str, Any]:
    """Two crossing throws plus an isolated same-hand throw, one period of 10s.

    Exactly one potential collision exists (arcs e0->e2 and e1->e3 at t=0.6).
    """
    return {
        "jugglers": 1,
        "needs_layout": False,
        "props": [{"type": "ball", "diameter": 6.0}],
        "symmetries": [{"type": "delay", "delay": 10.0}],
        "events": [
            _ev("e0", 0.0, "right", 20.0, "throw", 1),
            _ev("e1", 0.2, "left", -20.0, "throw", 2),
            _ev("e2", 1.0, "left", -30.0, "catch", 1),
            _ev("e3", 1.2, "right", 30.0, "catch", 2),
            _ev("e4", 1.5, "right", 15.0, "throw", 3),
            _ev("e5", 2.3, "right", 25.0, "catch", 3),
        ],
        "path_links": [
            {"path": 1, "start": "e0", "end": "e2"},
            {"path": 2, "start": "e1", "end": "e3"},
            {"path": 3, "start": "e4", "end": "e5"},
            {"path": 3, "start": "e5", "end": "e4", "in_hand": True},
        ],
    }


def slave_catch_doc() -> dict[str, Any]:
    """Crossing arcs where the second catch is a mirrored slave of `m2`."""
    return {
        "jugglers": 1,
        "props": [{"type": "ball", "diameter": 6.0}],
        "symmetries": [{"type": "delay", "delay": 10.0}],
        "events": [
            _ev("m0", 0.0, "right", 20.0, "throw", 1),
            _ev("m1", 0.2, "left", -20.0, "throw", 2),
            _ev("m2", 1.0, "left", -30.0, "catch", 1),
            _ev("s3", 1.2, "right", 30.0, "catch", 2, master="m2"),
        ],
        "path_links": [
            {"path": 1, "start": "m0", "end": "m2"},
            {"path": 2, "start": "m1", "end": "s3"},
        ],
    }


def disjoint_doc() -> dict[str, Any]:
    """Nested arcs that never reach the same height together."""
    return {
        "jugglers": 1,
        "symmetries": [{"type": "delay", "delay": 10.0}],
        "events": [
            _ev("a", 0.0, "right", 20.0, "throw", 1),
            _ev("b", 0.2, "left", -20.0, "throw", 2),
            _ev("c", 0.8, "right", 25.0, "catch", 2),
            _ev("d", 1.0, "left", -25.0, "catch", 1),
        ],
        "path_links": [
            {"path": 1, "start": "a", "end": "d"},
            {"path": 2, "start": "b", "end": "c"},
        ],
    }


def with_changes(doc: dict[str, Any], **changes: Any) -> dict[str, Any]:
    out = copy.deepcopy(doc)
    out.update(changes)
    return out
