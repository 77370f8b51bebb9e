"""Types for a laid-out juggling pattern snapshot.

The snapshot is the output of an upstream layout step: an ordered event
timeline, the path links between events, the symmetry descriptors and the
props. Everything here is immutable; edits produce a new snapshot.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum


class PatternError(ValueError):
    """Raised for malformed or inconsistent pattern snapshots."""


class TransitionType(str, Enum):
    THROW = "throw"
    CATCH = "catch"
    SOFTCATCH = "softcatch"
    GRABCATCH = "grabcatch"
    HOLDING = "holding"


# Transitions whose event position is a free variable of the optimizer
POSITION_TRANSITIONS = frozenset(
    {
        TransitionType.THROW,
        TransitionType.CATCH,
        TransitionType.SOFTCATCH,
        TransitionType.GRABCATCH,
    }
)


class Hand(int, Enum):
    LEFT = 1
    RIGHT = 2

    @classmethod
    def parse(cls, value: str | int) -> Hand:
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError as e:
                raise PatternError(f"Unknown hand '{value}'") from e
        return cls(value)


class SymmetryType(str, Enum):
    DELAY = "delay"
    SWITCH = "switch"
    SWITCHDELAY = "switchdelay"


@dataclass(frozen=True)
class Transition:
    type: TransitionType
    path: int
    throw_type: str | None = None
    mod: str | None = None


@dataclass(frozen=True)
class Event:
    id: str
    t: float
    juggler: int
    hand: Hand
    x: float
    y: float = 0.0
    z: float = 0.0
    transitions: tuple[Transition, ...] = ()
    # id of the master event this one mirrors; None for master events
    master: str | None = None

    @property
    def is_master(self) -> bool:
        return self.master is None


@dataclass(frozen=True)
class PathLink:
    path: int
    start: str
    end: str
    in_hand: bool = False
    throw_type: str = "toss"

    @property
    def is_bounce(self) -> bool:
        return not self.in_hand and self.throw_type.lower() == "bounce"


@dataclass(frozen=True)
class Symmetry:
    type: SymmetryType
    delay: float = -1.0


@dataclass(frozen=True)
class Prop:
    type: str = "ball"
    # in cm; for rings this is the outside diameter
    diameter: float = 10.0

    @property
    def width(self) -> float:
        if self.type.lower() == "ring":
            # rings are thrown edge-on
            return 0.05 * self.diameter
        return self.diameter

    @property
    def radius(self) -> float:
        return 0.5 * self.width


@dataclass(frozen=True)
class PatternSnapshot:
    jugglers: int
    events: tuple[Event, ...]
    path_links: tuple[PathLink, ...]
    symmetries: tuple[Symmetry, ...] = ()
    props: tuple[Prop, ...] = (Prop(),)
    needs_layout: bool = False
    _by_id: dict[str, Event] = field(
        init=False, repr=False, compare=False, default_factory=dict
    )

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.events, key=lambda ev: ev.t))
        object.__setattr__(self, "events", ordered)
        by_id: dict[str, Event] = {}
        for ev in ordered:
            if ev.id in by_id:
                raise PatternError(f"Duplicate event id '{ev.id}'")
            by_id[ev.id] = ev
        for ev in ordered:
            if ev.master is not None and ev.master not in by_id:
                raise PatternError(
                    f"Event '{ev.id}' refers to unknown master '{ev.master}'"
                )
        for pl in self.path_links:
            for ref in (pl.start, pl.end):
                if ref not in by_id:
                    raise PatternError(
                        f"Path link for path {pl.path} refers to unknown event '{ref}'"
                    )
        object.__setattr__(self, "_by_id", by_id)

    def event(self, event_id: str) -> Event:
        try:
            return self._by_id[event_id]
        except KeyError as e:
            raise PatternError(f"Unknown event '{event_id}'") from e

    def master_of(self, ev: Event) -> Event:
        return ev if ev.master is None else self.event(ev.master)

    def master_events(self) -> list[Event]:
        return [ev for ev in self.events if ev.is_master]

    @property
    def is_bounce_pattern(self) -> bool:
        if any(pl.is_bounce for pl in self.path_links):
            return True
        return any(
            tr.type is TransitionType.THROW
            and tr.throw_type is not None
            and tr.throw_type.lower() == "bounce"
            for ev in self.events
            for tr in ev.transitions
        )

    @property
    def max_prop_radius(self) -> float:
        return max((p.radius for p in self.props), default=0.0)

    def with_x_updates(self, updates: Mapping[str, float]) -> PatternSnapshot:
        """Return a copy with new x coordinates applied and layout marked stale."""
        for event_id in updates:
            self.event(event_id)
        events = tuple(
            replace(ev, x=float(updates[ev.id])) if ev.id in updates else ev
            for ev in self.events
        )
        return replace(self, events=events, needs_layout=True)
