"""Loading and dumping pattern snapshots (JSON or YAML documents)."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError

from pipeline.io.validate import SCHEMAS_ROOT, load_schema, validate_obj

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


def _read_document(path: Path) -> dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in (".yaml", ".yml"):
        doc = yaml.safe_load(text)
    else:
        doc = json.loads(text)
    if not isinstance(doc, dict):
        raise PatternError(f"Pattern document {path} must be a mapping")
    return doc


def _transition_from_dict(d: dict[str, Any]) -> Transition:
    return Transition(
        type=TransitionType(str(d["type"]).lower()),
        path=int(d["path"]),
        throw_type=d.get("throw_type"),
        mod=d.get("mod"),
    )


def _event_from_dict(d: dict[str, Any]) -> Event:
    return Event(
        id=str(d["id"]),
        t=float(d["t"]),
        juggler=int(d.get("juggler", 1)),
        hand=Hand.parse(d["hand"]),
        x=float(d["x"]),
        y=float(d.get("y", 0.0)),
        z=float(d.get("z", 0.0)),
        transitions=tuple(_transition_from_dict(t) for t in d.get("transitions") or []),
        master=None if d.get("master") is None else str(d["master"]),
    )


def pattern_from_dict(
    doc: dict[str, Any], *, schemas_root: Path | None = None
) -> PatternSnapshot:
    """Validate a snapshot document and build the immutable pattern."""
    root = schemas_root or SCHEMAS_ROOT
    schema = load_schema(root / "pattern_snapshot.schema.yaml")
    try:
        validate_obj(schema, doc, schemas_root=root)
    except ValidationError as e:
        raise PatternError(f"Invalid pattern snapshot: {e.message}") from e

    events = tuple(_event_from_dict(e) for e in doc["events"])
    links = tuple(
        PathLink(
            path=int(pl["path"]),
            start=str(pl["start"]),
            end=str(pl["end"]),
            in_hand=bool(pl.get("in_hand", False)),
            throw_type=str(pl.get("throw_type") or "toss"),
        )
        for pl in doc.get("path_links") or []
    )
    symmetries = tuple(
        Symmetry(
            type=SymmetryType(str(s["type"]).lower()),
            delay=float(s.get("delay", -1.0)),
        )
        for s in doc.get("symmetries") or []
    )
    props = tuple(
        Prop(type=str(p.get("type", "ball")), diameter=float(p.get("diameter", 10.0)))
        for p in doc.get("props") or [{}]
    )
    return PatternSnapshot(
        jugglers=int(doc.get("jugglers", 1)),
        events=events,
        path_links=links,
        symmetries=symmetries,
        props=props,
        needs_layout=bool(doc.get("needs_layout", False)),
    )


def load_pattern(path: Path, *, schemas_root: Path | None = None) -> PatternSnapshot:
    return pattern_from_dict(_read_document(path), schemas_root=schemas_root)


def pattern_to_dict(pat: PatternSnapshot) -> dict[str, Any]:
    events: list[dict[str, Any]] = []
    for ev in pat.events:
        row: dict[str, Any] = {
            "id": ev.id,
            "t": ev.t,
            "juggler": ev.juggler,
            "hand": ev.hand.name.lower(),
            "x": ev.x,
            "y": ev.y,
            "z": ev.z,
            "transitions": [],
        }
        for tr in ev.transitions:
            tr_row: dict[str, Any] = {"type": tr.type.value, "path": tr.path}
            if tr.throw_type is not None:
                tr_row["throw_type"] = tr.throw_type
            if tr.mod is not None:
                tr_row["mod"] = tr.mod
            row["transitions"].append(tr_row)
        if ev.master is not None:
            row["master"] = ev.master
        events.append(row)
    return {
        "jugglers": pat.jugglers,
        "needs_layout": pat.needs_layout,
        "props": [{"type": p.type, "diameter": p.diameter} for p in pat.props],
        "symmetries": [{"type": s.type.value, "delay": s.delay} for s in pat.symmetries],
        "events": events,
        "path_links": [
            {
                "path": pl.path,
                "start": pl.start,
                "end": pl.end,
                "in_hand": pl.in_hand,
                "throw_type": pl.throw_type,
            }
            for pl in pat.path_links
        ],
    }
