from __future__ import annotations

import json
from pathlib import Path

import pandas as pd
import yaml

from processes.optimizer import adapter as opt
from processes.optimizer.solver import SolverCapability
from tests.fixtures.fake_backend import FakeBackend, optimal
from tests.fixtures.patterns import crossing_doc, slave_catch_doc

BEST = {"x0": 3.0, "x1": -3.0, "x2": -30.0, "x3": 30.0, "x4": 15.0, "x5": 25.0}


def _stub_solver(monkeypatch):
    monkeypatch.setattr(
        opt, "detect_capability", lambda engine: SolverCapability(engine, True)
    )
    monkeypatch.setattr(
        opt, "_load_backend_factory", lambda: lambda settings: FakeBackend([optimal(BEST)])
    )


def test_smoke_adapter_end_to_end(tmp_path: Path, monkeypatch):
    pattern_path = tmp_path / "crossing.yaml"
    pattern_path.write_text(yaml.safe_dump(crossing_doc()), encoding="utf-8")
    _stub_solver(monkeypatch)

    out_root = tmp_path / "out"
    result = opt.run_adapter(
        pattern_path=pattern_path,
        config_path=None,
        config_kv=["round_digits=1"],
        out_root=out_root,
        tag="smoke",
    )

    run_id = result["run_id"]
    run_dir = out_root / "runs" / "optimizer" / run_id
    assert (run_dir / "artifacts" / "updates.parquet").exists()
    assert (run_dir / "artifacts" / "equations.parquet").exists()
    assert (run_dir / "artifacts" / "pattern.json").exists()
    assert (run_dir / "manifest.json").exists()

    updates = pd.read_parquet(run_dir / "artifacts" / "updates.parquet")
    assert list(updates["event_id"]) == ["e0", "e1", "e2", "e3"]
    assert list(updates["new_x"]) == [3.0, -3.0, -30.0, 30.0]
    assert (updates["run_id"] == run_id).all()

    equations = pd.read_parquet(run_dir / "artifacts" / "equations.parquet")
    assert len(equations) == 1
    assert bool(equations.loc[0, "resolved"])
    assert equations.loc[0, "final_margin"] > equations.loc[0, "margin"]

    optimized = json.loads((run_dir / "artifacts" / "pattern.json").read_text())
    assert optimized["needs_layout"] is True
    xs = {ev["id"]: ev["x"] for ev in optimized["events"]}
    assert xs["e0"] == 3.0
    assert xs["e4"] == 15.0

    manifest = json.loads((run_dir / "manifest.json").read_text())
    assert manifest["run_type"] == "optimizer"
    assert manifest["summary"]["equations"] == 1
    assert manifest["summary"]["stages"] == 1
    assert manifest["summary"]["updates"] == 4
    assert manifest["config"]["resolved"]["round_digits"] == 1
    assert manifest["tags"] == ["smoke"]
    assert [i["role"] for i in manifest["inputs"]] == ["pattern", "config"]


def test_cli_verbose(capsys, tmp_path: Path, monkeypatch):
    pattern_path = tmp_path / "crossing.json"
    pattern_path.write_text(json.dumps(crossing_doc()), encoding="utf-8")
    config_path = tmp_path / "optimizer.yaml"
    config_path.write_text("engine: cbc\ntime_limit: 30\ncolour: blue\n", encoding="utf-8")
    _stub_solver(monkeypatch)

    rc = opt.main(
        [
            "--pattern",
            str(pattern_path),
            "--config",
            str(config_path),
            "--out-root",
            str(tmp_path / "out"),
            "--verbose",
        ]
    )
    assert rc == 0
    err = capsys.readouterr().err
    assert "[optimizer] manifest:" in err
    assert "unknown config keys ignored: colour" in err


def test_cli_reports_optimizer_error(capsys, tmp_path: Path, monkeypatch):
    doc = crossing_doc()
    doc["jugglers"] = 2
    pattern_path = tmp_path / "passing.yaml"
    pattern_path.write_text(yaml.safe_dump(doc), encoding="utf-8")
    _stub_solver(monkeypatch)

    rc = opt.main(["--pattern", str(pattern_path), "--out-root", str(tmp_path / "out")])
    assert rc == 2
    assert "UNSUPPORTED_PASSING" in capsys.readouterr().err
    assert not (tmp_path / "out").exists()


def test_cli_reports_layout_defect(capsys, tmp_path: Path, monkeypatch):
    # slave catch whose master carries no throw/catch, so it has no variable
    doc = slave_catch_doc()
    doc["events"].append(
        {
            "id": "h",
            "t": 5.0,
            "hand": "left",
            "x": -10.0,
            "transitions": [{"type": "holding", "path": 2}],
        }
    )
    for ev in doc["events"]:
        if ev["id"] == "s3":
            ev["master"] = "h"
    pattern_path = tmp_path / "defect.yaml"
    pattern_path.write_text(yaml.safe_dump(doc), encoding="utf-8")
    _stub_solver(monkeypatch)

    rc = opt.main(["--pattern", str(pattern_path), "--out-root", str(tmp_path / "out")])
    assert rc == 3
    assert "[optimizer] internal error:" in capsys.readouterr().err
    assert not (tmp_path / "out").exists()
