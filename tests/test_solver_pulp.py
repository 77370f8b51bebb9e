from __future__ import annotations

import pytest

from processes.optimizer import solver
from processes.optimizer.solver import (
    PulpBackend,
    SolveStatus,
    detect_capability,
    load_backend_factory,
)
from processes.optimizer.staged import optimize
from processes.optimizer.types import ErrorCodes, OptimizerError, OptimizerSettings
from tests.fixtures.patterns import CROSSING_DENOM


@pytest.fixture
def cbc():
    cap = detect_capability("cbc")
    if not cap.available:
        pytest.skip(f"CBC not available: {cap.reason}")
    return cap


def test_unknown_engine():
    cap = detect_capability("gurobi")
    assert not cap.available
    with pytest.raises(OptimizerError) as ei:
        PulpBackend(engine="gurobi")
    assert ei.value.code is ErrorCodes.CONFIG_ERROR


def test_pulp_model_small_milp(cbc):
    model = PulpBackend("cbc").new_model("tiny")
    x = model.add_continuous("x", 0, 4)
    y = model.add_continuous("y", 0, 4)
    z = model.add_boolean("z")
    # x + y <= 5, y - 10 z <= 0
    model.add_constraint("cap", {x: 1.0, y: 1.0}, 5.0)
    model.add_constraint("gate", {y: 1.0, z: -10.0}, 0.0)
    model.maximize({x: 1.0, y: 2.0, z: -1.0})
    res = model.solve()
    assert res.status is SolveStatus.OPTIMAL
    assert res.values["y"] == pytest.approx(4.0)
    assert res.values["x"] == pytest.approx(1.0)
    assert res.values["z"] == pytest.approx(1.0)
    assert res.objective == pytest.approx(8.0)


def test_pulp_model_infeasible(cbc):
    model = PulpBackend("cbc").new_model("bad")
    x = model.add_continuous("x", 2, 4)
    model.add_constraint("low", {x: 1.0}, 1.0)
    model.maximize({x: 1.0})
    assert model.solve().status is SolveStatus.INFEASIBLE


def test_crossing_optimum_with_cbc(crossing_pattern, cbc):
    result = optimize(crossing_pattern, cbc, OptimizerSettings(engine="cbc"))

    assert result.stages == 1
    assert {u.event_id: u.new_x for u in result.updates} == {
        "e0": 3.0,
        "e1": -3.0,
        "e2": -30.0,
        "e3": 30.0,
    }
    assert result.final_margin == pytest.approx(21 / CROSSING_DENOM, abs=1e-6)
    assert result.final_margin >= result.initial_margin
    for var in result.system.variables:
        assert var.lower - 1e-6 <= result.values[var.index] <= var.upper + 1e-6


def test_backend_factory_env_override(monkeypatch):
    monkeypatch.setenv("MARGIN_SOLVER_IMPL", "tests.fixtures.fake_backend:make_backend")
    factory = load_backend_factory()
    assert factory(OptimizerSettings()).name == "fake"


def test_default_backend_factory():
    assert load_backend_factory() is solver._pulp_factory
    backend = solver._pulp_factory(OptimizerSettings(engine="cbc", time_limit=5.0))
    assert isinstance(backend, PulpBackend)
    assert backend.time_limit == 5.0
