"""Minimal MILP interface and its PuLP implementation.

The optimizer only talks to `SolverBackend` / `MilpModel`; any backend that
can express bounded continuous variables, booleans, `<=` constraints and a
maximization objective can stand in for PuLP.
"""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, cast

import pulp as plp

from .types import ErrorCodes, OptimizerError, OptimizerSettings

logger = logging.getLogger("processes.optimizer.solver")

# engine name -> PuLP solver class name
ENGINES: dict[str, str] = {
    "cbc": "PULP_CBC_CMD",
    "highs": "HiGHS",
    "highs_cmd": "HiGHS_CMD",
    "glpk": "GLPK_CMD",
}


class SolveStatus(str, Enum):
    OPTIMAL = "OPTIMAL"
    INFEASIBLE = "INFEASIBLE"
    UNBOUNDED = "UNBOUNDED"
    TIME_LIMIT = "TIME_LIMIT"
    NOT_SOLVED = "NOT_SOLVED"
    ERROR = "ERROR"


@dataclass
class SolveResult:
    status: SolveStatus
    values: dict[str, float] = field(default_factory=dict)
    objective: float | None = None


class MilpModel(ABC):
    """A single maximization MILP under construction."""

    @abstractmethod
    def add_continuous(self, name: str, lower: float | None, upper: float | None) -> Any:
        ...

    @abstractmethod
    def add_boolean(self, name: str) -> Any:
        ...

    @abstractmethod
    def add_constraint(self, name: str, terms: Mapping[Any, float], upper: float) -> None:
        """Add `sum(coef * var for var, coef in terms) <= upper`."""

    @abstractmethod
    def maximize(self, terms: Mapping[Any, float]) -> None:
        ...

    @abstractmethod
    def solve(self) -> SolveResult:
        ...


class SolverBackend(ABC):
    name: str = "abstract"

    @abstractmethod
    def new_model(self, name: str) -> MilpModel:
        ...


class PulpModel(MilpModel):
    def __init__(self, name: str, solver: plp.LpSolver, time_limit: float | None):
        self.problem = plp.LpProblem(name, plp.LpMaximize)
        self._solver = solver
        self._time_limit = time_limit
        self._vars: dict[str, plp.LpVariable] = {}

    def add_continuous(
        self, name: str, lower: float | None, upper: float | None
    ) -> plp.LpVariable:
        var = self.problem.add_variable(name, lower, upper, cat=plp.LpContinuous)
        self._vars[name] = var
        return var

    def add_boolean(self, name: str) -> plp.LpVariable:
        var = self.problem.add_variable(name, cat=plp.LpBinary)
        self._vars[name] = var
        return var

    def add_constraint(
        self, name: str, terms: Mapping[plp.LpVariable, float], upper: float
    ) -> None:
        expr = plp.lpSum(coef * var for var, coef in terms.items() if coef != 0.0)
        self.problem += expr <= upper, name

    def maximize(self, terms: Mapping[plp.LpVariable, float]) -> None:
        self.problem.setObjective(plp.lpSum(coef * var for var, coef in terms.items()))

    def _status(self) -> SolveStatus:
        status = self.problem.status
        if self.problem.sol_status == plp.LpSolutionOptimal:
            return SolveStatus.OPTIMAL
        if status == plp.LpStatusOptimal:
            # a solution was found but optimality was not proven
            return SolveStatus.TIME_LIMIT
        if status == plp.LpStatusInfeasible:
            return SolveStatus.INFEASIBLE
        if status == plp.LpStatusUnbounded:
            return SolveStatus.UNBOUNDED
        if status == plp.LpStatusNotSolved and self._time_limit is not None:
            return SolveStatus.TIME_LIMIT
        return SolveStatus.NOT_SOLVED

    def solve(self) -> SolveResult:
        try:
            self.problem.solve(self._solver)
        except plp.PulpSolverError as e:
            raise OptimizerError(
                code=ErrorCodes.SOLVER_ERROR,
                message=f"Solver error: {e}",
                user_message="The MILP solver failed while optimizing the pattern.",
                details={"solver_error": str(e)},
            ) from e

        status = self._status()
        if status is not SolveStatus.OPTIMAL:
            return SolveResult(status=status)
        values = {
            name: float(var.varValue) if var.varValue is not None else 0.0
            for name, var in self._vars.items()
        }
        return SolveResult(
            status=status, values=values, objective=plp.value(self.problem.objective)
        )


class PulpBackend(SolverBackend):
    def __init__(
        self, engine: str = "cbc", time_limit: float | None = None, msg: bool = False
    ) -> None:
        if engine not in ENGINES:
            raise OptimizerError(
                code=ErrorCodes.CONFIG_ERROR,
                message=f"Unknown engine '{engine}'",
                user_message=f"Unknown solver engine '{engine}'. Choose one of: {', '.join(ENGINES)}.",
            )
        self.name = engine
        self.engine = engine
        self.time_limit = time_limit
        self.msg = msg

    def new_model(self, name: str) -> PulpModel:
        solver = plp.getSolver(ENGINES[self.engine], msg=self.msg, timeLimit=self.time_limit)
        return PulpModel(name, solver, self.time_limit)


@dataclass(frozen=True)
class SolverCapability:
    """Whether a working MILP backend exists for an engine.

    Built once by the caller and handed to the optimizer.
    """

    engine: str
    available: bool
    reason: str | None = None


def detect_capability(engine: str = "cbc") -> SolverCapability:
    solver_name = ENGINES.get(engine)
    if solver_name is None:
        return SolverCapability(engine, False, f"unknown engine '{engine}'")
    try:
        available = solver_name in plp.listSolvers(onlyAvailable=True)
    except (OSError, plp.PulpSolverError) as e:
        return SolverCapability(engine, False, str(e))
    reason = None if available else f"{solver_name} is not installed"
    logger.info(
        json.dumps({"event": "solver_capability", "engine": engine, "available": available})
    )
    return SolverCapability(engine, available, reason)


BackendFactory = Callable[[OptimizerSettings], SolverBackend]


def _pulp_factory(settings: OptimizerSettings) -> SolverBackend:
    return PulpBackend(
        engine=settings.engine, time_limit=settings.time_limit, msg=settings.solver_msg
    )


def load_backend_factory() -> BackendFactory:
    """Resolve the backend factory.

    Allows override via env var `MARGIN_SOLVER_IMPL=module:function`; tests
    can monkeypatch this function instead.
    """
    override = os.environ.get("MARGIN_SOLVER_IMPL")
    if override:
        mod_name, _, fn_name = override.partition(":")
        mod = __import__(mod_name, fromlist=[fn_name or "make_backend"])
        return cast(BackendFactory, getattr(mod, fn_name or "make_backend"))
    return _pulp_factory
