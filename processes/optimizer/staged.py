"""Staged MILP optimization of throw margins.

Each stage maximizes the minimum margin over the unresolved equations. The
equations that end up binding reveal the current bottleneck: their variables
are pinned at the solved values and the next stage optimizes what is left.
The loop ends once every equation is resolved.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from pattern import PatternSnapshot

from .margins import build_margin_system
from .solver import (
    MilpModel,
    SolverBackend,
    SolverCapability,
    SolveStatus,
    load_backend_factory,
)
from .types import (
    CoordinateUpdate,
    ErrorCodes,
    MarginSystem,
    OptimizationResult,
    OptimizerError,
    OptimizerSettings,
    Partition,
)

logger = logging.getLogger("processes.optimizer.staged")

CancelFn = Callable[[], bool]
UpdateFn = Callable[[list[CoordinateUpdate]], None]


@dataclass(frozen=True)
class StagedSolution:
    values: tuple[float, ...]
    partition: Partition
    stages: int


def big_m(system: MarginSystem, k: int) -> float:
    """Bound on |Ax| for equation k over the variable boxes."""
    max_ax = 0.0
    min_ax = 0.0
    for var, coef in zip(system.variables, system.equations[k].coefficients):
        if coef > 0:
            max_ax += coef * var.upper
            min_ax += coef * var.lower
        else:
            max_ax += coef * var.lower
            min_ax += coef * var.upper
    return 2 * max(abs(max_ax), abs(min_ax)) + 1


def build_stage(
    model: MilpModel,
    system: MarginSystem,
    values: Sequence[float],
    partition: Partition,
) -> dict[int, object]:
    """Populate `model` with one stage and return the x handles by index.

    `err <= |Ax + b|` is split into two constraints selected by a boolean:
        err - Ax - M z       <= b
        err + Ax + M z       <= b + M
    Pinned variables contribute their fixed value to the right-hand sides.
    """
    x: dict[int, object] = {}
    for var in system.variables:
        if var.index not in partition.pinned:
            x[var.index] = model.add_continuous(f"x{var.index}", var.lower, var.upper)

    err = model.add_continuous("err", None, None)

    for k, eq in enumerate(system.equations):
        if k in partition.resolved:
            continue
        z = model.add_boolean(f"z{k}")
        bound = big_m(system, k)

        fixed = sum(
            eq.coef(j) * values[j] for j in partition.pinned if eq.coef(j) != 0.0
        )
        terms_a: dict[object, float] = {err: 1.0, z: -bound}
        terms_b: dict[object, float] = {err: 1.0, z: bound}
        for j, xj in x.items():
            cj = eq.coef(j)
            if cj != 0.0:
                terms_a[xj] = -cj
                terms_b[xj] = cj
        model.add_constraint(f"c{k}a", terms_a, eq.constant + fixed)
        model.add_constraint(f"c{k}b", terms_b, eq.constant + bound - fixed)

    model.maximize({err: 1.0})
    return x


def run_stage(
    backend: SolverBackend,
    system: MarginSystem,
    values: Sequence[float],
    partition: Partition,
    stage: int,
) -> tuple[float, ...]:
    """Solve one stage and return the updated variable values."""
    model = backend.new_model(f"margins_stage_{stage}")
    build_stage(model, system, values, partition)

    t0 = time.time()
    result = model.solve()
    dt = time.time() - t0

    if result.status is not SolveStatus.OPTIMAL:
        logger.info(
            json.dumps(
                {"event": "stage_failed", "stage": stage, "status": result.status.value}
            )
        )
        if result.status is SolveStatus.TIME_LIMIT:
            raise OptimizerError(
                code=ErrorCodes.SOLVER_TIMEOUT,
                message=f"Stage {stage} hit the solver time limit",
                user_message="Optimization timed out. Try a longer time limit.",
                details={"stage": stage},
            )
        raise OptimizerError(
            code=ErrorCodes.INFEASIBLE,
            message=f"Stage {stage} has no optimal solution ({result.status.value})",
            user_message="The optimizer could not find an optimal solution for this pattern.",
            details={"stage": stage, "status": result.status.value},
        )

    new_values = list(values)
    for var in system.variables:
        if var.index not in partition.pinned:
            new_values[var.index] = result.values[f"x{var.index}"]
    logger.info(
        json.dumps(
            {
                "event": "stage_solved",
                "stage": stage,
                "objective": result.objective,
                "free_variables": len(system.variables) - len(partition.pinned),
                "open_equations": len(system.equations) - len(partition.resolved),
                "dt_s": round(dt, 6),
            }
        )
    )
    return tuple(new_values)


def mark_finished(
    system: MarginSystem,
    values: Sequence[float],
    partition: Partition,
    epsilon: float = 1e-7,
) -> Partition:
    """Pin the variables of the binding equations and resolve finished equations."""
    open_eqs = [
        k for k in range(len(system.equations)) if k not in partition.resolved
    ]
    if not open_eqs:
        return partition
    margins = {k: system.equations[k].margin(values) for k in open_eqs}
    min_margin = min(margins.values())

    pinned = set(partition.pinned)
    for k in open_eqs:
        if abs(margins[k] - min_margin) > epsilon:
            continue
        newly = system.equations[k].variables(epsilon) - pinned
        if newly:
            logger.debug("equation %d binding at %.6f, pinned %s", k, min_margin, sorted(newly))
        pinned |= newly

    resolved = set(partition.resolved)
    for k in open_eqs:
        if system.equations[k].variables(epsilon) <= pinned:
            resolved.add(k)
    return Partition(pinned=frozenset(pinned), resolved=frozenset(resolved))


def optimize_system(
    system: MarginSystem,
    backend: SolverBackend,
    settings: OptimizerSettings | None = None,
    should_cancel: CancelFn | None = None,
) -> StagedSolution:
    settings = settings or OptimizerSettings()
    values: tuple[float, ...] = tuple(float(v) for v in system.initial_values)
    partition = Partition.initial(system)
    stage = 0

    while not partition.is_complete(system):
        if should_cancel is not None and should_cancel():
            raise OptimizerError(
                code=ErrorCodes.CANCELLED,
                message=f"Optimization cancelled before stage {stage + 1}",
                user_message="Optimization was cancelled.",
                details={"stage": stage + 1},
            )
        stage += 1
        values = run_stage(backend, system, values, partition, stage)
        partition = mark_finished(system, values, partition, settings.pin_epsilon)

    return StagedSolution(values=values, partition=partition, stages=stage)


def _coordinate_updates(
    system: MarginSystem, values: Sequence[float], partition: Partition, digits: int
) -> list[CoordinateUpdate]:
    updates: list[CoordinateUpdate] = []
    for var in system.variables:
        if var.index in partition.pinned:
            updates.append(
                CoordinateUpdate(
                    event_id=var.event_id,
                    variable=var.index,
                    old_x=var.value,
                    new_x=round(float(values[var.index]), digits),
                )
            )
    return updates


def optimize(
    pat: PatternSnapshot,
    capability: SolverCapability,
    settings: OptimizerSettings | None = None,
    backend: SolverBackend | None = None,
    on_update: UpdateFn | None = None,
    should_cancel: CancelFn | None = None,
) -> OptimizationResult:
    """Maximize the worst-case throw margin of `pat`.

    The input snapshot is never modified. On success the result carries an
    updated copy with the layout marked stale; on failure an OptimizerError is
    raised and nothing is applied.
    """
    settings = settings or OptimizerSettings()
    if not capability.available:
        raise OptimizerError(
            code=ErrorCodes.SOLVER_UNAVAILABLE,
            message=f"No MILP backend for engine '{capability.engine}': {capability.reason}",
            user_message="The optimizer is not available: no working MILP solver was found.",
            details={"engine": capability.engine, "reason": capability.reason},
        )

    system = build_margin_system(pat)
    initial = system.initial_values
    initial_margin = system.min_margin(initial)

    if not system.equations:
        logger.info(json.dumps({"event": "no_margin_equations"}))
        return OptimizationResult(
            pattern=pat,
            system=system,
            partition=Partition.initial(system),
            values=tuple(float(v) for v in initial),
        )

    backend = backend or load_backend_factory()(settings)
    solution = optimize_system(system, backend, settings, should_cancel)

    updates = _coordinate_updates(
        system, solution.values, solution.partition, settings.round_digits
    )
    final_values = initial.copy()
    for u in updates:
        final_values[u.variable] = u.new_x
    result = OptimizationResult(
        pattern=pat.with_x_updates({u.event_id: u.new_x for u in updates}),
        system=system,
        partition=solution.partition,
        values=tuple(float(v) for v in final_values),
        updates=updates,
        stages=solution.stages,
        initial_margin=initial_margin,
        final_margin=system.min_margin(final_values),
    )
    logger.info(
        json.dumps(
            {
                "event": "optimize_done",
                "stages": solution.stages,
                "updates": len(updates),
                "initial_margin": initial_margin,
                "final_margin": result.final_margin,
            }
        )
    )
    if on_update is not None:
        on_update(updates)
    return result
