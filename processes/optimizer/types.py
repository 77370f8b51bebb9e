from __future__ import annotations

from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import numpy as np

if TYPE_CHECKING:
    from pattern import PatternSnapshot

EPSILON = 1e-6


class ErrorCodes(str, Enum):
    UNSUPPORTED_PASSING = "UNSUPPORTED_PASSING"
    UNSUPPORTED_BOUNCE = "UNSUPPORTED_BOUNCE"
    UNSUPPORTED_SYMMETRY = "UNSUPPORTED_SYMMETRY"
    INVALID_PATTERN = "INVALID_PATTERN"
    SOLVER_UNAVAILABLE = "SOLVER_UNAVAILABLE"
    INFEASIBLE = "INFEASIBLE"
    SOLVER_TIMEOUT = "SOLVER_TIMEOUT"
    SOLVER_ERROR = "SOLVER_ERROR"
    CANCELLED = "CANCELLED"
    CONFIG_ERROR = "CONFIG_ERROR"


class OptimizerError(Exception):
    def __init__(
        self,
        code: ErrorCodes,
        message: str,
        user_message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.user_message = user_message or message
        self.details = details or {}


class LayoutInvariantError(RuntimeError):
    """The laid-out pattern violates an invariant the layout step guarantees.

    Never caused by user input; indicates a defect upstream of the optimizer.
    """


class VariableKind(str, Enum):
    THROW = "throw"
    CATCH = "catch"


@dataclass(frozen=True)
class MarginVariable:
    index: int
    event_id: str
    kind: VariableKind
    value: float
    lower: float
    upper: float


class LinearEquation:
    """One row of a linear system: N coefficients followed by a constant."""

    __slots__ = ("_row", "resolved")

    def __init__(self, row: Sequence[float] | np.ndarray, resolved: bool = False):
        self._row = np.array(row, dtype=float)
        self._row.setflags(write=False)
        self.resolved = resolved

    @property
    def num_vars(self) -> int:
        return len(self._row) - 1

    def coef(self, col: int) -> float:
        return float(self._row[col])

    @property
    def constant(self) -> float:
        return float(self._row[-1])

    @property
    def coefficients(self) -> np.ndarray:
        return self._row[:-1]

    @property
    def row(self) -> np.ndarray:
        return self._row

    def value(self, values: Sequence[float] | np.ndarray) -> float:
        return float(np.dot(self.coefficients, values)) + self.constant

    def margin(self, values: Sequence[float] | np.ndarray) -> float:
        """Margin of error in degrees at the given variable values."""
        return abs(float(np.dot(self.coefficients, values))) + self.constant

    def variables(self, eps: float = EPSILON) -> frozenset[int]:
        return frozenset(int(i) for i in np.flatnonzero(np.abs(self.coefficients) > eps))

    def __repr__(self) -> str:
        return f"LinearEquation({self._row.tolist()!r}, resolved={self.resolved})"


@dataclass(frozen=True)
class MarginSystem:
    variables: tuple[MarginVariable, ...]
    equations: tuple[LinearEquation, ...]
    gravity: float = 980.0
    prop_radius: float = 0.0

    @property
    def initial_values(self) -> np.ndarray:
        return np.array([v.value for v in self.variables], dtype=float)

    def margins(self, values: Sequence[float] | np.ndarray) -> list[float]:
        return [eq.margin(values) for eq in self.equations]

    def min_margin(self, values: Sequence[float] | np.ndarray) -> float | None:
        m = self.margins(values)
        return min(m) if m else None


@dataclass(frozen=True)
class Partition:
    """Pinned variable and resolved equation indices after a stage."""

    pinned: frozenset[int] = frozenset()
    resolved: frozenset[int] = frozenset()

    @classmethod
    def initial(cls, system: MarginSystem) -> Partition:
        return cls(
            pinned=frozenset(),
            resolved=frozenset(i for i, eq in enumerate(system.equations) if eq.resolved),
        )

    def is_complete(self, system: MarginSystem) -> bool:
        return len(self.resolved) == len(system.equations)


@dataclass
class OptimizerSettings:
    # MILP backend: cbc | highs | glpk
    engine: str = "cbc"
    # per-stage solver time limit in seconds
    time_limit: float | None = None
    round_digits: int = 2
    pin_epsilon: float = 1e-7
    solver_msg: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict[str, Any] | None) -> OptimizerSettings:
        if not d:
            return cls()
        return cls(**{k: v for k, v in d.items() if k in cls().__dict__})


@dataclass(frozen=True)
class CoordinateUpdate:
    event_id: str
    variable: int
    old_x: float
    new_x: float


@dataclass
class OptimizationResult:
    pattern: PatternSnapshot
    system: MarginSystem
    partition: Partition
    values: tuple[float, ...]
    updates: list[CoordinateUpdate] = field(default_factory=list)
    stages: int = 0
    initial_margin: float | None = None
    final_margin: float | None = None
