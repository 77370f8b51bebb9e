from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure project root is on sys.path for package imports like `pipeline.*`
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pattern import pattern_from_dict  # noqa: E402
from tests.fixtures.patterns import crossing_doc  # noqa: E402


@pytest.fixture(autouse=True)
def _no_solver_override(monkeypatch):
    monkeypatch.delenv("MARGIN_SOLVER_IMPL", raising=False)


@pytest.fixture
def crossing_pattern():
    return pattern_from_dict(crossing_doc())
