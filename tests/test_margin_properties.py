from __future__ import annotations

import numpy as np
import pytest

from pattern import pattern_from_dict
from processes.optimizer.margins import build_margin_system
from tests.fixtures.patterns import crossing_doc

hypothesis = pytest.importorskip("hypothesis")
from hypothesis import given, settings  # noqa: E402
from hypothesis import strategies as st  # noqa: E402

_right = st.floats(min_value=1.0, max_value=100.0, allow_nan=False)
_left = st.floats(min_value=-100.0, max_value=-1.0, allow_nan=False)


@given(x0=_right, x1=_left, x2=_left, x3=_right)
@settings(max_examples=50, deadline=None)
def test_rows_oriented_nonnegative(x0, x1, x2, x3):
    doc = crossing_doc()
    for ev, x in zip(doc["events"], (x0, x1, x2, x3)):
        ev["x"] = x
    system = build_margin_system(pattern_from_dict(doc))
    values = system.initial_values
    for eq in system.equations:
        assert float(np.dot(eq.coefficients, values)) >= 0.0
        assert eq.margin(values) == pytest.approx(eq.value(values))
