"""Margin-of-error optimizer for laid-out juggling patterns.

`margins` turns a pattern into a linear system of collision margins,
`staged` maximizes the worst margin with a sequence of MILP solves through
the backend in `solver`, and `adapter` wraps a run with config, artifacts and
a manifest.
"""
