"""Polynomial trend curves for metric series.

The fit is an ordinary least-squares polynomial whose degree grows with the
amount of data (2 for short series, 3 from ten points on).  The normal
equations are solved by Gaussian elimination with partial pivoting; a
near-zero pivot means the system is singular for practical purposes and no
curve is produced.
"""

from __future__ import annotations

from typing import Sequence

from ..collector.base import parse_number

MIN_POINTS = 3
MAX_DEGREE = 3
PIVOT_EPSILON = 1e-12


def trend_degree(point_count: int) -> int:
    return min(MAX_DEGREE, point_count // 10 + 2)


def solve_linear_system(matrix: list[list[float]], rhs: list[float]) -> list[float] | None:
    """Solve ``matrix @ x = rhs``; returns None when a pivot underflows."""
    n = len(rhs)
    a = [list(row) + [rhs[i]] for i, row in enumerate(matrix)]

    for col in range(n):
        pivot_row = max(range(col, n), key=lambda r: abs(a[r][col]))
        if abs(a[pivot_row][col]) < PIVOT_EPSILON:
            return None
        if pivot_row != col:
            a[col], a[pivot_row] = a[pivot_row], a[col]
        pivot = a[col][col]
        for r in range(col + 1, n):
            factor = a[r][col] / pivot
            if factor == 0.0:
                continue
            for c in range(col, n + 1):
                a[r][c] -= factor * a[col][c]

    solution = [0.0] * n
    for row in range(n - 1, -1, -1):
        acc = a[row][n] - sum(a[row][c] * solution[c] for c in range(row + 1, n))
        solution[row] = acc / a[row][row]
    return solution


def _evaluate(coefficients: list[float], x: float) -> float:
    result = 0.0
    for coefficient in reversed(coefficients):
        result = result * x + coefficient
    return result


def fit_trend(series: Sequence[object]) -> list[float | None]:
    """Fit a trend curve to *series* and evaluate it at every index.

    Missing or non-numeric entries are skipped for fitting and stay None in
    the output, which always has the input's length unless no curve can be
    fitted, in which case the result is empty.
    """
    points = [(i, v) for i, v in ((i, parse_number(raw)) for i, raw in enumerate(series)) if v is not None]
    if len(points) < MIN_POINTS:
        return []

    degree = trend_degree(len(points))
    size = degree + 1
    # indices are mapped onto [0, 1] over the valid span to keep the normal
    # matrix well conditioned
    origin = points[0][0]
    scale = float(max(points[-1][0] - origin, 1))

    power_sums = [0.0] * (2 * degree + 1)
    rhs = [0.0] * size
    for index, value in points:
        x = (index - origin) / scale
        power = 1.0
        for k in range(2 * degree + 1):
            power_sums[k] += power
            if k < size:
                rhs[k] += power * value
            power *= x

    matrix = [[power_sums[row + col] for col in range(size)] for row in range(size)]
    coefficients = solve_linear_system(matrix, rhs)
    if coefficients is None:
        return []

    valid = {index for index, _ in points}
    return [
        _evaluate(coefficients, (i - origin) / scale) if i in valid else None
        for i in range(len(series))
    ]


def trend_curve(series: Sequence[object]) -> list[tuple[int, float]]:
    """The fitted curve as ``(index, value)`` pairs, gaps omitted."""
    return [(i, v) for i, v in enumerate(fit_trend(series)) if v is not None]
