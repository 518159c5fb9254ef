"""
Table interpolation used for temperature-dependent fluid properties.

Provides piecewise linear interpolation and monotone cubic (Fritsch-Carlson)
interpolation. The monotone variant preserves the shape of the tabulated
data: it reproduces the table exactly at its knots and never overshoots
between them.
"""

import logging
import typing

import attrs
import numpy as np

logger = logging.getLogger(__name__)

__all__ = [
    "InterpolationResult",
    "linear_interpolate",
    "monotone_cubic_interpolate",
    "MonotoneCubicInterpolator",
]

ArrayLike = typing.Union[typing.Sequence[float], np.ndarray]


@attrs.define(slots=True, frozen=True)
class InterpolationResult:
    """Result of a single table lookup."""

    value: float
    """Interpolated (or clamped/extrapolated) value"""
    clamped: bool = False
    """Whether the query fell outside the table and was clamped to a boundary"""
    warning: typing.Optional[str] = None
    """Warning message when the query fell outside the table"""


def _validate_table(xs: ArrayLike, ys: ArrayLike) -> typing.Tuple[np.ndarray, np.ndarray]:
    x = np.asarray(xs, dtype=float)
    y = np.asarray(ys, dtype=float)
    if x.ndim != 1 or y.ndim != 1:
        raise ValueError("Interpolation tables must be one-dimensional")
    if x.size == 0:
        raise ValueError("Interpolation table is empty")
    if x.size != y.size:
        raise ValueError(
            f"Interpolation table length mismatch: {x.size} x-values, {y.size} y-values"
        )
    if x.size > 1 and not np.all(np.diff(x) > 0):
        raise ValueError("Interpolation x-values must be strictly increasing")
    return x, y


def _out_of_range(
    x: np.ndarray, y: np.ndarray, q: float, extrapolate: bool
) -> typing.Optional[InterpolationResult]:
    """Handle queries outside the table. Returns None when `q` is inside."""
    lo, hi = x[0], x[-1]
    if lo <= q <= hi:
        return None

    below = q < lo
    bound = lo if below else hi
    warning = f"Value {q:g} is outside table range [{lo:g}, {hi:g}]"
    if not extrapolate or x.size == 1:
        return InterpolationResult(
            value=float(y[0] if below else y[-1]),
            clamped=True,
            warning=f"{warning}; clamped to {bound:g}",
        )

    i0, i1 = (0, 1) if below else (-2, -1)
    slope = (y[i1] - y[i0]) / (x[i1] - x[i0])
    return InterpolationResult(
        value=float(y[i0] + slope * (q - x[i0])),
        clamped=False,
        warning=f"{warning}; linearly extrapolated",
    )


def _bracket(x: np.ndarray, q: float) -> int:
    """Index `i` of the interval [x[i], x[i+1]] containing `q`."""
    i = int(np.searchsorted(x, q, side="right")) - 1
    return min(max(i, 0), x.size - 2)


def linear_interpolate(
    xs: ArrayLike, ys: ArrayLike, x: float, extrapolate: bool = False
) -> InterpolationResult:
    """
    Piecewise linear interpolation.

    :param xs: Strictly increasing x-values.
    :param ys: y-values, same length as `xs`.
    :param x: Query point.
    :param extrapolate: Linearly extrapolate outside the table instead of clamping.
    :return: `InterpolationResult`
    """
    xa, ya = _validate_table(xs, ys)
    outside = _out_of_range(xa, ya, x, extrapolate)
    if outside is not None:
        return outside
    if xa.size == 1:
        return InterpolationResult(value=float(ya[0]))

    i = _bracket(xa, x)
    t = (x - xa[i]) / (xa[i + 1] - xa[i])
    return InterpolationResult(value=float(ya[i] + t * (ya[i + 1] - ya[i])))


def _fritsch_carlson_slopes(x: np.ndarray, y: np.ndarray) -> np.ndarray:
    """Compute monotonicity-preserving knot derivatives."""
    h = np.diff(x)
    delta = np.diff(y) / h
    n = x.size
    m = np.empty(n, dtype=float)
    m[0] = delta[0]
    m[-1] = delta[-1]

    for i in range(1, n - 1):
        d0, d1 = delta[i - 1], delta[i]
        if d0 * d1 <= 0:
            # Local extremum
            m[i] = 0.0
        else:
            w1 = 2 * h[i] + h[i - 1]
            w2 = h[i] + 2 * h[i - 1]
            m[i] = (w1 + w2) / (w1 / d0 + w2 / d1)

    for i in range(n - 1):
        if delta[i] == 0:
            m[i] = 0.0
            m[i + 1] = 0.0
            continue
        alpha = m[i] / delta[i]
        beta = m[i + 1] / delta[i]
        tau = alpha * alpha + beta * beta
        if tau > 9:
            scale = 3 / np.sqrt(tau)
            m[i] = scale * alpha * delta[i]
            m[i + 1] = scale * beta * delta[i]
    return m


def _hermite(
    x: np.ndarray, y: np.ndarray, m: np.ndarray, q: float
) -> float:
    i = _bracket(x, q)
    h = x[i + 1] - x[i]
    t = (q - x[i]) / h
    t2 = t * t
    t3 = t2 * t
    h00 = 2 * t3 - 3 * t2 + 1
    h10 = t3 - 2 * t2 + t
    h01 = -2 * t3 + 3 * t2
    h11 = t3 - t2
    return float(
        h00 * y[i] + h10 * h * m[i] + h01 * y[i + 1] + h11 * h * m[i + 1]
    )


def monotone_cubic_interpolate(
    xs: ArrayLike, ys: ArrayLike, x: float, extrapolate: bool = False
) -> InterpolationResult:
    """
    Monotone cubic (Fritsch-Carlson) interpolation.

    Tables with fewer than three points fall back to linear interpolation.

    :param xs: Strictly increasing x-values.
    :param ys: y-values, same length as `xs`.
    :param x: Query point.
    :param extrapolate: Linearly extrapolate outside the table instead of clamping.
    :return: `InterpolationResult`
    """
    return MonotoneCubicInterpolator(xs, ys)(x, extrapolate=extrapolate)


class MonotoneCubicInterpolator:
    """
    Monotone cubic interpolator with derivatives precomputed once.

    Usage:

    ```python
    interp = MonotoneCubicInterpolator([0, 10, 20], [1.79, 1.31, 1.00])
    result = interp(15.0)
    ```
    """

    __slots__ = ("x", "y", "slopes")

    def __init__(self, xs: ArrayLike, ys: ArrayLike) -> None:
        self.x, self.y = _validate_table(xs, ys)
        self.slopes = (
            _fritsch_carlson_slopes(self.x, self.y) if self.x.size >= 3 else None
        )

    def __call__(self, x: float, extrapolate: bool = False) -> InterpolationResult:
        if self.slopes is None:
            return linear_interpolate(self.x, self.y, x, extrapolate=extrapolate)

        outside = _out_of_range(self.x, self.y, x, extrapolate)
        if outside is not None:
            return outside
        return InterpolationResult(value=_hermite(self.x, self.y, self.slopes, x))

    def __len__(self) -> int:
        return int(self.x.size)
