"""
NonlinearitySpline
==================
Per-channel correction curve: observed energy -> offset (keV) to add.

The control points are the (expected energy, expected − measured) pairs of
every peak that was found and fitted, framed by two synthetic boundary
points (e_min, 0) and (e_max, 0). Between knots the curve is a natural
cubic spline (C² at interior knots, zero second derivative at both ends).
Outside [e_min, e_max] the boundary cubic is extrapolated.

A channel where every peak failed keeps only the two boundary points and
gets a flat zero spline; that is a valid result, not an error.
"""

from __future__ import annotations
from dataclasses import dataclass

import numpy as np
from scipy.interpolate import CubicSpline


@dataclass(frozen=True, eq=False)
class CalibrationPointSet:
    channel_id: int
    x:          np.ndarray
    y:          np.ndarray

    def __post_init__(self):
        x = np.array(self.x, dtype=float)
        y = np.array(self.y, dtype=float)
        if x.ndim != 1 or x.shape != y.shape:
            raise ValueError("Calibration points need matching 1-D x and y.")
        if x.size < 2:
            raise ValueError("A calibration point set needs at least the "
                             "two boundary points.")
        if np.any(np.diff(x) <= 0):
            raise ValueError(
                f"Channel {self.channel_id}: calibration x-values must be "
                f"strictly increasing, got {x.tolist()}.")
        x.setflags(write=False)
        y.setflags(write=False)
        object.__setattr__(self, "x", x)
        object.__setattr__(self, "y", y)

    @classmethod
    def from_peaks(cls, channel_id: int, expected, measured,
                   e_min: float = 0.0, e_max: float = 5000.0
                   ) -> "CalibrationPointSet":
        """Offsets are expected − measured; boundary points pin both ends to 0."""
        expected = np.asarray(expected, dtype=float)
        measured = np.asarray(measured, dtype=float)
        x = np.concatenate(([e_min], expected, [e_max]))
        y = np.concatenate(([0.0], expected - measured, [0.0]))
        return cls(channel_id, x, y)

    @property
    def n_points(self) -> int:
        return int(self.x.size)

    @property
    def n_peaks(self) -> int:
        return self.n_points - 2

    def pairs(self) -> list[tuple[float, float]]:
        return [(float(a), float(b)) for a, b in zip(self.x, self.y)]


class NonlinearitySpline:

    def __init__(self, points: CalibrationPointSet):
        self.points  = points
        self._spline = CubicSpline(points.x, points.y,
                                   bc_type="natural", extrapolate=True)

    @property
    def channel_id(self) -> int:
        return self.points.channel_id

    @property
    def knots(self) -> np.ndarray:
        return self.points.x

    @property
    def values(self) -> np.ndarray:
        return self.points.y

    @property
    def domain(self) -> tuple[float, float]:
        return float(self.points.x[0]), float(self.points.x[-1])

    @property
    def is_degenerate(self) -> bool:
        return self.points.n_peaks == 0

    def evaluate(self, energy):
        """Offset at `energy` (scalar in, float out; array in, array out)."""
        out = self._spline(np.asarray(energy, dtype=float))
        return float(out) if np.ndim(out) == 0 else out

    __call__ = evaluate

    def derivative(self, energy, nu: int = 1):
        out = self._spline(np.asarray(energy, dtype=float), nu)
        return float(out) if np.ndim(out) == 0 else out

    # ------------------------------------------------------------------ #
    # Export
    # ------------------------------------------------------------------ #

    def to_dict(self) -> dict:
        return {
            "channel": self.channel_id,
            "knots":   self.points.x.tolist(),
            "values":  self.points.y.tolist(),
            "bc_type": "natural",
        }

    @classmethod
    def from_dict(cls, d: dict) -> "NonlinearitySpline":
        bc = d.get("bc_type", "natural")
        if bc != "natural":
            raise ValueError(f"Unsupported spline boundary condition '{bc}'.")
        return cls(CalibrationPointSet(int(d["channel"]), d["knots"], d["values"]))

    def __repr__(self):
        return (f"NonlinearitySpline(channel={self.channel_id}, "
                f"knots={self.points.n_points}, domain={self.domain})")


def build(points: CalibrationPointSet) -> NonlinearitySpline:
    return NonlinearitySpline(points)
