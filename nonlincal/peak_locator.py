"""
PeakLocator
===========
Finds candidate peak positions inside an energy window.

Algorithm (second-derivative search, in the spirit of TSpectrum::Search):
  1. Smooth the full spectrum with a Gaussian kernel of `sigma` bins and
     take the negative second derivative. A Gaussian peak becomes a
     positive lobe centred on the peak; a linear background vanishes.
  2. Find local maxima of that curvature signal and their prominences.
  3. Keep maxima whose centre lies in [lo, hi] and whose prominence is at
     least `threshold` × the largest prominence in the window.
  4. Refine each position by a parabola through the three curvature
     samples around the maximum.

Returned positions are ordered most prominent first.
"""

from __future__ import annotations
import logging

import numpy as np
from scipy.ndimage import gaussian_filter1d
from scipy.signal import find_peaks

from nonlincal.energy_matrix import Histogram

logger = logging.getLogger(__name__)

# Curvature maxima below this fraction of the spectrum's largest curvature
# are numerical residue of the smoothing kernel, not peaks.
_NOISE_FLOOR = 1e-9


def curvature(counts: np.ndarray, sigma: float = 2.0) -> np.ndarray:
    """Negative second derivative of the Gaussian-smoothed spectrum."""
    return -gaussian_filter1d(np.asarray(counts, dtype=float),
                              sigma=sigma, order=2, mode="nearest")


def _refine(signal: np.ndarray, idx: int) -> float:
    if idx <= 0 or idx >= len(signal) - 1:
        return float(idx)
    y0, y1, y2 = signal[idx - 1], signal[idx], signal[idx + 1]
    denom = y0 - 2.0 * y1 + y2
    if denom >= 0:
        return float(idx)
    return float(idx) + 0.5 * (y0 - y2) / denom


def locate(hist: Histogram, lo: float, hi: float,
           sigma: float = 2.0, threshold: float = 0.25,
           max_peaks: int = 10) -> list[float]:
    """Candidate peak positions in [lo, hi], most prominent first."""
    if hist.is_empty or hi < lo:
        return []

    centers = hist.bin_centers
    in_win  = (centers >= lo) & (centers <= hi)
    if not in_win.any() or hist.counts[in_win].sum() <= 0:
        return []

    signal = curvature(hist.counts, sigma)
    scale  = float(np.max(np.abs(signal)))
    if scale <= 0:
        return []

    indices, props = find_peaks(signal, height=_NOISE_FLOOR * scale,
                                prominence=0.0)
    if len(indices) == 0:
        return []

    keep = in_win[indices]
    indices     = indices[keep]
    prominences = props["prominences"][keep]
    if len(indices) == 0:
        return []

    cut   = threshold * float(prominences.max())
    order = np.argsort(-prominences, kind="stable")
    order = [i for i in order if prominences[i] >= cut][:max_peaks]

    width = hist.bin_width
    positions = []
    for i in order:
        frac = _refine(signal, int(indices[i]))
        positions.append(float(centers[0] + frac * width))

    logger.debug("Channel %d window [%g, %g]: %d candidate(s) %s",
                 hist.channel_id, lo, hi, len(positions),
                 ", ".join(f"{p:.2f}" for p in positions))
    return positions
