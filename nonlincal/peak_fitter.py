"""
PeakFitter
==========
Refines a peak position with a least-squares fit of a Gaussian on a
low-order background inside [lo, hi].

Background models:
  linear      : A·G + B + C·(E−E0)                (default)
  quadratic   : A·G + B + C·(E−E0) + D·(E−E0)²
  step        : A·G + B·erfc + C + D·(E−E0)       (Compton step under the peak)
  none        : Gaussian only

E0 is the initial position; fitting in shifted coordinates keeps the
background terms decorrelated from the amplitude.

A fit never raises. Failures come back as PeakFit(success=False, reason=…)
and the caller skips that (channel, peak) pair.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field

import numpy as np
from scipy.optimize import curve_fit
from scipy.special import erfc

from nonlincal.energy_matrix import Histogram

logger = logging.getLogger(__name__)

MIN_FIT_BINS = 6


# ── Models ─────────────────────────────────────────────────────────────── #

def _gauss(u, A, mu, sigma):
    return A * np.exp(-0.5 * ((u - mu) / sigma) ** 2)

def gaussian_only(u, A, mu, sigma):
    return _gauss(u, A, mu, sigma)

def gaussian_linear_bg(u, A, mu, sigma, B, C):
    return _gauss(u, A, mu, sigma) + B + C * u

def gaussian_quadratic_bg(u, A, mu, sigma, B, C, D):
    return _gauss(u, A, mu, sigma) + B + C * u + D * u**2

def gaussian_step_bg(u, A, mu, sigma, B, C, D):
    step = B * erfc((u - mu) / (np.sqrt(2.0) * (np.abs(sigma) + 1e-9)))
    return _gauss(u, A, mu, sigma) + step + C + D * u


BG_MODELS = {
    "none": dict(
        func      = gaussian_only,
        p0_extra  = lambda A0, B0: [],
        blo_extra = [],
        bhi_extra = [],
    ),
    "linear": dict(
        func      = gaussian_linear_bg,
        p0_extra  = lambda A0, B0: [B0, 0.0],
        blo_extra = [0.0,    -np.inf],
        bhi_extra = [np.inf,  np.inf],
    ),
    "quadratic": dict(
        func      = gaussian_quadratic_bg,
        p0_extra  = lambda A0, B0: [B0, 0.0, 0.0],
        blo_extra = [0.0,    -np.inf, -np.inf],
        bhi_extra = [np.inf,  np.inf,  np.inf],
    ),
    "step": dict(
        func      = gaussian_step_bg,
        p0_extra  = lambda A0, B0: [A0 * 0.01, B0, 0.0],
        blo_extra = [0.0,    -np.inf, -np.inf],
        bhi_extra = [np.inf,  np.inf,  np.inf],
    ),
}


# ── Result ─────────────────────────────────────────────────────────────── #

@dataclass
class PeakFit:
    initial:     float
    fit_range:   tuple
    success:     bool
    centroid:    float = float("nan")
    uncertainty: float = float("nan")
    sigma:       float = float("nan")
    amplitude:   float = float("nan")
    chi2_ndf:    float = float("nan")
    bg_model:    str   = "linear"
    bg_params:   tuple = field(default_factory=tuple)
    reason:      str   = ""

    @property
    def fwhm(self) -> float:
        return 2.3548 * self.sigma

    def __bool__(self):
        return self.success


# ── Fitter ─────────────────────────────────────────────────────────────── #

def fit(hist: Histogram, initial: float, lo: float, hi: float,
        bg_model: str = "linear", min_centroid: float = 1.0) -> PeakFit:
    """Fit one peak in [lo, hi] starting from `initial`."""

    def _bad(reason):
        logger.debug("Channel %d fit at %g failed: %s",
                     hist.channel_id, initial, reason)
        return PeakFit(initial=initial, fit_range=(lo, hi), success=False,
                       bg_model=bg_model, reason=reason)

    if bg_model not in BG_MODELS:
        return _bad(f"Unknown background model '{bg_model}'.")
    if hist.is_empty:
        return _bad("Empty histogram.")

    x, y = hist.window(lo, hi)
    if len(x) < MIN_FIT_BINS:
        return _bad(f"Only {len(x)} bins in window (need {MIN_FIT_BINS}).")
    if y.sum() <= 0:
        return _bad("No counts in window.")

    u    = x - initial
    bw   = hist.bin_width
    B0   = float(max(np.percentile(y, 10), 0.0))
    A0   = float(max(y.max() - B0, 1e-9))
    w    = np.clip(y - B0, 0.0, None)
    sig0 = (float(np.sqrt(np.sum(w * u**2) / w.sum())) if w.sum() > 0
            else (hi - lo) / 6.0)
    s_lo, s_hi = 0.5 * bw, float(hi - lo)
    sig0 = float(np.clip(sig0, s_lo * 1.01, s_hi * 0.99))
    mu0  = float(np.clip(0.0, u.min(), u.max()))

    m    = BG_MODELS[bg_model]
    func = m["func"]
    p0   = [A0, mu0, sig0] + m["p0_extra"](A0, B0)
    blo  = [0.0,    float(u.min()), s_lo] + m["blo_extra"]
    bhi  = [np.inf, float(u.max()), s_hi] + m["bhi_extra"]

    try:
        popt, pcov = curve_fit(func, u, y, p0=p0, bounds=(blo, bhi),
                               maxfev=20000, ftol=1e-12, xtol=1e-12)
    except (RuntimeError, ValueError) as exc:
        return _bad(f"Fit failed: {exc}")

    perr = np.sqrt(np.abs(np.diag(pcov)))
    A, mu, sigma = popt[0], popt[1], popt[2]
    centroid = float(mu + initial)

    if not np.all(np.isfinite(popt)) or not np.isfinite(perr[1]):
        return _bad("Covariance could not be estimated (fit unstable).")
    if sigma <= 0 or A <= 0:
        return _bad("Non-physical peak shape.")
    if not lo <= centroid <= hi:
        return _bad(f"Centroid {centroid:.2f} outside window [{lo:g}, {hi:g}].")
    if centroid < min_centroid:
        return _bad(f"Centroid {centroid:.3g} below floor {min_centroid:g}.")

    residuals = y - func(u, *popt)
    ndf       = max(1, len(u) - len(popt))
    chi2_ndf  = float(np.sum(residuals ** 2) / ndf)

    return PeakFit(
        initial=initial, fit_range=(lo, hi), success=True,
        centroid=centroid, uncertainty=float(perr[1]),
        sigma=float(abs(sigma)), amplitude=float(A),
        chi2_ndf=chi2_ndf, bg_model=bg_model,
        bg_params=tuple(float(v) for v in popt[3:]))
