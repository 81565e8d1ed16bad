"""
Quality-control plots for the nonlinearity calibration.

plot_channel  — offset points with error bars and the spline curve
plot_summary  — grid of all channels, one small panel each
"""

from __future__ import annotations
import math

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np


def _draw(ax, calib, n_samples: int = 500, small: bool = False):
    spline = calib.spline
    lo, hi = spline.domain
    xs = np.linspace(lo, hi, n_samples)
    ax.plot(xs, spline.evaluate(xs), color="#1565c0", lw=1.0)
    valid = calib.valid_peaks
    if valid:
        ax.errorbar([p.expected_energy for p in valid],
                    [p.offset for p in valid],
                    yerr=[p.uncertainty for p in valid],
                    fmt="o", ms=2.5 if small else 4, color="#c62828",
                    capsize=0 if small else 2)
    ax.axhline(0.0, color="0.6", lw=0.5, ls="--")
    if small:
        ax.set_title(f"ch {calib.channel_id}", fontsize=7)
        ax.tick_params(labelsize=5)
    else:
        ax.set_title(f"Channel {calib.channel_id} — "
                     f"{len(valid)}/{len(calib.peaks)} peaks")
        ax.set_xlabel("Energy (keV)")
        ax.set_ylabel("Expected − measured (keV)")


def plot_channel(calib, out_path: str):
    fig, ax = plt.subplots(figsize=(7, 4))
    _draw(ax, calib)
    fig.tight_layout()
    fig.savefig(out_path, dpi=120)
    plt.close(fig)
    return out_path


def plot_summary(run, out_path: str, ncols: int = 8):
    channels = list(run)
    if not channels:
        return None
    ncols = min(ncols, len(channels))
    nrows = math.ceil(len(channels) / ncols)
    fig, axes = plt.subplots(nrows, ncols, figsize=(2.2 * ncols, 1.6 * nrows),
                             sharex=True, squeeze=False)
    for ax, calib in zip(axes.flat, channels):
        _draw(ax, calib, n_samples=200, small=True)
    for ax in list(axes.flat)[len(channels):]:
        ax.set_visible(False)
    fig.suptitle("Energy nonlinearity per channel (keV)")
    fig.tight_layout()
    fig.savefig(out_path, dpi=120)
    plt.close(fig)
    return out_path
