"""
EnergyMatrix
============
Channel × energy accumulation matrix and its per-channel projections.

  fill(channels, energies)  accumulate a batch of (channel, energy) hits
  project(channel)          1-D energy Histogram for one channel
  restrict(first, last)     copy limited to a channel range

Hits outside the channel or energy axis are dropped (ROOT under/overflow).
"""

from __future__ import annotations
import logging
from dataclasses import dataclass

import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class Histogram:
    channel_id: int
    edges:      np.ndarray
    counts:     np.ndarray

    def __post_init__(self):
        edges  = np.array(self.edges, dtype=float)
        counts = np.array(self.counts, dtype=float)
        if edges.size and edges.size != counts.size + 1:
            raise ValueError(
                f"Histogram needs len(edges) == len(counts) + 1, "
                f"got {edges.size} and {counts.size}.")
        edges.setflags(write=False)
        counts.setflags(write=False)
        object.__setattr__(self, "edges", edges)
        object.__setattr__(self, "counts", counts)

    @classmethod
    def empty(cls, channel_id: int = -1) -> "Histogram":
        return cls(channel_id, np.array([]), np.array([]))

    @classmethod
    def from_centers(cls, channel_id: int, centers, counts) -> "Histogram":
        """Build from uniform bin centres (edges are half a bin either side)."""
        centers = np.asarray(centers, dtype=float)
        step    = float(np.median(np.diff(centers))) if centers.size > 1 else 1.0
        edges   = np.append(centers - 0.5 * step, centers[-1] + 0.5 * step)
        return cls(channel_id, edges, counts)

    @property
    def is_empty(self) -> bool:
        return self.counts.size == 0

    @property
    def bin_centers(self) -> np.ndarray:
        return 0.5 * (self.edges[:-1] + self.edges[1:])

    @property
    def bin_width(self) -> float:
        return float(np.median(np.diff(self.edges))) if self.edges.size > 1 else 0.0

    @property
    def n_entries(self) -> float:
        return float(self.counts.sum())

    def window(self, lo: float, hi: float) -> tuple[np.ndarray, np.ndarray]:
        """Bin centres and counts with centre inside [lo, hi]."""
        centers = self.bin_centers
        mask    = (centers >= lo) & (centers <= hi)
        return centers[mask], self.counts[mask]


class EnergyMatrix:

    def __init__(self, n_channels: int = 64, n_bins: int = 5000,
                  e_min: float = 0.0, e_max: float = 5000.0,
                  first_channel: int = 0):
        self.first_channel = int(first_channel)
        self.n_channels    = int(n_channels)
        self.energy_edges  = np.linspace(e_min, e_max, int(n_bins) + 1)
        self.counts        = np.zeros((self.n_channels, int(n_bins)), dtype=float)

    @classmethod
    def from_config(cls, config) -> "EnergyMatrix":
        return cls(config.n_channels, config.energy_bins,
                   config.energy_min, config.energy_max)

    # ------------------------------------------------------------------ #
    # Axes
    # ------------------------------------------------------------------ #

    @property
    def n_bins(self) -> int:
        return self.counts.shape[1]

    @property
    def e_min(self) -> float:
        return float(self.energy_edges[0])

    @property
    def e_max(self) -> float:
        return float(self.energy_edges[-1])

    @property
    def channel_ids(self) -> list:
        return list(range(self.first_channel, self.first_channel + self.n_channels))

    def has_channel(self, channel_id: int) -> bool:
        return self.first_channel <= channel_id < self.first_channel + self.n_channels

    @property
    def n_entries(self) -> float:
        return float(self.counts.sum())

    # ------------------------------------------------------------------ #
    # Filling
    # ------------------------------------------------------------------ #

    def fill(self, channels, energies, weights=None) -> int:
        """Accumulate hits; returns the number of hits that landed in range."""
        ch = np.asarray(channels).astype(np.int64, copy=False).ravel()
        en = np.asarray(energies, dtype=float).ravel()
        if ch.shape != en.shape:
            raise ValueError("channels and energies must have the same length.")
        w = None if weights is None else np.asarray(weights, dtype=float).ravel()

        row  = ch - self.first_channel
        mask = ((row >= 0) & (row < self.n_channels)
                & (en >= self.e_min) & (en < self.e_max))
        if not mask.any():
            return 0

        # np.histogram2d on integer channel edges keeps the binning exact
        ch_edges = np.arange(self.n_channels + 1) - 0.5
        h, _, _  = np.histogram2d(
            row[mask], en[mask],
            bins=(ch_edges, self.energy_edges),
            weights=None if w is None else w[mask])
        self.counts += h
        return int(mask.sum())

    def reset(self):
        self.counts[:] = 0.0

    # ------------------------------------------------------------------ #
    # Projection
    # ------------------------------------------------------------------ #

    def project(self, channel_id: int) -> Histogram:
        if not self.has_channel(channel_id):
            logger.warning("Channel %d outside matrix range %d..%d; "
                           "returning empty histogram.", channel_id,
                           self.first_channel,
                           self.first_channel + self.n_channels - 1)
            return Histogram.empty(channel_id)
        row = channel_id - self.first_channel
        return Histogram(channel_id, self.energy_edges, self.counts[row].copy())

    def restrict(self, first: int, last: int) -> "EnergyMatrix":
        """Copy of the matrix limited to channels first..last inclusive."""
        first = max(first, self.first_channel)
        last  = min(last, self.first_channel + self.n_channels - 1)
        if last < first:
            raise ValueError(f"Empty channel range {first}..{last}.")
        out = EnergyMatrix(last - first + 1, self.n_bins,
                           self.e_min, self.e_max, first_channel=first)
        lo = first - self.first_channel
        out.counts[:] = self.counts[lo:lo + out.n_channels]
        return out

    def copy(self) -> "EnergyMatrix":
        out = EnergyMatrix(self.n_channels, self.n_bins,
                           self.e_min, self.e_max, self.first_channel)
        out.counts[:] = self.counts
        return out

    def to_numpy(self):
        """(counts, channel_edges, energy_edges), as np.histogram2d returns."""
        ch_edges = (np.arange(self.n_channels + 1, dtype=float)
                    + self.first_channel)
        return self.counts.copy(), ch_edges, self.energy_edges.copy()
