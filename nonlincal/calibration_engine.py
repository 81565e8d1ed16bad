"""
NonlinearityCalibrator
======================
Drives the per-channel calibration:

  project histogram -> for each reference peak: locate, fit, record
  (expected, expected − measured) -> build the channel's spline.

Per-channel state:  UNPROJECTED -> PROJECTED -> PEAKS_SEARCHED
                    -> SPLINE_BUILT -> READY   (forward only)

Peak-level failures (nothing found in the window, fit did not converge,
centroid below the floor) are recorded on the DetectedPeak and the peak
is left out of the point set. A channel where every peak failed still
reaches READY with a flat zero spline.

Channels are independent; `run()` processes them on a thread pool and
only the calling thread writes into the result mapping.
"""

from __future__ import annotations
import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Callable, Optional

import numpy as np

from nonlincal.config import CalibrationConfig, ReferencePeak
from nonlincal.energy_matrix import EnergyMatrix, Histogram
from nonlincal.errors import PeakFailure
from nonlincal.nonlinearity_spline import (
    CalibrationPointSet, NonlinearitySpline, build)
from nonlincal.peak_fitter import fit
from nonlincal.peak_locator import locate
from nonlincal.residual_corrector import ResidualCorrector

logger = logging.getLogger(__name__)

MAX_WORKERS = 8


class ChannelState(Enum):
    UNPROJECTED    = 0
    PROJECTED      = 1
    PEAKS_SEARCHED = 2
    SPLINE_BUILT   = 3
    READY          = 4


# ── Results ────────────────────────────────────────────────────────────── #

@dataclass(frozen=True)
class DetectedPeak:
    channel_id:        int
    reference_index:   int
    expected_energy:   float
    measured_centroid: float = float("nan")
    uncertainty:       float = float("nan")
    candidate:         float = float("nan")
    failure:           Optional[PeakFailure] = None
    reason:            str = ""

    @property
    def valid(self) -> bool:
        return self.failure is None

    @property
    def offset(self) -> float:
        return self.expected_energy - self.measured_centroid


@dataclass
class ChannelCalibration:
    channel_id: int
    state:      ChannelState = ChannelState.UNPROJECTED
    histogram:  Optional[Histogram] = None
    peaks:      list = field(default_factory=list)
    points:     Optional[CalibrationPointSet] = None
    spline:     Optional[NonlinearitySpline] = None

    def advance(self, state: ChannelState):
        if state.value != self.state.value + 1:
            raise RuntimeError(
                f"Channel {self.channel_id}: illegal transition "
                f"{self.state.name} -> {state.name}.")
        self.state = state

    @property
    def valid_peaks(self) -> list:
        return [p for p in self.peaks if p.valid]

    @property
    def failed_peaks(self) -> list:
        return [p for p in self.peaks if not p.valid]

    @property
    def is_ready(self) -> bool:
        return self.state is ChannelState.READY


class CalibrationRun:
    """Finished calibration of a set of channels (read-only once built)."""

    def __init__(self, config: CalibrationConfig, channels: dict):
        self.config    = config
        self._channels = MappingProxyType(dict(sorted(channels.items())))

    @property
    def channels(self):
        return self._channels

    def __getitem__(self, channel_id: int) -> ChannelCalibration:
        return self._channels[channel_id]

    def __iter__(self):
        return iter(self._channels.values())

    def __len__(self):
        return len(self._channels)

    @property
    def splines(self) -> dict:
        return {ch: c.spline for ch, c in self._channels.items()}

    @property
    def point_sets(self) -> dict:
        return {ch: c.points for ch, c in self._channels.items()}

    @property
    def detected_peaks(self) -> list:
        return [p for c in self._channels.values() for p in c.peaks]

    def degenerate_channels(self) -> list:
        return [ch for ch, c in self._channels.items() if c.spline.is_degenerate]

    def corrector(self) -> ResidualCorrector:
        return ResidualCorrector(self.splines)


# ── Engine ─────────────────────────────────────────────────────────────── #

class NonlinearityCalibrator:

    def __init__(self, config: Optional[CalibrationConfig] = None):
        self.config = config or CalibrationConfig()

    # ------------------------------------------------------------------ #
    # Single peak
    # ------------------------------------------------------------------ #

    def search_peak(self, hist: Histogram, index: int,
                     ref: ReferencePeak) -> DetectedPeak:
        cfg = self.config

        def _failed(kind, reason, candidate=float("nan")):
            logger.warning("Channel %d: peak %g skipped (%s: %s)",
                           hist.channel_id, ref.energy, kind.value, reason)
            return DetectedPeak(hist.channel_id, index, ref.energy,
                                candidate=candidate, failure=kind, reason=reason)

        lo, hi = ref.window
        candidates = locate(hist, lo, hi, sigma=cfg.search_sigma,
                            threshold=cfg.search_threshold)
        if not candidates:
            return _failed(PeakFailure.NOT_FOUND,
                           f"no candidate in [{lo:g}, {hi:g}]")
        rough = candidates[0]
        if rough < cfg.min_centroid:
            return _failed(PeakFailure.NOT_FOUND,
                           f"candidate {rough:.3g} below floor", rough)
        logger.debug("Channel %d: peak %g roughly at %.2f",
                     hist.channel_id, ref.energy, rough)

        result = fit(hist, rough, rough - ref.width, rough + ref.width,
                     bg_model=cfg.background, min_centroid=cfg.min_centroid)
        if not result.success:
            return _failed(PeakFailure.FIT_FAILED, result.reason, rough)

        peak = DetectedPeak(hist.channel_id, index, ref.energy,
                            measured_centroid=result.centroid,
                            uncertainty=result.uncertainty,
                            candidate=rough)
        logger.debug("Channel %d: peak %g found at %.3f, difference of %.3f",
                     hist.channel_id, ref.energy, peak.measured_centroid,
                     peak.offset)
        return peak

    # ------------------------------------------------------------------ #
    # Single channel
    # ------------------------------------------------------------------ #

    def calibrate_histogram(self, hist: Histogram,
                             calib: Optional[ChannelCalibration] = None
                             ) -> ChannelCalibration:
        cfg = self.config
        if calib is None:
            calib = ChannelCalibration(hist.channel_id)
            calib.histogram = hist
            calib.advance(ChannelState.PROJECTED)

        calib.peaks = [self.search_peak(hist, k, ref)
                       for k, ref in enumerate(cfg.reference_peaks)]
        calib.advance(ChannelState.PEAKS_SEARCHED)

        valid = calib.valid_peaks
        calib.points = CalibrationPointSet.from_peaks(
            hist.channel_id,
            [p.expected_energy for p in valid],
            [p.measured_centroid for p in valid],
            e_min=cfg.energy_min, e_max=cfg.energy_max)
        calib.spline = build(calib.points)
        calib.advance(ChannelState.SPLINE_BUILT)

        calib.advance(ChannelState.READY)
        logger.info("Channel %d: %d/%d peaks used%s", hist.channel_id,
                    len(valid), cfg.n_peaks,
                    " (zero-offset spline)" if calib.spline.is_degenerate else "")
        return calib

    def calibrate_channel(self, matrix: EnergyMatrix,
                           channel_id: int) -> ChannelCalibration:
        calib = ChannelCalibration(channel_id)
        calib.histogram = matrix.project(channel_id)
        calib.advance(ChannelState.PROJECTED)
        return self.calibrate_histogram(calib.histogram, calib)

    # ------------------------------------------------------------------ #
    # All channels
    # ------------------------------------------------------------------ #

    def run(self, matrix: EnergyMatrix, channels=None,
            workers: Optional[int] = None,
            progress_callback: Optional[Callable] = None) -> CalibrationRun:
        channel_ids = list(channels) if channels is not None else matrix.channel_ids
        if workers is None:
            workers = min(MAX_WORKERS, os.cpu_count() or 1)
        workers = max(1, int(workers))
        total   = len(channel_ids)
        logger.info("Calibrating %d channel(s) against %d reference peak(s) "
                    "with %d worker(s)", total, self.config.n_peaks, workers)

        results: dict = {}
        if workers == 1:
            for i, ch_id in enumerate(channel_ids):
                results[ch_id] = self.calibrate_channel(matrix, ch_id)
                if progress_callback:
                    progress_callback(i + 1, total)
        else:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = {pool.submit(self.calibrate_channel, matrix, ch_id): ch_id
                           for ch_id in channel_ids}
                for done, fut in enumerate(as_completed(futures), start=1):
                    results[futures[fut]] = fut.result()
                    if progress_callback:
                        progress_callback(done, total)

        run = CalibrationRun(self.config, results)
        n_degenerate = len(run.degenerate_channels())
        if n_degenerate:
            logger.warning("%d channel(s) had no usable peaks and got a "
                           "zero-offset spline", n_degenerate)
        return run


def calibrate(matrix: EnergyMatrix, reference_energies, reference_widths,
              workers: Optional[int] = None, **options) -> CalibrationRun:
    """Validate the reference peaks, then calibrate every matrix channel.

    Extra keyword options are CalibrationConfig fields. The energy axis is
    taken from the matrix.
    """
    options.setdefault("n_channels", matrix.n_channels)
    options.setdefault("energy_bins", matrix.n_bins)
    options.setdefault("energy_min", matrix.e_min)
    options.setdefault("energy_max", matrix.e_max)
    config = CalibrationConfig(reference_energies=tuple(reference_energies),
                               reference_widths=tuple(reference_widths),
                               **options)
    return NonlinearityCalibrator(config).run(matrix, workers=workers)


def offsets_table(run: CalibrationRun) -> np.ndarray:
    """(channel, expected, offset, uncertainty) rows for every valid peak."""
    rows = [(p.channel_id, p.expected_energy, p.offset, p.uncertainty)
            for p in run.detected_peaks if p.valid]
    return np.array(rows, dtype=float).reshape(-1, 4)
