"""
ResidualCorrector
=================
Applies the per-channel nonlinearity splines to raw hit energies:

    E' = E + spline[channel](E)

The spline mapping is frozen when the corrector is built, so a single
instance can be shared by any number of decoding threads.

Energies beyond the calibrated range are extrapolated with the boundary
cubic segment instead of being rejected; raw energies routinely spill a
little past the nominal range. Channels without a spline are returned
unchanged.
"""

from __future__ import annotations
import json
import logging
from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType

import numpy as np

from nonlincal.nonlinearity_spline import NonlinearitySpline

logger = logging.getLogger(__name__)


class ResidualCorrector:

    def __init__(self, splines: Mapping[int, NonlinearitySpline]):
        self._splines = MappingProxyType(
            {int(ch): s for ch, s in splines.items()})

    @property
    def splines(self) -> Mapping[int, NonlinearitySpline]:
        return self._splines

    def channels(self) -> list:
        return sorted(self._splines)

    def has_channel(self, channel_id: int) -> bool:
        return channel_id in self._splines

    def __len__(self):
        return len(self._splines)

    # ------------------------------------------------------------------ #
    # Correction
    # ------------------------------------------------------------------ #

    def correct(self, channel_id: int, raw_energy):
        spline = self._splines.get(channel_id)
        if spline is None:
            return raw_energy
        if np.ndim(raw_energy) == 0:
            e = float(raw_energy)
            return e + spline.evaluate(e)
        e = np.asarray(raw_energy, dtype=float)
        return e + spline.evaluate(e)

    def correct_events(self, channels, energies) -> np.ndarray:
        """Vectorised correction of a (channel, energy) hit stream."""
        ch  = np.asarray(channels).astype(np.int64, copy=False)
        en  = np.asarray(energies, dtype=float)
        if ch.shape != en.shape:
            raise ValueError("channels and energies must have the same shape.")
        out = en.copy()
        for channel_id in np.unique(ch):
            spline = self._splines.get(int(channel_id))
            if spline is None:
                continue
            mask = ch == channel_id
            out[mask] = en[mask] + spline.evaluate(en[mask])
        return out

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #

    @classmethod
    def from_file(cls, path) -> "ResidualCorrector":
        """Load the splines written by OutputWriter.write_splines()."""
        with open(Path(path), "r", encoding="utf-8") as f:
            payload = json.load(f)
        splines = {}
        for entry in payload.get("splines", []):
            s = NonlinearitySpline.from_dict(entry)
            splines[s.channel_id] = s
        logger.info("Loaded %d nonlinearity splines from %s", len(splines), path)
        return cls(splines)
