"""
CalibrationConfig
=================
Reference peaks and search parameters for a nonlinearity calibration run.

The two parallel sequences `reference_energies` and `reference_widths`
are validated once, at construction. Everything downstream may assume
equal lengths, strictly increasing energies and positive widths.

YAML layout (all keys optional, defaults = sample configuration):

    reference_energies: [315.42, 769.31, 1864.89, 2118.26, 3275.16]
    reference_widths:   [20, 20, 20, 20, 20]
    n_channels: 64
    energy_bins: 5000
    energy_min: 0.0
    energy_max: 5000.0
    search_sigma: 2.0
    search_threshold: 0.25
    min_centroid: 1.0
    background: linear
    fragment_file: false
    log_level: INFO
"""

from __future__ import annotations
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import NamedTuple

import numpy as np
import yaml

from nonlincal.errors import ConfigurationError, ConfigurationMismatch

logger = logging.getLogger(__name__)


DEFAULT_REFERENCE_ENERGIES = (315.42, 769.31, 1864.89, 2118.26, 3275.16)
DEFAULT_REFERENCE_WIDTHS   = (20.0, 20.0, 20.0, 20.0, 20.0)

# Alternative 152Eu set, kept for convenience:
#   energies (121.7817, 244.6974, 964.057, 1085.837, 1112.076)
#   widths   (16, 20, 20, 13, 13)

TREE_LAYOUTS = {
    "analysis": {
        "tree":           "AnalysisTree",
        "energy_branch":  "energy",
        "channel_branch": "channel",
    },
    "fragment": {
        "tree":           "FragmentTree",
        "energy_branch":  "energy",
        "channel_branch": "channel",
    },
}


class ReferencePeak(NamedTuple):
    energy: float
    width:  float

    @property
    def window(self) -> tuple[float, float]:
        return self.energy - self.width, self.energy + self.width


@dataclass(frozen=True)
class CalibrationConfig:
    reference_energies: tuple = DEFAULT_REFERENCE_ENERGIES
    reference_widths:   tuple = DEFAULT_REFERENCE_WIDTHS
    n_channels:         int   = 64
    energy_bins:        int   = 5000
    energy_min:         float = 0.0
    energy_max:         float = 5000.0
    search_sigma:       float = 2.0
    search_threshold:   float = 0.25
    min_centroid:       float = 1.0
    background:         str   = "linear"
    fragment_file:      bool  = False
    tree_name:          str   = ""
    energy_branch:      str   = ""
    channel_branch:     str   = ""
    log_level:          str   = "INFO"
    reference_peaks:    tuple = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        energies = tuple(float(e) for e in self.reference_energies)
        widths   = tuple(float(w) for w in self.reference_widths)
        if len(energies) != len(widths):
            raise ConfigurationMismatch(len(energies), len(widths))

        if self.n_channels < 1:
            raise ConfigurationError("n_channels must be at least 1.")
        if self.energy_bins < 1:
            raise ConfigurationError("energy_bins must be at least 1.")
        if not self.energy_max > self.energy_min:
            raise ConfigurationError(
                f"energy_max ({self.energy_max}) must exceed "
                f"energy_min ({self.energy_min}).")
        if np.any(np.diff(energies) <= 0):
            raise ConfigurationError(
                "Reference energies must be strictly increasing.")
        if energies and (energies[0] <= self.energy_min
                         or energies[-1] >= self.energy_max):
            raise ConfigurationError(
                "Reference energies must lie strictly inside "
                f"({self.energy_min}, {self.energy_max}).")
        if any(w <= 0 for w in widths):
            raise ConfigurationError("Reference widths must be positive.")
        if self.search_sigma <= 0:
            raise ConfigurationError("search_sigma must be positive.")
        if not 0.0 <= self.search_threshold < 1.0:
            raise ConfigurationError("search_threshold must be in [0, 1).")

        # frozen dataclass: normalised values go through object.__setattr__
        object.__setattr__(self, "reference_energies", energies)
        object.__setattr__(self, "reference_widths", widths)
        object.__setattr__(self, "reference_peaks", tuple(
            ReferencePeak(e, w) for e, w in zip(energies, widths)))

        layout = TREE_LAYOUTS["fragment" if self.fragment_file else "analysis"]
        for key in ("tree", "energy_branch", "channel_branch"):
            attr = "tree_name" if key == "tree" else key
            if not getattr(self, attr):
                object.__setattr__(self, attr, layout[key])

    @property
    def n_peaks(self) -> int:
        return len(self.reference_peaks)

    @property
    def bin_width(self) -> float:
        return (self.energy_max - self.energy_min) / self.energy_bins

    def to_dict(self) -> dict:
        d = asdict(self)
        d.pop("reference_peaks", None)
        d["reference_energies"] = list(self.reference_energies)
        d["reference_widths"]   = list(self.reference_widths)
        return d


def _config_keys() -> set:
    return {f.name for f in fields(CalibrationConfig) if f.init}


def load_config(source=None, **overrides) -> CalibrationConfig:
    """Build a CalibrationConfig from a YAML path, a mapping, or defaults.

    Keyword overrides are applied on top of the loaded values (the CLI uses
    this for --fragment). Unknown keys are rejected.
    """
    if source is None:
        cfg = {}
    elif isinstance(source, Mapping):
        cfg = dict(source)
    else:
        path = Path(source)
        if not path.is_file():
            raise FileNotFoundError(f"Config file not found: {source}")
        if path.suffix not in {".yaml", ".yml"}:
            raise ConfigurationError("Config file must be YAML")
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
        if not isinstance(cfg, Mapping):
            raise ConfigurationError(f"Config file {path} is not a mapping.")
        logger.debug("Loaded configuration from %s", path)

    cfg.update({k: v for k, v in overrides.items() if v is not None})

    unknown = sorted(set(cfg) - _config_keys())
    if unknown:
        raise ConfigurationError("Unknown configuration keys: " + ", ".join(unknown))

    for key in ("reference_energies", "reference_widths"):
        if key in cfg:
            value = cfg[key]
            if isinstance(value, (str, bytes)) or not hasattr(value, "__iter__"):
                raise ConfigurationError(f"'{key}' must be a list of numbers.")
            cfg[key] = tuple(value)

    return CalibrationConfig(**cfg)
