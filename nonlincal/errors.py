"""
Errors
======
Fatal conditions are exceptions and abort the run:

  ConfigurationMismatch  reference energies / widths differ in length
  ConfigurationError     any other invalid configuration value
  UnopenableFile         the input file cannot be opened
  MissingInputTree       the requested tree or branch is not in the file

Per-peak problems are NOT exceptions. They are recorded as a PeakFailure
on the DetectedPeak and the (channel, peak) pair is skipped.
"""

from __future__ import annotations
from enum import Enum


class CalibrationError(Exception):
    """Base class for all fatal calibration errors."""


class ConfigurationError(CalibrationError, ValueError):
    pass


class ConfigurationMismatch(ConfigurationError):

    def __init__(self, n_energies: int, n_widths: int):
        self.n_energies = n_energies
        self.n_widths   = n_widths
        super().__init__(
            f"Number of reference energies ({n_energies}) and "
            f"widths ({n_widths}) are different.")


class UnopenableFile(CalibrationError, OSError):

    def __init__(self, path, reason: str = ""):
        self.path = str(path)
        msg = f"Failed to open file '{self.path}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class MissingInputTree(CalibrationError, KeyError):

    def __init__(self, path, name: str, kind: str = "tree"):
        self.path = str(path)
        self.name = name
        self.kind = kind
        super().__init__(f"Failed to find {kind} '{name}' in file '{self.path}'.")

    def __str__(self):
        return self.args[0]


class PeakFailure(str, Enum):
    NOT_FOUND  = "peak_not_found"
    FIT_FAILED = "peak_fit_failed"
