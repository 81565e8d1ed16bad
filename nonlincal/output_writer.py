"""
OutputWriter
============
Exports nonlinearity calibration results.

  <prefix>_splines.json   spline knots per channel (ResidualCorrector.from_file)
  <prefix>_log.txt        per-channel peak status and control points
  <prefix>_points.txt     flat (channel, expected, offset, uncertainty) table
  <prefix>_matrix.root    mat_en (+ mat_en_corrected) TH2 and a
                          nonlinearity_points TTree, written with uproot
"""

from __future__ import annotations
import json
import logging
import os
from datetime import datetime

import numpy as np
import uproot

from nonlincal import __version__
from nonlincal.calibration_engine import CalibrationRun, offsets_table

logger = logging.getLogger(__name__)


class OutputWriter:

    HEADER = (
        "# ============================================================\n"
        "# nonlincal — Energy Nonlinearity Calibration Results\n"
        "# ============================================================\n"
    )

    @staticmethod
    def _ts() -> str:
        return datetime.now().strftime("%Y-%m-%d  %H:%M:%S")

    @classmethod
    def write_splines(cls, run: CalibrationRun, out_path: str,
                       source_file: str = ""):
        payload = {
            "generator":          f"nonlincal {__version__}",
            "created":            cls._ts(),
            "source_file":        source_file,
            "energy_range":       [run.config.energy_min, run.config.energy_max],
            "reference_energies": list(run.config.reference_energies),
            "reference_widths":   list(run.config.reference_widths),
            "splines":            [c.spline.to_dict() for c in run],
        }
        with open(out_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)

    @classmethod
    def write_log(cls, run: CalibrationRun, out_path: str, source_file: str = ""):
        degenerate = run.degenerate_channels()
        with open(out_path, "w", encoding="utf-8") as f:
            f.write(cls.HEADER)
            f.write(f"# Date          : {cls._ts()}\n")
            if source_file:
                f.write(f"# Source file   : {source_file}\n")
            f.write(f"# Total channels: {len(run)}\n")
            f.write(f"# Zero-offset   : {len(degenerate)}\n")
            if degenerate:
                f.write("# Zero-offset IDs: "
                        + ", ".join(str(ch) for ch in degenerate) + "\n")
            f.write("# Reference     : "
                    + ", ".join(f"{e:g}±{w:g}" for e, w in run.config.reference_peaks)
                    + "\n#\n")
            for c in run:
                f.write(f"\n# {'─'*58}\n# Channel {c.channel_id}\n")
                f.write(f"# Peaks used: {len(c.valid_peaks)}/{len(c.peaks)}\n")
                for p in c.failed_peaks:
                    f.write(f"#   {p.expected_energy:>10.3f}  SKIPPED — {p.reason}\n")
                f.write(f"# {'Expected_keV':>12s}  {'Measured_keV':>12s}  "
                        f"{'Offset_keV':>12s}  {'Unc_keV':>10s}\n")
                for p in c.valid_peaks:
                    f.write(f"  {p.expected_energy:>12.3f}  "
                            f"{p.measured_centroid:>12.4f}  "
                            f"{p.offset:>+12.4f}  {p.uncertainty:>10.4f}\n")
                f.write("# Control points: "
                        + "  ".join(f"({x:g}, {y:+.4f})" for x, y in c.points.pairs())
                        + "\n")

    @classmethod
    def write_points(cls, run: CalibrationRun, out_path: str, source_file: str = ""):
        table = offsets_table(run)
        with open(out_path, "w", encoding="utf-8") as f:
            f.write(cls.HEADER)
            f.write(f"# Date     : {cls._ts()}\n")
            if source_file:
                f.write(f"# Source   : {source_file}\n")
            f.write("#\n")
            f.write(f"# {'Channel':>8s}  {'Expected_keV':>14s}  "
                    f"{'Offset_keV':>14s}  {'Unc_keV':>12s}\n")
            for ch, e, off, unc in table:
                f.write(f"  {int(ch):>8d}  {e:>14.4f}  {off:>+14.5f}  {unc:>12.5f}\n")

    @classmethod
    def write_root(cls, out_path: str, matrix, run: CalibrationRun = None,
                    corrected_matrix=None):
        with uproot.recreate(out_path) as f:
            f["mat_en"] = matrix.to_numpy()
            if corrected_matrix is not None:
                f["mat_en_corrected"] = corrected_matrix.to_numpy()
            if run is not None:
                table = offsets_table(run)
                f["nonlinearity_points"] = {
                    "channel":     table[:, 0].astype(np.int32),
                    "energy":      table[:, 1],
                    "offset":      table[:, 2],
                    "uncertainty": table[:, 3],
                }

    @classmethod
    def write_all(cls, run: CalibrationRun, output_dir: str, matrix=None,
                   corrected_matrix=None, source_file: str = "",
                   prefix: str = "nonlinearity") -> list:
        os.makedirs(output_dir, exist_ok=True)
        paths = {
            "splines": os.path.join(output_dir, f"{prefix}_splines.json"),
            "log":     os.path.join(output_dir, f"{prefix}_log.txt"),
            "points":  os.path.join(output_dir, f"{prefix}_points.txt"),
        }
        cls.write_splines(run, paths["splines"], source_file)
        cls.write_log(run, paths["log"], source_file)
        cls.write_points(run, paths["points"], source_file)
        if matrix is not None:
            paths["matrix"] = os.path.join(output_dir, f"{prefix}_matrix.root")
            cls.write_root(paths["matrix"], matrix, run, corrected_matrix)
        for p in paths.values():
            logger.info("Wrote %s", p)
        return list(paths.values())
