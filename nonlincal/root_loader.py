"""
ROOTFileLoader
==============
Reads (channel, energy) hits from a ROOT file with uproot and fills an
EnergyMatrix.

Two input layouts:
  tree   — a TTree (AnalysisTree / FragmentTree) with a channel branch and
           an energy branch; jagged (per-event hit list) branches are
           flattened.
  th2    — an already filled channel × energy TH2 (e.g. `mat_en` written
           by a previous run).

Errors: the file cannot be opened -> UnopenableFile; the tree, branch or
histogram is missing -> MissingInputTree.
"""

from __future__ import annotations
import logging
from pathlib import Path
from typing import Optional

import numpy as np
import uproot

from nonlincal.energy_matrix import EnergyMatrix
from nonlincal.errors import MissingInputTree, UnopenableFile

logger = logging.getLogger(__name__)

STEP_SIZE = "50MB"


def _flatten(arr) -> np.ndarray:
    arr = np.asarray(arr)
    if arr.dtype == object:
        parts = [np.asarray(a).ravel() for a in arr]
        return np.concatenate(parts) if parts else np.array([])
    return arr.ravel()


class ROOTFileLoader:

    def __init__(self):
        self.filename: str = ""
        self._file = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # ------------------------------------------------------------------ #
    # File handling
    # ------------------------------------------------------------------ #

    def open(self, filename) -> dict:
        self.filename = str(filename)
        if not Path(filename).is_file():
            raise UnopenableFile(filename, "no such file")
        try:
            self._file = uproot.open(filename)
        except (OSError, ValueError) as exc:
            raise UnopenableFile(filename, str(exc)) from exc
        return self.describe()

    def describe(self) -> dict:
        """Trees and histograms in the file, keyed like the ROOT browser."""
        info = {"trees": [], "histograms": [], "filename": self.filename}
        for name, cls in self._file.classnames().items():
            clean = name.split(";")[0]
            if cls in ("TTree", "TNtuple"):
                tree = self._file[clean]
                info["trees"].append({
                    "name":     clean,
                    "branches": list(tree.keys()),
                    "entries":  int(tree.num_entries),
                })
            elif cls.startswith("TH1") or cls.startswith("TH2"):
                info["histograms"].append({"name": clean, "class": cls})
        return info

    def close(self):
        if self._file is not None:
            self._file.close()
            self._file = None

    def _get(self, name: str, kind: str):
        if self._file is None:
            raise RuntimeError("No file open.")
        names = {n.split(";")[0]: c for n, c in self._file.classnames().items()}
        if name not in names:
            raise MissingInputTree(self.filename, name, kind)
        return self._file[name]

    # ------------------------------------------------------------------ #
    # Events
    # ------------------------------------------------------------------ #

    def iter_events(self, tree_name: str, channel_branch: str,
                     energy_branch: str, max_entries: int = 0):
        """Yield (channels, energies) numpy chunks from a TTree."""
        tree = self._get(tree_name, "tree")
        available = set(tree.keys())
        for branch in (channel_branch, energy_branch):
            if branch not in available:
                raise MissingInputTree(self.filename, f"{tree_name}/{branch}",
                                       "branch")
        entry_kw = {"entry_stop": max_entries} if max_entries > 0 else {}
        for batch in tree.iterate([channel_branch, energy_branch],
                                   library="np", step_size=STEP_SIZE, **entry_kw):
            ch = _flatten(batch[channel_branch]).astype(np.int64)
            en = _flatten(batch[energy_branch]).astype(np.float64)
            yield ch, en

    def read_events(self, tree_name: str, channel_branch: str,
                     energy_branch: str, max_entries: int = 0
                     ) -> tuple[np.ndarray, np.ndarray]:
        ch_parts, en_parts = [], []
        for ch, en in self.iter_events(tree_name, channel_branch,
                                        energy_branch, max_entries):
            ch_parts.append(ch)
            en_parts.append(en)
        if not ch_parts:
            return np.array([], dtype=np.int64), np.array([], dtype=np.float64)
        ch_arr = np.concatenate(ch_parts)
        en_arr = np.concatenate(en_parts)
        logger.info("Read %d hits from %s:%s", len(ch_arr), self.filename, tree_name)
        return ch_arr, en_arr

    def load_matrix(self, config, max_entries: int = 0,
                     matrix: Optional[EnergyMatrix] = None) -> EnergyMatrix:
        """Fill (or create) an EnergyMatrix from the configured tree."""
        if matrix is None:
            matrix = EnergyMatrix.from_config(config)
        n_in = 0
        for ch, en in self.iter_events(config.tree_name, config.channel_branch,
                                        config.energy_branch, max_entries):
            n_in += matrix.fill(ch, en)
        logger.info("Energy matrix filled with %d hits", n_in)
        return matrix

    # ------------------------------------------------------------------ #
    # Pre-filled matrix
    # ------------------------------------------------------------------ #

    def load_th2(self, hist_name: str = "mat_en") -> EnergyMatrix:
        """EnergyMatrix from a channel (x) × energy (y) TH2 with unit-wide channel bins."""
        arrays = self._get(hist_name, "histogram").to_numpy()
        if len(arrays) != 3:
            raise ValueError(f"'{hist_name}' is not a 2-D histogram.")
        counts, x_edges, y_edges = arrays
        if not np.allclose(np.diff(x_edges), 1.0):
            raise ValueError(f"'{hist_name}' is not a channel × energy matrix "
                             "with unit-wide channel bins.")
        first = int(round(x_edges[0]))
        matrix = EnergyMatrix(counts.shape[0], counts.shape[1],
                              float(y_edges[0]), float(y_edges[-1]),
                              first_channel=first)
        matrix.counts[:] = counts
        return matrix
