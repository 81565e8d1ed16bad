"""Command-line driver: ROOT file in, per-channel nonlinearity splines out."""

from __future__ import annotations
import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path

from nonlincal import __version__
from nonlincal.calibration_engine import NonlinearityCalibrator
from nonlincal.config import load_config
from nonlincal.errors import CalibrationError
from nonlincal.output_writer import OutputWriter
from nonlincal.root_loader import ROOTFileLoader

logger = logging.getLogger("nonlincal")


class _ArgumentParser(argparse.ArgumentParser):
    """argparse, but usage errors exit with status 1."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def parse_args(argv=None):
    p = _ArgumentParser(
        prog="nonlincal",
        description="Find per-channel energy nonlinearities from reference "
                    "peaks and build correction splines.")
    p.add_argument("input", help="ROOT file with an AnalysisTree or FragmentTree")
    p.add_argument("--config", "-c", default=None,
                   help="YAML configuration (default: built-in sample peaks)")
    p.add_argument("--output-dir", "-o", default="nonlinearity_output",
                   help="Directory for splines, logs and matrices "
                        "(default: nonlinearity_output)")
    p.add_argument("--prefix", default="nonlinearity",
                   help="File name prefix for outputs (default: nonlinearity)")
    p.add_argument("--fragment", action="store_true",
                   help="Read the FragmentTree instead of the AnalysisTree")
    p.add_argument("--matrix", metavar="TH2",
                   help="Use a pre-filled channel × energy TH2 from the file "
                        "instead of reading the tree")
    p.add_argument("--channels", nargs=2, type=int, metavar=("FIRST", "LAST"),
                   help="Only calibrate channels FIRST..LAST (inclusive)")
    p.add_argument("--max-entries", type=int, default=0,
                   help="Read at most this many tree entries (0 = all)")
    p.add_argument("--workers", "-j", type=int, default=None,
                   help="Number of worker threads (default: up to 8)")
    p.add_argument("--no-plots", action="store_true",
                   help="Skip the QC plots")
    p.add_argument("--debug", action="store_true", help="Verbose logging")
    p.add_argument("--version", action="version",
                   version=f"%(prog)s {__version__}")
    return p.parse_args(argv)


def setup_logging(level: str):
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level,
                        format="%(levelname)s:%(name)s:%(message)s")


def run(args) -> int:
    cfg = load_config(args.config,
                      fragment_file=True if args.fragment else None,
                      log_level="DEBUG" if args.debug else None)
    setup_logging(cfg.log_level)

    with ROOTFileLoader() as loader:
        loader.open(args.input)
        if args.matrix:
            matrix = loader.load_th2(args.matrix)
            # spline boundaries follow the TH2's energy axis
            cfg = replace(cfg, n_channels=matrix.n_channels,
                          energy_bins=matrix.n_bins,
                          energy_min=matrix.e_min, energy_max=matrix.e_max)
        else:
            matrix = loader.load_matrix(cfg, args.max_entries)

        if args.channels:
            matrix = matrix.restrict(*args.channels)

        logger.info("Energy matrix: %d channels, %d hits", matrix.n_channels,
                    int(matrix.n_entries))
        calibration = NonlinearityCalibrator(cfg).run(matrix,
                                                      workers=args.workers)

        corrected = None
        if not args.matrix:
            logger.info("Re-projecting energy matrix with corrected energies")
            corrector = calibration.corrector()
            corrected = matrix.copy()
            corrected.reset()
            for ch, en in loader.iter_events(cfg.tree_name, cfg.channel_branch,
                                             cfg.energy_branch, args.max_entries):
                corrected.fill(ch, corrector.correct_events(ch, en))

    out_dir = Path(args.output_dir)
    OutputWriter.write_all(calibration, str(out_dir), matrix=matrix,
                           corrected_matrix=corrected,
                           source_file=str(args.input), prefix=args.prefix)

    if not args.no_plots:
        from nonlincal.plotting import plot_summary
        path = plot_summary(calibration, str(out_dir / f"{args.prefix}_summary.png"))
        if path:
            logger.info("Wrote %s", path)
    return 0


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        return run(args)
    except (CalibrationError, FileNotFoundError, ValueError) as exc:
        logging.basicConfig(format="%(levelname)s:%(name)s:%(message)s")
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
