#!/usr/bin/env python3
"""
nonlincal — per-channel energy nonlinearity calibration

Usage:  python3 main.py <analysis or fragment tree file> [options]
"""

import sys

from nonlincal.cli import main


if __name__ == "__main__":
    sys.exit(main())
