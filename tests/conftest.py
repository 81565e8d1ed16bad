import sys
from pathlib import Path

import pytest

# Add repo root and tests/ to path
ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from synthetic_spectra import make_matrix


@pytest.fixture
def two_peak_matrix():
    """Single channel with peaks at 105 and 198 keV, no noise."""
    return make_matrix([[(105.0, 1.0e4), (198.0, 1.0e4)]])
