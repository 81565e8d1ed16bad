import pytest

from nonlincal.energy_matrix import Histogram
from nonlincal.peak_fitter import BG_MODELS, fit
from synthetic_spectra import make_histogram


def test_fit_recovers_centroid_and_width():
    h = make_histogram([(105.0, 1.0e4)], background=5.0)
    r = fit(h, 104.0, 85.0, 125.0)
    assert r.success, r.reason
    assert r.centroid == pytest.approx(105.0, abs=0.05)
    assert r.sigma == pytest.approx(2.0, abs=0.1)
    assert r.uncertainty >= 0.0
    assert r.bg_params[0] == pytest.approx(5.0, abs=0.5)


@pytest.mark.parametrize("model", sorted(BG_MODELS))
def test_every_background_model_converges(model):
    h = make_histogram([(1864.89, 8.0e3)], background=10.0)
    r = fit(h, 1864.0, 1844.89, 1884.89, bg_model=model)
    assert r.success, r.reason
    assert r.centroid == pytest.approx(1864.89, abs=0.1)


def test_zero_counts_fails():
    h = make_histogram([(105.0, 1.0e4)])
    r = fit(h, 300.0, 290.0, 310.0)
    assert not r.success
    assert "No counts" in r.reason
    assert not r


def test_too_few_bins_fails():
    h = make_histogram([(105.0, 1.0e4)])
    r = fit(h, 105.0, 104.0, 107.0)
    assert not r.success


def test_centroid_below_floor_fails():
    h = make_histogram([(105.0, 1.0e4)])
    r = fit(h, 105.0, 95.0, 115.0, min_centroid=200.0)
    assert not r.success
    assert "floor" in r.reason


def test_unknown_background_model_fails():
    h = make_histogram([(105.0, 1.0e4)])
    r = fit(h, 105.0, 95.0, 115.0, bg_model="cubic")
    assert not r.success


def test_empty_histogram_fails():
    r = fit(Histogram.empty(0), 105.0, 95.0, 115.0)
    assert not r.success


def test_fwhm():
    h = make_histogram([(500.0, 1.0e4)], sigma=3.0)
    r = fit(h, 500.0, 480.0, 520.0)
    assert r.fwhm == pytest.approx(2.3548 * 3.0, rel=0.05)


def test_threaded_fits_leave_warning_filters_alone():
    import warnings
    from concurrent.futures import ThreadPoolExecutor

    h = make_histogram([(105.0, 1.0e4)], background=5.0)
    before = list(warnings.filters)
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: fit(h, 104.0, 85.0, 125.0), range(64)))
    assert all(r.success for r in results)
    assert warnings.filters == before
