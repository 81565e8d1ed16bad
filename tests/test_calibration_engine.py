import numpy as np
import pytest

from nonlincal.calibration_engine import (
    ChannelCalibration, ChannelState, NonlinearityCalibrator, calibrate,
    offsets_table)
from nonlincal.config import CalibrationConfig
from nonlincal.energy_matrix import EnergyMatrix
from nonlincal.errors import ConfigurationMismatch, PeakFailure
from synthetic_spectra import make_matrix

SAMPLE = CalibrationConfig().reference_energies


def _shifted(energies, channel):
    """Measured position of each reference line for a synthetic channel."""
    return [e + 1.5 * np.sin(e / 700.0 + channel) + 0.2 * channel for e in energies]


@pytest.fixture
def array_matrix():
    return make_matrix([[(m, 4.0e3) for m in _shifted(SAMPLE, ch)]
                        for ch in range(4)], background=3.0)


def test_two_peak_example(two_peak_matrix):
    run = calibrate(two_peak_matrix, [100.0, 200.0], [10.0, 10.0], workers=1)
    calib = run[0]
    assert calib.state is ChannelState.READY
    expected = [(0.0, 0.0), (100.0, -5.0), (200.0, 2.0), (5000.0, 0.0)]
    for (x, y), (ex, ey) in zip(calib.points.pairs(), expected):
        assert x == ex
        assert y == pytest.approx(ey, abs=0.05)

    corrector = run.corrector()
    assert corrector.correct(0, 100.0) == pytest.approx(95.0, abs=0.05)
    assert corrector.correct(0, 105.0) == pytest.approx(100.0, abs=0.5)


def test_boundaries_zero_for_every_channel(array_matrix):
    run = NonlinearityCalibrator().run(array_matrix, workers=2)
    assert len(run) == 4
    for ch, spline in run.splines.items():
        assert spline.evaluate(0.0) == pytest.approx(0.0, abs=1e-12)
        assert spline.evaluate(5000.0) == pytest.approx(0.0, abs=1e-12)


def test_spline_matches_offsets_at_reference_energies(array_matrix):
    run = NonlinearityCalibrator().run(array_matrix, workers=1)
    for calib in run:
        assert len(calib.valid_peaks) == len(SAMPLE)
        for p in calib.valid_peaks:
            assert calib.spline.evaluate(p.expected_energy) == pytest.approx(
                p.expected_energy - p.measured_centroid, abs=1e-9)
        truth = np.array(SAMPLE) - np.array(_shifted(SAMPLE, calib.channel_id))
        got = [p.offset for p in calib.valid_peaks]
        assert np.allclose(got, truth, atol=0.05)


def test_missing_peak_is_dropped(two_peak_matrix):
    run = calibrate(two_peak_matrix, [100.0, 200.0, 300.0], [10.0, 10.0, 10.0],
                    workers=1)
    calib = run[0]
    assert calib.points.n_points == 4
    failed = calib.failed_peaks
    assert len(failed) == 1
    assert failed[0].expected_energy == 300.0
    assert failed[0].failure is PeakFailure.NOT_FOUND
    assert calib.state is ChannelState.READY
    assert calib.spline.evaluate(5000.0) == pytest.approx(0.0, abs=1e-12)


def test_channel_without_peaks_gets_zero_spline():
    matrix = EnergyMatrix(2, 5000, 0.0, 5000.0)
    run = NonlinearityCalibrator().run(matrix, workers=1)
    assert run.degenerate_channels() == [0, 1]
    for calib in run:
        assert calib.is_ready
        assert calib.points.n_points == 2
        assert np.allclose(calib.spline.evaluate(np.linspace(0, 5000, 11)), 0.0)


def test_channel_outside_matrix_still_ready(two_peak_matrix):
    cal = NonlinearityCalibrator(CalibrationConfig(
        reference_energies=(100.0, 200.0), reference_widths=(10.0, 10.0)))
    calib = cal.calibrate_channel(two_peak_matrix, 9)
    assert calib.histogram.is_empty
    assert calib.is_ready
    assert calib.spline.is_degenerate


def test_mismatched_reference_lists_abort_before_any_channel(monkeypatch,
                                                             two_peak_matrix):
    projected = []
    monkeypatch.setattr(EnergyMatrix, "project",
                        lambda self, ch: projected.append(ch))
    with pytest.raises(ConfigurationMismatch):
        calibrate(two_peak_matrix, [100, 200, 300, 400, 500], [10, 10, 10, 10])
    assert projected == []


def test_repeat_runs_are_identical(array_matrix):
    xs = np.linspace(-50.0, 5050.0, 257)
    a = NonlinearityCalibrator().run(array_matrix, workers=4)
    b = NonlinearityCalibrator().run(array_matrix, workers=1)
    for ch in a.channels:
        assert np.array_equal(a[ch].spline.evaluate(xs), b[ch].spline.evaluate(xs))


def test_progress_callback_and_channel_subset(array_matrix):
    seen = []
    run = NonlinearityCalibrator().run(
        array_matrix, channels=[1, 3], workers=2,
        progress_callback=lambda done, total: seen.append((done, total)))
    assert sorted(run.channels) == [1, 3]
    assert sorted(seen) == [(1, 2), (2, 2)]


def test_state_machine_is_forward_only():
    calib = ChannelCalibration(0)
    calib.advance(ChannelState.PROJECTED)
    with pytest.raises(RuntimeError):
        calib.advance(ChannelState.READY)
    with pytest.raises(RuntimeError):
        calib.advance(ChannelState.UNPROJECTED)


def test_offsets_table(two_peak_matrix):
    run = calibrate(two_peak_matrix, [100.0, 200.0], [10.0, 10.0], workers=1)
    table = offsets_table(run)
    assert table.shape == (2, 4)
    assert np.allclose(table[:, 2], [-5.0, 2.0], atol=0.05)
