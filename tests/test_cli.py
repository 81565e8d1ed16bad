import json

import numpy as np
import pytest
import uproot
import yaml

from synthetic_spectra import gaussian_counts

from nonlincal.cli import main


@pytest.fixture
def config_path(tmp_path):
    p = tmp_path / "cfg.yaml"
    p.write_text(yaml.safe_dump({
        "reference_energies": [300.0, 700.0],
        "reference_widths": [20.0, 20.0],
        "n_channels": 2,
        "energy_bins": 1000,
        "energy_max": 1000.0,
    }))
    return p


@pytest.fixture
def events_file(tmp_path):
    rng = np.random.default_rng(7)
    ch, en = [], []
    for channel, (a, b) in enumerate([(302.0, 697.0), (299.0, 703.5)]):
        e = np.concatenate([rng.normal(a, 2.0, 20000),
                            rng.normal(b, 2.0, 20000),
                            rng.uniform(0.0, 1000.0, 5000)])
        en.append(e)
        ch.append(np.full(e.size, channel, dtype=np.int32))
    path = tmp_path / "run.root"
    with uproot.recreate(path) as f:
        f["AnalysisTree"] = {"channel": np.concatenate(ch),
                             "energy": np.concatenate(en)}
    return path


def test_no_arguments_exits_1(capsys):
    with pytest.raises(SystemExit) as info:
        main([])
    assert info.value.code == 1
    assert "usage" in capsys.readouterr().err


def test_too_many_arguments_exits_1():
    with pytest.raises(SystemExit) as info:
        main(["a.root", "b.root"])
    assert info.value.code == 1


def test_unopenable_file(tmp_path):
    assert main([str(tmp_path / "missing.root"), "--no-plots"]) == 1


def test_not_a_root_file(tmp_path):
    bad = tmp_path / "bad.root"
    bad.write_text("not a root file")
    assert main([str(bad), "--no-plots"]) == 1


def test_mismatched_config(tmp_path, events_file):
    p = tmp_path / "bad.yaml"
    p.write_text(yaml.safe_dump({"reference_energies": [300.0, 700.0],
                                 "reference_widths": [20.0]}))
    out = tmp_path / "out"
    assert main([str(events_file), "-c", str(p), "-o", str(out)]) == 1
    assert not out.exists()


def test_missing_tree(tmp_path, events_file, config_path):
    rc = main([str(events_file), "-c", str(config_path), "--fragment",
               "-o", str(tmp_path / "out"), "--no-plots"])
    assert rc == 1


def test_end_to_end(tmp_path, events_file, config_path):
    out = tmp_path / "out"
    rc = main([str(events_file), "-c", str(config_path), "-o", str(out), "-j", "2"])
    assert rc == 0
    payload = json.loads((out / "nonlinearity_splines.json").read_text())
    splines = {s["channel"]: s for s in payload["splines"]}
    assert sorted(splines) == [0, 1]
    assert splines[0]["values"][1] == pytest.approx(-2.0, abs=0.2)
    assert splines[1]["values"][2] == pytest.approx(-3.5, abs=0.2)
    assert (out / "nonlinearity_summary.png").exists()
    with uproot.open(out / "nonlinearity_matrix.root") as f:
        names = [k.split(";")[0] for k in f.keys()]
        assert "mat_en_corrected" in names


def test_rerun_from_matrix(tmp_path, events_file, config_path):
    first = tmp_path / "first"
    assert main([str(events_file), "-c", str(config_path), "-o", str(first),
                 "--no-plots"]) == 0
    second = tmp_path / "second"
    rc = main([str(first / "nonlinearity_matrix.root"), "--matrix", "mat_en",
               "-c", str(config_path), "-o", str(second), "--no-plots"])
    assert rc == 0
    a = json.loads((first / "nonlinearity_splines.json").read_text())
    b = json.loads((second / "nonlinearity_splines.json").read_text())
    assert a["splines"] == b["splines"]


def test_channel_range(tmp_path, events_file, config_path):
    out = tmp_path / "out"
    rc = main([str(events_file), "-c", str(config_path), "-o", str(out),
               "--channels", "1", "1", "--no-plots"])
    assert rc == 0
    payload = json.loads((out / "nonlinearity_splines.json").read_text())
    assert [s["channel"] for s in payload["splines"]] == [1]


def test_matrix_energy_axis_sets_spline_boundaries(tmp_path, config_path):
    e_edges = np.linspace(0.0, 800.0, 801)
    counts = np.vstack([gaussian_counts(e_edges, [(302.0, 2.0e4), (697.0, 2.0e4)],
                                        background=2.0)] * 2)
    path = tmp_path / "matrix.root"
    with uproot.recreate(path) as f:
        f["mat_en"] = (counts, np.array([0.0, 1.0, 2.0]), e_edges)
    out = tmp_path / "out"
    rc = main([str(path), "--matrix", "mat_en", "-c", str(config_path),
               "-o", str(out), "--no-plots"])
    assert rc == 0
    payload = json.loads((out / "nonlinearity_splines.json").read_text())
    for spline in payload["splines"]:
        assert spline["knots"][0] == 0.0
        assert spline["knots"][-1] == 800.0
        assert spline["values"][-1] == 0.0
    assert payload["energy_range"] == [0.0, 800.0]
