import json

import numpy as np

from jetflow.cli.app import build_parser, main
from jetflow.core.histogram import Histogram1D, Histogram2D
from jetflow.io import ArtifactTree, InputCollection

FINE = np.arange(0.0, 71.0)


def _write_inputs(path):
    centers = 0.5 * (FINE[:-1] + FINE[1:])
    block_centers = 10.0 * np.floor(centers / 10.0) + 5.0
    row = 1e4 * block_centers ** -2.0
    angle_edges = np.linspace(0.0, np.pi, 5)
    dpt = np.zeros((4, 10))
    dpt[:, 5] = 1.0
    InputCollection(
        {
            "jet_pt_dphi_0": Histogram2D(x_edges=angle_edges, y_edges=FINE, contents=np.tile(row, (4, 1))),
            "delta_pt_dphi_0": Histogram2D(x_edges=angle_edges, y_edges=np.arange(-5.0, 6.0), contents=dpt),
            "rho_0": Histogram1D(edges=[0.0, 1.0], entries=10),
            "detector_response": Histogram2D(x_edges=FINE, y_edges=FINE, contents=np.eye(70)),
        }
    ).save(path)


def _write_config(path, **overrides):
    config = {
        "algorithm": "none",
        "true_binning": [10, 20, 30, 40, 50, 60],
        "rec_binning": [10, 20, 30, 40, 50, 60],
        "smooth": False,
        "delta_pt_low": 0,
        "delta_pt_high": 70,
    }
    config.update(overrides)
    path.write_text(json.dumps(config), encoding="utf-8")


def test_parser_defaults():
    args = build_parser().parse_args(["unfold", "--config", "c.json", "--input", "in.h5"])
    assert str(args.output) == "unfolded_spectra.h5"
    assert not args.save_profiles


def test_unfold_and_inspect(tmp_path, capsys):
    inputs = tmp_path / "inputs.h5"
    config = tmp_path / "config.json"
    output = tmp_path / "out.h5"
    _write_inputs(inputs)
    _write_config(config)

    code = main([
        "unfold", "--config", str(config), "--input", str(inputs),
        "--output", str(output), "--label", "cli_run", "--save-profiles",
    ])
    assert code == 0
    assert "in plane converged=True" in capsys.readouterr().out
    with ArtifactTree(output, mode="r") as tree:
        assert ("cli_run", "InPlane", "UnfoldedSpectrum_in") in tree
        assert ("Summary", None, "RMSRatio") in tree

    assert main(["inspect", str(output)]) == 0
    listing = capsys.readouterr().out
    assert "cli_run/v2  [PointSeries]" in listing
    assert "cli_run/UnfoldingConfiguration  [record]" in listing


def test_unfold_reports_configuration_errors(tmp_path, capsys):
    inputs = tmp_path / "inputs.h5"
    config = tmp_path / "config.json"
    _write_inputs(inputs)
    _write_config(config, unknown_key=1)
    code = main(["unfold", "--config", str(config), "--input", str(inputs), "--output", str(tmp_path / "o.h5")])
    assert code == 2
    assert "Unknown configuration keys" in capsys.readouterr().err


def test_unfold_reports_failed_run(tmp_path, capsys):
    inputs = tmp_path / "inputs.h5"
    config = tmp_path / "config.json"
    _write_inputs(inputs)
    _write_config(config, centrality=3)
    code = main(["unfold", "--config", str(config), "--input", str(inputs), "--output", str(tmp_path / "o.h5")])
    assert code == 1
    assert "failed" in capsys.readouterr().err


def test_unfold_keeps_existing_run_unless_overwrite(tmp_path, capsys):
    inputs = tmp_path / "inputs.h5"
    config = tmp_path / "config.json"
    output = tmp_path / "out.h5"
    _write_inputs(inputs)
    _write_config(config)
    argv = ["unfold", "--config", str(config), "--input", str(inputs), "--output", str(output)]

    assert main(argv) == 0
    assert main(argv) == 1
    assert "already in" in capsys.readouterr().err
    assert main(argv + ["--overwrite"]) == 0
    with ArtifactTree(output, mode="r") as tree:
        assert tree.labels() == ["none_c0"]
