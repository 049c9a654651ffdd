import math

import numpy as np
import pytest

from jetflow.core.errors import ConfigurationError
from jetflow.core.histogram import Histogram1D, Histogram2D
from jetflow.io import ArtifactTree, InputCollection
from jetflow.solvers.chi2 import HESSIAN_ACCURATE, Chi2FitOutcome
from jetflow.unfold import UnfoldingAlgorithm
from jetflow.workflows import JetFlowConfig, JetFlowUnfolder

FINE = np.arange(0.0, 71.0)
COARSE = [10.0, 20.0, 30.0, 40.0, 50.0, 60.0]


def _fine_spectrum(scale=1.0, name="spectrum"):
    # constant inside every 10 GeV block, power law across blocks
    centers = 0.5 * (FINE[:-1] + FINE[1:])
    block_centers = 10.0 * np.floor(centers / 10.0) + 5.0
    return Histogram1D(edges=FINE, contents=scale * 1e4 * block_centers ** -2.0, name=name)


def _identity(edges=FINE, name="detector"):
    n = len(edges) - 1
    return Histogram2D(x_edges=edges, y_edges=edges, contents=np.eye(n), name=name)


def _sharp_delta_pt(name="dpt"):
    contents = np.zeros(70)
    contents[0] = 1.0
    return Histogram1D(edges=FINE, contents=contents, name=name)


def _config(**kwargs):
    kwargs.setdefault("true_binning", COARSE)
    kwargs.setdefault("rec_binning", COARSE)
    kwargs.setdefault("smooth", False)
    return JetFlowConfig(**kwargs)


def _raw_unfolder(config, minimizer=None, out_scale=0.5, output=None):
    unfolder = JetFlowUnfolder(config, output=output, minimizer=minimizer)
    unfolder.set_raw_input(
        _identity(),
        _fine_spectrum(name="in"),
        _fine_spectrum(scale=out_scale, name="out"),
        _sharp_delta_pt("dpt_in"),
        _sharp_delta_pt("dpt_out"),
    )
    return unfolder


def _collection(with_rho=True, detector=None):
    angle_edges = np.linspace(0.0, np.pi, 5)
    row = 0.5 * _fine_spectrum().contents
    jets = Histogram2D(x_edges=angle_edges, y_edges=FINE, contents=np.tile(row, (4, 1)), name="jets")
    dpt_contents = np.zeros((4, 10))
    dpt_contents[:, 5] = 1.0
    dpt = Histogram2D(x_edges=angle_edges, y_edges=np.arange(-5.0, 6.0), contents=dpt_contents, name="dpt")
    objects = {
        "jet_pt_dphi_0": jets,
        "delta_pt_dphi_0": dpt,
        "detector_response": _identity() if detector is None else detector,
    }
    if with_rho:
        objects["rho_0"] = Histogram1D(edges=[0.0, 1.0], entries=100)
    return InputCollection(objects)


class PlaneFailingMinimizer:
    """Converges on the in-plane spectrum, never on the out-of-plane one."""

    def __init__(self):
        self.calls = 0

    def unfold(self, config, response, efficiency, measured, prior):
        self.calls += 1
        failing = measured.name.endswith("_out")
        return Chi2FitOutcome(
            status=1 if failing else 0,
            hessian_status=0 if failing else HESSIAN_ACCURATE,
            unfolded=measured.contents.copy(),
            covariance=None if failing else np.eye(config.n_true),
            chi2=0.0,
            penalty=0.0,
        )


class TestJetFlowConfig:
    def test_enum_values_from_strings(self):
        config = JetFlowConfig(algorithm="SVD", prior="chi2", true_binning=[20, 40])
        assert config.algorithm is UnfoldingAlgorithm.SVD
        assert config.true_binning == [20.0, 40.0]
        assert config.run_label == "svd_c0_kreg5_5_chi2"
        assert config.to_dict()["algorithm"] == "svd"

    def test_invalid_values(self):
        with pytest.raises(ConfigurationError):
            JetFlowConfig(algorithm="bayes")
        with pytest.raises(ConfigurationError):
            JetFlowConfig(event_plane_resolution=0.0)
        with pytest.raises(ConfigurationError):
            JetFlowConfig.from_dict({"betaIn": 0.3})

    def test_from_yaml_file(self, tmp_path):
        path = tmp_path / "run.yaml"
        path.write_text(
            "algorithm: svd\nsvd_reg_in: 4\ntrue_binning: [10, 20, 30]\nlabel: scan\n",
            encoding="utf-8",
        )
        config = JetFlowConfig.from_file(path)
        assert config.svd_reg_in == 4
        assert config.run_label == "scan"
        with pytest.raises(ConfigurationError):
            JetFlowConfig.from_file(tmp_path / "missing.yaml")

    def test_default_labels_follow_regularization(self):
        assert JetFlowConfig().run_label == "chi2_c0_beta0.1_0.1"
        assert JetFlowConfig(beta_in=0.2).run_label == "chi2_c0_beta0.2_0.1"
        assert JetFlowConfig(algorithm="svd", svd_reg_out=3).run_label == "svd_c0_kreg5_3_measured"
        assert JetFlowConfig(algorithm="none", centrality=2).run_label == "none_c2"


def test_raw_input_chi2_run_gives_ratio_and_v2():
    unfolder = _raw_unfolder(_config())
    output = unfolder.make()
    assert output.success
    assert output.converged
    np.testing.assert_allclose(output.ratio.y, np.full(5, 2.0), rtol=1e-3)
    expected_v2 = math.pi / (4.0 * 0.63) * (0.5 / 1.5)
    np.testing.assert_allclose(output.v2.y, np.full(5, expected_v2), rtol=1e-3)
    assert output.artifact("v2") is output.v2
    assert output.artifact("KinematicEfficiency", group="InPlane").contents == pytest.approx(np.ones(5))
    assert ("OutOfPlane", "UnfoldedSpectrum_out") in output.artifacts
    assert ("InPlane", "DetectorResponse") in output.artifacts
    record = output.artifact("UnfoldingConfiguration")
    assert record["converged_in"] and record["converged_out"]
    assert len(record) == 16


def test_one_failing_plane_skips_ratio_and_v2():
    minimizer = PlaneFailingMinimizer()
    unfolder = _raw_unfolder(_config(), minimizer=minimizer)
    output = unfolder.make()
    assert output.success
    assert output.converged_in
    assert not output.converged_out
    assert output.ratio is None and output.v2 is None
    assert (None, "v2") not in output.artifacts
    assert (None, "RatioInOutPlane") not in output.artifacts
    assert output.artifact("fitStatus_in", group="InPlane")["status"] == 0
    assert output.artifact("fitStatus_out", group="OutOfPlane")["attempts"] == 100
    assert ("OutOfPlane", "RefoldedSpectrum_out") in output.artifacts
    assert output.artifact("UnfoldingConfiguration")["converged_out"] is False
    assert unfolder.rms_ratio.entries == 0


def test_svd_analytic_run():
    config = _config(algorithm="svd", svd_toy=False, svd_reg_in=3, svd_reg_out=3)
    output = _raw_unfolder(config).make()
    assert output.converged
    np.testing.assert_allclose(output.ratio.y, np.full(5, 2.0), rtol=1e-3)
    assert ("InPlane", "SingularValuesOfAC") in output.artifacts


def test_test_mode_needs_no_detector_response():
    unfolder = JetFlowUnfolder(_config(test_mode=True, algorithm="none"))
    unfolder.set_raw_input(
        None,
        _fine_spectrum(),
        _fine_spectrum(),
        _sharp_delta_pt(),
        _sharp_delta_pt(),
    )
    output = unfolder.make()
    assert output.converged
    np.testing.assert_allclose(output.ratio.y, np.ones(5))


def test_raw_input_without_detector_response_is_rejected():
    unfolder = JetFlowUnfolder(_config())
    with pytest.raises(ConfigurationError):
        unfolder.set_raw_input(None, _fine_spectrum(), _fine_spectrum(), _sharp_delta_pt(), _sharp_delta_pt())


def test_collection_run_with_equal_planes(tmp_path):
    config = _config(delta_pt_low=0, delta_pt_high=70, save_full=True)
    path = tmp_path / "out.h5"
    with ArtifactTree(path) as tree:
        unfolder = JetFlowUnfolder(config, output=tree)
        unfolder.set_input_collection(_collection())
        output = unfolder.make()
        assert output.converged
        np.testing.assert_allclose(output.ratio.y, np.ones(5), rtol=1e-6)
        np.testing.assert_allclose(output.v2.y, np.zeros(5), atol=1e-9)
        # normalized to the 100 entries of the rho histogram
        assert unfolder.spectra.in_plane.contents[15] == pytest.approx(1e4 * 15.0 ** -2.0 / 100.0)
        assert ("InPlane", "OriginalResponseMatrix") in output.artifacts

        config.label = "second"
        assert unfolder.make().converged
        assert unfolder.rms_ratio.entries == 10
        unfolder.save_profiles()

    with ArtifactTree(path, mode="r") as tree:
        assert tree.labels() == ["Summary", "chi2_c0_beta0.1_0.1", "second"]
        assert ("chi2_c0_beta0.1_0.1", "InPlane", "UnfoldedSpectrum_in") in tree
        assert ("chi2_c0_beta0.1_0.1", None, "JetPtDeltaPhi") in tree
        ratio_profile = tree.read("Summary", "RMSRatio")
        np.testing.assert_allclose(ratio_profile.contents, np.ones(5), rtol=1e-6)


def test_missing_input_aborts_run():
    unfolder = JetFlowUnfolder(_config(delta_pt_low=0, delta_pt_high=70))
    unfolder.set_input_collection(_collection(with_rho=False))
    output = unfolder.make()
    assert not output.success
    assert "rho_0" in output.error


def test_incompatible_detector_response_aborts_run():
    unfolder = JetFlowUnfolder(_config(delta_pt_low=0, delta_pt_high=70))
    unfolder.set_input_collection(_collection(detector=_identity(np.arange(0.0, 61.0))))
    output = unfolder.make()
    assert not output.success
    assert output.error


def test_make_without_inputs_or_binning():
    assert not JetFlowUnfolder(_config()).make().success
    unfolder = JetFlowUnfolder(JetFlowConfig())
    unfolder.set_input_collection(_collection())
    assert not unfolder.make().success
    with pytest.raises(ConfigurationError):
        unfolder.save_profiles()


def test_existing_run_label_is_kept_unless_overwrite(tmp_path):
    path = tmp_path / "out.h5"
    config = _config(label="scan")
    with ArtifactTree(path) as tree:
        assert _raw_unfolder(config, output=tree).make().converged

        repeated = _raw_unfolder(config, minimizer=PlaneFailingMinimizer(), output=tree).make()
        assert not repeated.success
        assert "scan" in repeated.error
        assert ("scan", None, "v2") in tree
        assert tree.read("scan", "UnfoldingConfiguration")["converged_out"]

        config.overwrite = True
        replaced = _raw_unfolder(config, minimizer=PlaneFailingMinimizer(), output=tree).make()
        assert replaced.success
        assert ("scan", None, "v2") not in tree
        assert ("scan", None, "RatioInOutPlane") not in tree
        assert not tree.read("scan", "UnfoldingConfiguration")["converged_out"]


def test_svd_rank_beyond_binning_is_rejected():
    with pytest.raises(ConfigurationError, match="rank"):
        _raw_unfolder(_config(algorithm="svd", svd_reg_in=9))
    with pytest.raises(ConfigurationError, match="rank"):
        _raw_unfolder(_config(algorithm="svd_legacy", svd_reg_out=0))

    unfolder = _raw_unfolder(_config(algorithm="svd", svd_toy=False, svd_reg_in=3, svd_reg_out=3))
    unfolder.config.svd_reg_out = 6
    output = unfolder.make()
    assert not output.success
    assert "rank" in output.error


def test_loglog_penalty_needs_positive_true_centers():
    binning = [-20.0, 10.0, 20.0]
    with pytest.raises(ConfigurationError, match="positive"):
        _raw_unfolder(_config(true_binning=binning))
    with pytest.raises(ConfigurationError, match="positive"):
        _raw_unfolder(_config(algorithm="svd", prior="chi2", svd_reg_in=1, svd_reg_out=1, true_binning=binning))
    # unregularized fits and the measured SVD prior do not use the penalty
    _raw_unfolder(_config(true_binning=binning, beta_in=0.0, beta_out=0.0))
    _raw_unfolder(_config(algorithm="svd", svd_reg_in=1, svd_reg_out=1, true_binning=binning))


def test_non_positive_event_count_leaves_spectra_unnormalized(caplog):
    collection = _collection()
    collection.add(Histogram1D(edges=[0.0, 1.0], entries=0), name="rho_0")
    unfolder = JetFlowUnfolder(_config(delta_pt_low=0, delta_pt_high=70))
    with caplog.at_level("WARNING", logger="jetflow.workflows.jet_flow"):
        unfolder.prepare_for_unfolding(collection)
    assert "left unnormalized" in caplog.text
    assert "normalized to" not in caplog.text
    assert unfolder.spectra.in_plane.contents[15] == pytest.approx(1e4 * 15.0 ** -2.0)
