"""
Jet-flow unfolding workflow.

Drives one unfolding run per configuration:

1. extract in-plane and out-of-plane jet spectra and delta-pt
   distributions from the input collection (or take raw inputs)
2. build the full response per plane from the delta-pt response and the
   detector response, rebin it and derive the kinematic efficiency
3. unfold both planes with the configured strategy
4. when both planes converged, derive the in/out yield ratio and v2

Every artifact is recorded under (group, name) in the RunOutput and, when
an ArtifactTree is attached, written under the run label.

Examples
--------
>>> config = JetFlowConfig(true_binning=[20, 30, 40, 60, 80, 100],
...                        rec_binning=[20, 30, 40, 60, 80, 100])
>>> unfolder = JetFlowUnfolder(config)
>>> unfolder.set_input_collection(InputCollection.load("jets.h5"))
>>> output = unfolder.make()
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np

from jetflow.analysis.flow import PointSeries, RunningProfile, flow_coefficient, ratio
from jetflow.core.binning import (
    BinningScheme,
    normalize_columns,
    rebin_1d,
    rebin_2d,
)
from jetflow.core.errors import ConfigurationError, DimensionMismatchError
from jetflow.core.histogram import Histogram1D, Histogram2D
from jetflow.core.response import (
    build_delta_pt_response,
    compose_responses,
    kinematic_efficiency,
    unity_response,
)
from jetflow.core.spectra import (
    PowerLaw,
    SpectrumPair,
    extract_plane_spectra,
    normalize_to_event_count,
    scale_to_event_count,
)
from jetflow.io.artifacts import read_artifact
from jetflow.io.hdf5 import ArtifactKey, ArtifactTree, InputCollection
from jetflow.solvers.svd import ErrorTreatment
from jetflow.unfold import (
    PriorChoice,
    SmoothingSettings,
    UnfoldingAlgorithm,
    UnfoldingProblem,
    UnfoldingResult,
    UnfoldingSettings,
    get_unfolder,
)

logger = logging.getLogger(__name__)

PLANES: Tuple[Tuple[str, str], ...] = (("in", "InPlane"), ("out", "OutOfPlane"))


# =============================================================================
# Configuration
# =============================================================================

@dataclass
class JetFlowConfig:
    """
    Configuration of an unfolding run.

    Attributes
    ----------
    true_binning, rec_binning : list of float
        Edges of the unfolded (true) and measured (rec) spectra
    true_prior_binning, rec_prior_binning : list of float, optional
        Separate binning for a chi-square prior of the SVD strategies
    algorithm : UnfoldingAlgorithm
        Strategy used for both planes
    prior : PriorChoice
        Prior of the SVD strategies
    beta_in, beta_out : float
        Chi-square regularization strength per plane
    svd_reg_in, svd_reg_out : int
        SVD regularization rank per plane
    svd_toy : bool
        Toy (True) or analytic (False) SVD covariance
    centrality : int
        Centrality bin, selects the input histograms
    event_count : float
        Events for normalization; negative takes the rho histogram entries
    event_plane_resolution : float
        Resolution correction R of the v2 calculation
    jet_radius : float
        Stored in the configuration summary only
    test_mode : bool
        Replace the full response by a unity response
    use_detector_response : bool
        Fold the detector response into the delta-pt response
    label : str, optional
        Output label; built from the algorithm and regularization if unset
    overwrite : bool
        Replace an existing run with the same label in the output tree
    """

    true_binning: Optional[List[float]] = None
    rec_binning: Optional[List[float]] = None
    true_prior_binning: Optional[List[float]] = None
    rec_prior_binning: Optional[List[float]] = None
    algorithm: UnfoldingAlgorithm = UnfoldingAlgorithm.CHI2
    prior: PriorChoice = PriorChoice.MEASURED
    beta_in: float = 0.1
    beta_out: float = 0.1
    svd_reg_in: int = 5
    svd_reg_out: int = 5
    svd_toy: bool = True
    n_toys: int = 1000
    seed: Optional[int] = None
    centrality: int = 0
    event_count: float = -1
    jet_radius: float = 0.3
    normalize: bool = True
    smooth: bool = True
    fit_min: float = 60.0
    fit_max: float = 105.0
    fit_start: float = 75.0
    train_power: bool = True
    test_mode: bool = False
    no_dphi: bool = False
    event_plane_resolution: float = 0.63
    use_detector_response: bool = True
    avoid_rounding_error: bool = False
    save_full: bool = False
    delta_pt_low: int = -50
    delta_pt_high: int = 250
    label: Optional[str] = None
    overwrite: bool = False

    def __post_init__(self):
        try:
            if isinstance(self.algorithm, str):
                self.algorithm = UnfoldingAlgorithm(self.algorithm.lower())
            if isinstance(self.prior, str):
                self.prior = PriorChoice(self.prior.lower())
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        for attr in ("true_binning", "rec_binning", "true_prior_binning", "rec_prior_binning"):
            value = getattr(self, attr)
            if value is not None:
                setattr(self, attr, [float(v) for v in value])
        if self.event_plane_resolution <= 0:
            raise ConfigurationError("Event-plane resolution must be positive.")
        if self.delta_pt_high <= self.delta_pt_low:
            raise ConfigurationError("Delta-pt grid upper edge must exceed the lower edge.")

    @property
    def run_label(self) -> str:
        """Explicit label, or one built from the algorithm and its regularization."""
        if self.label:
            return self.label
        base = f"{self.algorithm.value}_c{self.centrality}"
        if self.algorithm is UnfoldingAlgorithm.CHI2:
            return f"{base}_beta{self.beta_in:g}_{self.beta_out:g}"
        if self.algorithm in (UnfoldingAlgorithm.SVD, UnfoldingAlgorithm.SVD_LEGACY):
            return f"{base}_kreg{self.svd_reg_in}_{self.svd_reg_out}_{self.prior.value}"
        return base

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JetFlowConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**data)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "JetFlowConfig":
        """Load a configuration from a JSON or YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}")
        return cls.from_dict(read_artifact(path))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Enum):
                data[key] = value.value
        return data


# =============================================================================
# Run output
# =============================================================================

@dataclass
class RunOutput:
    """Outcome of one :meth:`JetFlowUnfolder.make` call."""

    label: str
    success: bool
    converged_in: bool = False
    converged_out: bool = False
    results: Dict[str, UnfoldingResult] = field(default_factory=dict)
    ratio: Optional[PointSeries] = None
    v2: Optional[PointSeries] = None
    artifacts: Dict[ArtifactKey, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def converged(self) -> bool:
        return self.converged_in and self.converged_out

    def artifact(self, name: str, group: Optional[str] = None) -> Any:
        return self.artifacts[(group, name)]


# =============================================================================
# Orchestrator
# =============================================================================

class JetFlowUnfolder:
    """
    Unfold in-plane and out-of-plane jet spectra and derive v2.

    Inputs come either from an InputCollection (``prepare_for_unfolding``)
    or directly from ``set_raw_input``. Inputs from a collection are
    extracted again at every ``make``, so ``make`` can be called repeatedly
    with a modified ``config``; the running profiles collect the results of
    all runs in which both planes converged.
    """

    def __init__(
        self,
        config: Optional[JetFlowConfig] = None,
        output: Optional[ArtifactTree] = None,
        minimizer=None,
    ):
        self.config = config or JetFlowConfig()
        self.output = output
        self.minimizer = minimizer
        self.power = PowerLaw(train=self.config.train_power)

        self.inputs: Optional[InputCollection] = None
        self.detector_response: Optional[Histogram2D] = None
        self.jet_pt_dphi: Optional[Histogram2D] = None
        self.delta_pt_dphi: Optional[Histogram2D] = None
        self.spectra: Optional[SpectrumPair] = None
        self.delta_pt_distributions: Optional[SpectrumPair] = None
        self.delta_pt_responses: Dict[str, Histogram2D] = {}
        self._raw_input = False

        self.rms_spectrum_in: Optional[RunningProfile] = None
        self.rms_spectrum_out: Optional[RunningProfile] = None
        self.rms_ratio: Optional[RunningProfile] = None

    # -- inputs ----------------------------------------------------------

    def set_input_collection(self, inputs: InputCollection) -> None:
        self.inputs = inputs
        self._raw_input = False

    def set_detector_response(self, response: Histogram2D) -> None:
        self.detector_response = response

    def _binnings(self) -> Tuple[BinningScheme, BinningScheme]:
        config = self.config
        if config.true_binning is None or config.rec_binning is None:
            raise ConfigurationError("No true or rec binning set")
        try:
            true_binning, rec_binning = BinningScheme(config.true_binning), BinningScheme(config.rec_binning)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid binning: {exc}") from exc
        self._check_regularization(true_binning, rec_binning)
        return true_binning, rec_binning

    def _check_regularization(self, true_binning: BinningScheme, rec_binning: BinningScheme) -> None:
        config = self.config
        svd = config.algorithm in (UnfoldingAlgorithm.SVD, UnfoldingAlgorithm.SVD_LEGACY)
        if svd:
            rank = min(true_binning.n_bins, rec_binning.n_bins)
            for plane, kreg in (("in-plane", config.svd_reg_in), ("out-of-plane", config.svd_reg_out)):
                if not 1 <= kreg <= rank:
                    raise ConfigurationError(
                        f"{plane} SVD regularization {kreg} outside the rank range 1..{rank}"
                    )
        loglog = config.algorithm is UnfoldingAlgorithm.CHI2 or (svd and config.prior is PriorChoice.CHI2)
        if not loglog or max(config.beta_in, config.beta_out) <= 0:
            return
        binnings = [config.true_binning]
        if svd and config.true_prior_binning is not None and config.rec_prior_binning is not None:
            binnings.append(config.true_prior_binning)
        for binning in binnings:
            edges = np.asarray(binning, dtype=float)
            if np.any(0.5 * (edges[:-1] + edges[1:]) <= 0):
                raise ConfigurationError("Log-log regularization needs positive true bin centers")

    def _init_profiles(self) -> None:
        if self.rms_spectrum_in is not None:
            return
        edges = np.asarray(self.config.true_binning, dtype=float)
        self.rms_spectrum_in = RunningProfile(edges, name="RMSSpectrumIn")
        self.rms_spectrum_out = RunningProfile(edges, name="RMSSpectrumOut")
        self.rms_ratio = RunningProfile(edges, name="RMSRatio")

    def _needs_detector_response(self) -> bool:
        return self.config.use_detector_response and not self.config.test_mode

    def prepare_for_unfolding(self, inputs: Optional[InputCollection] = None) -> None:
        """
        Extract spectra and delta-pt responses from the input collection.

        Looks up ``jet_pt_dphi_<c>``, ``delta_pt_dphi_<c>`` and ``rho_<c>``
        for centrality bin c, and ``detector_response`` unless a detector
        response was set explicitly.

        Raises
        ------
        ConfigurationError
            If an input, the detector response or the binning is missing.
        """
        if inputs is not None:
            self.set_input_collection(inputs)
        if self.inputs is None:
            raise ConfigurationError("No input collection set; use set_input_collection() or set_raw_input()")
        self._binnings()
        config = self.config
        c = config.centrality

        if self.detector_response is None and self._needs_detector_response():
            self.detector_response = self.inputs.get("detector_response")
        self._init_profiles()
        if not config.train_power:
            self.power.reset()

        self.jet_pt_dphi = self.inputs.get(f"jet_pt_dphi_{c}").copy()
        spectra = extract_plane_spectra(self.jet_pt_dphi, no_dphi=config.no_dphi)
        if config.normalize:
            rho = self.inputs.get(f"rho_{c}")
            n_events = rho.entries if config.event_count < 0 else config.event_count
            if n_events > 0:
                spectra = spectra.map(lambda s: normalize_to_event_count(s, n_events))
                logger.info("Spectra normalized to %s events", n_events)
            else:
                logger.warning("Event count %s is not positive, spectra left unnormalized", n_events)
        self.spectra = spectra

        self.delta_pt_dphi = self.inputs.get(f"delta_pt_dphi_{c}").copy()
        self.delta_pt_distributions = extract_plane_spectra(self.delta_pt_dphi, no_dphi=config.no_dphi)
        grid = np.arange(config.delta_pt_low, config.delta_pt_high + 1, dtype=float)
        self.delta_pt_responses = {
            "in": build_delta_pt_response(
                self.delta_pt_distributions.in_plane,
                edges=grid,
                avoid_rounding_error=config.avoid_rounding_error,
                name=f"dpt_response_INPLANE_{c}",
            ),
            "out": build_delta_pt_response(
                self.delta_pt_distributions.out_of_plane,
                edges=grid,
                avoid_rounding_error=config.avoid_rounding_error,
                name=f"dpt_response_OUTOFPLANE_{c}",
            ),
        }
        logger.info("Prepared inputs for centrality bin %d", c)

    def set_raw_input(
        self,
        detector_response: Optional[Histogram2D],
        spectrum_in: Histogram1D,
        spectrum_out: Histogram1D,
        delta_pt_in: Histogram1D,
        delta_pt_out: Histogram1D,
        event_count: float = 0,
    ) -> None:
        """
        Use directly supplied spectra and delta-pt distributions.

        Spectra are scaled by 1 / ``event_count`` when it is positive. The
        delta-pt responses are built on the distributions' own binning, which
        must match the true axis of the detector response.
        """
        self._binnings()
        config = self.config
        c = config.centrality
        self.detector_response = detector_response
        if self.detector_response is None and self._needs_detector_response():
            raise ConfigurationError("Detector response not provided")
        self._init_profiles()

        spectra = SpectrumPair(spectrum_in.copy(), spectrum_out.copy())
        if event_count > 0:
            spectra = spectra.map(lambda s: scale_to_event_count(s, event_count))
        self.spectra = spectra
        self.jet_pt_dphi = None
        self.delta_pt_dphi = None
        self.delta_pt_distributions = SpectrumPair(delta_pt_in.copy(), delta_pt_out.copy())
        self.delta_pt_responses = {
            "in": build_delta_pt_response(
                delta_pt_in,
                avoid_rounding_error=config.avoid_rounding_error,
                name=f"dpt_response_INPLANE_{c}",
            ),
            "out": build_delta_pt_response(
                delta_pt_out,
                avoid_rounding_error=config.avoid_rounding_error,
                name=f"dpt_response_OUTOFPLANE_{c}",
            ),
        }
        self._raw_input = True

    # -- run -------------------------------------------------------------

    def plane_settings(self, plane: str) -> UnfoldingSettings:
        config = self.config
        return UnfoldingSettings(
            beta=config.beta_in if plane == "in" else config.beta_out,
            kreg=config.svd_reg_in if plane == "in" else config.svd_reg_out,
            prior=config.prior,
            error_treatment=ErrorTreatment.TOY if config.svd_toy else ErrorTreatment.ANALYTIC,
            n_toys=config.n_toys,
            seed=config.seed,
            smoothing=SmoothingSettings(
                enabled=config.smooth,
                function=self.power,
                fit_min=config.fit_min,
                fit_max=config.fit_max,
                fit_start=config.fit_start,
            ),
        )

    def full_response(self, plane: str, detector: Optional[Histogram2D]) -> Histogram2D:
        """Normalized (unbinned) response of one plane."""
        true_binning, rec_binning = self._binnings()
        if self.config.test_mode:
            full = unity_response(true_binning, rec_binning, name=f"unityResponse_{plane}")
        elif self.config.use_detector_response:
            full = compose_responses(
                self.delta_pt_responses[plane], detector, name=f"ResponseMatrix_{plane}"
            )
        else:
            full = self.delta_pt_responses[plane].copy(name=f"ResponseMatrix_{plane}")
        return normalize_columns(full)

    def _prior_problem(self, plane: str, spectrum: Histogram1D, full: Histogram2D) -> Optional[UnfoldingProblem]:
        config = self.config
        if config.true_prior_binning is None or config.rec_prior_binning is None:
            return None
        response = rebin_2d(full, config.true_prior_binning, config.rec_prior_binning, name=f"ResponseMatrixPrior_{plane}")
        return UnfoldingProblem(
            measured=rebin_1d(spectrum, config.rec_prior_binning, name=f"resized_chi2_{plane}"),
            response=response,
            efficiency=kinematic_efficiency(response, name=f"KinematicEfficiencyPrior_{plane}"),
            prior=rebin_1d(spectrum, config.true_prior_binning, name=f"template_chi2_{plane}"),
            plane=plane,
        )

    def _unfold_plane(
        self,
        plane: str,
        group: str,
        spectrum: Histogram1D,
        detector: Optional[Histogram2D],
        artifacts: Dict[ArtifactKey, Any],
    ) -> UnfoldingResult:
        true_binning, rec_binning = self._binnings()
        measured = rebin_1d(spectrum, rec_binning, name=f"resized_{plane}")
        template = rebin_1d(spectrum, true_binning, name=f"template_{plane}")
        full = self.full_response(plane, detector)
        response = rebin_2d(full, true_binning, rec_binning, name=f"ResponseMatrix{group}")
        efficiency = kinematic_efficiency(response, name=f"KinematicEfficiency{group}")

        problem = UnfoldingProblem(
            measured=measured,
            response=response,
            efficiency=efficiency,
            prior=template,
            plane=plane,
            prior_problem=self._prior_problem(plane, spectrum, full),
        )
        unfolder = get_unfolder(self.config.algorithm, self.plane_settings(plane), minimizer=self.minimizer)
        result = unfolder.unfold(problem)
        logger.info(
            "Plane %s unfolded with %s, converged=%s", plane, self.config.algorithm.value, result.converged
        )

        self._record_result(result, group, artifacts)
        artifacts[(group, "ResponseMatrix")] = response
        artifacts[(group, "KinematicEfficiency")] = efficiency
        if detector is not None:
            artifacts[(group, "DetectorResponse")] = detector
        if self.config.save_full:
            artifacts[(group, "OriginalJetSpectrum")] = spectrum
            artifacts[(group, "OriginalDeltaPt")] = (
                self.delta_pt_distributions.in_plane if plane == "in"
                else self.delta_pt_distributions.out_of_plane
            )
            artifacts[(group, "OriginalDeltaPtMatrix")] = self.delta_pt_responses[plane]
            artifacts[(group, "OriginalResponseMatrix")] = full
        return result

    @staticmethod
    def _record_result(result: UnfoldingResult, group: str, artifacts: Dict[ArtifactKey, Any]) -> None:
        for name, obj in result.diagnostics.items():
            artifacts[(group, name)] = obj
        for name, obj in (
            (f"UnfoldedSpectrum_{result.plane}", result.unfolded),
            (f"RefoldedSpectrum_{result.plane}", result.refolded),
            (f"RatioRefoldedMeasured_{result.plane}", result.refolded_ratio),
            (f"CovarianceMatrix_{result.plane}", result.covariance),
        ):
            if obj is not None:
                artifacts[(group, name)] = obj
        if result.prior_result is not None:
            prior_group = f"Prior_{result.plane}"
            for name, obj in result.prior_result.diagnostics.items():
                artifacts[(prior_group, name)] = obj
            if result.prior_result.unfolded is not None:
                artifacts[(prior_group, "UnfoldedSpectrum")] = result.prior_result.unfolded

    def make(self) -> RunOutput:
        """
        Run the unfolding of both planes with the current configuration.

        Missing inputs and incompatible responses abort the run: the error is
        logged and a RunOutput with ``success=False`` is returned. So does a
        label already present in the output tree unless ``overwrite`` is set.
        """
        label = self.config.run_label
        overwrite = self.config.overwrite
        try:
            if self.output is not None and not overwrite and self.output.has_run(label):
                raise ConfigurationError(f"Run {label!r} already in {self.output.path}")
            if not self._raw_input:
                self.prepare_for_unfolding()
            output = self._make(label)
            if self.output is not None:
                self.output.write_many(label, output.artifacts, overwrite=overwrite)
        except (ConfigurationError, DimensionMismatchError) as exc:
            logger.error("Unfolding run %s aborted: %s", label, exc)
            return RunOutput(label=label, success=False, error=str(exc))
        return output

    def _make(self, label: str) -> RunOutput:
        config = self.config
        detector = None
        if self.detector_response is not None:
            detector = normalize_columns(self.detector_response.copy(name="DetectorResponse"))

        artifacts: Dict[ArtifactKey, Any] = {}
        results: Dict[str, UnfoldingResult] = {}
        spectra = {"in": self.spectra.in_plane, "out": self.spectra.out_of_plane}
        for plane, group in PLANES:
            results[plane] = self._unfold_plane(plane, group, spectra[plane], detector, artifacts)

        result_in, result_out = results["in"], results["out"]
        converged_in = result_in.converged and result_in.unfolded is not None
        converged_out = result_out.converged and result_out.unfolded is not None
        in_out_ratio = v2 = None
        if converged_in and converged_out:
            unfolded_in, unfolded_out = result_in.unfolded, result_out.unfolded
            in_out_ratio = ratio(unfolded_in, unfolded_out, name="RatioInOutPlane")
            v2 = flow_coefficient(unfolded_in, unfolded_out, config.event_plane_resolution, name="v2")
            artifacts[(None, "RatioInOutPlane")] = in_out_ratio
            artifacts[(None, "v2")] = v2
            self.rms_spectrum_in.fill_spectrum(unfolded_in)
            self.rms_spectrum_out.fill_spectrum(unfolded_out)
            self.rms_ratio.fill_ratio(unfolded_in, unfolded_out)
        else:
            logger.warning(
                "Run %s: in plane converged=%s, out of plane converged=%s; no ratio or v2",
                label, converged_in, converged_out,
            )

        if self.delta_pt_dphi is not None:
            artifacts[(None, "DeltaPtDeltaPhi")] = self.delta_pt_dphi
        if self.jet_pt_dphi is not None:
            artifacts[(None, "JetPtDeltaPhi")] = self.jet_pt_dphi
        artifacts[(None, "DeltaPtIn")] = self.delta_pt_distributions.in_plane
        artifacts[(None, "DeltaPtOut")] = self.delta_pt_distributions.out_of_plane
        artifacts[(None, "UnfoldingConfiguration")] = self.save_configuration(converged_in, converged_out)

        return RunOutput(
            label=label,
            success=True,
            converged_in=converged_in,
            converged_out=converged_out,
            results=results,
            ratio=in_out_ratio,
            v2=v2,
            artifacts=artifacts,
        )

    def save_configuration(self, converged_in: bool, converged_out: bool) -> Dict[str, Any]:
        """Flat summary of the run configuration and its convergence."""
        config = self.config
        return {
            "beta_in": config.beta_in,
            "beta_out": config.beta_out,
            "centrality": config.centrality,
            "converged_in": bool(converged_in),
            "converged_out": bool(converged_out),
            "avoid_rounding_error": config.avoid_rounding_error,
            "algorithm": config.algorithm.value,
            "prior": config.prior.value,
            "svd_reg_in": config.svd_reg_in,
            "svd_reg_out": config.svd_reg_out,
            "svd_toy": config.svd_toy,
            "jet_radius": config.jet_radius,
            "normalize": config.normalize,
            "smooth": config.smooth,
            "test_mode": config.test_mode,
            "use_detector_response": config.use_detector_response,
        }

    def profiles(self) -> Dict[str, Histogram1D]:
        """Mean and spread of all converged runs so far."""
        if self.rms_spectrum_in is None:
            return {}
        return {
            profile.name: profile.to_histogram()
            for profile in (self.rms_spectrum_in, self.rms_spectrum_out, self.rms_ratio)
        }

    def save_profiles(self, label: str = "Summary") -> None:
        if self.output is None:
            raise ConfigurationError("No output tree attached")
        for name, histogram in self.profiles().items():
            self.output.write(label, name, histogram)
