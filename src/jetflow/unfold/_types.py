"""
Shared data-class types for the unfold subpackage.

Every unfolding strategy consumes an UnfoldingProblem and returns an
UnfoldingResult, so strategies can be swapped without touching the
orchestration code.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import numpy as np

from jetflow.core.errors import DimensionMismatchError
from jetflow.core.histogram import Histogram1D, Histogram2D
from jetflow.core.spectra import PowerLaw, smooth_spectrum
from jetflow.solvers.svd import ErrorTreatment


class UnfoldingAlgorithm(Enum):
    CHI2 = "chi2"
    SVD = "svd"
    SVD_LEGACY = "svd_legacy"
    NONE = "none"


class PriorChoice(Enum):
    MEASURED = "measured"
    CHI2 = "chi2"


@dataclass
class SmoothingSettings:
    """Power-law smoothing of spectrum tails.

    Attributes
    ----------
    enabled : bool
        Smooth measured spectra and priors before unfolding.
    function : PowerLaw
        Function fitted to the spectra; shared between calls so that a
        trained function carries its parameters over.
    fit_min, fit_max : float
        Fit range.
    fit_start : float
        Bins with centers above this value are replaced by the fit.
    """

    enabled: bool = True
    function: PowerLaw = field(default_factory=PowerLaw)
    fit_min: float = 60.0
    fit_max: float = 105.0
    fit_start: float = 75.0

    def apply(self, spectrum: Histogram1D) -> Histogram1D:
        if not self.enabled:
            return spectrum.copy()
        return smooth_spectrum(spectrum, self.function, self.fit_min, self.fit_max, self.fit_start)


@dataclass
class UnfoldingSettings:
    """Per-plane parameters of an unfolding strategy.

    Attributes
    ----------
    beta : float
        Chi-square regularization strength.
    kreg : int
        SVD regularization rank.
    prior : PriorChoice
        Prior used by the SVD strategies.
    error_treatment : ErrorTreatment
        Covariance estimate of the SVD strategies.
    n_toys : int
        Number of toy spectra for ``ErrorTreatment.TOY``.
    seed : int, optional
        Seed of the toy generator.
    smoothing : SmoothingSettings
        Tail smoothing of inputs and priors.
    """

    beta: float = 0.1
    kreg: int = 5
    prior: PriorChoice = PriorChoice.MEASURED
    error_treatment: ErrorTreatment = ErrorTreatment.TOY
    n_toys: int = 1000
    seed: Optional[int] = None
    smoothing: SmoothingSettings = field(default_factory=SmoothingSettings)


@dataclass
class UnfoldingProblem:
    """Inputs of one unfolding call.

    Attributes
    ----------
    measured : Histogram1D
        Measured spectrum in rec binning.
    response : Histogram2D
        Response, true on x and rec on y.
    efficiency : Histogram1D
        Kinematic efficiency in true binning.
    prior : Histogram1D
        Measured spectrum rebinned to the true binning (the template).
    plane : str
        Plane label, e.g. ``"in"`` or ``"out"``.
    prior_problem : UnfoldingProblem, optional
        Inputs on a separate binning for a chi-square prior.
    """

    measured: Histogram1D
    response: Histogram2D
    efficiency: Histogram1D
    prior: Histogram1D
    plane: str = "in"
    prior_problem: Optional["UnfoldingProblem"] = None

    def __post_init__(self):
        if self.response.ny != self.measured.n_bins:
            raise DimensionMismatchError(
                f"Response has {self.response.ny} rec bins, measured spectrum {self.measured.n_bins}"
            )
        if self.response.nx != self.prior.n_bins or self.response.nx != self.efficiency.n_bins:
            raise DimensionMismatchError("Prior and efficiency must match the true axis of the response.")

    @property
    def n_rec(self) -> int:
        return self.measured.n_bins

    @property
    def n_true(self) -> int:
        return self.prior.n_bins


@dataclass
class UnfoldingResult:
    """Outcome of one unfolding call, not modified after creation.

    ``diagnostics`` maps artifact names to histograms, point series, arrays
    or flat dictionaries that are persisted next to the result.
    """

    unfolded: Optional[Histogram1D]
    converged: bool
    algorithm: UnfoldingAlgorithm
    plane: str
    covariance: Optional[np.ndarray] = None
    pearson: Optional[np.ndarray] = None
    refolded: Optional[Histogram1D] = None
    refolded_ratio: Optional[Any] = None
    prior: Optional[Histogram1D] = None
    attempts: int = 1
    diagnostics: Dict[str, Any] = field(default_factory=dict)
    prior_result: Optional["UnfoldingResult"] = None
