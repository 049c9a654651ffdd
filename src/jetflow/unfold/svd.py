"""
SVD unfolding strategies.

Two variants are kept because their results differ:

- SVDUnfolder: the transposed response is scaled by prior x efficiency and
  the prior is passed as truth; refolding uses the response's own forward
  operator applied to unfolded x efficiency.
- SVDLegacyUnfolder: the transposed response is scaled by the prior only and
  the truth is its true projection; refolding multiplies through the
  normalized response and the efficiency.

Both divide the unfolded spectrum by the kinematic efficiency.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

import numpy as np

from jetflow.analysis.flow import ratio
from jetflow.core.binning import normalize_columns, rebin_1d
from jetflow.core.histogram import Histogram1D, Histogram2D
from jetflow.core.linalg import pearson_coefficients
from jetflow.core.response import fold, transpose_with_prior
from jetflow.solvers.svd import LinearResponse, SVDUnfolding
from jetflow.unfold._types import (
    PriorChoice,
    UnfoldingAlgorithm,
    UnfoldingProblem,
    UnfoldingResult,
    UnfoldingSettings,
)
from jetflow.unfold.chi2 import Chi2Unfolder

logger = logging.getLogger(__name__)


class SVDUnfolder:
    """Unfold with the regularized SVD inversion."""

    algorithm = UnfoldingAlgorithm.SVD

    def __init__(self, settings: Optional[UnfoldingSettings] = None, minimizer=None):
        self.settings = settings or UnfoldingSettings()
        self.minimizer = minimizer

    # -- prior -----------------------------------------------------------

    def select_prior(
        self, problem: UnfoldingProblem
    ) -> Tuple[Optional[Histogram1D], Optional[UnfoldingResult]]:
        """
        Prior for the inversion and, for a chi-square prior, its result.

        Returns (None, result) when the chi-square prior did not converge.
        """
        if self.settings.prior is PriorChoice.MEASURED:
            return problem.prior.copy(name=f"kPriorMeasured_{problem.plane}"), None

        chi2 = Chi2Unfolder(self.settings, minimizer=self.minimizer)
        source = problem.prior_problem or problem
        prior_problem = UnfoldingProblem(
            measured=source.measured,
            response=source.response,
            efficiency=source.efficiency,
            prior=source.prior,
            plane=f"prior_{problem.plane}",
        )
        prior_result = chi2.unfold(prior_problem)
        if not prior_result.converged or prior_result.unfolded is None:
            logger.warning(
                "No prior from chi2 unfolding (%s), chi2 unfolding did not converge", problem.plane
            )
            return None, prior_result
        prior = prior_result.unfolded
        if problem.prior_problem is not None:
            prior = rebin_1d(prior, problem.prior.edges, name=f"unfoldedChi2Prior_{problem.plane}")
        return prior, prior_result

    # -- variant hooks ---------------------------------------------------

    def build_response(
        self, problem: UnfoldingProblem, prior: Histogram1D
    ) -> Tuple[Histogram2D, LinearResponse, Dict[str, Histogram2D]]:
        weighted_prior = prior.multiply(problem.efficiency)
        transposed = transpose_with_prior(problem.response, weighted_prior, name="TransposeResponseMatrix")
        linear = LinearResponse.from_histogram(transposed, truth=prior)
        return transposed, linear, {"TransposeResponseMatrix": transposed}

    def refold(
        self, problem: UnfoldingProblem, unfolded: Histogram1D, transposed: Histogram2D
    ) -> Histogram1D:
        unfolded_eff = unfolded.multiply(problem.efficiency)
        refold_response = LinearResponse.from_histogram(transposed)
        return refold_response.apply_to_truth(unfolded_eff, name=f"RefoldedSpectrum_{problem.plane}")

    # -- main ------------------------------------------------------------

    def unfold(self, problem: UnfoldingProblem) -> UnfoldingResult:
        plane = problem.plane
        prior, prior_result = self.select_prior(problem)
        if prior is None:
            return UnfoldingResult(
                unfolded=None,
                converged=False,
                algorithm=self.algorithm,
                plane=plane,
                prior_result=prior_result,
            )
        if problem.n_true != problem.n_rec:
            logger.warning(
                "SVD unfolding (%s): true (%d) and measured (%d) spectra should have the same number of bins",
                plane, problem.n_true, problem.n_rec,
            )

        smoothing = self.settings.smoothing
        measured = smoothing.apply(problem.measured)
        measured.name = f"InputSpectrum_{plane}"
        template = problem.prior.copy(name="Prior")
        template_smoothed = smoothing.apply(problem.prior)
        template_smoothed.name = "PriorSmoothened"
        prior_local = smoothing.apply(prior)
        prior_local.name = f"priorUnfolded_{plane}"

        transposed, linear, response_artifacts = self.build_response(problem, prior_local)
        kreg = self.settings.kreg
        solution = SVDUnfolding(linear, measured, kreg).unfold(
            self.settings.error_treatment,
            n_toys=self.settings.n_toys,
            seed=self.settings.seed,
        )
        pearson = pearson_coefficients(solution.covariance)

        diagnostics = {
            f"InputSpectrum_{plane}": measured,
            "Prior": template,
            "PriorSmoothened": template_smoothed,
            **response_artifacts,
        }
        if pearson is None:
            logger.warning("SVD unfolding (%s) did not converge: no Pearson coefficients", plane)
            return UnfoldingResult(
                unfolded=None,
                converged=False,
                algorithm=self.algorithm,
                plane=plane,
                covariance=solution.covariance,
                prior=prior_local,
                diagnostics=diagnostics,
                prior_result=prior_result,
            )

        raw = Histogram1D(
            edges=problem.prior.edges.copy(),
            contents=solution.unfolded,
            variances=np.clip(np.diag(solution.covariance), 0.0, None),
        )
        unfolded = raw.divide(problem.efficiency)
        unfolded.name = f"UnfoldedSpectrum_{plane}"

        refolded = self.refold(problem, unfolded, transposed)
        refolded_ratio = ratio(
            measured, refolded, name=f"RatioRefoldedMeasured_{plane}", append_fit=True
        )

        diagnostics[f"PearsonCoefficients_{plane}"] = pearson
        diagnostics["SingularValuesOfAC"] = solution.singular_values
        diagnostics["dVector"] = solution.d_vector
        logger.info("SVD unfolding (%s) done with kreg=%d", plane, kreg)

        return UnfoldingResult(
            unfolded=unfolded,
            converged=True,
            algorithm=self.algorithm,
            plane=plane,
            covariance=solution.covariance,
            pearson=pearson,
            refolded=refolded,
            refolded_ratio=refolded_ratio,
            prior=prior_local,
            diagnostics=diagnostics,
            prior_result=prior_result,
        )


class SVDLegacyUnfolder(SVDUnfolder):
    """SVD inversion with the prior-only response scaling of earlier releases."""

    algorithm = UnfoldingAlgorithm.SVD_LEGACY

    def build_response(self, problem, prior):
        transposed = transpose_with_prior(problem.response, prior, name="TransposeResponseMatrix")
        normalized = normalize_columns(problem.response.copy(name="cachedResponseLocalNorm"))
        transposed_norm = transpose_with_prior(normalized, prior, name="TransposeResponseMatrixNorm")
        linear = LinearResponse.from_histogram(transposed)
        artifacts = {
            "TransposeResponseMatrix": transposed,
            "TransposeResponseMatrixNorm": transposed_norm,
            "ResponseMatrixNorm": normalized,
        }
        return transposed, linear, artifacts

    def refold(self, problem, unfolded, transposed):
        normalized = normalize_columns(problem.response.copy())
        return fold(unfolded, normalized, problem.efficiency, name=f"RefoldedSpectrum_{problem.plane}")
