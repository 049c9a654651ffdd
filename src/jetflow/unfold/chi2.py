"""Chi-square unfolding strategy with retry on failed minimizations."""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from jetflow.analysis.flow import ratio
from jetflow.core.binning import normalize_columns
from jetflow.core.histogram import Histogram1D
from jetflow.core.linalg import pearson_coefficients
from jetflow.core.response import fold
from jetflow.solvers.chi2 import HESSIAN_ACCURATE, Chi2Minimizer, Chi2SolverConfig, Regularization
from jetflow.unfold._types import (
    UnfoldingAlgorithm,
    UnfoldingProblem,
    UnfoldingResult,
    UnfoldingSettings,
)

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 100


class Chi2Unfolder:
    """Unfold by regularized chi-square minimization.

    A failed minimization is retried with its own result as the new prior,
    up to ``max_attempts`` times. The result only counts as converged when
    the last fit succeeded and its Hessian is reliable.
    """

    algorithm = UnfoldingAlgorithm.CHI2

    def __init__(
        self,
        settings: Optional[UnfoldingSettings] = None,
        minimizer=None,
        max_attempts: int = MAX_ATTEMPTS,
    ):
        self.settings = settings or UnfoldingSettings()
        self.minimizer = minimizer or Chi2Minimizer()
        self.max_attempts = max_attempts

    def solver_config(self, problem: UnfoldingProblem) -> Chi2SolverConfig:
        return Chi2SolverConfig(
            n_rec=problem.n_rec,
            n_true=problem.n_true,
            beta=self.settings.beta,
            regularization=Regularization.LOGLOG,
            step_size=1.0,
            precision=1e-6,
            max_iterations=100000,
            strategy=2,
        )

    def unfold(self, problem: UnfoldingProblem) -> UnfoldingResult:
        plane = problem.plane
        smoothing = self.settings.smoothing
        measured = smoothing.apply(problem.measured)
        measured.name = f"InputSpectrum_{plane}"
        prior = smoothing.apply(problem.prior)
        prior.name = f"priorLocal_{plane}"
        response = problem.response.copy()
        efficiency = problem.efficiency.copy()

        current_prior = prior
        outcome = None
        attempts = 0
        while attempts < self.max_attempts:
            if outcome is not None:
                current_prior = Histogram1D(
                    edges=prior.edges.copy(),
                    contents=outcome.unfolded,
                    name=f"priorLocal_{plane}_{attempts}",
                )
            outcome = self.minimizer.unfold(
                self.solver_config(problem), response, efficiency, measured, current_prior
            )
            attempts += 1
            if outcome.status == 0:
                break

        converged = outcome.status == 0 and outcome.hessian_status == HESSIAN_ACCURATE
        if outcome.status != 0:
            logger.warning("chi2 unfolding (%s) did not converge after %d attempts", plane, attempts)
        elif not converged:
            logger.warning(
                "chi2 unfolding (%s) converged but Hessian status is %d", plane, outcome.hessian_status
            )
        else:
            logger.info("chi2 unfolding (%s) converged after %d attempt(s)", plane, attempts)

        covariance = outcome.covariance
        variances = np.zeros(problem.n_true) if covariance is None else np.clip(np.diag(covariance), 0.0, None)
        unfolded = Histogram1D(
            edges=prior.edges.copy(),
            contents=outcome.unfolded,
            variances=variances,
            name=f"UnfoldedSpectrum_{plane}",
        )
        pearson = pearson_coefficients(covariance) if converged else None

        refolded = fold(
            unfolded,
            normalize_columns(response.copy()),
            efficiency,
            name=f"RefoldedSpectrum_{plane}",
        )
        refolded_ratio = ratio(refolded, measured, name="RatioRefoldedMeasured", append_fit=True)

        diagnostics = {
            f"InputSpectrum_{plane}": measured,
            f"priorLocal_{plane}": current_prior,
            f"fitStatus_{plane}": {
                "chi2_from_fit": outcome.chi2,
                "penalty": outcome.penalty,
                "dof": problem.n_rec - problem.n_true,
                "status": outcome.status,
                "hessian_status": outcome.hessian_status,
                "attempts": attempts,
            },
        }
        if pearson is not None:
            diagnostics[f"PearsonCoefficients_{plane}"] = pearson

        return UnfoldingResult(
            unfolded=unfolded,
            converged=converged,
            algorithm=self.algorithm,
            plane=plane,
            covariance=covariance,
            pearson=pearson,
            refolded=refolded,
            refolded_ratio=refolded_ratio,
            prior=current_prior,
            attempts=attempts,
            diagnostics=diagnostics,
        )
