"""
Regularized chi-square unfolding back-end.

The fit parameters p are the square roots of the efficiency-weighted true
spectrum x = p**2, which keeps the solution non-negative. The objective is

    chi2(x) + beta * penalty(x)

with chi2 computed against the measured spectrum through the response
(true slices normalized to unit sum) and a log-log curvature penalty.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

import numpy as np
from numpy.typing import NDArray
from scipy import optimize

from jetflow.core.errors import DimensionMismatchError
from jetflow.core.histogram import Histogram1D, Histogram2D
from jetflow.core.linalg import is_positive_definite, numerical_hessian

logger = logging.getLogger(__name__)

# Hessian quality codes, Minuit convention
HESSIAN_NOT_CALCULATED = 0
HESSIAN_APPROXIMATE = 1
HESSIAN_FORCED_POSITIVE = 2
HESSIAN_ACCURATE = 3


class Regularization(Enum):
    NONE = "none"
    LOGLOG = "loglog"


@dataclass
class Chi2SolverConfig:
    """Solver settings, built fresh for every chi-square unfolding call.

    Attributes:
        n_rec: Number of measured (rec) bins.
        n_true: Number of unfolded (true) bins.
        beta: Regularization strength.
        regularization: Penalty type.
        step_size: Scale of the finite-difference step used for the Hessian.
        precision: Gradient tolerance of the minimizer.
        max_iterations: Iteration limit of the minimizer.
        strategy: 0 skips the Hessian, 1 and 2 compute it after the fit.
    """

    n_rec: int
    n_true: int
    beta: float = 0.1
    regularization: Regularization = Regularization.LOGLOG
    step_size: float = 1.0
    precision: float = 1e-6
    max_iterations: int = 100000
    strategy: int = 2

    def __post_init__(self) -> None:
        if self.n_rec <= 0 or self.n_true <= 0:
            raise ValueError("Bin counts must be positive.")
        if self.beta < 0:
            raise ValueError("Regularization strength must be non-negative.")


@dataclass
class Chi2FitOutcome:
    """Result of one minimization attempt."""

    status: int
    hessian_status: int
    unfolded: NDArray
    covariance: Optional[NDArray]
    chi2: float
    penalty: float
    n_iterations: int = 0
    details: Dict = field(default_factory=dict)

    @property
    def reliable(self) -> bool:
        return self.status == 0 and self.hessian_status == HESSIAN_ACCURATE


def _normalized_kernel(response: NDArray) -> NDArray:
    """Rec x true folding kernel with every true slice summing to one."""
    sums = response.sum(axis=1)
    kernel = np.zeros_like(response)
    nonzero = sums > 0
    kernel[nonzero] = response[nonzero] / sums[nonzero, None]
    return kernel.T


def _loglog_coefficients(centers: NDArray) -> Tuple[NDArray, NDArray]:
    """Index triplets and coefficients of the log-log second derivative."""
    log_c = np.log(centers)
    triplets = []
    coefficients = []
    for m in range(1, centers.size - 1):
        h_right = log_c[m + 1] - log_c[m]
        h_left = log_c[m] - log_c[m - 1]
        half = 0.5 * (log_c[m + 1] - log_c[m - 1])
        triplets.append((m - 1, m, m + 1))
        coefficients.append((
            1.0 / (h_left * half),
            -(1.0 / h_right + 1.0 / h_left) / half,
            1.0 / (h_right * half),
        ))
    return np.array(triplets, dtype=int).reshape(-1, 3), np.array(coefficients).reshape(-1, 3)


class Chi2Minimizer:
    """Chi-square minimization with a log-log smoothness penalty.

    Stateless between calls: everything a fit needs comes from the
    Chi2SolverConfig passed to ``unfold``.
    """

    def unfold(
        self,
        config: Chi2SolverConfig,
        response: Histogram2D,
        efficiency: Histogram1D,
        measured: Histogram1D,
        prior: Histogram1D,
    ) -> Chi2FitOutcome:
        """Fit the true spectrum for one set of inputs.

        Args:
            config: Fresh solver configuration.
            response: Response matrix, true on x and rec on y.
            efficiency: Kinematic efficiency on the true axis.
            measured: Measured spectrum on the rec axis.
            prior: Starting point on the true axis.

        Returns:
            Chi2FitOutcome with the efficiency-corrected unfolded spectrum and
            its covariance (None when the Hessian is unusable).
        """
        if response.nx != config.n_true or response.ny != config.n_rec:
            raise DimensionMismatchError(
                f"Response is {response.nx}x{response.ny}, solver expects "
                f"{config.n_true}x{config.n_rec}"
            )
        if measured.n_bins != config.n_rec or prior.n_bins != config.n_true:
            raise DimensionMismatchError("Measured or prior spectrum does not match the solver binning.")

        kernel = _normalized_kernel(response.contents)
        eff = efficiency.contents
        m = measured.contents
        sigma = measured.errors
        weights = np.where(sigma > 0, 1.0 / np.where(sigma > 0, sigma, 1.0) ** 2, 1.0)
        centers = prior.centers
        widths = prior.widths

        use_penalty = config.regularization is Regularization.LOGLOG and config.beta > 0
        if use_penalty and np.any(centers <= 0):
            raise ValueError("Log-log regularization needs positive bin centers.")
        triplets, coeffs = _loglog_coefficients(centers) if use_penalty else (
            np.zeros((0, 3), dtype=int),
            np.zeros((0, 3)),
        )

        def chi2_of(x: NDArray) -> float:
            resid = m - kernel @ x
            return float(np.sum(weights * resid ** 2))

        def penalty_terms(p: NDArray):
            x = p * p
            log_density = np.zeros_like(x)
            positive = x > 0
            log_density[positive] = np.log(x[positive] / widths[positive])
            values = []
            for (l, c, r), (cl, cm, cr) in zip(triplets, coeffs):
                if not (positive[l] and positive[c] and positive[r]):
                    continue
                d2 = cl * log_density[l] + cm * log_density[c] + cr * log_density[r]
                values.append(((l, c, r), (cl, cm, cr), d2))
            return values

        def objective(p: NDArray) -> float:
            total = chi2_of(p * p)
            if use_penalty:
                total += config.beta * sum(d2 * d2 for _, _, d2 in penalty_terms(p))
            return total

        def gradient(p: NDArray) -> NDArray:
            x = p * p
            resid = m - kernel @ x
            grad_x = -2.0 * kernel.T @ (weights * resid)
            grad = grad_x * 2.0 * p
            if use_penalty:
                for idx, cs, d2 in penalty_terms(p):
                    for j, cj in zip(idx, cs):
                        # d log(p_j**2) / dp_j = 2 / p_j
                        grad[j] += config.beta * 2.0 * d2 * cj * 2.0 / p[j]
            return grad

        start = prior.contents * eff
        floor = 1e-6 * np.max(start) if np.any(start > 0) else 1e-6
        p0 = np.sqrt(np.where(start > 0, start, floor))

        result = optimize.minimize(
            objective,
            p0,
            jac=gradient,
            method="L-BFGS-B",
            options={
                "maxiter": config.max_iterations,
                "ftol": 1e-12,
                "gtol": config.precision,
            },
        )
        p = result.x
        x = p * p
        status = 0 if result.success else int(result.status) or 1
        chi2_value = chi2_of(x)
        penalty_value = sum(d2 * d2 for _, _, d2 in penalty_terms(p)) if use_penalty else 0.0

        unfolded = np.zeros_like(x)
        nonzero_eff = eff != 0
        unfolded[nonzero_eff] = x[nonzero_eff] / eff[nonzero_eff]

        hessian_status = HESSIAN_NOT_CALCULATED
        covariance = None
        if config.strategy > 0:
            hessian_status, covariance = self._error_matrix(config, gradient, p, eff)

        logger.debug(
            "chi2 fit: status=%d hessian=%d chi2=%.4g penalty=%.4g iterations=%d",
            status, hessian_status, chi2_value, penalty_value, result.nit,
        )
        return Chi2FitOutcome(
            status=status,
            hessian_status=hessian_status,
            unfolded=unfolded,
            covariance=covariance,
            chi2=chi2_value,
            penalty=penalty_value,
            n_iterations=int(result.nit),
            details={"message": str(result.message), "objective": float(result.fun)},
        )

    @staticmethod
    def _error_matrix(config, gradient, p, eff) -> Tuple[int, Optional[NDArray]]:
        hessian = numerical_hessian(gradient, p, rel_step=1e-5 * config.step_size)
        if not np.all(np.isfinite(hessian)):
            return HESSIAN_NOT_CALCULATED, None
        status = HESSIAN_ACCURATE
        if not is_positive_definite(hessian):
            # force positive definiteness by shifting the spectrum
            eigenvalues = np.linalg.eigvalsh(hessian)
            shift = abs(eigenvalues.min()) + 1e-3 * max(abs(eigenvalues.max()), 1.0)
            hessian = hessian + shift * np.eye(hessian.shape[0])
            status = HESSIAN_FORCED_POSITIVE
        # chi2 convention: parameter covariance is twice the inverse Hessian
        cov_p = 2.0 * np.linalg.inv(hessian)
        jac = np.zeros_like(p)
        nonzero_eff = eff != 0
        jac[nonzero_eff] = 2.0 * p[nonzero_eff] / eff[nonzero_eff]
        return status, cov_p * np.outer(jac, jac)
