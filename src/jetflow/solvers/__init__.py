"""Solver package."""

from jetflow.solvers.chi2 import (
    HESSIAN_ACCURATE,
    Chi2FitOutcome,
    Chi2Minimizer,
    Chi2SolverConfig,
    Regularization,
)
from jetflow.solvers.svd import ErrorTreatment, LinearResponse, SVDSolution, SVDUnfolding

__all__ = [
    "HESSIAN_ACCURATE",
    "Chi2FitOutcome",
    "Chi2Minimizer",
    "Chi2SolverConfig",
    "Regularization",
    "ErrorTreatment",
    "LinearResponse",
    "SVDSolution",
    "SVDUnfolding",
]
