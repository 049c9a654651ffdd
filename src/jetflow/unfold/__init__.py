"""
Unfolding strategies.

Every strategy takes an UnfoldingProblem and returns an UnfoldingResult:

- Chi2Unfolder: regularized chi-square minimization with retries
- SVDUnfolder / SVDLegacyUnfolder: regularized SVD inversion
- PassThroughUnfolder: identity, for sanity checks
"""

from __future__ import annotations

from typing import Optional, Union

from jetflow.unfold._types import (
    PriorChoice,
    SmoothingSettings,
    UnfoldingAlgorithm,
    UnfoldingProblem,
    UnfoldingResult,
    UnfoldingSettings,
)
from jetflow.unfold.chi2 import MAX_ATTEMPTS, Chi2Unfolder
from jetflow.unfold.passthrough import PassThroughUnfolder
from jetflow.unfold.svd import SVDLegacyUnfolder, SVDUnfolder

_STRATEGIES = {
    UnfoldingAlgorithm.CHI2: Chi2Unfolder,
    UnfoldingAlgorithm.SVD: SVDUnfolder,
    UnfoldingAlgorithm.SVD_LEGACY: SVDLegacyUnfolder,
    UnfoldingAlgorithm.NONE: PassThroughUnfolder,
}


def get_unfolder(
    algorithm: Union[UnfoldingAlgorithm, str],
    settings: Optional[UnfoldingSettings] = None,
    minimizer=None,
):
    """Strategy instance for ``algorithm`` (enum member or its value)."""
    if isinstance(algorithm, str):
        algorithm = UnfoldingAlgorithm(algorithm.lower())
    return _STRATEGIES[algorithm](settings, minimizer=minimizer)


__all__ = [
    "MAX_ATTEMPTS",
    "Chi2Unfolder",
    "PassThroughUnfolder",
    "PriorChoice",
    "SVDLegacyUnfolder",
    "SVDUnfolder",
    "SmoothingSettings",
    "UnfoldingAlgorithm",
    "UnfoldingProblem",
    "UnfoldingResult",
    "UnfoldingSettings",
    "get_unfolder",
]
