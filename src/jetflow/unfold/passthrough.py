"""Identity strategy: the measured spectrum is returned as the unfolded one."""

from __future__ import annotations

import logging
from typing import Optional

from jetflow.core.binning import rebin_1d
from jetflow.unfold._types import (
    UnfoldingAlgorithm,
    UnfoldingProblem,
    UnfoldingResult,
    UnfoldingSettings,
)

logger = logging.getLogger(__name__)


class PassThroughUnfolder:
    """Sanity-check path that only smooths (optionally) and rebins."""

    algorithm = UnfoldingAlgorithm.NONE

    def __init__(self, settings: Optional[UnfoldingSettings] = None, minimizer=None):
        self.settings = settings or UnfoldingSettings()

    def unfold(self, problem: UnfoldingProblem) -> UnfoldingResult:
        plane = problem.plane
        measured = self.settings.smoothing.apply(problem.measured)
        measured.name = f"InputSpectrum_{plane}"
        unfolded = rebin_1d(measured, problem.prior.edges, name=f"UnfoldedSpectrum_{plane}")
        logger.info("No unfolding requested (%s), measured spectrum passed through", plane)
        return UnfoldingResult(
            unfolded=unfolded,
            converged=True,
            algorithm=self.algorithm,
            plane=plane,
            prior=problem.prior.copy(),
            diagnostics={f"InputSpectrum_{plane}": measured},
        )
