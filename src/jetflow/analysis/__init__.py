"""Post-unfolding analysis."""

from jetflow.analysis.flow import (
    ConstantFit,
    PointSeries,
    RunningProfile,
    fit_constant,
    flow_coefficient,
    ratio,
)

__all__ = [
    "ConstantFit",
    "PointSeries",
    "RunningProfile",
    "fit_constant",
    "flow_coefficient",
    "ratio",
]
