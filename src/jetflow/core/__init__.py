"""Core data structures and utilities."""

from jetflow.core.binning import (
    BinningScheme,
    merge_weight,
    normalize_columns,
    normalize_to_integral,
    rebin_1d,
    rebin_2d,
    resize_x_axis,
)
from jetflow.core.errors import ConfigurationError, DimensionMismatchError, JetFlowError
from jetflow.core.histogram import Histogram1D, Histogram2D
from jetflow.core.linalg import pearson_coefficients
from jetflow.core.response import (
    build_delta_pt_response,
    compose_responses,
    fold,
    kinematic_efficiency,
    transpose_with_prior,
    unity_response,
)
from jetflow.core.spectra import (
    PowerLaw,
    SpectrumPair,
    extract_plane_spectra,
    normalize_to_event_count,
    scale_to_event_count,
    smooth_spectrum,
)

__all__ = [
    "BinningScheme",
    "Histogram1D",
    "Histogram2D",
    "merge_weight",
    "normalize_columns",
    "normalize_to_integral",
    "rebin_1d",
    "rebin_2d",
    "resize_x_axis",
    # Errors
    "ConfigurationError",
    "DimensionMismatchError",
    "JetFlowError",
    # Response
    "build_delta_pt_response",
    "compose_responses",
    "fold",
    "kinematic_efficiency",
    "pearson_coefficients",
    "transpose_with_prior",
    "unity_response",
    # Spectra
    "PowerLaw",
    "SpectrumPair",
    "extract_plane_spectra",
    "normalize_to_event_count",
    "scale_to_event_count",
    "smooth_spectrum",
]
