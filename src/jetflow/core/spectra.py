"""
Spectrum preparation: plane projections, event-count normalization and
power-law smoothing of sparsely filled spectrum tails.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray
from scipy import integrate, optimize

from jetflow.core.histogram import Histogram1D, Histogram2D

logger = logging.getLogger(__name__)

BinRange = Tuple[int, int]


@dataclass(frozen=True)
class SpectrumPair:
    """In-plane and out-of-plane spectra sharing one binning."""

    in_plane: Histogram1D
    out_of_plane: Histogram1D

    def __post_init__(self):
        if not np.array_equal(self.in_plane.edges, self.out_of_plane.edges):
            raise ValueError("In-plane and out-of-plane spectra must share their binning.")

    def map(self, func) -> "SpectrumPair":
        """Apply ``func`` to both spectra and return a new pair."""
        return SpectrumPair(func(self.in_plane), func(self.out_of_plane))


def default_plane_ranges(n_angle_bins: int) -> Tuple[List[BinRange], BinRange]:
    """
    Angle-bin ranges of the two planes for ``n_angle_bins`` bins over [0, pi).

    In plane: first and last quarter. Out of plane: the middle half. For 40
    bins this gives 0-9 and 30-39 in plane, 10-29 out of plane (0-based,
    inclusive).
    """
    if n_angle_bins < 4 or n_angle_bins % 4:
        raise ValueError("Number of angle bins must be a positive multiple of 4.")
    quarter = n_angle_bins // 4
    in_plane = [(0, quarter - 1), (n_angle_bins - quarter, n_angle_bins - 1)]
    out_of_plane = (quarter, n_angle_bins - quarter - 1)
    return in_plane, out_of_plane


def extract_plane_spectra(
    jet_pt_dphi: Histogram2D,
    in_plane_ranges: Optional[Sequence[BinRange]] = None,
    out_of_plane_range: Optional[BinRange] = None,
    no_dphi: bool = False,
) -> SpectrumPair:
    """
    Project an (angle, pt) histogram onto in-plane and out-of-plane spectra.

    Parameters
    ----------
    jet_pt_dphi : Histogram2D
        Input with the angle to the event plane on x and pt on y
    in_plane_ranges : sequence of (first, last), optional
        Inclusive 0-based angle-bin ranges summed into the in-plane spectrum
    out_of_plane_range : (first, last), optional
        Inclusive 0-based angle-bin range of the out-of-plane spectrum
    no_dphi : bool
        Use the full angle-integrated projection for both planes

    Returns
    -------
    SpectrumPair
    """
    base = jet_pt_dphi.name or "spectrum"
    if no_dphi:
        return SpectrumPair(
            jet_pt_dphi.projection_y(name=f"{base}_in"),
            jet_pt_dphi.projection_y(name=f"{base}_out"),
        )
    if in_plane_ranges is None or out_of_plane_range is None:
        default_in, default_out = default_plane_ranges(jet_pt_dphi.nx)
        in_plane_ranges = default_in if in_plane_ranges is None else in_plane_ranges
        out_of_plane_range = default_out if out_of_plane_range is None else out_of_plane_range

    in_plane = Histogram1D(edges=jet_pt_dphi.y_edges.copy(), name=f"{base}_in")
    for first, last in in_plane_ranges:
        part = jet_pt_dphi.projection_y(first, last)
        in_plane.contents += part.contents
        in_plane.variances += part.variances
    out_of_plane = jet_pt_dphi.projection_y(*out_of_plane_range, name=f"{base}_out")
    return SpectrumPair(in_plane, out_of_plane)


def normalize_to_event_count(spectrum: Histogram1D, n_events: float) -> Histogram1D:
    """
    Divide a spectrum by the number of events.

    content -> content / N. The variance becomes variance / N**2 when that
    is positive; otherwise the normalized content itself (a sqrt(content)
    error) for positive content, and 0 for non-positive content.
    """
    out = spectrum.copy()
    if n_events <= 0:
        logger.warning("Event count %s is not positive, %s left unnormalized", n_events, spectrum.name)
        return out
    n = float(n_events)
    out.contents = spectrum.contents / n
    scaled_var = spectrum.variances / (n * n)
    fallback = np.where(out.contents > 0, out.contents, 0.0)
    out.variances = np.where(scaled_var > 0, scaled_var, fallback)
    return out


def scale_to_event_count(spectrum: Histogram1D, n_events: float) -> Histogram1D:
    """Plain scaling by 1/N (variance by 1/N**2) for directly supplied spectra."""
    if n_events <= 0:
        return spectrum.copy()
    return spectrum.scaled(1.0 / float(n_events))


@dataclass
class PowerLaw:
    """
    Falling power law ``a * x**-b`` used to smooth spectrum tails.

    With ``train`` enabled, parameters of the last successful fit are the
    starting point of the next one; otherwise every fit starts from a
    log-log estimate of the data.
    """

    train: bool = True
    parameters: List[float] = field(default_factory=lambda: [0.0, 0.0])
    _trained: bool = field(default=False, repr=False)

    def __call__(self, x, a=None, b=None):
        if a is None:
            a, b = self.parameters
        return a * np.power(x, -b)

    @property
    def n_parameters(self) -> int:
        return 2

    def reset(self) -> None:
        self.parameters = [0.0, 0.0]
        self._trained = False

    def start_values(self, x: NDArray, y: NDArray) -> List[float]:
        if self.train and self._trained:
            return list(self.parameters)
        slope, intercept = np.polyfit(np.log(x), np.log(y), 1)
        return [float(np.exp(intercept)), float(-slope)]

    def update(self, params: Sequence[float]) -> None:
        self.parameters = [float(p) for p in params]
        self._trained = True

    def integral(self, low: float, high: float) -> float:
        value, _ = integrate.quad(self, low, high)
        return value


def fit_spectrum(
    spectrum: Histogram1D,
    function: PowerLaw,
    fit_min: float,
    fit_max: float,
) -> Optional[NDArray]:
    """
    Weighted least-squares fit of ``function`` to the bins in [fit_min, fit_max].

    Returns the fitted parameters, or None when the fit fails.
    """
    centers = spectrum.centers
    mask = (centers >= fit_min) & (centers <= fit_max) & (spectrum.contents > 0)
    if mask.sum() <= function.n_parameters:
        logger.warning(
            "Not enough filled bins in [%s, %s] to fit %s", fit_min, fit_max, spectrum.name
        )
        return None
    x = centers[mask]
    y = spectrum.contents[mask]
    sigma = spectrum.errors[mask]
    sigma = np.where(sigma > 0, sigma, np.sqrt(y))
    try:
        params, _ = optimize.curve_fit(
            function,
            x,
            y,
            p0=function.start_values(x, y),
            sigma=sigma,
            absolute_sigma=True,
            maxfev=10000,
        )
    except (RuntimeError, ValueError) as exc:
        logger.warning("Fit of %s failed: %s", spectrum.name, exc)
        return None
    if not np.all(np.isfinite(params)):
        logger.warning("Fit of %s returned non-finite parameters", spectrum.name)
        return None
    return params


def smooth_spectrum(
    spectrum: Histogram1D,
    function: PowerLaw,
    fit_min: float,
    fit_max: float,
    fit_start: float,
    counts: bool = False,
) -> Histogram1D:
    """
    Replace the tail of a spectrum by a fitted function.

    The function is fitted over [fit_min, fit_max]. On success every bin with
    center above ``fit_start`` gets the bin-integral average of the function
    (the integral truncated to an integer first when ``counts`` is set) and,
    when positive, a variance equal to its content. A failed fit is logged
    and an unmodified copy is returned.
    """
    out = spectrum.copy(name=f"{spectrum.name}_smoothened")
    params = fit_spectrum(spectrum, function, fit_min, fit_max)
    if params is None:
        logger.warning("Smoothing of %s failed, spectrum left unmodified", spectrum.name)
        return out
    function.update(params)
    for i, (low, high) in enumerate(zip(out.edges[:-1], out.edges[1:])):
        if out.centers[i] <= fit_start:
            continue
        integral = function.integral(low, high)
        if counts:
            integral = float(int(integral))
        out.contents[i] = integral / (high - low)
        if out.contents[i] > 0:
            out.variances[i] = out.contents[i]
    logger.debug("Smoothed %s above %s with parameters %s", spectrum.name, fit_start, params)
    return out
