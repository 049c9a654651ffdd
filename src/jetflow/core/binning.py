"""Binning schemes and resampling of histograms onto new bin edges."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np
from numpy.typing import NDArray
from scipy import integrate

from jetflow.core.histogram import Histogram1D, Histogram2D

logger = logging.getLogger(__name__)

WeightFunction = Callable[[float], float]


def merge_weight(x: float) -> float:
    """Default weight used when merging fine true bins: x (1 + x/7.2)^-8."""
    return x * (1.0 + x / (8.0 * 0.9)) ** -8.0


@dataclass
class BinningScheme:
    """Ordered, strictly increasing bin edges for a true or rec axis."""

    edges: List[float]

    def __post_init__(self) -> None:
        self.edges = [float(e) for e in self.edges]
        if len(self.edges) < 2:
            raise ValueError("A binning scheme needs at least two edges.")
        if any(b2 <= b1 for b1, b2 in zip(self.edges, self.edges[1:])):
            raise ValueError("Bin edges must be strictly increasing.")

    @classmethod
    def uniform(cls, low: float, high: float, n_bins: int) -> "BinningScheme":
        return cls(list(np.linspace(low, high, n_bins + 1)))

    @property
    def n_bins(self) -> int:
        return len(self.edges) - 1

    @property
    def low(self) -> float:
        return self.edges[0]

    @property
    def high(self) -> float:
        return self.edges[-1]

    @property
    def centers(self) -> NDArray:
        e = np.asarray(self.edges)
        return 0.5 * (e[:-1] + e[1:])

    @property
    def widths(self) -> NDArray:
        return np.diff(self.edges)

    def as_array(self) -> NDArray:
        return np.asarray(self.edges, dtype=float)

    def clone(self) -> "BinningScheme":
        return BinningScheme(list(self.edges))


def as_edges(binning) -> NDArray:
    """Edges of a BinningScheme or of a plain sequence, validated."""
    if isinstance(binning, BinningScheme):
        return binning.as_array()
    return BinningScheme(list(binning)).as_array()


def rebin_1d(histogram: Histogram1D, target_binning, name: str = "") -> Histogram1D:
    """
    Rebin a histogram by nearest-bin assignment of source bin centers.

    Each source bin content is added to the target bin containing the source
    bin center. Content outside the target range is dropped. Errors are not
    inherited: the variance of each target bin is its accumulated content
    (statistical error of a count), or 0 for non-positive content.

    Parameters
    ----------
    histogram : Histogram1D
        Source histogram (not modified)
    target_binning : BinningScheme or sequence of float
        Target edges
    name : str
        Name of the result; defaults to ``<source>_template``

    Returns
    -------
    Histogram1D
        New histogram on the target edges
    """
    edges = as_edges(target_binning)
    out = Histogram1D(edges=edges, name=name or f"{histogram.name}_template", title=histogram.title)
    for center, value in zip(histogram.centers, histogram.contents):
        idx = out.find_bin(center)
        if idx >= 0:
            out.contents[idx] += value
    out.variances = np.where(out.contents > 0, out.contents, 0.0)
    out.entries = histogram.entries
    return out


def _bin_weights(edges: NDArray, weight_function: Optional[WeightFunction]) -> NDArray:
    if weight_function is None:
        return np.diff(edges)
    weights = np.empty(edges.size - 1)
    for i, (lo, hi) in enumerate(zip(edges[:-1], edges[1:])):
        weights[i], _ = integrate.quad(weight_function, lo, hi)
    return weights


def rebin_2d(
    histogram: Histogram2D,
    true_binning,
    rec_binning,
    weight_function: Optional[WeightFunction] = merge_weight,
    name: str = "",
) -> Histogram2D:
    """
    Weighted rebinning of a response matrix onto coarser true/rec edges.

    Every fine cell is mapped to the coarse cell containing its bin centers.
    Along the rec axis fine contents are summed; along the true axis the
    coarse value is the weighted average of the fine true slices, the weight
    of a fine true bin being the integral of ``weight_function`` over it
    (bin width when ``weight_function`` is None). A fine response whose true
    slices are normalized therefore yields normalized coarse slices.
    """
    true_edges = as_edges(true_binning)
    rec_edges = as_edges(rec_binning)
    out = Histogram2D(
        x_edges=true_edges,
        y_edges=rec_edges,
        name=name or f"{histogram.name}_rebinned",
        title=histogram.title,
    )

    rec_map = np.array([out.find_bin_y(c) for c in histogram.y_centers])
    rec_valid = rec_map >= 0
    # collapse the rec axis first: (fine true, coarse rec)
    summed = np.zeros((histogram.nx, out.ny))
    summed_var = np.zeros((histogram.nx, out.ny))
    for j in np.flatnonzero(rec_valid):
        summed[:, rec_map[j]] += histogram.contents[:, j]
        summed_var[:, rec_map[j]] += histogram.variances[:, j]

    weights = _bin_weights(histogram.x_edges, weight_function)
    weight_sums = np.zeros(out.nx)
    for i, center in enumerate(histogram.x_centers):
        t = out.find_bin_x(center)
        if t < 0:
            continue
        out.contents[t] += weights[i] * summed[i]
        out.variances[t] += weights[i] ** 2 * summed_var[i]
        weight_sums[t] += weights[i]

    for t in range(out.nx):
        if weight_sums[t] != 0:
            out.contents[t] /= weight_sums[t]
            out.variances[t] /= weight_sums[t] ** 2
    return out


def normalize_columns(matrix: Histogram2D) -> Histogram2D:
    """
    Normalize every true slice of a response to unit sum, in place.

    Slices whose sum is not positive are left untouched. The matrix is also
    returned for chaining.
    """
    sums = matrix.contents.sum(axis=1)
    for t, total in enumerate(sums):
        if total <= 0:
            continue
        matrix.contents[t] /= total
        matrix.variances[t] /= total * total
    return matrix


def resize_x_axis(histogram: Histogram1D, low: int, high: int, name: str = "") -> Histogram1D:
    """Copy the window [low, high) of ``histogram`` into unit-width bins."""
    if high <= low:
        raise ValueError("Upper edge must be larger than lower edge.")
    out = Histogram1D(
        edges=np.arange(low, high + 1, dtype=float),
        name=name or f"{histogram.name}_resized",
        title=histogram.title,
    )
    first = histogram.find_bin(low)
    for i in range(high - low):
        src = first + i
        if first < 0 or src >= histogram.n_bins:
            continue
        out.contents[i] = histogram.contents[src]
        out.variances[i] = histogram.variances[src]
    return out


def normalize_to_integral(histogram: Histogram1D, scale: float = 1.0) -> Histogram1D:
    """
    Return a copy normalized per unit bin width.

    With ``scale == 1`` the copy is divided by its integral, otherwise by
    ``scale``. A non-positive integral leaves the contents unchanged.
    """
    out = histogram.copy()
    if scale == 1.0:
        integral = out.integral()
        if integral <= 0:
            logger.warning("Histogram %s has non-positive integral, cannot normalize", out.name)
            return out
        divisor = integral
    else:
        divisor = scale
    widths = out.widths
    out.contents = out.contents / (divisor * widths)
    out.variances = out.variances / (divisor * widths) ** 2
    return out
