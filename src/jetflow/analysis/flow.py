"""
Post-unfolding analytics for event-plane dependent spectra.

Provides:
- ratio: bin-by-bin ratio of two spectra with uncorrelated errors
- flow_coefficient: elliptic flow v2 from in-plane and out-of-plane yields
- RunningProfile: weighted accumulation of repeated unfolding results

References:
- Event-plane method: A. M. Poskanzer, S. A. Voloshin, PRC 58 (1998) 1671
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from jetflow.core.histogram import Histogram1D

logger = logging.getLogger(__name__)


@dataclass
class ConstantFit:
    """Weighted fit of a constant to a point series."""

    value: float
    error: float
    chi2: float
    ndf: int
    fit_range: Tuple[float, float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "error": self.error,
            "chi2": self.chi2,
            "ndf": self.ndf,
            "fit_range": list(self.fit_range),
        }


@dataclass
class PointSeries:
    """
    Points with symmetric x and y errors.

    Attributes:
        x: Bin centers
        y: Values
        x_err: Half bin widths
        y_err: One-sigma errors on y
        name: Identifier used when persisting
        fit: Optional constant fit over the series
    """

    x: np.ndarray
    y: np.ndarray
    x_err: np.ndarray
    y_err: np.ndarray
    name: str = ""
    fit: Optional[ConstantFit] = None

    def __post_init__(self):
        self.x = np.asarray(self.x, dtype=float)
        self.y = np.asarray(self.y, dtype=float)
        self.x_err = np.asarray(self.x_err, dtype=float)
        self.y_err = np.asarray(self.y_err, dtype=float)
        if not (self.x.shape == self.y.shape == self.x_err.shape == self.y_err.shape):
            raise ValueError("Point series arrays must have equal length.")

    def __len__(self) -> int:
        return self.x.size

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": "PointSeries",
            "name": self.name,
            "x": self.x.tolist(),
            "y": self.y.tolist(),
            "x_err": self.x_err.tolist(),
            "y_err": self.y_err.tolist(),
            "fit": None if self.fit is None else self.fit.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PointSeries":
        fit = data.get("fit")
        return cls(
            x=data["x"],
            y=data["y"],
            x_err=data["x_err"],
            y_err=data["y_err"],
            name=data.get("name", ""),
            fit=None if fit is None else ConstantFit(
                value=fit["value"],
                error=fit["error"],
                chi2=fit["chi2"],
                ndf=int(fit["ndf"]),
                fit_range=tuple(fit["fit_range"]),
            ),
        )


def fit_constant(series: PointSeries, fit_range: Tuple[float, float] = (10.0, 100.0)) -> Optional[ConstantFit]:
    """Inverse-variance weighted constant over the points inside ``fit_range``."""
    low, high = fit_range
    mask = (series.x >= low) & (series.x <= high)
    if not np.any(mask):
        logger.warning("No points of %s inside fit range %s", series.name, fit_range)
        return None
    y = series.y[mask]
    err = series.y_err[mask]
    weights = np.where(err > 0, 1.0 / np.where(err > 0, err, 1.0) ** 2, 0.0)
    if weights.sum() <= 0:
        weights = np.ones_like(y)
    value = float(np.sum(weights * y) / np.sum(weights))
    error = float(1.0 / math.sqrt(np.sum(weights)))
    chi2 = float(np.sum(weights * (y - value) ** 2))
    return ConstantFit(value=value, error=error, chi2=chi2, ndf=int(y.size - 1), fit_range=(low, high))


def ratio(
    h1: Histogram1D,
    h2: Histogram1D,
    name: str = "",
    append_fit: bool = False,
    xmax: Optional[float] = None,
    fit_range: Tuple[float, float] = (10.0, 100.0),
) -> PointSeries:
    """
    Ratio h1 / h2 with uncorrelated error propagation.

    Binnings may differ: for every bin of ``h1`` the bin of ``h2`` containing
    its center is used. Bins where h2 <= 0 (or outside h2) are skipped.

    Parameters
    ----------
    h1, h2 : Histogram1D
        Numerator and denominator
    name : str
        Name of the returned series
    append_fit : bool
        Attach a constant fit over ``fit_range``
    xmax : float, optional
        Skip bins with centers above this value

    Returns
    -------
    PointSeries
        err**2 = (e1 / h2)**2 + (h1 * e2 / h2**2)**2
    """
    xs: List[float] = []
    ys: List[float] = []
    xerrs: List[float] = []
    yerrs: List[float] = []
    e1 = h1.errors
    e2 = h2.errors
    for i, center in enumerate(h1.centers):
        if xmax is not None and center > xmax:
            continue
        j = h2.find_bin(center)
        if j < 0 or h2.contents[j] <= 0:
            continue
        denominator = h2.contents[j]
        a = e1[i] / denominator
        b = h1.contents[i] * e2[j] / denominator ** 2 if e2[j] > 0 else 0.0
        xs.append(center)
        ys.append(h1.contents[i] / denominator)
        xerrs.append(0.5 * h1.widths[i])
        yerrs.append(math.sqrt(a * a + b * b))
    series = PointSeries(x=xs, y=ys, x_err=xerrs, y_err=yerrs, name=name or f"{h1.name}_over_{h2.name}")
    if append_fit:
        series.fit = fit_constant(series, fit_range)
    return series


def flow_coefficient(
    in_plane: Histogram1D,
    out_of_plane: Histogram1D,
    resolution: float,
    name: str = "v2",
) -> PointSeries:
    """
    Elliptic flow coefficient from in-plane and out-of-plane yields.

    v2 = pi / (4 R) * (in - out) / (in + out), with error
    pi / (4 R) * 2 * sqrt(out**2 e_in**2 + in**2 e_out**2) / (in + out)**2.
    Bins with out <= 0 or in + out == 0 are skipped.
    """
    if resolution <= 0:
        raise ValueError("Event-plane resolution must be positive.")
    prefactor = math.pi / (4.0 * resolution)
    xs: List[float] = []
    ys: List[float] = []
    xerrs: List[float] = []
    yerrs: List[float] = []
    e_in = in_plane.errors
    e_out = out_of_plane.errors
    for i, center in enumerate(in_plane.centers):
        j = out_of_plane.find_bin(center)
        if j < 0:
            continue
        yield_in = in_plane.contents[i]
        yield_out = out_of_plane.contents[j]
        total = yield_in + yield_out
        if yield_out <= 0 or total == 0:
            continue
        xs.append(center)
        ys.append(prefactor * (yield_in - yield_out) / total)
        xerrs.append(0.5 * in_plane.widths[i])
        yerrs.append(
            prefactor * 2.0
            * math.sqrt(yield_out ** 2 * e_in[i] ** 2 + yield_in ** 2 * e_out[j] ** 2)
            / total ** 2
        )
    return PointSeries(x=xs, y=ys, x_err=xerrs, y_err=yerrs, name=name)


@dataclass
class RunningProfile:
    """
    Per-bin weighted mean and spread of values filled over repeated runs.

    Used to collect unfolded spectra and in/out ratios from runs with
    different configurations; the spread is the systematic variation.
    """

    edges: np.ndarray
    name: str = ""
    sum_w: np.ndarray = field(init=False)
    sum_wy: np.ndarray = field(init=False)
    sum_wy2: np.ndarray = field(init=False)
    sum_w2: np.ndarray = field(init=False)
    entries: int = field(init=False, default=0)

    def __post_init__(self):
        self.edges = np.asarray(self.edges, dtype=float)
        n = self.edges.size - 1
        self.sum_w = np.zeros(n)
        self.sum_wy = np.zeros(n)
        self.sum_wy2 = np.zeros(n)
        self.sum_w2 = np.zeros(n)

    def fill(self, x: float, y: float, weight: float = 1.0) -> None:
        idx = int(np.searchsorted(self.edges, x, side="right")) - 1
        if idx < 0 or idx >= self.sum_w.size:
            return
        self.sum_w[idx] += weight
        self.sum_wy[idx] += weight * y
        self.sum_wy2[idx] += weight * y * y
        self.sum_w2[idx] += weight * weight
        self.entries += 1

    def fill_spectrum(self, spectrum: Histogram1D) -> None:
        """Fill every bin with a positive error, weighted by 1 / error**2."""
        errors = spectrum.errors
        for center, value, err in zip(spectrum.centers, spectrum.contents, errors):
            if err > 0:
                self.fill(center, value, 1.0 / (err * err))

    def fill_ratio(self, in_plane: Histogram1D, out_of_plane: Histogram1D) -> None:
        """Fill in / out for bins with a positive out-of-plane yield."""
        for center, yin, yout in zip(in_plane.centers, in_plane.contents, out_of_plane.contents):
            if yout > 0:
                self.fill(center, yin / yout)

    @property
    def means(self) -> np.ndarray:
        out = np.zeros_like(self.sum_w)
        filled = self.sum_w > 0
        out[filled] = self.sum_wy[filled] / self.sum_w[filled]
        return out

    @property
    def spread(self) -> np.ndarray:
        out = np.zeros_like(self.sum_w)
        filled = self.sum_w > 0
        mean = self.means[filled]
        out[filled] = np.sqrt(np.maximum(self.sum_wy2[filled] / self.sum_w[filled] - mean ** 2, 0.0))
        return out

    def to_histogram(self) -> Histogram1D:
        """Means with the spread as error."""
        return Histogram1D(
            edges=self.edges.copy(),
            contents=self.means,
            variances=self.spread ** 2,
            name=self.name,
            entries=self.entries,
        )
