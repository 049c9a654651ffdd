"""
Histogram containers with per-bin variances.

Provides the one- and two-dimensional binned containers that every stage of
the unfolding chain exchanges:

- Histogram1D: contents and variances over (possibly non-uniform) edges
- Histogram2D: contents and variances over an x ("true" or angle) axis and
  a y ("reconstructed" or pt) axis

Bins are half-open intervals [low, high). Values outside the axis range fall
into implicit under/overflow and are dropped by ``fill``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import numpy as np
from numpy.typing import NDArray


def _validate_edges(edges: NDArray, axis: str = "x") -> NDArray:
    edges = np.asarray(edges, dtype=float)
    if edges.ndim != 1 or edges.size < 2:
        raise ValueError(f"{axis} edges must be a 1D array with at least two values")
    if np.any(np.diff(edges) <= 0):
        raise ValueError(f"{axis} edges must be strictly increasing")
    return edges


def _find_bin(edges: NDArray, value: float) -> int:
    idx = int(np.searchsorted(edges, value, side="right")) - 1
    if idx < 0 or idx >= edges.size - 1:
        return -1
    return idx


@dataclass
class Histogram1D:
    """
    One-dimensional histogram.

    Attributes
    ----------
    edges : NDArray
        Bin edges (n_bins + 1), strictly increasing
    contents : NDArray
        Bin contents; zeros if not provided
    variances : NDArray
        Per-bin variance (error squared); |contents| if not provided
    name : str
        Identifier used when the histogram is persisted
    title : str
        Human readable description
    entries : float
        Number of fills that produced the histogram (event counters)
    """

    edges: NDArray
    contents: Optional[NDArray] = None
    variances: Optional[NDArray] = None
    name: str = ""
    title: str = ""
    entries: float = 0.0

    def __post_init__(self):
        self.edges = _validate_edges(self.edges)
        n = self.edges.size - 1
        if self.contents is None:
            self.contents = np.zeros(n)
        else:
            self.contents = np.array(self.contents, dtype=float)
        if self.contents.shape != (n,):
            raise ValueError(
                f"Histogram {self.name!r}: {self.contents.shape[0]} contents for {n} bins"
            )
        if self.variances is None:
            self.variances = np.abs(self.contents)
        else:
            self.variances = np.array(self.variances, dtype=float)
        if self.variances.shape != (n,):
            raise ValueError(f"Histogram {self.name!r}: variances do not match bins")

    @property
    def n_bins(self) -> int:
        return self.edges.size - 1

    @property
    def centers(self) -> NDArray:
        return 0.5 * (self.edges[:-1] + self.edges[1:])

    @property
    def widths(self) -> NDArray:
        return np.diff(self.edges)

    @property
    def errors(self) -> NDArray:
        return np.sqrt(np.maximum(self.variances, 0.0))

    def integral(self) -> float:
        return float(np.sum(self.contents))

    def find_bin(self, value: float) -> int:
        """Index of the bin containing ``value``, -1 for under/overflow."""
        return _find_bin(self.edges, value)

    def fill(self, value: float, weight: float = 1.0) -> None:
        idx = self.find_bin(value)
        self.entries += 1
        if idx < 0:
            return
        self.contents[idx] += weight
        self.variances[idx] += weight * weight

    def copy(self, name: Optional[str] = None) -> "Histogram1D":
        return Histogram1D(
            edges=self.edges.copy(),
            contents=self.contents.copy(),
            variances=self.variances.copy(),
            name=self.name if name is None else name,
            title=self.title,
            entries=self.entries,
        )

    def scaled(self, factor: float) -> "Histogram1D":
        """Return a copy scaled by ``factor`` (variances by factor squared)."""
        out = self.copy()
        out.contents *= factor
        out.variances *= factor * factor
        return out

    def divide(self, other: "Histogram1D") -> "Histogram1D":
        """
        Bin-by-bin division with uncorrelated error propagation.

        Bins where the denominator is zero are set to zero.
        """
        self._check_compatible(other)
        out = self.copy()
        a, b = self.contents, other.contents
        nonzero = b != 0
        out.contents = np.zeros_like(a)
        out.variances = np.zeros_like(a)
        out.contents[nonzero] = a[nonzero] / b[nonzero]
        b2 = b[nonzero] ** 2
        out.variances[nonzero] = (
            self.variances[nonzero] * b2 + other.variances[nonzero] * a[nonzero] ** 2
        ) / (b2 * b2)
        return out

    def multiply(self, other: "Histogram1D") -> "Histogram1D":
        """Bin-by-bin product with uncorrelated error propagation."""
        self._check_compatible(other)
        out = self.copy()
        out.contents = self.contents * other.contents
        out.variances = (
            self.variances * other.contents ** 2 + other.variances * self.contents ** 2
        )
        return out

    def _check_compatible(self, other: "Histogram1D") -> None:
        if self.n_bins != other.n_bins:
            raise ValueError(
                f"Histograms {self.name!r} and {other.name!r} have different bin counts"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": "Histogram1D",
            "name": self.name,
            "title": self.title,
            "entries": self.entries,
            "edges": self.edges.tolist(),
            "contents": self.contents.tolist(),
            "variances": self.variances.tolist(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Histogram1D":
        return cls(
            edges=np.asarray(data["edges"], dtype=float),
            contents=np.asarray(data["contents"], dtype=float),
            variances=np.asarray(data["variances"], dtype=float),
            name=data.get("name", ""),
            title=data.get("title", ""),
            entries=float(data.get("entries", 0.0)),
        )


@dataclass
class Histogram2D:
    """
    Two-dimensional histogram, contents indexed as ``contents[x_bin, y_bin]``.

    For response matrices the x axis is the true (generator level) momentum
    and the y axis the reconstructed momentum. For the raw inputs the x axis
    is the angle relative to the event plane and the y axis the momentum.
    """

    x_edges: NDArray
    y_edges: NDArray
    contents: Optional[NDArray] = None
    variances: Optional[NDArray] = None
    name: str = ""
    title: str = ""

    def __post_init__(self):
        self.x_edges = _validate_edges(self.x_edges, "x")
        self.y_edges = _validate_edges(self.y_edges, "y")
        shape = (self.x_edges.size - 1, self.y_edges.size - 1)
        if self.contents is None:
            self.contents = np.zeros(shape)
        else:
            self.contents = np.array(self.contents, dtype=float)
        if self.contents.shape != shape:
            raise ValueError(
                f"Histogram {self.name!r}: contents shape {self.contents.shape} != {shape}"
            )
        if self.variances is None:
            self.variances = np.abs(self.contents)
        else:
            self.variances = np.array(self.variances, dtype=float)
        if self.variances.shape != shape:
            raise ValueError(f"Histogram {self.name!r}: variances do not match bins")

    @property
    def nx(self) -> int:
        return self.x_edges.size - 1

    @property
    def ny(self) -> int:
        return self.y_edges.size - 1

    @property
    def x_centers(self) -> NDArray:
        return 0.5 * (self.x_edges[:-1] + self.x_edges[1:])

    @property
    def y_centers(self) -> NDArray:
        return 0.5 * (self.y_edges[:-1] + self.y_edges[1:])

    def find_bin_x(self, value: float) -> int:
        return _find_bin(self.x_edges, value)

    def find_bin_y(self, value: float) -> int:
        return _find_bin(self.y_edges, value)

    def copy(self, name: Optional[str] = None) -> "Histogram2D":
        return Histogram2D(
            x_edges=self.x_edges.copy(),
            y_edges=self.y_edges.copy(),
            contents=self.contents.copy(),
            variances=self.variances.copy(),
            name=self.name if name is None else name,
            title=self.title,
        )

    def transpose(self, name: Optional[str] = None) -> "Histogram2D":
        return Histogram2D(
            x_edges=self.y_edges.copy(),
            y_edges=self.x_edges.copy(),
            contents=self.contents.T.copy(),
            variances=self.variances.T.copy(),
            name=self.name if name is None else name,
            title=self.title,
        )

    def projection_x(self, name: str = "") -> Histogram1D:
        """Sum over the y axis, one bin per x bin."""
        return Histogram1D(
            edges=self.x_edges.copy(),
            contents=self.contents.sum(axis=1),
            variances=self.variances.sum(axis=1),
            name=name or f"{self.name}_px",
        )

    def projection_y(
        self,
        first: int = 0,
        last: Optional[int] = None,
        name: str = "",
    ) -> Histogram1D:
        """
        Sum over x bins ``first`` through ``last`` (inclusive, 0-based).

        Without arguments the full x range is projected.
        """
        if last is None:
            last = self.nx - 1
        if not 0 <= first <= last < self.nx:
            raise ValueError(f"Invalid x bin range [{first}, {last}] for {self.nx} bins")
        return Histogram1D(
            edges=self.y_edges.copy(),
            contents=self.contents[first:last + 1].sum(axis=0),
            variances=self.variances[first:last + 1].sum(axis=0),
            name=name or f"{self.name}_py",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": "Histogram2D",
            "name": self.name,
            "title": self.title,
            "x_edges": self.x_edges.tolist(),
            "y_edges": self.y_edges.tolist(),
            "contents": self.contents.tolist(),
            "variances": self.variances.tolist(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Histogram2D":
        return cls(
            x_edges=np.asarray(data["x_edges"], dtype=float),
            y_edges=np.asarray(data["y_edges"], dtype=float),
            contents=np.asarray(data["contents"], dtype=float),
            variances=np.asarray(data["variances"], dtype=float),
            name=data.get("name", ""),
            title=data.get("title", ""),
        )
