"""
SVD unfolding with curvature regularization (Hocker-Kartvelishvili).

The response counts are rescaled by the measured errors and the problem is
solved for w = x / xini, the ratio of the unfolded spectrum to the starting
truth spectrum. The system is rotated by the inverse curvature matrix and
the singular value decomposition of the result is damped beyond the
regularization rank k:

    z_i = d_i * s_i / (s_i**2 + s_k**2)

Reference: A. Hocker, V. Kartvelishvili, NIM A 372 (1996) 469.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

import numpy as np
from numpy.typing import NDArray

from jetflow.core.errors import DimensionMismatchError
from jetflow.core.histogram import Histogram1D, Histogram2D
from jetflow.core.linalg import curvature_matrix


class ErrorTreatment(Enum):
    TOY = "toy"
    ANALYTIC = "analytic"


@dataclass
class LinearResponse:
    """
    Linear response built from a transposed counts matrix.

    Attributes
    ----------
    matrix : NDArray
        Counts, shape (n_rec, n_true)
    rec_edges, true_edges : NDArray
        Axis edges
    truth : NDArray, optional
        Truth spectrum; the true projection of ``matrix`` when not given
    """

    matrix: NDArray
    rec_edges: NDArray
    true_edges: NDArray
    truth: Optional[NDArray] = None

    @classmethod
    def from_histogram(
        cls,
        transposed: Histogram2D,
        truth: Optional[Histogram1D] = None,
    ) -> "LinearResponse":
        """Build from a histogram with rec on x and true on y."""
        if truth is not None and truth.n_bins != transposed.ny:
            raise DimensionMismatchError("Truth spectrum does not match the true axis of the response.")
        return cls(
            matrix=transposed.contents.copy(),
            rec_edges=transposed.x_edges.copy(),
            true_edges=transposed.y_edges.copy(),
            truth=None if truth is None else truth.contents.copy(),
        )

    @property
    def truth_vector(self) -> NDArray:
        if self.truth is not None:
            return self.truth
        return self.matrix.sum(axis=0)

    def probabilities(self) -> NDArray:
        """Counts divided by the truth of each true bin, shape (n_rec, n_true)."""
        truth = self.truth_vector
        probs = np.zeros_like(self.matrix)
        nonzero = truth != 0
        probs[:, nonzero] = self.matrix[:, nonzero] / truth[nonzero]
        return probs

    def apply_to_truth(self, spectrum: Histogram1D, name: str = "refolded") -> Histogram1D:
        """Fold a true-level spectrum through the response probabilities."""
        probs = self.probabilities()
        if spectrum.n_bins != probs.shape[1]:
            raise DimensionMismatchError("Spectrum does not match the true axis of the response.")
        return Histogram1D(
            edges=self.rec_edges.copy(),
            contents=probs @ spectrum.contents,
            variances=(probs ** 2) @ spectrum.variances,
            name=name,
        )


@dataclass
class SVDSolution:
    """Solution of one SVD inversion."""

    unfolded: NDArray
    covariance: NDArray
    singular_values: NDArray
    d_vector: NDArray
    kreg: int
    details: Dict = field(default_factory=dict)


class SVDUnfolding:
    """Regularized SVD inversion of a LinearResponse for one measured spectrum."""

    def __init__(self, response: LinearResponse, measured: Histogram1D, kreg: int):
        if measured.n_bins != response.matrix.shape[0]:
            raise DimensionMismatchError(
                f"Measured spectrum has {measured.n_bins} bins, response has "
                f"{response.matrix.shape[0]} rec bins"
            )
        if kreg < 1:
            raise ValueError("Regularization rank must be at least 1.")
        self.response = response
        self.measured = measured
        self.kreg = kreg

    def _linear_map(self):
        """Matrix M with unfolded = M @ measured, plus the SVD diagnostics."""
        a = self.response.matrix.astype(float).copy()
        n_true = a.shape[1]
        xini = self.response.truth_vector
        berr = self.measured.errors

        row_scale = np.zeros_like(berr)
        row_scale[berr > 0] = 1.0 / berr[berr > 0]
        # counts matrix: solving a @ w = b gives w = x / xini
        a = a * row_scale[:, None]

        c_inv = np.linalg.inv(curvature_matrix(n_true))
        u, s, vt = np.linalg.svd(a @ c_inv, full_matrices=False)
        if self.kreg > s.size:
            raise ValueError(f"Regularization rank {self.kreg} exceeds {s.size} singular values.")
        s_reg = s[self.kreg - 1]
        damping = s / (s ** 2 + s_reg ** 2)

        # x = xini * C^-1 V diag(damping) U^T diag(row_scale) b
        mapping = (xini[:, None] * (c_inv @ vt.T)) @ (damping[:, None] * u.T) @ np.diag(row_scale)
        d_vector = np.abs(u.T @ (self.measured.contents * row_scale))
        return mapping, s, d_vector

    def unfold(
        self,
        error_treatment: ErrorTreatment = ErrorTreatment.TOY,
        n_toys: int = 1000,
        seed: Optional[int] = None,
    ) -> SVDSolution:
        mapping, singular_values, d_vector = self._linear_map()
        measured = self.measured.contents
        unfolded = mapping @ measured

        if error_treatment is ErrorTreatment.ANALYTIC:
            covariance = mapping @ np.diag(self.measured.variances) @ mapping.T
        else:
            rng = np.random.default_rng(seed)
            sigma = self.measured.errors
            toys = measured[None, :] + sigma[None, :] * rng.standard_normal((n_toys, measured.size))
            unfolded_toys = toys @ mapping.T
            covariance = np.cov(unfolded_toys, rowvar=False)
            covariance = np.atleast_2d(covariance)

        return SVDSolution(
            unfolded=unfolded,
            covariance=covariance,
            singular_values=singular_values,
            d_vector=d_vector,
            kreg=self.kreg,
            details={
                "error_treatment": error_treatment.value,
                "n_toys": n_toys if error_treatment is ErrorTreatment.TOY else 0,
            },
        )
