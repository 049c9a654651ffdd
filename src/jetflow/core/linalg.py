"""Small linear algebra helpers shared by the unfolding back-ends."""

from __future__ import annotations

from typing import Callable, Optional

import numpy as np
from numpy.typing import NDArray


def pearson_coefficients(covariance: Optional[NDArray]) -> Optional[NDArray]:
    """
    Correlation matrix C_ij / sqrt(C_ii C_jj) of a covariance matrix.

    Entries whose diagonal partners are zero are set to 0. Returns None for a
    missing, empty or non-finite covariance, which callers treat as
    "no reliable error estimate".
    """
    if covariance is None:
        return None
    cov = np.asarray(covariance, dtype=float)
    if cov.size == 0 or cov.ndim != 2 or not np.all(np.isfinite(cov)):
        return None
    diag = np.diag(cov)
    pearson = np.zeros_like(cov)
    for i in range(cov.shape[0]):
        for j in range(cov.shape[1]):
            if diag[i] != 0.0 and diag[j] != 0.0:
                pearson[i, j] = cov[i, j] / np.sqrt(diag[i] * diag[j])
    return pearson


def curvature_matrix(n: int, tau: float = 1e-5) -> NDArray:
    """
    Second-derivative regularization matrix used by the SVD inversion.

    -2 on the diagonal, 1 on the off-diagonals, -1 in the two corners and a
    small ``tau`` added to the diagonal so the matrix is invertible.
    """
    if n < 2:
        raise ValueError("Curvature matrix needs at least two bins.")
    c = np.zeros((n, n))
    for i in range(n):
        if i > 0:
            c[i, i - 1] = 1.0
        if i < n - 1:
            c[i, i + 1] = 1.0
        c[i, i] = -2.0
    c[0, 0] = -1.0
    c[n - 1, n - 1] = -1.0
    c += tau * np.eye(n)
    return c


def numerical_hessian(
    gradient: Callable[[NDArray], NDArray],
    x: NDArray,
    rel_step: float = 1e-5,
) -> NDArray:
    """Symmetrized central-difference Jacobian of an analytic gradient."""
    x = np.asarray(x, dtype=float)
    n = x.size
    hess = np.zeros((n, n))
    for i in range(n):
        step = rel_step * abs(x[i]) if x[i] != 0 else rel_step
        up = x.copy()
        down = x.copy()
        up[i] += step
        down[i] -= step
        hess[:, i] = (gradient(up) - gradient(down)) / (2.0 * step)
    return 0.5 * (hess + hess.T)


def is_positive_definite(matrix: NDArray) -> bool:
    try:
        np.linalg.cholesky(matrix)
    except np.linalg.LinAlgError:
        return False
    return True
