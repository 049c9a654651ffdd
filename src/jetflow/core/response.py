"""Response matrix construction utilities."""

from __future__ import annotations

from typing import Optional

import numpy as np

from jetflow.core.binning import BinningScheme, as_edges
from jetflow.core.errors import DimensionMismatchError
from jetflow.core.histogram import Histogram1D, Histogram2D

ROUNDING_TOLERANCE = 1e-8


def compose_responses(
    delta_pt: Histogram2D,
    detector_response: Histogram2D,
    name: str = "",
) -> Histogram2D:
    """
    Compose background fluctuations and detector smearing into one response.

    ``result[t, r] = sum_k delta_pt[t, k] * detector_response[k, r]``

    Raises
    ------
    DimensionMismatchError
        If the rec axis of ``delta_pt`` does not match the true axis of
        ``detector_response``.
    """
    if delta_pt.ny != detector_response.nx:
        raise DimensionMismatchError(
            f"Cannot compose {delta_pt.name!r} ({delta_pt.nx}x{delta_pt.ny}) with "
            f"{detector_response.name!r} ({detector_response.nx}x{detector_response.ny})"
        )
    a, b = delta_pt.contents, detector_response.contents
    contents = a @ b
    variances = delta_pt.variances @ (b ** 2) + (a ** 2) @ detector_response.variances
    return Histogram2D(
        x_edges=delta_pt.x_edges.copy(),
        y_edges=detector_response.y_edges.copy(),
        contents=contents,
        variances=variances,
        name=name or f"{delta_pt.name}_x_{detector_response.name}",
    )


def build_delta_pt_response(
    distribution: Histogram1D,
    edges=None,
    avoid_rounding_error: bool = False,
    name: str = "",
) -> Histogram2D:
    """
    Build a square delta-pt response from a (rec - true) distribution.

    Cell (true=j, rec=k) takes the distribution's content at the difference
    of the bin centers ``center_k - center_j``; differences outside the
    distribution range give 0.

    Parameters
    ----------
    distribution : Histogram1D
        Distribution of rec - true momentum differences
    edges : BinningScheme or sequence of float, optional
        Grid of the square matrix; the distribution's own edges by default
    avoid_rounding_error : bool
        For every true slice, once a rec bin above the diagonal evaluates to
        |value| < 1e-8 all following rec bins are set to 0
    name : str
        Name of the result
    """
    grid = distribution.edges.copy() if edges is None else as_edges(edges)
    centers = 0.5 * (grid[:-1] + grid[1:])
    n = centers.size
    contents = np.zeros((n, n))
    variances = np.zeros((n, n))
    for j in range(n):
        skip = False
        for k in range(n):
            if skip:
                continue
            idx = distribution.find_bin(centers[k] - centers[j])
            value = distribution.contents[idx] if idx >= 0 else 0.0
            contents[j, k] = value
            if idx >= 0:
                variances[j, k] = distribution.variances[idx]
            if avoid_rounding_error and k > j and abs(value) < ROUNDING_TOLERANCE:
                skip = True
    return Histogram2D(
        x_edges=grid,
        y_edges=grid.copy(),
        contents=contents,
        variances=variances,
        name=name or f"response_from_{distribution.name}",
    )


def unity_response(
    true_binning: BinningScheme,
    rec_binning: BinningScheme,
    name: str = "unity_response",
) -> Histogram2D:
    """Response with 1 where the true and rec bin indices match, 0 elsewhere."""
    response = Histogram2D(
        x_edges=as_edges(true_binning),
        y_edges=as_edges(rec_binning),
        name=name,
    )
    n = min(response.nx, response.ny)
    response.contents[np.arange(n), np.arange(n)] = 1.0
    response.variances[:] = 0.0
    return response


def kinematic_efficiency(response: Histogram2D, name: str = "") -> Histogram1D:
    """Projection of the response on the true axis, errors suppressed."""
    efficiency = response.projection_x(name=name or f"kin_eff_{response.name}")
    efficiency.variances = np.zeros(efficiency.n_bins)
    return efficiency


def transpose_with_prior(
    response: Histogram2D,
    prior: Histogram1D,
    name: str = "",
) -> Histogram2D:
    """
    Transposed response (x = rec, y = true) whose true slices sum to the prior.

    Every true slice is normalized to unit sum and multiplied by the prior
    content of that true bin. Empty slices stay empty.
    """
    if prior.n_bins != response.nx:
        raise DimensionMismatchError(
            f"Prior {prior.name!r} has {prior.n_bins} bins, response has {response.nx} true bins"
        )
    transposed = response.transpose(name=name or f"{response.name}_transpose_prior")
    sums = transposed.contents.sum(axis=0)
    for t in range(transposed.ny):
        if sums[t] <= 0:
            continue
        factor = prior.contents[t] / sums[t]
        transposed.contents[:, t] *= factor
        transposed.variances[:, t] *= factor * factor
    return transposed


def fold(
    spectrum: Histogram1D,
    response: Histogram2D,
    efficiency: Optional[Histogram1D] = None,
    name: str = "",
) -> Histogram1D:
    """
    Forward-fold a true-level spectrum to the rec axis.

    ``folded[r] = sum_t spectrum[t] * eff[t] * R[t, r]``, with the variance
    propagated from the spectrum only.
    """
    if spectrum.n_bins != response.nx:
        raise DimensionMismatchError(
            f"Spectrum {spectrum.name!r} has {spectrum.n_bins} bins, response has {response.nx} true bins"
        )
    eff = np.ones(response.nx) if efficiency is None else efficiency.contents
    weighted = spectrum.contents * eff
    contents = weighted @ response.contents
    variances = (spectrum.variances * eff ** 2) @ (response.contents ** 2)
    return Histogram1D(
        edges=response.y_edges.copy(),
        contents=contents,
        variances=variances,
        name=name or f"{spectrum.name}_folded",
    )
