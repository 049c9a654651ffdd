import numpy as np
import pytest

from jetflow.core.binning import BinningScheme, normalize_columns
from jetflow.core.errors import DimensionMismatchError
from jetflow.core.histogram import Histogram1D, Histogram2D
from jetflow.core.response import (
    build_delta_pt_response,
    compose_responses,
    fold,
    kinematic_efficiency,
    transpose_with_prior,
    unity_response,
)


def _square(contents, name=""):
    n = len(contents)
    return Histogram2D(
        x_edges=np.arange(n + 1.0),
        y_edges=np.arange(n + 1.0),
        contents=np.asarray(contents, dtype=float),
        name=name,
    )


def _gaussian_distribution(half_width=5):
    edges = np.arange(-half_width - 0.5, half_width + 1.0)
    centers = 0.5 * (edges[:-1] + edges[1:])
    return Histogram1D(edges=edges, contents=np.exp(-0.5 * (centers / 1.5) ** 2), name="dpt")


def test_compose_rejects_mismatched_axes():
    a = Histogram2D(x_edges=np.arange(4.0), y_edges=np.arange(3.0))
    b = Histogram2D(x_edges=np.arange(4.0), y_edges=np.arange(4.0))
    with pytest.raises(DimensionMismatchError):
        compose_responses(a, b)
    # also usable as a plain ValueError
    with pytest.raises(ValueError):
        compose_responses(a, b)


def test_compose_matches_matrix_product():
    a = _square([[1, 2, 0], [0, 1, 1], [3, 0, 1]])
    b = _square([[0.5, 0.5, 0], [0, 1, 0], [0.2, 0.3, 0.5]])
    np.testing.assert_allclose(compose_responses(a, b).contents, a.contents @ b.contents)


def test_compose_is_associative():
    a = _square([[1, 2, 0], [0, 1, 1], [3, 0, 1]])
    b = _square([[0.5, 0.5, 0], [0, 1, 0], [0.2, 0.3, 0.5]])
    c = _square([[2, 0, 1], [1, 1, 1], [0, 0, 4]])
    left = compose_responses(compose_responses(a, b), c)
    right = compose_responses(a, compose_responses(b, c))
    np.testing.assert_allclose(left.contents, right.contents)


def test_normalizing_after_composition_matches_prenormalized_composition():
    a = _square([[1, 2, 0], [0, 1, 1], [3, 0, 1]])
    b = normalize_columns(_square([[1, 1, 0], [0, 2, 0], [1, 1, 2]]))
    post = normalize_columns(compose_responses(a, b))
    pre = compose_responses(normalize_columns(a.copy()), b)
    np.testing.assert_allclose(post.contents, pre.contents, atol=1e-12)
    np.testing.assert_allclose(pre.contents.sum(axis=1), np.ones(3))


def test_delta_pt_response_of_symmetric_distribution():
    dist = _gaussian_distribution()
    response = build_delta_pt_response(dist)
    n = response.nx
    assert response.nx == response.ny == dist.n_bins
    np.testing.assert_allclose(np.diag(response.contents), np.full(n, dist.contents.max()))
    reflected = response.contents[::-1, ::-1]
    np.testing.assert_allclose(response.contents, reflected)


def test_delta_pt_response_on_external_grid():
    dist = _gaussian_distribution()
    grid = np.arange(0.0, 21.0)
    response = build_delta_pt_response(dist, edges=grid)
    assert response.nx == 20
    # differences beyond the distribution range evaluate to zero
    assert response.contents[0, 19] == 0.0
    assert response.contents[3, 4] == pytest.approx(dist.contents[dist.find_bin(1.0)])


def test_avoid_rounding_error_truncates_tail():
    edges = np.arange(-0.5, 6.0)
    dist = Histogram1D(edges=edges, contents=[1.0, 0.5, 0.0, 0.3, 0.0, 0.0])
    plain = build_delta_pt_response(dist)
    truncated = build_delta_pt_response(dist, avoid_rounding_error=True)
    assert plain.contents[0, 3] == pytest.approx(0.3)
    assert truncated.contents[0, 2] == 0.0
    assert truncated.contents[0, 3] == 0.0
    assert truncated.contents[0, 1] == pytest.approx(0.5)


def test_unity_response_rectangular():
    unity = unity_response(BinningScheme([0, 1, 2, 3]), BinningScheme([0, 1, 2]))
    np.testing.assert_allclose(unity.contents, [[1, 0], [0, 1], [0, 0]])


def test_kinematic_efficiency_has_no_errors():
    response = _square([[0.5, 0.25, 0.0], [0.1, 0.8, 0.1], [0.0, 0.0, 0.0]])
    eff = kinematic_efficiency(response)
    np.testing.assert_allclose(eff.contents, [0.75, 1.0, 0.0])
    assert np.all(eff.variances == 0.0)


def test_transpose_with_prior_scales_true_slices():
    response = _square([[2, 2, 0], [0, 1, 3], [0, 0, 0]])
    prior = Histogram1D(edges=np.arange(4.0), contents=[10.0, 20.0, 5.0])
    transposed = transpose_with_prior(response, prior)
    np.testing.assert_allclose(transposed.contents.sum(axis=0), [10.0, 20.0, 0.0])
    assert transposed.contents[0, 0] == pytest.approx(5.0)
    assert transposed.contents[2, 1] == pytest.approx(15.0)
    with pytest.raises(DimensionMismatchError):
        transpose_with_prior(response, Histogram1D(edges=[0.0, 1.0]))


def test_fold_with_efficiency():
    response = _square([[0.5, 0.5, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
    spectrum = Histogram1D(edges=np.arange(4.0), contents=[4.0, 2.0, 1.0])
    eff = Histogram1D(edges=np.arange(4.0), contents=[1.0, 0.5, 1.0])
    folded = fold(spectrum, response, eff)
    np.testing.assert_allclose(folded.contents, [2.0, 3.0, 1.0])
