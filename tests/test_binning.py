import numpy as np
import pytest
from scipy.integrate import quad

from jetflow.core.binning import (
    BinningScheme,
    merge_weight,
    normalize_columns,
    normalize_to_integral,
    rebin_1d,
    rebin_2d,
    resize_x_axis,
)
from jetflow.core.histogram import Histogram1D, Histogram2D


def test_binning_scheme_validation_and_clone():
    scheme = BinningScheme([20.0, 30.0, 50.0])
    assert scheme.n_bins == 2
    assert (scheme.low, scheme.high) == (20.0, 50.0)
    np.testing.assert_allclose(scheme.centers, [25.0, 40.0])
    clone = scheme.clone()
    clone.edges[0] = 0.0
    assert scheme.edges[0] == 20.0
    with pytest.raises(ValueError):
        BinningScheme([1.0, 1.0, 2.0])
    with pytest.raises(ValueError):
        BinningScheme([1.0])


def test_uniform_binning():
    scheme = BinningScheme.uniform(0.0, 10.0, 5)
    np.testing.assert_allclose(scheme.widths, np.full(5, 2.0))


def test_rebin_1d_assigns_by_center_and_drops_out_of_range():
    fine = Histogram1D(edges=np.arange(0.0, 7.0), contents=[1, 2, 3, 4, 5, 6], name="fine")
    coarse = rebin_1d(fine, [1.0, 3.0, 5.0])
    np.testing.assert_allclose(coarse.contents, [5.0, 9.0])
    np.testing.assert_allclose(coarse.variances, coarse.contents)


def test_rebin_1d_variance_zero_for_negative_content():
    fine = Histogram1D(edges=[0.0, 1.0, 2.0], contents=[-1.0, -2.0])
    coarse = rebin_1d(fine, BinningScheme([0.0, 2.0]))
    assert coarse.contents[0] == -3.0
    assert coarse.variances[0] == 0.0


def test_normalize_columns_sums_to_one_and_keeps_empty_slices():
    rng = np.random.default_rng(3)
    contents = rng.uniform(0.0, 5.0, size=(4, 6))
    contents[2] = 0.0
    matrix = Histogram2D(x_edges=np.arange(5.0), y_edges=np.arange(7.0), contents=contents)
    result = normalize_columns(matrix)
    assert result is matrix
    sums = matrix.contents.sum(axis=1)
    for t in (0, 1, 3):
        assert sums[t] == pytest.approx(1.0, abs=1e-9)
    assert np.all(matrix.contents[2] == 0.0)


def test_rebin_2d_preserves_normalized_slices():
    fine = Histogram2D(
        x_edges=np.arange(0.0, 5.0),
        y_edges=np.arange(0.0, 5.0),
        contents=np.array([
            [0.5, 0.5, 0.0, 0.0],
            [0.2, 0.6, 0.2, 0.0],
            [0.0, 0.2, 0.6, 0.2],
            [0.0, 0.0, 0.5, 0.5],
        ]),
    )
    coarse = rebin_2d(fine, [0.0, 2.0, 4.0], [0.0, 2.0, 4.0], weight_function=None)
    np.testing.assert_allclose(coarse.contents.sum(axis=1), [1.0, 1.0])
    # equal weights: average of the two fine slices
    assert coarse.contents[0, 0] == pytest.approx(0.5 * (1.0 + 0.8))


def test_rebin_2d_weights_fine_true_bins_by_merge_weight_integral():
    fine = Histogram2D(
        x_edges=[1.0, 2.0, 10.0],
        y_edges=[0.0, 1.0, 2.0],
        contents=np.array([[1.0, 0.0], [0.0, 1.0]]),
    )
    coarse = rebin_2d(fine, [1.0, 10.0], [0.0, 1.0, 2.0])
    w1, _ = quad(merge_weight, 1.0, 2.0)
    w2, _ = quad(merge_weight, 2.0, 10.0)
    assert coarse.contents[0, 0] == pytest.approx(w1 / (w1 + w2))
    assert coarse.contents[0].sum() == pytest.approx(1.0)


def test_resize_x_axis_copies_window():
    hist = Histogram1D(edges=np.arange(-5.0, 6.0), contents=np.arange(10.0), variances=np.full(10, 0.5))
    window = resize_x_axis(hist, 0, 3)
    np.testing.assert_allclose(window.edges, [0.0, 1.0, 2.0, 3.0])
    np.testing.assert_allclose(window.contents, [5.0, 6.0, 7.0])
    np.testing.assert_allclose(window.variances, [0.5, 0.5, 0.5])


def test_normalize_to_integral_per_unit_width():
    hist = Histogram1D(edges=[0.0, 1.0, 3.0], contents=[2.0, 2.0])
    unit = normalize_to_integral(hist)
    np.testing.assert_allclose(unit.contents, [0.5, 0.25])
    scaled = normalize_to_integral(hist, scale=2.0)
    np.testing.assert_allclose(scaled.contents, [1.0, 0.5])
