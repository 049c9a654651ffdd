import numpy as np
import pytest

from jetflow.core.histogram import Histogram1D, Histogram2D


def test_histogram_defaults_and_errors():
    hist = Histogram1D(edges=[0.0, 1.0, 3.0], contents=[4.0, 9.0], name="h")
    assert hist.n_bins == 2
    np.testing.assert_allclose(hist.centers, [0.5, 2.0])
    np.testing.assert_allclose(hist.widths, [1.0, 2.0])
    np.testing.assert_allclose(hist.errors, [2.0, 3.0])
    assert hist.integral() == pytest.approx(13.0)


def test_edges_must_increase():
    with pytest.raises(ValueError):
        Histogram1D(edges=[0.0, 2.0, 1.0])
    with pytest.raises(ValueError):
        Histogram1D(edges=[0.0, 1.0], contents=[1.0, 2.0])


def test_find_bin_is_half_open():
    hist = Histogram1D(edges=[0.0, 1.0, 2.0])
    assert hist.find_bin(0.0) == 0
    assert hist.find_bin(1.0) == 1
    assert hist.find_bin(2.0) == -1
    assert hist.find_bin(-0.1) == -1


def test_fill_counts_entries_outside_range():
    hist = Histogram1D(edges=[0.0, 1.0, 2.0])
    hist.fill(0.5, 2.0)
    hist.fill(5.0)
    assert hist.entries == 2
    np.testing.assert_allclose(hist.contents, [2.0, 0.0])
    np.testing.assert_allclose(hist.variances, [4.0, 0.0])


def test_copy_is_independent():
    hist = Histogram1D(edges=[0.0, 1.0, 2.0], contents=[1.0, 2.0], name="orig")
    clone = hist.copy(name="clone")
    clone.contents[0] = 10.0
    assert hist.contents[0] == 1.0
    assert clone.name == "clone"


def test_divide_by_zero_bin_gives_zero():
    num = Histogram1D(edges=[0.0, 1.0, 2.0], contents=[4.0, 6.0])
    den = Histogram1D(edges=[0.0, 1.0, 2.0], contents=[2.0, 0.0], variances=[0.0, 0.0])
    out = num.divide(den)
    np.testing.assert_allclose(out.contents, [2.0, 0.0])
    assert np.all(np.isfinite(out.variances))


class TestHistogram2D:
    def _matrix(self):
        return Histogram2D(
            x_edges=[0.0, 1.0, 2.0, 3.0],
            y_edges=[0.0, 10.0, 20.0],
            contents=np.arange(6, dtype=float).reshape(3, 2),
            name="m",
        )

    def test_shape_and_projections(self):
        m = self._matrix()
        assert (m.nx, m.ny) == (3, 2)
        np.testing.assert_allclose(m.projection_x().contents, [1.0, 5.0, 9.0])
        np.testing.assert_allclose(m.projection_y().contents, [6.0, 9.0])
        np.testing.assert_allclose(m.projection_y(1, 2).contents, [6.0, 8.0])

    def test_projection_range_validated(self):
        with pytest.raises(ValueError):
            self._matrix().projection_y(2, 3)

    def test_transpose_swaps_axes(self):
        t = self._matrix().transpose()
        assert (t.nx, t.ny) == (2, 3)
        np.testing.assert_allclose(t.x_edges, [0.0, 10.0, 20.0])
        assert t.contents[1, 2] == 5.0

    def test_dict_round_trip_keeps_variances(self):
        m = self._matrix()
        m.variances[0, 0] = 0.25
        back = Histogram2D.from_dict(m.to_dict())
        np.testing.assert_allclose(back.contents, m.contents)
        assert back.variances[0, 0] == 0.25
