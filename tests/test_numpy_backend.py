"""Tests for the numpy backend kernels and buffer operations."""
import numpy as np
import pytest

from netgraph import layers
from netgraph.errors import ExecutionError
from netgraph.layers import Description
from netgraph.numpy_backend import NumpyBackend, _col2im_numba, _col2im_numpy, im2col


def test_col2im_numba_matches_numpy():
    rng = np.random.default_rng(0)
    padded_shape = (2, 7, 7, 3)
    out_h = out_w = 3
    dcols = rng.normal(size=(2 * out_h * out_w, 3 * 3 * 3))
    a = np.zeros(padded_shape)
    b = np.zeros(padded_shape)
    _col2im_numba(dcols, a, out_h, out_w, 3, 3, 2, 2)
    _col2im_numpy(dcols, b, out_h, out_w, 3, 3, 2, 2)
    np.testing.assert_allclose(a, b)


def test_im2col_patches():
    x = np.arange(16, dtype=np.float64).reshape(1, 4, 4, 1)
    cols = im2col(x, 2, 2, 2, 2, 2, 2)
    np.testing.assert_array_equal(cols[0], [0, 1, 4, 5])
    np.testing.assert_array_equal(cols[3], [10, 11, 14, 15])


def test_buffer_operations():
    backend = NumpyBackend(dtype=np.float64)
    handle = backend.allocate((2, 3))
    assert backend.live_handles == 1
    backend.assign(handle, np.arange(6))
    np.testing.assert_array_equal(backend.accumulate(handle, np.ones(6)), np.arange(6).reshape(2, 3) + 1)
    with pytest.raises(ExecutionError):
        backend.assign(handle, np.zeros(5))
    copy = backend.to_numpy(handle)
    copy[0, 0] = 100
    assert handle[0, 0] == 0
    backend.release(handle)
    assert backend.live_handles == 0


def test_supports_shape():
    backend = NumpyBackend()
    assert backend.supports_shape((1, 28, 28, 1))
    assert not backend.supports_shape((1, 2, 3, 4, 5))
    assert not backend.supports_shape((0, 3))


def test_unknown_layer_kind():
    backend = NumpyBackend()
    with pytest.raises(ExecutionError):
        backend.forward(Description(type='mystery'), np.zeros((1, 2)), {}, {}, False)


def test_multichannel_softmax_is_planar():
    backend = NumpyBackend(dtype=np.float64)
    node = layers.softmax(output_channels=2)[0]
    y, _ = backend.forward(node, np.array([[0.0, 0.0, 5.0, 5.0]]), {}, {}, False)
    np.testing.assert_allclose(y, [[0.5, 0.5, 0.5, 0.5]])
