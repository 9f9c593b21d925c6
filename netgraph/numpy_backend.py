"""NumPy implementation of the backend interface.

Spatial buffers are laid out (batch, height, width, channels). Convolution
uses im2col + GEMM; the col2im scatter in the convolution backward pass is
compiled with numba unless NETGRAPH_DISABLE_NUMBA=1.
"""
from __future__ import annotations
import os
from typing import Any, Dict, Optional, Tuple

import numpy as np
from numba import njit

from .backend import Backend
from .errors import ExecutionError
from .layers import LayerKind

USE_NUMBA = os.environ.get('NETGRAPH_DISABLE_NUMBA', '0') != '1'

MAX_BUFFER_DIMS = 4


# ============================================================================
# im2col / col2im
# ============================================================================

def im2col(x_padded: np.ndarray, kh: int, kw: int, stride_y: int, stride_x: int,
           out_h: int, out_w: int) -> np.ndarray:
    """Extract patches using NumPy stride tricks."""
    batch, _, _, c = x_padded.shape
    cols = np.lib.stride_tricks.as_strided(
        x_padded,
        shape=(batch, out_h, out_w, kh, kw, c),
        strides=(x_padded.strides[0], stride_y * x_padded.strides[1],
                 stride_x * x_padded.strides[2], x_padded.strides[1],
                 x_padded.strides[2], x_padded.strides[3])
    )
    return cols.reshape(batch * out_h * out_w, kh * kw * c)


@njit(cache=False)
def _col2im_numba(dcols, dx_padded, out_h, out_w, kh, kw, stride_y, stride_x):
    batch = dx_padded.shape[0]
    c = dx_padded.shape[3]
    for n in range(batch):
        for i in range(out_h):
            for j in range(out_w):
                row = (n * out_h + i) * out_w + j
                for a in range(kh):
                    for b in range(kw):
                        base = (a * kw + b) * c
                        for ch in range(c):
                            dx_padded[n, i * stride_y + a, j * stride_x + b, ch] += dcols[row, base + ch]


def _col2im_numpy(dcols, dx_padded, out_h, out_w, kh, kw, stride_y, stride_x):
    batch, _, _, c = dx_padded.shape
    dcols_r = dcols.reshape(batch, out_h, out_w, kh, kw, c)
    for i in range(out_h):
        i_pos = i * stride_y
        for j in range(out_w):
            j_pos = j * stride_x
            dx_padded[:, i_pos:i_pos + kh, j_pos:j_pos + kw, :] += dcols_r[:, i, j]


def col2im(dcols: np.ndarray, padded_shape, out_h: int, out_w: int, kh: int, kw: int,
           stride_y: int, stride_x: int) -> np.ndarray:
    dx_padded = np.zeros(padded_shape, dtype=dcols.dtype)
    if USE_NUMBA:
        _col2im_numba(np.ascontiguousarray(dcols), dx_padded, out_h, out_w, kh, kw, stride_y, stride_x)
    else:
        _col2im_numpy(dcols, dx_padded, out_h, out_w, kh, kw, stride_y, stride_x)
    return dx_padded


def _spatial(x, node):
    return x.reshape(x.shape[0], node['input_height'], node['input_width'], node['input_channels'])


# ============================================================================
# Layer computations: forward(node, x, params, state, training) -> (y, updates)
#                     backward(node, x, y, dy, params, state) -> (dx, grads)
# ============================================================================

def linear_forward(node, x, params, state, training):
    x2 = x.reshape(x.shape[0], -1)
    return x2 @ params['weights'].T + params['bias'], {}


def linear_backward(node, x, y, dy, params, state):
    x2 = x.reshape(x.shape[0], -1)
    dy2 = dy.reshape(dy.shape[0], -1)
    grads = {'weights': dy2.T @ x2, 'bias': dy2.sum(axis=0)}
    return (dy2 @ params['weights']).reshape(x.shape), grads


def relu_forward(node, x, params, state, training):
    return np.maximum(0, x), {}


def relu_backward(node, x, y, dy, params, state):
    return dy * (x > 0), {}


def logistic_forward(node, x, params, state, training):
    return 1 / (1 + np.exp(-np.clip(x, -500, 500))), {}


def logistic_backward(node, x, y, dy, params, state):
    return dy * y * (1 - y), {}


def tanh_forward(node, x, params, state, training):
    return np.tanh(x), {}


def tanh_backward(node, x, y, dy, params, state):
    return dy * (1 - y ** 2), {}


def softmax_forward(node, x, params, state, training):
    channels = node.get('output_channels', 1)
    planar = x.reshape(x.shape[0], channels, -1)
    e = np.exp(planar - planar.max(axis=-1, keepdims=True))
    return (e / e.sum(axis=-1, keepdims=True)).reshape(x.shape), {}


def softmax_backward(node, x, y, dy, params, state):
    # paired with the softmax cross-entropy loss, whose gradient is already
    # taken with respect to the softmax input
    return dy, {}


def dropout_forward(node, x, params, state, training):
    if not training:
        return x, {}
    mask = state.get('mask')
    if mask is None or mask.shape != x.shape:
        raise ExecutionError(f"Dropout {node['id']!r} ran forward without a prepared mask for shape {x.shape}")
    return x * mask, {}


def dropout_backward(node, x, y, dy, params, state):
    return dy * state['mask'], {}


def convolutional_forward(node, x, params, state, training):
    x4 = _spatial(x, node)
    kh, kw = node['kernel_height'], node['kernel_width']
    pad_y, pad_x = node['pad_y'], node['pad_x']
    out_h, out_w = node['output_height'], node['output_width']
    x_p = np.pad(x4, ((0, 0), (pad_y, pad_y), (pad_x, pad_x), (0, 0)), mode='constant')
    cols = im2col(x_p, kh, kw, node['stride_y'], node['stride_x'], out_h, out_w)
    out = cols @ params['weights'].T + params['bias']
    return out.reshape(x.shape[0], out_h, out_w, node['num_kernels']), {}


def convolutional_backward(node, x, y, dy, params, state):
    x4 = _spatial(x, node)
    batch, h, w, c = x4.shape
    kh, kw = node['kernel_height'], node['kernel_width']
    pad_y, pad_x = node['pad_y'], node['pad_x']
    stride_y, stride_x = node['stride_y'], node['stride_x']
    out_h, out_w = node['output_height'], node['output_width']
    x_p = np.pad(x4, ((0, 0), (pad_y, pad_y), (pad_x, pad_x), (0, 0)), mode='constant')
    cols = im2col(x_p, kh, kw, stride_y, stride_x, out_h, out_w)
    dy2 = dy.reshape(batch * out_h * out_w, node['num_kernels'])
    grads = {'weights': dy2.T @ cols, 'bias': dy2.sum(axis=0)}
    dcols = dy2 @ params['weights']
    dx_p = col2im(dcols, x_p.shape, out_h, out_w, kh, kw, stride_y, stride_x)
    dx = dx_p[:, pad_y:pad_y + h, pad_x:pad_x + w, :]
    return dx.reshape(x.shape), grads


def _pool_argmax(node, x4):
    """Max and window index of every pooling window.

    Windows that run past the input (ceil rounding) see -inf padding.
    """
    batch, h, w, c = x4.shape
    kh, kw = node['kernel_height'], node['kernel_width']
    stride_y, stride_x = node['stride_y'], node['stride_x']
    pad_y, pad_x = node['pad_y'], node['pad_x']
    out_h, out_w = node['output_height'], node['output_width']
    pad_bottom = max(pad_y, (out_h - 1) * stride_y + kh - h - pad_y)
    pad_right = max(pad_x, (out_w - 1) * stride_x + kw - w - pad_x)
    x_p = np.pad(x4, ((0, 0), (pad_y, pad_bottom), (pad_x, pad_right), (0, 0)),
                 mode='constant', constant_values=-np.inf)
    y = np.full((batch, out_h, out_w, c), -np.inf, dtype=x4.dtype)
    idx = np.zeros((batch, out_h, out_w, c), dtype=np.int64)
    for a in range(kh):
        for b in range(kw):
            window = x_p[:, a:a + stride_y * (out_h - 1) + 1:stride_y, b:b + stride_x * (out_w - 1) + 1:stride_x, :]
            better = window > y
            y = np.where(better, window, y)
            idx = np.where(better, a * kw + b, idx)
    y[np.isneginf(y)] = 0
    return y, idx, x_p.shape


def max_pooling_forward(node, x, params, state, training):
    y, _, _ = _pool_argmax(node, _spatial(x, node))
    return y, {}


def max_pooling_backward(node, x, y, dy, params, state):
    x4 = _spatial(x, node)
    _, idx, padded_shape = _pool_argmax(node, x4)
    kh, kw = node['kernel_height'], node['kernel_width']
    stride_y, stride_x = node['stride_y'], node['stride_x']
    pad_y, pad_x = node['pad_y'], node['pad_x']
    out_h, out_w = node['output_height'], node['output_width']
    dy4 = dy.reshape(idx.shape)
    dx_p = np.zeros(padded_shape, dtype=dy.dtype)
    for a in range(kh):
        for b in range(kw):
            mask = idx == a * kw + b
            dx_p[:, a:a + stride_y * (out_h - 1) + 1:stride_y, b:b + stride_x * (out_w - 1) + 1:stride_x, :] += dy4 * mask
    _, h, w, _ = x4.shape
    return dx_p[:, pad_y:pad_y + h, pad_x:pad_x + w, :].reshape(x.shape), {}


def batch_normalization_forward(node, x, params, state, training):
    x2 = x.reshape(x.shape[0], -1)
    eps = node['epsilon']
    if training:
        mean = x2.mean(axis=0)
        var = x2.var(axis=0)
        f = node['average_factor']
        updates = {'means': (1 - f) * params['means'] + f * mean,
                   'variances': (1 - f) * params['variances'] + f * var}
    else:
        mean, var = params['means'], params['variances']
        updates = {}
    x_hat = (x2 - mean) / np.sqrt(var + eps)
    return (params['scale'] * x_hat + params['bias']).reshape(x.shape), updates


def batch_normalization_backward(node, x, y, dy, params, state):
    x2 = x.reshape(x.shape[0], -1)
    dy2 = dy.reshape(dy.shape[0], -1)
    n = x2.shape[0]
    mean = x2.mean(axis=0)
    std_inv = 1 / np.sqrt(x2.var(axis=0) + node['epsilon'])
    x_hat = (x2 - mean) * std_inv
    grads = {'scale': (dy2 * x_hat).sum(axis=0), 'bias': dy2.sum(axis=0)}
    dx_hat = dy2 * params['scale']
    dx = std_inv / n * (n * dx_hat - dx_hat.sum(axis=0) - x_hat * (dx_hat * x_hat).sum(axis=0))
    return dx.reshape(x.shape), grads


def _channel_window_sum(a, n):
    """Sum over a window of ``n // 2`` channels either side of each channel."""
    half = n // 2
    c = a.shape[-1]
    padded = np.pad(a, [(0, 0)] * (a.ndim - 1) + [(half + 1, half)])
    cs = np.cumsum(padded, axis=-1)
    return cs[..., 2 * half + 1:2 * half + 1 + c] - cs[..., :c]


def _lrn_scale(node, x4):
    return node['k'] + node['alpha'] / node['n'] * _channel_window_sum(x4 ** 2, node['n'])


def local_response_normalization_forward(node, x, params, state, training):
    x4 = _spatial(x, node)
    return (x4 * _lrn_scale(node, x4) ** -node['beta']).reshape(x.shape), {}


def local_response_normalization_backward(node, x, y, dy, params, state):
    x4 = _spatial(x, node)
    y4 = y.reshape(x4.shape)
    dy4 = dy.reshape(x4.shape)
    scale = _lrn_scale(node, x4)
    beta, alpha, n = node['beta'], node['alpha'], node['n']
    dx = dy4 * scale ** -beta - (2 * alpha * beta / n) * x4 * _channel_window_sum(dy4 * y4 / scale, n)
    return dx.reshape(x.shape), {}


FORWARD = {
    LayerKind.LINEAR: linear_forward,
    LayerKind.RELU: relu_forward,
    LayerKind.LOGISTIC: logistic_forward,
    LayerKind.TANH: tanh_forward,
    LayerKind.SOFTMAX: softmax_forward,
    LayerKind.DROPOUT: dropout_forward,
    LayerKind.CONVOLUTIONAL: convolutional_forward,
    LayerKind.MAX_POOLING: max_pooling_forward,
    LayerKind.BATCH_NORMALIZATION: batch_normalization_forward,
    LayerKind.LOCAL_RESPONSE_NORMALIZATION: local_response_normalization_forward,
}

BACKWARD = {
    LayerKind.LINEAR: linear_backward,
    LayerKind.RELU: relu_backward,
    LayerKind.LOGISTIC: logistic_backward,
    LayerKind.TANH: tanh_backward,
    LayerKind.SOFTMAX: softmax_backward,
    LayerKind.DROPOUT: dropout_backward,
    LayerKind.CONVOLUTIONAL: convolutional_backward,
    LayerKind.MAX_POOLING: max_pooling_backward,
    LayerKind.BATCH_NORMALIZATION: batch_normalization_backward,
    LayerKind.LOCAL_RESPONSE_NORMALIZATION: local_response_normalization_backward,
}


def _dispatch(table, node):
    try:
        return table[LayerKind(node['type'])]
    except (KeyError, ValueError):
        raise ExecutionError(f"Backend has no implementation for layer type {node['type']!r}") from None


class NumpyBackend(Backend):
    """CPU backend built on NumPy.

    ``live_handles`` counts buffers allocated and not yet released, which
    makes leaks visible.
    """

    def __init__(self, dtype=np.float32, seed: Optional[int] = None):
        self.dtype = np.dtype(dtype)
        self.rng = np.random.default_rng(seed)
        self.live_handles = 0

    def allocate(self, shape):
        self.live_handles += 1
        return np.zeros(shape, dtype=self.dtype)

    def release(self, handle):
        self.live_handles -= 1

    def supports_shape(self, shape):
        return 0 < len(shape) <= MAX_BUFFER_DIMS and all(d > 0 for d in shape)

    def assign(self, handle, value):
        value = np.asarray(value)
        if value.size != handle.size:
            raise ExecutionError(f"Cannot write {value.shape} into buffer of shape {handle.shape}")
        np.copyto(handle, value.reshape(handle.shape), casting='unsafe')
        return handle

    def accumulate(self, target, value):
        value = np.asarray(value)
        if value.size != target.size:
            raise ExecutionError(f"Cannot accumulate {value.shape} into {target.shape}")
        return target + value.reshape(target.shape).astype(target.dtype)

    def zeros_like(self, handle):
        return np.zeros_like(handle)

    def to_numpy(self, handle):
        return np.array(handle, copy=True)

    def from_numpy(self, array):
        array = np.asarray(array)
        return self.assign(self.allocate(array.shape), array)

    def has_prepare_forward(self, node):
        return node['type'] == LayerKind.DROPOUT.value

    def prepare_forward(self, node, shape, state):
        if not self.has_prepare_forward(node):
            return state
        if node.get('distribution', 'bernoulli') == 'gaussian':
            mask = self.rng.normal(1.0, np.sqrt(node['variance']), size=shape)
        else:
            p = node['probability']
            mask = (self.rng.random(shape) < p) / p
        return {**state, 'mask': mask.astype(self.dtype)}

    def forward(self, node, x, parameters, state, training):
        y, updates = _dispatch(FORWARD, node)(node, x, parameters, state, training)
        return y.astype(self.dtype, copy=False), updates

    def backward(self, node, x, y, dy, parameters, state):
        dx, grads = _dispatch(BACKWARD, node)(node, x, y, dy, parameters, state)
        return dx.astype(self.dtype, copy=False), grads
