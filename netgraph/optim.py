"""Optimizers.

``step`` takes parameters and gradients keyed ``node id -> key -> array``
and returns new parameter arrays for every entry that has a gradient. The
inputs are left untouched.
"""
from __future__ import annotations
from typing import Dict

import numpy as np

Parameters = Dict[str, Dict[str, np.ndarray]]


class Optimizer:
    def __init__(self, lr: float):
        self.lr = lr
        self.weight_decay = 0.0
        self.clip_norm = None

    def configure(self, weight_decay: float = 0.0, clip_norm: float | None = None):
        self.weight_decay = weight_decay
        self.clip_norm = clip_norm
        return self

    def _apply_regularization(self, p, g):
        if self.weight_decay > 0:
            g = g + self.weight_decay * p
        if self.clip_norm is not None:
            norm = np.linalg.norm(g)
            if norm > self.clip_norm and norm > 0:
                g = g * (self.clip_norm / norm)
        return g

    def step(self, parameters: Parameters, gradients: Parameters) -> Parameters:
        updated = {}
        for node_id, grads in gradients.items():
            updated[node_id] = {}
            for key, g in grads.items():
                p = parameters[node_id][key]
                g = self._apply_regularization(p, g)
                updated[node_id][key] = self._update((node_id, key), p, g).astype(p.dtype, copy=False)
        return updated

    def _update(self, slot, p, g):
        raise NotImplementedError

    def reset(self):
        pass


class SGD(Optimizer):
    def __init__(self, lr=0.01, momentum=0.0):
        super().__init__(lr)
        self.momentum = momentum
        self.v = {}

    def _update(self, slot, p, g):
        if self.momentum > 0:
            v = self.momentum * self.v.get(slot, 0) - self.lr * g
            self.v[slot] = v
            return p + v
        return p - self.lr * g

    def reset(self):
        self.v = {}


class Adam(Optimizer):
    def __init__(self, lr=0.001, beta1=0.9, beta2=0.999, eps=1e-8):
        super().__init__(lr)
        self.beta1 = beta1; self.beta2 = beta2; self.eps = eps
        self.m = {}; self.v = {}; self.t = 0

    def step(self, parameters, gradients):
        self.t += 1
        return super().step(parameters, gradients)

    def _update(self, slot, p, g):
        m = self.beta1 * self.m.get(slot, np.zeros_like(g)) + (1 - self.beta1) * g
        v = self.beta2 * self.v.get(slot, np.zeros_like(g)) + (1 - self.beta2) * (g * g)
        self.m[slot] = m; self.v[slot] = v
        m_hat = m / (1 - self.beta1 ** self.t)
        v_hat = v / (1 - self.beta2 ** self.t)
        return p - self.lr * m_hat / (np.sqrt(v_hat) + self.eps)

    def reset(self):
        self.m = {}; self.v = {}; self.t = 0


NAME2OPT = {'sgd': SGD, 'adam': Adam}
