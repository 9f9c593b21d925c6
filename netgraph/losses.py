"""Loss functions bound to network outputs."""
from __future__ import annotations
from dataclasses import dataclass

import numpy as np

from .layers import LayerKind
from . import utils


class Loss:
    def value(self, output, target) -> float:
        raise NotImplementedError

    def gradient(self, output, target):
        raise NotImplementedError


@dataclass(frozen=True)
class MSELoss(Loss):
    def value(self, output, target):
        target = np.asarray(target, dtype=output.dtype).reshape(output.shape)
        return float(np.mean((output - target) ** 2))

    def gradient(self, output, target):
        target = np.asarray(target, dtype=output.dtype).reshape(output.shape)
        return 2 * (output - target) / target.size


@dataclass(frozen=True)
class SoftmaxCrossEntropyLoss(Loss):
    """Cross entropy over softmax probabilities.

    The gradient is taken with respect to the softmax input; the softmax
    layer passes gradients through unchanged when paired with this loss.
    Targets may be one-hot rows or integer labels.
    """

    def _targets(self, output, target):
        target = np.asarray(target)
        probs = output.reshape(output.shape[0], -1)
        if target.ndim == 1 or (target.ndim == 2 and target.shape[1] == 1 and probs.shape[1] > 1):
            target = utils.one_hot(target.reshape(-1).astype(np.int64), probs.shape[1])
        return probs, target.reshape(probs.shape).astype(output.dtype)

    def value(self, output, target):
        probs, target = self._targets(output, target)
        return float(-np.mean(np.sum(target * np.log(probs + 1e-12), axis=1)))

    def gradient(self, output, target):
        probs, target = self._targets(output, target)
        return ((probs - target) / probs.shape[0]).reshape(output.shape)


def auto_bind_loss(node) -> Loss:
    """Default loss for an output node."""
    if node['type'] == LayerKind.SOFTMAX.value:
        return SoftmaxCrossEntropyLoss()
    return MSELoss()


NAME2LOSS = {
    'mse': MSELoss,
    'softmax': SoftmaxCrossEntropyLoss,
    'categorical_crossentropy': SoftmaxCrossEntropyLoss,
    'cce': SoftmaxCrossEntropyLoss,
}
