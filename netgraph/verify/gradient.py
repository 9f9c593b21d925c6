"""Central-difference gradient checking for a bound training traversal."""
from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Any, Dict, List

import numpy as np

from ..errors import ExecutionError
from ..layers import PassType


@dataclass(frozen=True)
class GradientCheck:
    node_id: str
    key: str
    analytic: np.ndarray
    numeric: np.ndarray

    def max_error(self) -> float:
        """Largest element-wise error, relative once gradients exceed 1."""
        diff = np.abs(self.analytic - self.numeric)
        scale = np.maximum(1.0, np.abs(self.analytic) + np.abs(self.numeric))
        return float(np.max(diff / scale)) if diff.size else 0.0


def check_gradients(context, bound, inputs: Dict[str, Any], epsilon: float = 1e-4) -> List[GradientCheck]:
    """Compare backpropagated parameter gradients with finite differences.

    ``inputs`` must carry the targets of every output stream. Prepare hooks
    run once, so dropout masks are the same for every perturbed forward.
    """
    if bound.plan.pass_type is not PassType.TRAINING:
        raise ExecutionError("gradient checks need a training traversal")
    backend = context.backend
    traversed = context.traverse(bound, inputs)
    checks = []
    for node_id, grads in traversed.parameter_gradients.items():
        for key, grad in grads.items():
            analytic = backend.to_numpy(grad) - backend.to_numpy(bound.parameter_gradients[node_id][key])
            base = backend.to_numpy(traversed.parameters[node_id][key])
            numeric = np.zeros_like(base, dtype=np.float64)

            def loss_at(value):
                handle = bound.scope.track(backend.from_numpy(value))
                params = {**traversed.parameters, node_id: {**traversed.parameters[node_id], key: handle}}
                return context.forward(replace(traversed, parameters=params), inputs).loss

            for i in range(base.size):
                shifted = base.copy()
                shifted.flat[i] = base.flat[i] + epsilon
                plus = loss_at(shifted)
                shifted.flat[i] = base.flat[i] - epsilon
                minus = loss_at(shifted)
                numeric.flat[i] = (plus - minus) / (2 * epsilon)
            checks.append(GradientCheck(node_id, key, analytic, numeric))
    return checks
