"""Verify an imported model against the layer outputs of the framework it
came from.

The import data is ``{"model": description, "input": array,
"layer_outputs": [{"incoming", "id", "outgoing", "reference_output"}]}``.
Entries whose ``reference_output`` is ``None`` are skipped.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence

import numpy as np

from ..build import build_network, edges_to_roots_and_leaves
from ..errors import BindingError, BuildError
from ..layers import Description
from ..traverse import INPUT_STREAM, inference_traversal

logger = logging.getLogger(__name__)

RTOL = 1e-3
ATOL = 1e-3


@dataclass(frozen=True)
class Mismatch:
    layer_id: str
    input_snapshot: np.ndarray
    expected: np.ndarray
    actual: np.ndarray
    layer: Description


def _matches(expected: np.ndarray, actual: np.ndarray) -> bool:
    return expected.size == actual.size and np.allclose(actual, expected, rtol=RTOL, atol=ATOL)


def verify_model(context, description, input, layer_outputs: Sequence[Mapping[str, Any]]) -> List[Mismatch]:
    """Run ``description`` on ``input`` with batch size 1 and return one
    ``Mismatch`` per layer whose output differs from its reference."""
    network = build_network(description)
    if network.verification_failures:
        raise BuildError(network.verification_failures)
    roots, leaves = edges_to_roots_and_leaves(network.edges)
    if not roots:
        roots, leaves = network.roots_and_leaves()
    network = inference_traversal(network, {roots[0]: INPUT_STREAM}, {leaf: {} for leaf in leaves},
                                  save_gradients=True, batch_size=1)
    with context.resource_context() as scope:
        bound = context.bind(network, scope, 1)
        bound = context.traverse(bound, {INPUT_STREAM: np.asarray(input).reshape(1, -1)}, 'inference')
        saved = context.save_to_network(bound, save_gradients=True)

    node_buffers = saved.traversal.node_buffers
    mismatches = []
    for entry in layer_outputs:
        reference = entry.get('reference_output')
        if reference is None:
            continue
        layer_id = entry['id']
        if layer_id not in node_buffers:
            raise BindingError(f"layer output {layer_id!r} does not name a node of the network")
        expected = np.asarray(reference, dtype=np.float64).reshape(-1)
        actual = np.asarray(saved.buffers[node_buffers[layer_id]], dtype=np.float64).reshape(-1)
        if _matches(expected, actual):
            continue
        parents = saved.parents(layer_id)
        source = node_buffers[parents[0]] if parents else node_buffers[layer_id]
        mismatches.append(Mismatch(layer_id=layer_id,
                                   input_snapshot=saved.buffers[source].reshape(-1),
                                   expected=expected, actual=actual,
                                   layer=saved.id_to_node[layer_id]))
    if mismatches:
        logger.info("Import verification found %d mismatching layer(s)", len(mismatches))
    return mismatches


def verify_import(context, import_data: Dict[str, Any]) -> List[Mismatch]:
    return verify_model(context, import_data['model'], import_data['input'], import_data['layer_outputs'])
