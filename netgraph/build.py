"""Compile layer descriptions into a size-resolved network graph.

The builder never raises on a bad graph. It walks every description,
threading sizes forward, and records each problem it finds as a
``VerificationFailure`` so a caller can report them all at once. A network
with failures must not be planned or executed.
"""
from __future__ import annotations
import logging
import math
import numbers
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .layers import (
    DEFAULT_DIMENSION_OP,
    Description,
    LayerKind,
    ParameterType,
    get_parameter_descriptions,
)

logger = logging.getLogger(__name__)

SIZE_KEYS = ('size', 'width', 'height', 'channels')

# Layers whose output has exactly the dimensions of their input.
SHAPE_PRESERVING = frozenset({
    LayerKind.RELU, LayerKind.LOGISTIC, LayerKind.TANH, LayerKind.DROPOUT,
    LayerKind.BATCH_NORMALIZATION, LayerKind.LOCAL_RESPONSE_NORMALIZATION,
})


class FailureKind(str, Enum):
    DUPLICATE_ID = 'duplicate-id'
    UNKNOWN_TYPE = 'unknown-type'
    UNKNOWN_PARENT = 'unknown-parent'
    DISCONNECTED = 'disconnected'
    MULTIPLE_PARENTS = 'multiple-parents'
    SIZE_MISMATCH = 'size-mismatch'
    INVALID_SIZE = 'invalid-size'
    PARAMETER_SHAPE = 'parameter-shape'


@dataclass(frozen=True)
class VerificationFailure:
    node_id: str
    kind: FailureKind
    message: str


@dataclass(frozen=True, eq=False)
class Network:
    """A built network.

    Stages after the builder annotate it (``traversal``, ``batch_size``,
    saved ``buffers``/``gradients``) by returning a new Network.
    """
    id_to_node: Dict[str, Description]
    edges: Tuple[Tuple[str, str], ...]
    parameters: Dict[str, Dict[str, np.ndarray]] = field(default_factory=dict)
    verification_failures: Tuple[VerificationFailure, ...] = ()
    traversal: Optional[Any] = None
    batch_size: Optional[int] = None
    buffers: Dict[str, np.ndarray] = field(default_factory=dict)
    gradients: Dict[str, np.ndarray] = field(default_factory=dict)
    parameter_gradients: Dict[str, Dict[str, np.ndarray]] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return not self.verification_failures

    def node_ids(self) -> List[str]:
        return list(self.id_to_node)

    def parents(self, node_id: str) -> List[str]:
        return [p for p, c in self.edges if c == node_id]

    def children(self, node_id: str) -> List[str]:
        return [c for p, c in self.edges if p == node_id]

    def roots_and_leaves(self) -> Tuple[List[str], List[str]]:
        """Roots and leaves in node order, counting nodes without edges."""
        has_parent = {c for _, c in self.edges}
        has_child = {p for p, _ in self.edges}
        roots = [n for n in self.id_to_node if n not in has_parent]
        leaves = [n for n in self.id_to_node if n not in has_child]
        return roots, leaves

    def parameter_count(self) -> int:
        return int(sum(p.size for params in self.parameters.values() for p in params.values()))

    def with_parameters(self, parameters: Dict[str, Dict[str, np.ndarray]]) -> 'Network':
        return replace(self, parameters=parameters)

    def summary(self):
        print("Network summary:")
        for node_id, node in self.id_to_node.items():
            params = sum(p.size for p in self.parameters.get(node_id, {}).values())
            print(f"{node_id} ({node['type']}): output={node.get('output_size')} params={params}")
        print(f"Total params: {self.parameter_count()}")
        if self.verification_failures:
            print(f"Verification failures: {len(self.verification_failures)}")


def edges_to_roots_and_leaves(edges: Sequence[Tuple[str, str]]) -> Tuple[List[str], List[str]]:
    """Partition the node ids named by ``edges`` into roots (no incoming
    edge) and leaves (no outgoing edge), in order of first appearance."""
    seen: Dict[str, None] = {}
    for parent, child in edges:
        seen.setdefault(parent)
        seen.setdefault(child)
    has_parent = {c for _, c in edges}
    has_child = {p for p, _ in edges}
    roots = [n for n in seen if n not in has_parent]
    leaves = [n for n in seen if n not in has_child]
    return roots, leaves


def glorot_uniform(shape, rng: np.random.Generator):
    fan_in = np.prod(shape[1:]) if len(shape) > 1 else shape[0]
    fan_out = shape[0]
    limit = np.sqrt(6.0 / (fan_in + fan_out))
    return rng.uniform(-limit, limit, size=shape)


def flatten_layer_graph(description) -> List[Description]:
    """Turn a network description, a description or nested lists of them
    into a flat list of descriptions."""
    if isinstance(description, Mapping):
        if 'layer_graph' in description:
            return flatten_layer_graph(description['layer_graph'])
        if isinstance(description, Description):
            return [description]
        return [Description(description)]
    result: List[Description] = []
    for item in description:
        result.extend(flatten_layer_graph(item))
    return result


def _output_dimension(input_dim, pad, kernel, stride, dimension_op):
    op = math.floor if dimension_op == 'floor' else math.ceil
    return int(op((input_dim + 2 * pad - kernel) / stride)) + 1


def _dims(node, prefix):
    return {key: node[f'{prefix}_{key}'] for key in SIZE_KEYS}


def _resolve_outputs(kind: LayerKind, desc: Description, inputs: Dict[str, int]) -> Dict[str, int]:
    """Output dims for a node whose input dims are known. Raises ValueError
    when the sizes cannot be resolved."""
    if kind is LayerKind.LINEAR:
        size = desc.get('output_size')
        if not isinstance(size, numbers.Integral) or isinstance(size, bool) or size < 1:
            raise ValueError(f"linear layer needs a positive integer output_size, got {size!r}")
        size = int(size)
        return {'size': size, 'width': size, 'height': 1, 'channels': 1}
    if kind in (LayerKind.CONVOLUTIONAL, LayerKind.MAX_POOLING):
        dimension_op = desc.get('dimension_op', DEFAULT_DIMENSION_OP[kind])
        if kind is LayerKind.CONVOLUTIONAL:
            dimension_op = 'floor'
        width = _output_dimension(inputs['width'], desc['pad_x'], desc['kernel_width'],
                                  desc['stride_x'], dimension_op)
        height = _output_dimension(inputs['height'], desc['pad_y'], desc['kernel_height'],
                                   desc['stride_y'], dimension_op)
        if width < 1 or height < 1:
            raise ValueError(
                f"kernel {desc['kernel_width']}x{desc['kernel_height']} does not fit input "
                f"{inputs['width']}x{inputs['height']} (output {width}x{height})")
        channels = desc['num_kernels'] if kind is LayerKind.CONVOLUTIONAL else inputs['channels']
        return {'size': width * height * channels, 'width': width, 'height': height, 'channels': channels}
    if kind is LayerKind.SOFTMAX:
        channels = desc.get('output_channels', 1)
        if inputs['size'] % channels:
            raise ValueError(f"softmax output_channels {channels} does not divide input size {inputs['size']}")
        return {'size': inputs['size'], 'width': inputs['size'] // channels, 'height': 1, 'channels': channels}
    if kind in SHAPE_PRESERVING:
        return dict(inputs)
    raise ValueError(f"no size rule for layer type {kind.value}")


def _resolve_input(node: Description) -> Description:
    """Fill in the spatial dims of an input node that only gives output_size."""
    width = node.get('output_width', node.get('output_size'))
    height = node.get('output_height', 1)
    channels = node.get('output_channels', 1)
    size = node.get('output_size', width * height * channels)
    if min(width, height, channels) < 1 or size != width * height * channels:
        raise ValueError(f"input dims {width}x{height}x{channels} do not match output_size {size}")
    return node.assoc(type=LayerKind.INPUT.value, output_size=size, output_width=width,
                      output_height=height, output_channels=channels)


def _init_parameter(ptype: ParameterType, shape, rng):
    if ptype is ParameterType.WEIGHT:
        return glorot_uniform(shape, rng)
    if ptype in (ParameterType.SCALE, ParameterType.VARIANCE):
        return np.ones(shape)
    return np.zeros(shape)


def build_network(description, seed: Optional[int] = None) -> Network:
    """Build a network from a layer-graph description.

    Descriptions may name their node with ``id`` and their inputs with
    ``parents``; otherwise ids are generated per type (``linear-1``) and each
    layer is fed by the one before it. Parameter arrays supplied on a
    description under the parameter's key are used instead of fresh
    initial values.
    """
    rng = np.random.default_rng(seed)
    descriptions = flatten_layer_graph(description)
    failures: List[VerificationFailure] = []
    id_to_node: Dict[str, Description] = {}
    edges: List[Tuple[str, str]] = []
    parameters: Dict[str, Dict[str, np.ndarray]] = {}
    unresolved = set()
    type_counts: Dict[str, int] = {}
    previous: Optional[str] = None

    def fail(node_id, kind, message):
        failures.append(VerificationFailure(node_id, kind, message))
        unresolved.add(node_id)

    for desc in descriptions:
        type_name = desc['type'].value if isinstance(desc['type'], Enum) else str(desc['type'])
        type_counts[type_name] = type_counts.get(type_name, 0) + 1
        node_id = desc.get('id') or f"{type_name}-{type_counts[type_name]}"
        if node_id in id_to_node:
            failures.append(VerificationFailure(node_id, FailureKind.DUPLICATE_ID,
                                                f"node id {node_id!r} is used more than once"))
            continue
        try:
            kind = LayerKind(type_name)
        except ValueError:
            kind = None

        if 'parents' in desc:
            parents = list(desc['parents'])
        elif kind is LayerKind.INPUT or previous is None:
            parents = []
        else:
            parents = [previous]
        node = desc.assoc(type=type_name, id=node_id, parents=parents)
        id_to_node[node_id] = node
        previous = node_id

        missing = [p for p in parents if p not in id_to_node]
        for parent in parents:
            if parent in id_to_node:
                edges.append((parent, node_id))
        if kind is None:
            fail(node_id, FailureKind.UNKNOWN_TYPE, f"unknown layer type {type_name!r}")
            continue
        if missing:
            fail(node_id, FailureKind.UNKNOWN_PARENT, f"parents {missing} are not defined before this node")
            continue

        if kind is LayerKind.INPUT:
            if parents:
                fail(node_id, FailureKind.DISCONNECTED, "input layers cannot have parents")
                continue
            try:
                id_to_node[node_id] = _resolve_input(node)
            except (KeyError, TypeError, ValueError) as e:
                fail(node_id, FailureKind.INVALID_SIZE, str(e))
            continue
        if not parents:
            fail(node_id, FailureKind.DISCONNECTED, f"{type_name} layer has no input")
            continue
        if len(parents) > 1:
            fail(node_id, FailureKind.MULTIPLE_PARENTS,
                 f"{type_name} layers take one input, got parents {parents}")
            continue
        parent = parents[0]
        if parent in unresolved:
            # reported at the parent
            unresolved.add(node_id)
            continue

        inputs = _dims(id_to_node[parent], 'output')
        declared = node.get('input_size')
        if declared is not None and declared != inputs['size']:
            fail(node_id, FailureKind.SIZE_MISMATCH,
                 f"declared input_size {declared} but {parent} produces {inputs['size']}")
            continue
        try:
            outputs = _resolve_outputs(kind, node, inputs)
        except (KeyError, TypeError, ValueError) as e:
            fail(node_id, FailureKind.INVALID_SIZE, str(e))
            continue
        declared = node.get('output_size')
        if declared is not None and declared != outputs['size']:
            fail(node_id, FailureKind.SIZE_MISMATCH,
                 f"declared output_size {declared} but the layer produces {outputs['size']}")
            continue
        node = node.assoc(**{f'input_{k}': v for k, v in inputs.items()},
                          **{f'output_{k}': v for k, v in outputs.items()})

        node_params = {}
        for pdesc in get_parameter_descriptions(node):
            shape = tuple(int(d) for d in pdesc.shape_fn(node))
            if pdesc.key in node:
                value = np.asarray(node[pdesc.key], dtype=np.float64)
                if value.size != int(np.prod(shape)):
                    fail(node_id, FailureKind.PARAMETER_SHAPE,
                         f"parameter {pdesc.key!r} has shape {value.shape}, expected {shape}")
                    break
                node_params[pdesc.key] = value.reshape(shape).copy()
            else:
                node_params[pdesc.key] = _init_parameter(pdesc.type, shape, rng)
        else:
            if node_params:
                parameters[node_id] = node_params
                node = node.dissoc(*node_params.keys())
        id_to_node[node_id] = node

    if failures:
        logger.warning("Network build collected %d verification failure(s)", len(failures))
    logger.debug("Built network with %d nodes and %d edges", len(id_to_node), len(edges))
    return Network(id_to_node=id_to_node, edges=tuple(edges), parameters=parameters,
                   verification_failures=tuple(failures))
