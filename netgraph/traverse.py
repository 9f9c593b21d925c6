"""Traversal planning: step ordering, buffer plan and bindings.

A traversal is derived from a built network and a pass type. Inference
plans contain forward steps only; training plans add the mirrored backward
steps and parameter-gradient steps.

Buffers are named after the node that produces them. Gradient buffers use
the same ids as the forward buffers they are the gradient of, in a separate
map. Slots are the storage a backend actually allocates; buffers with
disjoint lifetimes and equal shapes may share a slot.
"""
from __future__ import annotations
import heapq
import logging
from collections.abc import Mapping
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .build import Network
from .errors import BindingError, BuildError
from .layers import LayerKind, PassType, get_parameter_descriptions, get_pass_set
from .losses import Loss, NAME2LOSS, auto_bind_loss

logger = logging.getLogger(__name__)

INPUT_STREAM = 'data'
OUTPUT_STREAM = 'output'


class StepKind(str, Enum):
    FORWARD = 'forward'
    BACKWARD = 'backward'
    PARAMETER_GRADIENT = 'parameter-gradient'


@dataclass(frozen=True)
class Step:
    """One execution step.

    Forward steps read ``incoming`` forward buffers and write ``outgoing``.
    Backward steps read the gradient of their node's output (``incoming``)
    and write the gradient of its input (``outgoing``), adding to it when
    ``accumulate`` is set. Parameter-gradient steps list the parameter keys
    they accumulate in ``outgoing``. ``release`` names buffers whose lifetime
    ends after the step.
    """
    id: str
    kind: StepKind
    incoming: Tuple[str, ...]
    outgoing: Tuple[str, ...]
    release: Tuple[str, ...] = ()
    accumulate: bool = False


@dataclass(frozen=True)
class BufferDescriptor:
    id: str
    shape: Tuple[int, ...]
    slot: int
    retained: bool = False


@dataclass(frozen=True)
class OutputBinding:
    stream: str
    loss: Optional[Loss] = None


@dataclass(frozen=True)
class TraversalPlan:
    pass_type: PassType
    forward: Tuple[Step, ...]
    backward: Tuple[Step, ...]
    input_bindings: Dict[str, str]
    output_bindings: Dict[str, OutputBinding]
    buffers: Dict[str, BufferDescriptor]
    gradients: Dict[str, BufferDescriptor]
    node_buffers: Dict[str, str]
    slots: Tuple[Tuple[int, ...], ...]
    gradient_slots: Tuple[Tuple[int, ...], ...]
    save_gradients: bool = False

    def steps(self) -> Tuple[Step, ...]:
        return self.forward + self.backward


class _SlotAllocator:
    def __init__(self, reuse: bool):
        self.reuse = reuse
        self.shapes: List[Tuple[int, ...]] = []
        self.free: Dict[Tuple[int, ...], List[int]] = {}

    def acquire(self, shape) -> int:
        pool = self.free.get(shape)
        if self.reuse and pool:
            return pool.pop(0)
        self.shapes.append(shape)
        return len(self.shapes) - 1

    def release(self, slot: int):
        if self.reuse:
            self.free.setdefault(self.shapes[slot], []).append(slot)


def buffer_shape(node) -> Tuple[int, ...]:
    """Per-sample shape of a node's output buffer.

    Spatial outputs are (height, width, channels); flat outputs, including
    every linear and softmax output, are (size,).
    """
    height, channels = node['output_height'], node['output_channels']
    if node['type'] in (LayerKind.LINEAR.value, LayerKind.SOFTMAX.value) or (height == 1 and channels == 1):
        return (node['output_size'],)
    return (height, node['output_width'], channels)


def topological_order(network: Network) -> List[str]:
    """Kahn's algorithm; ties go to the node described first."""
    index = {node_id: i for i, node_id in enumerate(network.id_to_node)}
    in_degree = {node_id: 0 for node_id in network.id_to_node}
    children: Dict[str, List[str]] = {node_id: [] for node_id in network.id_to_node}
    for parent, child in network.edges:
        in_degree[child] += 1
        children[parent].append(child)
    ready = [(index[n], n) for n, d in in_degree.items() if d == 0]
    heapq.heapify(ready)
    order = []
    while ready:
        _, node_id = heapq.heappop(ready)
        order.append(node_id)
        for child in children[node_id]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                heapq.heappush(ready, (index[child], child))
    return order


def _input_bindings(roots, requested) -> Dict[str, str]:
    if requested is None:
        if len(roots) == 1:
            return {roots[0]: INPUT_STREAM}
        return {root: root for root in roots}
    bindings = dict(requested)
    for node_id in bindings:
        if node_id not in roots:
            raise BindingError(f"Input binding {node_id!r} is not a root of the network (roots: {roots})")
    unbound = [root for root in roots if root not in bindings]
    if unbound:
        raise BindingError(f"Roots {unbound} have no input binding")
    return bindings


def _output_binding(network, node_id, config, default_stream) -> OutputBinding:
    if isinstance(config, OutputBinding):
        binding = config
    elif isinstance(config, str):
        binding = OutputBinding(config)
    elif isinstance(config, Mapping):
        binding = OutputBinding(config.get('stream', default_stream), config.get('loss'))
    elif config is None:
        binding = OutputBinding(default_stream)
    else:
        raise BindingError(f"Cannot interpret output binding {config!r} for {node_id!r}")
    loss = binding.loss
    if loss is None:
        loss = auto_bind_loss(network.id_to_node[node_id])
    elif isinstance(loss, str):
        if loss not in NAME2LOSS:
            raise BindingError(f"Unknown loss {loss!r} for output {node_id!r}")
        loss = NAME2LOSS[loss]()
    return OutputBinding(binding.stream, loss)


def _output_bindings(network, leaves, requested, pass_type) -> Dict[str, OutputBinding]:
    if requested is None:
        requested = {leaf: {} for leaf in leaves}
    elif not isinstance(requested, Mapping):
        requested = {node_id: {} for node_id in requested}
    for node_id in requested:
        if node_id not in leaves:
            raise BindingError(f"Output binding {node_id!r} is not a leaf of the network (leaves: {leaves})")
    if pass_type is PassType.TRAINING:
        unbound = [leaf for leaf in leaves if leaf not in requested]
        if unbound:
            raise BindingError(f"Training requires every leaf to be bound; unbound: {unbound}")
    single = len(requested) == 1
    bindings = {node_id: _output_binding(network, node_id, config, OUTPUT_STREAM if single else node_id)
                for node_id, config in requested.items()}
    streams: Dict[str, str] = {}
    for node_id, binding in bindings.items():
        if binding.stream in streams:
            raise BindingError(f"Outputs {streams[binding.stream]!r} and {node_id!r} are both bound "
                               f"to stream {binding.stream!r}")
        streams[binding.stream] = node_id
    return bindings


def plan_traversal(network: Network, pass_type, input_bindings=None, output_bindings=None,
                   save_gradients: bool = False) -> TraversalPlan:
    """Plan a traversal of ``network`` for ``pass_type``.

    ``input_bindings`` maps root ids to input stream names and
    ``output_bindings`` maps leaf ids to a stream name, an ``OutputBinding``
    or a ``{'stream', 'loss'}`` mapping. With ``save_gradients`` every
    buffer and gradient keeps its own slot until the traversal ends.
    """
    pass_type = PassType(pass_type)
    if network.verification_failures:
        raise BuildError(network.verification_failures)
    roots, leaves = network.roots_and_leaves()
    inputs = _input_bindings(roots, input_bindings)
    outputs = _output_bindings(network, leaves, output_bindings, pass_type)
    training = pass_type is PassType.TRAINING

    order = topological_order(network)
    node_buffers: Dict[str, str] = {}
    forward_nodes: List[Tuple[str, str]] = []
    for node_id in order:
        node = network.id_to_node[node_id]
        parents = network.parents(node_id)
        if node_id in inputs:
            node_buffers[node_id] = node_id
        elif pass_type in get_pass_set(node):
            node_buffers[node_id] = node_id
            forward_nodes.append((node_id, node_buffers[parents[0]]))
        else:
            node_buffers[node_id] = node_buffers[parents[0]]

    last_use: Dict[str, int] = {}
    for k, (_, source) in enumerate(forward_nodes):
        last_use[source] = k
    retained = set(inputs) | {node_buffers[leaf] for leaf in leaves}
    retained |= {n for n, _ in forward_nodes if n not in last_use}
    if training or save_gradients:
        retained |= set(node_buffers.values())

    allocator = _SlotAllocator(reuse=not training and not save_gradients)
    buffers: Dict[str, BufferDescriptor] = {}
    for root in inputs:
        shape = buffer_shape(network.id_to_node[root])
        buffers[root] = BufferDescriptor(root, shape, allocator.acquire(shape), retained=True)
    forward: List[Step] = []
    for k, (node_id, source) in enumerate(forward_nodes):
        shape = buffer_shape(network.id_to_node[node_id])
        buffers[node_id] = BufferDescriptor(node_id, shape, allocator.acquire(shape),
                                            retained=node_id in retained)
        release = ()
        if last_use[source] == k and not buffers[source].retained:
            release = (source,)
            allocator.release(buffers[source].slot)
        forward.append(Step(node_id, StepKind.FORWARD, (source,), (node_id,), release))

    gradients: Dict[str, BufferDescriptor] = {}
    backward: List[Step] = []
    gradient_allocator = _SlotAllocator(reuse=not save_gradients)
    if training:
        produced = {n for n, _ in forward_nodes}
        for leaf in outputs:
            gid = node_buffers[leaf]
            shape = buffers[gid].shape
            gradients[gid] = BufferDescriptor(gid, shape, gradient_allocator.acquire(shape),
                                              retained=save_gradients or gid not in produced)
        for step in reversed(forward):
            node_id = step.id
            out_gid, in_gid = step.outgoing[0], step.incoming[0]
            if out_gid not in gradients:
                raise BindingError(f"No gradient reaches {node_id!r}; bind the leaves below it")
            accumulate = in_gid in gradients
            if not accumulate:
                shape = buffers[in_gid].shape
                gradients[in_gid] = BufferDescriptor(in_gid, shape, gradient_allocator.acquire(shape),
                                                     retained=save_gradients or in_gid not in produced)
            release = ()
            if not gradients[out_gid].retained:
                release = (out_gid,)
                gradient_allocator.release(gradients[out_gid].slot)
            backward.append(Step(node_id, StepKind.BACKWARD, (out_gid,), (in_gid,), release, accumulate))
            keys = tuple(p.key for p in get_parameter_descriptions(network.id_to_node[node_id]) if p.trainable)
            if keys:
                backward.append(Step(node_id, StepKind.PARAMETER_GRADIENT, (), keys))

    plan = TraversalPlan(pass_type=pass_type, forward=tuple(forward), backward=tuple(backward),
                         input_bindings=inputs, output_bindings=outputs,
                         buffers=buffers, gradients=gradients, node_buffers=node_buffers,
                         slots=tuple(allocator.shapes), gradient_slots=tuple(gradient_allocator.shapes),
                         save_gradients=save_gradients)
    logger.debug("Planned %s traversal: %d forward, %d backward steps, %d slots",
                 pass_type.value, len(plan.forward), len(plan.backward), len(plan.slots))
    return plan


def inference_traversal(network: Network, input_bindings=None, output_bindings=None,
                        save_gradients: bool = False, batch_size: Optional[int] = None) -> Network:
    """Return ``network`` with an inference plan attached."""
    plan = plan_traversal(network, PassType.INFERENCE, input_bindings, output_bindings, save_gradients)
    return replace(network, traversal=plan, batch_size=batch_size or network.batch_size)


def training_traversal(network: Network, input_bindings=None, output_bindings=None,
                       save_gradients: bool = False, batch_size: Optional[int] = None) -> Network:
    """Return ``network`` with a training plan attached."""
    plan = plan_traversal(network, PassType.TRAINING, input_bindings, output_bindings, save_gradients)
    return replace(network, traversal=plan, batch_size=batch_size or network.batch_size)
