"""Binding and executing planned traversals on a backend.

``ExecutionContext`` owns a backend. ``bind`` turns a network carrying a
traversal plan into a ``BoundNetwork``: one backend handle per planned slot
plus device copies of the parameters, all tracked by a resource scope.
Every operation on a bound network returns a new ``BoundNetwork``; slot
handles are shared between them, everything else is copied.
"""
from __future__ import annotations
import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, Optional, Tuple

import numpy as np
from tqdm import tqdm

from .backend import Backend, ResourceContext
from .build import Network
from .errors import BindingError, BuildError, ExecutionError
from .layers import PassType, get_parameter_descriptions
from .numpy_backend import NumpyBackend
from .traverse import StepKind, TraversalPlan, inference_traversal, training_traversal

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class BoundNetwork:
    network: Network
    batch_size: int
    scope: ResourceContext
    buffers: Tuple[Any, ...]
    gradient_buffers: Tuple[Any, ...]
    parameters: Dict[str, Dict[str, Any]]
    parameter_gradients: Dict[str, Dict[str, Any]]
    node_state: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    outputs: Dict[str, np.ndarray] = field(default_factory=dict)
    loss: Optional[float] = None
    written: FrozenSet[str] = frozenset()
    gradients_written: FrozenSet[str] = frozenset()

    @property
    def plan(self) -> TraversalPlan:
        return self.network.traversal

    @property
    def pass_type(self) -> PassType:
        return self.plan.pass_type

    def buffer(self, buffer_id: str):
        return self.buffers[self.plan.buffers[buffer_id].slot]

    def gradient(self, buffer_id: str):
        return self.gradient_buffers[self.plan.gradients[buffer_id].slot]


def _check_scope(bound: BoundNetwork):
    if bound.scope.closed:
        raise ExecutionError("bound network used after its resource scope was closed")


class ExecutionContext:
    """Runs traversals on a backend (``NumpyBackend`` by default)."""

    def __init__(self, backend: Optional[Backend] = None):
        self.backend = backend if backend is not None else NumpyBackend()

    def resource_context(self) -> ResourceContext:
        return self.backend.resource_context()

    def bind(self, network: Network, scope: ResourceContext, batch_size: Optional[int] = None) -> BoundNetwork:
        """Allocate the planned slots and copy the parameters in."""
        if network.verification_failures:
            raise BuildError(network.verification_failures)
        plan = network.traversal
        if plan is None:
            raise BindingError("network has no traversal plan; call inference_traversal or training_traversal first")
        if scope.closed:
            raise ExecutionError("cannot bind into a closed resource scope")
        batch_size = batch_size or network.batch_size
        if not batch_size or batch_size < 1:
            raise BindingError(f"a positive batch size is required, got {batch_size!r}")
        backend = self.backend

        def allocate(shapes):
            handles = []
            for shape in shapes:
                full = (batch_size,) + tuple(shape)
                if not backend.supports_shape(full):
                    raise BindingError(f"backend cannot hold a buffer of shape {full}")
                handles.append(scope.track(backend.allocate(full)))
            return tuple(handles)

        buffers = allocate(plan.slots)
        gradient_buffers = allocate(plan.gradient_slots)
        parameters = {node_id: {key: scope.track(backend.from_numpy(value)) for key, value in params.items()}
                      for node_id, params in network.parameters.items()}
        parameter_gradients = {}
        if plan.pass_type is PassType.TRAINING:
            for node_id, node in network.id_to_node.items():
                keys = [p.key for p in get_parameter_descriptions(node) if p.trainable]
                if keys:
                    parameter_gradients[node_id] = {k: backend.zeros_like(parameters[node_id][k]) for k in keys}
        logger.debug("Bound %s traversal: batch %d, %d slots, %d gradient slots",
                     plan.pass_type.value, batch_size, len(buffers), len(gradient_buffers))
        return BoundNetwork(network=replace(network, batch_size=batch_size), batch_size=batch_size, scope=scope,
                            buffers=buffers, gradient_buffers=gradient_buffers,
                            parameters=parameters, parameter_gradients=parameter_gradients)

    def prepare_forward(self, bound: BoundNetwork) -> BoundNetwork:
        """Run the backend's per-traversal hooks, e.g. draw dropout masks."""
        _check_scope(bound)
        state = dict(bound.node_state)
        for step in bound.plan.forward:
            node = bound.network.id_to_node[step.id]
            if self.backend.has_prepare_forward(node):
                shape = (bound.batch_size,) + bound.plan.buffers[step.incoming[0]].shape
                state[step.id] = self.backend.prepare_forward(node, shape, state.get(step.id, {}))
        return replace(bound, node_state=state)

    def forward(self, bound: BoundNetwork, inputs: Dict[str, Any]) -> BoundNetwork:
        """Write the input streams, run the forward steps and collect outputs.

        The loss is computed when ``inputs`` also carries a target for
        every bound output stream.
        """
        _check_scope(bound)
        plan, backend = bound.plan, self.backend
        training = plan.pass_type is PassType.TRAINING
        written = set()
        for root, stream in plan.input_bindings.items():
            if stream not in inputs:
                raise ExecutionError(f"missing input stream {stream!r} for {root!r}")
            value = np.asarray(inputs[stream])
            if value.ndim == 0 or value.shape[0] != bound.batch_size:
                raise ExecutionError(f"input stream {stream!r} has shape {value.shape}, "
                                     f"expected batch size {bound.batch_size}")
            backend.assign(bound.buffer(root), value)
            written.add(root)

        parameters = dict(bound.parameters)
        for step in plan.forward:
            node = bound.network.id_to_node[step.id]
            source, target = step.incoming[0], step.outgoing[0]
            if source not in written:
                raise ExecutionError(f"{step.id!r} reads buffer {source!r} before it was written")
            y, updates = backend.forward(node, bound.buffer(source), parameters.get(step.id, {}),
                                         bound.node_state.get(step.id, {}), training)
            backend.assign(bound.buffer(target), y)
            written.add(target)
            written.difference_update(step.release)
            if updates:
                parameters[step.id] = {**parameters[step.id], **updates}

        outputs = {}
        for leaf, binding in plan.output_bindings.items():
            buffer_id = plan.node_buffers[leaf]
            if buffer_id not in written:
                raise ExecutionError(f"output {leaf!r} was never written")
            outputs[binding.stream] = backend.to_numpy(bound.buffer(buffer_id))
        loss = None
        if all(b.stream in inputs for b in plan.output_bindings.values()):
            loss = float(sum(b.loss.value(outputs[b.stream], inputs[b.stream])
                             for b in plan.output_bindings.values()))
        return replace(bound, parameters=parameters, outputs=outputs, loss=loss, written=frozenset(written))

    def backward(self, bound: BoundNetwork, inputs: Dict[str, Any]) -> BoundNetwork:
        """Propagate loss gradients back and accumulate parameter gradients."""
        _check_scope(bound)
        plan, backend = bound.plan, self.backend
        if plan.pass_type is not PassType.TRAINING:
            raise ExecutionError("backward needs a training traversal")
        gradients_written = set()
        for leaf, binding in plan.output_bindings.items():
            if binding.stream not in inputs:
                raise ExecutionError(f"missing target stream {binding.stream!r} for {leaf!r}")
            if binding.stream not in bound.outputs:
                raise ExecutionError(f"output {leaf!r} has not been computed; run forward first")
            buffer_id = plan.node_buffers[leaf]
            backend.assign(bound.gradient(buffer_id), binding.loss.gradient(bound.outputs[binding.stream],
                                                                            inputs[binding.stream]))
            gradients_written.add(buffer_id)

        parameter_gradients = {node_id: dict(grads) for node_id, grads in bound.parameter_gradients.items()}
        pending = {}
        for step in plan.backward:
            if step.kind is StepKind.PARAMETER_GRADIENT:
                grads = pending.pop(step.id)
                for key in step.outgoing:
                    parameter_gradients[step.id][key] = backend.accumulate(parameter_gradients[step.id][key],
                                                                           grads[key])
                continue
            node = bound.network.id_to_node[step.id]
            source, target = step.incoming[0], step.outgoing[0]
            if source not in gradients_written:
                raise ExecutionError(f"{step.id!r} reads gradient {source!r} before it was written")
            if target not in bound.written or step.id not in bound.written:
                raise ExecutionError(f"{step.id!r} needs forward buffers that were not written")
            dx, grads = backend.backward(node, bound.buffer(target), bound.buffer(step.id), bound.gradient(source),
                                         bound.parameters.get(step.id, {}), bound.node_state.get(step.id, {}))
            handle = bound.gradient(target)
            if step.accumulate:
                dx = backend.accumulate(handle, dx)
            backend.assign(handle, dx)
            gradients_written.add(target)
            gradients_written.difference_update(step.release)
            pending[step.id] = grads
        return replace(bound, parameter_gradients=parameter_gradients,
                       gradients_written=frozenset(gradients_written))

    def traverse(self, bound: BoundNetwork, inputs: Dict[str, Any], pass_type=None) -> BoundNetwork:
        """Prepare once, run forward and, for training plans, backward."""
        if pass_type is not None and PassType(pass_type) is not bound.plan.pass_type:
            raise ExecutionError(f"bound network was planned for {bound.plan.pass_type.value}, "
                                 f"not {PassType(pass_type).value}")
        bound = self.prepare_forward(bound)
        bound = self.forward(bound, inputs)
        if bound.plan.pass_type is PassType.TRAINING:
            bound = self.backward(bound, inputs)
        return bound

    def update(self, bound: BoundNetwork, optimizer) -> BoundNetwork:
        """Apply the accumulated gradients and reset them to zero."""
        _check_scope(bound)
        if bound.plan.pass_type is not PassType.TRAINING:
            raise ExecutionError("update needs a training traversal")
        updated = optimizer.step(bound.parameters, bound.parameter_gradients)
        parameters = {node_id: {**params, **updated.get(node_id, {})}
                      for node_id, params in bound.parameters.items()}
        zeroed = {node_id: {k: self.backend.zeros_like(g) for k, g in grads.items()}
                  for node_id, grads in bound.parameter_gradients.items()}
        return replace(bound, parameters=parameters, parameter_gradients=zeroed)

    def save_to_network(self, bound: BoundNetwork, save_gradients: bool = False) -> Network:
        """Copy parameters and output buffers (with ``save_gradients`` also
        every retained buffer and gradient) back into a Network."""
        _check_scope(bound)
        plan, to_numpy = bound.plan, self.backend.to_numpy
        parameters = {node_id: {k: to_numpy(v) for k, v in params.items()}
                      for node_id, params in bound.parameters.items()}
        keep = {plan.node_buffers[leaf] for leaf in plan.output_bindings}
        if save_gradients:
            keep |= {b.id for b in plan.buffers.values() if b.retained}
        buffers = {buffer_id: to_numpy(bound.buffer(buffer_id)) for buffer_id in plan.buffers
                   if buffer_id in keep and buffer_id in bound.written}
        gradients, parameter_gradients = {}, {}
        if save_gradients:
            gradients = {g.id: to_numpy(bound.gradient(g.id)) for g in plan.gradients.values()
                         if g.retained and g.id in bound.gradients_written}
            parameter_gradients = {node_id: {k: to_numpy(v) for k, v in grads.items()}
                                   for node_id, grads in bound.parameter_gradients.items()}
        return replace(bound.network, parameters=parameters, buffers=buffers, gradients=gradients,
                       parameter_gradients=parameter_gradients)

    def train(self, network: Network, dataset, optimizer, batch_size: int = 32, epochs: int = 1,
              shuffle: bool = True, input_bindings=None, output_bindings=None, num_threads: Optional[int] = None,
              verbose: bool = True):
        """Train on ``dataset`` (a ``Dataset`` holding the input and target
        streams). Returns the trained network and the per-epoch loss history."""
        if len(dataset) < batch_size:
            raise ValueError(f"dataset has {len(dataset)} samples, fewer than batch_size {batch_size}")
        planned = training_traversal(network, input_bindings, output_bindings, batch_size=batch_size)
        history = {'loss': []}
        with self.resource_context() as scope:
            bound = self.bind(planned, scope, batch_size)
            for epoch in range(epochs):
                pbar = tqdm(
                    dataset.batches(batch_size, shuffle=shuffle, num_threads=num_threads, drop_remainder=True),
                    total=len(dataset) // batch_size,
                    desc=f"Epoch {epoch+1}/{epochs}",
                    disable=not verbose,
                )
                losses = []
                for batch in pbar:
                    bound = self.traverse(bound, batch)
                    bound = self.update(bound, optimizer)
                    losses.append(bound.loss)
                    pbar.set_postfix(loss=np.mean(losses))
                history['loss'].append(float(np.mean(losses)))
                logger.debug("Epoch %d/%d loss %.6f", epoch + 1, epochs, history['loss'][-1])
            trained = self.save_to_network(bound)
        return replace(trained, buffers={}), history

    def run(self, network: Network, inputs, batch_size: int = 32, input_bindings=None, output_bindings=None,
            verbose: bool = False) -> Dict[str, np.ndarray]:
        """Inference over all of ``inputs`` in batches; returns the output
        streams concatenated over the batches."""
        if not isinstance(inputs, dict):
            inputs = {'data': inputs}
        inputs = {stream: np.asarray(values) for stream, values in inputs.items()}
        n = len(next(iter(inputs.values())))
        planned = inference_traversal(network, input_bindings, output_bindings, batch_size=batch_size)
        outs = defaultdict(list)
        with self.resource_context() as scope:
            bound_by_size = {}
            for start in tqdm(range(0, n, batch_size), desc="Inference", disable=not verbose):
                batch = {stream: values[start:start + batch_size] for stream, values in inputs.items()}
                size = len(next(iter(batch.values())))
                bound = bound_by_size.get(size) or self.bind(planned, scope, size)
                bound = self.traverse(bound, batch)
                bound_by_size[size] = bound
                for stream, value in bound.outputs.items():
                    outs[stream].append(value)
        return {stream: np.concatenate(values, axis=0) for stream, values in outs.items()}
