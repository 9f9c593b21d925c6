"""Gradient checks and dropout preparation."""
import numpy as np
import pytest

from netgraph import layers
from netgraph.build import build_network
from netgraph.errors import ExecutionError
from netgraph.execute import ExecutionContext
from netgraph.numpy_backend import NumpyBackend
from netgraph.traverse import inference_traversal, training_traversal
from netgraph.verify import check_gradients


class CountingBackend(NumpyBackend):
    """Counts forward and prepare calls per layer type."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.forward_calls = {}
        self.prepare_calls = 0
        self.masks = []

    def prepare_forward(self, node, shape, state):
        self.prepare_calls += 1
        return super().prepare_forward(node, shape, state)

    def forward(self, node, x, parameters, state, training):
        self.forward_calls[node['type']] = self.forward_calls.get(node['type'], 0) + 1
        if 'mask' in state:
            self.masks.append(state['mask'])
        return super().forward(node, x, parameters, state, training)


def run_check(description, inputs, batch_size, seed=0, backend=None):
    context = ExecutionContext(backend or NumpyBackend(dtype=np.float64, seed=seed))
    network = training_traversal(build_network(description, seed=seed))
    with context.resource_context() as scope:
        bound = context.bind(network, scope, batch_size)
        return check_gradients(context, bound, inputs), context


def test_linear_tanh_gradients():
    rng = np.random.default_rng(0)
    checks, _ = run_check([layers.input(3), layers.linear_tanh(4), layers.linear(2)],
                          {'data': rng.normal(size=(4, 3)), 'output': rng.normal(size=(4, 2))}, 4)
    assert {(c.node_id, c.key) for c in checks} == {('linear-1', 'weights'), ('linear-1', 'bias'),
                                                    ('linear-2', 'weights'), ('linear-2', 'bias')}
    for check in checks:
        assert check.max_error() < 1e-6


def test_softmax_cross_entropy_gradients():
    rng = np.random.default_rng(1)
    checks, _ = run_check([layers.input(5), layers.linear_logistic(4), layers.linear_softmax(3)],
                          {'data': rng.normal(size=(6, 5)), 'output': rng.integers(0, 3, size=6)}, 6)
    for check in checks:
        assert check.max_error() < 1e-6


def test_convolution_pooling_gradients():
    rng = np.random.default_rng(2)
    description = [layers.input(5, 5, 2), layers.convolutional(3, 1, 2, 3), layers.relu(),
                   layers.max_pooling(2, 0, 2), layers.linear(2)]
    checks, _ = run_check(description,
                          {'data': rng.normal(size=(2, 5, 5, 2)), 'output': rng.normal(size=(2, 2))}, 2)
    for check in checks:
        assert check.max_error() < 1e-5


def test_batch_norm_and_lrn_gradients():
    rng = np.random.default_rng(3)
    description = [layers.input(2, 2, 3), layers.convolutional(1, 0, 1, 6),
                   layers.local_response_normalization(alpha=0.1),
                   layers.batch_normalization(0.9), layers.linear(2)]
    checks, _ = run_check(description,
                          {'data': rng.normal(size=(4, 2, 2, 3)), 'output': rng.normal(size=(4, 2))}, 4)
    keys = {(c.node_id, c.key) for c in checks}
    assert ('convolutional-1', 'weights') in keys
    assert ('batch-normalization-1', 'scale') in keys
    assert ('batch-normalization-1', 'means') not in keys
    for check in checks:
        assert check.max_error() < 1e-5


def test_dropout_prepared_once_per_check():
    backend = CountingBackend(dtype=np.float64, seed=4)
    rng = np.random.default_rng(4)
    description = [layers.input(3), layers.linear(4), layers.dropout(0.5), layers.linear(2)]
    checks, _ = run_check(description, {'data': rng.normal(size=(2, 3)), 'output': rng.normal(size=(2, 2))},
                          2, backend=backend)
    parameter_count = 3 * 4 + 4 + 4 * 2 + 2
    assert backend.prepare_calls == 1
    assert backend.forward_calls['dropout'] == 1 + 2 * parameter_count
    assert backend.forward_calls['linear'] == 2 * (1 + 2 * parameter_count)
    assert all(np.array_equal(mask, backend.masks[0]) for mask in backend.masks)
    for check in checks:
        assert check.max_error() < 1e-6


def test_gaussian_dropout_mask():
    backend = NumpyBackend(dtype=np.float64, seed=5)
    node = layers.multiplicative_dropout(0.0)[0]
    state = backend.prepare_forward(node, (2, 3), {})
    np.testing.assert_array_equal(state['mask'], np.ones((2, 3)))
    bernoulli = backend.prepare_forward(layers.dropout(0.5)[0], (1000,), {})['mask']
    assert set(np.unique(bernoulli)) <= {0.0, 2.0}


def test_dropout_without_mask_is_an_error():
    context = ExecutionContext(NumpyBackend(dtype=np.float64))
    network = training_traversal(build_network([layers.input(3), layers.dropout(0.5)]))
    with context.resource_context() as scope:
        bound = context.bind(network, scope, 1)
        with pytest.raises(ExecutionError):
            context.forward(bound, {'data': np.ones((1, 3))})


def test_gradient_check_needs_training_plan():
    context = ExecutionContext(NumpyBackend(dtype=np.float64))
    network = inference_traversal(build_network([layers.input(3), layers.linear(1)]))
    with context.resource_context() as scope:
        bound = context.bind(network, scope, 1)
        with pytest.raises(ExecutionError):
            check_gradients(context, bound, {'data': np.ones((1, 3)), 'output': np.ones((1, 1))})
