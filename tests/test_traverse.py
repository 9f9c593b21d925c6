"""Tests for traversal planning."""
import numpy as np
import pytest

from netgraph import layers
from netgraph.build import build_network
from netgraph.errors import BindingError, BuildError
from netgraph.execute import ExecutionContext
from netgraph.layers import PassType
from netgraph.losses import MSELoss, SoftmaxCrossEntropyLoss
from netgraph.numpy_backend import NumpyBackend
from netgraph.traverse import (
    StepKind,
    buffer_shape,
    inference_traversal,
    plan_traversal,
    topological_order,
    training_traversal,
)


@pytest.fixture
def mnist():
    return build_network(layers.example_mnist_description(), seed=0)


def test_mnist_inference_plan(mnist):
    plan = plan_traversal(mnist, PassType.INFERENCE)
    assert [s.id for s in plan.forward] == ['convolutional-1', 'max-pooling-1', 'convolutional-2',
                                            'max-pooling-2', 'linear-1', 'relu-1', 'linear-2', 'softmax-1']
    assert all(s.kind is StepKind.FORWARD for s in plan.forward)
    assert plan.backward == ()
    assert plan.input_bindings == {'input-1': 'data'}
    assert plan.output_bindings['softmax-1'].stream == 'output'
    assert isinstance(plan.output_bindings['softmax-1'].loss, SoftmaxCrossEntropyLoss)


def test_plans_are_deterministic(mnist):
    first = inference_traversal(mnist, batch_size=1)
    context = ExecutionContext(NumpyBackend(seed=0))
    with context.resource_context() as scope:
        bound = context.bind(first, scope)
        context.traverse(bound, {'data': np.zeros((1, 28, 28, 1))})
    assert plan_traversal(mnist, 'inference') == first.traversal
    assert plan_traversal(mnist, 'training') == plan_traversal(mnist, 'training')


def test_buffer_shapes(mnist):
    plan = plan_traversal(mnist, PassType.INFERENCE)
    assert plan.buffers['input-1'].shape == (28, 28, 1)
    assert plan.buffers['convolutional-1'].shape == (24, 24, 20)
    assert plan.buffers['linear-1'].shape == (500,)
    assert buffer_shape(build_network(layers.input(7)).id_to_node['input-1']) == (7,)


def test_inference_reuses_slots():
    network = build_network([layers.input(8), layers.linear(8), layers.relu(), layers.linear(8), layers.relu()])
    plan = plan_traversal(network, PassType.INFERENCE)
    assert len(plan.slots) < len(plan.buffers)
    assert plan.forward[1].release == ('linear-1',)
    saved = plan_traversal(network, PassType.INFERENCE, save_gradients=True)
    assert len(saved.slots) == len(saved.buffers)
    assert all(b.retained for b in saved.buffers.values())


def test_training_plan_backward_steps():
    network = build_network([layers.input(4), layers.linear_relu(3), layers.linear(2)])
    plan = plan_traversal(network, PassType.TRAINING)
    assert [(s.id, s.kind) for s in plan.backward] == [
        ('linear-2', StepKind.BACKWARD), ('linear-2', StepKind.PARAMETER_GRADIENT),
        ('relu-1', StepKind.BACKWARD),
        ('linear-1', StepKind.BACKWARD), ('linear-1', StepKind.PARAMETER_GRADIENT),
    ]
    assert plan.backward[1].outgoing == ('weights', 'bias')
    assert plan.backward[0].incoming == ('linear-2',) and plan.backward[0].outgoing == ('relu-1',)
    assert all(b.retained for b in plan.buffers.values())
    assert isinstance(plan.output_bindings['linear-2'].loss, MSELoss)
    assert len(plan.slots) == len(plan.buffers)


def test_dropout_only_in_training():
    network = build_network([layers.input(4), layers.dropout(0.5), layers.linear(2)])
    inference = plan_traversal(network, PassType.INFERENCE)
    assert [s.id for s in inference.forward] == ['linear-1']
    assert inference.node_buffers['dropout-1'] == 'input-1'
    training = plan_traversal(network, PassType.TRAINING)
    assert [s.id for s in training.forward] == ['dropout-1', 'linear-1']


def test_explicit_bindings():
    network = build_network([layers.input(4, id='x'), layers.linear(2, id='y')])
    plan = plan_traversal(network, 'training', {'x': 'features'}, {'y': {'stream': 'labels', 'loss': 'mse'}})
    assert plan.input_bindings == {'x': 'features'}
    assert plan.output_bindings['y'].stream == 'labels'


def test_binding_errors():
    network = build_network([layers.input(4, id='x'), layers.linear(2, id='y')])
    with pytest.raises(BindingError):
        plan_traversal(network, 'inference', input_bindings={'y': 'data'})
    with pytest.raises(BindingError):
        plan_traversal(network, 'inference', output_bindings={'x': {}})
    with pytest.raises(BindingError):
        plan_traversal(network, 'inference', input_bindings={})
    with pytest.raises(BindingError):
        plan_traversal(network, 'training', output_bindings={'y': {'loss': 'hinge'}})


def test_training_requires_every_leaf_bound():
    network = build_network([
        layers.input(4, id='x'),
        layers.linear(2, id='a', parents=['x']),
        layers.linear(3, id='b', parents=['x']),
    ])
    inference = plan_traversal(network, 'inference', output_bindings={'a': {}})
    assert list(inference.output_bindings) == ['a']
    with pytest.raises(BindingError):
        plan_traversal(network, 'training', output_bindings={'a': {}})
    training = plan_traversal(network, 'training')
    assert {b.stream for b in training.output_bindings.values()} == {'a', 'b'}
    # two consumers of x: the second backward step adds into its gradient
    assert [s.accumulate for s in training.backward if s.kind is StepKind.BACKWARD] == [False, True]


def test_invalid_network_cannot_be_planned():
    network = build_network([layers.input(4), layers.linear(3, input_size=5)])
    with pytest.raises(BuildError):
        plan_traversal(network, 'inference')


def test_traversal_helpers_return_new_network(mnist):
    planned = inference_traversal(mnist, batch_size=4)
    assert mnist.traversal is None
    assert planned.traversal.pass_type is PassType.INFERENCE
    assert planned.batch_size == 4
    assert training_traversal(mnist).traversal.pass_type is PassType.TRAINING


def test_topological_order_prefers_description_order():
    network = build_network([
        layers.input(4, id='x'),
        layers.relu(id='r', parents=['x']),
        layers.tanh(id='t', parents=['x']),
    ])
    assert topological_order(network) == ['x', 'r', 't']


def test_outputs_cannot_share_a_stream():
    network = build_network([
        layers.input(4, id='x'),
        layers.linear(2, id='a', parents=['x']),
        layers.linear(3, id='b', parents=['x']),
    ])
    with pytest.raises(BindingError):
        plan_traversal(network, 'inference', output_bindings={'a': 'out', 'b': 'out'})
    with pytest.raises(BindingError):
        plan_traversal(network, 'training', output_bindings={'a': {'stream': 'b'}, 'b': {}})
