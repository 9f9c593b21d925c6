"""Tests for layer description constructors and the metadata registry."""
import pytest

from netgraph import layers
from netgraph.errors import ConfigurationError
from netgraph.layers import Description, LayerKind, PassType


def test_input_description():
    (desc,) = layers.input(28, 28, 1)
    assert desc['type'] == 'input'
    assert desc['output_size'] == 784
    assert (desc['output_width'], desc['output_height'], desc['output_channels']) == (28, 28, 1)


def test_macro_constructors_expand_to_two_nodes():
    descs = layers.linear_relu(500)
    assert [d['type'] for d in descs] == ['linear', 'relu']
    assert descs[0]['output_size'] == 500
    assert [d['type'] for d in layers.linear_softmax(10)] == ['linear', 'softmax']


def test_extra_keys_are_merged():
    (desc,) = layers.linear(4, id='fc', l2_max_constraint=2.0)
    assert desc['id'] == 'fc'
    assert desc['l2_max_constraint'] == 2.0


@pytest.mark.parametrize('kwargs', [
    dict(kernel_dim=3, pad=0, stride=0, num_kernels=4),
    dict(kernel_dim=0, pad=0, stride=1, num_kernels=4),
    dict(kernel_dim=3, pad=-1, stride=1, num_kernels=4),
    dict(kernel_dim=3, pad=0, stride=1, num_kernels=0),
])
def test_convolutional_rejects_bad_arguments(kwargs):
    with pytest.raises(ConfigurationError):
        layers.convolutional(**kwargs)


@pytest.mark.parametrize('kwargs', [
    dict(kernel_dim=2, pad=0, stride=0),
    dict(kernel_dim=0, pad=0, stride=2),
])
def test_max_pooling_rejects_zero_stride_or_kernel(kwargs):
    with pytest.raises(ConfigurationError):
        layers.max_pooling(**kwargs)


def test_convolutional_always_floors():
    (desc,) = layers.convolutional(3, 0, 1, 4, dimension_op='ceil')
    assert desc['dimension_op'] == 'floor'


def test_max_pooling_defaults_to_ceil():
    (desc,) = layers.max_pooling(2, 0, 2)
    assert desc['dimension_op'] == 'ceil'
    with pytest.raises(ConfigurationError):
        layers.max_pooling(2, 0, 2, dimension_op='round')


def test_batch_normalization_epsilon():
    (desc,) = layers.batch_normalization(0.9)
    assert desc['epsilon'] == 1e-4
    assert layers.batch_normalization(0.9, epsilon=1e-5)[0]['epsilon'] == 1e-5
    with pytest.raises(ConfigurationError):
        layers.batch_normalization(0.9, epsilon=1e-6)


def test_dropout_arguments():
    assert layers.dropout(1.0)[0]['probability'] == 1.0
    with pytest.raises(ConfigurationError):
        layers.dropout(0.0)
    with pytest.raises(ConfigurationError):
        layers.dropout(1.5)
    assert layers.multiplicative_dropout(0.0)[0]['distribution'] == 'gaussian'
    with pytest.raises(ConfigurationError):
        layers.multiplicative_dropout(-0.1)


def test_configuration_error_is_value_error():
    with pytest.raises(ValueError):
        layers.linear(0)


def test_local_response_normalization_defaults():
    (desc,) = layers.local_response_normalization()
    assert (desc['k'], desc['n'], desc['alpha'], desc['beta']) == (2, 5, 1e-4, 0.75)


def test_pass_sets():
    assert layers.get_pass_set(layers.input(3)[0]) == frozenset()
    assert layers.get_pass_set(layers.dropout(0.5)[0]) == frozenset({PassType.TRAINING})
    assert layers.get_pass_set(layers.relu()[0]) == layers.ALL_PASSES


def test_unknown_type_uses_default_metadata():
    desc = Description(type='mystery')
    assert layers.get_layer_metadata(desc) is layers.DEFAULT_METADATA
    assert layers.get_parameter_descriptions(desc) == ()


def test_parameter_descriptions():
    keys = [p.key for p in layers.get_parameter_descriptions(layers.linear(3)[0])]
    assert keys == ['weights', 'bias']
    bn = layers.get_parameter_descriptions(layers.batch_normalization(0.9)[0])
    assert {p.key: p.trainable for p in bn} == {'scale': True, 'bias': True, 'means': False, 'variances': False}


def test_description_is_immutable():
    (desc,) = layers.relu()
    with pytest.raises(TypeError):
        desc['type'] = 'tanh'
    with pytest.raises(AttributeError):
        desc.foo = 1
    changed = desc.assoc(id='r')
    assert 'id' not in desc
    assert changed['id'] == 'r'
    assert 'id' not in changed.dissoc('id')
    with pytest.raises(ConfigurationError):
        Description(output_size=3)


def test_example_mnist_description():
    groups = layers.example_mnist_description()
    assert len(groups) == 7
    flat = [d['type'] for group in groups for d in group]
    assert flat == ['input', 'convolutional', 'max-pooling', 'convolutional', 'max-pooling',
                    'linear', 'relu', 'linear', 'softmax']
    assert LayerKind(flat[2]) is LayerKind.MAX_POOLING


def test_macro_extras_reach_the_activation():
    linear, softmax = layers.linear_softmax(8, output_channels=2, id='fc', name='head')
    assert softmax['output_channels'] == 2
    assert 'output_channels' not in linear
    assert linear['id'] == 'fc' and 'id' not in softmax
    assert linear['name'] == softmax['name'] == 'head'
    relu = layers.linear_relu(4, weights=[[0.0]], name='hidden')[1]
    assert relu['name'] == 'hidden' and 'weights' not in relu
