"""Optimizer, loss and data utility tests."""
import numpy as np
import pytest

from netgraph import layers
from netgraph.data import Dataset
from netgraph.losses import NAME2LOSS, MSELoss, SoftmaxCrossEntropyLoss, auto_bind_loss
from netgraph.optim import NAME2OPT, SGD, Adam
from netgraph.utils import nodes_from_json, nodes_to_json, one_hot


def test_sgd_returns_new_parameters():
    params = {'fc': {'weights': np.ones(3)}}
    grads = {'fc': {'weights': np.array([1.0, 0.0, -1.0])}}
    updated = SGD(lr=0.5).step(params, grads)
    np.testing.assert_allclose(updated['fc']['weights'], [0.5, 1.0, 1.5])
    np.testing.assert_array_equal(params['fc']['weights'], np.ones(3))


def test_sgd_momentum():
    opt = SGD(lr=1.0, momentum=0.5)
    params = {'n': {'w': np.zeros(1)}}
    grads = {'n': {'w': np.ones(1)}}
    params = opt.step(params, grads)
    params = opt.step(params, grads)
    np.testing.assert_allclose(params['n']['w'], [-2.5])


def test_adam_first_step_moves_by_lr():
    opt = Adam(lr=0.1)
    updated = opt.step({'n': {'w': np.array([1.0, -1.0])}}, {'n': {'w': np.array([3.0, -0.2])}})
    np.testing.assert_allclose(updated['n']['w'], [0.9, -0.9], atol=1e-6)


def test_weight_decay_and_clipping():
    opt = SGD(lr=1.0).configure(weight_decay=0.1, clip_norm=1.0)
    updated = opt.step({'n': {'w': np.array([10.0, 0.0])}}, {'n': {'w': np.array([0.0, 0.0])}})
    # decay gradient [1, 0] is already within the clip norm
    np.testing.assert_allclose(updated['n']['w'], [9.0, 0.0])
    clipped = opt.step({'n': {'w': np.zeros(2)}}, {'n': {'w': np.array([3.0, 4.0])}})
    np.testing.assert_allclose(clipped['n']['w'], [-0.6, -0.8])


def test_registries():
    assert NAME2OPT['adam'] is Adam
    assert NAME2LOSS['mse'] is MSELoss
    assert isinstance(auto_bind_loss(layers.softmax()[0]), SoftmaxCrossEntropyLoss)
    assert isinstance(auto_bind_loss(layers.linear(2)[0]), MSELoss)


def test_mse():
    loss = MSELoss()
    out = np.array([[1.0, 2.0]])
    assert loss.value(out, [[1.0, 0.0]]) == pytest.approx(2.0)
    np.testing.assert_allclose(loss.gradient(out, [[1.0, 0.0]]), [[0.0, 2.0]])


def test_cross_entropy_accepts_labels_or_one_hot():
    loss = SoftmaxCrossEntropyLoss()
    probs = np.array([[0.7, 0.2, 0.1], [0.1, 0.1, 0.8]])
    labels = np.array([0, 2])
    assert loss.value(probs, labels) == pytest.approx(loss.value(probs, one_hot(labels, 3)))
    assert loss.value(probs, labels) == pytest.approx(-(np.log(0.7) + np.log(0.8)) / 2)
    np.testing.assert_allclose(loss.gradient(probs, labels), (probs - one_hot(labels, 3)) / 2)


def test_one_hot():
    np.testing.assert_array_equal(one_hot([2, 0], 3), [[0, 0, 1], [1, 0, 0]])


def test_nodes_json_round_trip():
    nodes = layers.input(2, 2, 1) + layers.linear(3, weights=np.zeros((3, 4)))
    restored = nodes_from_json(nodes_to_json(nodes))
    assert restored[0]['output_size'] == 4
    assert restored[1]['weights'] == [[0.0] * 4] * 3


def test_dataset_batches():
    ds = Dataset({'data': np.arange(10), 'output': np.arange(10) * 2})
    batches = list(ds.batches(4, shuffle=False, num_threads=2))
    assert [len(b['data']) for b in batches] == [4, 4, 2]
    np.testing.assert_array_equal(batches[1]['output'], [8, 10, 12, 14])
    assert [len(b['data']) for b in ds.batches(4, drop_remainder=True)] == [4, 4]
    shuffled = list(ds.batches(10, rng=np.random.default_rng(0)))
    np.testing.assert_array_equal(shuffled[0]['output'], shuffled[0]['data'] * 2)


def test_dataset_rejects_ragged_streams():
    with pytest.raises(ValueError):
        Dataset({'data': np.zeros(3), 'output': np.zeros(4)})
    with pytest.raises(ValueError):
        Dataset({})
