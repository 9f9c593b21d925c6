"""Example usage of netgraph: build the MNIST-style network, train it for a
few batches on random data, run inference and round-trip it through HDF5.

Auto thread configuration occurs when importing netgraph (sets BLAS threads to cpu cores).
"""
import numpy as np

import netgraph  # noqa: F401  triggers auto thread setup before numpy heavy ops
from netgraph import layers
from netgraph.build import build_network
from netgraph.data import Dataset
from netgraph.execute import ExecutionContext
from netgraph.io import load_network, save_network
from netgraph.optim import Adam


def main():
    network = build_network(layers.example_mnist_description(), seed=0)
    network.summary()

    rng = np.random.default_rng(0)
    images = rng.random((256, 28, 28, 1), dtype=np.float32)
    labels = rng.integers(0, 10, size=256)
    dataset = Dataset({'data': images, 'output': labels})

    optimizer = Adam(lr=1e-3).configure(weight_decay=1e-4, clip_norm=5.0)
    context = ExecutionContext()
    trained, history = context.train(network, dataset, optimizer, batch_size=32, epochs=2)
    print('Loss per epoch:', ', '.join(f"{v:.4f}" for v in history['loss']))

    preds = context.run(trained, images[:64], batch_size=32)['output']
    print('Prediction batch shape:', preds.shape)

    save_network('mnist.hdf5', trained)
    loaded = load_network('mnist.hdf5')
    reloaded = context.run(loaded, images[:64], batch_size=32)['output']
    print('Reloaded predictions match:', np.allclose(preds, reloaded, atol=1e-5))


if __name__ == '__main__':
    main()
