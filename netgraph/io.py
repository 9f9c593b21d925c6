"""Saving and loading networks as HDF5 files via h5py.

Layout: the node descriptions are stored as JSON in the ``layer_graph``
attribute of the root group, parameters as ``parameters/<node>/<key>``
datasets.
"""
from __future__ import annotations
import logging
from typing import Dict, Optional

import h5py
import numpy as np

from . import utils
from .build import Network, build_network

logger = logging.getLogger(__name__)


def save_weights_hdf5(path: str, parameters: Dict[str, Dict[str, np.ndarray]]):
    with h5py.File(path, 'a') as f:
        if 'parameters' in f:
            del f['parameters']
        group = f.create_group('parameters')
        for node_id, params in parameters.items():
            node_group = group.create_group(node_id)
            for key, value in params.items():
                node_group.create_dataset(key, data=np.asarray(value))


def load_weights_hdf5(path: str) -> Dict[str, Dict[str, np.ndarray]]:
    with h5py.File(path, 'r') as f:
        if 'parameters' not in f:
            return {}
        return {node_id: {key: group[key][()] for key in group.keys()}
                for node_id, group in f['parameters'].items()}


def save_network(path: str, network: Network):
    """Write the descriptions and parameters of ``network`` to ``path``."""
    with h5py.File(path, 'w') as f:
        f.attrs['layer_graph'] = utils.nodes_to_json(network.id_to_node.values())
    save_weights_hdf5(path, network.parameters)
    logger.debug("Saved %d nodes to %s", len(network.id_to_node), path)


def load_network(path: str, seed: Optional[int] = None) -> Network:
    """Rebuild a network saved with ``save_network``."""
    with h5py.File(path, 'r') as f:
        text = f.attrs['layer_graph']
    if isinstance(text, bytes):
        text = text.decode('utf-8')
    weights = load_weights_hdf5(path)
    nodes = [{**node, **weights.get(node['id'], {})} for node in utils.nodes_from_json(text)]
    return build_network(nodes, seed=seed)
