"""Utility helpers."""
from __future__ import annotations
import json
from typing import Any, Dict, List

import numpy as np


def one_hot(labels, num_classes: int) -> np.ndarray:
    labels = np.asarray(labels)
    y = np.zeros((labels.size, num_classes), dtype=np.float32)
    y[np.arange(labels.size), labels.reshape(-1)] = 1
    return y


def _plain(value):
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def serialize_nodes(nodes) -> List[Dict[str, Any]]:
    """Node descriptions as JSON-compatible dicts."""
    return [{k: _plain(v) for k, v in node.items()} for node in nodes]


def nodes_to_json(nodes) -> str:
    return json.dumps(serialize_nodes(nodes))


def nodes_from_json(text: str) -> List[Dict[str, Any]]:
    return json.loads(text)
