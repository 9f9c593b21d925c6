"""Backend capability interface and scoped resource tracking.

The execution context only talks to a backend through ``Backend``. Layer
computations are pure: they receive the node description, the input
buffer, parameters and per-node state, and return new values.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, List, Tuple

logger = logging.getLogger(__name__)


class ResourceContext:
    """Tracks backend handles acquired inside a scope and releases them,
    newest first, when the scope exits.

    Use as a context manager::

        with backend.resource_context() as scope:
            bound = context.bind(network, scope)
    """

    def __init__(self, backend: 'Backend'):
        self.backend = backend
        self._handles: List[Any] = []
        self.closed = False

    def track(self, handle):
        if self.closed:
            raise RuntimeError("resource scope is already closed")
        self._handles.append(handle)
        return handle

    def __len__(self):
        return len(self._handles)

    def release_all(self):
        handles, self._handles = self._handles, []
        self.closed = True
        error = None
        for handle in reversed(handles):
            try:
                self.backend.release(handle)
            except Exception as e:  # keep releasing the rest, then re-raise the first failure
                logger.error("Failed to release backend handle: %s", e)
                error = error or e
        logger.debug("Released %d backend handles", len(handles))
        if error is not None:
            raise error

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release_all()
        return False


class Backend:
    """Abstract numerical backend."""
    dtype: Any = None

    def resource_context(self) -> ResourceContext:
        return ResourceContext(self)

    # Buffers

    def allocate(self, shape: Tuple[int, ...]):
        raise NotImplementedError

    def release(self, handle):
        raise NotImplementedError

    def supports_shape(self, shape: Tuple[int, ...]) -> bool:
        raise NotImplementedError

    def assign(self, handle, value):
        """Copy ``value`` into ``handle``; returns the handle."""
        raise NotImplementedError

    def accumulate(self, target, value):
        """Return ``target + value`` as a new array."""
        raise NotImplementedError

    def zeros_like(self, handle):
        raise NotImplementedError

    def to_numpy(self, handle):
        raise NotImplementedError

    def from_numpy(self, array):
        raise NotImplementedError

    # Layer computations

    def has_prepare_forward(self, node) -> bool:
        return False

    def prepare_forward(self, node, shape: Tuple[int, ...], state: Dict[str, Any]) -> Dict[str, Any]:
        """Refresh per-traversal node state (e.g. a dropout mask)."""
        return state

    def forward(self, node, x, parameters: Dict[str, Any], state: Dict[str, Any],
                training: bool) -> Tuple[Any, Dict[str, Any]]:
        """Return the node output and any non-trainable parameter updates."""
        raise NotImplementedError

    def backward(self, node, x, y, dy, parameters: Dict[str, Any],
                 state: Dict[str, Any]) -> Tuple[Any, Dict[str, Any]]:
        """Return the input gradient and the trainable parameter gradients."""
        raise NotImplementedError
