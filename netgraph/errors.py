"""Exception types raised by netgraph.

Build problems are not raised one at a time: the builder collects them as
``VerificationFailure`` records on the network. ``BuildError`` is what a
downstream stage raises when handed a network that still carries failures.
"""
from __future__ import annotations


class NetgraphError(Exception):
    """Base class for all netgraph errors."""


class ConfigurationError(NetgraphError, ValueError):
    """Invalid arguments passed to a layer constructor."""


class BindingError(NetgraphError):
    """A binding names a node that cannot be bound, or the backend cannot
    hold a planned buffer."""


class ExecutionError(NetgraphError, RuntimeError):
    """Fatal fault while executing a traversal."""


class BuildError(NetgraphError):
    def __init__(self, failures):
        self.failures = tuple(failures)
        lines = '\n'.join(f"  {f.node_id}: [{f.kind.value}] {f.message}" for f in self.failures)
        super().__init__(f"Description verification failed:\n{lines}")
