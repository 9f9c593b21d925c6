"""netgraph - describe, build, plan and execute layer-graph neural networks on numpy.

Provides:
- Layer description constructors and the per-type metadata registry
- A builder that resolves sizes and collects verification failures
- Traversal planning (step order, buffer plan, input/output bindings)
- An execution context over a pluggable backend (numpy + numba by default)
- Import verification against reference layer outputs, gradient checks
- Losses, optimizers (SGD, Adam), HDF5 persistence and a threaded data loader
"""
import os as _os

def _auto_configure_threads():
    """Set BLAS / OpenMP thread counts to all available CPU cores if user
    hasn't specified them. Must run before NumPy loads heavy backends.

    Environment vars respected (won't override if already set):
    OMP_NUM_THREADS, OPENBLAS_NUM_THREADS, MKL_NUM_THREADS, NUMEXPR_NUM_THREADS.
    Disable by setting NETGRAPH_DISABLE_AUTO_THREADS=1.
    """
    if _os.environ.get('NETGRAPH_DISABLE_AUTO_THREADS') == '1':
        return
    cores = _os.cpu_count() or 1
    for var in [
        'OMP_NUM_THREADS', 'OPENBLAS_NUM_THREADS', 'MKL_NUM_THREADS', 'NUMEXPR_NUM_THREADS'
    ]:
        if var not in _os.environ:
            _os.environ[var] = str(cores)

_auto_configure_threads()

from . import layers, build, traverse, backend, numpy_backend, execute, losses, optim, data, utils, io  # noqa: E402
from .build import Network, build_network  # noqa: E402
from .errors import BindingError, BuildError, ConfigurationError, ExecutionError, NetgraphError  # noqa: E402
from .execute import BoundNetwork, ExecutionContext  # noqa: E402
from .numpy_backend import NumpyBackend  # noqa: E402
from .traverse import inference_traversal, training_traversal  # noqa: E402
from . import verify  # noqa: E402

__all__ = [
    'layers', 'build', 'traverse', 'backend', 'numpy_backend', 'execute', 'losses', 'optim', 'data',
    'utils', 'io', 'verify', 'Network', 'build_network', 'inference_traversal', 'training_traversal',
    'ExecutionContext', 'BoundNetwork', 'NumpyBackend', 'NetgraphError', 'ConfigurationError',
    'BindingError', 'BuildError', 'ExecutionError', '_auto_configure_threads',
]
