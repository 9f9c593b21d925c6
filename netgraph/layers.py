"""Layer descriptions and per-kind layer metadata.

Descriptions are the canonical representation of layers. They are plain,
immutable mappings with a required ``type`` key; constructors accept extra
keyword arguments which are merged into the description, so implementations
must tolerate keys they do not know about.

Every constructor returns a list of descriptions. Most return a single
entry; the ``linear_*`` helpers expand to a linear layer followed by an
activation.
"""
from __future__ import annotations
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Tuple

from .errors import ConfigurationError

MIN_BATCH_NORM_EPSILON = 1e-5


class LayerKind(str, Enum):
    INPUT = 'input'
    LINEAR = 'linear'
    SOFTMAX = 'softmax'
    RELU = 'relu'
    LOGISTIC = 'logistic'
    TANH = 'tanh'
    DROPOUT = 'dropout'
    CONVOLUTIONAL = 'convolutional'
    MAX_POOLING = 'max-pooling'
    BATCH_NORMALIZATION = 'batch-normalization'
    LOCAL_RESPONSE_NORMALIZATION = 'local-response-normalization'


class PassType(str, Enum):
    TRAINING = 'training'
    INFERENCE = 'inference'


class ParameterType(str, Enum):
    WEIGHT = 'weight'
    BIAS = 'bias'
    SCALE = 'scale'
    MEAN = 'mean'
    VARIANCE = 'variance'


class Description(Mapping):
    """Immutable layer description."""
    __slots__ = ('_data',)

    def __init__(self, *args, **kwargs):
        data = dict(*args, **kwargs)
        if 'type' not in data:
            raise ConfigurationError(f"Layer description requires a 'type': {data!r}")
        object.__setattr__(self, '_data', data)

    def __setattr__(self, name, value):
        raise AttributeError("Description is immutable")

    def __getitem__(self, key):
        return self._data[key]

    def __iter__(self):
        return iter(self._data)

    def __len__(self):
        return len(self._data)

    def __repr__(self):
        return f"Description({self._data!r})"

    @property
    def type(self) -> str:
        return self._data['type']

    def assoc(self, **updates) -> 'Description':
        return Description({**self._data, **updates})

    def dissoc(self, *keys) -> 'Description':
        return Description({k: v for k, v in self._data.items() if k not in keys})

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._data)


def _describe(base: Dict[str, Any], extra: Dict[str, Any]) -> Description:
    return Description({**base, **extra})


@dataclass(frozen=True)
class ParameterDescription:
    """One parameter buffer owned by a layer.

    ``shape_fn`` maps the built (size-resolved) description to the buffer
    shape. Non-trainable buffers (batch-norm running statistics) are updated
    by the forward pass instead of the optimizer.
    """
    key: str
    type: ParameterType
    shape_fn: Callable[[Mapping], Tuple[int, ...]]
    trainable: bool = True


@dataclass(frozen=True)
class LayerMetadata:
    parameter_descriptions: Tuple[ParameterDescription, ...]
    pass_set: FrozenSet[PassType]


ALL_PASSES = frozenset({PassType.TRAINING, PassType.INFERENCE})

DEFAULT_METADATA = LayerMetadata((), ALL_PASSES)


# Shape functions

def linear_weight_shape(desc):
    return (desc['output_size'], desc['input_size'])


def linear_bias_shape(desc):
    return (desc['output_size'],)


def convolutional_weight_shape(desc):
    return (desc['num_kernels'], desc['kernel_width'] * desc['kernel_height'] * desc['input_channels'])


def convolutional_bias_shape(desc):
    return (desc['num_kernels'],)


_WEIGHTED = (
    ParameterDescription('weights', ParameterType.WEIGHT, linear_weight_shape),
    ParameterDescription('bias', ParameterType.BIAS, linear_bias_shape),
)

LAYER_METADATA: Dict[LayerKind, LayerMetadata] = {
    LayerKind.INPUT: LayerMetadata((), frozenset()),
    LayerKind.LINEAR: LayerMetadata(_WEIGHTED, ALL_PASSES),
    LayerKind.DROPOUT: LayerMetadata((), frozenset({PassType.TRAINING})),
    LayerKind.CONVOLUTIONAL: LayerMetadata((
        ParameterDescription('weights', ParameterType.WEIGHT, convolutional_weight_shape),
        ParameterDescription('bias', ParameterType.BIAS, convolutional_bias_shape),
    ), ALL_PASSES),
    LayerKind.BATCH_NORMALIZATION: LayerMetadata((
        ParameterDescription('scale', ParameterType.SCALE, linear_bias_shape),
        ParameterDescription('bias', ParameterType.BIAS, linear_bias_shape),
        ParameterDescription('means', ParameterType.MEAN, linear_bias_shape, trainable=False),
        ParameterDescription('variances', ParameterType.VARIANCE, linear_bias_shape, trainable=False),
    ), ALL_PASSES),
}

# Dimension rounding for the spatial layers. Convolution must floor so the
# output matches what the backend kernels compute.
DEFAULT_DIMENSION_OP = {
    LayerKind.CONVOLUTIONAL: 'floor',
    LayerKind.MAX_POOLING: 'ceil',
}


def layer_kind(desc) -> LayerKind:
    """Return the LayerKind for a description; raises ValueError for unknown types."""
    return LayerKind(desc['type'])


def get_layer_metadata(desc) -> LayerMetadata:
    try:
        kind = layer_kind(desc)
    except ValueError:
        return DEFAULT_METADATA
    return LAYER_METADATA.get(kind, DEFAULT_METADATA)


def get_parameter_descriptions(desc) -> Tuple[ParameterDescription, ...]:
    return get_layer_metadata(desc).parameter_descriptions


def get_pass_set(desc) -> FrozenSet[PassType]:
    """Pass types the layer takes part in.

    Empty for placeholders such as input layers, ``{training}`` for layers
    that only act while training (dropout).
    """
    return get_layer_metadata(desc).pass_set


# Constructors

def input(width: int, height: int = 1, channels: int = 1, **extra) -> List[Description]:
    for name, value in (('width', width), ('height', height), ('channels', channels)):
        if value < 1:
            raise ConfigurationError(f"Input {name} must be >= 1, got {value}")
    return [_describe({'type': LayerKind.INPUT.value,
                       'output_size': width * height * channels,
                       'output_width': width,
                       'output_height': height,
                       'output_channels': channels}, extra)]


def linear(num_output: int, **extra) -> List[Description]:
    if num_output < 1:
        raise ConfigurationError(f"Linear layers must have >= 1 outputs, got {num_output}")
    return [_describe({'type': LayerKind.LINEAR.value, 'output_size': num_output}, extra)]


def softmax(output_channels: int = 1, **extra) -> List[Description]:
    """Softmax which may be multi-channelled. The data is planar: channel
    one's outputs are followed in memory by channel two's."""
    if output_channels < 1:
        raise ConfigurationError(f"Softmax output_channels must be >= 1, got {output_channels}")
    return [_describe({'type': LayerKind.SOFTMAX.value, 'output_channels': output_channels}, extra)]


def relu(**extra) -> List[Description]:
    return [_describe({'type': LayerKind.RELU.value}, extra)]


def logistic(**extra) -> List[Description]:
    return [_describe({'type': LayerKind.LOGISTIC.value}, extra)]


def tanh(**extra) -> List[Description]:
    return [_describe({'type': LayerKind.TANH.value}, extra)]


# Keys that only make sense on the linear half of a linear->activation pair.
LINEAR_ONLY_KEYS = frozenset({'id', 'parents', 'weights', 'bias', 'input_size', 'output_size'})


def _activation_extra(extra):
    """Extra keys shared with the activation half of a macro."""
    return {k: v for k, v in extra.items() if k not in LINEAR_ONLY_KEYS}


def linear_softmax(num_classes: int, output_channels: int = 1, **extra) -> List[Description]:
    return linear(num_classes, **extra) + softmax(output_channels, **_activation_extra(extra))


def linear_relu(num_output: int, **extra) -> List[Description]:
    return linear(num_output, **extra) + relu(**_activation_extra(extra))


def linear_logistic(num_output: int, **extra) -> List[Description]:
    return linear(num_output, **extra) + logistic(**_activation_extra(extra))


def linear_tanh(num_output: int, **extra) -> List[Description]:
    return linear(num_output, **extra) + tanh(**_activation_extra(extra))


def dropout(probability: float, **extra) -> List[Description]:
    """Bernoulli dropout. ``probability`` is the chance an activation
    survives: 1 means no dropout."""
    if not 0.0 < probability <= 1.0:
        raise ConfigurationError(f"Dropout probability must be in (0, 1], got {probability}")
    return [_describe({'type': LayerKind.DROPOUT.value,
                       'distribution': 'bernoulli',
                       'probability': probability}, extra)]


def multiplicative_dropout(variance: float, **extra) -> List[Description]:
    """Gaussian dropout: activations are multiplied by noise drawn around 1.
    A variance of 0 leaves the input unchanged."""
    if variance < 0:
        raise ConfigurationError(f"Dropout variance must be >= 0, got {variance}")
    return [_describe({'type': LayerKind.DROPOUT.value,
                       'distribution': 'gaussian',
                       'variance': variance}, extra)]


def convolutional_type_layer(layer_type: LayerKind, kernel_width: int, kernel_height: int,
                             pad_x: int, pad_y: int, stride_x: int, stride_y: int,
                             num_kernels: int, dimension_op: str, **extra) -> Description:
    if stride_x < 1 or stride_y < 1:
        raise ConfigurationError(f"Convolutional layers must have stride >= 1, got ({stride_x}, {stride_y})")
    if kernel_width < 1 or kernel_height < 1:
        raise ConfigurationError(
            f"Convolutional layers must have kernel dimensions >= 1, got ({kernel_width}, {kernel_height})")
    if pad_x < 0 or pad_y < 0:
        raise ConfigurationError(f"Padding must be >= 0, got ({pad_x}, {pad_y})")
    if dimension_op not in ('floor', 'ceil'):
        raise ConfigurationError(f"Unknown dimension op {dimension_op!r}")
    return _describe({'type': layer_type.value,
                      'kernel_width': kernel_width, 'kernel_height': kernel_height,
                      'pad_x': pad_x, 'pad_y': pad_y,
                      'stride_x': stride_x, 'stride_y': stride_y,
                      'num_kernels': num_kernels,
                      'dimension_op': dimension_op}, extra)


def convolutional(kernel_dim: int, pad: int, stride: int, num_kernels: int, **extra) -> List[Description]:
    if num_kernels < 1:
        raise ConfigurationError(f"Convolutional layers need >= 1 kernels, got {num_kernels}")
    # floor is forced whatever the caller passed
    extra = {k: v for k, v in extra.items() if k != 'dimension_op'}
    return [convolutional_type_layer(LayerKind.CONVOLUTIONAL, kernel_dim, kernel_dim, pad, pad,
                                     stride, stride, num_kernels, 'floor', **extra)]


def max_pooling(kernel_dim: int, pad: int, stride: int, dimension_op: str = 'ceil', **extra) -> List[Description]:
    return [convolutional_type_layer(LayerKind.MAX_POOLING, kernel_dim, kernel_dim, pad, pad,
                                     stride, stride, 0, dimension_op, **extra)]


def batch_normalization(average_factor: float, epsilon: float = 1e-4, **extra) -> List[Description]:
    """Batch normalization (https://arxiv.org/abs/1502.03167).

    ``average_factor`` weights the current batch when updating the running
    mean and variance: ``running = (1 - f) * running + f * batch``.
    ``epsilon`` stabilizes the inverse standard deviation.
    """
    if epsilon < MIN_BATCH_NORM_EPSILON:
        raise ConfigurationError(
            f"batch-normalization minimum epsilon is {MIN_BATCH_NORM_EPSILON}, got {epsilon}")
    if not 0.0 <= average_factor <= 1.0:
        raise ConfigurationError(f"average_factor must be in [0, 1], got {average_factor}")
    return [_describe({'type': LayerKind.BATCH_NORMALIZATION.value,
                       'average_factor': average_factor,
                       'epsilon': epsilon}, extra)]


def local_response_normalization(k: float = 2, n: int = 5, alpha: float = 1e-4, beta: float = 0.75,
                                 **extra) -> List[Description]:
    """Cross-channel normalization, section 3.3 of
    http://www.cs.toronto.edu/~fritz/absps/imagenet.pdf"""
    if n < 1:
        raise ConfigurationError(f"local-response-normalization n must be >= 1, got {n}")
    return [_describe({'type': LayerKind.LOCAL_RESPONSE_NORMALIZATION.value,
                       'k': k, 'n': n, 'alpha': alpha, 'beta': beta}, extra)]


def network_description(layer_graph, **extra) -> Dict[str, Any]:
    return {'layer_graph': layer_graph, **extra}


def example_mnist_description() -> List[List[Description]]:
    return [
        input(28, 28, 1),
        convolutional(5, 0, 1, 20),
        max_pooling(2, 0, 2),
        convolutional(5, 0, 1, 50),
        max_pooling(2, 0, 2),
        linear_relu(500),
        linear_softmax(10),
    ]
