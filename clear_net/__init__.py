from .activations import ACTIVATION_FUNCTIONS, Activation, get_activation, softmax
from .config import NetworkConfig, RegularizationTotals, TrainingContext
from .conv import ConvolutionalLayer
from .costs import COST_FUNCTIONS, cross_entropy, get_cost, mean_squared_error
from .errors import ConfigurationError, NetworkError, ShapeMismatchError, UsageError
from .initializers import INITIALIZERS, get_initializer
from .layer import FullyConnectedLayer, Layer, LayerKind
from .network import Network
from .pool import PoolingLayer
from .specs import ConvLayer, FCLayer, PoolLayer

__version__ = "0.1.0"

__all__ = [
    "ACTIVATION_FUNCTIONS",
    "Activation",
    "COST_FUNCTIONS",
    "ConfigurationError",
    "ConvLayer",
    "ConvolutionalLayer",
    "FCLayer",
    "FullyConnectedLayer",
    "INITIALIZERS",
    "Layer",
    "LayerKind",
    "Network",
    "NetworkConfig",
    "NetworkError",
    "PoolLayer",
    "PoolingLayer",
    "RegularizationTotals",
    "ShapeMismatchError",
    "TrainingContext",
    "UsageError",
    "cross_entropy",
    "get_activation",
    "get_cost",
    "get_initializer",
    "mean_squared_error",
    "softmax",
]
