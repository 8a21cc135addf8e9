"""
Layer specifications and network wiring.

A spec records only what the user chose for a layer (its size and optional
hyperparameters). `wire_layers` turns a list of specs into fully shaped layers
in a single pass: it resolves defaults from the network config, links each
layer to its neighbours and allocates parameters. Nothing half-built escapes it.
"""
import math
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Union

import numpy as np

from .activations import ELU, Activation, LReLU, RReLU, get_activation
from .config import NetworkConfig, normalize_name
from .conv import ConvolutionalLayer
from .errors import ConfigurationError
from .initializers import get_initializer
from .layer import FullyConnectedLayer, Initializer, Layer
from .pool import PoolingLayer

# None inherits the network's activation, False disables it
ActivationSpec = Union[str, Activation, bool, None]


@dataclass
class FCLayer:
    """A fully connected layer of `size` neurons."""
    size: int
    activation: ActivationSpec = None


@dataclass
class ConvLayer:
    """A convolutional layer of `size` filters. Unset hyperparameters come from the network config."""
    size: Optional[int] = None
    filter_size: Optional[int] = None
    zero_padding: Optional[int] = None
    stride: Optional[int] = None
    activation: ActivationSpec = None


@dataclass
class PoolLayer:
    """A max pooling layer with a `size`×`size` window. It has no activation unless given one."""
    size: Optional[int] = None
    stride: Optional[int] = None
    activation: ActivationSpec = False


LayerSpec = Union[FCLayer, ConvLayer, PoolLayer]


def default_layer_sizes(input_size: int, output_size: int) -> List[int]:
    """
    Input, hidden and output sizes for a network built from the first training example.

    The hidden layer holds input + output neurons, or, when the input is more
    than five times the output, output + |input - output| / 4.
    """
    if input_size / output_size > 5:
        hidden = output_size + abs(input_size - output_size) / 4
    else:
        hidden = input_size + output_size
    return [input_size, int(math.ceil(hidden)), int(math.ceil(output_size))]


def to_specs(layers: Sequence[Any]) -> List[LayerSpec]:
    """
    Validates a user-supplied layers list.

    Raises:
        ConfigurationError: If the list mixes integers and specs, or holds anything else.
    """
    if all(isinstance(item, int) and not isinstance(item, bool) for item in layers):
        return [FCLayer(size) for size in layers]
    if all(isinstance(item, (FCLayer, ConvLayer, PoolLayer)) for item in layers):
        return list(layers)
    raise ConfigurationError("There was an error constructing from the layers given. Pass either only "
                             "integer sizes or only FCLayer/ConvLayer/PoolLayer specs.")


def build_activation(activation: Any, config: NetworkConfig, slope_shape=None) -> Optional[Activation]:
    """
    Resolves an activation setting into an Activation instance.

    Args:
        activation: A name, an Activation, or False for none.
        config: Supplies the lrelu slope and the elu alpha.
        slope_shape: Shape of the per-unit rrelu slopes. None draws one shared slope.
    """
    if activation is False or activation is None:
        return None
    if isinstance(activation, Activation):
        return activation

    name = normalize_name(activation)
    if name == "lrelu":
        return LReLU(slope=config.lrelu_slope)
    if name == "rrelu":
        slope = np.random.random(slope_shape) * 0.001 if slope_shape is not None else None
        return RReLU(slope=slope)
    if name == "elu":
        return ELU(alpha=config.elu_alpha)
    return get_activation(name)


def _initializer(config: NetworkConfig, fan_in: int, fan_out: Optional[int]) -> Initializer:
    distribution = get_initializer(config.weights.distribution)
    parameters = config.weights.parameters()

    def initialize(shape):
        return distribution(shape, fan_in=fan_in, fan_out=fan_out, **parameters)

    return initialize


def _fan_out(specs: Sequence[LayerSpec], index: int, channels: int) -> Optional[int]:
    """Unit count of the spec after `index`, or None for the output layer."""
    if index + 1 >= len(specs):
        return None
    nxt = specs[index + 1]
    if isinstance(nxt, FCLayer):
        return nxt.size
    if isinstance(nxt, ConvLayer):
        return nxt.size or 4
    # A pooling layer keeps one unit per channel it reads
    return channels


def _input_channels(prev: Layer, config: NetworkConfig) -> int:
    if isinstance(prev, FullyConnectedLayer):
        return config.channels or 1
    return prev.channels


def wire_layers(specs: Sequence[LayerSpec], config: NetworkConfig) -> List[Layer]:
    """
    Builds the wired layers of a network from its specs.

    The first spec must be a fully connected layer: it becomes the input layer.

    Raises:
        ConfigurationError: On an invalid layer list or inconsistent hyperparameters.
    """
    if len(specs) < 2:
        raise ConfigurationError(f"A network needs at least an input and an output layer, got {len(specs)} layers")
    if not isinstance(specs[0], FCLayer):
        raise ConfigurationError("The first layer must be a fully connected input layer")

    network_activation = config.activation
    layers: List[Layer] = [FullyConnectedLayer(specs[0].size, index=0)]

    for index in range(1, len(specs)):
        spec = specs[index]
        prev = layers[-1]
        activation = network_activation if spec.activation is None else spec.activation

        if isinstance(spec, FCLayer):
            layer = FullyConnectedLayer(
                spec.size,
                index=index,
                activation=build_activation(activation, config, slope_shape=(spec.size,)),
                prev=prev,
                initializer=_initializer(config, prev.size, _fan_out(specs, index, spec.size)),
                update_fn=config.update_fn,
            )

        elif isinstance(spec, ConvLayer):
            filters = spec.size or 4
            filter_size = spec.filter_size or config.conv.filter_size or 3
            stride = spec.stride or config.conv.stride or 1
            zero_padding = spec.zero_padding
            if zero_padding is None:
                zero_padding = filter_size // 2 if config.conv.zero_padding is None else config.conv.zero_padding

            layer = ConvolutionalLayer(
                filters,
                index=index,
                prev=prev,
                in_channels=_input_channels(prev, config),
                filter_size=filter_size,
                zero_padding=zero_padding,
                stride=stride,
                activation=build_activation(activation, config, slope_shape=(filters, 1, 1)),
                initializer=_initializer(config, prev.size, _fan_out(specs, index, filters)),
                update_fn=config.update_fn,
                dropout_enabled=config.dropout != 1,
            )

        else:
            pool_size = spec.size or config.pool.size or 2
            layer = PoolingLayer(
                pool_size,
                index=index,
                prev=prev,
                channels=_input_channels(prev, config),
                stride=spec.stride or config.pool.stride or pool_size,
                activation=build_activation(spec.activation, config),
            )

        prev.next = layer
        layers.append(layer)

    logging.debug(f"Wired {len(layers)} layers: {[repr(layer) for layer in layers]}")
    return layers
