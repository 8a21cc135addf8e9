"""
Volume utilities - pure functions on spatial maps and volumes.

A map is a square 2D array (height == width). A volume is a stack of maps,
shaped (channels, size, size). Nothing here keeps state: layers pass in their
current activations, weights and error maps, and receive new arrays back, or
have the accumulator arrays they pass in incremented in place.

Main components:
1. Shape helpers: out_map_size, add_zero_padding, array_to_map, array_to_volume
2. Forward convolution (cross-correlation, no kernel flip): convolve
3. Error back-projection through a convolution (transposed convolution): build_conv_error_map
4. Weight-gradient accumulation for a convolutional layer: build_conv_delta_weights
"""
import logging
import math
from typing import Optional

import numpy as np


def out_map_size(in_size: int, filter_size: int, zero_padding: int, stride: int) -> float:
    """
    Spatial size of the map produced by sliding a window over an input map.

    Returns (W - F + 2P) / S + 1 as a float. A non-integer result means the
    hyperparameters do not tile the input, which callers treat as a
    configuration error.
    """
    return (in_size - filter_size + 2 * zero_padding) / stride + 1


def add_zero_padding(map_2d: np.ndarray, zero_padding: int) -> np.ndarray:
    """Returns a copy of the map with `zero_padding` rows/columns of zeros on every edge."""
    map_2d = np.asarray(map_2d, dtype=float)
    if zero_padding <= 0:
        return map_2d.copy()
    return np.pad(map_2d, zero_padding, mode='constant', constant_values=0)


def array_to_map(values: np.ndarray, size: int) -> np.ndarray:
    """Reshape the first size*size values of a flat array into a (size, size) map."""
    values = np.asarray(values, dtype=float).ravel()
    return values[:size * size].reshape(size, size)


def array_to_volume(values: np.ndarray, channels: int, size: Optional[int] = None) -> np.ndarray:
    """
    Reshape a flat array into a (channels, size, size) volume.

    Args:
        values: Flat activations, channel-major then row-major.
        channels: Number of maps in the volume.
        size: Width of each map. Defaults to sqrt(len(values) / channels).

    Returns:
        The volume. Trailing values that don't fill a whole map are dropped.
    """
    values = np.asarray(values, dtype=float).ravel()
    if size is None:
        size = int(math.sqrt(values.size / channels))
    map_values = size * size
    depth = min(channels, values.size // map_values) if map_values else 0
    return values[:depth * map_values].reshape(depth, size, size)


def convolve(input_volume: np.ndarray, weights: np.ndarray, bias: float,
             zero_padding: int, stride: int) -> np.ndarray:
    """
    Forward pass of one filter over an input volume.

    For each output cell (oy, ox):
        sum = bias + Σ_c Σ_ky Σ_kx padded[c][oy*S + ky][ox*S + kx] * weights[c][ky][kx]

    Args:
        input_volume: Activations of the previous layer, (channels, W, W).
        weights: The filter's weights, (channels, F, F).
        bias: The filter's bias.
        zero_padding: Zero padding P added on every edge of each input map.
        stride: Stride S of the sliding window.

    Returns:
        The filter's sum map, shape (out, out) with out = (W - F + 2P)/S + 1.
    """
    channels, filter_size = weights.shape[0], weights.shape[1]
    padded = np.stack([add_zero_padding(input_volume[c], zero_padding) for c in range(channels)])
    out_size = (padded.shape[1] - filter_size) // stride + 1

    sum_map = np.zeros((out_size, out_size))
    for out_y in range(out_size):
        for out_x in range(out_size):
            vert_start = out_y * stride
            horiz_start = out_x * stride
            # Receptive field across all channels, (channels, F, F)
            window = padded[:, vert_start:vert_start + filter_size, horiz_start:horiz_start + filter_size]
            sum_map[out_y, out_x] = np.sum(window * weights)

    return sum_map + bias


def build_conv_error_map(next_weights: np.ndarray, next_error_maps: np.ndarray, map_size: int,
                         zero_padding: int, stride: int) -> np.ndarray:
    """
    Back-projects the errors of the following convolutional layer onto one of
    this layer's maps (transposed convolution).

    Starting from a zero map padded by the next layer's zero padding, every
    next-layer filter g scatters each of its output errors back across the
    window that produced it:

        padded[oy*S + ky][ox*S + kx] += next_weights[g][ky][kx] * next_error_maps[g][oy][ox]

    The padding is then stripped off again. This is the backward dual of the
    gather performed by `convolve`.

    Args:
        next_weights: The slice of each next-layer filter that reads this map,
                      i.e. next_layer.weights[:, this_map_index], shape (G, F, F).
        next_error_maps: Error maps of the next layer's filters, (G, out, out).
        map_size: Width of this layer's map (the next layer's input width).
        zero_padding: The next layer's zero padding.
        stride: The next layer's stride.

    Returns:
        The error map for this layer's map, shape (map_size, map_size).
    """
    filter_size = next_weights.shape[-1]
    padded_size = map_size + 2 * zero_padding
    padded = np.zeros((padded_size, padded_size))
    out_size = next_error_maps.shape[-1]

    for g in range(next_weights.shape[0]):
        for out_y in range(out_size):
            for out_x in range(out_size):
                vert_start = out_y * stride
                horiz_start = out_x * stride
                padded[vert_start:vert_start + filter_size, horiz_start:horiz_start + filter_size] += \
                    next_weights[g] * next_error_maps[g, out_y, out_x]

    return padded[zero_padding:zero_padding + map_size, zero_padding:zero_padding + map_size]


def build_conv_delta_weights(input_volume: np.ndarray, weights: np.ndarray, error_maps: np.ndarray,
                             delta_weights: np.ndarray, delta_biases: np.ndarray,
                             zero_padding: int, stride: int, regularization: float = 0.0):
    """
    Accumulates a convolutional layer's weight and bias gradients, in place.

    For each filter f, each window position (oy, ox) and each kernel offset:

        delta_weights[f][c][ky][kx] += padded[c][oy*S+ky][ox*S+kx]
                                       * (1 + regularization * weights[f][c][ky][kx])
                                       * error_maps[f][oy][ox]

    and delta_biases[f] += Σ error_maps[f].

    Args:
        input_volume: The previous layer's activations, (channels, W, W).
        weights: The layer's weights, (filters, channels, F, F).
        error_maps: The layer's error maps (derivative already applied), (filters, out, out).
        delta_weights: Weight-gradient accumulator, same shape as weights. Modified in place.
        delta_biases: Bias-gradient accumulator, (filters,). Modified in place.
        zero_padding: The layer's zero padding.
        stride: The layer's stride.
        regularization: (l2 + l1) / mini_batch_size, folded into the weight gradient.
    """
    filter_size = weights.shape[-1]
    padded = np.stack([add_zero_padding(channel_map, zero_padding) for channel_map in input_volume])
    out_size = error_maps.shape[-1]

    for f in range(weights.shape[0]):
        regularized_input_scale = 1 + regularization * weights[f]
        for out_y in range(out_size):
            for out_x in range(out_size):
                vert_start = out_y * stride
                horiz_start = out_x * stride
                window = padded[:, vert_start:vert_start + filter_size, horiz_start:horiz_start + filter_size]
                delta_weights[f] += window * regularized_input_scale * error_maps[f, out_y, out_x]

        delta_biases[f] += np.sum(error_maps[f])

    logging.debug(f"Accumulated conv delta weights for {weights.shape[0]} filters over {out_size}x{out_size} positions")
