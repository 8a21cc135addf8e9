import numpy as np
from typing import Optional
import logging

from .activations import Activation
from .config import TrainingContext
from .errors import ConfigurationError
from .layer import Layer, LayerKind
from .volume import out_map_size


class PoolingLayer(Layer):
    """
    Max pooling over every channel of the previous layer's volume.

    Has no parameters. Forward records, for every output cell, the in-window
    offset of the value it picked, so backward can route that cell's error to
    exactly one input position.

    Key Attributes:
        pool_size (int): Width of the pooling window.
        stride (int): Step between windows.
        in_map_size (int): Width of each input map.
        activations (np.ndarray): (channels, out, out) pooled values.
        errors (np.ndarray): (channels, in, in) errors routed back to the input.
        indices (np.ndarray): (channels, out, out, 2) argmax (row, col) offsets within each window.
    """

    kind = LayerKind.POOLING

    def __init__(self, pool_size: int, index: int, prev: Layer, channels: int,
                 stride: Optional[int] = None, activation: Optional[Activation] = None):
        super().__init__(channels, index, activation)
        self.prev = prev
        self.pool_size = pool_size
        self.stride = stride or pool_size
        self.channels = channels
        self.in_channels = channels
        self.in_map_size = prev.map_size_for(channels)

        out_size = out_map_size(self.in_map_size, pool_size, 0, self.stride)
        if out_size % 1 != 0 or out_size < 1:
            raise ConfigurationError(f"Misconfigured hyperparameters. Activation volume dimensions would be "
                                     f"{out_size} in pool layer at index {index}")
        self.out_map_size = int(out_size)

        self.activations = np.zeros((channels, self.out_map_size, self.out_map_size))
        self.errors = np.zeros((channels, self.in_map_size, self.in_map_size))
        self.indices = np.zeros((channels, self.out_map_size, self.out_map_size, 2), dtype=int)

        logging.debug(
            f"Layer #{index} created: pool, channels={channels}, in={self.in_map_size}, "
            f"size={pool_size}, stride={self.stride}, out={self.out_map_size}, activation={activation!r}"
        )

    def forward(self, context: TrainingContext):
        """
        Picks the maximum of every window. Ties go to the first position in
        row-major order, since only a strictly greater value replaces the best.
        """
        input_volume = self.prev.as_volume(self.channels, self.in_map_size)
        self.indices.fill(0)

        for c in range(self.channels):
            for row in range(self.out_map_size):
                for col in range(self.out_map_size):
                    row_start = row * self.stride
                    col_start = col * self.stride
                    best = input_volume[c, row_start, col_start]

                    for window_row in range(self.pool_size):
                        for window_col in range(self.pool_size):
                            value = input_volume[c, row_start + window_row, col_start + window_col]
                            if value > best:
                                best = value
                                self.indices[c, row, col] = (window_row, window_col)

                    self.activations[c, row, col] = best

        if self.activation:
            self.activations = self.activation.forward(self.activations)

    def _routed_positions(self, c: int):
        """Yields (row, col, input_row, input_col) for every output cell of channel c."""
        for row in range(self.out_map_size):
            for col in range(self.out_map_size):
                window_row, window_col = self.indices[c, row, col]
                yield row, col, row * self.stride + window_row, col * self.stride + window_col

    def backward(self, context: TrainingContext, errors: Optional[np.ndarray] = None):
        """
        Routes each output cell's error to the input position its max came from.

        When an activation is configured, each routed error is then multiplied
        by the activation's derivative evaluated at that error value.
        """
        self.errors.fill(0.0)
        output_errors = self._errors_from_next(errors)

        for c in range(self.channels):
            for row, col, in_row, in_col in self._routed_positions(c):
                self.errors[c, in_row, in_col] += output_errors[c, row, col]

        if self.activation:
            for c in range(self.channels):
                for _, _, in_row, in_col in self._routed_positions(c):
                    self.errors[c, in_row, in_col] *= self.activation.backward(self.errors[c, in_row, in_col])

    def _errors_from_next(self, errors: Optional[np.ndarray]) -> np.ndarray:
        """Errors for this layer's output cells, shaped like `activations`."""
        out_shape = self.activations.shape
        if errors is not None:
            return np.asarray(errors, dtype=float).reshape(out_shape)

        nxt = self.next
        if nxt.kind is LayerKind.FULLY_CONNECTED:
            weighted = nxt.weighted_errors()
            flat = np.zeros(int(np.prod(out_shape)))
            count = min(flat.size, weighted.size)
            flat[:count] = weighted[:count]
            return flat.reshape(out_shape)

        if nxt.kind is LayerKind.CONVOLUTIONAL:
            return np.stack([nxt.back_project(c, self.out_map_size) for c in range(self.channels)])

        return nxt.errors

    def flat_output(self) -> np.ndarray:
        return self.activations.ravel()

    def as_volume(self, channels: int, map_size: int) -> np.ndarray:
        return self.activations

    def summary(self) -> str:
        return (
            f"Layer Summary (index={self.index}):\n"
            f"  Type: Max Pooling\n"
            f"  Channels: {self.channels}\n"
            f"  Window: {self.pool_size}, stride: {self.stride}\n"
            f"  Output: {self.channels}x{self.out_map_size}x{self.out_map_size}\n"
            f"  Activation: {self.activation.__class__.__name__ if self.activation else 'None'}\n"
            f"  Parameters: 0 parameters\n"
        )

    def __repr__(self):
        return (f"PoolingLayer(index={self.index}, channels={self.channels}, size={self.pool_size}, "
                f"stride={self.stride}, out_map_size={self.out_map_size})")
