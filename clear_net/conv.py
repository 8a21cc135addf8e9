import numpy as np
from typing import Any, Dict, List, Optional, Tuple
import logging

from .activations import Activation
from .config import RegularizationTotals, TrainingContext
from .errors import ConfigurationError, ShapeMismatchError
from .layer import Initializer, Layer, LayerKind, check_numeric_weights, check_unit_entry
from .optimizers import ParameterState, apply_update, init_parameter_state
from .volume import build_conv_delta_weights, build_conv_error_map, convolve, out_map_size


class ConvolutionalLayer(Layer):
    """
    A convolutional layer: a bank of filters slid over the previous layer's volume.

    Filter f owns `weights[f]` (channels, F, F), `biases[f]`, and the maps
    `sum_maps[f]`, `activation_maps[f]`, `error_maps[f]` of shape (out, out).

    Key Attributes:
        in_channels (int): Number of maps read from the previous layer.
        in_map_size (int): Width W of each input map.
        filter_size (int): Kernel width F.
        zero_padding (int): Zeros P added on every edge of each input map.
        stride (int): Step S of the sliding window.
        out_map_size (int): (W - F + 2P) / S + 1.
        dropout_maps (np.ndarray or None): Per-cell dropout mask, only allocated when dropout is configured.
    """

    kind = LayerKind.CONVOLUTIONAL

    def __init__(
        self,
        size: int,
        index: int,
        prev: Layer,
        in_channels: int,
        filter_size: int = 3,
        zero_padding: int = 1,
        stride: int = 1,
        activation: Optional[Activation] = None,
        initializer: Optional[Initializer] = None,
        update_fn: str = "sgd",
        dropout_enabled: bool = False,
    ):
        """
        Args:
            size: Number of filters.
            index: Position of the layer in the network.
            prev: The previous wired layer.
            in_channels: Number of maps read from the previous layer.
            filter_size: Kernel width F.
            zero_padding: Zero padding P.
            stride: Stride S.
            activation: Activation function, or None for the raw sums.
            initializer: Returns initial weights for a given shape.
            update_fn: Optimizer name, used to allocate the parameter states.
            dropout_enabled: Whether to allocate dropout maps.

        Raises:
            ConfigurationError: If the hyperparameters give a non-integer output map size.
        """
        super().__init__(size, index, activation)
        self.prev = prev
        self.in_channels = in_channels
        self.in_map_size = prev.map_size_for(in_channels)
        self.filter_size = filter_size
        self.zero_padding = zero_padding
        self.stride = stride

        out_size = out_map_size(self.in_map_size, filter_size, zero_padding, stride)
        if out_size % 1 != 0 or out_size < 1:
            raise ConfigurationError(f"Misconfigured hyperparameters. Activation volume dimensions would be "
                                     f"{out_size} in conv layer at index {index}")

        self.out_map_size = int(out_size)
        self.channels = size

        map_shape = (size, self.out_map_size, self.out_map_size)
        self.weights = np.asarray(initializer((size, in_channels, filter_size, filter_size)), dtype=float)
        self.biases = np.ones(size)
        self.delta_weights = np.zeros_like(self.weights)
        self.delta_biases = np.zeros(size)
        self.sum_maps = np.zeros(map_shape)
        self.activation_maps = np.zeros(map_shape)
        self.error_maps = np.zeros(map_shape)
        self.dropout_maps = np.zeros(map_shape, dtype=bool) if dropout_enabled else None
        self.weight_state: ParameterState = init_parameter_state(update_fn, self.weights.shape)
        self.bias_state: ParameterState = init_parameter_state(update_fn, self.biases.shape)
        self._backup: Optional[Tuple[np.ndarray, np.ndarray]] = None

        logging.debug(
            f"Layer #{index} created: conv, filters={size}, in={in_channels}x{self.in_map_size}x{self.in_map_size}, "
            f"F={filter_size}, P={zero_padding}, S={stride}, out={self.out_map_size}, activation={activation!r}"
        )

    @property
    def has_parameters(self) -> bool:
        return True

    def forward(self, context: TrainingContext):
        """
        Convolves every filter over the previous layer's volume, then applies
        dropout and the activation per output cell.
        """
        input_volume = self.prev.as_volume(self.in_channels, self.in_map_size)

        for f in range(self.size):
            self.sum_maps[f] = convolve(input_volume, self.weights[f], self.biases[f],
                                        self.zero_padding, self.stride)

        if self.dropout_maps is not None:
            if context.training:
                self.dropout_maps = np.random.random(self.sum_maps.shape) > context.keep_prob
            else:
                self.dropout_maps.fill(False)

        if self.activation:
            outputs = self.activation.forward(self.sum_maps) / (context.keep_prob or 1)
        else:
            outputs = self.sum_maps.copy()

        if self.dropout_maps is not None:
            outputs = np.where(self.dropout_maps, 0.0, outputs)
        self.activation_maps = outputs

    def back_project(self, channel: int, map_size: int) -> np.ndarray:
        """Error map this layer sends back onto input map `channel` (transposed convolution)."""
        return build_conv_error_map(self.weights[:, channel], self.error_maps, map_size,
                                    self.zero_padding, self.stride)

    def backward(self, context: TrainingContext, errors: Optional[np.ndarray] = None):
        """
        Builds every filter's error map from the next layer, applies the
        activation derivative and dropout mask, then accumulates the gradients.

        Args:
            context: Current hyperparameters.
            errors: Output errors, only used when this is the last layer.
        """
        if errors is not None:
            self.error_maps = np.asarray(errors, dtype=float).reshape(self.error_maps.shape)
        else:
            self.error_maps = self._errors_from_next()

        if self.activation:
            self.error_maps = self.error_maps * self.activation.backward(self.sum_maps)
        if self.dropout_maps is not None:
            self.error_maps = np.where(self.dropout_maps, 0.0, self.error_maps)

        input_volume = self.prev.as_volume(self.in_channels, self.in_map_size)
        regularization = (context.l2 + context.l1) / context.mini_batch_size
        build_conv_delta_weights(input_volume, self.weights, self.error_maps, self.delta_weights,
                                 self.delta_biases, self.zero_padding, self.stride, regularization)

    def _errors_from_next(self) -> np.ndarray:
        nxt = self.next
        map_shape = self.error_maps.shape

        if nxt.kind is LayerKind.FULLY_CONNECTED:
            # Next-layer weight index f*out² + y*out + x reads this layer's cell (f, y, x)
            weighted = nxt.weighted_errors()
            flat = np.zeros(int(np.prod(map_shape)))
            count = min(flat.size, weighted.size)
            flat[:count] = weighted[:count]
            return flat.reshape(map_shape)

        if nxt.kind is LayerKind.CONVOLUTIONAL:
            return np.stack([nxt.back_project(f, self.out_map_size) for f in range(self.size)])

        # Pooling errors already live in this layer's coordinates
        return nxt.errors.copy()

    def reset_accumulated_gradients(self):
        self.delta_weights.fill(0.0)
        self.delta_biases.fill(0.0)
        self.error_maps.fill(0.0)
        if self.dropout_maps is not None:
            self.dropout_maps.fill(False)

    def apply_accumulated_gradients(self, context: TrainingContext, totals: RegularizationTotals):
        """Same update as the fully connected layer, per filter, channel and kernel cell."""
        weights = self.weights

        if totals.l2_error is not None:
            totals.l2_error += float(np.sum(0.5 * context.l2 * weights ** 2))
        if totals.l1_error is not None:
            totals.l1_error += float(np.sum(context.l1 * np.abs(weights)))

        signs = np.where(weights > 0, 1.0, -1.0)
        regularized = (self.delta_weights + context.l2 * weights + context.l1 * signs) / context.mini_batch_size
        self.weights = apply_update(weights, regularized, self.weight_state, context)

        if totals.max_norm_total is not None:
            totals.max_norm_total += float(np.sum(self.weights ** 2))

        self.biases = apply_update(self.biases, self.delta_biases, self.bias_state, context)

    def flat_output(self) -> np.ndarray:
        return self.activation_maps.ravel()

    def output_sums(self) -> np.ndarray:
        return self.sum_maps.ravel()

    def as_volume(self, channels: int, map_size: int) -> np.ndarray:
        return self.activation_maps

    def scale_weights(self, multiplier: float):
        self.weights = self.weights * multiplier

    def backup_weights(self):
        self._backup = (self.weights.copy(), self.biases.copy())

    def restore_weights(self):
        if self._backup is not None:
            self.weights, self.biases = self._backup[0].copy(), self._backup[1].copy()

    def to_json(self) -> Dict[str, Any]:
        return {
            "weights": [
                {"bias": float(self.biases[f]), "weights": self.weights[f].tolist()}
                for f in range(self.size)
            ]
        }

    def validate_json(self, data: Dict[str, Any], layer_index: int):
        filters: List[Dict[str, Any]] = data.get("weights", [])
        if len(filters) != self.size:
            raise ShapeMismatchError(f"Mismatched filters count. Given: {len(filters)} Existing: {self.size}. "
                                     f"At: layers[{layer_index}]")

        for f, filter_data in enumerate(filters):
            check_unit_entry(filter_data, layer_index, "filters", f)
            channels = filter_data["weights"]
            if len(channels) != self.in_channels:
                raise ShapeMismatchError(f"Mismatched weights depth. Given: {len(channels)} Existing: "
                                         f"{self.in_channels}. At: layers[{layer_index}], filters[{f}]")
            for channel in channels:
                if len(channel) != self.filter_size or any(len(row) != self.filter_size for row in channel):
                    raise ShapeMismatchError(f"Mismatched weights size. Given: {len(channel)} Existing: "
                                             f"{self.filter_size}. At: layers[{layer_index}], filters[{f}]")
            check_numeric_weights(channels, layer_index, "filters", f)

    def from_json(self, data: Dict[str, Any], layer_index: int):
        self.validate_json(data, layer_index)
        self.biases = np.array([filter_data["bias"] for filter_data in data["weights"]], dtype=float)
        self.weights = np.array([filter_data["weights"] for filter_data in data["weights"]], dtype=float)

    def get_data_size(self) -> int:
        return self.size * (self.in_channels * self.filter_size ** 2 + 1)

    def to_img(self) -> np.ndarray:
        return np.concatenate([self.biases[:, None], self.weights.reshape(self.size, -1)], axis=1).ravel()

    def from_img(self, data: np.ndarray):
        rows = np.asarray(data, dtype=float).reshape(self.size, -1)
        self.biases = rows[:, 0].copy()
        self.weights = rows[:, 1:].reshape(self.weights.shape).copy()

    def summary(self) -> str:
        return (
            f"Layer Summary (index={self.index}):\n"
            f"  Type: Convolutional\n"
            f"  Filters: {self.size}\n"
            f"  Input: {self.in_channels}x{self.in_map_size}x{self.in_map_size}\n"
            f"  Filter size: {self.filter_size}, zero padding: {self.zero_padding}, stride: {self.stride}\n"
            f"  Output: {self.size}x{self.out_map_size}x{self.out_map_size}\n"
            f"  Activation: {self.activation.__class__.__name__ if self.activation else 'None'}\n"
            f"  Parameters: {self.get_data_size():,} parameters\n"
        )

    def __repr__(self):
        return (f"ConvolutionalLayer(index={self.index}, filters={self.size}, filter_size={self.filter_size}, "
                f"zero_padding={self.zero_padding}, stride={self.stride}, out_map_size={self.out_map_size})")
