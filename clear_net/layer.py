import math
import numpy as np
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

from .activations import Activation
from .config import RegularizationTotals, TrainingContext
from .errors import ShapeMismatchError
from .optimizers import ParameterState, apply_update, init_parameter_state

Initializer = Callable[[Tuple[int, ...]], np.ndarray]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def check_unit_entry(entry: Any, layer_index: int, unit: str, position: int):
    """
    Raises ShapeMismatchError unless `entry` is a {"bias": number, "weights": ...} mapping.

    Args:
        entry: One neuron or filter of a JSON export.
        layer_index: Position of the layer, for the error message.
        unit: "neurons" or "filters", for the error message.
        position: Position of the entry within the layer.
    """
    where = f"At layers[{layer_index}], {unit}[{position}]"
    if not isinstance(entry, dict) or "bias" not in entry or "weights" not in entry:
        raise ShapeMismatchError(f"Expected 'bias' and 'weights' keys. {where}")
    if not _is_number(entry["bias"]):
        raise ShapeMismatchError(f"Bias must be a number. Given: {entry['bias']!r}. {where}")


def check_numeric_weights(weights: Any, layer_index: int, unit: str, position: int):
    """Raises ShapeMismatchError if any value in the (possibly nested) weights list is not a number."""
    values = np.asarray(weights, dtype=object).ravel()
    if not all(_is_number(value) for value in values):
        raise ShapeMismatchError(f"Weights must be numbers. At layers[{layer_index}], {unit}[{position}]")


class LayerKind(Enum):
    FULLY_CONNECTED = "fc"
    CONVOLUTIONAL = "conv"
    POOLING = "pool"


class Layer:
    """
    Contract shared by every wired layer.

    A layer is created fully shaped by the network's wiring routine. It keeps
    non-owning references to its neighbours (`prev`, `next`) and reads every
    hyperparameter from the `TrainingContext` passed into each call.

    Any object implementing these methods (for example an accelerated backend
    exchanging flat numpy buffers) can take a layer's place in a Network.

    Key Attributes:
        kind (LayerKind): Which variant this is, checked by neighbours during backward.
        index (int): Position in the network.
        size (int): Number of units (neurons, filters, or pooling channels).
        channels (int): Number of output maps this layer presents to the next layer.
        out_map_size (int): Width of each output map.
    """

    kind: LayerKind

    def __init__(self, size: int, index: int, activation: Optional[Activation] = None):
        self.size = size
        self.index = index
        self.activation = activation
        self.prev: Optional["Layer"] = None
        self.next: Optional["Layer"] = None
        self.channels = size
        self.out_map_size = 1

    # --- Computation ---

    def forward(self, context: TrainingContext):
        raise NotImplementedError("Each layer must implement its own forward pass.")

    def backward(self, context: TrainingContext, errors: Optional[np.ndarray] = None):
        raise NotImplementedError("Each layer must implement its own backward pass.")

    def reset_accumulated_gradients(self):
        """Zeroes the gradient accumulators. Layers without parameters do nothing."""

    def apply_accumulated_gradients(self, context: TrainingContext, totals: RegularizationTotals):
        """Updates the parameters from the accumulated gradients. Layers without parameters do nothing."""

    # --- Outputs seen by the neighbours ---

    def flat_output(self) -> np.ndarray:
        """This layer's activations as one flat vector (channel-major, then row-major)."""
        raise NotImplementedError

    def output_sums(self) -> np.ndarray:
        """Pre-activation values, flattened like `flat_output`. Read from the network's last layer."""
        return self.flat_output()

    def as_volume(self, channels: int, map_size: int) -> np.ndarray:
        """This layer's activations as a (channels, map_size, map_size) volume."""
        raise NotImplementedError

    def map_size_for(self, channels: int) -> int:
        """Width of the maps a following spatial layer reads from this one."""
        return self.out_map_size

    # --- Parameters ---

    @property
    def has_parameters(self) -> bool:
        return False

    def scale_weights(self, multiplier: float):
        """Multiplies every non-bias weight by `multiplier` (max-norm finalisation)."""

    def backup_weights(self):
        """Keeps a copy of the current parameters, to restore after early stopping."""

    def restore_weights(self):
        """Restores the parameters saved by `backup_weights`."""

    # --- Serialization ---

    def to_json(self) -> Dict[str, Any]:
        return {}

    def validate_json(self, data: Dict[str, Any], layer_index: int):
        """Raises ShapeMismatchError if `data` cannot be imported into this layer."""

    def from_json(self, data: Dict[str, Any], layer_index: int):
        """Overwrites the parameters with `data`, after validating it."""

    def get_data_size(self) -> int:
        """Number of scalars this layer contributes to a flat parameter buffer."""
        return 0

    def to_img(self) -> np.ndarray:
        return np.zeros(0)

    def from_img(self, data: np.ndarray):
        """Overwrites the parameters from a flat buffer of `get_data_size()` scalars."""

    def summary(self) -> str:
        return f"{self.__class__.__name__} #{self.index}: {self.size} units"


class FullyConnectedLayer(Layer):
    """
    A layer of neurons, each connected to every activation of the previous layer.

    The neurons live as rows of the weight matrix: neuron n has weights
    `weights[n]`, bias `biases[n]`, and scalar state `sums[n]`,
    `activations[n]`, `errors[n]`. A layer without a previous layer is the
    network's input layer: it has no parameters and its activations are the
    network input.

    Key Attributes:
        weights (np.ndarray): (size, fan_in) weight matrix.
        biases (np.ndarray): (size,) biases, initialised to 1.
        delta_weights / delta_biases (np.ndarray): Gradient accumulators.
        dropped (np.ndarray): (size,) boolean dropout mask of the last forward pass.
        weight_state / bias_state (ParameterState): Optimizer state per tensor.
    """

    kind = LayerKind.FULLY_CONNECTED

    def __init__(
        self,
        size: int,
        index: int = 0,
        activation: Optional[Activation] = None,
        prev: Optional[Layer] = None,
        initializer: Optional[Initializer] = None,
        update_fn: str = "sgd",
    ):
        """
        Args:
            size: Number of neurons.
            index: Position of the layer in the network.
            activation: Activation function, or None for the raw weighted sum.
            prev: The previous wired layer. None makes this an input layer.
            initializer: Returns initial weights for a given shape.
            update_fn: Optimizer name, used to allocate the parameter states.
        """
        super().__init__(size, index, activation)
        self.prev = prev
        self.channels = size
        self.out_map_size = 1

        self.sums = np.zeros(size)
        self.activations = np.zeros(size)
        self.errors = np.zeros(size)
        self.derivatives = np.zeros(size)
        self.dropped = np.zeros(size, dtype=bool)

        if prev is None:
            self.fan_in = 0
            self.weights = None
            self.biases = None
            logging.debug(f"Layer #{index} created: input layer with {size} values")
            return

        self.fan_in = prev.channels * prev.out_map_size ** 2
        self.weights = np.asarray(initializer((size, self.fan_in)), dtype=float)
        self.biases = np.ones(size)
        self.delta_weights = np.zeros_like(self.weights)
        self.delta_biases = np.zeros_like(self.biases)
        self.weight_state: ParameterState = init_parameter_state(update_fn, self.weights.shape)
        self.bias_state: ParameterState = init_parameter_state(update_fn, self.biases.shape)
        self._backup: Optional[Tuple[np.ndarray, np.ndarray]] = None

        logging.debug(
            f"Layer #{index} created: fully connected, size={size}, fan_in={self.fan_in}, "
            f"activation={activation!r}, weight_shape={self.weights.shape}"
        )

    @property
    def has_parameters(self) -> bool:
        return self.weights is not None

    def set_input(self, values: np.ndarray):
        """
        Loads network input into an input layer.

        Values are used positionally: surplus values are ignored and missing
        trailing values keep whatever the layer held before.
        """
        count = min(len(values), self.size)
        self.activations[:count] = np.asarray(values[:count], dtype=float)

    def forward(self, context: TrainingContext):
        """
        Computes sum = bias + W·prev for every neuron, then the activations.

        In training mode, each neuron is dropped with probability 1 - keep_prob.
        Dropped neurons output 0 and keep their previous sum. Kept neurons
        output f(sum) / keep_prob.
        """
        if self.prev is None:
            return

        if context.training:
            self.dropped = np.random.random(self.size) > context.keep_prob
        else:
            self.dropped = np.zeros(self.size, dtype=bool)

        new_sums = self.biases + self.weights @ self.prev.flat_output()
        self.sums = np.where(self.dropped, self.sums, new_sums)

        outputs = self.activation.forward(self.sums) if self.activation else self.sums
        self.activations = np.where(self.dropped, 0.0, outputs / (context.keep_prob or 1))

    def weighted_errors(self) -> np.ndarray:
        """
        Errors this layer sends back to each of its inputs:
        Σ_n errors[n] * weights[n][i] for every input i.
        """
        return self.weights.T @ self.errors

    def backward(self, context: TrainingContext, errors: Optional[np.ndarray] = None):
        """
        Computes the neuron errors and accumulates the gradients.

        Args:
            context: Current hyperparameters.
            errors: Output errors, given only when this is the last layer.
                    Hidden layers derive theirs from the next layer.
        """
        if errors is not None:
            errors = np.asarray(errors, dtype=float)
        else:
            self.derivatives = self.activation.backward(self.sums) if self.activation else np.ones(self.size)
            errors = self.derivatives * self._next_weighted_errors()

        self.errors = np.where(self.dropped, 0.0, errors)

        # Dropped neurons skip gradient accumulation entirely
        kept = ~self.dropped
        prev_activations = self.prev.flat_output()
        self.delta_weights[kept] += np.outer(self.errors[kept], prev_activations)
        self.delta_biases[kept] += self.errors[kept]

    def _next_weighted_errors(self) -> np.ndarray:
        nxt = self.next
        if nxt.kind is LayerKind.FULLY_CONNECTED:
            return nxt.weighted_errors()

        # A spatial layer reads this layer's activations as a volume; read its errors back the same way
        if nxt.kind is LayerKind.CONVOLUTIONAL:
            volume = np.stack([nxt.back_project(c, nxt.in_map_size) for c in range(nxt.in_channels)])
        else:
            volume = nxt.errors
        values = volume.ravel()
        errors = np.zeros(self.size)
        count = min(values.size, self.size)
        errors[:count] = values[:count]
        return errors

    def reset_accumulated_gradients(self):
        if not self.has_parameters:
            return
        self.delta_weights.fill(0.0)
        self.delta_biases.fill(0.0)

    def apply_accumulated_gradients(self, context: TrainingContext, totals: RegularizationTotals):
        """
        Regularizes the accumulated weight gradients, averages them over the
        mini-batch, and runs them through the configured update rule.

        Biases are updated with their raw accumulated gradient.
        """
        if not self.has_parameters:
            return
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
        return self.activations

    def output_sums(self) -> np.ndarray:
        return self.sums

    def map_size_for(self, channels: int) -> int:
        return max(int(math.floor(math.sqrt(self.size / channels))), 1)

    def as_volume(self, channels: int, map_size: int) -> np.ndarray:
        # Surplus activations are ignored, missing ones read as 0
        values = np.zeros(channels * map_size ** 2)
        count = min(values.size, self.size)
        values[:count] = self.activations[:count]
        return values.reshape(channels, map_size, map_size)

    def scale_weights(self, multiplier: float):
        if self.has_parameters:
            self.weights = self.weights * multiplier

    def backup_weights(self):
        if self.has_parameters:
            self._backup = (self.weights.copy(), self.biases.copy())

    def restore_weights(self):
        if self.has_parameters and self._backup is not None:
            self.weights, self.biases = self._backup[0].copy(), self._backup[1].copy()

    def to_json(self) -> Dict[str, Any]:
        if not self.has_parameters:
            return {}
        return {
            "weights": [
                {"bias": float(self.biases[n]), "weights": self.weights[n].tolist()}
                for n in range(self.size)
            ]
        }

    def validate_json(self, data: Dict[str, Any], layer_index: int):
        if not self.has_parameters:
            return
        neurons: List[Dict[str, Any]] = data.get("weights", [])
        if len(neurons) != self.size:
            raise ShapeMismatchError(f"Mismatched neurons count. Given: {len(neurons)} "
                                     f"Existing: {self.size}. At layers[{layer_index}]")
        for n, neuron in enumerate(neurons):
            check_unit_entry(neuron, layer_index, "neurons", n)
            given = len(neuron["weights"])
            if given != self.fan_in:
                raise ShapeMismatchError(f"Mismatched weights count. Given: {given} Existing: {self.fan_in}. "
                                         f"At layers[{layer_index}], neurons[{n}]")
            check_numeric_weights(neuron["weights"], layer_index, "neurons", n)

    def from_json(self, data: Dict[str, Any], layer_index: int):
        if not self.has_parameters:
            return
        self.validate_json(data, layer_index)
        self.biases = np.array([neuron["bias"] for neuron in data["weights"]], dtype=float)
        self.weights = np.array([neuron["weights"] for neuron in data["weights"]], dtype=float).reshape(self.size, self.fan_in)

    def get_data_size(self) -> int:
        if not self.has_parameters:
            return 0
        return self.size * (self.fan_in + 1)

    def to_img(self) -> np.ndarray:
        if not self.has_parameters:
            return np.zeros(0)
        # [bias, w0, w1, ...] per neuron
        return np.concatenate([self.biases[:, None], self.weights], axis=1).ravel()

    def from_img(self, data: np.ndarray):
        if not self.has_parameters:
            return
        rows = np.asarray(data, dtype=float).reshape(self.size, self.fan_in + 1)
        self.biases = rows[:, 0].copy()
        self.weights = rows[:, 1:].copy()

    def summary(self) -> str:
        params = self.get_data_size()
        return (
            f"Layer Summary (index={self.index}):\n"
            f"  Type: {'Input' if self.prev is None else 'Fully Connected'}\n"
            f"  Size: {self.size}\n"
            f"  Fan in: {self.fan_in}\n"
            f"  Activation: {self.activation.__class__.__name__ if self.activation else 'None'}\n"
            f"  Parameters: {params:,} parameters\n"
        )

    def __repr__(self):
        return (f"FullyConnectedLayer(index={self.index}, size={self.size}, "
                f"fan_in={self.fan_in}, activation={self.activation!r})")
