import json
import math
import numpy as np
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union
import logging
import time

from .activations import Activation, get_activation, softmax
from .config import NetworkConfig, RegularizationTotals, TrainingContext
from .costs import get_cost
from .errors import ShapeMismatchError, UsageError
from .layer import FullyConnectedLayer, Layer
from .optimizers import get_update_rule
from .specs import LayerSpec, default_layer_sizes, to_specs, wire_layers

Example = Mapping[str, Sequence[float]]


class Network:
    """
    A chain of fully connected, convolutional and pooling layers.

    The network owns its layers and the shared hyperparameters. A training
    driver talks to it through four calls: `forward`, `backward`,
    `reset_accumulated_gradients` and `apply_accumulated_gradients`. `train`,
    `validate` and `test` are one such driver.

    When built without layers, the network is wired from the first training
    example: an input layer, one hidden layer and an output layer.
    """

    def __init__(
        self,
        layers: Optional[Sequence[Union[int, LayerSpec]]] = None,
        learning_rate: Optional[float] = None,
        update_fn: Optional[str] = "sgd",
        activation: Union[str, Activation] = "sigmoid",
        cost: Union[str, Callable] = "meansquarederror",
        dropout: Union[float, bool] = 1,
        l1: Union[float, bool, None] = None,
        l2: Union[float, bool, None] = None,
        max_norm: Union[float, bool, None] = None,
        rms_decay: Optional[float] = None,
        rho: Optional[float] = None,
        momentum: Optional[float] = None,
        lrelu_slope: Optional[float] = None,
        elu_alpha: Optional[float] = None,
        channels: Optional[int] = None,
        conv: Optional[Dict[str, int]] = None,
        pool: Optional[Dict[str, int]] = None,
        weights_config: Optional[Dict[str, Any]] = None,
    ):
        """
        Initializes the network.

        Args:
            layers: Either layer sizes (fully connected layers only) or layer
                    specs (FCLayer, ConvLayer, PoolLayer). The first entry is the input layer.
            learning_rate: Step size. Defaults depend on update_fn and activation.
            update_fn: One of sgd, momentum, gain, adagrad, rmsprop, adam, adadelta.
            activation: Default activation of the fully connected and convolutional layers.
            cost: crossentropy, meansquarederror, or a callable(target, output) -> float.
            dropout: Keep probability. 1 (or False) disables dropout.
            l1, l2: Regularization coefficients. True selects the default (0.005 / 0.001).
            max_norm: Cap on the global weight norm. True selects 1000.
            rms_decay: rmsprop decay (default 0.99).
            rho: adadelta decay (default 0.95).
            momentum: momentum coefficient (default 0.9).
            lrelu_slope: lrelu slope (default -0.0005).
            elu_alpha: elu alpha (default 1).
            channels: Channels read by a spatial layer placed after a fully connected one (default 1).
            conv: Network-wide conv defaults: filter_size, zero_padding, stride.
            pool: Network-wide pool defaults: size, stride.
            weights_config: distribution (name or callable) plus limit, mean, std_deviation.

        Raises:
            ConfigurationError: On unknown names or a malformed layers list.
        """
        self.config = NetworkConfig.resolve(
            learning_rate=learning_rate, update_fn=update_fn, activation=activation, cost=cost,
            dropout=dropout, l1=l1, l2=l2, max_norm=max_norm, rms_decay=rms_decay, rho=rho,
            momentum=momentum, lrelu_slope=lrelu_slope, elu_alpha=elu_alpha, channels=channels,
            conv=conv, pool=pool, weights_config=weights_config,
        )
        # Fail on unknown names now rather than at wiring time
        get_update_rule(self.config.update_fn)
        if isinstance(self.config.activation, str):
            get_activation(self.config.activation)
        self.cost = get_cost(self.config.cost)

        self.totals = RegularizationTotals.for_config(self.config)
        self.training = False
        self.mini_batch_size = 1
        self.epochs = 0
        self.iterations = 0
        self.validations = 0
        self.error = 0.0
        self.validation_error = 0.0
        self.last_validation_error: Optional[float] = None

        self.training_history: Dict[str, List] = {
            'epoch': [],
            'loss': [],
            'val_loss': [],
            'time_per_epoch': []
        }

        self.layers: List[Layer] = []
        if layers:
            self._wire(to_specs(layers))

    def _wire(self, specs: Sequence[LayerSpec]):
        self.layers = wire_layers(specs, self.config)
        logging.info(f"Created network with {len(self.layers)} layers: "
                     f"{[layer.__class__.__name__ for layer in self.layers]}")

    @property
    def is_wired(self) -> bool:
        return bool(self.layers)

    @property
    def l2_error(self) -> Optional[float]:
        return self.totals.l2_error

    @property
    def l1_error(self) -> Optional[float]:
        return self.totals.l1_error

    @property
    def max_norm_total(self) -> Optional[float]:
        return self.totals.max_norm_total

    def context(self) -> TrainingContext:
        """Snapshot of the hyperparameters for the next layer call."""
        return TrainingContext.from_config(
            self.config,
            training=self.training,
            mini_batch_size=self.mini_batch_size,
            iterations=self.iterations,
        )

    def set_training_mode(self, training: bool):
        """Turns dropout on (training) or off (inference)."""
        self.training = training
        logging.debug(f"Network training mode set to {training}")

    def _require_wired(self):
        if not self.is_wired:
            raise UsageError("The network layers have not been initialised.")

    # --- Four-call contract ---

    def forward(self, data: Sequence[float]) -> np.ndarray:
        """
        Runs one example through every layer.

        Args:
            data: Input values, one per input neuron.

        Returns:
            The softmax of the output layer's sums when there is more than one
            output, otherwise the single raw sum.

        Raises:
            UsageError: If the network is not wired or no data is given.
        """
        self._require_wired()
        if data is None:
            raise UsageError("No data passed to Network.forward()")

        data = np.asarray(data, dtype=float).ravel()
        input_layer: FullyConnectedLayer = self.layers[0]
        if data.size != input_layer.size:
            logging.warning(f"Input data length ({data.size}) did not match input layer neurons count "
                            f"({input_layer.size}).")
        input_layer.set_input(data)

        context = self.context()
        for layer in self.layers[1:]:
            layer.forward(context)

        sums = self.layers[-1].output_sums()
        output = softmax(sums) if sums.size > 1 else sums.copy()

        if not np.all(np.isfinite(output)):
            logging.warning("NaN or Inf detected in network output. Check weights/activations.")
        return output

    def backward(self, errors: Sequence[float]):
        """
        Backpropagates the output errors through every layer except the input.

        Args:
            errors: One error per output unit, usually target - output.

        Raises:
            UsageError: If the network is not wired or no errors are given.
        """
        self._require_wired()
        if errors is None:
            raise UsageError("No data passed to Network.backward()")

        output_layer = self.layers[-1]
        expected = output_layer.flat_output().size
        errors = np.asarray(errors, dtype=float).ravel()
        if errors.size != expected:
            logging.warning(f"Expected data length ({errors.size}) did not match output layer neurons count "
                            f"({expected}).")
            padded = np.zeros(expected)
            count = min(expected, errors.size)
            padded[:count] = errors[:count]
            errors = padded

        context = self.context()
        output_layer.backward(context, errors)
        for layer in reversed(self.layers[1:-1]):
            layer.backward(context)

    def reset_accumulated_gradients(self):
        for layer in self.layers[1:]:
            layer.reset_accumulated_gradients()

    def apply_accumulated_gradients(self):
        """
        Updates every layer's parameters, then clips the global weight norm
        when max-norm is configured.
        """
        context = self.context()
        for layer in self.layers[1:]:
            layer.apply_accumulated_gradients(context, self.totals)

        if self.config.max_norm is not None:
            self._apply_max_norm()

    def _apply_max_norm(self):
        total = math.sqrt(self.totals.max_norm_total)
        cap = self.config.max_norm

        if total > cap:
            multiplier = cap / (1e-18 + total)
            logging.debug(f"Weight norm {total:.5f} above max norm {cap}, scaling by {multiplier:.5f}")
            for layer in self.layers[1:]:
                layer.scale_weights(multiplier)

        self.totals.max_norm_total = 0.0

    # --- Training driver ---

    def train(
        self,
        data: Sequence[Example],
        epochs: int = 1,
        mini_batch_size: Union[int, bool] = 1,
        shuffle: bool = False,
        validation: Optional[Dict[str, Any]] = None,
        callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        log: bool = True,
    ) -> Dict[str, List]:
        """
        Trains the network one example at a time.

        Args:
            data: Examples, each a mapping with 'input' and 'expected' values.
            epochs: Number of passes over the data.
            mini_batch_size: Examples per parameter update. True uses the output size.
            shuffle: Whether to shuffle the examples once before training.
            validation: Optional {'data': examples, 'interval': iterations,
                        'early_stopping': {'type': 'threshold', 'threshold': 0.01}
                        or {'type': 'patience', 'patience': 20}}.
            callback: Called after every iteration with a dict of progress values.
            log: Whether to log progress at info level.

        Returns:
            The training history (one entry per completed epoch).

        Raises:
            UsageError: If no data is given or an example misses a key.
        """
        if data is None or len(data) == 0:
            raise UsageError("No data provided")
        for item in data:
            if "input" not in item or "expected" not in item:
                raise UsageError("Data set must be a list of objects with keys: 'input' and 'expected'")

        if isinstance(mini_batch_size, bool):
            mini_batch_size = len(data[0]["expected"]) if mini_batch_size else 1
        self.mini_batch_size = mini_batch_size

        if shuffle:
            data = [data[i] for i in np.random.permutation(len(data))]

        if not self.is_wired:
            sizes = default_layer_sizes(len(data[0]["input"]), len(data[0]["expected"]))
            self._wire(to_specs(sizes))

        validation = self._prepare_validation(validation, len(data))
        early_stopping = validation.get("early_stopping") if validation else None

        if log:
            logging.info(f"Training started. Epochs: {epochs} Batch Size: {self.mini_batch_size}")

        self.set_training_mode(True)
        self.reset_accumulated_gradients()
        start_time = time.time()
        stopped = False
        step = 0

        for _ in range(epochs):
            epoch_start_time = time.time()
            self.epochs += 1
            self.error = 0.0
            self.validation_error = 0.0
            self.totals.reset_penalties()
            iteration_index = 0

            for item in data:
                input_values = item["input"]
                target = np.asarray(item["expected"], dtype=float).ravel()
                output = self.forward(input_values)
                errors = self._output_errors(target, output)

                validation_error = None
                # Counted across epochs, so an interval of one epoch validates at the start of each later epoch
                if validation and step and step % validation["interval"] == 0:
                    validation_error = self.validate(validation["data"])
                    if early_stopping and self._check_early_stopping(early_stopping, errors):
                        if log:
                            logging.info("Stopping early")
                        stopped = True
                        break

                self.backward(errors)

                iteration_index += 1
                step += 1
                if iteration_index % self.mini_batch_size == 0:
                    self.apply_accumulated_gradients()
                    self.reset_accumulated_gradients()
                elif iteration_index >= len(data):
                    # Partial last batch of the epoch
                    self.apply_accumulated_gradients()
                    self.reset_accumulated_gradients()

                training_error = self.cost(target, output)
                self.error += training_error
                self.iterations += 1

                if callback is not None:
                    callback({
                        "iterations": self.iterations,
                        "validations": self.validations,
                        "validation_error": validation_error,
                        "training_error": training_error,
                        "elapsed": time.time() - start_time,
                        "input": input_values,
                    })

            if stopped:
                break

            epoch_time = time.time() - epoch_start_time
            epoch_loss = self.error / max(iteration_index, 1)
            self.training_history['epoch'].append(self.epochs)
            self.training_history['loss'].append(epoch_loss)
            self.training_history['val_loss'].append(self.last_validation_error if validation else None)
            self.training_history['time_per_epoch'].append(epoch_time)

            if log:
                msg = f"Epoch: {self.epochs} - Training Error: {epoch_loss:.5f}"
                if validation and self.last_validation_error is not None:
                    msg += f" - Validation Error: {self.last_validation_error:.5f}"
                if self.totals.l2_error is not None:
                    msg += f" - L2 Error: {self.totals.l2_error / max(iteration_index, 1):.5f}"
                msg += f" - time: {epoch_time:.2f}s"
                logging.info(msg)

        self.set_training_mode(False)
        if early_stopping and early_stopping["type"] == "patience":
            for layer in self.layers[1:]:
                layer.restore_weights()

        if log:
            logging.info(f"Training finished. Total time: {time.time() - start_time:.2f}s")
        return self.training_history

    @staticmethod
    def _output_errors(target: np.ndarray, output: np.ndarray) -> np.ndarray:
        """(1 if target == 1 else 0) - output, per output unit."""
        expected = np.zeros(output.size)
        count = min(output.size, target.size)
        expected[:count] = target[:count]
        return np.where(expected == 1, 1.0, 0.0) - output

    @staticmethod
    def _prepare_validation(validation: Optional[Dict[str, Any]], data_size: int) -> Optional[Dict[str, Any]]:
        if not validation:
            return None
        if validation.get("data") is None:
            raise UsageError("Validation config must include 'data'")

        prepared = dict(validation)
        prepared["interval"] = prepared.get("interval") or data_size  # Default to 1 epoch

        if prepared.get("early_stopping"):
            early_stopping = dict(prepared["early_stopping"])
            if early_stopping["type"] == "threshold":
                early_stopping["threshold"] = early_stopping.get("threshold") or 0.01
            elif early_stopping["type"] == "patience":
                early_stopping["patience"] = early_stopping.get("patience") or 20
                early_stopping["patience_counter"] = 0
                early_stopping["best_error"] = math.inf
            prepared["early_stopping"] = early_stopping
        return prepared

    def _check_early_stopping(self, early_stopping: Dict[str, Any], errors: np.ndarray) -> bool:
        if early_stopping["type"] == "threshold":
            stop = self.last_validation_error <= early_stopping["threshold"]
            if stop:
                # Last backward pass
                self.backward(errors)
                self.apply_accumulated_gradients()
            return stop

        if early_stopping["type"] == "patience":
            if self.last_validation_error < early_stopping["best_error"]:
                early_stopping["patience_counter"] = 0
                early_stopping["best_error"] = self.last_validation_error
                for layer in self.layers[1:]:
                    layer.backup_weights()
                return False

            early_stopping["patience_counter"] += 1
            return early_stopping["patience_counter"] >= early_stopping["patience"]

        return False

    def validate(self, data: Sequence[Example]) -> float:
        """
        Mean cost over a validation set. Dropout is off while validating.

        Raises:
            UsageError: If no data is given.
        """
        if not data:
            raise UsageError("No validation data provided")

        was_training = self.training
        self.training = False
        total = 0.0
        try:
            for index, item in enumerate(data):
                output = self.forward(item["input"])
                total += self.cost(item["expected"], output)
                self.validations += 1
                self.validation_error = total / (index + 1)
        finally:
            self.training = was_training

        self.last_validation_error = total / len(data)
        return self.last_validation_error

    def test(self, data: Sequence[Example], callback: Optional[Callable[[Dict[str, Any]], None]] = None,
             log: bool = True) -> float:
        """
        Mean cost over a test set.

        Raises:
            UsageError: If no data is given.
        """
        if not data:
            raise UsageError("No data provided")
        if log:
            logging.info("Testing started")

        total = 0.0
        start_time = time.time()
        for index, item in enumerate(data):
            output = self.forward(item["input"])
            error = self.cost(item["expected"], output)
            total += error

            if callback is not None:
                callback({
                    "iterations": index + 1,
                    "error": error,
                    "elapsed": time.time() - start_time,
                    "input": item["input"],
                })

        if log:
            elapsed = time.time() - start_time
            logging.info(f"Testing finished. Total time: {elapsed:.2f}s "
                         f"Average iteration time: {elapsed / len(data):.5f}s")
        return total / len(data)

    # --- JSON serialization ---

    def to_json(self) -> Dict[str, Any]:
        """Parameters of every layer after the input layer: {"layers": [...]}."""
        self._require_wired()
        return {"layers": [layer.to_json() for layer in self.layers[1:]]}

    def from_json(self, data: Dict[str, Any]):
        """
        Overwrites the parameters with an export from `to_json`.

        Every layer is validated before any is written, so a mismatch leaves
        the network as it was.

        Raises:
            UsageError: If no data is given or the network is not wired.
            ShapeMismatchError: If the layer count or any parameter shape differs.
        """
        self._require_wired()
        if data is None:
            raise UsageError("No JSON data given to import.")

        layers_data = data.get("layers", [])
        if len(layers_data) != len(self.layers) - 1:
            raise ShapeMismatchError(f"Mismatched layers ({len(layers_data)} layers in import data, "
                                     f"but {len(self.layers) - 1} configured)")

        for index, (layer, layer_data) in enumerate(zip(self.layers[1:], layers_data), start=1):
            layer.validate_json(layer_data, index)

        self.reset_accumulated_gradients()
        for index, (layer, layer_data) in enumerate(zip(self.layers[1:], layers_data), start=1):
            layer.from_json(layer_data, index)
        logging.debug(f"Imported parameters for {len(layers_data)} layers")

    def save_json(self, filename: str):
        with open(filename, "w") as f:
            json.dump(self.to_json(), f)
        logging.info(f"Network parameters saved to {filename}")

    def load_json(self, filename: str):
        with open(filename) as f:
            data = json.load(f)
        self.from_json(data)
        logging.info(f"Network parameters loaded from {filename}")

    # --- Flat buffer serialization ---

    def get_data_size(self) -> List[int]:
        """Number of scalars each layer after the input layer contributes to `to_img`."""
        self._require_wired()
        return [layer.get_data_size() for layer in self.layers[1:]]

    def to_img(self) -> np.ndarray:
        """Every parameter as one flat float64 buffer: [bias, w0, w1, ...] per neuron or filter, layer by layer."""
        self._require_wired()
        return np.concatenate([layer.to_img() for layer in self.layers[1:]])

    def from_img(self, data: np.ndarray):
        """
        Overwrites the parameters from a buffer produced by `to_img`.

        Raises:
            ShapeMismatchError: If the buffer length differs from the network's data size.
        """
        sizes = self.get_data_size()
        data = np.asarray(data, dtype=float).ravel()
        if data.size != sum(sizes):
            raise ShapeMismatchError(f"Mismatched data size. Given: {data.size} Existing: {sum(sizes)}")

        offset = 0
        for layer, size in zip(self.layers[1:], sizes):
            layer.from_img(data[offset:offset + size])
            offset += size

    def save_weights(self, filename: str):
        """
        Saves the flat parameter buffer and its per-layer sizes to a compressed .npz file.

        Args:
            filename: Path to the file. '.npz' is appended when missing.
        """
        if not filename.endswith('.npz'):
            filename += '.npz'
        try:
            np.savez_compressed(filename, data=self.to_img(), sizes=np.array(self.get_data_size()))
        except OSError as e:
            logging.error(f"Error saving weights to {filename}: {e}")
            raise
        logging.info(f"Network weights saved to {filename}")

    def load_weights(self, filename: str):
        """
        Loads parameters saved by `save_weights` into this network.

        Raises:
            FileNotFoundError: If the file does not exist.
            ShapeMismatchError: If the saved layer sizes differ from this network's.
        """
        with np.load(filename) as saved:
            sizes = saved["sizes"].tolist()
            data = saved["data"]

        if sizes != self.get_data_size():
            raise ShapeMismatchError(f"Mismatched layer sizes. Given: {sizes} Existing: {self.get_data_size()}")
        self.from_img(data)
        logging.info(f"Network weights loaded from {filename}")

    def summary(self) -> str:
        """
        Generates a text summary of the network layers and parameters.

        Returns:
            A string containing the network summary.
        """
        summary_str = "\n" + "=" * 50 + "\n"
        summary_str += "Network Summary\n"
        summary_str += "=" * 50 + "\n"
        total_params = 0
        for layer in self.layers:
            total_params += layer.get_data_size()
            summary_str += layer.summary()
            summary_str += "-" * 50 + "\n"

        summary_str += f"Update function: {self.config.update_fn}, learning rate: {self.config.learning_rate}\n"
        summary_str += f"Total Parameters: {total_params:,}\n"
        summary_str += "=" * 50 + "\n"
        return summary_str

    def __repr__(self):
        return f"Network(layers={[repr(layer) for layer in self.layers]})"
