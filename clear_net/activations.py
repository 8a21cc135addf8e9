import numpy as np
from typing import Union, Optional
import logging

from .config import normalize_name
from .errors import ConfigurationError

ArrayLike = Union[float, np.ndarray]


class Activation:
    """Base class for all activation functions."""

    name = "activation"

    def forward(self, x: ArrayLike) -> ArrayLike:
        """Compute the activation function value.

        Args:
            x: Input data (scalar or numpy array).

        Returns:
            Activated output.
        """
        raise NotImplementedError

    def backward(self, x: ArrayLike) -> ArrayLike:
        """Compute the derivative of the activation function with respect to its input 'x'.
           Note: 'x' here is the *input* to the activation function (the weighted sum).

        Args:
            x: Input data where the derivative is evaluated (scalar or numpy array).

        Returns:
            Derivative of the activation function evaluated at x.
        """
        raise NotImplementedError

    def __repr__(self):
        return f"{self.__class__.__name__}()"


class Sigmoid(Activation):
    """Sigmoid activation function.

    Mathematical form:
        forward: f(x) = 1 / (1 + e^-x)
        backward: f'(x) = f(x) * (1 - f(x))
    """

    name = "sigmoid"

    def forward(self, x: ArrayLike) -> ArrayLike:
        """Compute sigmoid activation with clipping for numerical stability."""
        # Clip input to avoid overflow in exp(-x) for large negative x
        clipped_x = np.clip(x, -500, 500)
        return 1.0 / (1.0 + np.exp(-clipped_x))

    def backward(self, x: ArrayLike) -> ArrayLike:
        """Compute sigmoid derivative using the activation's output."""
        sig = self.forward(x)
        return sig * (1.0 - sig)


class Tanh(Activation):
    """Hyperbolic tangent activation function.

    Mathematical form:
        forward: f(x) = (e^2x - 1)/(e^2x + 1)
        backward: f'(x) = 4 / (e^x + e^-x)^2

    Exact zeros are replaced by 1e-18 in both directions so that a unit never
    outputs, or passes back, a hard zero.
    """

    name = "tanh"

    def forward(self, x: ArrayLike) -> ArrayLike:
        result = np.tanh(x)
        return np.where(result == 0, 1e-18, result)

    def backward(self, x: ArrayLike) -> ArrayLike:
        with np.errstate(over="ignore"):
            result = 4.0 / (np.exp(x) + np.exp(-x)) ** 2
        return np.where(result == 0, 1e-18, result)


class ReLU(Activation):
    """Rectified Linear Unit activation function.

    Mathematical form:
        forward: f(x) = max(0, x)
        backward: f'(x) = 1 if x > 0 else 0
    """

    name = "relu"

    def forward(self, x: ArrayLike) -> ArrayLike:
        """Compute ReLU activation: max(0, x)"""
        return np.maximum(x, 0.0)

    def backward(self, x: ArrayLike) -> ArrayLike:
        """Compute ReLU derivative: 1 if x > 0 else 0"""
        return np.where(np.asarray(x) > 0, 1.0, 0.0)


class LReLU(Activation):
    """Leaky ReLU.

    Mathematical form:
        forward: f(x) = max(slope * |x|, x)
        backward: f'(x) = 1 if x > 0 else slope

    The slope is negative (default -0.0005), so slope * |x| leaks a small
    positive fraction of negative inputs through.
    """

    name = "lrelu"

    def __init__(self, slope: float = -0.0005):
        self.slope = slope

    def forward(self, x: ArrayLike) -> ArrayLike:
        return np.maximum(self.slope * np.abs(x), x)

    def backward(self, x: ArrayLike) -> ArrayLike:
        return np.where(np.asarray(x) > 0, 1.0, self.slope)

    def __repr__(self):
        return f"LReLU(slope={self.slope})"


class RReLU(Activation):
    """Randomized ReLU.

    Mathematical form:
        forward: f(x) = max(slope, x)
        backward: f'(x) = 1 if x > 0 else slope

    Each unit owns its own slope, drawn once from U[0, 0.001). `slope` may be a
    scalar or an array broadcastable against the layer's sums.
    """

    name = "rrelu"

    def __init__(self, slope: Optional[ArrayLike] = None):
        self.slope = np.random.random() * 0.001 if slope is None else slope

    def forward(self, x: ArrayLike) -> ArrayLike:
        return np.maximum(self.slope, x)

    def backward(self, x: ArrayLike) -> ArrayLike:
        return np.where(np.asarray(x) > 0, 1.0, self.slope)

    def __repr__(self):
        return f"RReLU(slope shape={np.shape(self.slope)})"


class LecunTanh(Activation):
    """LeCun's scaled tanh.

    Mathematical form:
        forward: f(x) = 1.7159 * tanh(2x/3)
        backward: f'(x) = 1.15333 * sech^2(2x/3)
    """

    name = "lecuntanh"

    def forward(self, x: ArrayLike) -> ArrayLike:
        return 1.7159 * Tanh().forward((2.0 / 3.0) * np.asarray(x))

    def backward(self, x: ArrayLike) -> ArrayLike:
        return 1.15333 * sech((2.0 / 3.0) * np.asarray(x)) ** 2


class ELU(Activation):
    """Exponential Linear Unit.

    Mathematical form:
        forward: f(x) = x if x >= 0 else alpha * (e^x - 1)
        backward: f'(x) = 1 if x >= 0 else f(x) + alpha
    """

    name = "elu"

    def __init__(self, alpha: float = 1.0):
        self.alpha = alpha

    def forward(self, x: ArrayLike) -> ArrayLike:
        x = np.asarray(x, dtype=float)
        # exp only matters on the negative branch
        return np.where(x >= 0, x, self.alpha * (np.exp(np.minimum(x, 0.0)) - 1))

    def backward(self, x: ArrayLike) -> ArrayLike:
        x = np.asarray(x, dtype=float)
        return np.where(x >= 0, 1.0, self.forward(x) + self.alpha)

    def __repr__(self):
        return f"ELU(alpha={self.alpha})"


class Linear(Activation):
    """Linear activation function (identity).

    Mathematical form:
        forward: f(x) = x
        backward: f'(x) = 1
    """

    name = "linear"

    def forward(self, x: ArrayLike) -> ArrayLike:
        return x

    def backward(self, x: ArrayLike) -> ArrayLike:
        return np.ones_like(x, dtype=float)


def sech(x: ArrayLike) -> ArrayLike:
    """Hyperbolic secant, 2e^-x / (1 + e^-2x)."""
    with np.errstate(over="ignore"):
        return (2 * np.exp(-x)) / (1 + np.exp(-2 * x))


def softmax(values: np.ndarray) -> np.ndarray:
    """Compute softmax of a 1D vector safely using the max subtraction trick."""
    values = np.asarray(values, dtype=float)
    exponentials = np.exp(values - np.max(values))
    return exponentials / np.sum(exponentials)


# Dictionary mapping activation function names to their classes
ACTIVATION_FUNCTIONS = {
    'sigmoid': Sigmoid,
    'tanh': Tanh,
    'relu': ReLU,
    'lrelu': LReLU,
    'rrelu': RReLU,
    'lecuntanh': LecunTanh,
    'elu': ELU,
    'linear': Linear,
}


def get_activation(name: str, **kwargs) -> Activation:
    """Factory function to get an activation function instance by name.

    Args:
        name: Name of the activation function. Case, underscores and spaces are
              ignored, so 'LeCun_Tanh' resolves to 'lecuntanh'.
        **kwargs: Additional arguments to pass to the activation function's constructor
                  (e.g., 'slope' for LReLU/RReLU, 'alpha' for ELU).

    Returns:
        An instance of the requested Activation class.

    Raises:
        ConfigurationError: If the activation function name is not recognized.
    """
    key = normalize_name(name)
    if key not in ACTIVATION_FUNCTIONS:
        raise ConfigurationError(
            f"Unknown activation function '{name}'. "
            f"Available functions: {list(ACTIVATION_FUNCTIONS.keys())}"
        )
    activation = ACTIVATION_FUNCTIONS[key](**kwargs)
    logging.debug(f"Built activation {activation!r}")
    return activation
