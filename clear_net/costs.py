import numpy as np
from typing import Callable, Dict, Sequence, Union
import logging

from .config import normalize_name
from .errors import ConfigurationError

Vector = Union[Sequence[float], np.ndarray]
CostFunctionType = Callable[[Vector, Vector], float]


def cross_entropy(target: Vector, output: Vector) -> float:
    """
    Computes the cross-entropy cost of a single example.

    Cost = - Σ_i [ target_i * log(output_i + ε) + (1 - target_i) * log(1 + ε - output_i) ]

    ε = 1e-15 keeps both logarithms finite for outputs of exactly 0 or 1.

    Args:
        target: Expected values, one per output neuron.
        output: Values produced by the network.

    Returns:
        The cost as a python float.
    """
    target = np.asarray(target, dtype=float)
    output = np.asarray(output, dtype=float)
    terms = target * np.log(output + 1e-15) + (1 - target) * np.log((1 + 1e-15) - output)
    return float(-np.sum(terms))


def mean_squared_error(calculated: Vector, desired: Vector) -> float:
    """
    Computes the mean squared error of a single example.

    Cost = (1/N) * Σ (calculated_i - desired_i)^2

    Args:
        calculated: Values produced by the network.
        desired: Expected values.

    Returns:
        The cost as a python float.
    """
    calculated = np.asarray(calculated, dtype=float)
    desired = np.asarray(desired, dtype=float)
    if calculated.size == 0:
        return 0.0
    return float(np.sum((calculated - desired) ** 2) / calculated.size)


# Dictionary mapping normalised cost names to cost functions
COST_FUNCTIONS: Dict[str, CostFunctionType] = {
    "crossentropy": cross_entropy,
    "meansquarederror": mean_squared_error,
}


def get_cost(name: Union[str, CostFunctionType]) -> CostFunctionType:
    """Resolve a cost function from its name, or pass a callable through unchanged."""
    if callable(name):
        return name
    key = normalize_name(name)
    if key not in COST_FUNCTIONS:
        raise ConfigurationError(f"Unsupported cost '{name}'. "
                                 f"Valid options: {list(COST_FUNCTIONS.keys())}")
    logging.debug(f"Using cost function '{key}'")
    return COST_FUNCTIONS[key]
