"""Weight initialization distributions.

Every initializer takes the shape of the tensor to fill plus keyword
parameters, and returns a fresh float64 array. Unused keyword parameters are
ignored so that a single weights configuration can be splatted into any of them.
"""
import math
import logging
from typing import Callable, Dict, Optional, Tuple, Union

import numpy as np

from .config import normalize_name
from .errors import ConfigurationError

Shape = Union[int, Tuple[int, ...]]


def uniform(shape: Shape, limit: float = 0.1, **_) -> np.ndarray:
    """Values drawn uniformly from [-limit, limit)."""
    return np.random.random(shape) * 2 * limit - limit


def gaussian(shape: Shape, mean: float = 0.0, std_deviation: float = 0.05, **_) -> np.ndarray:
    """Values drawn from N(mean, std_deviation^2) using the polar Box-Muller method."""
    count = int(np.prod(shape))
    values = np.empty(0)

    while values.size < count:
        x1 = 2 * np.random.random(count) - 1
        x2 = 2 * np.random.random(count) - 1
        r = x1 ** 2 + x2 ** 2
        # Reject points outside the unit circle, and the origin
        accepted = (r < 1) & (r != 0)
        x1, r = x1[accepted], r[accepted]
        values = np.concatenate([values, x1 * np.sqrt(-2 * np.log(r) / r)])

    return (mean + values[:count] * std_deviation).reshape(shape)


def lecun_normal(shape: Shape, fan_in: int = 1, **_) -> np.ndarray:
    return gaussian(shape, mean=0.0, std_deviation=math.sqrt(1 / fan_in))


def lecun_uniform(shape: Shape, fan_in: int = 1, **_) -> np.ndarray:
    return uniform(shape, limit=math.sqrt(3 / fan_in))


def xavier_normal(shape: Shape, fan_in: int = 1, fan_out: Optional[int] = None, **_) -> np.ndarray:
    """Glorot normal. Falls back to LeCun normal when there is no fan-out (output layer)."""
    if fan_out is None:
        return lecun_normal(shape, fan_in=fan_in)
    return gaussian(shape, mean=0.0, std_deviation=math.sqrt(2 / (fan_in + fan_out)))


def xavier_uniform(shape: Shape, fan_in: int = 1, fan_out: Optional[int] = None, **_) -> np.ndarray:
    """Glorot uniform. Falls back to LeCun uniform when there is no fan-out (output layer)."""
    if fan_out is None:
        return lecun_uniform(shape, fan_in=fan_in)
    return uniform(shape, limit=math.sqrt(6 / (fan_in + fan_out)))


INITIALIZERS: Dict[str, Callable[..., np.ndarray]] = {
    "uniform": uniform,
    "gaussian": gaussian,
    "xaviernormal": xavier_normal,
    "xavieruniform": xavier_uniform,
    "lecunnormal": lecun_normal,
    "lecununiform": lecun_uniform,
}


def get_initializer(distribution: Union[str, Callable[..., np.ndarray]]) -> Callable[..., np.ndarray]:
    if callable(distribution):
        return distribution
    key = normalize_name(distribution)
    if key not in INITIALIZERS:
        raise ConfigurationError(f"Unknown weights distribution '{distribution}'. "
                                 f"Available distributions: {list(INITIALIZERS.keys())}")
    logging.debug(f"Using weights distribution '{key}'")
    return INITIALIZERS[key]
