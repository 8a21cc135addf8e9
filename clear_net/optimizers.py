"""
Per-parameter optimizer state and the update rules that consume it.

Every trainable tensor (a layer's weights, and separately its biases) owns one
`ParameterState`, chosen once from the configured update function and shaped
like the tensor. The update rules are element-wise, so applying one to a whole
tensor is the same as applying it to each scalar in turn.

Gradients here follow the engine's sign convention: they point in the
direction that *reduces* the error (error = target - output), so updates add
them rather than subtract.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Tuple, Type, Union

import numpy as np

from .config import TrainingContext
from .errors import ConfigurationError

Shape = Union[int, Tuple[int, ...]]


class ParameterState:
    """Base class for the optimizer state attached to one parameter tensor."""
    kind = "sgd"


@dataclass
class SGDState(ParameterState):
    """Plain gradient steps need no memory."""
    kind = "sgd"


@dataclass
class MomentumState(ParameterState):
    kind = "momentum"
    velocity: np.ndarray


@dataclass
class GainState(ParameterState):
    kind = "gain"
    gain: np.ndarray


@dataclass
class CacheState(ParameterState):
    """Squared-gradient accumulator shared by adagrad and rmsprop."""
    kind = "cache"
    cache: np.ndarray


@dataclass
class AdamState(ParameterState):
    kind = "adam"
    m: np.ndarray
    v: np.ndarray


@dataclass
class AdadeltaState(ParameterState):
    kind = "adadelta"
    cache: np.ndarray
    adadelta_cache: np.ndarray


# --- Update rules ---

def sgd(value: np.ndarray, grad: np.ndarray, state: SGDState, context: TrainingContext) -> np.ndarray:
    return value + context.learning_rate * grad


def momentum(value: np.ndarray, grad: np.ndarray, state: MomentumState, context: TrainingContext) -> np.ndarray:
    state.velocity = context.momentum * state.velocity - context.learning_rate * grad
    return value - state.velocity


def gain(value: np.ndarray, grad: np.ndarray, state: GainState, context: TrainingContext) -> np.ndarray:
    """
    Gradient step scaled by a per-parameter gain.

    The gain shrinks by 5% (floor 0.5) whenever the step moves the parameter
    across zero, and grows by 0.05 (ceiling 5) otherwise.
    """
    new_value = value + context.learning_rate * grad * state.gain
    flipped = ((new_value <= 0) & (value > 0)) | ((new_value >= 0) & (value < 0))
    state.gain = np.where(flipped, np.maximum(state.gain * 0.95, 0.5), np.minimum(state.gain + 0.05, 5))
    return new_value


def adagrad(value: np.ndarray, grad: np.ndarray, state: CacheState, context: TrainingContext) -> np.ndarray:
    state.cache = state.cache + grad ** 2
    return value + context.learning_rate * grad / (1e-6 + np.sqrt(state.cache))


def rmsprop(value: np.ndarray, grad: np.ndarray, state: CacheState, context: TrainingContext) -> np.ndarray:
    decay = context.rms_decay
    state.cache = decay * state.cache + (1 - decay) * grad ** 2
    return value + context.learning_rate * grad / (1e-6 + np.sqrt(state.cache))


def adam(value: np.ndarray, grad: np.ndarray, state: AdamState, context: TrainingContext) -> np.ndarray:
    """Adam with β1=0.9, β2=0.999, bias-corrected by the network's iteration count."""
    step = context.iterations + 1
    state.m = 0.9 * state.m + (1 - 0.9) * grad
    m_corrected = state.m / (1 - 0.9 ** step)

    state.v = 0.999 * state.v + (1 - 0.999) * grad ** 2
    v_corrected = state.v / (1 - 0.999 ** step)

    return value + context.learning_rate * m_corrected / (np.sqrt(v_corrected) + 1e-8)


def adadelta(value: np.ndarray, grad: np.ndarray, state: AdadeltaState, context: TrainingContext) -> np.ndarray:
    rho = context.rho
    state.cache = rho * state.cache + (1 - rho) * grad ** 2
    new_value = value + np.sqrt((state.adadelta_cache + 1e-6) / (state.cache + 1e-6)) * grad
    state.adadelta_cache = rho * state.adadelta_cache + (1 - rho) * grad ** 2
    return new_value


UpdateRule = Callable[[np.ndarray, np.ndarray, ParameterState, TrainingContext], np.ndarray]

# update function name -> (state class, rule)
UPDATE_RULES: Dict[str, Tuple[Type[ParameterState], UpdateRule]] = {
    "sgd": (SGDState, sgd),
    "momentum": (MomentumState, momentum),
    "gain": (GainState, gain),
    "adagrad": (CacheState, adagrad),
    "rmsprop": (CacheState, rmsprop),
    "adam": (AdamState, adam),
    "adadelta": (AdadeltaState, adadelta),
}


def get_update_rule(update_fn: str) -> UpdateRule:
    if update_fn not in UPDATE_RULES:
        raise ConfigurationError(f"Unknown update function '{update_fn}'. "
                                 f"Available: {list(UPDATE_RULES.keys())}")
    return UPDATE_RULES[update_fn][1]


def init_parameter_state(update_fn: str, shape: Shape) -> ParameterState:
    """Allocates the state `update_fn` needs for a tensor of the given shape."""
    if update_fn not in UPDATE_RULES:
        raise ConfigurationError(f"Unknown update function '{update_fn}'. "
                                 f"Available: {list(UPDATE_RULES.keys())}")
    state_cls = UPDATE_RULES[update_fn][0]

    if state_cls is MomentumState:
        state = MomentumState(velocity=np.zeros(shape))
    elif state_cls is GainState:
        state = GainState(gain=np.ones(shape))
    elif state_cls is CacheState:
        state = CacheState(cache=np.zeros(shape))
    elif state_cls is AdamState:
        state = AdamState(m=np.zeros(shape), v=np.zeros(shape))
    elif state_cls is AdadeltaState:
        state = AdadeltaState(cache=np.zeros(shape), adadelta_cache=np.zeros(shape))
    else:
        state = SGDState()

    logging.debug(f"Initialised {state.__class__.__name__} for '{update_fn}' with shape {shape}")
    return state


def apply_update(value: np.ndarray, grad: np.ndarray, state: ParameterState,
                 context: TrainingContext) -> np.ndarray:
    """Runs the context's update rule on a parameter tensor and returns the new values."""
    return get_update_rule(context.update_fn)(value, grad, state, context)
