"""Tests for the parameter states and update rules."""
from dataclasses import FrozenInstanceError, replace

import numpy as np
import pytest

from clear_net import ConfigurationError, TrainingContext
from clear_net.optimizers import (AdadeltaState, AdamState, CacheState, GainState, MomentumState, SGDState,
                                  apply_update, init_parameter_state)


def update(update_fn, value, grad, state=None, **context_values):
    context = TrainingContext(learning_rate=0.1, update_fn=update_fn, **context_values)
    state = state or init_parameter_state(update_fn, np.shape(value))
    return apply_update(np.asarray(value, dtype=float), np.asarray(grad, dtype=float), state, context), state


def test_init_parameter_state_kinds():
    assert isinstance(init_parameter_state("sgd", (2,)), SGDState)
    assert isinstance(init_parameter_state("momentum", (2,)), MomentumState)
    assert isinstance(init_parameter_state("adagrad", (2,)), CacheState)
    assert isinstance(init_parameter_state("rmsprop", (2,)), CacheState)
    assert isinstance(init_parameter_state("adam", (2,)), AdamState)
    assert isinstance(init_parameter_state("adadelta", (2,)), AdadeltaState)

    gain = init_parameter_state("gain", (2, 3))
    assert isinstance(gain, GainState)
    np.testing.assert_array_equal(gain.gain, np.ones((2, 3)))


def test_init_parameter_state_unknown():
    with pytest.raises(ConfigurationError):
        init_parameter_state("nesterov", (2,))


def test_sgd():
    value, _ = update("sgd", 1.0, 0.5)
    assert value == pytest.approx(1.05)


def test_momentum_keeps_velocity():
    value, state = update("momentum", 1.0, 0.5)
    assert value == pytest.approx(1.05)
    assert state.velocity == pytest.approx(-0.05)

    value, state = update("momentum", value, 0.5, state)
    assert state.velocity == pytest.approx(-0.095)
    assert value == pytest.approx(1.145)


def test_gain_grows_without_sign_change():
    value, state = update("gain", 1.0, 0.5)
    assert value == pytest.approx(1.05)
    assert state.gain == pytest.approx(1.05)


def test_gain_shrinks_on_sign_change():
    value, state = update("gain", 0.01, -1.0)
    assert value == pytest.approx(-0.09)
    assert state.gain == pytest.approx(0.95)


def test_gain_bounds():
    state = GainState(gain=np.array([0.5, 5.0]))
    _, state = update("gain", np.array([0.01, 1.0]), np.array([-1.0, 0.1]), state)
    np.testing.assert_allclose(state.gain, [0.5, 5.0])


def test_adagrad():
    value, state = update("adagrad", 1.0, 0.5)
    assert state.cache == pytest.approx(0.25)
    assert value == pytest.approx(1 + 0.1 * 0.5 / (1e-6 + 0.5))


def test_rmsprop():
    value, state = update("rmsprop", 1.0, 0.5, rms_decay=0.99)
    assert state.cache == pytest.approx(0.0025)
    assert value == pytest.approx(1 + 0.1 * 0.5 / (1e-6 + 0.05))


def test_adam_first_step():
    value, state = update("adam", 1.0, 0.5)
    assert state.m == pytest.approx(0.05)
    assert state.v == pytest.approx(0.00025)
    # Bias-corrected m = 0.5, v = 0.25
    assert value == pytest.approx(1 + 0.1 * 0.5 / (0.5 + 1e-8))


def test_adam_uses_iteration_count():
    first, _ = update("adam", 1.0, 0.5, iterations=0)
    later, _ = update("adam", 1.0, 0.5, iterations=10)
    assert first != pytest.approx(later)


def test_adadelta():
    value, state = update("adadelta", 1.0, 0.5, rho=0.95)
    assert state.cache == pytest.approx(0.0125)
    assert state.adadelta_cache == pytest.approx(0.0125)
    assert value == pytest.approx(1 + np.sqrt(1e-6 / (0.0125 + 1e-6)) * 0.5)


@pytest.mark.parametrize("update_fn", ["sgd", "momentum", "gain", "adagrad", "rmsprop", "adam", "adadelta"])
def test_tensor_update_matches_scalar_updates(update_fn):
    values = np.array([0.3, -0.2, 0.05])
    grads = np.array([0.1, 0.4, -0.3])
    extra = {"rms_decay": 0.99, "rho": 0.95}

    tensor_result, _ = update(update_fn, values, grads, **extra)
    scalar_results = [update(update_fn, v, g, **extra)[0] for v, g in zip(values, grads)]
    np.testing.assert_allclose(tensor_result, np.array(scalar_results, dtype=float).ravel())


def test_training_context_is_immutable(context):
    with pytest.raises(FrozenInstanceError):
        context.learning_rate = 1.0
    assert replace(context, training=True).training is True
