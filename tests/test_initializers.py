"""Tests for the weight initialization distributions."""
import math

import numpy as np
import pytest

from clear_net import ConfigurationError, get_initializer
from clear_net.initializers import (gaussian, lecun_normal, lecun_uniform, uniform, xavier_normal,
                                    xavier_uniform)


def test_uniform_bounds():
    values = uniform((1000,), limit=0.1)
    assert values.shape == (1000,)
    assert values.min() >= -0.1
    assert values.max() < 0.1


def test_gaussian_moments():
    values = gaussian((4000,), mean=1.0, std_deviation=0.5)
    assert values.shape == (4000,)
    assert values.mean() == pytest.approx(1.0, abs=0.05)
    assert values.std() == pytest.approx(0.5, abs=0.05)


def test_gaussian_keeps_shape():
    assert gaussian((3, 2, 5)).shape == (3, 2, 5)


def test_xavier_uniform_limit():
    limit = math.sqrt(6 / (10 + 20))
    values = xavier_uniform((500,), fan_in=10, fan_out=20)
    assert np.abs(values).max() <= limit


def test_xavier_falls_back_to_lecun_without_fan_out():
    np.random.seed(1)
    fallback = xavier_uniform((2000,), fan_in=10, fan_out=None)
    np.random.seed(1)
    np.testing.assert_array_equal(fallback, lecun_uniform((2000,), fan_in=10))

    values = xavier_uniform((2000,), fan_in=10, fan_out=30)
    assert np.abs(values).max() <= math.sqrt(6 / 40)

    np.random.seed(1)
    fallback = xavier_normal((10,), fan_in=4)
    np.random.seed(1)
    np.testing.assert_array_equal(fallback, lecun_normal((10,), fan_in=4))


def test_lecun_uniform_limit():
    values = lecun_uniform((500,), fan_in=3)
    assert np.abs(values).max() <= 1.0


def test_get_initializer():
    assert get_initializer("Xavier_Normal") is xavier_normal
    assert get_initializer("gaussian") is gaussian

    def custom(shape, **kwargs):
        return np.zeros(shape)

    assert get_initializer(custom) is custom


def test_get_initializer_unknown_name():
    with pytest.raises(ConfigurationError):
        get_initializer("orthogonal")
