"""Tests for the volume utilities: padding, reshaping, convolution and its backward helpers."""
import numpy as np
import pytest

from clear_net.volume import (add_zero_padding, array_to_map, array_to_volume, build_conv_delta_weights,
                              build_conv_error_map, convolve, out_map_size)

WORKED_INPUT = np.array([
    [0, 0, 2, 2, 2],
    [1, 1, 0, 2, 0],
    [1, 2, 1, 1, 2],
    [0, 1, 2, 2, 1],
    [1, 2, 0, 0, 1],
], dtype=float)

WORKED_KERNEL = np.array([
    [-1, 0, -1],
    [1, 0, 1],
    [1, -1, 0],
], dtype=float)


def test_out_map_size():
    assert out_map_size(5, 3, 1, 2) == 3
    assert out_map_size(8, 3, 0, 1) == 6
    assert out_map_size(5, 2, 0, 2) == 2.5


def test_add_zero_padding():
    padded = add_zero_padding(np.ones((2, 2)), 1)
    assert padded.shape == (4, 4)
    assert padded.sum() == 4
    np.testing.assert_array_equal(padded[0], np.zeros(4))
    np.testing.assert_array_equal(add_zero_padding(np.ones((2, 2)), 0), np.ones((2, 2)))


def test_array_to_map_and_volume():
    np.testing.assert_array_equal(array_to_map(np.arange(9), 3), np.arange(9).reshape(3, 3))
    volume = array_to_volume(np.arange(8), 2)
    assert volume.shape == (2, 2, 2)
    np.testing.assert_array_equal(volume[1], [[4, 5], [6, 7]])


def test_convolve_worked_example():
    output = convolve(WORKED_INPUT[None], WORKED_KERNEL[None], bias=1.0, zero_padding=1, stride=2)
    np.testing.assert_array_equal(output, [[0, 4, 5], [2, 0, 1], [2, 0, -1]])


def test_convolve_sums_over_channels():
    volume = np.stack([WORKED_INPUT, WORKED_INPUT])
    kernels = np.stack([WORKED_KERNEL, np.zeros((3, 3))])
    single = convolve(WORKED_INPUT[None], WORKED_KERNEL[None], 0.0, 1, 2)
    np.testing.assert_array_equal(convolve(volume, kernels, 0.0, 1, 2), single)


def test_build_conv_error_map_scatters_over_window():
    weights = np.ones((1, 2, 2))
    errors = np.array([[[2.0]]])
    np.testing.assert_array_equal(build_conv_error_map(weights, errors, 2, 0, 1), np.full((2, 2), 2.0))


@pytest.mark.parametrize("map_size,filter_size,zero_padding,stride", [
    (5, 3, 1, 2),
    (4, 3, 1, 1),
    (6, 2, 0, 2),
])
def test_build_conv_error_map_is_adjoint_of_convolve(map_size, filter_size, zero_padding, stride):
    """<convolve(x), e> == <x, back_projection(e)> for a single map and filter."""
    x = np.random.randn(map_size, map_size)
    weights = np.random.randn(1, filter_size, filter_size)
    out = int(out_map_size(map_size, filter_size, zero_padding, stride))
    errors = np.random.randn(1, out, out)

    forward = convolve(x[None], weights, 0.0, zero_padding, stride)
    backward = build_conv_error_map(weights, errors, map_size, zero_padding, stride)

    assert backward.shape == (map_size, map_size)
    assert np.sum(forward * errors[0]) == pytest.approx(np.sum(x * backward))


def test_build_conv_delta_weights():
    input_volume = np.array([[[1.0, 2.0], [3.0, 4.0]]])
    weights = np.zeros((1, 1, 1, 1))
    delta_weights = np.zeros_like(weights)
    delta_biases = np.zeros(1)

    build_conv_delta_weights(input_volume, weights, np.ones((1, 2, 2)), delta_weights, delta_biases, 0, 1)

    assert delta_weights[0, 0, 0, 0] == pytest.approx(10.0)
    assert delta_biases[0] == pytest.approx(4.0)


def test_build_conv_delta_weights_folds_regularization():
    input_volume = np.array([[[1.0, 2.0], [3.0, 4.0]]])
    weights = np.full((1, 1, 1, 1), 2.0)
    delta_weights = np.zeros_like(weights)
    delta_biases = np.zeros(1)

    build_conv_delta_weights(input_volume, weights, np.ones((1, 2, 2)), delta_weights, delta_biases, 0, 1,
                             regularization=0.5)

    # Every input is scaled by 1 + 0.5 * 2
    assert delta_weights[0, 0, 0, 0] == pytest.approx(20.0)
