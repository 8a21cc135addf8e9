"""Tests for the fully connected, convolutional and pooling layers."""
import numpy as np
import pytest

from clear_net import ConfigurationError, ConvLayer, FCLayer, LayerKind, Network, PoolLayer

WORKED_INPUT = np.array([
    [0, 0, 2, 2, 2],
    [1, 1, 0, 2, 0],
    [1, 2, 1, 1, 2],
    [0, 1, 2, 2, 1],
    [1, 2, 0, 0, 1],
], dtype=float)


# --- Fully connected ---

def test_fc_forward_and_backward_by_hand():
    network = Network(layers=[2, 2, 1], activation="linear")
    hidden, output = network.layers[1], network.layers[2]
    hidden.weights = np.array([[1.0, 0.0], [0.0, 1.0]])
    hidden.biases = np.zeros(2)
    output.weights = np.array([[2.0, 3.0]])
    output.biases = np.zeros(1)

    result = network.forward([1.0, 2.0])
    np.testing.assert_allclose(result, [8.0])

    network.backward([1.0])
    np.testing.assert_allclose(output.delta_weights, [[1.0, 2.0]])
    np.testing.assert_allclose(output.delta_biases, [1.0])
    np.testing.assert_allclose(hidden.errors, [2.0, 3.0])
    np.testing.assert_allclose(hidden.delta_weights, [[2.0, 4.0], [3.0, 6.0]])
    np.testing.assert_allclose(hidden.delta_biases, [2.0, 3.0])


def test_fc_biases_start_at_one():
    network = Network(layers=[3, 4, 2])
    np.testing.assert_array_equal(network.layers[1].biases, np.ones(4))
    assert network.layers[1].weights.shape == (4, 3)
    assert network.layers[0].weights is None


def test_fc_l2_penalty_and_update():
    network = Network(layers=[1, 1], l2=0.001, learning_rate=0.1)
    layer = network.layers[1]
    layer.weights = np.array([[0.25]])
    layer.delta_weights = np.array([[0.5]])
    layer.delta_biases = np.array([0.0])

    network.apply_accumulated_gradients()

    assert network.l2_error == 0.5 * 0.001 * 0.25 ** 2
    assert network.l1_error is None
    assert layer.weights[0, 0] == pytest.approx(0.25 + 0.1 * (0.5 + 0.001 * 0.25))


def test_fc_l1_uses_minus_one_for_zero_weights():
    network = Network(layers=[1, 1], l1=0.01, learning_rate=1.0)
    layer = network.layers[1]
    layer.weights = np.array([[0.0]])

    network.apply_accumulated_gradients()

    assert network.l1_error == 0.0
    assert layer.weights[0, 0] == pytest.approx(-0.01)


def test_fc_bias_uses_raw_gradient():
    network = Network(layers=[1, 1], l2=0.5, learning_rate=1.0)
    network.mini_batch_size = 4
    layer = network.layers[1]
    layer.biases = np.array([1.0])
    layer.delta_biases = np.array([2.0])

    network.apply_accumulated_gradients()

    assert layer.biases[0] == pytest.approx(3.0)


def test_dropout_zero_keep_prob_drops_everything():
    network = Network(layers=[3, 4, 2], dropout=0)
    network.set_training_mode(True)

    network.forward([1.0, 2.0, 3.0])
    for layer in network.layers[1:]:
        assert layer.dropped.all()
        np.testing.assert_array_equal(layer.activations, np.zeros(layer.size))

    network.backward([0.5, -0.5])
    for layer in network.layers[1:]:
        np.testing.assert_array_equal(layer.errors, np.zeros(layer.size))
        np.testing.assert_array_equal(layer.delta_weights, np.zeros_like(layer.weights))
        np.testing.assert_array_equal(layer.delta_biases, np.zeros(layer.size))


def test_dropout_inactive_outside_training():
    network = Network(layers=[3, 4, 2], dropout=0)
    network.forward([1.0, 2.0, 3.0])
    assert not network.layers[1].dropped.any()


# --- Convolutional ---

@pytest.mark.parametrize("width,filter_size,zero_padding,stride,expected", [
    (5, 3, 1, 2, 3),
    (5, 3, 0, 1, 3),
    (8, 3, 0, 1, 6),
    (4, 2, 0, 2, 2),
    (6, 5, 2, 1, 6),
])
def test_conv_output_size(width, filter_size, zero_padding, stride, expected):
    network = Network(layers=[
        FCLayer(width * width),
        ConvLayer(2, filter_size=filter_size, zero_padding=zero_padding, stride=stride),
        FCLayer(2),
    ])
    conv = network.layers[1]
    assert conv.out_map_size == expected

    network.forward(np.random.random(width * width))
    assert conv.activation_maps.shape == (2, expected, expected)
    assert conv.flat_output().size == 2 * expected ** 2


def test_conv_non_integer_size_raises_before_allocation():
    calls = []

    def recording_distribution(shape, **kwargs):
        calls.append(shape)
        return np.zeros(shape)

    with pytest.raises(ConfigurationError):
        Network(layers=[FCLayer(25), ConvLayer(1, filter_size=2, zero_padding=0, stride=2)],
                weights_config={"distribution": recording_distribution})
    assert calls == []


def test_conv_worked_example():
    network = Network(layers=[FCLayer(25), ConvLayer(1, filter_size=3, zero_padding=1, stride=2, activation=False)])
    conv = network.layers[1]
    conv.weights = np.array([[[[-1, 0, -1], [1, 0, 1], [1, -1, 0]]]], dtype=float)
    conv.biases = np.array([1.0])

    network.forward(WORKED_INPUT.ravel())

    expected = [[0, 4, 5], [2, 0, 1], [2, 0, -1]]
    np.testing.assert_array_equal(conv.sum_maps[0], expected)
    np.testing.assert_array_equal(conv.activation_maps[0], expected)


def test_conv_errors_from_fully_connected():
    network = Network(layers=[FCLayer(4), ConvLayer(1, filter_size=1, zero_padding=0), FCLayer(1)],
                      activation="linear")
    conv, output = network.layers[1], network.layers[2]
    conv.weights = np.ones((1, 1, 1, 1))
    conv.biases = np.zeros(1)
    output.weights = np.array([[1.0, 2.0, 3.0, 4.0]])

    network.forward([1.0, 1.0, 1.0, 1.0])
    network.backward([1.0])

    # Cell (y, x) reads next-layer weight y*2 + x
    np.testing.assert_allclose(conv.error_maps[0], [[1.0, 2.0], [3.0, 4.0]])
    assert conv.delta_weights[0, 0, 0, 0] == pytest.approx(10.0)
    assert conv.delta_biases[0] == pytest.approx(10.0)


def test_conv_dropout_zero_keep_prob():
    network = Network(layers=[FCLayer(16), ConvLayer(2, filter_size=3), FCLayer(2)], dropout=0)
    conv = network.layers[1]
    assert conv.dropout_maps is not None
    network.set_training_mode(True)

    network.forward(np.random.random(16))
    np.testing.assert_array_equal(conv.activation_maps, np.zeros_like(conv.activation_maps))

    network.backward([0.5, -0.5])
    np.testing.assert_array_equal(conv.error_maps, np.zeros_like(conv.error_maps))
    np.testing.assert_array_equal(conv.delta_weights, np.zeros_like(conv.delta_weights))


def test_conv_without_dropout_has_no_dropout_maps():
    network = Network(layers=[FCLayer(16), ConvLayer(2), FCLayer(2)])
    assert network.layers[1].dropout_maps is None


def test_conv_reset_clears_error_maps():
    network = Network(layers=[FCLayer(16), ConvLayer(2), FCLayer(2)])
    network.forward(np.random.random(16))
    network.backward([0.3, -0.3])
    conv = network.layers[1]
    assert np.any(conv.delta_weights != 0)

    network.reset_accumulated_gradients()
    assert not np.any(conv.delta_weights)
    assert not np.any(conv.delta_biases)
    assert not np.any(conv.error_maps)


# --- Pooling ---

def pooling_network(activation=False):
    network = Network(layers=[FCLayer(4), PoolLayer(2, stride=2, activation=activation), FCLayer(1)],
                      activation="linear")
    output = network.layers[2]
    output.weights = np.array([[1.0]])
    output.biases = np.zeros(1)
    return network


def test_pool_argmax_and_routing():
    network = pooling_network()
    pool = network.layers[1]
    assert pool.kind is LayerKind.POOLING

    network.forward([1.0, 3.0, 4.0, 2.0])
    assert pool.activations[0, 0, 0] == 4.0
    assert tuple(pool.indices[0, 0, 0]) == (1, 0)

    network.backward([0.5])
    np.testing.assert_array_equal(pool.errors[0], [[0.0, 0.0], [0.5, 0.0]])


def test_pool_ties_keep_first_position():
    network = pooling_network()
    pool = network.layers[1]
    network.forward([5.0, 5.0, 5.0, 5.0])
    assert tuple(pool.indices[0, 0, 0]) == (0, 0)


def test_pool_indices_reset_every_forward():
    network = pooling_network()
    pool = network.layers[1]
    network.forward([1.0, 3.0, 4.0, 2.0])
    network.forward([9.0, 1.0, 1.0, 1.0])
    assert tuple(pool.indices[0, 0, 0]) == (0, 0)


def test_pool_activation_derivative_is_taken_at_the_error():
    network = pooling_network(activation="relu")
    pool = network.layers[1]
    network.forward([1.0, 3.0, 4.0, 2.0])

    network.backward([0.5])
    assert pool.errors[0, 1, 0] == pytest.approx(0.5)

    # relu'(-0.5) is 0, whatever the pooled value was
    network.backward([-0.5])
    assert pool.errors[0, 1, 0] == 0.0


def test_pool_has_no_parameters():
    network = Network(layers=[FCLayer(16), ConvLayer(2), PoolLayer(2), FCLayer(2)])
    pool = network.layers[2]
    assert pool.to_json() == {}
    assert pool.get_data_size() == 0
    assert pool.to_img().size == 0


def test_pool_non_integer_size():
    with pytest.raises(ConfigurationError):
        Network(layers=[FCLayer(25), PoolLayer(2, stride=2), FCLayer(2)])


# --- Gradients against finite differences ---

ARCHITECTURES = {
    "conv-conv-pool": [FCLayer(16), ConvLayer(2, filter_size=3, zero_padding=1), ConvLayer(2, filter_size=3, zero_padding=0),
                       PoolLayer(2), FCLayer(1)],
    "conv-pool-conv": [FCLayer(16), ConvLayer(2, filter_size=3, zero_padding=1), PoolLayer(2),
                       ConvLayer(1, filter_size=2, zero_padding=0), FCLayer(1)],
    "fc-conv": [FCLayer(4), FCLayer(16), ConvLayer(1, filter_size=3, zero_padding=1), FCLayer(1)],
}


@pytest.mark.parametrize("name", sorted(ARCHITECTURES))
def test_first_layer_gradient_matches_finite_differences(name):
    """delta_weights holds -dLoss/dw for Loss = 0.5 * (target - output)^2."""
    network = Network(layers=ARCHITECTURES[name], activation="linear")
    layer = network.layers[1]
    x = np.random.random(network.layers[0].size)
    target = 0.7

    def loss():
        return 0.5 * (target - network.forward(x)[0]) ** 2

    network.reset_accumulated_gradients()
    output = network.forward(x)
    network.backward([target - output[0]])
    analytic = layer.delta_weights.copy()

    eps = 1e-6
    for flat_index in np.random.choice(layer.weights.size, size=5, replace=False):
        index = np.unravel_index(flat_index, layer.weights.shape)
        saved = layer.weights[index]
        layer.weights[index] = saved + eps
        loss_plus = loss()
        layer.weights[index] = saved - eps
        loss_minus = loss()
        layer.weights[index] = saved

        numeric = (loss_plus - loss_minus) / (2 * eps)
        assert analytic[index] == pytest.approx(-numeric, rel=1e-4, abs=1e-8)
