import numpy as np
import pytest

from clear_net import Network, TrainingContext


@pytest.fixture(autouse=True)
def seed():
    """Every test starts from the same random state."""
    np.random.seed(0)


@pytest.fixture
def context():
    return TrainingContext(learning_rate=0.1)


@pytest.fixture
def xor_data():
    return [
        {"input": [0, 0], "expected": [0]},
        {"input": [0, 1], "expected": [1]},
        {"input": [1, 0], "expected": [1]},
        {"input": [1, 1], "expected": [0]},
    ]


@pytest.fixture
def small_network():
    return Network(layers=[3, 4, 2], learning_rate=0.1)
