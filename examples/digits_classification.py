# examples/digits_classification.py
"""
Digit Classification using a small CNN

Trains a clear_net network on the sklearn digits dataset (8x8 pixel images,
digits 0-9), one example at a time.

Main steps:
1. Load the sklearn digits dataset and split it into train/validation/test
2. Normalize the pixels and one-hot encode the labels
3. Define the network: input -> conv -> max pool -> fully connected output
4. Train with rmsprop, validating every epoch with patience-based early stopping
5. Evaluate accuracy on the test split and plot the training curves
"""

import logging
import sys
import time

import numpy as np
import matplotlib.pyplot as plt

from clear_net import ConvLayer, FCLayer, Network, PoolLayer

NUM_CLASSES = 10


def load_sklearn_digits():
    try:
        from sklearn.datasets import load_digits
        from sklearn.model_selection import train_test_split
    except ImportError:
        print("Error: scikit-learn is required. pip install scikit-learn")
        sys.exit(1)
    print("Loading Scikit-learn digits dataset...")
    digits = load_digits()
    X, y = digits.data, digits.target
    print(f"Dataset loaded. X shape: {X.shape}, y shape: {y.shape}")
    X_train, X_test, y_train, y_test = train_test_split(X, y, test_size=0.2, random_state=42, stratify=y)
    X_train, X_val, y_train, y_val = train_test_split(X_train, y_train, test_size=0.1, random_state=42,
                                                      stratify=y_train)
    print(f"Split into Train: {X_train.shape}, Validation: {X_val.shape}, Test: {X_test.shape}")
    return (X_train, y_train), (X_val, y_val), (X_test, y_test)


def to_examples(X, y):
    """Pixel values are 0-16. Each example is {'input': 64 floats, 'expected': one-hot}."""
    one_hot = np.eye(NUM_CLASSES)[y]
    return [{"input": x / 16.0, "expected": target} for x, target in zip(X, one_hot)]


def accuracy(network, examples):
    predictions = [np.argmax(network.forward(example["input"])) for example in examples]
    labels = [np.argmax(example["expected"]) for example in examples]
    return float(np.mean(np.array(predictions) == np.array(labels)))


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")

    # --- Configuration ---
    EPOCHS = 5
    MINI_BATCH_SIZE = 4

    (X_train, y_train), (X_val, y_val), (X_test, y_test) = load_sklearn_digits()
    train_data = to_examples(X_train, y_train)
    val_data = to_examples(X_val, y_val)
    test_data = to_examples(X_test, y_test)

    # Input 1x8x8 -> Conv (F=3, P=0): 8x6x6 -> Pool (2, stride 2): 8x3x3 -> FC 10
    network = Network(
        layers=[
            FCLayer(64),
            ConvLayer(8, filter_size=3, zero_padding=0, activation="relu"),
            PoolLayer(2, stride=2),
            FCLayer(NUM_CLASSES, activation="sigmoid"),
        ],
        update_fn="rmsprop",
        cost="crossentropy",
        channels=1,
        l2=True,
    )
    print(network.summary())

    iteration_errors = []
    start_time = time.time()
    history = network.train(
        train_data,
        epochs=EPOCHS,
        mini_batch_size=MINI_BATCH_SIZE,
        shuffle=True,
        validation={"data": val_data, "early_stopping": {"type": "patience", "patience": 3}},
        callback=lambda progress: iteration_errors.append(progress["training_error"]),
    )
    print(f"Total Training Time: {time.time() - start_time:.2f}s")

    test_cost = network.test(test_data)
    final_accuracy = accuracy(network, test_data)
    print(f"Test cost: {test_cost:.4f}")
    print(f"Final Test Accuracy: {final_accuracy * 100:.2f}%")

    # --- Plotting ---
    plt.figure(figsize=(12, 5))
    plt.subplot(1, 2, 1)
    window = 50
    smoothed = np.convolve(iteration_errors, np.ones(window) / window, mode="valid")
    plt.plot(smoothed, label=f'Training Error ({window}-iteration mean)')
    plt.xlabel('Iteration')
    plt.ylabel('Cost')
    plt.legend()
    plt.title('Training Error')
    plt.grid(True)

    plt.subplot(1, 2, 2)
    plt.plot(history['epoch'], history['loss'], label='Training Loss', marker='o')
    # No validation has run before the second epoch
    val_loss = [np.nan if value is None else value for value in history['val_loss']]
    plt.plot(history['epoch'], val_loss, label='Validation Loss', color='orange', marker='o')
    plt.xlabel('Epoch')
    plt.ylabel('Cost')
    plt.legend()
    plt.title('Loss over Epochs')
    plt.grid(True)

    plt.tight_layout()
    plt.show()
