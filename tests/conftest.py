"""Shared test fixtures for image search tests."""

import threading

import cv2
import numpy as np
import pytest
import tensorflow as tf

from image_search.model_cache import build_model_handle

TINY_INPUT = 32
TINY_FEATURES = 8


def make_tiny_backbone(input_size: int = TINY_INPUT):
    """Small classifier shaped like MobileNetV2: conv -> global pool -> dense head."""
    init = tf.keras.initializers.GlorotUniform(seed=7)
    inputs = tf.keras.Input(shape=(input_size, input_size, 3), name="image")
    x = tf.keras.layers.Conv2D(TINY_FEATURES, 3, activation="tanh",
                               kernel_initializer=init, name="conv")(inputs)
    x = tf.keras.layers.GlobalAveragePooling2D(name="pool")(x)
    outputs = tf.keras.layers.Dense(4, activation="softmax",
                                    kernel_initializer=init, name="predictions")(x)
    return tf.keras.Model(inputs, outputs, name="tiny_backbone")


class CountingFetcher:
    """Fetch function that records how often the network was fetched."""

    def __init__(self, builder=make_tiny_backbone):
        self.builder = builder
        self.calls = []

    def __call__(self, source):
        self.calls.append(source)
        return self.builder()


class BlockingFetcher(CountingFetcher):
    """Fetch function that holds the worker thread until proceed is set."""

    def __init__(self, builder=make_tiny_backbone):
        super().__init__(builder)
        self.started = threading.Event()
        self.proceed = threading.Event()

    def __call__(self, source):
        self.started.set()
        self.proceed.wait(timeout=10)
        return super().__call__(source)


@pytest.fixture
def counting_fetcher():
    return CountingFetcher()


@pytest.fixture(scope="session")
def tiny_handle():
    return build_model_handle(make_tiny_backbone(), "tiny-test-1")


@pytest.fixture
def red_square_image():
    """Generate a 200x200 red square on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    img[40:160, 40:160] = [200, 30, 30]  # Red square
    return img


@pytest.fixture
def blue_circle_image():
    """Generate a 200x200 blue circle on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    cv2.circle(img, (100, 100), 60, (30, 30, 200), -1)
    return img


@pytest.fixture
def noise_image():
    """Generate a 200x200 random noise image."""
    rng = np.random.RandomState(42)
    return rng.randint(0, 255, (200, 200, 3), dtype=np.uint8)


@pytest.fixture
def png_bytes(red_square_image):
    ok, encoded = cv2.imencode(".png", cv2.cvtColor(red_square_image, cv2.COLOR_RGB2BGR))
    assert ok
    return encoded.tobytes()


@pytest.fixture
def jpeg_bytes(blue_circle_image):
    ok, encoded = cv2.imencode(".jpg", cv2.cvtColor(blue_circle_image, cv2.COLOR_RGB2BGR))
    assert ok
    return encoded.tobytes()
