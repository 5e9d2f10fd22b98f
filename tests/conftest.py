"""
conftest.py
~~~~~~~~~~~

Shared fixtures: tiny networks and directories of labelled PNG digits.
"""

import os
import sys
import zlib

import numpy as np
import pytest
from PIL import Image

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from mlpnet.network import Layer, Network, Neuron


def write_image(path, pixels=None, size=(28, 28)):
    """Write a grayscale PNG; ``pixels`` is a (height, width) uint8 array."""
    if pixels is None:
        rng = np.random.default_rng(zlib.crc32(str(path).encode()))
        pixels = rng.integers(0, 256, size=(size[1], size[0]), dtype=np.uint8)
    Image.fromarray(np.asarray(pixels, dtype=np.uint8)).save(str(path))
    return str(path)


@pytest.fixture
def image_dirs(tmp_path):
    """
    Create train/ and test/ directories of 28x28 digits.

    train/ holds six images (labels 0-2, two each); test/ holds four
    (labels 0, 0, 1, 2).
    """
    train_dir = tmp_path / "train"
    test_dir = tmp_path / "test"
    train_dir.mkdir()
    test_dir.mkdir()

    for label in range(3):
        for index in range(2):
            write_image(train_dir / f"{label}_{index:04d}.png")

    for index, label in enumerate([0, 0, 1, 2]):
        write_image(test_dir / f"{label}_{index:04d}.png")

    return str(train_dir), str(test_dir)


@pytest.fixture
def small_network():
    """A seeded [4, 3, 2] network."""
    return Network([4, 3, 2], rng=1)


@pytest.fixture
def digit_network():
    """A seeded network that accepts 28x28 images."""
    return Network([784, 8, 10], rng=0)


@pytest.fixture
def constant_network():
    """A [784, 10] network that always predicts class 0."""
    neurons = [Neuron(np.zeros(784), bias=1.0 if i == 0 else 0.0) for i in range(10)]
    return Network.from_layers([Layer(neurons)])
