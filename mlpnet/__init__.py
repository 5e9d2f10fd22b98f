"""
mlpnet package
~~~~~~~~~~~~~~

Multilayer perceptron for MNIST digit recognition.
Contains the network engine, image dataset helpers, the training driver,
model persistence, the command-line interface and the API server.
"""

__version__ = "1.0.0"
