"""
network.py
~~~~~~~~~~

A feed-forward neural network built from individual ReLU neurons.

Each neuron owns its weight vector and bias, and caches the activation and
error signal of the most recent forward and backward pass.  Training is
plain stochastic gradient descent on one sample at a time: call
``forward`` on a sample, then ``train`` with the same inputs and the
expected outputs (``learn`` does both).  All arithmetic happens in single
precision (``numpy.float32``).

A network instance is not safe to share between threads: ``forward`` and
``train`` communicate through the per-neuron ``output`` and ``delta`` fields.
"""

import math
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

import numpy as np

from .errors import DimensionMismatch

RandomSource = Union[None, int, np.random.Generator]


def relu(x: float) -> np.float32:
    """Rectified linear unit, ``max(0, x)``."""
    return np.float32(x) if x > 0 else np.float32(0.0)


def relu_derivative(x: float) -> np.float32:
    """Derivative of ``relu`` evaluated at an activation value."""
    return np.float32(1.0) if x > 0 else np.float32(0.0)


def _as_vector(values: Iterable[float], expected: int, what: str) -> np.ndarray:
    """Convert ``values`` to a flat float32 vector of exactly ``expected`` items."""
    vector = np.asarray(values, dtype=np.float32).reshape(-1)
    if vector.shape[0] != expected:
        raise DimensionMismatch(what, expected, vector.shape[0])
    return vector


class Neuron:
    """A single ReLU unit."""

    def __init__(
        self,
        weights: Sequence[float],
        bias: float = 0.0,
        output: float = 0.0,
        delta: float = 0.0
    ):
        self.weights = np.array(weights, dtype=np.float32).reshape(-1)
        self.bias = np.float32(bias)
        self.output = np.float32(output)
        self.delta = np.float32(delta)

    @property
    def input_size(self) -> int:
        return self.weights.shape[0]

    def activate(self, activations: np.ndarray) -> np.float32:
        """Compute, cache and return the activation for ``activations``."""
        total = np.float32(np.dot(self.weights, activations)) + self.bias
        self.output = relu(total)
        return self.output

    def __repr__(self) -> str:
        return f"Neuron(inputs={self.input_size}, bias={float(self.bias):g})"


class Layer:
    """An ordered group of neurons that read the same input vector."""

    def __init__(self, neurons: Iterable[Neuron]):
        self.neurons: List[Neuron] = list(neurons)
        if not self.neurons:
            raise ValueError("A layer needs at least one neuron")

        widths = {neuron.input_size for neuron in self.neurons}
        if len(widths) != 1:
            raise ValueError(
                f"All neurons in a layer must have the same number of "
                f"weights, got {sorted(widths)}"
            )

    @classmethod
    def random(
        cls,
        input_size: int,
        size: int,
        rng: np.random.Generator
    ) -> 'Layer':
        """
        Create a layer with He-style uniform initialization.

        Weights are drawn from ``uniform(-d, d)`` with
        ``d = sqrt(2 / input_size)``; biases start at zero.
        """
        limit = math.sqrt(2.0 / input_size)
        return cls(
            Neuron(rng.uniform(-limit, limit, size=input_size))
            for _ in range(size)
        )

    @property
    def size(self) -> int:
        return len(self.neurons)

    @property
    def input_size(self) -> int:
        return self.neurons[0].input_size

    @property
    def outputs(self) -> np.ndarray:
        """Activations cached by the last forward pass."""
        return np.array(
            [neuron.output for neuron in self.neurons], dtype=np.float32
        )

    def forward(self, activations: np.ndarray) -> np.ndarray:
        return np.array(
            [neuron.activate(activations) for neuron in self.neurons],
            dtype=np.float32
        )

    def __len__(self) -> int:
        return len(self.neurons)

    def __repr__(self) -> str:
        return f"Layer(size={self.size}, inputs={self.input_size})"


class Network:
    """
    Multilayer perceptron with ReLU activations on every layer.

    Args:
        sizes: Input width followed by the width of each layer, e.g.
            ``[784, 128, 10]`` builds two layers reading 784 inputs.
        rng: Seed or ``numpy.random.Generator`` for weight initialization.

    Raises:
        ValueError: If ``sizes`` has fewer than two entries or contains a
            non-positive width.
    """

    def __init__(self, sizes: Sequence[int], rng: RandomSource = None):
        sizes = list(sizes)
        if len(sizes) < 2:
            raise ValueError(
                f"Network needs an input width and at least one layer, "
                f"got sizes={sizes}"
            )
        for size in sizes:
            if isinstance(size, bool) or not isinstance(size, (int, np.integer)) \
                    or size < 1:
                raise ValueError(
                    f"Layer sizes must be positive integers, got {sizes}"
                )

        generator = np.random.default_rng(rng)
        self.layers: List[Layer] = [
            Layer.random(int(sizes[i - 1]), int(sizes[i]), generator)
            for i in range(1, len(sizes))
        ]

    @classmethod
    def from_layers(cls, layers: Iterable[Layer]) -> 'Network':
        """
        Assemble a network from existing layers.

        Raises:
            ValueError: If there are no layers or a layer's weight count
                does not match the width of the layer before it.
        """
        layers = list(layers)
        if not layers:
            raise ValueError("A network needs at least one layer")

        for index in range(1, len(layers)):
            if layers[index].input_size != layers[index - 1].size:
                raise ValueError(
                    f"Layer {index} expects {layers[index].input_size} "
                    f"inputs but layer {index - 1} has "
                    f"{layers[index - 1].size} neurons"
                )

        network = cls.__new__(cls)
        network.layers = layers
        return network

    @property
    def sizes(self) -> List[int]:
        return [self.input_size] + [layer.size for layer in self.layers]

    @property
    def input_size(self) -> int:
        return self.layers[0].input_size

    @property
    def output_size(self) -> int:
        return self.layers[-1].size

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def forward(self, inputs: Sequence[float]) -> np.ndarray:
        """
        Propagate ``inputs`` through every layer.

        Overwrites the cached ``output`` of every neuron, which the next
        call to ``train`` relies on.

        Returns:
            float32 vector with one activation per output neuron

        Raises:
            DimensionMismatch: If ``inputs`` does not match the input width.
        """
        activations = _as_vector(inputs, self.input_size, "input")
        for layer in self.layers:
            activations = layer.forward(activations)
        return activations

    def predict(self, inputs: Sequence[float]) -> int:
        """Return the index of the strongest output for ``inputs``."""
        return predict_class(self.forward(inputs))

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def train(
        self,
        inputs: Sequence[float],
        targets: Sequence[float],
        learning_rate: float
    ) -> float:
        """
        Backpropagate the error for one sample and apply a gradient step.

        Must be called right after ``forward(inputs)``: the deltas are
        derived from the activations that pass cached in each neuron.

        Args:
            inputs: The sample that was just passed to ``forward``
            targets: Expected output vector
            learning_rate: Step size

        Returns:
            Mean squared error of the cached outputs against ``targets``

        Raises:
            DimensionMismatch: If ``inputs`` or ``targets`` has the wrong length.
        """
        inputs = _as_vector(inputs, self.input_size, "input")
        targets = _as_vector(targets, self.output_size, "target")
        rate = np.float32(learning_rate)

        squared_error = np.float32(0.0)
        for neuron, target in zip(self.layers[-1].neurons, targets):
            error = target - neuron.output
            squared_error += error * error
            neuron.delta = error * relu_derivative(neuron.output)

        # Averaged over the output layer only; hidden deltas are not rescaled.
        mean_squared_error = squared_error / np.float32(len(targets))

        for index in range(len(self.layers) - 2, -1, -1):
            successors = self.layers[index + 1].neurons
            for i, neuron in enumerate(self.layers[index].neurons):
                error = np.float32(0.0)
                for successor in successors:
                    error += successor.weights[i] * successor.delta
                neuron.delta = error * relu_derivative(neuron.output)

        activations = inputs
        for layer in self.layers:
            for neuron in layer.neurons:
                step = rate * neuron.delta
                neuron.weights += step * activations
                neuron.bias += step
            # Outputs from the forward pass, not recomputed after the update
            activations = layer.outputs

        return float(mean_squared_error)

    def learn(
        self,
        inputs: Sequence[float],
        targets: Sequence[float],
        learning_rate: float
    ) -> float:
        """Run ``forward`` then ``train`` on one sample; return its error."""
        self.forward(inputs)
        return self.train(inputs, targets, learning_rate)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Plain-data snapshot of the topology and every parameter."""
        return {
            'layers': [
                {
                    'neurons': [
                        {
                            'weights': neuron.weights.tolist(),
                            'bias': float(neuron.bias),
                            'output': float(neuron.output),
                            'delta': float(neuron.delta)
                        }
                        for neuron in layer.neurons
                    ]
                }
                for layer in self.layers
            ]
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Network':
        """
        Rebuild a network from ``to_dict`` output.

        Raises:
            ValueError: If the structure or the layer widths are inconsistent.
        """
        if not isinstance(data, dict) or not isinstance(data.get('layers'), list):
            raise ValueError("Snapshot must be an object with a 'layers' list")

        layers = []
        for layer_index, layer_data in enumerate(data['layers']):
            if not isinstance(layer_data, dict) \
                    or not isinstance(layer_data.get('neurons'), list):
                raise ValueError(
                    f"Layer {layer_index} must be an object with a "
                    f"'neurons' list"
                )

            neurons = []
            for neuron_data in layer_data['neurons']:
                if not isinstance(neuron_data, dict):
                    raise ValueError(
                        f"Layer {layer_index} contains a non-object neuron"
                    )
                weights = np.asarray(neuron_data['weights'], dtype=np.float32)
                if weights.ndim != 1 or weights.shape[0] == 0:
                    raise ValueError(
                        f"Layer {layer_index} has a neuron with invalid weights"
                    )
                scalars = {
                    'bias': neuron_data['bias'],
                    'output': neuron_data.get('output', 0.0),
                    'delta': neuron_data.get('delta', 0.0)
                }
                for name, value in scalars.items():
                    if np.ndim(value) != 0:
                        raise ValueError(
                            f"Layer {layer_index} has a neuron whose "
                            f"{name} is not a number"
                        )
                neurons.append(Neuron(weights, **scalars))
            layers.append(Layer(neurons))

        return cls.from_layers(layers)

    def __eq__(self, other: object) -> bool:
        """Same topology and bit-identical weights and biases."""
        if not isinstance(other, Network):
            return NotImplemented
        if self.sizes != other.sizes:
            return False
        for layer, other_layer in zip(self.layers, other.layers):
            for neuron, other_neuron in zip(layer.neurons, other_layer.neurons):
                if neuron.bias != other_neuron.bias:
                    return False
                if not np.array_equal(neuron.weights, other_neuron.weights):
                    return False
        return True

    __hash__ = None

    def __repr__(self) -> str:
        return f"Network(sizes={self.sizes})"


def predict_class(outputs: Sequence[float]) -> int:
    """
    Index of the largest value in ``outputs``.

    Ties go to the first maximum. NaN entries never win; if every entry is
    NaN the result is 0.

    Raises:
        ValueError: If ``outputs`` is empty.
    """
    if len(outputs) == 0:
        raise ValueError("Cannot classify an empty output vector")

    best_index = 0
    best_value: Optional[float] = None
    for index, value in enumerate(outputs):
        value = float(value)
        if math.isnan(value):
            continue
        if best_value is None or value > best_value:
            best_index, best_value = index, value
    return best_index


def format_output_bars(outputs: Sequence[float], width: int = 50) -> str:
    """
    Render one text bar per output, e.g. ``Number 3:   0.82 | ####``.

    Each bar has ``int(value * width)`` characters; negative and
    non-finite values draw an empty bar.
    """
    lines = []
    for index, value in enumerate(outputs):
        value = float(value)
        count = int(value * width) if math.isfinite(value) else 0
        bar = '#' * max(count, 0)
        lines.append(f"Number {index}: {value:>6.2f} | {bar}")
    return '\n'.join(lines)
