"""
network.py
~~~~~~~~~~

Fully-connected feedforward network: the layer stack and the forward pass.

A network with ``sizes = [784, 30, 10]`` has two weight layers. Layer ``i``
owns a weight matrix of shape ``(sizes[i+1], sizes[i])`` and a bias column of
shape ``(sizes[i+1], 1)``; the first entry of ``sizes`` is the input feature
count and does not carry weights of its own.

Vectors are column vectors internally. Callers may pass 1-D arrays or lists;
``forward`` normalises them and returns 1-D outputs.
"""

import copy
import logging
from dataclasses import dataclass, field
from numbers import Integral
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from digitnet.exceptions import DimensionMismatch, InvalidArchitecture

logger = logging.getLogger(__name__)


# ============================================================================
# ACTIVATIONS
# ============================================================================

@dataclass(frozen=True)
class Activation:
    """Elementwise nonlinearity ``S`` together with its derivative ``S'``."""

    name: str
    function: Callable[[np.ndarray], np.ndarray]
    derivative: Callable[[np.ndarray], np.ndarray]


def sigmoid(z: np.ndarray) -> np.ndarray:
    """The logistic function, 1 / (1 + e^-z)."""
    # Same value as 1/(1+exp(-z)) without overflow for large negative z
    return 0.5 * (1.0 + np.tanh(0.5 * z))


def sigmoid_prime(z: np.ndarray) -> np.ndarray:
    """Derivative of the sigmoid function."""
    s = sigmoid(z)
    return s * (1.0 - s)


def tanh_prime(z: np.ndarray) -> np.ndarray:
    return 1.0 - np.tanh(z) ** 2


def relu(z: np.ndarray) -> np.ndarray:
    return np.maximum(0.0, z)


def relu_prime(z: np.ndarray) -> np.ndarray:
    return (z > 0).astype(float)


ACTIVATIONS: Dict[str, Activation] = {
    'sigmoid': Activation('sigmoid', sigmoid, sigmoid_prime),
    'tanh': Activation('tanh', np.tanh, tanh_prime),
    'relu': Activation('relu', relu, relu_prime),
}

DEFAULT_ACTIVATION = 'sigmoid'


def get_activation(activation: Any) -> Activation:
    """
    Resolve an activation name (or pass an ``Activation`` through).

    Raises:
        InvalidArchitecture: If the name is not registered
    """
    if isinstance(activation, Activation):
        return activation
    try:
        return ACTIVATIONS[activation]
    except (KeyError, TypeError):
        raise InvalidArchitecture(
            f"Unknown activation {activation!r}; "
            f"expected one of {sorted(ACTIVATIONS)}"
        ) from None


# ============================================================================
# DATA MODEL
# ============================================================================

class Sample(NamedTuple):
    """A labelled example: input vector and one-hot target (or None)."""

    input: Any
    target: Any = None


@dataclass
class ActivationCache:
    """
    Intermediate values of one forward pass, consumed by backpropagation.

    ``zs[i]`` is the pre-activation of weight layer ``i``; ``activations[0]``
    is the input and ``activations[i+1]`` the post-activation of layer ``i``.
    """

    zs: List[np.ndarray] = field(default_factory=list)
    activations: List[np.ndarray] = field(default_factory=list)


def validate_sizes(sizes: Any) -> List[int]:
    """
    Check an architecture descriptor and return it as a list of ints.

    Raises:
        InvalidArchitecture: If there are fewer than two layers or any
            layer width is not a positive integer
    """
    if isinstance(sizes, (str, bytes)) or not isinstance(
            sizes, (Sequence, np.ndarray)):
        raise InvalidArchitecture(
            f"Architecture must be a sequence of layer sizes, got {sizes!r}"
        )
    if len(sizes) < 2:
        raise InvalidArchitecture(
            f"Architecture needs at least 2 layers, got {len(sizes)}"
        )
    for size in sizes:
        if isinstance(size, bool) or not isinstance(size, Integral) \
                or size < 1:
            raise InvalidArchitecture(
                f"Layer sizes must be positive integers, got {list(sizes)}"
            )
    return [int(size) for size in sizes]


class Network:
    """
    Ordered stack of fully-connected layers sharing one activation.

    Weights are drawn from a standard normal distribution scaled by
    ``1/sqrt(n_in)`` so that a wide input layer does not saturate the first
    sigmoid; biases are drawn from a standard normal distribution.
    """

    def __init__(
        self,
        sizes: Sequence[int],
        activation: Any = DEFAULT_ACTIVATION,
        rng: Optional[np.random.Generator] = None
    ):
        """
        Allocate a network with randomly initialised parameters.

        Args:
            sizes: Layer widths, input first, e.g. ``[784, 30, 10]``
            activation: Activation name (``sigmoid``, ``tanh``, ``relu``)
            rng: Random generator used for initialisation

        Raises:
            InvalidArchitecture: On a malformed ``sizes`` or activation
        """
        self.sizes = validate_sizes(sizes)
        self.num_layers = len(self.sizes)
        self.activation = get_activation(activation)

        if rng is None:
            rng = np.random.default_rng()
        self.biases = [rng.standard_normal((y, 1)) for y in self.sizes[1:]]
        self.weights = [
            rng.standard_normal((y, x)) / np.sqrt(x)
            for x, y in zip(self.sizes[:-1], self.sizes[1:])
        ]

    @classmethod
    def from_parameters(
        cls,
        sizes: Sequence[int],
        weights: List[np.ndarray],
        biases: List[np.ndarray],
        activation: Any = DEFAULT_ACTIVATION
    ) -> 'Network':
        """
        Build a network around existing parameter arrays.

        The arrays are adopted as-is; callers are expected to have checked
        their shapes (see ``model_codec.import_model``).
        """
        net = cls.__new__(cls)
        net.sizes = validate_sizes(sizes)
        net.num_layers = len(net.sizes)
        net.activation = get_activation(activation)
        net.weights = list(weights)
        net.biases = list(biases)
        return net

    @property
    def input_size(self) -> int:
        return self.sizes[0]

    @property
    def num_classes(self) -> int:
        return self.sizes[-1]

    def feedforward(self, a: np.ndarray) -> np.ndarray:
        """Return the output column for the input column ``a``."""
        for b, w in zip(self.biases, self.weights):
            a = self.activation.function(np.dot(w, a) + b)
        return a

    def copy(self) -> 'Network':
        """Return a deep, independent copy of this network."""
        return copy.deepcopy(self)

    def __repr__(self) -> str:
        return f"Network(sizes={self.sizes}, activation='{self.activation.name}')"


def construct(
    sizes: Sequence[int],
    activation: Any = DEFAULT_ACTIVATION,
    rng: Optional[np.random.Generator] = None
) -> Network:
    """
    Create a freshly initialised network from an architecture descriptor.

    Example:
        >>> net = construct([784, 30, 10])
        >>> [w.shape for w in net.weights]
        [(30, 784), (10, 30)]
    """
    net = Network(sizes, activation=activation, rng=rng)
    logger.debug(f"Constructed network {net.sizes} ({net.activation.name})")
    return net


# ============================================================================
# FORWARD PASS
# ============================================================================

def as_column(x: Any, size: int, what: str = 'input') -> np.ndarray:
    """
    Convert a vector to a float column of shape ``(size, 1)``.

    Accepts 1-D sequences and ``(size, 1)`` arrays.

    Raises:
        DimensionMismatch: If ``x`` is not a vector of ``size`` values
    """
    try:
        arr = np.asarray(x, dtype=float)
    except (TypeError, ValueError) as e:
        raise DimensionMismatch(f"{what} is not a numeric vector: {e}") from e

    if arr.ndim == 2 and arr.shape[1] == 1:
        arr = arr[:, 0]
    if arr.ndim != 1:
        raise DimensionMismatch(
            f"{what} must be a vector, got array of shape {arr.shape}"
        )
    if arr.shape[0] != size:
        raise DimensionMismatch(
            f"{what} has length {arr.shape[0]}, expected {size}"
        )
    return arr.reshape(size, 1)


def forward(network: Network, x: Any) -> Tuple[np.ndarray, ActivationCache]:
    """
    Propagate ``x`` through the network.

    Args:
        network: Network to evaluate (not modified)
        x: Input vector with ``network.input_size`` values

    Returns:
        tuple: (output as a 1-D array, ActivationCache of the pass)

    Raises:
        DimensionMismatch: If ``x`` has the wrong length
    """
    activation = as_column(x, network.input_size)
    cache = ActivationCache(activations=[activation])

    for b, w in zip(network.biases, network.weights):
        z = np.dot(w, activation) + b
        activation = network.activation.function(z)
        cache.zs.append(z)
        cache.activations.append(activation)

    return activation.ravel().copy(), cache
