"""
predictor.py
~~~~~~~~~~~~

Read-only inference over a trained network.
"""

from typing import Any, Iterable, List

import numpy as np

from digitnet.network import Network, forward


def predict(network: Network, inputs: Iterable[Any]) -> List[np.ndarray]:
    """
    Return one output vector per input, in input order.

    Raises:
        DimensionMismatch: If any input has the wrong length
    """
    return [forward(network, x)[0] for x in inputs]


def classify(network: Network, inputs: Iterable[Any]) -> List[int]:
    """Return the predicted class (argmax of the output) for each input."""
    return [int(np.argmax(output)) for output in predict(network, inputs)]
