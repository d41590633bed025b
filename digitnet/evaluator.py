"""
evaluator.py
~~~~~~~~~~~~

Classification accuracy of a network against labelled samples.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable

import numpy as np

from digitnet.exceptions import DimensionMismatch, InvalidInput
from digitnet.network import Network, as_column

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EvaluationResult:
    """Counts of correct and incorrect predictions."""

    correct: int
    incorrect: int

    @property
    def total(self) -> int:
        return self.correct + self.incorrect

    @property
    def accuracy(self) -> float:
        return self.correct / self.total

    def to_dict(self) -> Dict[str, Any]:
        return {
            'correct': self.correct,
            'incorrect': self.incorrect,
            'total': self.total,
            'accuracy': self.accuracy
        }


def target_class(target: Any, num_classes: int) -> int:
    """
    Return the class index encoded by a target.

    Targets are normally one-hot vectors; a plain integer label is accepted
    as well.

    Raises:
        DimensionMismatch: If the target does not fit ``num_classes``
    """
    if np.ndim(target) == 0:
        label = int(target)
        if not 0 <= label < num_classes:
            raise DimensionMismatch(
                f"label {label} is outside [0, {num_classes})"
            )
        return label
    return int(np.argmax(as_column(target, num_classes, 'target')))


def evaluate(network: Network, samples: Iterable) -> EvaluationResult:
    """
    Score ``network`` on labelled samples.

    The predicted class is the index of the largest output component (the
    lowest index wins a tie). The network is not modified.

    Args:
        network: Network to evaluate
        samples: Sequence of (input, target) pairs

    Returns:
        EvaluationResult with correct/incorrect counts and accuracy

    Raises:
        InvalidInput: If ``samples`` is empty
        DimensionMismatch: If an input or target has the wrong length
    """
    samples = list(samples)
    if not samples:
        raise InvalidInput("Cannot evaluate on an empty sample set")

    correct = 0
    for x, y in samples:
        a = network.feedforward(as_column(x, network.input_size))
        if int(np.argmax(a)) == target_class(y, network.num_classes):
            correct += 1

    result = EvaluationResult(correct=correct, incorrect=len(samples) - correct)
    logger.debug(
        f"Evaluated {result.total} samples: {result.correct} correct "
        f"({result.accuracy:.2%})"
    )
    return result
