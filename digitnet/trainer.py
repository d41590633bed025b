"""
trainer.py
~~~~~~~~~~

Mini-batch stochastic gradient descent with backpropagation.

The cost is the quadratic cost ``C = 0.5 * ||a - y||^2`` per sample, so the
output error is ``(a - y) * S'(z)``. Per mini-batch the per-sample gradients
are accumulated and then applied in a single update:

- ``gradient_policy='sum'`` (default): ``w -= eta * sum(nabla_w)``
- ``gradient_policy='mean'``: ``w -= (eta / len(batch)) * sum(nabla_w)``

Sample order: with ``shuffle=True`` the order is permuted at the start of
every epoch by a ``numpy.random.default_rng(seed)`` generator created once per
``train`` call, so a fixed seed gives a reproducible run. With
``shuffle=False`` the caller's order is used for every epoch.
"""

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from numbers import Integral, Real
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from digitnet.evaluator import evaluate, target_class
from digitnet.exceptions import InvalidHyperparameter, InvalidInput
from digitnet.network import Network, as_column, forward

logger = logging.getLogger(__name__)

GRADIENT_POLICIES = ('sum', 'mean')

STATUS_COMPLETED = 'completed'
STATUS_CANCELLED = 'cancelled'


@dataclass
class TrainingConfig:
    """Hyperparameters of one training run."""

    epochs: int
    mini_batch_size: int
    learning_rate: float
    shuffle: bool = True
    seed: Optional[int] = None
    evaluation_data: Optional[Sequence] = None
    gradient_policy: str = 'sum'
    workers: int = 1
    monitor_training_cost: bool = True

    def validate(self, sample_count: int) -> None:
        """
        Check the hyperparameters against the size of the training set.

        Raises:
            InvalidHyperparameter: If any value is out of range
        """
        if not _is_int(self.epochs) or self.epochs < 1:
            raise InvalidHyperparameter(
                f"epochs must be a positive integer, got {self.epochs!r}"
            )
        if not _is_int(self.mini_batch_size) or self.mini_batch_size < 1:
            raise InvalidHyperparameter(
                "mini_batch_size must be a positive integer, "
                f"got {self.mini_batch_size!r}"
            )
        if self.mini_batch_size > sample_count:
            raise InvalidHyperparameter(
                f"mini_batch_size {self.mini_batch_size} exceeds the "
                f"{sample_count} available samples"
            )
        if isinstance(self.learning_rate, bool) \
                or not isinstance(self.learning_rate, Real) \
                or not math.isfinite(self.learning_rate) \
                or self.learning_rate <= 0:
            raise InvalidHyperparameter(
                "learning_rate must be a positive number, "
                f"got {self.learning_rate!r}"
            )
        if self.gradient_policy not in GRADIENT_POLICIES:
            raise InvalidHyperparameter(
                f"gradient_policy must be one of {GRADIENT_POLICIES}, "
                f"got {self.gradient_policy!r}"
            )
        if not _is_int(self.workers) or self.workers < 1:
            raise InvalidHyperparameter(
                f"workers must be a positive integer, got {self.workers!r}"
            )


@dataclass
class EpochReport:
    """Progress observed at the end of one epoch."""

    epoch: int
    total_epochs: int
    elapsed_time: float
    cost: Optional[float] = None
    correct: Optional[int] = None
    total: Optional[int] = None
    accuracy: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TrainingResult:
    """Outcome of a ``train`` call."""

    status: str
    epochs_completed: int = 0
    batches_completed: int = 0
    history: List[EpochReport] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return self.status == STATUS_CANCELLED


def _is_int(value: Any) -> bool:
    return isinstance(value, Integral) and not isinstance(value, bool)


# ============================================================================
# GRADIENTS
# ============================================================================

def backprop(
    network: Network,
    x: Any,
    y: Any
) -> Tuple[List[np.ndarray], List[np.ndarray]]:
    """
    Gradient of the quadratic cost for a single sample.

    Args:
        network: Network whose parameters are differentiated (not modified)
        x: Input vector
        y: One-hot target vector

    Returns:
        tuple: (nabla_b, nabla_w), layer-by-layer lists shaped like
        ``network.biases`` and ``network.weights``
    """
    y = as_column(y, network.num_classes, 'target')
    _, cache = forward(network, x)
    derivative = network.activation.derivative

    nabla_b: List[np.ndarray] = [None] * len(network.biases)  # type: ignore
    nabla_w: List[np.ndarray] = [None] * len(network.weights)  # type: ignore

    # Output layer
    delta = (cache.activations[-1] - y) * derivative(cache.zs[-1])
    nabla_b[-1] = delta
    nabla_w[-1] = np.dot(delta, cache.activations[-2].transpose())

    # l = 2 is the last hidden layer, l = 3 the one before it, and so on
    for l in range(2, network.num_layers):
        z = cache.zs[-l]
        delta = np.dot(network.weights[-l + 1].transpose(), delta) * derivative(z)
        nabla_b[-l] = delta
        nabla_w[-l] = np.dot(delta, cache.activations[-l - 1].transpose())

    return nabla_b, nabla_w


def update_mini_batch(
    network: Network,
    mini_batch: Sequence[Tuple[np.ndarray, np.ndarray]],
    learning_rate: float,
    gradient_policy: str = 'sum',
    executor: Optional[ThreadPoolExecutor] = None
) -> None:
    """
    Apply one gradient-descent step using every sample in ``mini_batch``.

    With an ``executor`` the per-sample gradients are computed concurrently.
    They are still accumulated in sample order, and the parameters are only
    updated once all of them have been summed.
    """
    nabla_b = [np.zeros(b.shape) for b in network.biases]
    nabla_w = [np.zeros(w.shape) for w in network.weights]

    if executor is not None:
        gradients: Iterable = executor.map(
            lambda sample: backprop(network, sample[0], sample[1]),
            mini_batch
        )
    else:
        gradients = (backprop(network, x, y) for x, y in mini_batch)

    for delta_nabla_b, delta_nabla_w in gradients:
        nabla_b = [nb + dnb for nb, dnb in zip(nabla_b, delta_nabla_b)]
        nabla_w = [nw + dnw for nw, dnw in zip(nabla_w, delta_nabla_w)]

    if gradient_policy == 'mean':
        step = learning_rate / len(mini_batch)
    else:
        step = learning_rate

    network.weights = [w - step * nw for w, nw in zip(network.weights, nabla_w)]
    network.biases = [b - step * nb for b, nb in zip(network.biases, nabla_b)]


def total_cost(network: Network, samples: Iterable) -> float:
    """Mean quadratic cost ``0.5 * ||a - y||^2`` over ``samples``."""
    costs = []
    for x, y in samples:
        a = network.feedforward(as_column(x, network.input_size))
        y = as_column(y, network.num_classes, 'target')
        costs.append(0.5 * float(np.linalg.norm(a - y)) ** 2)
    if not costs:
        raise InvalidInput("Cannot compute cost of an empty sample set")
    return float(np.mean(costs))


# ============================================================================
# TRAINING LOOP
# ============================================================================

def train(
    network: Network,
    samples: Iterable,
    config: TrainingConfig,
    callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    yield_func: Optional[Callable[[], None]] = None,
    cancel_check: Optional[Callable[[], bool]] = None
) -> TrainingResult:
    """
    Train ``network`` in place with mini-batch gradient descent.

    Args:
        network: Network to train (mutated in place)
        samples: Sequence of (input, one-hot target) pairs
        config: Training hyperparameters
        callback: Called after every epoch with the epoch report as a dict
        yield_func: Called after every mini-batch, lets cooperative
            schedulers (gevent) run other tasks during training
        cancel_check: Evaluated before every mini-batch; returning True stops
            the run, keeping the updates of all completed mini-batches

    Returns:
        TrainingResult with status ``completed`` or ``cancelled``

    Raises:
        InvalidInput: If ``samples`` or the evaluation set is empty
        InvalidHyperparameter: If ``config`` is invalid
        DimensionMismatch: If a sample does not fit the network
    """
    samples = list(samples)
    if not samples:
        raise InvalidInput("Cannot train on an empty sample set")
    config.validate(len(samples))

    # Validated up front so no update happens before a bad sample is found
    training_data = [
        (as_column(x, network.input_size),
         as_column(y, network.num_classes, 'target'))
        for x, y in samples
    ]

    evaluation_data = None
    if config.evaluation_data is not None:
        evaluation_data = list(config.evaluation_data)
        if not evaluation_data:
            raise InvalidInput("evaluation_data is empty")
        for x, y in evaluation_data:
            as_column(x, network.input_size)
            target_class(y, network.num_classes)

    n = len(training_data)
    rng = np.random.default_rng(config.seed)
    order = np.arange(n)
    result = TrainingResult(status=STATUS_COMPLETED)

    logger.info(
        f"Training {network} on {n} samples: epochs={config.epochs}, "
        f"batch_size={config.mini_batch_size}, lr={config.learning_rate}, "
        f"policy={config.gradient_policy}, shuffle={config.shuffle}, "
        f"workers={config.workers}"
    )

    executor = None
    if config.workers > 1:
        executor = ThreadPoolExecutor(max_workers=config.workers)

    try:
        for epoch in range(1, config.epochs + 1):
            start_time = time.time()
            if config.shuffle:
                order = rng.permutation(n)

            for k in range(0, n, config.mini_batch_size):
                if cancel_check is not None and cancel_check():
                    result.status = STATUS_CANCELLED
                    logger.info(
                        f"Training cancelled in epoch {epoch} after "
                        f"{result.batches_completed} mini-batches"
                    )
                    return result

                mini_batch = [
                    training_data[i]
                    for i in order[k:k + config.mini_batch_size]
                ]
                update_mini_batch(
                    network,
                    mini_batch,
                    config.learning_rate,
                    config.gradient_policy,
                    executor
                )
                result.batches_completed += 1

                if yield_func is not None:
                    yield_func()

            report = EpochReport(
                epoch=epoch,
                total_epochs=config.epochs,
                elapsed_time=time.time() - start_time
            )
            if config.monitor_training_cost:
                report.cost = total_cost(network, training_data)
            if evaluation_data is not None:
                scores = evaluate(network, evaluation_data)
                report.correct = scores.correct
                report.total = scores.total
                report.accuracy = scores.accuracy

            result.epochs_completed = epoch
            result.history.append(report)
            _log_epoch(report)

            if callback is not None:
                callback(report.to_dict())
    finally:
        if executor is not None:
            executor.shutdown(wait=True)

    return result


def _log_epoch(report: EpochReport) -> None:
    message = f"Epoch {report.epoch}/{report.total_epochs}"
    if report.cost is not None:
        message += f": cost {report.cost:.6f}"
    if report.accuracy is not None:
        message += (
            f", scored {report.correct} / {report.total} "
            f"({report.accuracy:.2%})"
        )
    logger.info(f"{message} [{report.elapsed_time:.2f}s]")
