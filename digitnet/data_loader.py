"""
data_loader.py
~~~~~~~~~~~~~~

Loads labelled digit images from CSV files.

The expected layout is the one of the common ``mnist_train.csv`` /
``mnist_test.csv`` exports: a header line, then one image per line as
comma-separated integers, label first, followed by the pixel intensities
in [0, 255]::

    label,1x1,1x2,...,28x28
    5,0,0,...,0

Each row becomes a ``Sample`` whose input is a ``(n, 1)`` column of pixels
scaled to [0, 1] and whose target is a one-hot ``(num_classes, 1)`` column.
"""

import logging
from typing import Iterable, List, Optional, Tuple

import numpy as np

from digitnet.exceptions import InputFormatError
from digitnet.network import Sample

logger = logging.getLogger(__name__)

MAX_INTENSITY = 255


def vectorized_result(label: int, num_classes: int = 10) -> np.ndarray:
    """Return a one-hot column with a 1.0 at position ``label``."""
    e = np.zeros((num_classes, 1))
    e[label] = 1.0
    return e


def parse_row(
    line: str,
    line_number: int,
    num_classes: int,
    expected_fields: Optional[int]
) -> Tuple[int, np.ndarray]:
    """
    Parse one data row into (label, pixel column).

    Raises:
        InputFormatError: If the row is malformed
    """
    fields = line.split(',')
    if expected_fields is not None and len(fields) != expected_fields:
        raise InputFormatError(
            f"line {line_number}: expected {expected_fields} fields, "
            f"got {len(fields)}"
        )
    if len(fields) < 2:
        raise InputFormatError(
            f"line {line_number}: a row needs a label and at least one pixel"
        )

    try:
        values = [int(value) for value in fields]
    except ValueError as e:
        raise InputFormatError(f"line {line_number}: {e}") from e

    label, pixels = values[0], np.array(values[1:], dtype=float)
    if not 0 <= label < num_classes:
        raise InputFormatError(
            f"line {line_number}: label {label} outside [0, {num_classes})"
        )
    if pixels.min() < 0 or pixels.max() > MAX_INTENSITY:
        raise InputFormatError(
            f"line {line_number}: pixel values must be within "
            f"[0, {MAX_INTENSITY}]"
        )
    return label, (pixels / MAX_INTENSITY).reshape(-1, 1)


def parse_csv_lines(
    lines: Iterable[str],
    num_classes: int = 10,
    input_size: Optional[int] = None
) -> List[Sample]:
    """
    Parse CSV lines (header included) into samples.

    Args:
        lines: Lines of the file; the first one is the header and is skipped
        num_classes: Number of classes, i.e. the one-hot vector length
        input_size: Required pixel count per row; when omitted, every row
            must match the first data row

    Returns:
        list: Samples in file order

    Raises:
        InputFormatError: On the first malformed row
    """
    expected_fields = input_size + 1 if input_size is not None else None
    samples = []

    for line_number, line in enumerate(lines, start=1):
        if line_number == 1:
            continue
        line = line.strip()
        if not line:
            continue
        label, pixels = parse_row(line, line_number, num_classes,
                                  expected_fields)
        if expected_fields is None:
            expected_fields = pixels.shape[0] + 1
        samples.append(Sample(pixels, vectorized_result(label, num_classes)))

    if not samples:
        raise InputFormatError("no data rows found")
    return samples


def load_csv(
    path: str,
    num_classes: int = 10,
    input_size: Optional[int] = None
) -> List[Sample]:
    """
    Load a labelled CSV dataset.

    Example:
        >>> training_data = load_csv('data/mnist_train.csv', input_size=784)
        >>> x, y = training_data[0]
        >>> x.shape, y.shape
        ((784, 1), (10, 1))

    Raises:
        InputFormatError: If the file is malformed
        OSError: If the file cannot be read
    """
    logger.info(f"Loading dataset from {path}")
    with open(path, 'r', encoding='utf-8') as f:
        samples = parse_csv_lines(f, num_classes, input_size)
    logger.info(f"Loaded {len(samples)} samples from {path}")
    return samples


def load_data_wrapper(
    train_path: str,
    test_path: Optional[str] = None,
    num_classes: int = 10,
    input_size: Optional[int] = None
) -> Tuple[List[Sample], Optional[List[Sample]]]:
    """
    Load the training set and, if given, the held-out test set.

    When ``input_size`` is omitted the test set is required to have the
    same row width as the training set.
    """
    training_data = load_csv(train_path, num_classes, input_size)
    test_data = None
    if test_path:
        width = input_size or training_data[0].input.shape[0]
        test_data = load_csv(test_path, num_classes, width)
    return training_data, test_data
