"""
exceptions.py
~~~~~~~~~~~~~

Error types raised by the network engine and its collaborators.

Every error is also a ``ValueError``: each one describes bad caller input
(a malformed architecture, mismatched vector, bad hyperparameter or corrupt
snapshot), never a transient fault, so nothing here is retried.
"""


class DigitNetError(Exception):
    """Base class for all errors raised by digitnet."""


class InvalidArchitecture(DigitNetError, ValueError):
    """Layer-size sequence or activation name is malformed."""


class DimensionMismatch(DigitNetError, ValueError):
    """Input or target vector length disagrees with the network shape."""


class InvalidHyperparameter(DigitNetError, ValueError):
    """Epoch count, batch size, learning rate or policy is invalid."""


class InvalidInput(DigitNetError, ValueError):
    """An empty sample set was passed to training or evaluation."""


class CorruptModel(DigitNetError, ValueError):
    """A model snapshot failed structural validation."""


class InputFormatError(DigitNetError, ValueError):
    """A dataset file does not follow the expected tabular format."""
