"""
digitnet package
~~~~~~~~~~~~~~~~

Fully-connected neural network engine for handwritten digit recognition.
Contains the network implementation, backpropagation trainer, evaluation,
model snapshots, data loading, stroke preprocessing and the API server.
"""

__version__ = "1.0.0"
