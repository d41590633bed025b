"""
model_codec.py
~~~~~~~~~~~~~~

Versioned, self-describing snapshots of a network.

A snapshot is a plain JSON-compatible dictionary::

    {
        "format": "digitnet.network",
        "version": 1,
        "activation": "sigmoid",
        "sizes": [784, 30, 10],
        "layers": [
            {"weights": [[...], ...], "biases": [...]},
            ...
        ]
    }

``weights`` of layer ``i`` is a list of ``sizes[i+1]`` rows of ``sizes[i]``
floats and ``biases`` a flat list of ``sizes[i+1]`` floats. Python's ``json``
module writes floats with shortest-repr precision, so a JSON round trip
reproduces every weight bit for bit.
"""

import json
import logging
import os
from typing import Any, Dict, List

import numpy as np

from digitnet.exceptions import CorruptModel, DigitNetError
from digitnet.network import Network, get_activation, validate_sizes

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT = 'digitnet.network'
SNAPSHOT_VERSION = 1
SUPPORTED_VERSIONS = (1,)


def export_model(network: Network) -> Dict[str, Any]:
    """
    Produce a snapshot of ``network``.

    The snapshot holds plain Python lists, so it stays unchanged when the
    network is trained further.
    """
    return {
        'format': SNAPSHOT_FORMAT,
        'version': SNAPSHOT_VERSION,
        'activation': network.activation.name,
        'sizes': list(network.sizes),
        'layers': [
            {
                'weights': w.tolist(),
                'biases': b.ravel().tolist()
            }
            for w, b in zip(network.weights, network.biases)
        ]
    }


def import_model(snapshot: Any) -> Network:
    """
    Rebuild a network from a snapshot.

    Every layer is validated against the architecture descriptor before the
    network is created, so a failed import leaves nothing behind.

    Raises:
        CorruptModel: If the snapshot is structurally invalid
    """
    if not isinstance(snapshot, dict):
        raise CorruptModel(
            f"Snapshot must be a mapping, got {type(snapshot).__name__}"
        )

    fmt = snapshot.get('format')
    if fmt != SNAPSHOT_FORMAT:
        raise CorruptModel(f"Unknown snapshot format {fmt!r}")

    version = snapshot.get('version')
    if version not in SUPPORTED_VERSIONS:
        raise CorruptModel(f"Unsupported snapshot version {version!r}")

    try:
        sizes = validate_sizes(snapshot.get('sizes'))
        activation = get_activation(snapshot.get('activation', 'sigmoid'))
    except DigitNetError as e:
        raise CorruptModel(f"Invalid architecture in snapshot: {e}") from e

    layers = snapshot.get('layers')
    if not isinstance(layers, list) or len(layers) != len(sizes) - 1:
        raise CorruptModel(
            f"Architecture {sizes} needs {len(sizes) - 1} layers, "
            f"snapshot has {len(layers) if isinstance(layers, list) else 0}"
        )

    weights: List[np.ndarray] = []
    biases: List[np.ndarray] = []
    for i, layer in enumerate(layers):
        n_in, n_out = sizes[i], sizes[i + 1]
        if not isinstance(layer, dict):
            raise CorruptModel(f"Layer {i} is not a mapping")
        w = _to_array(layer.get('weights'), f"layer {i} weights", ndim=2)
        b = _to_array(layer.get('biases'), f"layer {i} biases", ndim=1)
        if w.shape != (n_out, n_in):
            raise CorruptModel(
                f"Layer {i} weights have shape {w.shape}, "
                f"expected {(n_out, n_in)}"
            )
        if b.shape != (n_out,):
            raise CorruptModel(
                f"Layer {i} biases have shape {b.shape}, expected {(n_out,)}"
            )
        weights.append(w)
        biases.append(b.reshape(n_out, 1))

    return Network.from_parameters(sizes, weights, biases, activation)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_array(values: Any, what: str, ndim: int) -> np.ndarray:
    """
    Convert a JSON list (``ndim`` 1) or list of rows (``ndim`` 2) of plain
    numbers to a float array.
    """
    if not isinstance(values, list):
        raise CorruptModel(f"{what} missing or not a list")
    rows = values if ndim == 2 else [values]
    for row in rows:
        if not isinstance(row, list) or not all(_is_number(v) for v in row):
            raise CorruptModel(f"{what} must be lists of numbers")
    try:
        arr = np.array(values, dtype=float)
    except (TypeError, ValueError, OverflowError) as e:
        raise CorruptModel(f"{what} are not a numeric array: {e}") from e
    if not np.all(np.isfinite(arr)):
        raise CorruptModel(f"{what} contain non-finite values")
    return arr


def dumps(network: Network) -> str:
    """Serialize ``network`` to JSON text."""
    return json.dumps(export_model(network))


def loads(text: str) -> Network:
    """
    Rebuild a network from JSON text.

    Raises:
        CorruptModel: If the text is not valid JSON or not a valid snapshot
    """
    try:
        snapshot = json.loads(text)
    except (TypeError, ValueError) as e:
        raise CorruptModel(f"Snapshot is not valid JSON: {e}") from e
    return import_model(snapshot)


def save_model(network: Network, path: str) -> None:
    """Write ``network`` as a JSON snapshot file."""
    directory = os.path.dirname(path)
    if directory and not os.path.exists(directory):
        os.makedirs(directory)
    with open(path, 'w', encoding='utf-8') as f:
        f.write(dumps(network))
    logger.info(f"Saved model {network.sizes} to {path}")


def load_model(path: str) -> Network:
    """
    Read a JSON snapshot file.

    Raises:
        CorruptModel: If the file content is not a valid snapshot
    """
    with open(path, 'r', encoding='utf-8') as f:
        network = loads(f.read())
    logger.info(f"Loaded model {network.sizes} from {path}")
    return network
