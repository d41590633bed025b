"""
preprocessing.py
~~~~~~~~~~~~~~~~

Turns freehand drawings into network input vectors.

Pipeline:
1. Rasterize the strokes (polylines in canvas pixel coordinates, origin at
   the top-left corner) onto a square grayscale canvas with matplotlib's
   Agg renderer, softened by a blurred shadow as on the drawing canvas
2. Find the bounding box of the ink and grow it by a fixed padding
3. Crop to the box, squared around its centre
4. Area-average down to the network resolution and flatten

Ink is 1.0 and background 0.0, the same polarity as the MNIST pixels the
network is trained on.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Tuple

import numpy as np
from matplotlib.backends.backend_agg import FigureCanvasAgg
from matplotlib.figure import Figure

from digitnet.exceptions import InvalidInput

logger = logging.getLogger(__name__)

# (left, top, width, height) in canvas pixels
Box = Tuple[int, int, int, int]


@dataclass(frozen=True)
class StrokeStyle:
    """Drawing surface settings used when rasterizing strokes."""

    canvas_size: int = 280
    line_width: float = 10.0
    padding: int = 50
    output_size: int = 28
    stroke_color: str = 'black'
    background_color: str = 'white'
    keep_aspect: bool = True
    # Canvas-style shadow under the pen; 0 disables it
    shadow_blur: float = 5.0


DEFAULT_STYLE = StrokeStyle()


def rasterize_strokes(
    strokes: Sequence[Sequence[Any]],
    style: StrokeStyle = DEFAULT_STYLE
) -> np.ndarray:
    """
    Render strokes to a ``(canvas_size, canvas_size)`` ink image in [0, 1].

    Args:
        strokes: Sequence of strokes, each a sequence of ``(x, y)`` points
        style: Canvas and pen settings

    Raises:
        InvalidInput: If a stroke is not a list of 2-D points
    """
    size = style.canvas_size
    # dpi == size with a 1x1 inch figure gives exactly size x size pixels
    fig = Figure(figsize=(1, 1), dpi=size)
    canvas = FigureCanvasAgg(fig)
    fig.patch.set_facecolor(style.background_color)

    ax = fig.add_axes((0, 0, 1, 1))
    ax.set_xlim(0, size)
    ax.set_ylim(size, 0)
    ax.axis('off')

    linewidth_points = style.line_width * 72.0 / size
    for index, stroke in enumerate(strokes):
        try:
            points = np.asarray(stroke, dtype=float).reshape(-1, 2)
        except (TypeError, ValueError) as e:
            raise InvalidInput(
                f"stroke {index} must be a list of (x, y) points: {e}"
            ) from e
        if len(points) == 0:
            continue
        if len(points) == 1:
            # A single tap draws a dot
            points = np.vstack([points, points + 0.01])
        ax.plot(
            points[:, 0],
            points[:, 1],
            color=style.stroke_color,
            linewidth=linewidth_points,
            solid_capstyle='round',
            solid_joinstyle='round'
        )

    canvas.draw()
    rgba = np.asarray(canvas.buffer_rgba(), dtype=float)
    gray = rgba[..., :3].mean(axis=2) / 255.0
    ink = np.clip(1.0 - gray, 0.0, 1.0)
    if style.shadow_blur > 0:
        # The stroke is drawn over its own blurred shadow
        ink = np.maximum(ink, gaussian_blur(ink, style.shadow_blur / 2.0))
    return ink


def gaussian_blur(image: np.ndarray, sigma: float) -> np.ndarray:
    """
    Separable Gaussian blur with standard deviation ``sigma`` pixels.

    The kernel is cut off at three standard deviations and the image is
    treated as background outside its edges.
    """
    image = np.asarray(image, dtype=float)
    if sigma <= 0:
        return image.copy()

    radius = int(np.ceil(3 * sigma))
    offsets = np.arange(-radius, radius + 1)
    kernel = np.exp(-offsets ** 2 / (2.0 * sigma ** 2))
    kernel /= kernel.sum()

    def convolve(line: np.ndarray) -> np.ndarray:
        return np.convolve(np.pad(line, radius), kernel, mode="valid")

    blurred = np.apply_along_axis(convolve, 0, image)
    return np.apply_along_axis(convolve, 1, blurred)


def bounding_box(
    image: np.ndarray,
    padding: int = 0,
    threshold: float = 0.0
) -> Optional[Box]:
    """
    Smallest box around all pixels brighter than ``threshold``, padded.

    The padded box may extend past the image edges. Returns None for an
    image without ink.
    """
    mask = np.asarray(image) > threshold
    rows = np.flatnonzero(mask.any(axis=1))
    cols = np.flatnonzero(mask.any(axis=0))
    if rows.size == 0:
        return None

    top, bottom = int(rows[0]), int(rows[-1])
    left, right = int(cols[0]), int(cols[-1])
    return (
        left - padding,
        top - padding,
        right - left + 1 + 2 * padding,
        bottom - top + 1 + 2 * padding
    )


def square_box(box: Box) -> Box:
    """Grow the shorter side of ``box`` so it is square around its centre."""
    left, top, width, height = box
    side = max(width, height)
    return (
        left - (side - width) // 2,
        top - (side - height) // 2,
        side,
        side
    )


def crop_to_box(image: np.ndarray, box: Box) -> np.ndarray:
    """Crop ``image`` to ``box``; parts outside the image are background."""
    left, top, width, height = box
    out = np.zeros((height, width))

    src_top, src_left = max(top, 0), max(left, 0)
    src_bottom = min(top + height, image.shape[0])
    src_right = min(left + width, image.shape[1])
    if src_bottom > src_top and src_right > src_left:
        out[src_top - top:src_bottom - top, src_left - left:src_right - left] = \
            image[src_top:src_bottom, src_left:src_right]
    return out


def _area_weights(n_in: int, n_out: int) -> np.ndarray:
    """Resampling matrix averaging the input cells covered by each output."""
    edges = np.linspace(0.0, n_in, n_out + 1)
    weights = np.zeros((n_out, n_in))
    for i in range(n_out):
        lo, hi = edges[i], edges[i + 1]
        for j in range(int(np.floor(lo)), min(int(np.ceil(hi)), n_in)):
            overlap = min(hi, j + 1) - max(lo, j)
            if overlap > 0:
                weights[i, j] = overlap
        weights[i] /= weights[i].sum()
    return weights


def rescale(image: np.ndarray, side: int) -> np.ndarray:
    """Area-average ``image`` to ``side x side`` pixels."""
    image = np.asarray(image, dtype=float)
    row_weights = _area_weights(image.shape[0], side)
    col_weights = _area_weights(image.shape[1], side)
    return row_weights @ image @ col_weights.T


def preprocess_image(
    image: np.ndarray,
    style: StrokeStyle = DEFAULT_STYLE
) -> np.ndarray:
    """
    Crop an ink image to its padded bounding box and flatten it.

    Returns:
        1-D array of ``output_size ** 2`` values in [0, 1]; all zeros when
        the image holds no ink
    """
    image = np.asarray(image, dtype=float)
    if image.ndim != 2:
        raise InvalidInput(f"image must be 2-D, got shape {image.shape}")

    side = style.output_size
    box = bounding_box(image, padding=style.padding)
    if box is None:
        logger.debug("Empty drawing, returning a blank input")
        return np.zeros(side * side)

    if style.keep_aspect:
        box = square_box(box)
    scaled = rescale(crop_to_box(image, box), side)
    return np.clip(scaled, 0.0, 1.0).ravel()


def preprocess_strokes(
    strokes: Sequence[Sequence[Any]],
    style: StrokeStyle = DEFAULT_STYLE
) -> np.ndarray:
    """Full pipeline from raw strokes to a flattened network input."""
    return preprocess_image(rasterize_strokes(strokes, style), style)
