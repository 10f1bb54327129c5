"""Letterbox: centered, aspect-preserving fit onto the working canvas."""

import numpy as np
from PIL import Image

from image.bitmap import Bitmap

CANVAS_SIZE = (1024, 1024)


def fit_rect(
    src_width: int, src_height: int, canvas_width: int, canvas_height: int
) -> tuple[float, float, float, float]:
    """Return (x, y, draw_width, draw_height) for a centered fit.

    Fill the canvas width first; if that overflows the height, fill the
    height instead.
    """
    if src_width <= 0 or src_height <= 0:
        raise ValueError(f"Source dimensions must be positive: {src_width}x{src_height}")
    aspect = src_width / src_height
    draw_width = float(canvas_width)
    draw_height = draw_width / aspect
    if draw_height > canvas_height:
        draw_height = float(canvas_height)
        draw_width = draw_height * aspect
    x = (canvas_width - draw_width) / 2
    y = (canvas_height - draw_height) / 2
    return x, y, draw_width, draw_height


def letterbox(bitmap: Bitmap, canvas: tuple[int, int] = CANVAS_SIZE) -> Bitmap:
    """Draw bitmap centered on a transparent canvas of the given (width, height)."""
    bitmap.validate()
    canvas_width, canvas_height = canvas
    x, y, draw_width, draw_height = fit_rect(
        bitmap.width, bitmap.height, canvas_width, canvas_height
    )

    out_w = max(1, round(draw_width))
    out_h = max(1, round(draw_height))
    left = min(max(0, round(x)), canvas_width - out_w)
    top = min(max(0, round(y)), canvas_height - out_h)

    src = Image.fromarray(bitmap.pixels)
    if (out_w, out_h) != (bitmap.width, bitmap.height):
        src = src.resize((out_w, out_h), Image.Resampling.LANCZOS)

    out = np.zeros((canvas_height, canvas_width, 4), dtype=np.uint8)
    out[top : top + out_h, left : left + out_w] = np.array(src)
    return Bitmap.from_array(out)
