"""PNG encoding for display (data URLs) and download."""

import base64
import io
import os
from pathlib import Path

import numpy as np
from PIL import Image

from image.bitmap import Bitmap

DOWNLOAD_NAME = "heroic-photo.png"
DATA_URL_PREFIX = "data:image/png;base64,"


def encode_png(bitmap: Bitmap) -> bytes:
    """Encode RGBA bitmap to PNG bytes. Lossless, alpha kept."""
    bitmap.validate()
    img = Image.fromarray(bitmap.pixels)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def decode_png(data: bytes) -> Bitmap:
    """Decode PNG bytes back to an RGBA Bitmap."""
    img = Image.open(io.BytesIO(data))
    return Bitmap.from_array(np.array(img.convert("RGBA")))


def to_data_url(png: bytes) -> str:
    return DATA_URL_PREFIX + base64.b64encode(png).decode("ascii")


def write_png(bitmap: Bitmap, path: str | Path) -> str:
    """Write bitmap as PNG. A directory path gets the default download name.

    Returns the path written.
    """
    p = Path(path)
    if p.is_dir():
        p = p / DOWNLOAD_NAME
    data = encode_png(bitmap)
    # Partial writes never land at the target path
    tmp = p.with_name(p.name + ".part")
    tmp.write_bytes(data)
    os.replace(tmp, p)
    return str(p)
