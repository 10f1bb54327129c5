"""Image decoding: uploaded file to RGBA Bitmap."""

import io
import logging
from pathlib import Path

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from image.bitmap import Bitmap

logger = logging.getLogger(__name__)

# Decompression-bomb guard, tighter than Pillow's own default
MAX_IMAGE_PIXELS = 50_000_000

NOT_AN_IMAGE_MESSAGE = "Please upload an image file (e.g., JPG, PNG)."
DECODE_FAILED_MESSAGE = "Failed to load the image. Please try a different file."


class ImageDecodeError(Exception):
    """Upload could not be turned into a Bitmap. Message is user-facing."""


def _open(source: str | Path | bytes) -> Image.Image:
    if isinstance(source, bytes):
        return Image.open(io.BytesIO(source))
    return Image.open(source)


def _too_large(size: str = "") -> ImageDecodeError:
    limit = f"max {MAX_IMAGE_PIXELS // 1_000_000} megapixels"
    if size:
        return ImageDecodeError(f"Image too large: {size} ({limit})")
    return ImageDecodeError(f"Image too large ({limit})")


def decode_image(source: str | Path | bytes) -> Bitmap:
    """Decode an image file or in-memory bytes into an RGBA Bitmap.

    The header is checked (MIME type, pixel count) before any pixels are
    decoded. EXIF orientation is applied so the bitmap matches what a
    viewer shows.

    Raises:
        ImageDecodeError: If the source is not an image, is too large, or
            fails to decode.
    """
    try:
        with _open(source) as img:
            mime = Image.MIME.get(img.format or "")
            if mime is None or not mime.startswith("image/"):
                raise ImageDecodeError(NOT_AN_IMAGE_MESSAGE)
            if img.width * img.height > MAX_IMAGE_PIXELS:
                raise _too_large(f"{img.width}x{img.height}")
            img = ImageOps.exif_transpose(img)
            rgba = np.array(img.convert("RGBA"))
    except ImageDecodeError:
        raise
    except Image.DecompressionBombError as e:
        # Pillow refuses headers past twice its own limit at open time
        logger.warning("Image rejected by Pillow size limit")
        raise _too_large() from e
    except UnidentifiedImageError as e:
        raise ImageDecodeError(NOT_AN_IMAGE_MESSAGE) from e
    except (OSError, SyntaxError, ValueError) as e:
        logger.warning("Decode failed: %s", type(e).__name__)
        raise ImageDecodeError(DECODE_FAILED_MESSAGE) from e

    return Bitmap.from_array(rgba)
