"""Bitmap: RGBA 8-bit pixel buffer passed between decode, effects and encode."""

from dataclasses import dataclass

import numpy as np

CHANNELS = 4


class InvalidBitmap(ValueError):
    """Pixel buffer does not match its declared dimensions or layout."""


@dataclass(frozen=True)
class Bitmap:
    """Width, height and an (H, W, 4) uint8 RGBA array.

    Construct through from_buffer() or from_array() so the layout is checked.
    """

    width: int
    height: int
    pixels: np.ndarray

    @classmethod
    def from_buffer(cls, width: int, height: int, data) -> "Bitmap":
        """Build from a flat RGBA buffer (bytes, bytearray, memoryview or sequence).

        Raises:
            InvalidBitmap: If dimensions are negative or len(data) != W*H*4.
        """
        if width < 0 or height < 0:
            raise InvalidBitmap(f"Negative dimensions: {width}x{height}")
        expected = width * height * CHANNELS
        if isinstance(data, (bytes, bytearray, memoryview)):
            flat = np.frombuffer(bytes(data), dtype=np.uint8)
        else:
            values = np.asarray(data)
            if values.size and (values.min() < 0 or values.max() > 255):
                raise InvalidBitmap("Channel values must be in [0, 255]")
            flat = values.astype(np.uint8).ravel()
        if flat.size != expected:
            raise InvalidBitmap(
                f"Buffer length {flat.size} does not match {width}x{height}x{CHANNELS}"
                f" = {expected}"
            )
        return cls(width, height, flat.reshape(height, width, CHANNELS).copy())

    @classmethod
    def from_array(cls, array: np.ndarray) -> "Bitmap":
        """Wrap an (H, W, 4) uint8 array. The array is not copied."""
        if not isinstance(array, np.ndarray):
            raise InvalidBitmap(f"Expected ndarray, got {type(array).__name__}")
        if array.ndim != 3 or array.shape[2] != CHANNELS:
            raise InvalidBitmap(f"Expected shape (H, W, 4), got {array.shape}")
        if array.dtype != np.uint8:
            raise InvalidBitmap(f"Expected dtype uint8, got {array.dtype}")
        height, width = array.shape[:2]
        return cls(width, height, array)

    def validate(self):
        """Re-check the layout invariants. Raises InvalidBitmap."""
        if self.width < 0 or self.height < 0:
            raise InvalidBitmap(f"Negative dimensions: {self.width}x{self.height}")
        if not isinstance(self.pixels, np.ndarray):
            raise InvalidBitmap(
                f"Expected ndarray, got {type(self.pixels).__name__}"
            )
        if self.pixels.shape != (self.height, self.width, CHANNELS):
            raise InvalidBitmap(
                f"Pixel shape {self.pixels.shape} does not match "
                f"{self.width}x{self.height}x{CHANNELS}"
            )
        if self.pixels.dtype != np.uint8:
            raise InvalidBitmap(f"Expected dtype uint8, got {self.pixels.dtype}")

    @property
    def alpha(self) -> np.ndarray:
        return self.pixels[:, :, 3]

    @property
    def size(self) -> tuple[int, int]:
        return (self.width, self.height)

    def to_bytes(self) -> bytes:
        """Flat RGBA buffer, row-major."""
        return self.pixels.tobytes()
