"""Duotone: map gamma-corrected luminance onto a fixed two-color gradient."""

from dataclasses import dataclass

import numpy as np

from image.bitmap import Bitmap, InvalidBitmap

EFFECT_ID = "fx.duotone"
EFFECT_NAME = "Heroic Duotone"
EFFECT_CATEGORY = "enhance"

# Palette is fixed: the service never exposes it as a parameter.
PARAMS: dict = {}

# Hero green (shadows) and pink (highlights)
DARK = (27, 96, 47)
LIGHT = (247, 132, 197)
GAMMA = 0.9

# ITU-R BT.601 luma weights
LUMA_WEIGHTS = (0.299, 0.587, 0.114)


@dataclass(frozen=True)
class DuotoneConfig:
    dark: tuple[int, int, int] = DARK
    light: tuple[int, int, int] = LIGHT
    gamma: float = GAMMA


DEFAULT_CONFIG = DuotoneConfig()


def luminance(rgb: np.ndarray) -> np.ndarray:
    """BT.601 luminance of an (..., 3) array, float64 in [0, 255]."""
    rgb = rgb.astype(np.float64)
    wr, wg, wb = LUMA_WEIGHTS
    return wr * rgb[..., 0] + wg * rgb[..., 1] + wb * rgb[..., 2]


def gradient_position(gray: np.ndarray, gamma: float = GAMMA) -> np.ndarray:
    """Position t in [0, 1] along the dark→light gradient for each gray value.

    corrected = 255 * (gray / 255) ** (1 / gamma), t = corrected / 255.
    The exponent is 1/gamma, so gamma < 1 darkens the midtones.
    """
    corrected = 255.0 * np.power(gray / 255.0, 1.0 / gamma)
    return np.clip(corrected / 255.0, 0.0, 1.0)


def map_frame(frame: np.ndarray, config: DuotoneConfig = DEFAULT_CONFIG) -> np.ndarray:
    """Duotone-map an (H, W, 4) uint8 RGBA frame. Returns a new array."""
    if frame.ndim != 3 or frame.shape[2] != 4:
        raise InvalidBitmap(f"Expected shape (H, W, 4), got {frame.shape}")
    if frame.dtype != np.uint8:
        raise InvalidBitmap(f"Expected dtype uint8, got {frame.dtype}")

    t = gradient_position(luminance(frame[:, :, :3]), config.gamma)[..., np.newaxis]
    dark = np.asarray(config.dark, dtype=np.float64)
    light = np.asarray(config.light, dtype=np.float64)

    # np.rint rounds half to even, same as an 8-bit clamped canvas buffer
    rgb = np.clip(np.rint(dark + (light - dark) * t), 0, 255).astype(np.uint8)
    return np.concatenate([rgb, frame[:, :, 3:4]], axis=2)


def map_bitmap(bitmap: Bitmap, config: DuotoneConfig = DEFAULT_CONFIG) -> Bitmap:
    """Return a new Bitmap of the same size with R, G, B remapped and alpha kept.

    Raises:
        InvalidBitmap: If the bitmap's buffer does not match its dimensions.
    """
    bitmap.validate()
    return Bitmap(bitmap.width, bitmap.height, map_frame(bitmap.pixels, config))


def apply(
    frame: np.ndarray,
    params: dict,
    state_in: dict | None = None,
    *,
    frame_index: int,
    seed: int,
    resolution: tuple[int, int],
) -> tuple[np.ndarray, dict | None]:
    """Heroic duotone: green shadows, pink highlights. Takes no params."""
    return map_frame(frame), None
