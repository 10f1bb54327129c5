"""Render: run a registered effect over a Bitmap with timing and error capture."""

import logging
import threading
import time
from collections import defaultdict, deque

import numpy as np
import sentry_sdk

from effects import registry
from image.bitmap import Bitmap

logger = logging.getLogger(__name__)

DEFAULT_EFFECT_ID = "fx.duotone"

# Render timing threshold (milliseconds); 1024x1024 stays well under
RENDER_WARN_MS = 250

_timing_lock = threading.Lock()
_render_timing: dict[str, deque] = defaultdict(lambda: deque(maxlen=100))


def _capture_with_context(e: Exception, effect_id: str, extra: dict):
    """Capture exception to Sentry with effect-level context and fingerprint dedup."""
    with sentry_sdk.new_scope() as scope:
        scope.set_tag("effect_id", effect_id)
        scope.fingerprint = ["effect-crash", effect_id, type(e).__name__]
        scope.set_context("effect", extra)
        sentry_sdk.capture_exception(e, scope=scope)


def record_timing(effect_id: str, elapsed_ms: float):
    with _timing_lock:
        _render_timing[effect_id].append(elapsed_ms)


def get_render_stats() -> dict[str, dict]:
    """Return p50/max/sample count per effect."""
    with _timing_lock:
        snapshot = {eid: sorted(samples) for eid, samples in _render_timing.items()}
    return {
        eid: {
            "p50": s[len(s) // 2] if s else 0,
            "max": max(s) if s else 0,
            "samples": len(s),
        }
        for eid, s in snapshot.items()
    }


def flush_timing():
    """Clear all timing stats."""
    with _timing_lock:
        _render_timing.clear()


def render(bitmap: Bitmap, effect_id: str = DEFAULT_EFFECT_ID) -> Bitmap:
    """Apply effect_id to bitmap and return the new Bitmap.

    Raises:
        InvalidBitmap: If bitmap is malformed (checked before the effect runs).
        ValueError: If effect_id is not registered.
        TypeError: If the effect returns something other than an ndarray.
    """
    bitmap.validate()

    effect_info = registry.get(effect_id)
    if effect_info is None:
        raise ValueError(f"unknown effect: {effect_id}")

    # Context for Sentry (PII-safe: shape only, no pixel data)
    sentry_ctx = {"resolution": bitmap.size, "frame_shape": list(bitmap.pixels.shape)}

    t0 = time.monotonic()
    try:
        output, _ = effect_info["fn"](
            bitmap.pixels,
            {},
            None,
            frame_index=0,
            seed=0,
            resolution=bitmap.size,
        )
        if not isinstance(output, np.ndarray):
            raise TypeError(f"Effect returned {type(output).__name__}, expected ndarray")
        result = Bitmap.from_array(output)
        if result.size != bitmap.size:
            raise ValueError(
                f"Effect returned size {result.size}, expected {bitmap.size}"
            )
    except Exception as e:
        _capture_with_context(e, effect_id, sentry_ctx)
        logger.error("Effect %s failed: %s", effect_id, type(e).__name__)
        raise

    elapsed_ms = (time.monotonic() - t0) * 1000
    record_timing(effect_id, elapsed_ms)
    if elapsed_ms > RENDER_WARN_MS:
        logger.warning(
            "Effect %s took %.0fms (>%dms warn threshold) at %dx%d",
            effect_id,
            elapsed_ms,
            RENDER_WARN_MS,
            bitmap.width,
            bitmap.height,
        )
    return result
