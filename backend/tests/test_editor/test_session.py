"""Tests for EditorSession: state transitions, background load, reset."""

import io
import threading
from unittest.mock import patch

import numpy as np
import pytest
from PIL import Image

from editor import session as session_mod
from editor.session import INTERNAL_ERROR_MESSAGE, EditorSession, EditorState
from effects.fx.duotone import DARK
from image.decode import NOT_AN_IMAGE_MESSAGE

CANVAS = (64, 64)


def _png(width=32, height=16, color=(255, 255, 255)):
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def session():
    return EditorSession(canvas=CANVAS)


def test_starts_idle(session):
    assert session.state == EditorState.IDLE
    assert session.get_status() == {"state": "idle", "error": None}


def test_load_maps_image(session):
    assert session.load(_png()) == EditorState.MAPPED
    status = session.get_status()
    assert status["state"] == "mapped"
    assert (status["source_width"], status["source_height"]) == (32, 16)
    assert (status["width"], status["height"]) == CANVAS
    assert status["elapsed_ms"] >= 0


def test_result_is_letterboxed_duotone(session):
    session.load(_png(32, 16))
    pixels = session.result.pixels
    # White band in the middle maps to the light color, opaque
    np.testing.assert_array_equal(pixels[32, 32], [247, 132, 197, 255])
    # Transparent letterbox bar maps to dark, alpha stays 0
    np.testing.assert_array_equal(pixels[0, 0], [*DARK, 0])


def test_result_png(session):
    session.load(_png())
    assert session.result_png()[:4] == b"\x89PNG"


def test_load_from_path(session, tmp_path):
    path = tmp_path / "p.png"
    path.write_bytes(_png())
    assert session.load(str(path)) == EditorState.MAPPED


def test_non_image_goes_to_error(session):
    assert session.load(b"plain text") == EditorState.ERROR
    assert session.error == NOT_AN_IMAGE_MESSAGE
    assert session.get_status()["error"] == NOT_AN_IMAGE_MESSAGE


def test_oversized_header_reports_too_large(session, bomb_png):
    assert session.load(bomb_png) == EditorState.ERROR
    assert session.error.startswith("Image too large")


def test_result_unavailable_outside_mapped(session):
    with pytest.raises(RuntimeError, match="No result"):
        _ = session.result
    session.load(b"plain text")
    with pytest.raises(RuntimeError):
        _ = session.result


def test_internal_failure_reported_generically(session):
    with patch.object(session_mod, "render", side_effect=MemoryError("boom")):
        with patch.object(session_mod.sentry_sdk, "capture_exception") as capture:
            state = session.load(_png())
    assert state == EditorState.ERROR
    assert session.error == INTERNAL_ERROR_MESSAGE
    capture.assert_called_once()


def test_reset_returns_to_idle(session):
    session.load(_png())
    session.reset()
    assert session.state == EditorState.IDLE
    assert session.get_status() == {"state": "idle", "error": None}


def test_reset_clears_error(session):
    session.load(b"nope")
    session.reset()
    assert session.error is None


def test_error_then_successful_load(session):
    session.load(b"nope")
    assert session.load(_png()) == EditorState.MAPPED
    assert session.error is None


def test_background_load(session):
    session.start(_png())
    assert session.wait(timeout=10) == EditorState.MAPPED


def test_start_while_loading_raises(session):
    original = session_mod.decode_image
    release = threading.Event()

    def slow_decode(source):
        release.wait(5)
        return original(source)

    with patch.object(session_mod, "decode_image", side_effect=slow_decode):
        session.start(_png())
        assert session.state == EditorState.LOADING
        with pytest.raises(RuntimeError, match="in progress"):
            session.start(_png())
        release.set()
        assert session.wait(timeout=10) == EditorState.MAPPED


def test_reset_discards_stale_background_load(session):
    original = session_mod.decode_image
    release = threading.Event()

    def slow_decode(source):
        release.wait(5)
        return original(source)

    with patch.object(session_mod, "decode_image", side_effect=slow_decode):
        thread = session.start(_png())
        session.reset()
        release.set()
        thread.join(10)
    assert session.state == EditorState.IDLE
