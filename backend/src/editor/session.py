"""Editor session holding one photo at a time: Idle → Loading → Mapped | Error."""

import logging
import threading
import time
from enum import Enum
from pathlib import Path

import sentry_sdk

from engine.render import render
from image.bitmap import Bitmap
from image.decode import ImageDecodeError, decode_image
from image.encode import encode_png
from image.letterbox import CANVAS_SIZE, letterbox

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "Internal processing error"


class EditorState(Enum):
    IDLE = "idle"
    LOADING = "loading"
    MAPPED = "mapped"
    ERROR = "error"


class EditorSession:
    """Holds the current photo and its duotone rendering.

    load() runs synchronously; start() runs the same load on a background
    thread so a frontend can keep polling get_status(). One load at a time.
    """

    def __init__(self, canvas: tuple[int, int] = CANVAS_SIZE):
        self.canvas = canvas
        self._lock = threading.Lock()
        self._state = EditorState.IDLE
        self._error: str | None = None
        self._source_size: tuple[int, int] | None = None
        self._result: Bitmap | None = None
        self._elapsed_ms: float | None = None
        self._thread: threading.Thread | None = None
        # Bumped on reset so a stale background load can't overwrite state
        self._generation = 0

    @property
    def state(self) -> EditorState:
        with self._lock:
            return self._state

    @property
    def error(self) -> str | None:
        with self._lock:
            return self._error

    @property
    def result(self) -> Bitmap:
        """The mapped bitmap. Raises RuntimeError unless the session is MAPPED."""
        with self._lock:
            if self._state != EditorState.MAPPED or self._result is None:
                raise RuntimeError(f"No result available (state: {self._state.value})")
            return self._result

    def result_png(self) -> bytes:
        return encode_png(self.result)

    def _begin(self) -> int:
        with self._lock:
            if self._state == EditorState.LOADING:
                raise RuntimeError("Load already in progress")
            self._state = EditorState.LOADING
            self._error = None
            self._source_size = None
            self._result = None
            self._elapsed_ms = None
            return self._generation

    def _finish(self, generation: int, **changes):
        with self._lock:
            if generation != self._generation:
                return
            for name, value in changes.items():
                setattr(self, f"_{name}", value)

    def _run(self, generation: int, source: str | Path | bytes):
        t0 = time.monotonic()
        try:
            decoded = decode_image(source)
            mapped = render(letterbox(decoded, self.canvas))
        except ImageDecodeError as e:
            logger.info("Image rejected: %s", e)
            self._finish(generation, state=EditorState.ERROR, error=str(e))
            return
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.error("Load failed: %s", type(e).__name__)
            self._finish(
                generation, state=EditorState.ERROR, error=INTERNAL_ERROR_MESSAGE
            )
            return
        self._finish(
            generation,
            state=EditorState.MAPPED,
            source_size=decoded.size,
            result=mapped,
            elapsed_ms=round((time.monotonic() - t0) * 1000, 2),
        )

    def load(self, source: str | Path | bytes) -> EditorState:
        """Decode, letterbox and map source. Returns the final state.

        Raises:
            RuntimeError: If a background load is still running.
        """
        generation = self._begin()
        self._run(generation, source)
        return self.state

    def start(self, source: str | Path | bytes) -> threading.Thread:
        """Start load() on a daemon thread. Returns the thread.

        Raises:
            RuntimeError: If a load is already in progress.
        """
        generation = self._begin()
        thread = threading.Thread(
            target=self._run, args=(generation, source), daemon=True
        )
        self._thread = thread
        thread.start()
        return thread

    def wait(self, timeout: float | None = None) -> EditorState:
        """Join the background load (if any) and return the current state."""
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        return self.state

    def reset(self):
        """Drop the current photo and return to IDLE."""
        with self._lock:
            self._generation += 1
            self._state = EditorState.IDLE
            self._error = None
            self._source_size = None
            self._result = None
            self._elapsed_ms = None
        self._thread = None

    def get_status(self) -> dict:
        """Return serializable status dict."""
        with self._lock:
            status = {
                "state": self._state.value,
                "error": self._error,
            }
            if self._source_size is not None:
                status["source_width"], status["source_height"] = self._source_size
            if self._result is not None:
                status["width"] = self._result.width
                status["height"] = self._result.height
            if self._elapsed_ms is not None:
                status["elapsed_ms"] = self._elapsed_ms
            return status
