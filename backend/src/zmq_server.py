import json
import logging
import time
import uuid

import sentry_sdk
import zmq

from editor.session import EditorSession, EditorState
from effects import registry
from engine.render import flush_timing, get_render_stats
from image.encode import to_data_url, write_png
from security import validate_output_path, validate_upload

logger = logging.getLogger(__name__)

INTERNAL_ERROR = "Internal processing error"


class ZMQServer:
    def __init__(self):
        self.context = zmq.Context()
        self.socket = self.context.socket(zmq.REP)
        self.socket.setsockopt(zmq.MAXMSGSIZE, 1_048_576)  # 1 MB limit
        self.port = self.socket.bind_to_random_port("tcp://127.0.0.1")
        # Dedicated ping socket, answers while a load is mapping
        self.ping_socket = self.context.socket(zmq.REP)
        self.ping_socket.setsockopt(zmq.MAXMSGSIZE, 4096)  # 4 KB limit (pings only)
        self.ping_port = self.ping_socket.bind_to_random_port("tcp://127.0.0.1")
        # Auth token: prevents unauthorized access from other local processes
        self.token = str(uuid.uuid4())
        self.start_time = time.time()
        self.running = False
        self.session = EditorSession()
        self.last_render_ms = 0.0

    def reset_state(self):
        """Clear session state without closing sockets/context.

        Used by session-scoped test fixtures to reset between tests
        while keeping the server running.
        """
        self.session.reset()
        self.last_render_ms = 0.0

    def _validate_token(self, message: dict) -> str | None:
        """Validate auth token. Returns error message or None if valid."""
        if message.get("_token") != self.token:
            return "invalid or missing auth token"
        return None

    def _make_ping_response(self, msg_id: str | None) -> dict:
        return {
            "id": msg_id,
            "status": "alive",
            "uptime_s": round(time.time() - self.start_time, 1),
            "last_render_ms": self.last_render_ms,
        }

    def handle_message(self, message: dict) -> dict:
        cmd = message.get("cmd")
        msg_id = message.get("id")

        token_err = self._validate_token(message)
        if token_err:
            return {"id": msg_id, "ok": False, "error": token_err}

        if cmd == "ping":
            return self._make_ping_response(msg_id)
        elif cmd == "shutdown":
            self.running = False
            return {"id": msg_id, "ok": True}
        elif cmd == "list_effects":
            return {"id": msg_id, "ok": True, "effects": registry.list_all()}
        elif cmd == "load_image":
            return self._handle_load_image(message, msg_id)
        elif cmd == "status":
            return self._handle_status(msg_id)
        elif cmd == "result":
            return self._handle_result(msg_id)
        elif cmd == "export":
            return self._handle_export(message, msg_id)
        elif cmd == "reset":
            self.reset_state()
            return {"id": msg_id, "ok": True, "state": EditorState.IDLE.value}
        elif cmd == "render_stats":
            return {"id": msg_id, "ok": True, "stats": get_render_stats()}
        elif cmd == "flush_state":
            flush_timing()
            return {"id": msg_id, "ok": True}
        else:
            return {"id": msg_id, "ok": False, "error": f"unknown: {cmd}"}

    def _handle_load_image(self, message: dict, msg_id: str | None) -> dict:
        path = message.get("path")
        if not path:
            return {"id": msg_id, "ok": False, "error": "missing path"}

        errors = validate_upload(path)
        if errors:
            return {"id": msg_id, "ok": False, "error": "; ".join(errors)}

        try:
            self.session.start(path)
        except RuntimeError as e:
            return {"id": msg_id, "ok": False, "error": str(e)}
        return {"id": msg_id, "ok": True, "state": EditorState.LOADING.value}

    def _handle_status(self, msg_id: str | None) -> dict:
        try:
            status = self.session.get_status()
            if "elapsed_ms" in status:
                self.last_render_ms = status["elapsed_ms"]
            status["id"] = msg_id
            status["ok"] = True
            return status
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.error("Status handler error: %s", type(e).__name__)
            return {"id": msg_id, "ok": False, "error": INTERNAL_ERROR}

    def _handle_result(self, msg_id: str | None) -> dict:
        if self.session.state != EditorState.MAPPED:
            return {
                "id": msg_id,
                "ok": False,
                "error": f"no result (state: {self.session.state.value})",
            }
        try:
            bitmap = self.session.result
            return {
                "id": msg_id,
                "ok": True,
                "width": bitmap.width,
                "height": bitmap.height,
                "data_url": to_data_url(self.session.result_png()),
            }
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.error("Result handler error: %s", type(e).__name__)
            return {"id": msg_id, "ok": False, "error": INTERNAL_ERROR}

    def _handle_export(self, message: dict, msg_id: str | None) -> dict:
        output_path = message.get("output_path")
        if not output_path:
            return {"id": msg_id, "ok": False, "error": "missing output_path"}

        errors = validate_output_path(output_path)
        if errors:
            return {"id": msg_id, "ok": False, "error": "; ".join(errors)}

        if self.session.state != EditorState.MAPPED:
            return {
                "id": msg_id,
                "ok": False,
                "error": f"no result (state: {self.session.state.value})",
            }

        try:
            written = write_png(self.session.result, output_path)
            return {"id": msg_id, "ok": True, "output_path": written}
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.error("Export handler error: %s", type(e).__name__)
            return {"id": msg_id, "ok": False, "error": INTERNAL_ERROR}

    def run(self):
        self.running = True
        poller = zmq.Poller()
        poller.register(self.socket, zmq.POLLIN)
        poller.register(self.ping_socket, zmq.POLLIN)
        while self.running:
            events = dict(poller.poll(timeout=500))

            # Ping socket first (lightweight, never blocked)
            if self.ping_socket in events:
                try:
                    raw = self.ping_socket.recv()
                    message = json.loads(raw)
                    msg_id = message.get("id")
                    token_err = self._validate_token(message)
                    if token_err:
                        self.ping_socket.send_json(
                            {"id": msg_id, "ok": False, "error": token_err}
                        )
                    else:
                        self.ping_socket.send_json(self._make_ping_response(msg_id))
                except (ValueError, AttributeError):
                    self.ping_socket.send_json(
                        {"ok": False, "error": "Invalid message format"}
                    )
                except zmq.ZMQError:
                    logger.error("ZMQ error on ping socket")
                    break

            if self.socket in events:
                try:
                    raw = self.socket.recv()
                    message = json.loads(raw)
                except ValueError:
                    # Bad UTF-8 or bad JSON; REP must reply before the next recv
                    self.socket.send_json(
                        {"ok": False, "error": "Invalid message format"}
                    )
                    continue
                except zmq.ZMQError:
                    logger.error("ZMQ error on main socket")
                    break

                if not isinstance(message, dict):
                    self.socket.send_json(
                        {"ok": False, "error": "Invalid message format"}
                    )
                    continue

                try:
                    response = self.handle_message(message)
                except Exception as e:
                    sentry_sdk.capture_exception(e)
                    logger.error("Unhandled handler error: %s", type(e).__name__)
                    response = {"ok": False, "error": INTERNAL_ERROR}

                self.socket.send_json(response)
        self.close()

    def close(self):
        self.session.reset()
        self.ping_socket.close()
        self.socket.close()
        self.context.term()
