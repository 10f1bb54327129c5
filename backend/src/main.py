import logging
import os
import platform
import sys
from pathlib import Path

import sentry_sdk

from _version import __version__
from diagnostics import app_home, init_diagnostics
from security import strip_pii
from zmq_server import ZMQServer

logger = logging.getLogger(__name__)

# Address-space cap (Linux/macOS only); a 50 MP decode plus canvas fits easily
MAX_MEMORY_BYTES = 2 * 1024 * 1024 * 1024  # 2 GB


def _telemetry_dsn() -> str:
    """Sentry DSN, or "" unless the user opted in via APP_HOME/telemetry_consent."""
    consent = Path(app_home()) / "telemetry_consent"
    if consent.exists() and consent.read_text().strip() == "yes":
        return os.environ.get("SENTRY_DSN", "")
    return ""


def init_sentry():
    sentry_sdk.init(
        dsn=_telemetry_dsn(),
        release=f"heroic-duotone@{__version__}",
        environment=os.environ.get("SENTRY_ENV", "development"),
        traces_sample_rate=0.1,
        before_send=strip_pii,
        max_breadcrumbs=50,
    )


def _apply_resource_limits():
    """Cap address space. Skipped on Windows."""
    if platform.system() == "Windows":
        return
    try:
        import resource

        _, hard = resource.getrlimit(resource.RLIMIT_AS)
        resource.setrlimit(resource.RLIMIT_AS, (MAX_MEMORY_BYTES, hard))
    except (ImportError, ValueError, OSError):
        print("WARNING: Could not set memory limit", file=sys.stderr)


def main():
    init_sentry()
    init_diagnostics()
    _apply_resource_limits()
    server = ZMQServer()
    print(f"ZMQ_PORT={server.port}", flush=True)
    print(f"ZMQ_PING_PORT={server.ping_port}", flush=True)
    print(f"ZMQ_TOKEN={server.token}", flush=True)
    logger.info("Heroic Duotone sidecar %s listening", __version__)
    server.run()


if __name__ == "__main__":
    main()
