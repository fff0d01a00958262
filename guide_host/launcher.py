from __future__ import annotations

import argparse
import os
import signal
import sys
from pathlib import Path
from typing import Optional

from PyQt6.QtCore import QObject, QTimer, pyqtSignal
from PyQt6.QtWidgets import QApplication

from guide_host.overlay_window import OverlayWindow, steps_summary
from guide_host.render_server import RenderServer
from guide_plugin.logging_utils import configure_logging
from guide_plugin.models import RenderRequest
from guide_plugin.settings import DEFAULT_PORT_FILE

HOST_LOGGER_NAME = "ScreenGuide.Host"
HOST_LOG_FILE = "screen-guide-host.log"


class RenderBridge(QObject):
    """Moves requests from the server thread onto the Qt thread."""

    show_requested = pyqtSignal(object)
    hide_requested = pyqtSignal()

    def show(self, request: RenderRequest) -> None:
        self.show_requested.emit(request)

    def hide(self) -> None:
        self.hide_requested.emit()


def resolve_port_file(args_port: Optional[str]) -> Path:
    if args_port:
        return Path(args_port).expanduser().resolve()
    env_override = os.getenv("SCREEN_GUIDE_PORT_FILE")
    if env_override:
        return Path(env_override).expanduser().resolve()
    return DEFAULT_PORT_FILE.resolve()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Screen Guide rendering host")
    parser.add_argument("--port-file", help="Where to write port.json for the caller")
    parser.add_argument("--port", type=int, default=0, help="TCP port to listen on (default: any free port)")
    args = parser.parse_args(argv)

    logger = configure_logging(HOST_LOG_FILE, logger_name=HOST_LOGGER_NAME)
    port_file = resolve_port_file(args.port_file)
    logger.info("Starting rendering host (pid=%s)", os.getpid())
    logger.debug("Resolved port file path to %s", port_file)

    app = QApplication(sys.argv)
    app.setQuitOnLastWindowClosed(False)
    window = OverlayWindow()
    bridge = RenderBridge()

    def _show(request: RenderRequest) -> None:
        logger.debug("Displaying %s", steps_summary(request.steps))
        window.show_request(request)

    bridge.show_requested.connect(_show)
    bridge.hide_requested.connect(window.clear)

    server = RenderServer(sink=bridge, port=args.port, port_file=port_file)
    if not server.start():
        logger.error("Rendering host could not start its control server; exiting")
        return 1

    signal.signal(signal.SIGINT, lambda *_: app.quit())
    signal.signal(signal.SIGTERM, lambda *_: app.quit())
    # Let Python signal handlers run while the Qt loop is idle.
    heartbeat = QTimer()
    heartbeat.timeout.connect(lambda: None)
    heartbeat.start(500)

    try:
        exit_code = app.exec()
    finally:
        server.stop()
    logger.info("Rendering host exiting with code %s", exit_code)
    return int(exit_code)


if __name__ == "__main__":  # pragma: no cover - manual invocation
    sys.exit(main())
