"""One-shot overlay process used when the rendering host is unreachable.

Usage: ``python -m guide_host.fallback_overlay LABEL X Y WIDTH HEIGHT DESCRIPTION``
"""
from __future__ import annotations

import logging
import os
import sys
import threading
from typing import Optional

from PyQt6.QtCore import QTimer
from PyQt6.QtWidgets import QApplication

from guide_host.fallback_args import DISPLAY_SECONDS, SAFETY_EXIT_SECONDS, parse_step
from guide_host.overlay_window import OverlayWindow, single_step_request
from guide_plugin.logging_utils import configure_logging

_LOGGER = logging.getLogger("ScreenGuide.Host.Fallback")


def _arm_safety_exit(seconds: float) -> threading.Timer:
    # Exits even if the Qt event loop never starts or hangs.
    timer = threading.Timer(seconds, lambda: os._exit(0))
    timer.daemon = True
    timer.start()
    return timer


def main(argv: Optional[list[str]] = None) -> int:
    step = parse_step(argv)
    safety = _arm_safety_exit(SAFETY_EXIT_SECONDS)
    configure_logging("screen-guide-fallback.log", logger_name="ScreenGuide.Host")
    _LOGGER.info(
        "Fallback overlay for %r at (%.0f, %.0f) size %.0fx%.0f (pid=%s)",
        step.text,
        step.rect.x,
        step.rect.y,
        step.rect.width,
        step.rect.height,
        os.getpid(),
    )

    app = QApplication(sys.argv[:1])
    window = OverlayWindow()
    window.show_request(single_step_request(step, DISPLAY_SECONDS))
    QTimer.singleShot(int(DISPLAY_SECONDS * 1000), app.quit)
    exit_code = app.exec()
    safety.cancel()
    _LOGGER.debug("Fallback overlay exiting with code %s", exit_code)
    return int(exit_code)


if __name__ == "__main__":
    sys.exit(main())
