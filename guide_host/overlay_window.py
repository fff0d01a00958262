"""Transparent, click-through window that draws step markers."""
from __future__ import annotations

import logging
import sys
from typing import Sequence, Tuple

from PyQt6.QtCore import QRectF, Qt, QTimer
from PyQt6.QtGui import QColor, QFont, QFontMetricsF, QGuiApplication, QPainter, QPen
from PyQt6.QtWidgets import QWidget

from guide_plugin.coordinate_transform import label_anchor
from guide_plugin.models import PredictedStep, RenderRequest

_LOGGER = logging.getLogger("ScreenGuide.Host.Window")

MARKER_COLOR = QColor(255, 0, 0)
MARKER_FILL_ALPHA = 0.2
MARKER_STROKE = 4.0
LABEL_PADDING = 8.0
LABEL_FONT_SIZE = 14


def apply_overlay_window_flags(widget: QWidget) -> None:
    """Frameless, always-on-top, transparent and never focus-stealing."""
    widget.setAttribute(Qt.WidgetAttribute.WA_TranslucentBackground)
    window_flags = (
        Qt.WindowType.FramelessWindowHint
        | Qt.WindowType.WindowStaysOnTopHint
        | Qt.WindowType.Window
    )
    if sys.platform.startswith("linux"):
        window_flags |= Qt.WindowType.X11BypassWindowManagerHint
    widget.setWindowFlags(window_flags)
    widget.setAttribute(Qt.WidgetAttribute.WA_TransparentForMouseEvents, True)
    widget.setAttribute(Qt.WidgetAttribute.WA_NoSystemBackground, True)
    widget.setAttribute(Qt.WidgetAttribute.WA_ShowWithoutActivating, True)


def paint_marker(
    painter: QPainter,
    step: PredictedStep,
    screen_size: Tuple[float, float],
    font: QFont,
) -> None:
    rect = step.rect
    marker = QRectF(rect.x, rect.y, rect.width, rect.height)
    fill = QColor(MARKER_COLOR)
    fill.setAlphaF(MARKER_FILL_ALPHA)
    pen = QPen(MARKER_COLOR)
    pen.setWidthF(MARKER_STROKE)
    painter.setPen(pen)
    painter.setBrush(fill)
    painter.drawRect(marker)

    if not step.text:
        return
    painter.setFont(font)
    metrics = QFontMetricsF(font)
    text_width = metrics.horizontalAdvance(step.text) + LABEL_PADDING * 2
    text_height = metrics.height() + LABEL_PADDING
    x, y = label_anchor(rect, screen_size, (text_width, text_height))
    label_rect = QRectF(x, y, text_width, text_height)
    painter.setPen(Qt.PenStyle.NoPen)
    painter.setBrush(QColor(MARKER_COLOR))
    painter.drawRoundedRect(label_rect, 6, 6)
    painter.setPen(QColor(255, 255, 255))
    painter.drawText(label_rect, Qt.AlignmentFlag.AlignCenter, step.text)


class OverlayWindow(QWidget):
    """Covers the primary screen and shows the current request until it expires."""

    def __init__(self) -> None:
        super().__init__()
        apply_overlay_window_flags(self)
        self._steps: Tuple[PredictedStep, ...] = ()
        self._font = QFont()
        self._font.setPointSize(LABEL_FONT_SIZE)
        self._font.setWeight(QFont.Weight.Bold)
        self._expiry_timer = QTimer(self)
        self._expiry_timer.setSingleShot(True)
        self._expiry_timer.timeout.connect(self.clear)
        self._fit_to_screen()

    @property
    def steps(self) -> Tuple[PredictedStep, ...]:
        return self._steps

    def show_request(self, request: RenderRequest) -> None:
        self._steps = tuple(request.steps)
        self._fit_to_screen()
        self._expiry_timer.start(max(1, int(request.duration * 1000)))
        _LOGGER.debug("Showing %d marker(s) for %.1fs", len(self._steps), request.duration)
        self.show()
        self.raise_()
        self.update()

    def clear(self) -> None:
        self._expiry_timer.stop()
        if self._steps:
            _LOGGER.debug("Clearing %d marker(s)", len(self._steps))
        self._steps = ()
        self.update()
        self.hide()

    def paintEvent(self, event) -> None:  # type: ignore[override]
        painter = QPainter(self)
        painter.setRenderHint(QPainter.RenderHint.Antialiasing)
        screen_size = (float(self.width()), float(self.height()))
        for step in self._steps:
            paint_marker(painter, step, screen_size, self._font)
        painter.end()
        super().paintEvent(event)

    def _fit_to_screen(self) -> None:
        screen = QGuiApplication.primaryScreen()
        if screen is None:
            _LOGGER.warning("No primary screen; overlay geometry left unchanged")
            return
        self.setGeometry(screen.geometry())


def steps_summary(steps: Sequence[PredictedStep]) -> str:
    return ", ".join(f"{step.id}@({step.rect.x:.0f},{step.rect.y:.0f})" for step in steps) or "none"


def single_step_request(step: PredictedStep, duration: float) -> RenderRequest:
    return RenderRequest(steps=(step,), duration=duration)

