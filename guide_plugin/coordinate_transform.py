"""Physical-to-logical rectangle conversion and clamping.

Every rectangle that reaches a rendering surface goes through ``to_logical``.
The function is total: unusable input produces a fixed rectangle in the middle
of the screen instead of an exception or a NaN.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Tuple

from guide_plugin.models import LOGICAL, PHYSICAL, ScreenContext, ScreenRect

_LOGGER = logging.getLogger("ScreenGuide.Plugin.Geometry")

DEFAULT_SCREEN_SIZE: Tuple[float, float] = (1920.0, 1080.0)
FALLBACK_SIZE: Tuple[float, float] = (100.0, 50.0)
LABEL_MARGIN = 20.0
LABEL_GAP = 10.0


@dataclass(frozen=True)
class TransformLimits:
    min_width: float = 50.0
    min_height: float = 30.0
    max_width_ratio: float = 0.4
    max_height_ratio: float = 0.3


DEFAULT_LIMITS = TransformLimits()


def _finite_positive(value: float) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value) and value > 0


def _screen_size(ctx: ScreenContext) -> Tuple[float, float]:
    if _finite_positive(ctx.logical_width) and _finite_positive(ctx.logical_height):
        return float(ctx.logical_width), float(ctx.logical_height)
    return DEFAULT_SCREEN_SIZE


def fallback_rect(ctx: ScreenContext) -> ScreenRect:
    """Small fixed rectangle centred on the logical screen."""
    screen_width, screen_height = _screen_size(ctx)
    width, height = FALLBACK_SIZE
    return ScreenRect(
        x=screen_width / 2 - width / 2,
        y=screen_height / 2 - height / 2,
        width=width,
        height=height,
        space=LOGICAL,
    )


def _limit_length(length: float, minimum: float, maximum: float) -> float:
    return max(minimum, min(max(minimum, maximum), length))


def _fit_axis(origin: float, length: float, extent: float, minimum: float) -> Tuple[float, float]:
    # Crop whatever hangs off either edge first, then shift only if the
    # minimum size pushes the rectangle back out.
    if origin < 0:
        length += origin
        origin = 0.0
    overflow = origin + length - extent
    if overflow > 0:
        length -= overflow
    length = min(max(minimum, length), extent)
    if origin + length > extent:
        origin = extent - length
    return max(0.0, origin), length


def to_logical(rect: ScreenRect, ctx: ScreenContext, limits: TransformLimits = DEFAULT_LIMITS) -> ScreenRect:
    """Convert ``rect`` into a clamped logical-space rectangle."""

    scale = ctx.scale_factor
    if not rect.is_finite() or not _finite_positive(scale):
        _LOGGER.warning("Unusable rectangle %s (scale=%s); substituting centred fallback", rect, scale)
        return fallback_rect(ctx)
    if not (_finite_positive(ctx.logical_width) and _finite_positive(ctx.logical_height)):
        _LOGGER.warning("Unusable screen size %sx%s; substituting centred fallback", ctx.logical_width, ctx.logical_height)
        return fallback_rect(ctx)

    screen_width, screen_height = _screen_size(ctx)
    x, y, width, height = rect.x, rect.y, rect.width, rect.height
    if rect.space == PHYSICAL:
        x, y, width, height = x / scale, y / scale, width / scale, height / scale

    width = _limit_length(width, limits.min_width, screen_width * limits.max_width_ratio)
    height = _limit_length(height, limits.min_height, screen_height * limits.max_height_ratio)
    x, width = _fit_axis(x, width, screen_width, limits.min_width)
    y, height = _fit_axis(y, height, screen_height, limits.min_height)

    result = ScreenRect(x=x, y=y, width=width, height=height, space=LOGICAL)
    _LOGGER.debug(
        "to_logical %s -> %s (scale=%.2f screen=%.0fx%.0f)",
        rect,
        result,
        scale,
        screen_width,
        screen_height,
    )
    return result


def label_anchor(
    rect: ScreenRect,
    screen_size: Tuple[float, float],
    label_size: Tuple[float, float],
) -> Tuple[float, float]:
    """Top-left corner for the text label of ``rect``.

    The label sits above the marker; when there is no room it moves below,
    and it never leaves a 20px margin around the screen.
    """
    screen_width, screen_height = screen_size
    label_width, label_height = label_size
    x = rect.x + rect.width / 2 - label_width / 2
    y = rect.y - label_height - LABEL_GAP
    if y < LABEL_MARGIN:
        y = rect.y + rect.height + LABEL_GAP
    x = min(x, screen_width - label_width - LABEL_MARGIN)
    y = min(y, screen_height - label_height - LABEL_MARGIN)
    return max(LABEL_MARGIN, x), max(LABEL_MARGIN, y)
