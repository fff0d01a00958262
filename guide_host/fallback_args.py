"""Command-line parsing for the one-shot fallback overlay process."""
from __future__ import annotations

import argparse
import math
from typing import Optional, Sequence

from guide_plugin.models import LOGICAL, PredictedStep, ScreenRect

DEFAULT_X = 100.0
DEFAULT_Y = 100.0
DEFAULT_WIDTH = 200.0
DEFAULT_HEIGHT = 50.0
DISPLAY_SECONDS = 5.0
SAFETY_EXIT_SECONDS = 8.0


def _number(raw: str, fallback: float) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return fallback
    return value if math.isfinite(value) else fallback


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m guide_host.fallback_overlay",
        description="Show one marker for a few seconds and exit",
    )
    parser.add_argument("label")
    parser.add_argument("x")
    parser.add_argument("y")
    parser.add_argument("width")
    parser.add_argument("height")
    parser.add_argument("description")
    return parser


def parse_step(argv: Optional[Sequence[str]] = None) -> PredictedStep:
    """Build the step to draw; unreadable numbers fall back to a fixed rectangle."""
    args = build_parser().parse_args(argv)
    rect = ScreenRect(
        x=_number(args.x, DEFAULT_X),
        y=_number(args.y, DEFAULT_Y),
        width=_number(args.width, DEFAULT_WIDTH),
        height=_number(args.height, DEFAULT_HEIGHT),
        space=LOGICAL,
    )
    return PredictedStep(id="step_1", text=args.label, rect=rect, description=args.description)
