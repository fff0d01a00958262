"""One pass of render, re-capture and verify for the first predicted step."""
from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Protocol

from guide_plugin.errors import AnalysisError
from guide_plugin.logging_utils import build_journal_logger, resolve_logs_dir
from guide_plugin.models import (
    LOW_CONFIDENCE_THRESHOLD,
    CalibrationResult,
    PredictedStep,
    ScreenContext,
)

_LOGGER = logging.getLogger("ScreenGuide.Plugin.Calibration")

JOURNAL_FILENAME = "calibration-journal.jsonl"
DEFAULT_SETTLE_DELAY = 2.0


class Verifier(Protocol):
    def verify(self, image_bytes: bytes, original_step: PredictedStep, ctx: ScreenContext) -> CalibrationResult: ...


RenderFn = Callable[[PredictedStep], object]
CaptureFn = Callable[[], bytes]


class CalibrationJournal:
    """Appends low-confidence results as JSON lines to a rotating file."""

    def __init__(self, log_dir: Optional[Path] = None, *, retention: int = 5) -> None:
        self._logger = build_journal_logger(log_dir or resolve_logs_dir(), JOURNAL_FILENAME, retention=retention)

    def record(self, step: PredictedStep, result: CalibrationResult) -> None:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "step": step.to_payload(),
            "accuracy_score": result.accuracy_score,
            "position_offset": list(result.position_offset),
            "size_correction": list(result.size_correction),
            "feedback": result.feedback,
            "corrected_rect": result.corrected_rect.to_payload() if result.corrected_rect else None,
            "recovered": result.recovered,
        }
        self._logger.info(json.dumps(entry, ensure_ascii=False))


class CalibrationLoop:
    """Renders the first prediction, waits, re-captures and asks for a score.

    There is no automatic re-render; a low score is only reported. Any
    failure along the way comes back as ``CalibrationResult.unavailable``.
    """

    def __init__(
        self,
        verifier: Optional[Verifier],
        ctx_provider: Callable[[], ScreenContext],
        *,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        threshold: float = LOW_CONFIDENCE_THRESHOLD,
        journal: Optional[CalibrationJournal] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._verifier = verifier
        self._ctx_provider = ctx_provider
        self._settle_delay = settle_delay
        self._threshold = threshold
        self._journal = journal
        self._sleep = sleep

    def run(
        self,
        initial_prediction: PredictedStep,
        render_fn: RenderFn,
        capture_fn: CaptureFn,
        verifier: Optional[Verifier] = None,
    ) -> CalibrationResult:
        """``verifier`` overrides the loop's default for this pass."""
        verifier = verifier or self._verifier
        if verifier is None:
            return CalibrationResult.unavailable("No verifier is configured.")
        try:
            rendered = render_fn(initial_prediction)
        except Exception as exc:
            _LOGGER.warning("Calibration render failed for %s: %s", initial_prediction.id, exc)
            return CalibrationResult.unavailable(f"Overlay could not be displayed: {exc}")
        if rendered is False or getattr(rendered, "shown", True) is False:
            _LOGGER.info("Calibration skipped; overlay for %s was not displayed", initial_prediction.id)
            return CalibrationResult.unavailable("Overlay was not displayed, so it could not be verified.")
        # Verify and journal the rectangle that was drawn, not the raw prediction.
        drawn_rect = getattr(rendered, "rect", None)
        displayed = initial_prediction.with_rect(drawn_rect) if drawn_rect is not None else initial_prediction

        self._sleep(self._settle_delay)

        try:
            image_bytes = capture_fn()
        except Exception as exc:
            _LOGGER.warning("Calibration capture failed: %s", exc)
            return CalibrationResult.unavailable(f"Screen could not be captured: {exc}")
        if not image_bytes:
            return CalibrationResult.unavailable("Screen capture returned no data.")

        try:
            result = verifier.verify(image_bytes, displayed, self._ctx_provider())
        except AnalysisError as exc:
            _LOGGER.warning("Calibration verify failed: %s", exc)
            return CalibrationResult.unavailable(exc.user_message)

        if result.verified and result.is_low_confidence(self._threshold):
            _LOGGER.warning(
                "Low-confidence marker for %s: score=%.2f offset=%s size=%s feedback=%r",
                initial_prediction.id,
                result.accuracy_score,
                result.position_offset,
                result.size_correction,
                result.feedback,
            )
            if self._journal is not None:
                self._journal.record(displayed, result)
        else:
            _LOGGER.info("Calibration score for %s: %.2f", initial_prediction.id, result.accuracy_score)
        return result
