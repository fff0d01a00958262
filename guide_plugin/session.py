"""End-to-end handling of one user question, newest request wins."""
from __future__ import annotations

import concurrent.futures
import logging
import threading
from pathlib import Path
from typing import Callable, List, Optional

from guide_plugin.analysis_client import AnalysisClient
from guide_plugin.calibration_loop import CalibrationJournal, CalibrationLoop
from guide_plugin.errors import AnalysisCancelled, AnalysisError
from guide_plugin.models import (
    DEFAULT_OVERLAY_DURATION,
    LOGICAL,
    AnalysisResult,
    CalibrationResult,
    PredictedStep,
    ScreenContext,
    ScreenRect,
)
from guide_plugin.overlay_supervisor import OverlaySupervisor, RenderOutcome
from guide_plugin.settings import DEFAULT_IMAGE_CEILING, GuideSettings

_LOGGER = logging.getLogger("ScreenGuide.Plugin.Session")

Dispatch = Callable[[Callable[[], None]], None]
ReplyFn = Callable[[str], None]
ClientFactory = Callable[[threading.Event], AnalysisClient]
WorkerStarter = Callable[[Callable[[], None]], None]

TEST_STEPS = (
    PredictedStep("step_1", "Test frame 1", ScreenRect(100, 100, 200, 50, LOGICAL), "Top-left test coordinates"),
    PredictedStep("step_2", "Test frame 2", ScreenRect(400, 300, 150, 80, LOGICAL), "Centre test coordinates"),
    PredictedStep("step_3", "Test frame 3", ScreenRect(800, 200, 120, 40, LOGICAL), "Right-side test coordinates"),
)


def _start_thread(target: Callable[[], None]) -> None:
    threading.Thread(target=target, name="ScreenGuide-Ask", daemon=True).start()


def format_analysis_reply(result: AnalysisResult, outcome: Optional[RenderOutcome] = None) -> str:
    lines: List[str] = [result.message.strip() or "The screen was analysed."]
    if result.steps:
        lines.append("")
        lines.append("Detected UI elements:")
        for index, step in enumerate(result.steps, start=1):
            rect = step.rect
            lines.append(f"{index}. {step.text}")
            lines.append(f"   Position: ({int(rect.x)}, {int(rect.y)})")
            lines.append(f"   Size: {int(rect.width)}x{int(rect.height)}")
            if step.description:
                lines.append(f"   Details: {step.description}")
    elif result.parse_error is None:
        lines.append("")
        lines.append("No matching UI element was found.")
    if outcome is not None:
        lines.append("")
        if outcome.shown:
            lines.append("The element is highlighted with a red frame.")
        else:
            lines.append(outcome.message or "The overlay could not be displayed.")
    return "\n".join(lines)


def format_calibration_reply(result: CalibrationResult, threshold: float) -> str:
    if not result.verified:
        return f"Marker verification was skipped: {result.feedback}"
    lines = [
        "Marker verification:",
        f"Accuracy score: {result.accuracy_score * 100:.1f}%",
        f"Feedback: {result.feedback}",
    ]
    corrected = result.corrected_rect
    if corrected is not None and corrected.is_finite():
        lines.append("")
        lines.append("Suggested correction:")
        lines.append(f"  Position: ({int(corrected.x)}, {int(corrected.y)})")
        lines.append(f"  Size: {int(corrected.width)}x{int(corrected.height)}")
    if result.is_low_confidence(threshold):
        lines.append("")
        lines.append("The marker may be misplaced; this result has been logged.")
    return "\n".join(lines)


class GuideSession:
    """Runs capture, analysis, rendering and calibration for each question.

    Network and capture work happens on a worker; everything that touches the
    supervisor is sent back through ``dispatch``. Each ``ask`` bumps a
    generation counter and cancels the previous analysis, and results from an
    older generation are dropped.
    """

    def __init__(
        self,
        supervisor: OverlaySupervisor,
        client_factory: ClientFactory,
        *,
        capture: Callable[[], bytes],
        compress: Callable[[bytes, int], bytes],
        ctx_provider: Callable[[], ScreenContext],
        dispatch: Dispatch,
        reply: ReplyFn,
        calibration: Optional[CalibrationLoop] = None,
        overlay_duration: float = DEFAULT_OVERLAY_DURATION,
        image_ceiling: int = DEFAULT_IMAGE_CEILING,
        low_confidence_threshold: float = 0.8,
        start_worker: WorkerStarter = _start_thread,
        render_timeout: float = 10.0,
    ) -> None:
        self._supervisor = supervisor
        self._client_factory = client_factory
        self._capture = capture
        self._compress = compress
        self._ctx_provider = ctx_provider
        self._dispatch = dispatch
        self._reply = reply
        self._calibration = calibration
        self._overlay_duration = overlay_duration
        self._image_ceiling = image_ceiling
        self._threshold = low_confidence_threshold
        self._start_worker = start_worker
        self._render_timeout = render_timeout
        self._lock = threading.Lock()
        self._generation = 0
        self._cancel_event: Optional[threading.Event] = None

    @classmethod
    def from_settings(
        cls,
        settings: GuideSettings,
        *,
        capture: Callable[[], bytes],
        compress: Callable[[bytes, int], bytes],
        ctx_provider: Callable[[], ScreenContext],
        dispatch: Dispatch,
        reply: ReplyFn,
        supervisor: Optional[OverlaySupervisor] = None,
        client_factory: Optional[ClientFactory] = None,
        journal_dir: Optional[Path] = None,
        **kwargs,
    ) -> "GuideSession":
        """Wire a session, its supervisor, client and calibration from ``settings``."""
        if supervisor is None:
            supervisor = OverlaySupervisor.from_settings(settings)

        def settings_client(cancel_event: threading.Event) -> AnalysisClient:
            return AnalysisClient.from_settings(settings, cancel_event=cancel_event)

        calibration = None
        if settings.calibrate:
            calibration = CalibrationLoop(
                None,
                ctx_provider,
                settle_delay=settings.settle_delay,
                threshold=settings.low_confidence_threshold,
                journal=CalibrationJournal(journal_dir, retention=settings.log_retention),
            )
        return cls(
            supervisor,
            client_factory or settings_client,
            capture=capture,
            compress=compress,
            ctx_provider=ctx_provider,
            dispatch=dispatch,
            reply=reply,
            calibration=calibration,
            overlay_duration=settings.overlay_duration,
            image_ceiling=settings.image_ceiling_bytes,
            low_confidence_threshold=settings.low_confidence_threshold,
            **kwargs,
        )

    @property
    def generation(self) -> int:
        return self._generation

    def ask(self, question: str) -> int:
        """Start answering ``question``; returns the request's generation."""
        generation, cancel_event = self._next_generation()
        _LOGGER.debug("Question %d queued: %r", generation, question)
        self._start_worker(lambda: self._work(generation, question, cancel_event))
        return generation

    def show_test_steps(self, count: int = len(TEST_STEPS)) -> RenderOutcome:
        """Display fixed test rectangles without calling the analysis service."""
        steps = TEST_STEPS[: max(1, min(count, len(TEST_STEPS)))]
        self._next_generation()
        outcome = self._supervisor.render_steps(steps, self._ctx_provider(), self._overlay_duration)
        if outcome.shown:
            self._reply(f"Showing {len(steps)} test frame(s) at fixed coordinates.")
        else:
            self._reply(outcome.message)
        return outcome

    def hide(self) -> bool:
        return self._supervisor.hide()

    def _next_generation(self):
        with self._lock:
            self._generation += 1
            if self._cancel_event is not None:
                self._cancel_event.set()
            self._cancel_event = threading.Event()
            return self._generation, self._cancel_event

    # Worker side ----------------------------------------------------------

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _post_reply(self, generation: int, text: str) -> None:
        def deliver() -> None:
            if self._is_current(generation):
                self._reply(text)
            else:
                _LOGGER.debug("Dropping reply from superseded request %d", generation)

        self._dispatch(deliver)

    def _work(self, generation: int, question: str, cancel_event: threading.Event) -> None:
        client = self._client_factory(cancel_event)
        try:
            try:
                image_bytes = self._compress(self._capture(), self._image_ceiling)
                result = client.analyze(image_bytes, question, self._ctx_provider())
            except AnalysisCancelled:
                _LOGGER.info("Question %d cancelled by a newer request", generation)
                return
            except AnalysisError as exc:
                _LOGGER.warning("Question %d failed: %s", generation, exc)
                self._post_reply(generation, exc.user_message)
                return
            except Exception as exc:
                _LOGGER.exception("Question %d failed before analysis: %s", generation, exc)
                self._post_reply(generation, f"The screen could not be captured: {exc}")
                return

            if not self._is_current(generation):
                _LOGGER.debug("Discarding analysis result for superseded request %d", generation)
                return
            step = result.first_step
            if step is None:
                self._post_reply(generation, format_analysis_reply(result))
                return
            if self._calibration is None:
                self._render_on_foreground(generation, step, result)
                return

            calibration = self._calibration.run(
                step,
                lambda chosen: self._render_on_foreground(generation, chosen, result),
                lambda: self._compress(self._capture(), self._image_ceiling),
                client,
            )
            self._post_reply(generation, format_calibration_reply(calibration, self._threshold))
        finally:
            client.close()

    def _render_on_foreground(self, generation: int, step: PredictedStep, result: AnalysisResult) -> RenderOutcome:
        future: "concurrent.futures.Future[RenderOutcome]" = concurrent.futures.Future()

        def render() -> None:
            if not self._is_current(generation):
                future.set_result(RenderOutcome(shown=False, message="Superseded by a newer question."))
                return
            try:
                outcome = self._supervisor.render(step, self._ctx_provider(), self._overlay_duration)
                self._reply(format_analysis_reply(result, outcome))
            except Exception as exc:  # pragma: no cover - keep the worker from hanging
                future.set_exception(exc)
                raise
            future.set_result(outcome)

        self._dispatch(render)
        try:
            return future.result(timeout=self._render_timeout)
        except concurrent.futures.TimeoutError:
            _LOGGER.warning("Foreground render for request %d timed out", generation)
            return RenderOutcome(shown=False, message="The overlay did not respond in time.")
