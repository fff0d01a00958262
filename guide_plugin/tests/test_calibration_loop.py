from __future__ import annotations

import json

from guide_plugin.calibration_loop import JOURNAL_FILENAME, CalibrationJournal, CalibrationLoop
from guide_plugin.errors import OverloadedError
from guide_plugin.models import LOGICAL, PHYSICAL, CalibrationResult, PredictedStep, ScreenContext, ScreenRect
from guide_plugin.overlay_supervisor import RenderOutcome

CTX = ScreenContext(1920, 1080, 2.0)
STEP = PredictedStep("step_1", "Close", ScreenRect(100, 200, 50, 30, LOGICAL), "red")


class DummyVerifier:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    def verify(self, image_bytes, original_step, ctx):
        self.calls.append((image_bytes, original_step, ctx))
        if self.error is not None:
            raise self.error
        return self.result


def _loop(verifier, journal=None):
    delays = []
    loop = CalibrationLoop(verifier, lambda: CTX, settle_delay=2.0, journal=journal, sleep=delays.append)
    return loop, delays


def test_render_wait_capture_verify_in_order():
    events = []
    verifier = DummyVerifier(CalibrationResult(accuracy_score=0.95, feedback="good"))
    loop, delays = _loop(verifier)

    def render(step):
        events.append(("render", step.id))
        return RenderOutcome(shown=True)

    def capture():
        events.append(("capture", list(delays)))
        return b"jpeg"

    result = loop.run(STEP, render, capture)

    assert result.accuracy_score == 0.95
    assert events == [("render", "step_1"), ("capture", [2.0])]
    assert verifier.calls == [(b"jpeg", STEP, CTX)]


def test_low_score_is_journaled(tmp_path):
    journal = CalibrationJournal(tmp_path)
    verifier = DummyVerifier(
        CalibrationResult(
            accuracy_score=0.4,
            position_offset=(-10.0, 5.0),
            feedback="too far left",
            corrected_rect=ScreenRect(110, 195, 60, 30, LOGICAL),
        )
    )
    loop, _delays = _loop(verifier, journal)

    result = loop.run(STEP, lambda step: True, lambda: b"jpeg")

    assert result.accuracy_score == 0.4
    lines = (tmp_path / JOURNAL_FILENAME).read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    entry = json.loads(lines[0])
    assert entry["step"]["id"] == "step_1"
    assert entry["accuracy_score"] == 0.4
    assert entry["position_offset"] == [-10.0, 5.0]
    assert entry["corrected_rect"] == {"x": 110, "y": 195, "width": 60, "height": 30}


def test_drawn_rect_is_verified_and_journaled(tmp_path):
    journal = CalibrationJournal(tmp_path)
    verifier = DummyVerifier(CalibrationResult(accuracy_score=0.3, feedback="off"))
    loop, _delays = _loop(verifier, journal)
    raw = STEP.with_rect(ScreenRect(200, 400, 100, 60, PHYSICAL))
    drawn = ScreenRect(100, 200, 50, 30, LOGICAL)

    loop.run(raw, lambda step: RenderOutcome(shown=True, rect=drawn), lambda: b"jpeg")

    assert verifier.calls[0][1].rect == drawn
    entry = json.loads((tmp_path / JOURNAL_FILENAME).read_text(encoding="utf-8").splitlines()[0])
    assert entry["step"]["x"] == 100
    assert entry["step"]["width"] == 50


def test_high_score_is_not_journaled(tmp_path):
    journal = CalibrationJournal(tmp_path)
    loop, _delays = _loop(DummyVerifier(CalibrationResult(accuracy_score=0.9)), journal)

    loop.run(STEP, lambda step: True, lambda: b"jpeg")

    path = tmp_path / JOURNAL_FILENAME
    assert not path.exists() or path.read_text(encoding="utf-8") == ""


def test_undisplayed_overlay_skips_verification():
    verifier = DummyVerifier(CalibrationResult(accuracy_score=1.0))
    loop, delays = _loop(verifier)

    result = loop.run(STEP, lambda step: RenderOutcome(shown=False), lambda: b"jpeg")

    assert not result.verified
    assert verifier.calls == []
    assert delays == []


def test_render_exception_is_unavailable():
    def render(step):
        raise RuntimeError("no display")

    loop, _delays = _loop(DummyVerifier())
    result = loop.run(STEP, render, lambda: b"jpeg")
    assert not result.verified
    assert "no display" in result.feedback


def test_capture_failure_is_unavailable():
    def capture():
        raise OSError("permission denied")

    verifier = DummyVerifier(CalibrationResult(accuracy_score=1.0))
    loop, _delays = _loop(verifier)

    result = loop.run(STEP, lambda step: True, capture)
    assert not result.verified
    assert verifier.calls == []

    result = loop.run(STEP, lambda step: True, lambda: b"")
    assert not result.verified


def test_service_failure_is_unavailable_with_user_message():
    loop, _delays = _loop(DummyVerifier(error=OverloadedError("busy", status=529, attempts=3)))
    result = loop.run(STEP, lambda step: True, lambda: b"jpeg")
    assert not result.verified
    assert result.feedback == OverloadedError.user_message


def test_per_run_verifier_overrides_default():
    default = DummyVerifier(CalibrationResult(accuracy_score=0.1))
    override = DummyVerifier(CalibrationResult(accuracy_score=0.9))
    loop, _delays = _loop(default)

    result = loop.run(STEP, lambda step: True, lambda: b"jpeg", override)

    assert result.accuracy_score == 0.9
    assert default.calls == []


def test_missing_verifier_is_unavailable():
    loop, _delays = _loop(None)
    assert not loop.run(STEP, lambda step: True, lambda: b"jpeg").verified
