from __future__ import annotations

import base64
import json
import threading

import pytest
import requests

from guide_plugin.analysis_client import API_VERSION, AnalysisClient, image_payload
from guide_plugin.errors import (
    AnalysisCancelled,
    OverloadedError,
    TerminalServiceError,
    TransientServiceError,
)
from guide_plugin.models import LOGICAL, PredictedStep, ScreenContext, ScreenRect

CTX = ScreenContext(1440, 900, 2.0)
IMAGE = b"\xff\xd8jpeg-bytes"


class DummyResponse:
    def __init__(self, status_code, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text
        self.closed = False

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload

    def close(self):
        self.closed = True


class DummySession:
    def __init__(self, responses):
        self.headers = {}
        self._responses = list(responses)
        self.calls = []
        self.closed = False

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def close(self):
        self.closed = True


def _text_response(text):
    return DummyResponse(200, {"content": [{"type": "text", "text": text}]})


def _client(responses, **kwargs):
    session = DummySession(responses)
    delays = []
    client = AnalysisClient("key-123", session=session, sleep=delays.append, **kwargs)
    return client, session, delays


ANSWER = json.dumps(
    {
        "message": "The close button is top-left",
        "tutorial_steps": [{"text": "Close", "x": 20, "y": 40, "width": 24, "height": 24, "description": "red"}],
    }
)


def test_analyze_sends_expected_request():
    client, session, delays = _client([_text_response(ANSWER)])
    result = client.analyze(IMAGE, "Where is the close button?", CTX)

    assert result.message == "The close button is top-left"
    assert result.first_step.rect == ScreenRect(20, 40, 24, 24)
    assert delays == []
    call = session.calls[0]
    assert call["headers"]["x-api-key"] == "key-123"
    assert call["headers"]["anthropic-version"] == API_VERSION
    body = call["json"]
    assert body["max_tokens"] == 1500
    assert "1440x900" in body["system"]
    image_block, text_block = body["messages"][0]["content"]
    assert image_block["source"]["data"] == base64.b64encode(IMAGE).decode("ascii")
    assert image_block["source"]["media_type"] == "image/jpeg"
    assert text_block["text"] == "Where is the close button?"
    assert call["headers"]["User-Agent"].startswith("ScreenGuide/")


def test_overload_exhausts_three_attempts_with_backoff():
    client, session, delays = _client([DummyResponse(529, {"error": {"message": "overloaded"}})] * 3)
    with pytest.raises(OverloadedError) as excinfo:
        client.analyze(IMAGE, "q", CTX)
    assert len(session.calls) == 3
    assert delays == [2.0, 5.0]
    assert excinfo.value.attempts == 3
    assert excinfo.value.status == 529
    assert "overloaded" in excinfo.value.user_message.lower()


def test_gateway_error_then_success_recovers():
    client, session, delays = _client([DummyResponse(503, text="unavailable"), _text_response(ANSWER)])
    result = client.analyze(IMAGE, "q", CTX)
    assert len(result.steps) == 1
    assert len(session.calls) == 2
    assert delays == [2.0]


def test_network_errors_are_retried():
    failure = requests.exceptions.ConnectionError("reset")
    client, session, delays = _client([failure, failure, failure])
    with pytest.raises(TransientServiceError) as excinfo:
        client.analyze(IMAGE, "q", CTX)
    assert not isinstance(excinfo.value, OverloadedError)
    assert excinfo.value.status is None
    assert len(session.calls) == 3
    assert delays == [2.0, 5.0]


@pytest.mark.parametrize("status", [400, 401, 404, 500])
def test_terminal_status_is_not_retried(status):
    client, session, delays = _client([DummyResponse(status, {"error": {"message": "bad"}})])
    with pytest.raises(TerminalServiceError) as excinfo:
        client.analyze(IMAGE, "q", CTX)
    assert excinfo.value.attempts == 1
    assert excinfo.value.status == status
    assert len(session.calls) == 1
    assert delays == []


def test_undecodable_success_envelope_is_terminal():
    client, session, _delays = _client([DummyResponse(200, None, text="<html>")])
    with pytest.raises(TerminalServiceError):
        client.analyze(IMAGE, "q", CTX)
    assert len(session.calls) == 1


def test_cancel_before_first_attempt():
    event = threading.Event()
    event.set()
    client, session, _delays = _client([_text_response(ANSWER)], cancel_event=event)
    with pytest.raises(AnalysisCancelled):
        client.analyze(IMAGE, "q", CTX)
    assert session.calls == []


def test_cancel_during_backoff_stops_retrying():
    session = DummySession([DummyResponse(529)] * 3)
    event = threading.Event()

    def sleep(_delay):
        event.set()

    client = AnalysisClient("k", session=session, sleep=sleep, cancel_event=event)
    with pytest.raises(AnalysisCancelled):
        client.analyze(IMAGE, "q", CTX)
    assert len(session.calls) == 1


def test_default_sleep_waits_on_cancel_event():
    event = threading.Event()
    event.set()
    client = AnalysisClient("k", session=DummySession([]), cancel_event=event)
    # Returns immediately because the event is already set.
    client._cancellable_sleep(60.0)
    client.cancel()
    assert client.cancel_event.is_set()


def test_oversized_image_is_rejected_without_network():
    client, session, _delays = _client([], image_ceiling=4)
    with pytest.raises(TerminalServiceError) as excinfo:
        client.analyze(b"12345", "q", CTX)
    assert excinfo.value.attempts == 0
    assert session.calls == []


def test_image_payload_rejects_empty_bytes():
    with pytest.raises(TerminalServiceError):
        image_payload(b"")
    assert image_payload(b"abc") == "YWJj"


def test_unparseable_analysis_becomes_message_with_error():
    client, _session, _delays = _client([_text_response("I only see a desktop.")])
    result = client.analyze(IMAGE, "q", CTX)
    assert result.message == "I only see a desktop."
    assert result.steps == ()
    assert result.parse_error is not None


def test_verify_parses_calibration():
    answer = json.dumps(
        {
            "accuracy_score": 0.65,
            "position_offset": {"x": -10, "y": 5},
            "feedback": "A bit left",
            "corrected_position": {"x": 110, "y": 95, "width": 180, "height": 55},
        }
    )
    client, session, _delays = _client([_text_response(answer)])
    step = PredictedStep("step_1", "Close", ScreenRect(100, 200, 50, 30, LOGICAL))
    result = client.verify(IMAGE, step, CTX)

    assert result.accuracy_score == 0.65
    assert result.verified
    assert result.corrected_rect == ScreenRect(110, 95, 180, 55, LOGICAL)
    body = session.calls[0]["json"]
    assert body["max_tokens"] == 1000
    assert '"Close" at (100, 200) with size 50 x 30' in body["system"]


def test_verify_unparseable_is_unavailable():
    client, _session, _delays = _client([_text_response("cannot judge")])
    step = PredictedStep("step_1", "Close", ScreenRect(1, 2, 3, 4, LOGICAL))
    result = client.verify(IMAGE, step, CTX)
    assert not result.verified
    assert result.accuracy_score == 0.0


def test_close_closes_session():
    client, session, _delays = _client([])
    client.close()
    assert session.closed
