"""HTTP client for the vision analysis service with bounded retries."""
from __future__ import annotations

import base64
import logging
import threading
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

import requests
from requests import exceptions as requests_exceptions

from guide_plugin.errors import (
    AnalysisCancelled,
    OverloadedError,
    TerminalServiceError,
    TransientServiceError,
)
from guide_plugin.models import AnalysisResult, CalibrationResult, PredictedStep, ScreenContext
from guide_plugin.response_parser import parse_analysis, parse_calibration
from guide_plugin.settings import (
    DEFAULT_API_URL,
    DEFAULT_BACKOFF,
    DEFAULT_IMAGE_CEILING,
    DEFAULT_MODEL,
    GuideSettings,
)
from guide_plugin.version import __version__

_LOGGER = logging.getLogger("ScreenGuide.Plugin.AnalysisClient")

API_VERSION = "2023-06-01"
RETRYABLE_STATUSES = frozenset({502, 503, 529})
OVERLOADED_STATUS = 529
ANALYZE_MAX_TOKENS = 1500
VERIFY_MAX_TOKENS = 1000
_USER_AGENT = f"ScreenGuide/{__version__}"

ANALYZE_SYSTEM_PROMPT = """You are an assistant with a deep understanding of desktop UI structure.

Screen information:
- Logical resolution: {width}x{height}
- Scale factor: {scale}
- The screenshot was captured in physical pixels.

Layout reminders:
1. The menu bar runs along the top edge (roughly y=0-30).
2. Application windows occupy the middle of the screen; each has close,
   minimise and zoom buttons at its top-left corner (about 12x12 pixels).
3. The dock runs along the bottom edge.

Rules:
1. Detect only the elements that best match the intent of the question.
2. Avoid listing menu bar items unless the question asks about menus.
3. Distinguish application windows from the menu bar.
4. Give coordinates in physical pixels of the screenshot, origin top-left.

Answer with JSON in exactly this shape:
{{
  "message": "explanation for the user",
  "tutorial_steps": [
    {{"text": "element name", "x": 100, "y": 100, "width": 200, "height": 50, "description": "details"}}
  ]
}}
If no element is found, return an empty tutorial_steps array."""

VERIFY_SYSTEM_PROMPT = """You are checking your own earlier prediction.

The previous analysis placed "{text}" at ({x}, {y}) with size {width} x {height}.
The screenshot shows a red frame at that position. Judge whether the frame
accurately surrounds the element "{text}".

Criteria: position accuracy, size accuracy, overall usefulness to the user.

Answer with JSON in exactly this shape:
{{
  "accuracy_score": 0.85,
  "position_offset": {{"x": -10, "y": 5}},
  "size_correction": {{"width": 20, "height": -5}},
  "feedback": "The frame is mostly right but slightly to the left.",
  "corrected_position": {{"x": 110, "y": 95, "width": 180, "height": 55}}
}}
accuracy_score ranges from 0.0 (missed) to 1.0 (perfect). Offsets,
corrections and corrected_position are in logical pixels."""

VERIFY_QUESTION = "Evaluate how accurately the red frame in this screenshot is placed."

SleepFunc = Callable[[float], None]


def image_payload(image_bytes: bytes, ceiling: int = DEFAULT_IMAGE_CEILING) -> str:
    """Base64-encode an already compressed JPEG, refusing anything over ``ceiling``."""

    if not image_bytes:
        raise TerminalServiceError("Screenshot payload is empty", status=None, attempts=0)
    if len(image_bytes) > ceiling:
        raise TerminalServiceError(
            f"Screenshot payload is {len(image_bytes)} bytes; limit is {ceiling}",
            status=None,
            attempts=0,
        )
    return base64.b64encode(image_bytes).decode("ascii")


class AnalysisClient:
    """Sends screenshots to the analysis service and parses its answers.

    The client owns no global state. Retries cover overload (529), gateway
    errors (502/503) and network failures only; every such failure is
    followed by the next delay in ``backoff`` unless it was the last attempt.
    ``cancel_event`` interrupts the loop between attempts.
    """

    def __init__(
        self,
        api_key: str,
        *,
        session: Optional[requests.Session] = None,
        api_url: str = DEFAULT_API_URL,
        model: str = DEFAULT_MODEL,
        timeout: float = 30.0,
        max_attempts: int = 3,
        backoff: Sequence[float] = DEFAULT_BACKOFF,
        image_ceiling: int = DEFAULT_IMAGE_CEILING,
        sleep: Optional[SleepFunc] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self._api_key = api_key
        self._session = session or requests.Session()
        self._api_url = api_url
        self._model = model
        self._timeout = timeout
        self._max_attempts = max(1, int(max_attempts))
        self._backoff = tuple(backoff) or (0.0,)
        self._image_ceiling = image_ceiling
        self._cancel_event = cancel_event or threading.Event()
        self._sleep = sleep or self._cancellable_sleep

    @classmethod
    def from_settings(
        cls,
        settings: GuideSettings,
        *,
        session: Optional[requests.Session] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> "AnalysisClient":
        return cls(
            settings.api_key,
            session=session,
            api_url=settings.api_url,
            model=settings.model,
            timeout=settings.request_timeout,
            max_attempts=settings.max_attempts,
            backoff=settings.backoff_schedule,
            image_ceiling=settings.image_ceiling_bytes,
            cancel_event=cancel_event,
        )

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel_event

    def cancel(self) -> None:
        self._cancel_event.set()

    def close(self) -> None:
        self._session.close()

    # Public operations ----------------------------------------------------

    def analyze(self, image_bytes: bytes, question: str, ctx: ScreenContext) -> AnalysisResult:
        """Ask where the elements named by ``question`` are on the screenshot.

        Step rectangles are returned in the service's physical pixel space.
        """
        system = ANALYZE_SYSTEM_PROMPT.format(
            width=int(ctx.logical_width),
            height=int(ctx.logical_height),
            scale=ctx.scale_factor,
        )
        body = self._build_body(image_payload(image_bytes, self._image_ceiling), question, system, ANALYZE_MAX_TOKENS)
        text = self._extract_text(self._post_with_retry(body, "analyze"))
        outcome = parse_analysis(text)
        if outcome.value is not None:
            result = outcome.value
            _LOGGER.info("Analysis returned %d step(s)", len(result.steps))
            return result
        _LOGGER.warning("Analysis text could not be parsed; returning raw text as message")
        return AnalysisResult(message=text.strip() or outcome.error.user_message, parse_error=outcome.error)

    def verify(self, image_bytes: bytes, original_step: PredictedStep, ctx: ScreenContext) -> CalibrationResult:
        """Score how well the displayed marker for ``original_step`` covers its element."""
        rect = original_step.rect
        system = VERIFY_SYSTEM_PROMPT.format(
            text=original_step.text,
            x=_format_number(rect.x),
            y=_format_number(rect.y),
            width=_format_number(rect.width),
            height=_format_number(rect.height),
        )
        body = self._build_body(image_payload(image_bytes, self._image_ceiling), VERIFY_QUESTION, system, VERIFY_MAX_TOKENS)
        text = self._extract_text(self._post_with_retry(body, "verify"))
        outcome = parse_calibration(text)
        if outcome.value is None:
            _LOGGER.warning("Verification text could not be parsed (%s)", outcome.error.detail)
            return CalibrationResult.unavailable(outcome.error.user_message)
        result = outcome.value
        _LOGGER.info(
            "Verification score %.2f for %s (recovered=%s)", result.accuracy_score, original_step.id, result.recovered
        )
        return result

    # Internal helpers -----------------------------------------------------

    def _build_body(self, image_data: str, question: str, system: str, max_tokens: int) -> Dict[str, Any]:
        return {
            "model": self._model,
            "max_tokens": max_tokens,
            "system": system,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {"type": "base64", "media_type": "image/jpeg", "data": image_data},
                        },
                        {"type": "text", "text": question},
                    ],
                }
            ],
        }

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "anthropic-version": API_VERSION,
            "x-api-key": self._api_key,
            "User-Agent": _USER_AGENT,
        }

    def _post_with_retry(self, body: Mapping[str, Any], operation: str) -> Mapping[str, Any]:
        last_status: Optional[int] = None
        last_detail = ""
        for attempt in range(1, self._max_attempts + 1):
            if self._cancel_event.is_set():
                raise AnalysisCancelled(f"{operation} cancelled before attempt {attempt}", attempts=attempt - 1)
            _LOGGER.debug("%s attempt %d/%d", operation, attempt, self._max_attempts)
            try:
                response = self._session.post(self._api_url, json=body, headers=self._headers(), timeout=self._timeout)
            except requests_exceptions.RequestException as exc:
                last_status = None
                last_detail = str(exc)
                _LOGGER.warning("%s attempt %d failed at network level: %s", operation, attempt, exc)
            else:
                try:
                    if response.status_code < 400:
                        return self._decode_envelope(response, attempt)
                    last_status = response.status_code
                    last_detail = _error_detail(response)
                finally:
                    response.close()
                if last_status not in RETRYABLE_STATUSES:
                    _LOGGER.warning("%s failed with status %s: %s", operation, last_status, last_detail)
                    raise TerminalServiceError(
                        f"Analysis service rejected the request ({last_status}): {last_detail}",
                        status=last_status,
                        attempts=attempt,
                    )
                _LOGGER.warning("%s attempt %d got retryable status %s", operation, attempt, last_status)
            if attempt == self._max_attempts:
                break
            delay = self._backoff[min(attempt - 1, len(self._backoff) - 1)]
            _LOGGER.debug("%s backing off %.1fs", operation, delay)
            self._sleep(delay)
        if self._cancel_event.is_set():
            raise AnalysisCancelled(f"{operation} cancelled during backoff", attempts=self._max_attempts)
        if last_status == OVERLOADED_STATUS:
            raise OverloadedError(
                f"Analysis service overloaded after {self._max_attempts} attempts",
                status=last_status,
                attempts=self._max_attempts,
            )
        raise TransientServiceError(
            f"Analysis service unavailable after {self._max_attempts} attempts ({last_status or 'network'}): {last_detail}",
            status=last_status,
            attempts=self._max_attempts,
        )

    def _decode_envelope(self, response: requests.Response, attempt: int) -> Mapping[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise TerminalServiceError(
                f"Unable to decode analysis service response: {exc}",
                status=response.status_code,
                attempts=attempt,
            ) from exc
        if not isinstance(data, dict):
            raise TerminalServiceError(
                "Analysis service response was not a JSON object",
                status=response.status_code,
                attempts=attempt,
            )
        return data

    def _extract_text(self, envelope: Mapping[str, Any]) -> str:
        content = envelope.get("content")
        if isinstance(content, list):
            parts = [
                str(block.get("text") or "")
                for block in content
                if isinstance(block, Mapping) and block.get("type", "text") == "text"
            ]
            if parts:
                return "".join(parts)
        raise TerminalServiceError("Analysis service response carried no text content", status=200, attempts=1)

    def _cancellable_sleep(self, delay: float) -> None:
        self._cancel_event.wait(delay)


def _error_detail(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return (response.text or "").strip()[:200]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, Mapping):
            return str(error.get("message") or error.get("type") or error)
        if error:
            return str(error)
    return str(data)[:200]


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:.1f}"
