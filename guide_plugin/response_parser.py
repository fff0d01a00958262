"""Tolerant parsing of analysis-service text into structured predictions.

Model output is free-form: JSON wrapped in prose, numbers written as ``+12``,
raw newlines inside string values. Parsing runs three passes:

1. decode the outermost ``{...}`` span as-is;
2. decode it again after ``repair_json``;
3. pull known fields out with regular expressions.

Nothing here raises. Failures come back as a ``ParseError`` value carrying the
first 500 characters of the raw text.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from guide_plugin.errors import ParseError
from guide_plugin.models import AnalysisResult, CalibrationResult, PredictedStep, PHYSICAL

_LOGGER = logging.getLogger("ScreenGuide.Plugin.Parser")

TEXT_FIELDS = frozenset({"feedback", "message", "text", "description"})
_COORD_KEYS = ("x", "y", "width", "height")
_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")
_NUMBER = r"([+-]?\d*\.?\d+)"
_ACCURACY_RE = re.compile(r'"accuracy_score"\s*:\s*' + _NUMBER)
_FEEDBACK_RE = re.compile(r'"feedback"\s*:\s*"((?:[^"\\]|\\.)*)"', re.DOTALL)
_MESSAGE_RE = re.compile(r'"message"\s*:\s*"((?:[^"\\]|\\.)*)"', re.DOTALL)
_FLAT_OBJECT_RE = re.compile(r"\{[^{}]*\}")

Parsed = Union[AnalysisResult, CalibrationResult]


@dataclass(frozen=True)
class ParseOutcome:
    value: Optional[Parsed] = None
    error: Optional[ParseError] = None
    normalized_text: str = ""
    recovered: bool = False

    @property
    def ok(self) -> bool:
        return self.value is not None


def extract_json_span(text: str) -> Optional[str]:
    """Return the outermost ``{...}`` span, ignoring code fences and prose."""
    if not text:
        return None
    stripped = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", text.strip()))
    start = stripped.find("{")
    end = stripped.rfind("}")
    if start < 0 or end <= start:
        return None
    return stripped[start : end + 1]


def repair_json(text: str) -> str:
    """Normalise ``+`` numbers and escape control characters in text fields.

    Only characters outside string literals are considered for the ``+``
    rewrite, and only string values of ``TEXT_FIELDS`` are escaped, so a
    document that is already valid passes through unchanged.
    """
    out: List[str] = []
    in_string = False
    escaped = False
    string_is_text_value = False
    current: List[str] = []
    last_string = ""
    current_key: Optional[str] = None
    last_significant = ""
    length = len(text)
    index = 0
    while index < length:
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
                current.append(char)
                out.append(char)
            elif char == "\\":
                escaped = True
                current.append(char)
                out.append(char)
            elif char == '"':
                in_string = False
                last_string = "".join(current)
                out.append(char)
                last_significant = '"'
            elif string_is_text_value and char in _ESCAPES:
                out.append(_ESCAPES[char])
                current.append(_ESCAPES[char])
            elif string_is_text_value and ord(char) < 0x20:
                pass
            else:
                current.append(char)
                out.append(char)
            index += 1
            continue

        if char == '"':
            in_string = True
            current = []
            string_is_text_value = last_significant == ":" and current_key in TEXT_FIELDS
            out.append(char)
        elif char == "+" and last_significant in (":", "[", ",") and index + 1 < length and (
            text[index + 1].isdigit() or text[index + 1] == "."
        ):
            pass
        else:
            if char == ":":
                current_key = last_string
            if not char.isspace():
                last_significant = char
            out.append(char)
        index += 1
    return "".join(out)


def _decode_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def _unescape_fragment(fragment: str) -> str:
    repaired = "".join(_ESCAPES.get(char, char) for char in fragment if char in _ESCAPES or ord(char) >= 0x20)
    try:
        return json.loads(f'"{repaired}"')
    except (json.JSONDecodeError, ValueError):
        return fragment.replace('\\"', '"')


def _steps_from(raw_steps: Any) -> List[PredictedStep]:
    steps: List[PredictedStep] = []
    if not isinstance(raw_steps, Sequence) or isinstance(raw_steps, (str, bytes)):
        return steps
    for item in raw_steps:
        if not isinstance(item, Mapping):
            continue
        if any(key not in item for key in _COORD_KEYS):
            _LOGGER.debug("Skipping step without coordinates: %s", item)
            continue
        steps.append(PredictedStep.from_payload(item, index=len(steps), space=PHYSICAL))
    return steps


def _analysis_from(payload: Mapping[str, Any]) -> Optional[AnalysisResult]:
    raw_steps = payload.get("tutorial_steps", payload.get("steps"))
    message = payload.get("message")
    if message is None and raw_steps is None:
        return None
    # Service ids are ignored; steps are numbered in service order.
    numbered = tuple(
        replace(step, id=f"step_{index + 1}") for index, step in enumerate(_steps_from(raw_steps))
    )
    return AnalysisResult(message=str(message or ""), steps=numbered)


def _calibration_from(payload: Mapping[str, Any], *, recovered: bool) -> Optional[CalibrationResult]:
    if "accuracy_score" not in payload:
        return None
    return CalibrationResult.from_payload(payload, recovered=recovered)


def _structured_passes(raw_text: str, build) -> Optional[ParseOutcome]:
    span = extract_json_span(raw_text)
    if span is None:
        return None
    data = _decode_object(span)
    if data is not None:
        value = build(data, False)
        if value is not None:
            return ParseOutcome(value=value, normalized_text=span)
    repaired = repair_json(span)
    data = _decode_object(repaired)
    if data is not None:
        value = build(data, True)
        if value is not None:
            _LOGGER.debug("Response decoded after repair (%d chars)", len(repaired))
            return ParseOutcome(value=value, normalized_text=repaired, recovered=True)
    return None


def _extract_group(pattern: "re.Pattern[str]", text: str) -> Optional[str]:
    match = pattern.search(text)
    return match.group(1) if match else None


def _sub_object(text: str, key: str) -> str:
    match = re.search(r'"%s"\s*:\s*\{([^{}]*)\}' % re.escape(key), text)
    return match.group(1) if match else ""


def _number_in(text: str, key: str) -> float:
    match = re.search(r'"%s"\s*:\s*%s' % (re.escape(key), _NUMBER), text)
    if not match:
        return 0.0
    try:
        return float(match.group(1))
    except ValueError:
        return 0.0


def _calibration_by_regex(raw_text: str) -> Optional[Dict[str, Any]]:
    accuracy = _extract_group(_ACCURACY_RE, raw_text)
    if accuracy is None:
        return None
    try:
        score = float(accuracy)
    except ValueError:
        return None
    offset_text = _sub_object(raw_text, "position_offset") or raw_text
    size_text = _sub_object(raw_text, "size_correction") or raw_text
    feedback = _extract_group(_FEEDBACK_RE, raw_text)
    return {
        "accuracy_score": score,
        "position_offset": {"x": _number_in(offset_text, "x"), "y": _number_in(offset_text, "y")},
        "size_correction": {"width": _number_in(size_text, "width"), "height": _number_in(size_text, "height")},
        "feedback": _unescape_fragment(feedback) if feedback is not None else "Result recovered by fallback extraction",
        "corrected_position": None,
    }


def _analysis_by_regex(raw_text: str) -> Optional[Dict[str, Any]]:
    message = _extract_group(_MESSAGE_RE, raw_text)
    steps: List[Dict[str, Any]] = []
    for match in _FLAT_OBJECT_RE.finditer(raw_text):
        candidate = _decode_object(repair_json(match.group(0)))
        if candidate and all(key in candidate for key in _COORD_KEYS):
            steps.append(candidate)
    if message is None and not steps:
        return None
    return {"message": _unescape_fragment(message) if message is not None else "", "tutorial_steps": steps}


def parse_calibration(raw_text: str) -> ParseOutcome:
    outcome = _structured_passes(raw_text or "", lambda data, recovered: _calibration_from(data, recovered=recovered))
    if outcome is not None:
        return outcome
    payload = _calibration_by_regex(raw_text or "")
    if payload is not None:
        _LOGGER.info("Verification response recovered by field extraction")
        return ParseOutcome(
            value=CalibrationResult.from_payload(payload, recovered=True),
            normalized_text=json.dumps(payload, ensure_ascii=False),
            recovered=True,
        )
    _LOGGER.warning("Unable to parse verification response: %r", (raw_text or "")[:200])
    return ParseOutcome(error=ParseError.unrecoverable("no accuracy_score found", raw_text or ""))


def parse_analysis(raw_text: str) -> ParseOutcome:
    outcome = _structured_passes(raw_text or "", lambda data, _recovered: _analysis_from(data))
    if outcome is not None:
        return outcome
    payload = _analysis_by_regex(raw_text or "")
    if payload is not None:
        value = _analysis_from(payload)
        if value is not None:
            _LOGGER.info("Analysis response recovered by field extraction (%d steps)", len(value.steps))
            return ParseOutcome(
                value=value,
                normalized_text=json.dumps(payload, ensure_ascii=False),
                recovered=True,
            )
    _LOGGER.warning("Unable to parse analysis response: %r", (raw_text or "")[:200])
    return ParseOutcome(error=ParseError.unrecoverable("no message or steps found", raw_text or ""))


def parse(raw_text: str) -> ParseOutcome:
    """Parse either response kind, picking calibration when a score is present."""
    if raw_text and "accuracy_score" in raw_text:
        return parse_calibration(raw_text)
    return parse_analysis(raw_text)
