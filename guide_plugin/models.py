"""Immutable value types shared by the caller and the rendering host."""
from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from guide_plugin.errors import ParseError

PHYSICAL = "physical"
LOGICAL = "logical"

DEFAULT_OVERLAY_DURATION = 5.0
LOW_CONFIDENCE_THRESHOLD = 0.8


def _coerce_float(value: Any, fallback: float = math.nan) -> float:
    if isinstance(value, bool):
        return fallback
    try:
        return float(value)
    except (TypeError, ValueError):
        return fallback


@dataclass(frozen=True)
class ScreenRect:
    x: float
    y: float
    width: float
    height: float
    space: str = PHYSICAL

    def is_finite(self) -> bool:
        return all(math.isfinite(value) for value in (self.x, self.y, self.width, self.height))

    def to_payload(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], space: str = PHYSICAL) -> "ScreenRect":
        return cls(
            x=_coerce_float(payload.get("x")),
            y=_coerce_float(payload.get("y")),
            width=_coerce_float(payload.get("width")),
            height=_coerce_float(payload.get("height")),
            space=space,
        )


@dataclass(frozen=True)
class ScreenContext:
    """Display geometry fetched fresh for each operation."""

    logical_width: float
    logical_height: float
    scale_factor: float = 1.0

    @property
    def physical_size(self) -> Tuple[float, float]:
        return self.logical_width * self.scale_factor, self.logical_height * self.scale_factor


@dataclass(frozen=True)
class PredictedStep:
    id: str
    text: str
    rect: ScreenRect
    description: str = ""

    def with_rect(self, rect: ScreenRect) -> "PredictedStep":
        return replace(self, rect=rect)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"id": self.id, "text": self.text, "description": self.description}
        payload.update(self.rect.to_payload())
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], *, index: int = 0, space: str = PHYSICAL) -> "PredictedStep":
        step_id = payload.get("id")
        return cls(
            id=str(step_id) if step_id not in (None, "") else f"step_{index + 1}",
            text=str(payload.get("text") or ""),
            rect=ScreenRect.from_payload(payload, space=space),
            description=str(payload.get("description") or ""),
        )


@dataclass(frozen=True)
class RenderRequest:
    """What crosses the process boundary; always rebuilt, never shared."""

    steps: Tuple[PredictedStep, ...]
    duration: float = DEFAULT_OVERLAY_DURATION

    def to_payload(self) -> Dict[str, Any]:
        return {
            "steps": [step.to_payload() for step in self.steps],
            "duration": float(self.duration),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "RenderRequest":
        raw_steps = payload.get("steps")
        steps: list[PredictedStep] = []
        if isinstance(raw_steps, Sequence) and not isinstance(raw_steps, (str, bytes)):
            for index, item in enumerate(raw_steps):
                if isinstance(item, Mapping):
                    steps.append(PredictedStep.from_payload(item, index=index, space=LOGICAL))
        duration = _coerce_float(payload.get("duration"), DEFAULT_OVERLAY_DURATION)
        if not math.isfinite(duration) or duration <= 0:
            duration = DEFAULT_OVERLAY_DURATION
        return cls(steps=tuple(steps), duration=duration)


@dataclass(frozen=True)
class CalibrationResult:
    accuracy_score: float
    position_offset: Tuple[float, float] = (0.0, 0.0)
    size_correction: Tuple[float, float] = (0.0, 0.0)
    feedback: str = ""
    corrected_rect: Optional[ScreenRect] = None
    recovered: bool = field(default=False, compare=False)
    verified: bool = True

    def __post_init__(self) -> None:
        score = _coerce_float(self.accuracy_score, 0.0)
        if not math.isfinite(score):
            score = 0.0
        object.__setattr__(self, "accuracy_score", max(0.0, min(1.0, score)))

    def is_low_confidence(self, threshold: float = LOW_CONFIDENCE_THRESHOLD) -> bool:
        return self.accuracy_score < threshold

    @classmethod
    def unavailable(cls, reason: str) -> "CalibrationResult":
        return cls(accuracy_score=0.0, feedback=reason, verified=False)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], *, recovered: bool = False) -> "CalibrationResult":
        offset = payload.get("position_offset")
        offset = offset if isinstance(offset, Mapping) else {}
        correction = payload.get("size_correction")
        correction = correction if isinstance(correction, Mapping) else {}
        corrected = payload.get("corrected_position")
        corrected_rect = None
        if isinstance(corrected, Mapping):
            corrected_rect = ScreenRect.from_payload(corrected, space=LOGICAL)
        return cls(
            accuracy_score=_coerce_float(payload.get("accuracy_score"), 0.0),
            position_offset=(_coerce_float(offset.get("x"), 0.0), _coerce_float(offset.get("y"), 0.0)),
            size_correction=(
                _coerce_float(correction.get("width"), 0.0),
                _coerce_float(correction.get("height"), 0.0),
            ),
            feedback=str(payload.get("feedback") or ""),
            corrected_rect=corrected_rect,
            recovered=recovered,
        )


@dataclass(frozen=True)
class AnalysisResult:
    message: str
    steps: Tuple[PredictedStep, ...] = field(default_factory=tuple)
    parse_error: Optional[ParseError] = None

    @property
    def first_step(self) -> Optional[PredictedStep]:
        return self.steps[0] if self.steps else None
