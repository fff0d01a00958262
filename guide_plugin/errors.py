"""Error taxonomy for the overlay and analysis pipeline."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

EXCERPT_LIMIT = 500


class GuideError(Exception):
    """Base class; ``user_message`` is safe to show in the chat panel."""

    user_message = "Something went wrong while analysing the screen."

    def __init__(self, message: str, *, user_message: Optional[str] = None) -> None:
        super().__init__(message)
        if user_message is not None:
            self.user_message = user_message


class AnalysisError(GuideError):
    """Raised by AnalysisClient once its retry budget is spent or on terminal failures."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        attempts: int = 0,
        user_message: Optional[str] = None,
    ) -> None:
        super().__init__(message, user_message=user_message)
        self.status = status
        self.attempts = attempts


class TransientServiceError(AnalysisError):
    """Overload, 502/503 or a network-level failure."""

    user_message = "The analysis service is temporarily unavailable. Please try again."


class OverloadedError(TransientServiceError):
    """The service answered 529 on the final attempt."""

    user_message = "The analysis service is overloaded right now. Try again shortly."


class TerminalServiceError(AnalysisError):
    """Bad request, auth failure or an undecodable success envelope; never retried."""

    user_message = "The analysis request was rejected by the service."


class AnalysisCancelled(AnalysisError):
    """A newer request superseded this one between attempts."""

    user_message = "The previous question was superseded."


class TransportError(GuideError):
    """Render channel missing, interrupted, invalidated or timed out."""

    user_message = "The overlay could not be shown."

    def __init__(self, message: str, *, reason: str = "unavailable", user_message: Optional[str] = None) -> None:
        super().__init__(message, user_message=user_message)
        self.reason = reason


class GeometryError(GuideError):
    """Never raised: coordinate_transform substitutes a safe rectangle instead."""


@dataclass(frozen=True)
class ParseError:
    """Returned (not raised) by the response parser."""

    kind: str
    detail: str
    excerpt: str = ""

    RECOVERABLE = "recoverable"
    UNRECOVERABLE = "unrecoverable"

    @classmethod
    def unrecoverable(cls, detail: str, raw_text: str) -> "ParseError":
        return cls(kind=cls.UNRECOVERABLE, detail=detail, excerpt=(raw_text or "")[:EXCERPT_LIMIT])

    @property
    def user_message(self) -> str:
        return "The analysis result could not be read, so no element was highlighted."
