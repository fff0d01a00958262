"""Owns the single on-screen overlay and the connection used to show it."""
from __future__ import annotations

import enum
import logging
import queue
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence, Tuple

from guide_plugin.control_channel import INTERRUPTED, ControlChannel
from guide_plugin.coordinate_transform import DEFAULT_LIMITS, TransformLimits, to_logical
from guide_plugin.errors import TransportError
from guide_plugin.models import (
    DEFAULT_OVERLAY_DURATION,
    PredictedStep,
    RenderRequest,
    ScreenContext,
    ScreenRect,
)
from guide_plugin.render_transport import (
    ChannelTransport,
    FallbackRenderTransport,
    ProcessSpawnTransport,
    RenderTransport,
)
from guide_plugin.settings import GuideSettings

_LOGGER = logging.getLogger("ScreenGuide.Plugin.Supervisor")

_EVENT_INVALIDATED = "invalidated"
_EVENT_INTERRUPTED = "interrupted"


class OverlayState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    FALLBACK_SPAWN = "fallback_spawn"
    DISPLAYING = "displaying"
    EXPIRING = "expiring"


@dataclass(frozen=True)
class RenderOutcome:
    shown: bool
    path: Optional[str] = None
    rect: Optional[ScreenRect] = None
    message: str = ""


class OverlaySupervisor:
    """State machine for one overlay at a time.

    All methods are meant to be called from the foreground thread. Channel
    hooks fire on the channel thread and only enqueue events; those events
    are applied by ``_drain_events`` before connection state is touched.
    A render cycle gets at most one reconnect after an interruption.
    """

    def __init__(
        self,
        port_file: Path,
        *,
        channel_factory: Optional[Callable[[], ControlChannel]] = None,
        fallback: Optional[RenderTransport] = None,
        limits: TransformLimits = DEFAULT_LIMITS,
        connect_timeout: float = 2.0,
        call_timeout: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limits = limits
        self._clock = clock
        self._events: "queue.Queue[Tuple[str, str]]" = queue.Queue()
        factory = channel_factory or (
            lambda: ControlChannel(port_file, connect_timeout=connect_timeout, call_timeout=call_timeout)
        )
        self._channel_transport = ChannelTransport(
            factory,
            on_invalidated=lambda reason: self._events.put((_EVENT_INVALIDATED, reason)),
            on_interrupted=lambda reason: self._events.put((_EVENT_INTERRUPTED, reason)),
        )
        self._transport = FallbackRenderTransport(
            self._channel_transport,
            fallback or ProcessSpawnTransport(),
            retry_primary=self._retry_channel,
            on_fallback=self._enter_fallback,
        )
        self._state = OverlayState.IDLE
        self._active_path: Optional[str] = None
        self._expires_at: Optional[float] = None
        self._reconnect_used = False
        self._interrupted_pending = False

    @classmethod
    def from_settings(cls, settings: GuideSettings, **kwargs) -> "OverlaySupervisor":
        return cls(
            settings.port_file,
            limits=settings.limits,
            connect_timeout=settings.connect_timeout,
            call_timeout=settings.call_timeout,
            **kwargs,
        )

    @property
    def state(self) -> OverlayState:
        return self._state

    @property
    def active_path(self) -> Optional[str]:
        return self._active_path

    @property
    def channel_transport(self) -> ChannelTransport:
        return self._channel_transport

    # Public operations ----------------------------------------------------

    def render(
        self,
        step: PredictedStep,
        ctx: ScreenContext,
        duration: float = DEFAULT_OVERLAY_DURATION,
    ) -> RenderOutcome:
        """Replace whatever is on screen with a marker for ``step``. Never raises."""
        return self.render_steps((step,), ctx, duration)

    def render_steps(
        self,
        steps: Sequence[PredictedStep],
        ctx: ScreenContext,
        duration: float = DEFAULT_OVERLAY_DURATION,
    ) -> RenderOutcome:
        """Show markers for several steps at once; the fallback path shows only the first."""
        self._drain_events()
        if self._state in (OverlayState.DISPLAYING, OverlayState.EXPIRING):
            self.hide()
        if not steps:
            return RenderOutcome(shown=False, message="There was nothing to highlight.")

        placed = tuple(step.with_rect(to_logical(step.rect, ctx, self._limits)) for step in steps)
        logical = placed[0].rect
        request = RenderRequest(steps=placed, duration=duration)
        self._reconnect_used = False
        self._state = OverlayState.CONNECTING
        _LOGGER.debug("Rendering %d step(s), first at %s, for %.1fs", len(placed), logical, duration)
        try:
            shown = self._transport.show(request)
        except Exception as exc:  # pragma: no cover - a transport bug must not reach the caller
            _LOGGER.exception("Overlay transport raised unexpectedly: %s", exc)
            shown = False

        if not shown:
            self._state = OverlayState.IDLE
            self._active_path = None
            self._expires_at = None
            return RenderOutcome(
                shown=False,
                rect=logical,
                message="The overlay could not be displayed; the rendering host and the fallback both failed.",
            )

        self._active_path = self._transport.last_path
        self._state = OverlayState.DISPLAYING
        self._expires_at = self._clock() + duration
        _LOGGER.info("Overlay for %s displayed via %s", placed[0].id, self._active_path)
        return RenderOutcome(shown=True, path=self._active_path, rect=logical)

    def hide(self) -> bool:
        """Remove the active overlay, if any."""
        self._drain_events()
        if self._state not in (OverlayState.DISPLAYING, OverlayState.EXPIRING):
            return False
        self._state = OverlayState.EXPIRING
        removed = self._transport.hide()
        if not removed and self._active_path == self._channel_transport.name:
            _LOGGER.debug("Hide was not acknowledged by the rendering host")
        self._state = OverlayState.IDLE
        self._active_path = None
        self._expires_at = None
        return removed

    def poll(self) -> OverlayState:
        """Apply queued channel events and expire the overlay once its time is up."""
        self._drain_events()
        if self._state == OverlayState.DISPLAYING and self._expires_at is not None:
            if self._clock() >= self._expires_at:
                _LOGGER.debug("Overlay duration elapsed; expiring")
                self.hide()
        return self._state

    def ping(self) -> Optional[str]:
        self._drain_events()
        return self._channel_transport.ping()

    def shutdown(self) -> None:
        self._drain_events()
        self._transport.close()
        self._drain_events()
        self._state = OverlayState.IDLE
        self._active_path = None
        self._expires_at = None
        _LOGGER.debug("Overlay supervisor shut down")

    # Internal helpers -----------------------------------------------------

    def _drain_events(self) -> None:
        while True:
            try:
                kind, reason = self._events.get_nowait()
            except queue.Empty:
                return
            on_channel = self._active_path == self._channel_transport.name
            if kind == _EVENT_INVALIDATED:
                _LOGGER.info("Rendering host channel invalidated (%s); waiting for next request", reason)
                if self._channel_transport.channel is not None and self._channel_transport.channel.is_invalidated:
                    self._channel_transport.discard()
            else:
                _LOGGER.info("Rendering host channel interrupted (%s)", reason)
                self._interrupted_pending = True
            if on_channel and self._state == OverlayState.DISPLAYING:
                self._state = OverlayState.IDLE
                self._active_path = None
                self._expires_at = None

    def _retry_channel(self, error: TransportError) -> bool:
        self._drain_events()
        interrupted = error.reason == INTERRUPTED or self._interrupted_pending
        if not interrupted or self._reconnect_used:
            return False
        self._reconnect_used = True
        self._interrupted_pending = False
        _LOGGER.info("Reconnecting to rendering host once after interruption")
        try:
            self._channel_transport.reconnect()
        except TransportError as exc:
            _LOGGER.warning("Reconnect to rendering host failed: %s", exc)
            return False
        return True

    def _enter_fallback(self, error: TransportError) -> None:
        self._drain_events()
        self._state = OverlayState.FALLBACK_SPAWN
        _LOGGER.info("Switching to fallback overlay process (%s)", error.reason)
