"""Ways of getting a RenderRequest onto the screen."""
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Protocol

from guide_plugin.control_channel import REJECTED, ControlChannel, Hook
from guide_plugin.errors import TransportError
from guide_plugin.models import RenderRequest
from guide_plugin.overlay_watchdog import OverlaySpawnWatchdog

_LOGGER = logging.getLogger("ScreenGuide.Plugin.Transport")

ROOT_DIR = Path(__file__).resolve().parent.parent
FALLBACK_MODULE = "guide_host.fallback_overlay"

CHANNEL_PATH = "channel"
FALLBACK_PATH = "fallback"


class RenderTransport(Protocol):
    name: str

    def show(self, request: RenderRequest) -> bool: ...
    def hide(self) -> bool: ...
    def ping(self) -> Optional[str]: ...
    def close(self) -> None: ...


def format_coordinate(value: float) -> str:
    value = float(value)
    return str(int(value)) if value.is_integer() else f"{value:.1f}"


class ChannelTransport:
    """Sends requests to the long-lived rendering host over a ControlChannel.

    ``show`` raises TransportError when the host cannot be reached; the
    channel is created lazily and replaced after it has been discarded.
    """

    name = CHANNEL_PATH

    def __init__(
        self,
        channel_factory: Callable[[], ControlChannel],
        *,
        on_invalidated: Optional[Hook] = None,
        on_interrupted: Optional[Hook] = None,
    ) -> None:
        self._channel_factory = channel_factory
        self._on_invalidated = on_invalidated
        self._on_interrupted = on_interrupted
        self._channel: Optional[ControlChannel] = None

    @property
    def channel(self) -> Optional[ControlChannel]:
        return self._channel

    def show(self, request: RenderRequest) -> bool:
        self._ensure_connected().call("show", request.to_payload())
        return True

    def hide(self) -> bool:
        channel = self._channel
        if channel is None or not channel.is_connected:
            return False
        try:
            channel.call("hide")
        except TransportError as exc:
            _LOGGER.warning("Hide request failed: %s", exc)
            return False
        return True

    def ping(self) -> Optional[str]:
        try:
            result = self._ensure_connected().call("ping")
        except TransportError as exc:
            _LOGGER.debug("Ping failed: %s", exc)
            return None
        return str(result) if result is not None else None

    def reconnect(self) -> None:
        self._ensure_connected()

    def discard(self) -> None:
        """Drop the current channel; the next request builds a fresh one."""
        channel = self._channel
        self._channel = None
        if channel is not None:
            channel.close()

    def close(self) -> None:
        self.discard()

    def _ensure_connected(self) -> ControlChannel:
        channel = self._channel
        if channel is None or channel.is_invalidated:
            channel = self._channel_factory()
            if self._on_invalidated is not None:
                channel.add_invalidated_hook(self._on_invalidated)
            if self._on_interrupted is not None:
                channel.add_interrupted_hook(self._on_interrupted)
            self._channel = channel
        channel.connect()
        return channel


class ProcessSpawnTransport:
    """Shows a single marker by launching ``guide_host.fallback_overlay``.

    The spawned process exits on its own after a few seconds; there is no way
    to hide it early.
    """

    name = FALLBACK_PATH

    def __init__(
        self,
        *,
        python_executable: Optional[str] = None,
        working_dir: Path = ROOT_DIR,
        env: Optional[Mapping[str, str]] = None,
        watchdog_factory: Callable[..., OverlaySpawnWatchdog] = OverlaySpawnWatchdog,
    ) -> None:
        self._python = python_executable or sys.executable
        self._working_dir = working_dir
        self._env = env
        self._watchdog_factory = watchdog_factory
        self.last_watchdog: Optional[OverlaySpawnWatchdog] = None

    def build_command(self, request: RenderRequest) -> List[str]:
        step = request.steps[0]
        rect = step.rect
        return [
            self._python,
            "-m",
            FALLBACK_MODULE,
            # Model text may start with a dash.
            "--",
            step.text,
            format_coordinate(rect.x),
            format_coordinate(rect.y),
            format_coordinate(rect.width),
            format_coordinate(rect.height),
            step.description,
        ]

    def show(self, request: RenderRequest) -> bool:
        if not request.steps:
            _LOGGER.warning("Fallback overlay requested with no steps")
            return False
        if len(request.steps) > 1:
            _LOGGER.debug("Fallback overlay shows only the first of %d steps", len(request.steps))
        watchdog = self._watchdog_factory(self.build_command(request), self._working_dir, env=self._env)
        self.last_watchdog = watchdog
        return watchdog.start()

    def hide(self) -> bool:
        _LOGGER.debug("Fallback overlay cannot be hidden early; it exits on its own")
        return False

    def ping(self) -> Optional[str]:
        return None

    def close(self) -> None:
        self.last_watchdog = None


class FallbackRenderTransport:
    """Tries ``primary`` first and falls back to ``fallback`` when it fails.

    ``retry_primary`` is consulted once after a primary failure; returning
    True retries the primary a single time. ``last_path`` names the transport
    that displayed the most recent request.
    """

    name = "fallback-wrapper"

    def __init__(
        self,
        primary: RenderTransport,
        fallback: RenderTransport,
        *,
        retry_primary: Optional[Callable[[TransportError], bool]] = None,
        on_fallback: Optional[Callable[[TransportError], None]] = None,
    ) -> None:
        self._primary = primary
        self._fallback = fallback
        self._retry_primary = retry_primary
        self._on_fallback = on_fallback
        self.last_path: Optional[str] = None

    @property
    def primary(self) -> RenderTransport:
        return self._primary

    def show(self, request: RenderRequest) -> bool:
        self.last_path = None
        error = self._try_primary(request)
        if error is not None and self._retry_primary is not None and self._retry_primary(error):
            error = self._try_primary(request)
        if error is None:
            self.last_path = self._primary.name
            return True
        _LOGGER.warning("Primary overlay transport failed (%s: %s); spawning fallback", error.reason, error)
        if self._on_fallback is not None:
            self._on_fallback(error)
        if self._fallback.show(request):
            self.last_path = self._fallback.name
            return True
        _LOGGER.warning("Fallback overlay transport failed as well")
        return False

    def hide(self) -> bool:
        if self.last_path == self._fallback.name:
            return self._fallback.hide()
        return self._primary.hide()

    def ping(self) -> Optional[str]:
        return self._primary.ping()

    def close(self) -> None:
        self._primary.close()
        self._fallback.close()

    def _try_primary(self, request: RenderRequest) -> Optional[TransportError]:
        try:
            if self._primary.show(request):
                return None
        except TransportError as exc:
            return exc
        return TransportError(f"{self._primary.name} transport declined the request", reason=REJECTED)
