"""JSON-lines request/response client for the rendering host control plane."""
from __future__ import annotations

import asyncio
import concurrent.futures
import itertools
import json
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from guide_plugin.errors import TransportError

_LOGGER = logging.getLogger("ScreenGuide.Plugin.ControlChannel")

Hook = Callable[[str], None]

INVALIDATED = "invalidated"
INTERRUPTED = "interrupted"
TIMEOUT = "timeout"
REJECTED = "rejected"

_TIMEOUTS = (asyncio.TimeoutError, concurrent.futures.TimeoutError)


def read_port_file(port_file: Path) -> Optional[Dict[str, Any]]:
    """Return the host's ``{"port", "pid"}`` metadata, or None when absent or invalid."""
    try:
        data = json.loads(port_file.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    port = data.get("port")
    if isinstance(port, int) and not isinstance(port, bool) and 0 < port < 65536:
        return data
    return None


class ControlChannel:
    """Connection to the rendering host, driven by an event loop on its own thread.

    Two hook lists are exposed. *invalidated* hooks run when the channel can
    no longer be used (host gone, channel closed). *interrupted* hooks run
    when an established connection drops; ``connect()`` may be tried again.
    Hooks are invoked on the channel thread.
    """

    def __init__(
        self,
        port_file: Path,
        *,
        host: str = "127.0.0.1",
        connect_timeout: float = 2.0,
        call_timeout: float = 3.0,
    ) -> None:
        self._port_file = port_file
        self._host = host
        self._connect_timeout = connect_timeout
        self._call_timeout = call_timeout
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._ready_event = threading.Event()
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional[asyncio.Task[None]] = None
        self._pending: Dict[int, "asyncio.Future[Dict[str, Any]]"] = {}
        self._ids = itertools.count(1)
        self._closing = False
        self._invalidated = False
        self._invalidated_hooks: List[Hook] = []
        self._interrupted_hooks: List[Hook] = []
        self._metadata: Dict[str, Any] = {}

    # Hook registration ----------------------------------------------------

    def add_invalidated_hook(self, hook: Hook) -> None:
        self._invalidated_hooks.append(hook)

    def add_interrupted_hook(self, hook: Hook) -> None:
        self._interrupted_hooks.append(hook)

    # Public API -----------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        writer = self._writer
        return writer is not None and not writer.is_closing()

    @property
    def is_invalidated(self) -> bool:
        return self._invalidated

    @property
    def host_pid(self) -> Optional[int]:
        pid = self._metadata.get("pid")
        return pid if isinstance(pid, int) else None

    def connect(self) -> None:
        """Open (or reopen) the connection; raises TransportError on failure."""
        if self._invalidated:
            raise TransportError("Control channel has been invalidated", reason=INVALIDATED)
        if self.is_connected:
            return
        metadata = read_port_file(self._port_file)
        if metadata is None:
            self.invalidate(f"port file {self._port_file} missing or invalid")
            raise TransportError(f"Rendering host port file unavailable: {self._port_file}", reason=INVALIDATED)
        self._metadata = metadata
        loop = self._ensure_loop()
        future = asyncio.run_coroutine_threadsafe(self._open(metadata["port"]), loop)
        try:
            future.result(timeout=self._connect_timeout + 0.5)
        except _TIMEOUTS as exc:
            future.cancel()
            raise TransportError(f"Timed out connecting to rendering host on port {metadata['port']}", reason=TIMEOUT) from exc
        except (ConnectionError, OSError) as exc:
            raise TransportError(f"Connect failed to {self._host}:{metadata['port']}: {exc}", reason=INTERRUPTED) from exc
        _LOGGER.debug("Connected to rendering host %s:%s (pid=%s)", self._host, metadata["port"], metadata.get("pid"))

    def call(self, method: str, params: Optional[Mapping[str, Any]] = None, timeout: Optional[float] = None) -> Any:
        """Send one request and wait for its response ``result``."""
        loop = self._loop
        if self._invalidated:
            raise TransportError("Control channel has been invalidated", reason=INVALIDATED)
        if loop is None or not self.is_connected:
            raise TransportError("Control channel is not connected", reason=INTERRUPTED)
        wait = self._call_timeout if timeout is None else timeout
        message = {"id": next(self._ids), "method": method, "params": dict(params or {})}
        future = asyncio.run_coroutine_threadsafe(asyncio.wait_for(self._request(message), wait), loop)
        try:
            response = future.result(timeout=wait + 0.5)
        except _TIMEOUTS as exc:
            future.cancel()
            raise TransportError(f"Rendering host did not answer {method!r} within {wait:.1f}s", reason=TIMEOUT) from exc
        except (ConnectionError, OSError) as exc:
            raise TransportError(f"Control channel failed during {method!r}: {exc}", reason=INTERRUPTED) from exc
        if not response.get("ok"):
            raise TransportError(
                f"Rendering host rejected {method!r}: {response.get('error') or 'unknown error'}",
                reason=REJECTED,
            )
        return response.get("result")

    def invalidate(self, reason: str) -> None:
        if self._invalidated:
            return
        self._invalidated = True
        _LOGGER.info("Control channel invalidated: %s", reason)
        self._fire(self._invalidated_hooks, reason)

    def close(self) -> None:
        self._closing = True
        loop = self._loop
        if loop is not None and loop.is_running():
            future = asyncio.run_coroutine_threadsafe(self._close_writer(), loop)
            try:
                future.result(timeout=2.0)
            except _TIMEOUTS:
                _LOGGER.debug("Timed out closing control channel writer")
            except (ConnectionError, OSError) as exc:
                _LOGGER.debug("Error closing control channel writer: %s", exc)
            loop.call_soon_threadsafe(loop.stop)
        if self._thread:
            self._thread.join(timeout=5.0)
        self._thread = None
        self._loop = None
        self._writer = None
        self.invalidate("channel closed")

    # Background thread ----------------------------------------------------

    def _ensure_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is not None and self._thread is not None and self._thread.is_alive():
            return self._loop
        self._ready_event.clear()
        self._thread = threading.Thread(target=self._thread_main, name="ScreenGuide-Channel", daemon=True)
        self._thread.start()
        if not self._ready_event.wait(timeout=5.0) or self._loop is None:
            raise TransportError("Control channel loop failed to start", reason=INVALIDATED)
        return self._loop

    def _thread_main(self) -> None:
        loop = asyncio.new_event_loop()
        self._loop = loop
        asyncio.set_event_loop(loop)
        loop.call_soon(self._ready_event.set)
        try:
            loop.run_forever()
        finally:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()

    async def _open(self, port: int) -> None:
        reader, writer = await asyncio.wait_for(asyncio.open_connection(self._host, port), self._connect_timeout)
        self._writer = writer
        self._reader_task = asyncio.get_running_loop().create_task(self._read_responses(reader, writer))

    async def _request(self, message: Dict[str, Any]) -> Dict[str, Any]:
        writer = self._writer
        if writer is None or writer.is_closing():
            raise ConnectionError("Control channel is not connected")
        future: "asyncio.Future[Dict[str, Any]]" = asyncio.get_running_loop().create_future()
        request_id = message["id"]
        self._pending[request_id] = future
        try:
            writer.write(json.dumps(message, ensure_ascii=False).encode("utf-8") + b"\n")
            await writer.drain()
            return await future
        finally:
            self._pending.pop(request_id, None)

    async def _read_responses(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        reason = "rendering host closed the connection"
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                try:
                    payload = json.loads(line.decode("utf-8"))
                except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                    _LOGGER.debug("Dropped invalid response line from rendering host: %s", exc)
                    continue
                if not isinstance(payload, dict):
                    continue
                future = self._pending.get(payload.get("id"))
                if future is not None and not future.done():
                    future.set_result(payload)
        except asyncio.CancelledError:
            raise
        except (ConnectionError, asyncio.IncompleteReadError, OSError) as exc:
            reason = f"connection lost: {exc}"
        if self._writer is writer:
            self._writer = None
        for future in list(self._pending.values()):
            if not future.done():
                future.set_exception(ConnectionError(reason))
        try:
            writer.close()
        except OSError as exc:
            _LOGGER.debug("Error closing writer: %s", exc)
        if not self._closing:
            _LOGGER.warning("Control channel interrupted: %s", reason)
            self._fire(self._interrupted_hooks, reason)

    async def _close_writer(self) -> None:
        writer = self._writer
        self._writer = None
        if self._reader_task is not None:
            self._reader_task.cancel()
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError) as exc:
                _LOGGER.debug("Error closing writer: %s", exc)

    def _fire(self, hooks: List[Hook], reason: str) -> None:
        for hook in list(hooks):
            try:
                hook(reason)
            except Exception as exc:  # pragma: no cover - hook failures must not kill the channel
                _LOGGER.warning("Control channel hook %r failed: %s", hook, exc)
