"""Threaded JSON-lines control-plane server for the rendering host."""
from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Set

from guide_plugin.models import RenderRequest
from guide_plugin.version import __version__

_LOGGER = logging.getLogger("ScreenGuide.Host.Server")


class RenderSink(Protocol):
    """Receives validated requests; called on the server thread."""

    def show(self, request: RenderRequest) -> None: ...
    def hide(self) -> None: ...


def write_port_file(port_file: Path, port: int) -> None:
    data = {"port": port, "pid": os.getpid()}
    port_file.parent.mkdir(parents=True, exist_ok=True)
    port_file.write_text(json.dumps(data, indent=2), encoding="utf-8")
    _LOGGER.info("Wrote %s with port %s (pid=%s)", port_file, port, data["pid"])


def delete_port_file(port_file: Path) -> None:
    try:
        port_file.unlink()
    except FileNotFoundError:
        pass


@dataclass
class RenderServer:
    """Answers show/hide/ping requests from the caller, one JSON object per line."""

    sink: RenderSink
    host: str = "127.0.0.1"
    port: int = 0
    port_file: Optional[Path] = None
    _loop: Optional[asyncio.AbstractEventLoop] = field(default=None, init=False)
    _thread: Optional[threading.Thread] = field(default=None, init=False)
    _stop_event: threading.Event = field(default_factory=threading.Event, init=False)
    _ready_event: threading.Event = field(default_factory=threading.Event, init=False)
    _shutdown: Optional[asyncio.Event] = field(default=None, init=False)
    _clients: Set[asyncio.StreamWriter] = field(default_factory=set, init=False)
    _start_error: Optional[BaseException] = field(default=None, init=False)

    def start(self) -> bool:
        """Start listening on a background thread; False when the socket could not be bound."""
        if self._thread and self._thread.is_alive():
            return True
        self._stop_event.clear()
        self._ready_event.clear()
        self._start_error = None
        self._thread = threading.Thread(target=self._run, name="ScreenGuide-Server", daemon=True)
        self._thread.start()
        if not self._ready_event.wait(timeout=5.0) or self._start_error is not None:
            _LOGGER.error("Render server failed to start: %s", self._start_error or "timed out")
            self.stop()
            return False
        if self.port_file is not None:
            write_port_file(self.port_file, self.port)
        return True

    def stop(self) -> None:
        self._stop_event.set()
        loop = self._loop
        if loop is not None and loop.is_running() and self._shutdown is not None:
            loop.call_soon_threadsafe(self._shutdown.set)
        if self._thread:
            self._thread.join(timeout=5.0)
        self._loop = None
        self._thread = None
        self._clients.clear()
        if self.port_file is not None:
            delete_port_file(self.port_file)

    # Internal helpers -----------------------------------------------------

    def _run(self) -> None:
        loop = asyncio.new_event_loop()
        self._loop = loop
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(self._server_main())
        except OSError as exc:
            self._start_error = exc
            self._ready_event.set()
        finally:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()

    async def _server_main(self) -> None:
        self._shutdown = asyncio.Event()
        server = await asyncio.start_server(self._handle_client, self.host, self.port)
        sockets = server.sockets or []
        if sockets:
            self.port = sockets[0].getsockname()[1]
        _LOGGER.info("Render server listening on %s:%s", self.host, self.port)
        self._ready_event.set()

        async with server:
            if not self._stop_event.is_set():
                await self._shutdown.wait()
            # Newer interpreters wait for open connections when the server closes.
            for writer in list(self._clients):
                try:
                    writer.close()
                    await writer.wait_closed()
                except (ConnectionError, OSError):
                    pass
            self._clients.clear()

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        self._clients.add(writer)
        _LOGGER.debug("Client connected (%d active) %s", len(self._clients), peer)
        try:
            while not self._stop_event.is_set():
                line = await reader.readline()
                if not line:
                    break
                response = self._dispatch_line(line)
                if response is None:
                    continue
                writer.write(json.dumps(response, ensure_ascii=False).encode("utf-8") + b"\n")
                await writer.drain()
        except (ConnectionError, asyncio.IncompleteReadError, OSError) as exc:
            _LOGGER.debug("Client %s dropped: %s", peer, exc)
        finally:
            self._clients.discard(writer)
            try:
                writer.close()
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
        _LOGGER.debug("Client disconnected (%d active) %s", len(self._clients), peer)

    def _dispatch_line(self, line: bytes) -> Optional[Dict[str, Any]]:
        try:
            message = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            _LOGGER.debug("Dropped invalid request line: %s", exc)
            return None
        if not isinstance(message, dict):
            return None
        request_id = message.get("id")
        method = message.get("method")
        params = message.get("params")
        params = params if isinstance(params, dict) else {}
        try:
            result = self._handle(method, params)
        except ValueError as exc:
            return {"id": request_id, "ok": False, "result": None, "error": str(exc)}
        except Exception as exc:  # pragma: no cover - sink failures are reported, never fatal
            _LOGGER.exception("Request %r failed", method)
            return {"id": request_id, "ok": False, "result": None, "error": f"internal error: {exc}"}
        return {"id": request_id, "ok": True, "result": result, "error": None}

    def _handle(self, method: Any, params: Dict[str, Any]) -> Any:
        if method == "ping":
            return f"screen-guide-host/{__version__} pid={os.getpid()}"
        if method == "hide":
            self.sink.hide()
            return True
        if method == "show":
            request = RenderRequest.from_payload(params)
            if not request.steps:
                raise ValueError("show requires at least one step")
            for step in request.steps:
                if not step.rect.is_finite():
                    raise ValueError(f"step {step.id!r} has missing or non-finite coordinates")
            _LOGGER.debug("show: %d step(s) for %.1fs", len(request.steps), request.duration)
            self.sink.show(request)
            return True
        raise ValueError(f"unknown method {method!r}")
