"""Launches the short-lived fallback overlay process and watches it exit."""
from __future__ import annotations

import logging
import shlex
import subprocess
import threading
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence

_LOGGER = logging.getLogger("ScreenGuide.Plugin.Watchdog")

PopenFactory = Callable[..., "subprocess.Popen[str]"]


class OverlaySpawnWatchdog:
    """Runs one overlay process and logs diagnostics if it exits badly.

    The process bounds its own lifetime, so there is no restart loop; the
    monitor thread only waits for it, drains its output and reports a
    non-zero exit with the tail of stdout/stderr.
    """

    def __init__(
        self,
        command: Sequence[str],
        working_dir: Path,
        *,
        env: Optional[Mapping[str, str]] = None,
        exit_timeout: float = 15.0,
        popen: Optional[PopenFactory] = None,
    ) -> None:
        self._command = [str(part) for part in command]
        self._working_dir = working_dir
        self._env = dict(env) if env is not None else None
        self._exit_timeout = exit_timeout
        self._popen = popen or subprocess.Popen
        self._process: Optional[subprocess.Popen[str]] = None
        self._thread: Optional[threading.Thread] = None
        self.returncode: Optional[int] = None
        self.finished = threading.Event()

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    def start(self) -> bool:
        """Launch the process; False when it could not be started at all."""
        _LOGGER.debug("Launching fallback overlay: %s (cwd=%s)", self._format_command(), self._working_dir)
        try:
            proc = self._popen(
                self._command,
                cwd=str(self._working_dir),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
                env=self._env,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError:
            _LOGGER.warning("Fallback overlay executable not found: %s", self._format_command())
            self.finished.set()
            return False
        except (OSError, ValueError) as exc:
            _LOGGER.warning("Failed to launch fallback overlay: %s", exc)
            self.finished.set()
            return False
        self._process = proc
        _LOGGER.debug("Fallback overlay started (pid=%s)", proc.pid)
        self._thread = threading.Thread(target=self._monitor, name="ScreenGuide-SpawnWatchdog", daemon=True)
        self._thread.start()
        return True

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        self.finished.wait(timeout)
        return self.returncode

    # Internal helpers -----------------------------------------------------

    def _monitor(self) -> None:
        proc = self._process
        if proc is None:
            return
        try:
            try:
                stdout_data, stderr_data = proc.communicate(timeout=self._exit_timeout)
            except subprocess.TimeoutExpired:
                _LOGGER.warning(
                    "Fallback overlay (pid=%s) still running after %.1fs; terminating", proc.pid, self._exit_timeout
                )
                proc.kill()
                stdout_data, stderr_data = proc.communicate()
            self.returncode = proc.returncode
            _LOGGER.debug("Fallback overlay exited (pid=%s, returncode=%s)", proc.pid, proc.returncode)
            if proc.returncode not in (0, None):
                self._log_failure_details(proc.pid, proc.returncode, stdout_data or "", stderr_data or "")
        except Exception as exc:  # pragma: no cover - monitor thread must not die silently
            _LOGGER.warning("Fallback overlay monitor failed: %s", exc)
        finally:
            self.finished.set()

    def _format_command(self) -> str:
        try:
            return shlex.join(self._command)
        except TypeError:
            return " ".join(self._command)

    def _log_failure_details(self, pid: int, returncode: int, stdout_data: str, stderr_data: str) -> None:
        segments = [
            f"Command: {self._format_command()}",
            f"Working directory: {self._working_dir}",
            f"Return code: {returncode}",
        ]
        stdout_tail = self._tail_output(stdout_data)
        stderr_tail = self._tail_output(stderr_data)
        if stdout_tail:
            segments.append("stdout tail:\n" + stdout_tail)
        if stderr_tail:
            segments.append("stderr tail:\n" + stderr_tail)
        if len(segments) == 3:
            segments.append("No stdout/stderr output captured.")
        _LOGGER.warning("Fallback overlay failure diagnostics (pid=%s):\n%s", pid, "\n".join(segments))

    def _tail_output(self, text: str, limit: int = 1000) -> str:
        stripped = text.strip()
        if len(stripped) <= limit:
            return stripped
        return stripped[-limit:]
