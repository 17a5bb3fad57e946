"""
Encoder process executor.

Spawns the external encoder, streams its output line by line, extracts
progress through pluggable parsers, enforces a wall-clock timeout and
supports killing the whole process group from another thread.
"""

import logging
import os
import re
import signal
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from core.parsers import ProgressParser, default_parsers

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60 * 60.0
KILLED_MESSAGE = "Process was killed"

ERROR_PATTERNS = [
    re.compile(r"Error: (.+)", re.IGNORECASE),
    re.compile(r"Invalid (.+)", re.IGNORECASE),
    re.compile(r"Cannot (.+)", re.IGNORECASE),
    re.compile(r"Failed (.+)", re.IGNORECASE),
    re.compile(r"(.+): No such file or directory", re.IGNORECASE),
]

LINE_SPLIT = re.compile(rb"[\r\n]")


@dataclass
class ExecutionResult:
    success: bool
    duration_ms: int
    error: Optional[str] = None
    return_code: Optional[int] = None
    timed_out: bool = False
    killed: bool = False
    output_tail: str = ""


def extract_error(lines: Sequence[str]) -> Optional[str]:
    """Best-effort diagnostic from captured encoder output."""
    text = "\n".join(lines)
    for pattern in ERROR_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(0).strip()
    for line in reversed(lines):
        if line.strip():
            return line.strip()
    return None


def normalize_progress(value: float) -> float:
    return round(min(max(value, 0.0), 100.0), 1)


class ProcessExecutor:
    def __init__(self, timeout: float = DEFAULT_TIMEOUT, tail_lines: int = 200):
        self.timeout = timeout
        self.tail_lines = tail_lines
        self._process: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()
        self._killed = False
        self._timed_out = False

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def execute(self, argv: List[str], timeout: float = None,
                on_progress: Callable[[float], None] = None,
                on_log: Callable[[str], None] = None,
                parsers: List[ProgressParser] = None) -> ExecutionResult:
        """Run one encoder invocation to completion.

        Never retries. Exceptions raised by the callbacks kill the child
        and propagate to the caller.
        """
        timeout = timeout or self.timeout
        parsers = default_parsers() if parsers is None else parsers
        tail = deque(maxlen=self.tail_lines)
        started = time.monotonic()

        with self._lock:
            self._killed = False
            self._timed_out = False
            try:
                self._process = subprocess.Popen(
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    start_new_session=(os.name == "posix"),
                )
            except OSError as e:
                self._process = None
                logger.error("Failed to start %s: %s", argv[0] if argv else "<empty>", e)
                return ExecutionResult(success=False, duration_ms=self._elapsed(started),
                                       error=f"Failed to start encoder: {e}")
            process = self._process

        logger.debug("Started pid=%s: %s", process.pid, " ".join(argv))
        timer = threading.Timer(timeout, self._on_timeout)
        timer.daemon = True
        timer.start()

        def handle_line(raw: bytes):
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                return
            tail.append(line)
            if on_log:
                on_log(line)
            if on_progress:
                for parser in parsers:
                    value = parser.parse(line)
                    if value is not None:
                        on_progress(normalize_progress(value))
                        break

        try:
            pending = b""
            while True:
                chunk = process.stdout.read1(4096)
                if not chunk:
                    break
                parts = LINE_SPLIT.split(pending + chunk)
                pending = parts.pop()
                for raw in parts:
                    handle_line(raw)
            if pending:
                handle_line(pending)
            return_code = process.wait()
        except BaseException:
            self.kill()
            process.wait()
            raise
        finally:
            timer.cancel()
            process.stdout.close()

        duration_ms = self._elapsed(started)
        output_tail = "\n".join(tail)

        if self._timed_out:
            return ExecutionResult(success=False, duration_ms=duration_ms,
                                   error=f"Encoder process timed out after {timeout:g}s",
                                   return_code=return_code, timed_out=True,
                                   killed=True, output_tail=output_tail)
        if self._killed:
            return ExecutionResult(success=False, duration_ms=duration_ms,
                                   error=KILLED_MESSAGE, return_code=return_code,
                                   killed=True, output_tail=output_tail)
        if return_code == 0:
            return ExecutionResult(success=True, duration_ms=duration_ms,
                                   return_code=0, output_tail=output_tail)

        error = extract_error(list(tail)) or f"Encoder exited with code {return_code}"
        return ExecutionResult(success=False, duration_ms=duration_ms, error=error,
                               return_code=return_code, output_tail=output_tail)

    def kill(self) -> bool:
        """Force-kill the running process group. Returns True if a kill was sent."""
        with self._lock:
            process = self._process
            if process is None or process.poll() is not None or self._killed:
                return False
            self._killed = True
            try:
                if os.name == "posix":
                    os.killpg(process.pid, signal.SIGKILL)
                else:
                    process.kill()
            except ProcessLookupError:
                pass
            logger.info("Killed encoder pid=%s", process.pid)
            return True

    def _on_timeout(self):
        with self._lock:
            if self._process is None or self._process.poll() is not None:
                return
            self._timed_out = True
        logger.warning("Encoder pid=%s exceeded timeout", self.pid)
        self.kill()

    @staticmethod
    def _elapsed(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    @staticmethod
    def check_available(binary: str = "ffmpeg") -> bool:
        try:
            proc = subprocess.run([binary, "-version"], capture_output=True, timeout=10)
        except (OSError, subprocess.TimeoutExpired):
            return False
        return proc.returncode == 0

    @staticmethod
    def version(binary: str = "ffmpeg") -> Optional[str]:
        try:
            proc = subprocess.run([binary, "-version"], capture_output=True,
                                  text=True, timeout=10)
        except (OSError, subprocess.TimeoutExpired):
            return None
        if proc.returncode != 0:
            return None
        match = re.search(r"version (\S+)", proc.stdout)
        return match.group(1) if match else None
