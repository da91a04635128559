import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Dict, List, Optional, Sequence, Union

from latex_sandbox_server.config import _max_output_bytes, _sandbox_env
from latex_sandbox_server.web import _elapsed_ms

logger = logging.getLogger(__name__)

_TERMINATE_GRACE_SECONDS = 5.0
_READ_CHUNK_BYTES = 64 * 1024


@dataclass(frozen=True)
class ProcessResult:
    exited_zero: bool
    exit_code: Optional[int]
    stdout: str
    stderr: str
    timed_out: bool = False
    truncated: bool = False
    duration_ms: int = 0

    @property
    def combined_log(self) -> str:
        return self.stdout + self.stderr


class _CappedReader(threading.Thread):
    """Drains one pipe, keeping at most ``limit`` bytes."""

    def __init__(self, stream: IO[bytes], limit: int) -> None:
        super().__init__(daemon=True)
        self._stream = stream
        self._limit = limit
        self._chunks: List[bytes] = []
        self._kept = 0
        self.discarded = 0

    def run(self) -> None:
        try:
            for chunk in iter(lambda: self._stream.read1(_READ_CHUNK_BYTES), b""):
                room = self._limit - self._kept
                if room > 0:
                    kept = chunk[:room]
                    self._chunks.append(kept)
                    self._kept += len(kept)
                self.discarded += max(len(chunk) - max(room, 0), 0)
        except (OSError, ValueError):
            pass
        finally:
            try:
                self._stream.close()
            except OSError:
                pass

    def text(self) -> str:
        return b"".join(self._chunks).decode("utf-8", errors="replace")


def _signal_group(process: subprocess.Popen, sig: int) -> None:
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass
    except OSError:
        process.send_signal(sig)


def _terminate(process: subprocess.Popen) -> None:
    _signal_group(process, signal.SIGTERM)
    try:
        process.wait(timeout=_TERMINATE_GRACE_SECONDS)
        return
    except subprocess.TimeoutExpired:
        logger.warning("Process ignored SIGTERM, sending SIGKILL pid=%s", process.pid)
    _signal_group(process, signal.SIGKILL)
    process.wait()


def run_process(
    executable: str,
    args: Sequence[str],
    cwd: Union[str, Path],
    timeout_seconds: float,
    env: Optional[Dict[str, str]] = None,
    max_output_bytes: Optional[int] = None,
) -> ProcessResult:
    """Run one executable with an argument vector and a wall-clock bound.

    Never raises for process-level failures: spawn errors, non-zero exits and
    timeouts are all reported through the returned :class:`ProcessResult`.
    """
    started_at = time.monotonic()
    limit = max_output_bytes if max_output_bytes is not None else _max_output_bytes()
    argv = [executable, *args]
    try:
        process = subprocess.Popen(
            argv,
            cwd=str(cwd),
            env=env if env is not None else _sandbox_env(),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as exc:
        logger.exception("Process failed to start executable=%s cwd=%s", executable, cwd)
        return ProcessResult(
            exited_zero=False,
            exit_code=None,
            stdout="",
            stderr=f"Failed to start {executable}: {exc}",
            duration_ms=_elapsed_ms(started_at),
        )

    readers = [_CappedReader(process.stdout, limit), _CappedReader(process.stderr, limit)]
    for reader in readers:
        reader.start()

    timed_out = False
    try:
        process.wait(timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        timed_out = True
        logger.warning(
            "Process timed out executable=%s timeout_seconds=%s pid=%s",
            executable,
            timeout_seconds,
            process.pid,
        )
        _terminate(process)

    for reader in readers:
        reader.join(timeout=_TERMINATE_GRACE_SECONDS)

    stdout_reader, stderr_reader = readers
    result = ProcessResult(
        exited_zero=process.returncode == 0 and not timed_out,
        exit_code=process.returncode,
        stdout=stdout_reader.text(),
        stderr=stderr_reader.text(),
        timed_out=timed_out,
        truncated=bool(stdout_reader.discarded or stderr_reader.discarded),
        duration_ms=_elapsed_ms(started_at),
    )
    logger.info(
        "Process finished executable=%s exit_code=%s timed_out=%s truncated=%s duration_ms=%s",
        executable,
        result.exit_code,
        result.timed_out,
        result.truncated,
        result.duration_ms,
    )
    return result
