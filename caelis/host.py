"""Host command execution with deadline and idle-output supervision."""

from __future__ import annotations

import glob as _glob
import os
import signal
import subprocess
import threading
import time
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from caelis.errors import CodedError, ErrorCode
from caelis.types import CommandRequest, CommandResult

_TICK = 0.05
_READER_GRACE = 1.0
_SANDBOX_ENV = {
    "CI": "1",
    "TERM": "dumb",
    "GIT_TERMINAL_PROMPT": "0",
    "PAGER": "cat",
    "NO_COLOR": "1",
}


@dataclass(frozen=True)
class ProcessOutcome:
    """Captured output and raw return code of a finished process."""

    stdout: str
    stderr: str
    returncode: int

    @property
    def exit_code(self) -> int:
        """The exit status, or -1 when the process ended by a signal."""
        return self.returncode if self.returncode >= 0 else -1


class ProcessTimeout(Exception):
    """The process ran past its deadline and was killed."""

    def __init__(self, outcome: ProcessOutcome) -> None:
        self.outcome = outcome
        super().__init__("process deadline exceeded")


class ProcessIdleTimeout(Exception):
    """The process produced no output for too long and was killed."""

    def __init__(self, outcome: ProcessOutcome) -> None:
        self.outcome = outcome
        super().__init__("process idle timeout exceeded")


class _Activity:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last = time.monotonic()

    def touch(self) -> None:
        with self._lock:
            self._last = time.monotonic()

    def idle_for(self) -> float:
        with self._lock:
            return time.monotonic() - self._last


def _pump(stream: IO[bytes], sink: list[bytes], activity: _Activity) -> None:
    with stream:
        while True:
            chunk = stream.read1(65536)  # type: ignore[attr-defined]
            if not chunk:
                return
            activity.touch()
            sink.append(chunk)


def kill_process_group(process: subprocess.Popen) -> None:
    """Kill the process's whole group, falling back on the process alone."""
    if process is None or process.pid is None:
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
        return
    except OSError:
        pass
    try:
        process.kill()
    except OSError:
        pass


def run_watched(
    argv: Sequence[str],
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float = 0.0,
    idle_timeout: float = 0.0,
) -> ProcessOutcome:
    """Run argv, killing it on deadline or when its output goes quiet.

    Raises OSError if the process cannot start, ProcessTimeout when the
    deadline passes and ProcessIdleTimeout when no output arrives in time.
    """
    process = subprocess.Popen(
        list(argv),
        cwd=cwd or None,
        env=dict(env) if env is not None else None,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        start_new_session=True,
    )
    activity = _Activity()
    out_chunks: list[bytes] = []
    err_chunks: list[bytes] = []
    readers = [
        threading.Thread(
            target=_pump, args=(process.stdout, out_chunks, activity), daemon=True
        ),
        threading.Thread(
            target=_pump, args=(process.stderr, err_chunks, activity), daemon=True
        ),
    ]
    for reader in readers:
        reader.start()

    deadline = time.monotonic() + timeout if timeout and timeout > 0 else None
    failure: type[Exception] | None = None
    while True:
        if process.poll() is not None and not any(r.is_alive() for r in readers):
            break
        now = time.monotonic()
        if deadline is not None and now >= deadline:
            failure = ProcessTimeout
            break
        if idle_timeout and idle_timeout > 0 and activity.idle_for() > idle_timeout:
            failure = ProcessIdleTimeout
            break
        step = _TICK if deadline is None else max(0.0, min(_TICK, deadline - now))
        if process.poll() is None:
            try:
                process.wait(timeout=step)
            except subprocess.TimeoutExpired:
                pass
        else:
            for reader in readers:
                reader.join(step)

    if failure is not None:
        kill_process_group(process)
        process.wait()
        for reader in readers:
            reader.join(_READER_GRACE)

    outcome = ProcessOutcome(
        stdout=b"".join(out_chunks).decode("utf-8", errors="replace"),
        stderr=b"".join(err_chunks).decode("utf-8", errors="replace"),
        returncode=process.returncode if process.returncode is not None else -1,
    )
    if failure is not None:
        raise failure(outcome)
    return outcome


def sandbox_env() -> dict[str, str]:
    """Return the current environment with non-interactive overrides."""
    env = dict(os.environ)
    env.update(_SANDBOX_ENV)
    return env


def resolve_host_work_dir(directory: str) -> str:
    """Return directory as an absolute clean path; blank means the cwd."""
    if not directory or not directory.strip():
        return os.getcwd()
    if os.path.isabs(directory):
        return os.path.normpath(directory)
    return os.path.normpath(os.path.abspath(directory))


def _format_duration(seconds: float) -> str:
    if seconds <= 0:
        return "0s"
    if seconds < 1:
        millis = seconds * 1000
        if millis >= 1:
            return f"{millis:.6f}".rstrip("0").rstrip(".") + "ms"
        return f"{millis * 1000:.3f}".rstrip("0").rstrip(".") + "µs"
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    text = ""
    if hours:
        text += f"{int(hours)}h"
    if hours or minutes:
        text += f"{int(minutes)}m"
    return text + f"{secs:.9f}".rstrip("0").rstrip(".") + "s"


def _describe_exit(returncode: int) -> str:
    if returncode < 0:
        try:
            name = signal.strsignal(-returncode) or f"signal {-returncode}"
        except ValueError:
            name = f"signal {-returncode}"
        return f"signal: {name.lower()}"
    return f"exit status {returncode}"


def _with_result(exc: Exception, result: CommandResult) -> Exception:
    exc.result = result  # type: ignore[attr-defined]
    return exc


def _to_result(outcome: ProcessOutcome) -> CommandResult:
    return CommandResult(
        stdout=outcome.stdout, stderr=outcome.stderr, exit_code=outcome.exit_code
    )


def _run_request(
    argv: Sequence[str],
    request: CommandRequest,
    *,
    cwd: str | None,
    label: str,
    timeout_code: ErrorCode,
    idle_code: ErrorCode,
    context: str = "",
) -> CommandResult:
    """Run argv for request and turn failures into the runtime's errors.

    Every error raised after the process started carries a `result` attribute.
    """
    try:
        outcome = run_watched(
            argv,
            cwd=cwd,
            env=sandbox_env(),
            timeout=request.timeout,
            idle_timeout=request.idle_timeout,
        )
    except OSError as exc:
        raise RuntimeError(f"{label} start failed: {exc}") from exc
    except ProcessTimeout as exc:
        result = _to_result(exc.outcome)
        shown = (
            _format_duration(request.timeout)
            if request.timeout > 0
            else "context deadline"
        )
        where = f" ({context})" if context else ""
        raise _with_result(
            CodedError(
                timeout_code,
                f"{label} timed out after {shown}{where}; stderr={result.stderr}",
                exc,
            ),
            result,
        ) from exc
    except ProcessIdleTimeout as exc:
        result = _to_result(exc.outcome)
        shown = (
            _format_duration(request.idle_timeout)
            if request.idle_timeout > 0
            else "idle limit"
        )
        note = f"{context}, " if context else ""
        raise _with_result(
            CodedError(
                idle_code,
                f"{label} produced no output for {shown} and was terminated "
                f"({note}likely interactive/long-running); stderr={result.stderr}",
            ),
            result,
        ) from exc

    result = _to_result(outcome)
    if outcome.returncode != 0:
        where = f" ({context})" if context else ""
        raise _with_result(
            RuntimeError(
                f"{label} failed{where}: {_describe_exit(outcome.returncode)}; "
                f"stderr={result.stderr}"
            ),
            result,
        )
    return result


class HostFileSystem:
    """File operations on the host file system."""

    def getwd(self) -> str:
        return os.getcwd()

    def user_home_dir(self) -> str:
        return str(Path.home())

    def open(self, path: str) -> IO[bytes]:
        return open(path, "rb")

    def read_dir(self, path: str) -> list[os.DirEntry[str]]:
        with os.scandir(path) as entries:
            return sorted(entries, key=lambda entry: entry.name)

    def stat(self, path: str) -> os.stat_result:
        return os.stat(path)

    def read_file(self, path: str) -> bytes:
        with open(path, "rb") as handle:
            return handle.read()

    def write_file(self, path: str, data: bytes, perm: int = 0o644) -> None:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, perm)
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)

    def glob(self, pattern: str) -> list[str]:
        return sorted(_glob.glob(pattern))

    def walk(self, root: str) -> Iterator[tuple[str, list[str], list[str]]]:
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames.sort()
            filenames.sort()
            yield dirpath, dirnames, filenames


class HostRunner:
    """Runs commands through bash directly on the host."""

    def run(self, request: CommandRequest) -> CommandResult:
        return _run_request(
            ["bash", "-lc", request.command],
            request,
            cwd=request.directory or None,
            label="tool: command",
            timeout_code=ErrorCode.HOST_COMMAND_TIMEOUT,
            idle_code=ErrorCode.HOST_IDLE_TIMEOUT,
        )