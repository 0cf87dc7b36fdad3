from __future__ import annotations

import os
import selectors
import shutil
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import Sequence

import structlog

from .errors import ExecutionCancelled
from .interpreters import InterpreterProfile
from .types import (
    ExecutionLimits,
    ExecutionResult,
    RuntimeFailure,
    Success,
    SystemFailure,
    Timeout,
)
from .workspace import Workspace

logger = structlog.get_logger(__name__)

DEFAULT_ENV_ALLOWLIST = ("PATH", "LANG", "LC_ALL", "TZ")
STDERR_TRUNCATED_NOTE = "\n[stderr truncated]"
_POLL_INTERVAL_SECONDS = 0.05
_READ_CHUNK_BYTES = 64 * 1024
_DRAIN_SECONDS = 1.0

_STOP_TIMEOUT = "timeout"
_STOP_OVERFLOW = "overflow"
_STOP_CANCELLED = "cancelled"


class _CappedBuffer:
    """Bounded capture buffer for one output stream.

    Bytes past the cap are dropped but still consumed, so the child never
    blocks on a full pipe before it is killed.

    Example:
        ```python
        buffer = _CappedBuffer("stdout", limit=1024)
        buffer.feed(b"hello")
        ```
    """

    def __init__(self, name: str, limit: int) -> None:
        """Start with an empty buffer.

        Example:
            ```python
            buffer = _CappedBuffer("stderr", 4096)
            ```
        """
        self.name = name
        self._limit = max(0, int(limit))
        self.data = bytearray()
        self.truncated = False

    def feed(self, chunk: bytes) -> None:
        """Append a chunk, keeping at most `limit` bytes.

        Example:
            ```python
            buffer.feed(os.read(fd, 65536))
            ```
        """
        room = self._limit - len(self.data)
        if len(chunk) > room:
            self.data.extend(chunk[: max(0, room)])
            self.truncated = True
            return
        self.data.extend(chunk)


def _read_ready(selector: selectors.BaseSelector, timeout: float) -> None:
    """Read whatever the registered pipes have ready, unregistering on EOF.

    Example:
        ```python
        _read_ready(selector, 0.05)
        ```
    """
    if not selector.get_map():
        time.sleep(timeout)
        return
    for key, _ in selector.select(timeout):
        try:
            chunk = os.read(key.fd, _READ_CHUNK_BYTES)
        except OSError:
            chunk = b""
        if not chunk:
            selector.unregister(key.fileobj)
            continue
        key.data.feed(chunk)


def _drain(selector: selectors.BaseSelector, deadline: float) -> list[str]:
    """Read until every pipe hits EOF or the deadline passes.

    Returns the names of the streams still held open.

    Example:
        ```python
        held = _drain(selector, time.monotonic() + 1.0)
        ```
    """
    while selector.get_map():
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        _read_ready(selector, min(_POLL_INTERVAL_SECONDS, remaining))
    return sorted(key.data.name for key in selector.get_map().values())


def _has_exited(proc: subprocess.Popen[bytes]) -> bool:
    """Report whether the child exited, leaving it unreaped.

    An unreaped leader keeps its process group id reserved, so a later
    `killpg` cannot hit an unrelated group.

    Example:
        ```python
        if _has_exited(proc):
            _kill_process_group(proc)
        ```
    """
    try:
        info = os.waitid(os.P_PID, proc.pid, os.WEXITED | os.WNOHANG | os.WNOWAIT)
    except ChildProcessError:
        return True
    return info is not None


def _kill_process_group(proc: subprocess.Popen[bytes]) -> None:
    """Send SIGKILL to the child's whole process group.

    Must run before the leader is reaped.

    Example:
        ```python
        _kill_process_group(proc)
        ```
    """
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        return
    except PermissionError:
        proc.kill()


class ProcessSandbox:
    """Run interpreter processes rooted at a workspace under hard limits.

    Each run gets its own session and process group, a stripped environment
    and a closed stdin. The whole group is killed when a limit trips and
    again after a clean exit, so background grandchildren do not survive.

    Example:
        ```python
        sandbox = ProcessSandbox(profile_for_interpreter("php"))
        result = sandbox.run(ws, source_path, ExecutionLimits(timeout_seconds=10))
        ```
    """

    def __init__(
        self,
        profile: InterpreterProfile,
        *,
        interpreter_path: str | None = None,
        env_allowlist: Sequence[str] = DEFAULT_ENV_ALLOWLIST,
    ) -> None:
        """Bind the sandbox to an interpreter profile.

        Example:
            ```python
            sandbox = ProcessSandbox(profile_for_interpreter("python"), interpreter_path=sys.executable)
            ```
        """
        self._profile = profile
        self._interpreter_path = interpreter_path
        self._env_allowlist = tuple(env_allowlist)

    @property
    def profile(self) -> InterpreterProfile:
        """Return the interpreter profile in use.

        Example:
            ```python
            print(sandbox.profile.name)
            ```
        """
        return self._profile

    def run(
        self,
        workspace: Workspace,
        source_path: Path,
        limits: ExecutionLimits,
        cancel: threading.Event | None = None,
    ) -> ExecutionResult:
        """Execute the source file and classify the outcome.

        Example:
            ```python
            result = sandbox.run(ws, ws.source_path, ExecutionLimits(timeout_seconds=2))
            ```
        """
        if cancel is not None and cancel.is_set():
            raise ExecutionCancelled("Execution cancelled before start")

        env = self._build_env(workspace)
        binary = self._resolve_binary(env)
        if binary is None:
            return SystemFailure(reason=f"Interpreter '{self._profile.binary}' was not found on PATH")

        cmd = [binary, *self._profile.options, str(source_path)]
        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=workspace.path,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
                close_fds=True,
            )
        except OSError as exc:
            return SystemFailure(reason=f"Failed to start interpreter {binary}: {exc}")

        assert proc.stdout is not None and proc.stderr is not None
        stdout = _CappedBuffer("stdout", limits.max_output_bytes)
        stderr = _CappedBuffer("stderr", limits.max_output_bytes)
        selector = selectors.DefaultSelector()
        try:
            selector.register(proc.stdout, selectors.EVENT_READ, stdout)
            selector.register(proc.stderr, selectors.EVENT_READ, stderr)
            try:
                stop_reason = self._wait(
                    proc, selector, (stdout, stderr), started + limits.timeout_seconds, cancel
                )
            finally:
                _kill_process_group(proc)
                proc.wait()
            elapsed_ms = int((time.monotonic() - started) * 1000)
            held_open = _drain(selector, time.monotonic() + _DRAIN_SECONDS)
        finally:
            selector.close()
            proc.stdout.close()
            proc.stderr.close()
        if held_open:
            # Only a descendant that left the process group can still hold the pipe.
            logger.warning(
                "sandbox_pipe_held_open",
                request_id=workspace.request_id,
                streams=held_open,
            )

        if stop_reason == _STOP_CANCELLED:
            logger.info("sandbox_cancelled", request_id=workspace.request_id, elapsed_ms=elapsed_ms)
            raise ExecutionCancelled("Execution cancelled while running")

        result = self._classify(
            stop_reason=stop_reason,
            exit_code=proc.returncode,
            stdout=bytes(stdout.data),
            stderr=bytes(stderr.data).decode("utf-8", errors="replace"),
            stdout_truncated=stdout.truncated,
            stderr_truncated=stderr.truncated,
            elapsed_ms=elapsed_ms,
        )
        logger.info(
            "sandbox_finished",
            request_id=workspace.request_id,
            kind=result.kind,
            exit_code=proc.returncode,
            elapsed_ms=elapsed_ms,
        )
        return result

    def _wait(
        self,
        proc: subprocess.Popen[bytes],
        selector: selectors.BaseSelector,
        buffers: Sequence[_CappedBuffer],
        deadline: float,
        cancel: threading.Event | None,
    ) -> str | None:
        """Pump both pipes until exit, deadline, output overflow or cancellation.

        The child is left unreaped so the caller can still kill its group.

        Example:
            ```python
            reason = sandbox._wait(proc, selector, (stdout, stderr), time.monotonic() + 5, None)
            ```
        """
        while True:
            if _has_exited(proc):
                return None
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return _STOP_TIMEOUT
            if cancel is not None and cancel.is_set():
                return _STOP_CANCELLED
            _read_ready(selector, min(_POLL_INTERVAL_SECONDS, remaining))
            if any(buffer.truncated for buffer in buffers):
                return _STOP_OVERFLOW

    def _classify(
        self,
        *,
        stop_reason: str | None,
        exit_code: int,
        stdout: bytes,
        stderr: str,
        stdout_truncated: bool,
        stderr_truncated: bool,
        elapsed_ms: int,
    ) -> ExecutionResult:
        """Map raw process facts onto exactly one result variant.

        Example:
            ```python
            result = sandbox._classify(
                stop_reason=None, exit_code=0, stdout=b"ok", stderr="",
                stdout_truncated=False, stderr_truncated=False, elapsed_ms=12,
            )
            ```
        """
        if stop_reason == _STOP_TIMEOUT:
            return Timeout(elapsed_ms=elapsed_ms)
        if stop_reason == _STOP_OVERFLOW:
            # The non-zero status comes from our own SIGKILL, not from the user's code.
            exit_code = 0
        if stderr_truncated:
            stderr += STDERR_TRUNCATED_NOTE
        if exit_code != 0 or self._profile.is_fatal(stderr):
            return RuntimeFailure(stderr=stderr, exit_code=exit_code)
        return Success(output=stdout, truncated=stdout_truncated or stop_reason == _STOP_OVERFLOW)

    def _build_env(self, workspace: Workspace) -> dict[str, str]:
        """Build the minimal child environment.

        Example:
            ```python
            env = sandbox._build_env(ws)
            ```
        """
        env = {name: os.environ[name] for name in self._env_allowlist if name in os.environ}
        env.setdefault("PATH", os.defpath)
        env["HOME"] = str(workspace.path)
        env["TMPDIR"] = str(workspace.path)
        return env

    def _resolve_binary(self, env: dict[str, str]) -> str | None:
        """Return the interpreter path to spawn, or None when it is missing.

        Example:
            ```python
            binary = sandbox._resolve_binary({"PATH": "/usr/bin"})
            ```
        """
        if self._interpreter_path:
            return self._interpreter_path
        return shutil.which(self._profile.binary, path=env.get("PATH"))
