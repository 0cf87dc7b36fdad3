from __future__ import annotations

import os
import re
import shutil
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

import structlog

from .errors import SourceAlreadyWritten, WorkspaceError

logger = structlog.get_logger(__name__)

WORKSPACE_PREFIX = "ws-"
SOURCE_STEM = "main"
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_WORKSPACE_NAME_PATTERN = re.compile(r"^ws-(?P<request_id>[A-Za-z0-9_-]{1,64})-(?P<created_ns>\d+)$")
_CREATE_ATTEMPTS = 8


@dataclass(frozen=True, slots=True)
class SweepSummary:
    """Outcome of one reconciliation sweep.

    Example:
        ```python
        summary = SweepSummary(removed=2, kept=1, failed=0)
        ```
    """

    removed: int
    kept: int
    failed: int


@dataclass(frozen=True, slots=True)
class WorkspaceInfo:
    """Snapshot of a workspace directory found under the scratch root.

    Example:
        ```python
        info = WorkspaceInfo("ws-abc-1", "abc", 1, 0.5, False)
        ```
    """

    name: str
    request_id: str
    created_ns: int
    age_seconds: float
    in_flight: bool


@dataclass(slots=True)
class Workspace:
    """Ephemeral directory bound to one execution request.

    Example:
        ```python
        ws = manager.acquire("abc123")
        source = ws.write_source(b"<?php echo 1;", ".php")
        ```
    """

    request_id: str
    path: Path
    created_ns: int
    source_path: Path | None = None
    _write_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def write_source(self, data: bytes, suffix: str) -> Path:
        """Write the source artifact; only the first call is accepted.

        Example:
            ```python
            path = ws.write_source(b"print('ok')", ".py")
            ```
        """
        with self._write_lock:
            if self.source_path is not None:
                raise SourceAlreadyWritten(f"Source already written for workspace {self.path.name}")
            target = self.path / f"{SOURCE_STEM}{suffix}"
            try:
                # O_EXCL keeps a stray second writer from truncating the file.
                fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
                with os.fdopen(fd, "wb") as handle:
                    handle.write(data)
            except OSError as exc:
                raise WorkspaceError(f"Failed to write source artifact: {exc}") from exc
            self.source_path = target
            return target


def parse_workspace_name(name: str) -> tuple[str, int] | None:
    """Split a workspace directory name into request id and creation time.

    Example:
        ```python
        parse_workspace_name("ws-abc-1700000000000000000")  # ("abc", 1700000000000000000)
        ```
    """
    match = _WORKSPACE_NAME_PATTERN.match(name)
    if match is None:
        return None
    return match.group("request_id"), int(match.group("created_ns"))


class WorkspaceManager:
    """Allocate, release and reconcile per-request workspaces.

    Only this class touches the scratch root. Construction runs a sweep so
    workspaces orphaned by a killed host process are removed on startup.

    Example:
        ```python
        manager = WorkspaceManager("/tmp/safe-bundle-runner", stale_grace_seconds=300)
        with manager.scoped("abc123") as ws:
            ws.write_source(b"print('ok')", ".py")
        ```
    """

    def __init__(
        self,
        scratch_root: str | Path,
        *,
        stale_grace_seconds: float = 300,
        sweep_on_start: bool = True,
    ) -> None:
        """Prepare the scratch root and optionally reconcile stale workspaces.

        Example:
            ```python
            manager = WorkspaceManager(tmp_path, sweep_on_start=False)
            ```
        """
        self._root = Path(scratch_root).expanduser()
        self._grace_ns = int(stale_grace_seconds * 1_000_000_000)
        self._lock = threading.Lock()
        self._in_flight: set[str] = set()
        self._last_ns = 0
        try:
            self._root.mkdir(parents=True, exist_ok=True, mode=0o700)
        except OSError as exc:
            raise WorkspaceError(f"Cannot create scratch root {self._root}: {exc}") from exc
        if sweep_on_start:
            self.sweep()

    @property
    def root(self) -> Path:
        """Return the scratch root directory.

        Example:
            ```python
            print(manager.root)
            ```
        """
        return self._root

    def acquire(self, request_id: str) -> Workspace:
        """Create a uniquely named workspace for a request.

        Example:
            ```python
            ws = manager.acquire("abc123")
            ```
        """
        if not _REQUEST_ID_PATTERN.match(request_id):
            raise WorkspaceError(f"Request id {request_id!r} is not a valid workspace name component")
        for _ in range(_CREATE_ATTEMPTS):
            created_ns = self._next_timestamp()
            path = self._root / f"{WORKSPACE_PREFIX}{request_id}-{created_ns}"
            try:
                path.mkdir(mode=0o700)
            except FileExistsError:
                continue
            except OSError as exc:
                raise WorkspaceError(f"Failed to create workspace: {exc}") from exc
            break
        else:
            raise WorkspaceError(f"Could not find a free workspace name for request {request_id!r}")
        with self._lock:
            self._in_flight.add(path.name)
        logger.debug("workspace_acquired", request_id=request_id, workspace=path.name)
        return Workspace(request_id=request_id, path=path, created_ns=created_ns)

    def _next_timestamp(self) -> int:
        """Return a creation timestamp strictly greater than the last one issued.

        Example:
            ```python
            created_ns = manager._next_timestamp()
            ```
        """
        with self._lock:
            self._last_ns = max(time.time_ns(), self._last_ns + 1)
            return self._last_ns

    def release(self, workspace: Workspace) -> None:
        """Remove a workspace tree; failures are logged and left for the sweep.

        Example:
            ```python
            manager.release(ws)
            ```
        """
        with self._lock:
            self._in_flight.discard(workspace.path.name)
        if not workspace.path.exists():
            return
        try:
            shutil.rmtree(workspace.path)
        except OSError as exc:
            logger.warning(
                "workspace_cleanup_failed",
                request_id=workspace.request_id,
                workspace=workspace.path.name,
                error=str(exc),
            )
            return
        logger.debug("workspace_released", request_id=workspace.request_id, workspace=workspace.path.name)

    @contextmanager
    def scoped(self, request_id: str) -> Iterator[Workspace]:
        """Acquire a workspace and release it on every exit path.

        Example:
            ```python
            with manager.scoped("abc123") as ws:
                ws.write_source(b"print(1)", ".py")
            ```
        """
        workspace = self.acquire(request_id)
        try:
            yield workspace
        finally:
            self.release(workspace)

    def list_workspaces(self, now_ns: int | None = None) -> list[WorkspaceInfo]:
        """List workspace directories currently present under the root.

        Example:
            ```python
            for info in manager.list_workspaces():
                print(info.name, info.age_seconds)
            ```
        """
        now = now_ns if now_ns is not None else time.time_ns()
        with self._lock:
            in_flight = set(self._in_flight)
        items: list[WorkspaceInfo] = []
        for entry in sorted(self._root.iterdir()):
            parsed = parse_workspace_name(entry.name)
            if parsed is None or not entry.is_dir():
                continue
            request_id, created_ns = parsed
            items.append(
                WorkspaceInfo(
                    name=entry.name,
                    request_id=request_id,
                    created_ns=created_ns,
                    age_seconds=max(0, now - created_ns) / 1_000_000_000,
                    in_flight=entry.name in in_flight,
                )
            )
        return items

    def sweep(self, now_ns: int | None = None) -> SweepSummary:
        """Remove workspaces older than the grace period that are not in flight.

        Example:
            ```python
            summary = manager.sweep()
            ```
        """
        now = now_ns if now_ns is not None else time.time_ns()
        removed = kept = failed = 0
        for info in self.list_workspaces(now_ns=now):
            if info.in_flight or now - info.created_ns < self._grace_ns:
                kept += 1
                continue
            try:
                shutil.rmtree(self._root / info.name)
            except OSError as exc:
                failed += 1
                logger.warning("workspace_sweep_failed", workspace=info.name, error=str(exc))
                continue
            removed += 1
        if removed or failed:
            logger.info("workspace_sweep", root=str(self._root), removed=removed, kept=kept, failed=failed)
        return SweepSummary(removed=removed, kept=kept, failed=failed)
