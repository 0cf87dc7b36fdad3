from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

import structlog

from .composer import compose
from .execution.engine import ExecutionEngine
from .execution.errors import ExecutionCancelled, PayloadTooLarge, ValidationError, WorkspaceError
from .execution.gate import ConcurrencyGate
from .execution.interpreters import InterpreterProfile, profile_for_interpreter
from .execution.sandbox import ProcessSandbox
from .execution.types import (
    ExecutionRequest,
    ExecutionResult,
    SandboxSource,
    StaticDocument,
    SystemFailure,
)
from .execution.workspace import WorkspaceManager
from .policy import SandboxPolicy
from .session import SessionContext

logger = structlog.get_logger(__name__)


def _resolve_policy(policy: SandboxPolicy | None, policy_file: str | None) -> SandboxPolicy:
    """Resolve the effective policy object for a runner.

    Example:
        ```python
        policy = _resolve_policy(None, "/etc/sbr/policy.toml")
        ```
    """
    if policy is not None and policy_file is not None:
        raise ValueError("Provide either 'policy' or 'policy_file', not both")
    if policy is None and policy_file is not None:
        return SandboxPolicy.from_file(policy_file)
    if policy is None:
        return SandboxPolicy()
    return policy


def validate_request(request: ExecutionRequest, max_fragment_bytes: int) -> None:
    """Reject oversized fragments before any slot or workspace is used.

    Example:
        ```python
        validate_request(ExecutionRequest(markup="<p>hi</p>"), 256 * 1024)
        ```
    """
    for name, text in request.fragments().items():
        if not isinstance(text, str):
            raise ValidationError(f"'{name}' must be a string")
        size = len(text.encode("utf-8"))
        if size > max_fragment_bytes:
            raise PayloadTooLarge(
                f"'{name}' is {size} bytes; the limit is {max_fragment_bytes // 1024} KB"
            )
    if not isinstance(request.title, str) or len(request.title.encode("utf-8")) > max_fragment_bytes:
        raise ValidationError("'title' must be a string within the fragment size limit")


class BundleRunner:
    """Compose, admit, execute and clean up fragment bundles.

    Example:
        ```python
        runner = BundleRunner(SandboxPolicy(interpreter="php"))
        result = runner.execute(ExecutionRequest(server_script="<?php echo 'ok'; ?>"))
        ```
    """

    def __init__(
        self,
        policy: SandboxPolicy | None = None,
        *,
        policy_file: str | None = None,
        engine: ExecutionEngine | None = None,
        gate: ConcurrencyGate | None = None,
        workspaces: WorkspaceManager | None = None,
    ) -> None:
        """Wire the pipeline components from a policy, allowing overrides.

        Example:
            ```python
            runner = BundleRunner(policy_file="/etc/sbr/policy.toml")
            ```
        """
        self._policy = _resolve_policy(policy, policy_file)
        self._profile = profile_for_interpreter(self._policy.interpreter)
        self._engine: ExecutionEngine = engine or ProcessSandbox(
            self._profile,
            interpreter_path=self._policy.interpreter_path,
            env_allowlist=self._policy.env_allowlist,
        )
        self._gate = gate or ConcurrencyGate(
            self._policy.max_concurrency,
            per_tenant_limit=self._policy.max_concurrency_per_tenant or None,
            mode=self._policy.admission,
            acquire_timeout=self._policy.admission_timeout_seconds or None,
        )
        self._workspaces = workspaces or WorkspaceManager(
            self._policy.scratch_root,
            stale_grace_seconds=self._policy.stale_grace_seconds,
        )
        self._ids_lock = threading.Lock()
        self._active_ids: set[str] = set()

    @property
    def policy(self) -> SandboxPolicy:
        """Return the effective policy.

        Example:
            ```python
            runner.policy.timeout_seconds
            ```
        """
        return self._policy

    @property
    def profile(self) -> InterpreterProfile:
        """Return the interpreter profile used for composition and execution.

        Example:
            ```python
            runner.profile.name
            ```
        """
        return self._profile

    @property
    def gate(self) -> ConcurrencyGate:
        """Return the admission gate.

        Example:
            ```python
            runner.gate.in_use
            ```
        """
        return self._gate

    @property
    def workspaces(self) -> WorkspaceManager:
        """Return the workspace manager.

        Example:
            ```python
            runner.workspaces.sweep()
            ```
        """
        return self._workspaces

    def execute(
        self,
        request: ExecutionRequest,
        session: SessionContext | None = None,
        cancel: threading.Event | None = None,
    ) -> StaticDocument | ExecutionResult:
        """Render a bundle, running its server script in the sandbox when present.

        Example:
            ```python
            outcome = runner.execute(request, SessionContext.anonymous(), threading.Event())
            ```
        """
        validate_request(request, self._policy.max_fragment_bytes)
        artifact = compose(request, self._profile)
        if isinstance(artifact, StaticDocument):
            return artifact

        session = session or SessionContext.anonymous()
        with self._claim_request_id(request.request_id):
            slot = self._gate.admit(tenant=session.tenant_id, cancel=cancel)
            try:
                return self._run_admitted(request, artifact, cancel)
            finally:
                self._gate.dismiss(slot)

    def _run_admitted(
        self,
        request: ExecutionRequest,
        artifact: SandboxSource,
        cancel: threading.Event | None,
    ) -> ExecutionResult:
        """Allocate a workspace, run the source and always tear the workspace down.

        Example:
            ```python
            result = runner._run_admitted(request, artifact, None)
            ```
        """
        try:
            workspace = self._workspaces.acquire(request.request_id)
        except WorkspaceError as exc:
            logger.error("workspace_acquire_failed", request_id=request.request_id, error=str(exc))
            return SystemFailure(reason=str(exc))
        try:
            if cancel is not None and cancel.is_set():
                raise ExecutionCancelled("Execution cancelled before start")
            source_path = workspace.write_source(artifact.source, artifact.suffix)
            result = self._engine.run(workspace, source_path, self._policy.limits, cancel=cancel)
        except WorkspaceError as exc:
            logger.error("workspace_write_failed", request_id=request.request_id, error=str(exc))
            result = SystemFailure(reason=str(exc))
        finally:
            self._workspaces.release(workspace)
        if isinstance(result, SystemFailure):
            logger.error("execution_system_error", request_id=request.request_id, reason=result.reason)
        return result

    @contextmanager
    def _claim_request_id(self, request_id: str) -> Iterator[None]:
        """Hold a request id for the duration of one execution.

        Example:
            ```python
            with runner._claim_request_id("abc123"):
                ...
            ```
        """
        with self._ids_lock:
            if request_id in self._active_ids:
                raise ValidationError(f"Request id {request_id!r} is already in flight")
            self._active_ids.add(request_id)
        try:
            yield
        finally:
            with self._ids_lock:
                self._active_ids.discard(request_id)
