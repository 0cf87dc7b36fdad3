from __future__ import annotations


class SandboxError(Exception):
    """Base class for errors raised by the execution pipeline.

    Example:
        ```python
        try:
            runner.execute(request)
        except SandboxError as exc:
            log.error("execution_failed", error=str(exc))
        ```
    """


class ValidationError(SandboxError, ValueError):
    """Malformed request, rejected before admission.

    Example:
        ```python
        raise ValidationError("request id is already in flight")
        ```
    """

    status_code = 400


class PayloadTooLarge(ValidationError):
    """A fragment exceeds the configured size cap.

    Example:
        ```python
        raise PayloadTooLarge("'markup' exceeds 256 KB")
        ```
    """

    status_code = 413


class WorkspaceError(SandboxError):
    """Filesystem failure while allocating or writing a workspace.

    Example:
        ```python
        raise WorkspaceError("scratch root is not writable")
        ```
    """


class SourceAlreadyWritten(WorkspaceError):
    """The workspace source artifact was already written once.

    Example:
        ```python
        raise SourceAlreadyWritten("source already written for ws-abc-1")
        ```
    """


class GateFull(SandboxError):
    """No admission slot could be obtained.

    Example:
        ```python
        raise GateFull("all 4 execution slots are busy", retry_after=1)
        ```
    """

    def __init__(self, message: str, *, retry_after: int = 1) -> None:
        """Store the suggested retry delay alongside the message.

        Example:
            ```python
            exc = GateFull("busy", retry_after=2)
            ```
        """
        super().__init__(message)
        self.retry_after = retry_after


class SlotReleaseError(SandboxError):
    """An admission slot was dismissed twice or was never admitted.

    Example:
        ```python
        raise SlotReleaseError("slot 3 was already dismissed")
        ```
    """


class ExecutionCancelled(SandboxError):
    """The caller cancelled the request before a result was produced.

    Example:
        ```python
        raise ExecutionCancelled("client disconnected")
        ```
    """
