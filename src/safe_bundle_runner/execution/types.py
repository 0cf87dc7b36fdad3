from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import ClassVar, Union

DEFAULT_TITLE = "Preview"


def new_request_id() -> str:
    """Return a fresh opaque request identifier.

    Example:
        ```python
        rid = new_request_id()
        ```
    """
    return uuid.uuid4().hex


@dataclass(frozen=True, slots=True)
class ExecutionRequest:
    """One fragment bundle submitted for rendering.

    Example:
        ```python
        req = ExecutionRequest(markup="<h1>Hi</h1>", server_script="<?php echo 1; ?>")
        ```
    """

    markup: str = ""
    style: str = ""
    client_script: str = ""
    server_script: str = ""
    title: str = DEFAULT_TITLE
    request_id: str = field(default_factory=new_request_id)

    def fragments(self) -> dict[str, str]:
        """Return the four user fragments keyed by their wire names.

        Example:
            ```python
            sizes = {k: len(v) for k, v in req.fragments().items()}
            ```
        """
        return {
            "markup": self.markup,
            "style": self.style,
            "clientScript": self.client_script,
            "serverScript": self.server_script,
        }


@dataclass(frozen=True, slots=True)
class ExecutionLimits:
    """Resource limits applied to one sandboxed run.

    Example:
        ```python
        limits = ExecutionLimits(timeout_seconds=10, max_output_bytes=1024 * 1024)
        ```
    """

    timeout_seconds: float = 10.0
    max_output_bytes: int = 1024 * 1024


@dataclass(frozen=True, slots=True)
class StaticDocument:
    """Fully assembled HTML document produced without execution.

    Example:
        ```python
        doc = StaticDocument(html="<!DOCTYPE html>...")
        ```
    """

    html: str


@dataclass(frozen=True, slots=True)
class SandboxSource:
    """Self-contained source file to hand to the sandbox.

    Example:
        ```python
        src = SandboxSource(source=b"<?php echo 1;", suffix=".php", interpreter="php")
        ```
    """

    source: bytes
    suffix: str
    interpreter: str


@dataclass(frozen=True, slots=True)
class Success:
    """The interpreter exited cleanly; `output` is its standard output.

    Example:
        ```python
        res = Success(output=b"ok")
        ```
    """

    kind: ClassVar[str] = "success"

    output: bytes
    truncated: bool = False


@dataclass(frozen=True, slots=True)
class RuntimeFailure:
    """The user's code failed: non-zero exit or fatal diagnostic.

    Example:
        ```python
        res = RuntimeFailure(stderr="PHP Parse error: ...", exit_code=255)
        ```
    """

    kind: ClassVar[str] = "runtime_error"

    stderr: str
    exit_code: int


@dataclass(frozen=True, slots=True)
class Timeout:
    """The wall-clock limit was exceeded and the process group was killed.

    Example:
        ```python
        res = Timeout(elapsed_ms=10004)
        ```
    """

    kind: ClassVar[str] = "timeout"

    elapsed_ms: int


@dataclass(frozen=True, slots=True)
class SystemFailure:
    """Failure not attributable to the user's code.

    Example:
        ```python
        res = SystemFailure(reason="interpreter 'php' was not found on PATH")
        ```
    """

    kind: ClassVar[str] = "system_error"

    reason: str


ExecutionResult = Union[Success, RuntimeFailure, Timeout, SystemFailure]
