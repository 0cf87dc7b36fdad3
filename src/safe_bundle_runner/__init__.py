__version__ = "0.1.0"

from .composer import compose, render_document
from .execution.types import (
    ExecutionRequest,
    RuntimeFailure,
    StaticDocument,
    Success,
    SystemFailure,
    Timeout,
)
from .policy import SandboxPolicy
from .runner import BundleRunner

__all__ = [
    "BundleRunner",
    "ExecutionRequest",
    "RuntimeFailure",
    "SandboxPolicy",
    "StaticDocument",
    "Success",
    "SystemFailure",
    "Timeout",
    "compose",
    "render_document",
]
