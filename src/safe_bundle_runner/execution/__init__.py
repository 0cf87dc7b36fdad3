from .engine import ExecutionEngine
from .gate import AdmissionSlot, ConcurrencyGate
from .sandbox import ProcessSandbox
from .types import ExecutionLimits, ExecutionRequest, ExecutionResult
from .workspace import Workspace, WorkspaceManager

__all__ = [
    "AdmissionSlot",
    "ConcurrencyGate",
    "ExecutionEngine",
    "ExecutionLimits",
    "ExecutionRequest",
    "ExecutionResult",
    "ProcessSandbox",
    "Workspace",
    "WorkspaceManager",
]
