from __future__ import annotations

import threading
from pathlib import Path
from typing import Protocol

from .types import ExecutionLimits, ExecutionResult
from .workspace import Workspace


class ExecutionEngine(Protocol):
    def run(
        self,
        workspace: Workspace,
        source_path: Path,
        limits: ExecutionLimits,
        cancel: threading.Event | None = None,
    ) -> ExecutionResult:
        """Run one source artifact inside its workspace and classify the outcome.

        Example:
            ```python
            result = engine.run(ws, ws.source_path, ExecutionLimits(timeout_seconds=5))
            ```
        """
        ...
