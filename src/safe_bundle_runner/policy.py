from __future__ import annotations

import tempfile
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .execution.gate import ADMISSION_MODES
from .execution.interpreters import INTERPRETERS
from .execution.types import ExecutionLimits

LOG_FORMATS = ("console", "json")


def _default_policy_path() -> Path:
    """Return bundled default policy TOML path.

    Example:
        ```python
        path = _default_policy_path()
        ```
    """
    return Path(__file__).with_name("default_policy.toml")


def _default_scratch_root() -> str:
    """Return the scratch root used when none is configured.

    Example:
        ```python
        root = _default_scratch_root()
        ```
    """
    return str(Path(tempfile.gettempdir()) / "safe-bundle-runner")


def _read_policy_toml(path: Path) -> dict[str, Any]:
    """Read policy TOML and return the `[policy]` table.

    Example:
        ```python
        raw = _read_policy_toml(Path("/etc/sbr/policy.toml"))
        ```
    """
    if not path.exists():
        return {
            "interpreter": "php",
            "timeout_seconds": 10,
            "max_output_kb": 1024,
            "max_fragment_kb": 256,
            "max_concurrency": 4,
            "max_concurrency_per_tenant": 0,
            "admission": "block",
            "admission_timeout_seconds": 30,
            "stale_grace_seconds": 300,
            "env_allowlist": ["PATH", "LANG", "LC_ALL", "TZ"],
            "log_level": "INFO",
            "log_format": "console",
        }
    raw = tomllib.loads(path.read_text(encoding="utf-8"))
    policy_obj = raw.get("policy", raw)
    if not isinstance(policy_obj, dict):
        raise ValueError("Policy config must be a TOML table")
    return policy_obj


def _list_of_str(value: Any, field_name: str) -> list[str]:
    """Validate and normalize a list-of-strings policy field.

    Example:
        ```python
        names = _list_of_str(["PATH", "LANG"], "env_allowlist")
        ```
    """
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"'{field_name}' must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValueError(f"'{field_name}' must contain only strings")
        out.append(item)
    return out


def _number(value: Any, field_name: str) -> float:
    """Validate a numeric policy field.

    Example:
        ```python
        seconds = _number(10, "timeout_seconds")
        ```
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{field_name}' must be a number")
    return float(value)


_DEFAULT_POLICY_RAW = _read_policy_toml(_default_policy_path())
DEFAULT_INTERPRETER = str(_DEFAULT_POLICY_RAW.get("interpreter", "php"))
DEFAULT_TIMEOUT_SECONDS = _number(_DEFAULT_POLICY_RAW.get("timeout_seconds", 10), "timeout_seconds")
DEFAULT_MAX_OUTPUT_KB = int(_DEFAULT_POLICY_RAW.get("max_output_kb", 1024))
DEFAULT_MAX_FRAGMENT_KB = int(_DEFAULT_POLICY_RAW.get("max_fragment_kb", 256))
DEFAULT_MAX_CONCURRENCY = int(_DEFAULT_POLICY_RAW.get("max_concurrency", 4))
DEFAULT_MAX_CONCURRENCY_PER_TENANT = int(_DEFAULT_POLICY_RAW.get("max_concurrency_per_tenant", 0))
DEFAULT_ADMISSION = str(_DEFAULT_POLICY_RAW.get("admission", "block"))
DEFAULT_ADMISSION_TIMEOUT_SECONDS = _number(
    _DEFAULT_POLICY_RAW.get("admission_timeout_seconds", 30), "admission_timeout_seconds"
)
DEFAULT_STALE_GRACE_SECONDS = _number(
    _DEFAULT_POLICY_RAW.get("stale_grace_seconds", 300), "stale_grace_seconds"
)
DEFAULT_ENV_ALLOWLIST = _list_of_str(_DEFAULT_POLICY_RAW.get("env_allowlist", []), "env_allowlist")
DEFAULT_LOG_LEVEL = str(_DEFAULT_POLICY_RAW.get("log_level", "INFO"))
DEFAULT_LOG_FORMAT = str(_DEFAULT_POLICY_RAW.get("log_format", "console"))


@dataclass(slots=True)
class SandboxPolicy:
    """Limits and service settings for executing fragment bundles.

    Zero disables `max_concurrency_per_tenant` and `admission_timeout_seconds`.

    Example:
        ```python
        policy = SandboxPolicy(interpreter="python", timeout_seconds=2, max_concurrency=2)
        ```
    """

    interpreter: str = DEFAULT_INTERPRETER
    interpreter_path: str | None = None
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    max_output_kb: int = DEFAULT_MAX_OUTPUT_KB
    max_fragment_kb: int = DEFAULT_MAX_FRAGMENT_KB
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    max_concurrency_per_tenant: int = DEFAULT_MAX_CONCURRENCY_PER_TENANT
    admission: str = DEFAULT_ADMISSION
    admission_timeout_seconds: float = DEFAULT_ADMISSION_TIMEOUT_SECONDS
    scratch_root: str = field(default_factory=_default_scratch_root)
    stale_grace_seconds: float = DEFAULT_STALE_GRACE_SECONDS
    env_allowlist: list[str] = field(default_factory=lambda: DEFAULT_ENV_ALLOWLIST.copy())
    log_level: str = DEFAULT_LOG_LEVEL
    log_format: str = DEFAULT_LOG_FORMAT
    config_path: str | None = None

    def __post_init__(self) -> None:
        """Validate enumerations and bounds after initialization.

        Example:
            ```python
            SandboxPolicy(admission="reject")
            ```
        """
        if self.interpreter not in INTERPRETERS:
            raise ValueError(f"interpreter must be one of: {', '.join(sorted(INTERPRETERS))}")
        if self.admission not in ADMISSION_MODES:
            raise ValueError("admission must be 'block' or 'reject'")
        if self.log_format not in LOG_FORMATS:
            raise ValueError("log_format must be 'console' or 'json'")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.max_output_kb < 1 or self.max_fragment_kb < 1:
            raise ValueError("max_output_kb and max_fragment_kb must be at least 1")
        if self.stale_grace_seconds <= self.timeout_seconds:
            raise ValueError("stale_grace_seconds must exceed timeout_seconds")

    @property
    def limits(self) -> ExecutionLimits:
        """Return the per-run sandbox limits.

        Example:
            ```python
            limits = policy.limits
            ```
        """
        return ExecutionLimits(
            timeout_seconds=self.timeout_seconds,
            max_output_bytes=self.max_output_kb * 1024,
        )

    @property
    def max_fragment_bytes(self) -> int:
        """Return the per-fragment size cap in bytes.

        Example:
            ```python
            cap = policy.max_fragment_bytes
            ```
        """
        return self.max_fragment_kb * 1024

    @classmethod
    def from_file(cls, config_path: str) -> "SandboxPolicy":
        """Create a policy instance from a TOML file.

        Example:
            ```python
            policy = SandboxPolicy.from_file("/etc/sbr/policy.toml")
            ```
        """
        raw = _read_policy_toml(Path(config_path))
        interpreter_path = raw.get("interpreter_path")
        if interpreter_path is not None and not isinstance(interpreter_path, str):
            raise ValueError("'interpreter_path' must be a string")
        return cls(
            interpreter=str(raw.get("interpreter", DEFAULT_INTERPRETER)),
            interpreter_path=interpreter_path,
            timeout_seconds=_number(raw.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS), "timeout_seconds"),
            max_output_kb=int(raw.get("max_output_kb", DEFAULT_MAX_OUTPUT_KB)),
            max_fragment_kb=int(raw.get("max_fragment_kb", DEFAULT_MAX_FRAGMENT_KB)),
            max_concurrency=int(raw.get("max_concurrency", DEFAULT_MAX_CONCURRENCY)),
            max_concurrency_per_tenant=int(
                raw.get("max_concurrency_per_tenant", DEFAULT_MAX_CONCURRENCY_PER_TENANT)
            ),
            admission=str(raw.get("admission", DEFAULT_ADMISSION)),
            admission_timeout_seconds=_number(
                raw.get("admission_timeout_seconds", DEFAULT_ADMISSION_TIMEOUT_SECONDS),
                "admission_timeout_seconds",
            ),
            scratch_root=str(raw.get("scratch_root") or _default_scratch_root()),
            stale_grace_seconds=_number(
                raw.get("stale_grace_seconds", DEFAULT_STALE_GRACE_SECONDS), "stale_grace_seconds"
            ),
            env_allowlist=_list_of_str(raw.get("env_allowlist", DEFAULT_ENV_ALLOWLIST), "env_allowlist"),
            log_level=str(raw.get("log_level", DEFAULT_LOG_LEVEL)),
            log_format=str(raw.get("log_format", DEFAULT_LOG_FORMAT)),
            config_path=config_path,
        )
