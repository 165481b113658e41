from __future__ import annotations
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel

from .errors import InvalidLimitsError

MIB = 1024 * 1024


class JobStatus(str, Enum):
    SUBMITTED = "SUBMITTED"
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class OutcomeStatus(str, Enum):
    COMPILE_ERROR = "compile_error"
    SUCCESS = "success"
    RUNTIME_ERROR = "runtime_error"
    TIMEOUT = "timeout"
    OUTPUT_LIMIT_EXCEEDED = "output_limit_exceeded"


@dataclass(frozen=True)
class Limits:
    memory_bytes: int = 256 * MIB
    cpu_seconds: int = 5
    wall_ms: int = 5000
    max_output: int = 1 * MIB
    max_processes: int = 256

    def __post_init__(self):
        for f in fields(self):
            val = getattr(self, f.name)
            if isinstance(val, bool) or not isinstance(val, int) or val <= 0:
                raise InvalidLimitsError(f"{f.name} must be a positive integer, got {val!r}")

    def merged(self, override: Optional[Mapping[str, Any]]) -> "Limits":
        """Return a copy with the keys of ``override`` applied. Unknown keys are rejected."""
        if not override:
            return self
        known = {f.name for f in fields(self)}
        unknown = set(override) - known
        if unknown:
            raise InvalidLimitsError(f"unknown limit(s): {', '.join(sorted(unknown))}")
        return replace(self, **{k: v for k, v in override.items() if v is not None})

    def to_dict(self) -> Dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class ExecutionOutcome:
    status: OutcomeStatus
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    signal: Optional[str] = None
    runtime_ms: int = 0
    backend: Optional[str] = None

    @classmethod
    def compile_error(cls, diagnostics: str) -> "ExecutionOutcome":
        return cls(status=OutcomeStatus.COMPILE_ERROR, stderr=diagnostics)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "signal": self.signal,
            "runtime_ms": self.runtime_ms,
            "backend": self.backend,
        }


@dataclass
class CompileResult:
    ok: bool
    diagnostics: str = ""
    binary: Optional[str] = None
    duration_ms: int = 0


class JobRequest(BaseModel):
    """Body of a queue message."""
    id: str
    code: str
    input: Optional[str] = None


@dataclass
class Message:
    """One received queue message. ``receipt`` is what ``delete`` needs to acknowledge it."""
    id: str
    body: str
    receipt: str
    receive_count: int = 1
    attributes: Dict[str, Any] = field(default_factory=dict)
