# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class MatrixCIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - JSON reporting
      - debugging without full tracebacks
    """
    message: str
    details: dict = field(default_factory=dict)

    kind = "error"

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class ConfigurationError(MatrixCIError):
    """Malformed declaration or event. Fatal: nothing runs."""
    kind = "configuration"


@dataclass
class InfrastructureError(MatrixCIError):
    """The execution unit for a job instance cannot be provisioned."""
    kind = "infrastructure"


@dataclass(kw_only=True)
class StepFailure(MatrixCIError):
    """A step exited non-zero. Halts only its own job instance."""
    job: str
    step: str
    exit_code: Optional[int]
    message: str = ""
    output: str = ""

    kind = "step_failure"

    def __str__(self) -> str:
        msg = f"[{self.job}] step '{self.step}' failed (exit={self.exit_code})"
        if self.message:
            msg += f": {self.message}"
        return msg


@dataclass(kw_only=True)
class TimeoutExceeded(MatrixCIError):
    job: str
    step: Optional[str]
    minutes: float
    message: str = ""

    kind = "timeout"

    def __str__(self) -> str:
        where = f"step '{self.step}'" if self.step else "job"
        return f"[{self.job}] {where} exceeded {self.minutes:g} minute(s)"
