# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - step-level diagnostics in results
      - debugging without full tracebacks
    """
    message: str
    job: Optional[str] = None
    step: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    kind = "ci_error"

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigError(CIError):
    """Malformed matrix / include / condition / job graph. Raised before anything runs."""
    kind = "config_error"


class EvalError(CIError):
    """A condition or ${{ }} expression referenced an undefined variable."""
    kind = "eval_error"


@dataclass
class ActionFailure(CIError):
    """An action (shell command or registered action) reported failure."""
    exit_code: Optional[int] = None
    output: str = ""

    kind = "action_failure"

    def __str__(self) -> str:
        text = super().__str__()
        if self.exit_code is not None:
            text += f"\nexit_code={self.exit_code}"
        return text


class MergeFailure(CIError):
    """Coverage reports could not be merged or uploaded."""
    kind = "merge_failure"
