# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional


# ----------------------------------------------------------------------
# Plan validation (static, raised before any step runs)
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class PlanIssue:
    """
    One problem found while validating a plan.

    kind is one of:
      duplicate-step, unknown-step, unknown-field, unknown-output,
      condition-cycle, dependency-cycle, unmet-reference, unproven-reference,
      condition-syntax
    """
    kind: str
    step: Optional[str]
    message: str
    details: Dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        head = f"{self.kind}: {self.message}"
        if self.step:
            head += f" (step={self.step})"
        lines = [head]
        for k, v in self.details.items():
            lines.append(f"  {k}={v}")
        return "\n".join(lines)


class PlanValidationError(Exception):
    """Raised when a plan cannot be executed safely. Carries every issue found."""

    def __init__(self, issues: List[PlanIssue]):
        self.issues = list(issues)
        super().__init__(str(self))

    @property
    def steps(self) -> List[str]:
        return sorted({i.step for i in self.issues if i.step})

    def __str__(self) -> str:
        if len(self.issues) == 1:
            return str(self.issues[0])
        body = "\n".join(str(i) for i in self.issues)
        return f"{len(self.issues)} plan validation issues:\n{body}"


class ConditionSyntaxError(PlanValidationError):
    def __init__(self, text: str, reason: str, step: Optional[str] = None):
        self.text = text
        self.reason = reason
        super().__init__([
            PlanIssue(
                kind="condition-syntax",
                step=step,
                message=reason,
                details={"condition": text},
            )
        ])


# ----------------------------------------------------------------------
# Inputs
# ----------------------------------------------------------------------

class ConfigurationError(Exception):
    """Configuration file missing, unreadable or failing validation."""
    pass


class PlanLoadError(Exception):
    """Plan source missing or not defining a list of steps."""
    pass


# ----------------------------------------------------------------------
# Execution (dynamic, per step)
# ----------------------------------------------------------------------

@dataclass
class StepFailure(Exception):
    """
    Structured execution error for one step, with enough context for
    clean CLI output without a full traceback.
    """
    step: str
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"[{self.step}] {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)
