"""Console output formatting utilities for deployplan."""

from __future__ import annotations

import sys
from typing import Any, Dict, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from ..errors import PlanValidationError
    from ..model import PlanResult
    from ..planner import Plan


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress per-step progress lines
        """
        self.debug = debug
        self.quiet = quiet

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(
        self,
        plan: str,
        source: str,
        scope: str,
        step_count: int,
    ) -> None:
        """Print run start information."""
        print("\nDEPLOYMENT STARTED")
        print(f"Plan: {plan}")
        print(f"Source: {source}")
        print(f"Scope: {scope}")
        print(f"Steps: {step_count}")
        print()

    def print_plan(self, plan: "Plan") -> None:
        """Print included steps by stage, then the excluded ones."""
        self.print_header(f"PLAN {plan.name}")
        for idx, level in enumerate(plan.levels, start=1):
            print(f"Stage {idx}:")
            for name in level:
                step = plan.step(name)
                deps = plan.dependencies(name)
                after = f" after {', '.join(deps)}" if deps else ""
                print(f"  {name} [{step.scope.value}]{after}")
        if plan.excluded:
            print("Excluded:")
            for name in plan.excluded:
                print(f"  {name} (condition false: {plan.step(name).condition})")

    def print_step_start(self, name: str, scope: str, deployment: str) -> None:
        """Print step start message."""
        if self.quiet:
            return
        print(f"\nSTEP STARTED: {name} ({scope}, deployment={deployment})")

    def print_step_success(self, name: str, duration: Optional[float] = None) -> None:
        """Print success message."""
        if self.quiet:
            return
        if duration is not None:
            print(f"STEP SUCCEEDED: {name} ({duration:.1f}s)")
        else:
            print(f"STEP SUCCEEDED: {name}")

    def print_step_skipped(self, name: str, reason: str) -> None:
        """Print step skipped message."""
        if self.quiet:
            return
        print(f"STEP SKIPPED: {name} ({reason})")

    def print_failure(
        self,
        name: str,
        reason: str,
        hint: Optional[str] = None,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Step name
            reason: Failure reason/error message
            hint: Optional hint for user
        """
        print(f"STEP FAILED: {name}")
        if hint:
            print(f"Hint: {hint}")
        if self.debug:
            print(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            print(f"Error: {error_line}")

    def print_results(self, result: "PlanResult") -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for name, r in result.steps.items():
            print(f"  {name}: {r.label.upper()}")
        failed = [n for n, r in result.steps.items() if r.state.value == "failed"]
        if failed:
            print(f"\nFailed: {', '.join(failed)}")

    def print_outputs(self, outputs: Dict[str, Dict[str, Any]]) -> None:
        """Print collected outputs, one line per step output."""
        if not outputs:
            return
        self.print_header("OUTPUTS")
        for step, values in outputs.items():
            for key, value in values.items():
                print(f"  {step}.{key} = {value}")

    def print_validation_error(self, err: "PlanValidationError") -> None:
        """Print every issue of a plan validation error."""
        print("\nERROR: Plan validation failed", file=sys.stderr)
        for issue in err.issues:
            where = f" [{issue.step}]" if issue.step else ""
            print(f"  {issue.kind}{where}: {issue.message}", file=sys.stderr)
            for k, v in issue.details.items():
                print(f"      {k}: {v}", file=sys.stderr)
        print("\nNo step was executed.", file=sys.stderr)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
