"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Optional

from ..model import FATAL, SKIPPED, TOLERATED, JobInstance, PipelineResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: Output stream (defaults to sys.stdout at write time)
        """
        self.debug = debug
        self.stream = stream
        # instances print from worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        target = sys.stderr if err else (self.stream or sys.stdout)
        with self._lock:
            for line in lines:
                print(line, file=target)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        pipeline: str,
        workflow: str,
        job_count: int,
        instance_count: int,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Pipeline: {pipeline}",
            f"Workflow: {workflow}",
            f"Jobs: {job_count}",
            f"Instances: {instance_count}",
            "",
        )

    def print_plan(self, job: str, instances: Iterable[JobInstance], fail_fast: bool) -> None:
        """Print the expanded matrix of one job."""
        instances = list(instances)
        lines = [f"{job} ({len(instances)} instance(s), fail-fast={'on' if fail_fast else 'off'})"]
        for inst in instances:
            marker = " [continue-on-error]" if inst.continue_on_error else ""
            lines.append(f"  {inst.name}{marker}")
        self._out(*lines)

    def print_instance_start(self, name: str) -> None:
        self._out(f"[{name}] STARTED")

    def print_step(self, instance: str, name: str) -> None:
        """Print step start message."""
        self._out(f"[{instance}] STEP: {name}")

    def print_step_skipped(self, instance: str, name: str) -> None:
        self._out(f"[{instance}] SKIPPED: {name}")

    def print_step_failure(
        self,
        instance: str,
        name: str,
        reason: str,
        output: str = "",
        tolerated: bool = False,
    ) -> None:
        """
        Print failure message for one step.

        Args:
            instance: Instance display name
            name: Step name
            reason: Failure reason/error message
            output: Captured output (shown in debug mode only)
            tolerated: If True the failure doesn't fail the job
        """
        suffix = " (tolerated)" if tolerated else ""
        lines = [f"[{instance}] STEP FAILED{suffix}: {name}"]
        if self.debug:
            lines.append(f"Error details: {reason}")
            if output:
                lines.append(output.rstrip())
        else:
            # first line of error for non-debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._out(*lines)

    def print_instance_done(self, name: str, status: str) -> None:
        self._out(f"[{name}] STATUS: {status}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._out(f"\nJOB SKIPPED: {name} ({reason})")

    def print_warning(self, message: str) -> None:
        self._out(f"WARNING: {message}")

    def print_results(self, result: PipelineResult) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job, summary in result.jobs.items():
            lines.append(f"  {job}: {summary.status.upper()}")
            if summary.status == SKIPPED:
                continue
            for res in summary.instances:
                lines.append(f"    {res.instance.name}: {res.status}")
                if res.status in (FATAL, TOLERATED):
                    for step in res.failed_steps:
                        lines.append(f"      failed step: {step.step}")
            if summary.coverage_report is not None:
                lines.append(f"    coverage: {summary.coverage_report}")
            for w in summary.warnings:
                lines.append(f"    warning: {w}")
        lines.append(f"PIPELINE: {result.status.upper()}")
        self._out(*lines)

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
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


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
