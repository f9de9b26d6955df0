# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

# Instance / step statuses
SUCCEEDED = "succeeded"
FAILED = "failed"
SKIPPED = "skipped"
TOLERATED = "failed-but-tolerated"
FATAL = "failed-fatal"
CANCELLED = "cancelled"

# A continue-on-error policy: a fixed bool, a condition string
# ("toolchain == 'nightly'") or a predicate over the instance values.
ErrorPolicy = Union[bool, str, Callable[[Mapping[str, Optional[str]]], bool]]


@dataclass(frozen=True)
class Step:
    """A single unit of work inside a CI job: a shell command or an action reference."""
    name: str
    run: str | None = None
    uses: str | None = None
    with_: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    if_: str | None = None
    cwd: str | None = None
    continue_on_error: bool = False

    @property
    def action_ref(self) -> str:
        return self.uses if self.uses is not None else "run"


@dataclass(frozen=True)
class Coverage:
    """Coverage merge + upload settings for a coverage-producing job."""
    name: str | None = None              # upload name, may use ${{ }} (falls back to job name)
    fail_ci_if_error: bool = False
    env_vars: List[str] = field(default_factory=list)   # env keys sent as upload metadata
    output: str | None = None            # merged report path (defaults under settings.COVERAGE_DIR)


@dataclass
class Job:
    """
    A CI job: a build matrix + ordered steps + execution policies.

    `axes` and `include` describe the matrix; an empty matrix runs the job once.
    """
    name: str
    steps: list[Step]
    axes: Dict[str, List[str]] = field(default_factory=dict)
    include: List[Dict[str, Any]] = field(default_factory=list)
    needs: list[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    fail_fast: bool = True
    continue_on_error: ErrorPolicy = False
    max_parallel: int | None = None
    coverage: Coverage | None = None
    display_name: str | None = None


@dataclass
class Pipeline:
    name: str
    jobs: list[Job]
    env: Dict[str, str] = field(default_factory=dict)

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)


@dataclass(frozen=True)
class JobInstance:
    """One concrete combination of matrix values for a job."""
    job: str
    index: int
    values: Mapping[str, Optional[str]]
    continue_on_error: bool = False

    @property
    def name(self) -> str:
        shown = [v for v in self.values.values() if v is not None]
        if not shown:
            return self.job
        return f"{self.job} ({', '.join(shown)})"

    def lookup(self) -> Dict[str, Optional[str]]:
        """Variables visible to conditions: `os` and `matrix.os` alike."""
        out: Dict[str, Optional[str]] = {"github.job": self.job}
        for k, v in self.values.items():
            out[k] = v
            out[f"matrix.{k}"] = v
        return out


@dataclass
class StepResult:
    step: str
    status: str                 # succeeded | failed | skipped
    output: str = ""
    error: str | None = None
    duration: float = 0.0


@dataclass
class JobResult:
    """Outcome of one job instance."""
    instance: JobInstance
    status: str                 # succeeded | failed-but-tolerated | failed-fatal | cancelled
    steps: list[StepResult] = field(default_factory=list)
    artifacts: list[Path] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)   # instance env after the last step

    @property
    def failed_steps(self) -> list[StepResult]:
        return [s for s in self.steps if s.status == FAILED]


@dataclass
class JobSummary:
    """Aggregate of all instances of one job."""
    job: str
    status: str                 # succeeded | failed | failed-but-tolerated | skipped
    instances: list[JobResult] = field(default_factory=list)
    coverage_report: Path | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class PipelineResult:
    jobs: Dict[str, JobSummary] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return any(s.status == FAILED for s in self.jobs.values())

    @property
    def status(self) -> str:
        if self.failed:
            return FAILED
        if any(s.status == TOLERATED for s in self.jobs.values()):
            return TOLERATED
        return SUCCEEDED
