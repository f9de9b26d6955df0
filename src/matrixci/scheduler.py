# scheduler.py
from __future__ import annotations

import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Sequence, Set, Union

from . import settings
from .actions import ActionExecutor
from .aggregate import aggregate, summarize_job
from .conditions import parse_condition
from .cobertura import CoverageUploader
from .errors import ConfigError
from .expander import expand_job
from .model import (
    FAILED,
    FATAL,
    SKIPPED,
    Job,
    JobInstance,
    JobResult,
    JobSummary,
    Pipeline,
    PipelineResult,
    StepResult,
)
from .runner import cancelled_result, run_instance
from .ui.console import get_console


# ----------------------------------------------------------------------
# Job graph (needs)
# ----------------------------------------------------------------------

def _check_needs(jobs: List[Job]) -> Dict[str, Job]:
    by_name: Dict[str, Job] = {}
    for job in jobs:
        if job.name in by_name:
            raise ConfigError(f"Duplicate job name '{job.name}'", job=job.name)
        by_name[job.name] = job
    for job in jobs:
        for need in job.needs:
            if need not in by_name:
                raise ConfigError(
                    f"Job '{job.name}' needs missing job '{need}'. Known jobs: {sorted(by_name)}",
                    job=job.name,
                )
    return by_name


def stages(jobs: List[Job]) -> List[List[str]]:
    """
    Group jobs into stages by the length of their longest `needs` chain.

    Stage 0 needs nothing; a job in stage N needs at least one job from
    stage N-1. Jobs keep definition order inside a stage.
    Raises ConfigError on duplicate names, missing needs and cycles.
    """
    by_name = _check_needs(jobs)
    depth: Dict[str, int] = {}
    visiting: List[str] = []

    def visit(name: str) -> int:
        if name in depth:
            return depth[name]
        if name in visiting:
            cycle = visiting[visiting.index(name):] + [name]
            raise ConfigError(f"needs form a cycle: {' -> '.join(cycle)}", job=name)
        visiting.append(name)
        needs = by_name[name].needs
        depth[name] = 1 + max((visit(n) for n in needs), default=-1)
        visiting.pop()
        return depth[name]

    for job in jobs:
        visit(job.name)
    out: List[List[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
    for job in jobs:
        out[depth[job.name]].append(job.name)
    return out


def select_jobs(jobs: List[Job], names: Sequence[str]) -> List[Job]:
    """Keep the named jobs plus everything they (transitively) need, in definition order."""
    by_name = {j.name: j for j in jobs}
    wanted: Set[str] = set()
    stack = list(names)
    while stack:
        name = stack.pop()
        if name in wanted:
            continue
        if name not in by_name:
            raise ConfigError(f"Unknown job '{name}'. Known jobs: {sorted(by_name)}")
        wanted.add(name)
        stack.extend(by_name[name].needs)
    return [j for j in jobs if j.name in wanted]


# ----------------------------------------------------------------------
# Definition checks (everything that can fail before the first step runs)
# ----------------------------------------------------------------------

def _validate_job(job: Job) -> None:
    if not job.steps:
        raise ConfigError("job has no steps", job=job.name)
    if job.max_parallel is not None and job.max_parallel < 1:
        raise ConfigError(f"max-parallel must be >= 1, got {job.max_parallel}", job=job.name)
    for step in job.steps:
        if (step.run is None) == (step.uses is None):
            raise ConfigError("step needs exactly one of 'run' or 'uses'", job=job.name, step=step.name)
        if step.if_:
            try:
                parse_condition(step.if_)
            except ConfigError as e:
                e.job, e.step = job.name, step.name
                raise


def plan(jobs: Iterable[Job]) -> Dict[str, List[JobInstance]]:
    """
    Validate every job and expand its matrix. Raises ConfigError.

    Returns instances per job in definition order.
    """
    jobs = list(jobs)
    stages(jobs)

    out: Dict[str, List[JobInstance]] = {}
    for job in jobs:
        _validate_job(job)
        out[job.name] = expand_job(job)
    return out


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

@dataclass
class _JobRun:
    """Scheduler-side bookkeeping for one job. Only touched by the scheduler thread."""
    job: Job
    pending: Deque[JobInstance]
    cancel: threading.Event = field(default_factory=threading.Event)
    in_flight: int = 0
    results: Dict[int, JobResult] = field(default_factory=dict)

    @property
    def done(self) -> bool:
        return not self.pending and self.in_flight == 0

    def can_start(self) -> bool:
        if not self.pending:
            return False
        return self.job.max_parallel is None or self.in_flight < self.job.max_parallel

    def record(self, result: JobResult) -> None:
        self.results[result.instance.index] = result
        if result.status == FATAL and self.job.fail_fast:
            self.cancel.set()


def _safe_run(
    job: Job,
    instance: JobInstance,
    executor: ActionExecutor,
    cancel: threading.Event,
    base_env: Dict[str, str],
) -> JobResult:
    try:
        return run_instance(job, instance, executor, cancel=cancel, base_env=base_env)
    except Exception as e:
        # run_instance converts step errors itself; this is the last line for the instance
        return JobResult(
            instance=instance,
            status=FATAL,
            steps=[StepResult(step="<runner>", status=FAILED, error=f"{type(e).__name__}: {e}")],
        )


def run_pipeline(
    pipeline: Union[Pipeline, List[Job]],
    *,
    executor: ActionExecutor | None = None,
    max_workers: int | None = None,
    uploader: CoverageUploader | None = None,
    coverage_dir: str | None = None,
    only: Sequence[str] | None = None,
    print_plan: bool = True,
) -> PipelineResult:
    """
    Run every job instance with bounded parallelism.

    - all definition errors raise ConfigError before anything runs
    - instances of all ready jobs share one pool of `max_workers`
    - a job starts once its needs finished without failing; otherwise it's skipped
    - fail-fast: a fatal instance cancels its siblings (pending ones never start,
      running ones stop after their current step)
    - coverage merge and upload for a finished job run on the pool, off the scheduler thread
    """
    if isinstance(pipeline, Pipeline):
        jobs, base_env = list(pipeline.jobs), dict(pipeline.env)
    else:
        jobs, base_env = list(pipeline), {}
    if only:
        jobs = select_jobs(jobs, only)

    console = get_console()
    instances = plan(jobs)
    if print_plan:
        for job in jobs:
            console.print_plan(job.name, instances[job.name], job.fail_fast)

    executor = executor or ActionExecutor()
    limit = max_workers or settings.default_workers()
    by_name = {j.name: j for j in jobs}
    dependents: Dict[str, List[str]] = {j.name: [] for j in jobs}
    waiting: Dict[str, int] = {}
    for job in jobs:
        needs = list(dict.fromkeys(job.needs))
        waiting[job.name] = len(needs)
        for need in needs:
            dependents[need].append(job.name)

    summaries: Dict[str, JobSummary] = {}
    ready: Deque[str] = deque(j.name for j in jobs if waiting[j.name] == 0)
    active: Dict[str, _JobRun] = {}
    in_flight: Dict[Future, _JobRun] = {}
    summarizing: Dict[Future, str] = {}

    def finish(name: str, summary: JobSummary) -> None:
        summaries[name] = summary
        for nxt in dependents[name]:
            waiting[nxt] -= 1
            if waiting[nxt] == 0:
                ready.append(nxt)

    with ThreadPoolExecutor(max_workers=limit) as pool:
        while ready or active or summarizing:
            # start jobs whose needs are all finished
            while ready:
                name = ready.popleft()
                job = by_name[name]
                blocked = [n for n in job.needs if summaries[n].status in (FAILED, SKIPPED)]
                if blocked:
                    console.print_job_skipped(name, f"needs failed: {', '.join(blocked)}")
                    finish(name, JobSummary(job=name, status=SKIPPED))
                    continue
                active[name] = _JobRun(job=job, pending=deque(instances[name]))

            # fill free slots, round-robin across jobs
            progress = True
            while progress and len(in_flight) < limit:
                progress = False
                for run in active.values():
                    if len(in_flight) >= limit:
                        break
                    if not run.can_start():
                        continue
                    inst = run.pending.popleft()
                    progress = True
                    if run.cancel.is_set():
                        run.record(cancelled_result(inst))
                        continue
                    fut = pool.submit(_safe_run, run.job, inst, executor, run.cancel, base_env)
                    run.in_flight += 1
                    in_flight[fut] = run

            # wait for one completion (instance or job summary)
            if in_flight or summarizing:
                fut = next(as_completed(list(in_flight) + list(summarizing)))
                if fut in summarizing:
                    finish(summarizing.pop(fut), fut.result())
                else:
                    run = in_flight.pop(fut)
                    run.in_flight -= 1
                    run.record(fut.result())

            # merge/upload coverage off the scheduler thread
            for name in [n for n, r in active.items() if r.done]:
                run = active.pop(name)
                results = [run.results[i] for i in sorted(run.results)]
                fut = pool.submit(summarize_job, run.job, results, uploader=uploader, coverage_dir=coverage_dir)
                summarizing[fut] = name

    return aggregate(summaries[j.name] for j in jobs)
