# aggregate.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from . import settings
from .conditions import interpolate
from .cobertura import CoverageUploader, merge_cobertura
from .errors import EvalError, MergeFailure
from .model import (
    FAILED,
    FATAL,
    SUCCEEDED,
    TOLERATED,
    Job,
    JobResult,
    JobSummary,
    PipelineResult,
)
from .ui.console import get_console


def job_status(results: Iterable[JobResult]) -> str:
    """failed if any instance failed fatally, else tolerated if any instance tolerated a failure."""
    statuses = [r.status for r in results]
    if FATAL in statuses:
        return FAILED
    if TOLERATED in statuses:
        return TOLERATED
    return SUCCEEDED


def _upload_name(job: Job, result: JobResult) -> str:
    template = job.coverage.name if job.coverage and job.coverage.name else None
    if not template:
        return result.instance.name
    try:
        return interpolate(template, result.instance.lookup())
    except EvalError:
        return result.instance.name


def coverage_metadata(job: Job, results: List[JobResult]) -> Dict[str, Any]:
    """Identifying metadata for the upload: job name + one entry per contributing instance."""
    env_vars = job.coverage.env_vars if job.coverage else []
    return {
        "job": job.name,
        "name": job.display_name or job.name,
        "instances": [
            {
                "name": _upload_name(job, r),
                "matrix": {k: v for k, v in r.instance.values.items() if v is not None},
                "env": {k: r.env[k] for k in env_vars if k in r.env},
            }
            for r in results
        ],
    }


def merge_and_upload(
    job: Job,
    results: List[JobResult],
    uploader: Optional[CoverageUploader],
    output_dir: str | Path | None = None,
) -> Path:
    """Merge the instances' coverage artifacts and hand the report to the uploader. Raises MergeFailure."""
    contributing = [r for r in results if r.status in (SUCCEEDED, TOLERATED) and r.artifacts]
    reports = [p for r in contributing for p in r.artifacts]
    if not reports:
        raise MergeFailure("no coverage reports were produced", job=job.name)

    if job.coverage and job.coverage.output:
        output = Path(job.coverage.output)
    else:
        output = Path(output_dir or settings.COVERAGE_DIR) / f"{job.name}.xml"

    try:
        merged = merge_cobertura(reports, output)
    except MergeFailure as e:
        e.job = job.name
        raise

    console = get_console()
    console.print_info(
        f"[{job.name}] coverage: merged {merged.sources} report(s), "
        f"{merged.lines_covered}/{merged.lines_valid} lines ({merged.line_rate:.1%})"
    )

    if uploader is None:
        console.print_debug(f"[{job.name}] coverage upload skipped (no uploader configured)")
        return merged.path

    try:
        uploader.upload(merged.path, coverage_metadata(job, contributing))
    except MergeFailure as e:
        e.job = job.name
        raise
    except Exception as e:
        raise MergeFailure(f"upload failed: {type(e).__name__}: {e}", job=job.name) from e
    return merged.path


def summarize_job(
    job: Job,
    results: List[JobResult],
    *,
    uploader: Optional[CoverageUploader] = None,
    coverage_dir: str | Path | None = None,
) -> JobSummary:
    summary = JobSummary(job=job.name, status=job_status(results), instances=list(results))

    # coverage is only merged for jobs that didn't fail
    if job.coverage is None or summary.status == FAILED:
        return summary

    try:
        summary.coverage_report = merge_and_upload(job, results, uploader, coverage_dir)
    except MergeFailure as e:
        summary.warnings.append(e.message)
        get_console().print_warning(f"[{job.name}] {e.message}")
        if job.coverage.fail_ci_if_error:
            summary.status = FAILED
    return summary


def aggregate(summaries: Iterable[JobSummary]) -> PipelineResult:
    """Pipeline failed iff any job failed."""
    return PipelineResult(jobs={s.job: s for s in summaries})
