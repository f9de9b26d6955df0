# runner.py
from __future__ import annotations

import threading
import time
from typing import Dict, Mapping, Optional

from .actions import ActionExecutor
from .conditions import interpolate, interpolate_value, parse_condition
from .errors import ActionFailure, EvalError
from .model import (
    CANCELLED,
    FAILED,
    FATAL,
    SKIPPED,
    SUCCEEDED,
    TOLERATED,
    Job,
    JobInstance,
    JobResult,
    Step,
    StepResult,
)
from .ui.console import get_console


def _lookup(instance: JobInstance, env: Mapping[str, str]) -> Dict[str, Optional[str]]:
    lookup = instance.lookup()
    for k, v in env.items():
        lookup[f"env.{k}"] = v
    return lookup


def _step_params(step: Step, lookup: Mapping[str, Optional[str]]) -> Dict:
    params = interpolate_value(dict(step.with_), lookup)
    if step.run is not None:
        params["run"] = interpolate(step.run, lookup)
        params["cwd"] = interpolate(step.cwd, lookup) if step.cwd else None
    return params


def _execute_step(
    step: Step,
    instance: JobInstance,
    env: Dict[str, str],
    executor: ActionExecutor,
):
    """
    Returns (StepResult, ActionOutcome | None).

    Condition, interpolation and action errors all end up as a failed step;
    they never escape to the scheduler.
    """
    lookup = _lookup(instance, env)
    started = time.monotonic()
    try:
        if step.if_ and not parse_condition(step.if_).evaluate(lookup):
            return StepResult(step=step.name, status=SKIPPED), None

        step_env = dict(env)
        step_env.update({k: interpolate(str(v), lookup) for k, v in step.env.items()})
        params = _step_params(step, lookup)

        outcome = executor.execute(step.action_ref, params, step_env)
        if not outcome.success:
            reason = f"exited with code {outcome.exit_code}" if outcome.exit_code is not None else "action reported failure"
            raise ActionFailure(
                f"'{step.action_ref}' {reason}",
                exit_code=outcome.exit_code,
                output=outcome.output,
            )
    except (EvalError, ActionFailure) as e:
        return StepResult(
            step=step.name,
            status=FAILED,
            output=getattr(e, "output", ""),
            error=str(e),
            duration=time.monotonic() - started,
        ), None
    except Exception as e:
        # a broken action must not take the worker thread down with it
        return StepResult(
            step=step.name,
            status=FAILED,
            error=f"{type(e).__name__}: {e}",
            duration=time.monotonic() - started,
        ), None

    return StepResult(
        step=step.name,
        status=SUCCEEDED,
        output=outcome.output,
        duration=time.monotonic() - started,
    ), outcome


def run_instance(
    job: Job,
    instance: JobInstance,
    executor: ActionExecutor,
    *,
    cancel: threading.Event | None = None,
    base_env: Mapping[str, str] | None = None,
) -> JobResult:
    """
    Run a job's steps for one instance, strictly in order.

    - false condition        -> step skipped
    - failure, tolerated     -> step failed, keep going, instance failed-but-tolerated
    - failure, not tolerated -> step failed, remaining steps never run, instance failed-fatal
    - cancel set             -> stop before the next step, instance cancelled
    """
    console = get_console()
    result = JobResult(instance=instance, status=SUCCEEDED)

    seed = _lookup(instance, {})
    env: Dict[str, str] = {}
    for k, v in {**(base_env or {}), **job.env}.items():
        try:
            env[k] = interpolate(str(v), seed)
        except EvalError as e:
            result.steps.append(StepResult(step="Set up environment", status=FAILED, error=str(e)))
            result.status = FATAL
            return result

    console.print_instance_start(instance.name)

    for step in job.steps:
        if cancel is not None and cancel.is_set():
            result.status = CANCELLED
            break

        console.print_step(instance.name, step.name)
        step_result, outcome = _execute_step(step, instance, env, executor)
        result.steps.append(step_result)

        if step_result.status == SKIPPED:
            console.print_step_skipped(instance.name, step.name)
            continue

        if step_result.status == SUCCEEDED:
            env.update(outcome.env)
            result.artifacts.extend(outcome.artifacts)
            continue

        tolerated = instance.continue_on_error or step.continue_on_error
        console.print_step_failure(
            instance.name,
            step.name,
            step_result.error or "",
            output=step_result.output,
            tolerated=tolerated,
        )
        if tolerated:
            result.status = TOLERATED
            continue

        result.status = FATAL
        break

    result.env = dict(env)
    console.print_instance_done(instance.name, result.status)
    return result


def cancelled_result(instance: JobInstance) -> JobResult:
    """Result for an instance that never started because a sibling failed fast."""
    return JobResult(instance=instance, status=CANCELLED)
