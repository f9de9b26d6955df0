# dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .errors import ConfigError
from .expander import Matrix, matrix
from .model import Coverage, ErrorPolicy, Job, Pipeline, Step


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    if_: str | None = None,
    env: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
    artifacts: Optional[List[str]] = None,
) -> Step:
    """Create a shell step. `artifacts` are files the command produces (relative to cwd)."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        if_=if_,
        env=dict(env or {}),
        continue_on_error=continue_on_error,
        with_={"artifacts": list(artifacts)} if artifacts else {},
    )


def uses(
    name: str,
    ref: str,
    *,
    with_: Optional[Dict[str, Any]] = None,
    if_: str | None = None,
    env: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
) -> Step:
    """Create a step that calls a registered action (see actions.action)."""
    return Step(
        name=name,
        uses=ref,
        with_=dict(with_ or {}),
        if_=if_,
        env=dict(env or {}),
        continue_on_error=continue_on_error,
    )


def coverage(
    *,
    name: str | None = None,
    fail_ci_if_error: bool = False,
    env_vars: Union[str, Iterable[str]] = (),
    output: str | None = None,
) -> Coverage:
    if isinstance(env_vars, str):
        env_vars = [v.strip() for v in env_vars.split(",") if v.strip()]
    return Coverage(name=name, fail_ci_if_error=fail_ci_if_error, env_vars=list(env_vars), output=output)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def _split_matrix(defn: Union[Matrix, Mapping[str, Any], None]):
    if defn is None:
        return {}, []
    if isinstance(defn, Matrix):
        return dict(defn.axes), list(defn.entries)
    defn = dict(defn)
    include = list(defn.pop("include", []) or [])
    return {k: list(v) for k, v in defn.items()}, include


def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    matrix: Union[Matrix, Mapping[str, Any], None] = None,
    include: Optional[List[Dict[str, Any]]] = None,
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    fail_fast: bool = True,
    continue_on_error: ErrorPolicy = False,
    max_parallel: int | None = None,
    coverage: Coverage | None = None,
    display_name: str | None = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ConfigError("job has no steps", job=name)

    if cwd is not None:
        steps_final = [s if s.cwd is not None or s.run is None else replace(s, cwd=cwd) for s in steps_final]

    axes, entries = _split_matrix(matrix)
    entries.extend(include or [])

    return Job(
        name=name,
        steps=steps_final,
        axes=axes,
        include=entries,
        needs=list(needs or []),
        env=dict(env or {}),
        fail_fast=fail_fast,
        continue_on_error=continue_on_error,
        max_parallel=max_parallel,
        coverage=coverage,
        display_name=display_name,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._matrix = Matrix()
        self._fail_fast: bool = True
        self._continue_on_error: ErrorPolicy = False
        self._max_parallel: int | None = None
        self._coverage: Coverage | None = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def axis(self, name: str, *values: Any):
        self._matrix.axis(name, *values)
        return self

    def include(self, **entry: Any):
        self._matrix.include(**entry)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, if_: str | None = None):
        self._steps.append(sh(name, run, cwd=cwd, if_=if_))
        return self

    def uses(self, name: str, ref: str, if_: str | None = None, **params: Any):
        self._steps.append(uses(name, ref, with_=params, if_=if_))
        return self

    def with_env(self, **env):
        # env values are strings in the step environment
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def fail_fast(self, enabled: bool = True):
        self._fail_fast = enabled
        return self

    def continue_on_error(self, policy: ErrorPolicy = True):
        self._continue_on_error = policy
        return self

    def max_parallel(self, n: int):
        self._max_parallel = n
        return self

    def with_coverage(self, **kwargs: Any):
        self._coverage = coverage(**kwargs)
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ConfigError("job has no steps", job=self.name)

        return Job(
            name=self.name,
            steps=list(self._steps),
            axes=dict(self._matrix.axes),
            include=list(self._matrix.entries),
            needs=list(self._needs),
            env=dict(self._env),
            fail_fast=self._fail_fast,
            continue_on_error=self._continue_on_error,
            max_parallel=self._max_parallel,
            coverage=self._coverage,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').axis('py', '3.11', '3.12').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: Job, name: str = "pipeline", env: Optional[Dict[str, str]] = None) -> Pipeline:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(job(...), job(...)).

        from matrixci import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
                name="CI",
            )
    """
    return Pipeline(name=name, jobs=list(jobs), env=dict(env or {}))


workflow = wf  # alias (avoid naming your function workflow if you use it)

__all__ = ["sh", "uses", "coverage", "job", "JobBuilder", "build", "wf", "workflow", "matrix", "Matrix"]
