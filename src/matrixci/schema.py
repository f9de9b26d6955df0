# schema.py
# Structured pipeline documents (JSON / TOML) validated with pydantic,
# then turned into the dataclass model the engine runs.
from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .model import Coverage, Job, Pipeline, Step


class StepDoc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    env: Dict[str, Any] = Field(default_factory=dict)
    if_: Optional[str] = Field(default=None, alias="if")
    cwd: Optional[str] = Field(default=None, alias="working-directory")
    continue_on_error: bool = Field(default=False, alias="continue-on-error")

    @model_validator(mode="after")
    def _one_action(self) -> "StepDoc":
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        return self

    def to_step(self) -> Step:
        return Step(
            name=self.name or self.uses or next(iter((self.run or "").strip().splitlines()), "run"),
            run=self.run,
            uses=self.uses,
            with_=dict(self.with_),
            env={k: str(v) for k, v in self.env.items()},
            if_=self.if_,
            cwd=self.cwd,
            continue_on_error=self.continue_on_error,
        )


class MatrixDoc(BaseModel):
    """Axes are the free-form keys; `include` is the only reserved one."""
    model_config = ConfigDict(extra="allow")

    include: List[Dict[str, Any]] = Field(default_factory=list)

    def axes(self) -> Dict[str, List[Any]]:
        out: Dict[str, List[Any]] = {}
        for name, values in (self.model_extra or {}).items():
            if not isinstance(values, list):
                raise ConfigError(f"matrix axis '{name}' must be a list, got {type(values).__name__}")
            out[name] = values
        return out


class StrategyDoc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    fail_fast: bool = Field(default=True, alias="fail-fast")
    max_parallel: Optional[int] = Field(default=None, alias="max-parallel", ge=1)
    matrix: Optional[MatrixDoc] = None


class CoverageDoc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Optional[str] = None
    fail_ci_if_error: bool = False
    env_vars: List[str] = Field(default_factory=list)
    output: Optional[str] = None

    @field_validator("env_vars", mode="before")
    @classmethod
    def _split_env_vars(cls, v: Any) -> Any:
        # "OS,TARGET,TOOLCHAIN,JOB" is accepted as well as a list
        if isinstance(v, str):
            return [p.strip() for p in v.split(",") if p.strip()]
        return v


class JobDoc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Optional[str] = None
    needs: List[str] = Field(default_factory=list)
    strategy: StrategyDoc = Field(default_factory=StrategyDoc)
    continue_on_error: Union[bool, str] = Field(default=False, alias="continue-on-error")
    env: Dict[str, Any] = Field(default_factory=dict)
    coverage: Optional[CoverageDoc] = None
    steps: List[StepDoc] = Field(min_length=1)

    @field_validator("needs", mode="before")
    @classmethod
    def _single_need(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        return v

    def to_job(self, job_id: str) -> Job:
        matrix = self.strategy.matrix
        return Job(
            name=job_id,
            display_name=self.name,
            steps=[s.to_step() for s in self.steps],
            axes=matrix.axes() if matrix else {},
            include=list(matrix.include) if matrix else [],
            needs=list(self.needs),
            env={k: str(v) for k, v in self.env.items()},
            fail_fast=self.strategy.fail_fast,
            continue_on_error=self.continue_on_error,
            max_parallel=self.strategy.max_parallel,
            coverage=Coverage(
                name=self.coverage.name,
                fail_ci_if_error=self.coverage.fail_ci_if_error,
                env_vars=list(self.coverage.env_vars),
                output=self.coverage.output,
            ) if self.coverage else None,
        )


class PipelineDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = "pipeline"
    env: Dict[str, Any] = Field(default_factory=dict)
    jobs: Dict[str, JobDoc]

    def to_pipeline(self) -> Pipeline:
        return Pipeline(
            name=self.name,
            jobs=[doc.to_job(job_id) for job_id, doc in self.jobs.items()],
            env={k: str(v) for k, v in self.env.items()},
        )


def _format_errors(e: ValidationError) -> List[str]:
    lines = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        lines.append(f"{loc}: {err.get('msg')}")
    return lines


def pipeline_from_dict(doc: Dict[str, Any]) -> Pipeline:
    """Validate a pipeline document. Raises ConfigError with one detail per problem."""
    if not isinstance(doc, dict):
        raise ConfigError(f"pipeline document must be a mapping, got {type(doc).__name__}")
    try:
        parsed = PipelineDoc.model_validate(doc)
    except ValidationError as e:
        errors = _format_errors(e)
        raise ConfigError(
            f"invalid pipeline document ({len(errors)} error(s))",
            details={f"error[{i}]": line for i, line in enumerate(errors)},
        ) from e
    return parsed.to_pipeline()
