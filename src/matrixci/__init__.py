from .actions import ActionExecutor, ActionOutcome, ActionRegistry, action
from .dsl import job, sh, uses, coverage, matrix, workflow, wf, JobBuilder, build
from .errors import ActionFailure, CIError, ConfigError, EvalError, MergeFailure
from .expander import expand_matrix
from .model import Job, JobInstance, Pipeline, PipelineResult, Step
from .scheduler import run_pipeline

__all__ = [
    "job", "sh", "uses", "coverage", "matrix", "workflow", "wf", "JobBuilder", "build",
    "run_pipeline", "expand_matrix",
    "ActionExecutor", "ActionOutcome", "ActionRegistry", "action",
    "Job", "JobInstance", "Pipeline", "PipelineResult", "Step",
    "CIError", "ConfigError", "EvalError", "ActionFailure", "MergeFailure",
]
