# loader.py
from __future__ import annotations

import json
import runpy
import tomllib
from pathlib import Path

from .errors import ConfigError
from .model import Job, Pipeline
from .schema import pipeline_from_dict


def _load_python(path: Path) -> Pipeline:
    """
    The file must define one of:
      - workflow() -> Pipeline | List[Job]
      - PIPELINE = Pipeline(...)
      - JOBS = [Job, ...]
    """
    module_name = f"matrixci_workflow_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        defined = globals_dict["workflow"]()
    elif "PIPELINE" in globals_dict:
        defined = globals_dict["PIPELINE"]
    elif "JOBS" in globals_dict:
        defined = globals_dict["JOBS"]
    else:
        raise ConfigError(
            f"{path.name} defines no workflow. "
            "Define workflow() -> Pipeline, PIPELINE = Pipeline(...) or JOBS = [Job, ...]."
        )

    if isinstance(defined, Pipeline):
        return defined
    if isinstance(defined, list) and all(isinstance(j, Job) for j in defined):
        return Pipeline(name=path.stem, jobs=defined)
    raise ConfigError(
        f"{path.name}: workflow must be a Pipeline or a List[Job], got {type(defined).__name__}"
    )


def load_pipeline(path: str | Path) -> Pipeline:
    """Load a pipeline from a .py workflow file or a .json / .toml document."""
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    suffix = wf_path.suffix.lower()
    if suffix == ".py":
        return _load_python(wf_path)

    if suffix == ".json":
        try:
            doc = json.loads(wf_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigError(f"{wf_path.name} is not valid JSON: {e}") from e
    elif suffix == ".toml":
        try:
            doc = tomllib.loads(wf_path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"{wf_path.name} is not valid TOML: {e}") from e
    else:
        raise ConfigError(f"Unsupported workflow file type: {wf_path.name} (expected .py, .json or .toml)")

    pipeline = pipeline_from_dict(doc)
    if pipeline.name == "pipeline":
        pipeline.name = wf_path.stem
    return pipeline
