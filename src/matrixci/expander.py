# expander.py
from __future__ import annotations

import itertools
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .conditions import parse_condition
from .errors import ConfigError, EvalError
from .model import ErrorPolicy, Job, JobInstance

Row = Dict[str, Optional[str]]


def _coerce(value: Any) -> Optional[str]:
    """Matrix values are strings; YAML/JSON style scalars are normalized."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    raise ConfigError(f"matrix values must be scalars, got {type(value).__name__}: {value!r}")


def policy_predicate(policy: ErrorPolicy, *, job: str = "") -> Callable[[Mapping[str, Optional[str]]], bool]:
    """
    Turn a continue-on-error policy into a predicate over instance values.

      True/False                 -> constant
      "toolchain == 'nightly'"   -> parsed condition
      callable                   -> used as is
    """
    if isinstance(policy, bool):
        return lambda values: policy
    if isinstance(policy, str):
        cond = parse_condition(policy)

        def _pred(values: Mapping[str, Optional[str]]) -> bool:
            lookup: Dict[str, Optional[str]] = {"github.job": job}
            for k, v in values.items():
                lookup[k] = v
                lookup[f"matrix.{k}"] = v
            return cond.evaluate(lookup)

        return _pred
    if callable(policy):
        return policy
    raise ConfigError(f"continue-on-error must be a bool, condition string or callable, got {policy!r}", job=job)


def _validate_axes(axes: Mapping[str, Sequence[Any]], job: str) -> Dict[str, List[Optional[str]]]:
    out: Dict[str, List[Optional[str]]] = {}
    for name, values in axes.items():
        if isinstance(values, (str, bytes)) or not isinstance(values, Iterable):
            raise ConfigError(f"matrix axis '{name}' must be a list of values", job=job)
        values = [_coerce(v) for v in values]
        if not values:
            raise ConfigError(f"matrix axis '{name}' has no values", job=job)
        out[name] = values
    return out


def expand_rows(
    axes: Mapping[str, Sequence[Any]],
    include: Iterable[Mapping[str, Any]] = (),
    *,
    job: str = "",
) -> List[Row]:
    """
    Cross-product + include reducer. Returns plain ordered rows.

    Include rules (applied in order, last write wins):
      - keys naming base axes form the entry's axis subset
      - every row equal to the entry on that subset gets the entry's other
        keys merged in (an empty subset matches every row). Rows added by
        earlier entries count.
      - no row matches -> the entry is appended as its own row, with the
        base axes it doesn't mention set to None
      - without axes every entry is its own row
    """
    axes = _validate_axes(axes, job)
    include = list(include)

    base: List[Row] = []
    if axes or not include:
        names = list(axes)
        for combo in itertools.product(*(axes[n] for n in names)):
            base.append(dict(zip(names, combo)))
    rows = base

    for entry in include:
        if not isinstance(entry, Mapping) or not entry:
            raise ConfigError(f"include entries must be non-empty mappings, got {entry!r}", job=job)
        entry = {str(k): _coerce(v) for k, v in entry.items()}
        subset = {k: v for k, v in entry.items() if k in axes}
        extra = {k: v for k, v in entry.items() if k not in axes}

        matched = [
            row for row in rows
            if axes and all(row.get(k) == v for k, v in subset.items())
        ]
        if matched:
            for row in matched:
                row.update(extra)
        else:
            row = {name: None for name in axes}
            row.update(entry)
            rows.append(row)

    # every instance sees every key; keys introduced by includes are None elsewhere
    keys: List[str] = list(axes)
    for row in rows:
        for k in row:
            if k not in keys:
                keys.append(k)
    return [{k: row.get(k) for k in keys} for row in rows]


def expand_matrix(
    axes: Mapping[str, Sequence[Any]],
    include: Iterable[Mapping[str, Any]] = (),
    *,
    job: str = "",
    continue_on_error: ErrorPolicy = False,
) -> List[JobInstance]:
    """Resolve a matrix into ordered, immutable job instances."""
    predicate = policy_predicate(continue_on_error, job=job)
    instances: List[JobInstance] = []
    for index, row in enumerate(expand_rows(axes, include, job=job)):
        values = MappingProxyType(row)
        try:
            tolerant = bool(predicate(values))
        except EvalError as e:
            raise ConfigError(f"continue-on-error policy failed: {e.message}", job=job) from e
        instances.append(JobInstance(job=job, index=index, values=values, continue_on_error=tolerant))
    return instances


def expand_job(job: Job) -> List[JobInstance]:
    return expand_matrix(
        job.axes,
        job.include,
        job=job.name,
        continue_on_error=job.continue_on_error,
    )


class Matrix:
    """
    Matrix builder for the DSL.

    Example:
        matrix(toolchain=["stable", "nightly"], target=["x86_64-unknown-linux-gnu"]).include(
            toolchain="nightly", target="wasm32-wasi", os="ubuntu-latest",
        )
    """
    def __init__(self, axes: Mapping[str, Iterable[Any]] | None = None):
        self.axes: Dict[str, List[Any]] = {k: list(v) for k, v in (axes or {}).items()}
        self.entries: List[Dict[str, Any]] = []

    def axis(self, name: str, *values: Any) -> "Matrix":
        self.axes[name] = list(values)
        return self

    def include(self, **entry: Any) -> "Matrix":
        self.entries.append(dict(entry))
        return self

    def expand(self, *, job: str = "", continue_on_error: ErrorPolicy = False) -> List[JobInstance]:
        return expand_matrix(self.axes, self.entries, job=job, continue_on_error=continue_on_error)

    def __len__(self) -> int:
        return len(expand_rows(self.axes, self.entries))


def matrix(**axes: Iterable[Any]) -> Matrix:
    return Matrix(axes)
