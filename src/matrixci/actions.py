# actions.py
from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from . import settings
from .errors import ActionFailure


@dataclass
class ActionOutcome:
    """
    What an action hands back to the step runner.

    `env` updates propagate to later steps of the same instance only.
    `artifacts` are collected on the instance result (e.g. coverage reports).
    """
    success: bool
    output: str = ""
    env: Dict[str, str] = field(default_factory=dict)
    artifacts: List[Path] = field(default_factory=list)
    exit_code: Optional[int] = None


# fn(params, env) -> ActionOutcome | bool | None   (None means success)
ActionFn = Callable[[Dict[str, Any], Dict[str, str]], Any]


class ActionRegistry:
    """`uses:` references -> python callables. A trailing @version is ignored."""

    def __init__(self):
        self._actions: Dict[str, ActionFn] = {}

    @staticmethod
    def normalize(ref: str) -> str:
        return ref.split("@", 1)[0].strip()

    def register(self, ref: str, fn: ActionFn | None = None):
        """Register directly or as a decorator: @registry.register("setup-tool")."""
        def _add(f: ActionFn) -> ActionFn:
            self._actions[self.normalize(ref)] = f
            return f

        if fn is not None:
            return _add(fn)
        return _add

    def resolve(self, ref: str) -> ActionFn:
        name = self.normalize(ref)
        if name not in self._actions:
            raise ActionFailure(
                f"unknown action '{ref}'",
                details={"known": ", ".join(sorted(self._actions))},
            )
        return self._actions[name]

    def __contains__(self, ref: str) -> bool:
        return self.normalize(ref) in self._actions

    def names(self) -> List[str]:
        return sorted(self._actions)


# ---------------------------------------------------------------------
# Built-in actions
# ---------------------------------------------------------------------

def _echo(params: Dict[str, Any], env: Dict[str, str]) -> ActionOutcome:
    return ActionOutcome(success=True, output=str(params.get("message", "")))


def _setenv(params: Dict[str, Any], env: Dict[str, str]) -> ActionOutcome:
    return ActionOutcome(success=True, env={k: str(v) for k, v in params.items()})


def _artifact(params: Dict[str, Any], env: Dict[str, str]) -> ActionOutcome:
    path = params.get("path")
    if not path:
        return ActionOutcome(success=False, output="artifact: missing 'path'")
    return ActionOutcome(success=True, artifacts=[Path(str(path))])


def _noop(params: Dict[str, Any], env: Dict[str, str]) -> ActionOutcome:
    return ActionOutcome(success=True)


def default_registry() -> ActionRegistry:
    registry = ActionRegistry()
    registry.register("echo", _echo)
    registry.register("setenv", _setenv)
    registry.register("artifact", _artifact)
    registry.register("noop", _noop)
    return registry


# Global registry (workflow files register their actions here)
_registry: Optional[ActionRegistry] = None


def get_registry() -> ActionRegistry:
    global _registry
    if _registry is None:
        _registry = default_registry()
    return _registry


def action(ref: str):
    """Decorator for workflow files: @action("install-toolchain")"""
    return get_registry().register(ref)


# ---------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------

def _tail(text: str | None, limit: int) -> str:
    text = text or ""
    return text[-limit:] if limit and len(text) > limit else text


class ActionExecutor:
    """
    Runs one step's action: `run` refs go to a shell, everything else to the registry.

    The engine only relies on execute(action_ref, params, env) -> ActionOutcome.
    """

    def __init__(
        self,
        registry: ActionRegistry | None = None,
        *,
        workdir: str | Path = ".",
        output_tail: int | None = None,
    ):
        self.registry = registry or get_registry()
        self.workdir = Path(workdir).resolve()
        self.output_tail = settings.OUTPUT_TAIL if output_tail is None else output_tail

    def execute(self, action_ref: str, params: Dict[str, Any], env: Dict[str, str]) -> ActionOutcome:
        if action_ref == "run":
            return self._run_shell(params, env)

        fn = self.registry.resolve(action_ref)
        result = fn(dict(params), dict(env))
        if isinstance(result, ActionOutcome):
            result.artifacts = [p if Path(p).is_absolute() else self.workdir / p for p in result.artifacts]
            return result
        if result is None or result is True:
            return ActionOutcome(success=True)
        if result is False:
            return ActionOutcome(success=False)
        raise TypeError(f"action '{action_ref}' returned {type(result).__name__}, expected ActionOutcome/bool/None")

    def _run_shell(self, params: Dict[str, Any], env: Dict[str, str]) -> ActionOutcome:
        cmd = params["run"]
        cwd = (self.workdir / (params.get("cwd") or ".")).resolve()
        if not cwd.exists():
            raise ActionFailure(f"cwd not found: {cwd}", details={"cmd": cmd})

        full_env = os.environ.copy()
        full_env.update(env)

        proc = subprocess.run(
            cmd,
            shell=True,
            cwd=str(cwd),
            env=full_env,
            text=True,
            encoding="utf-8",
            errors="replace",
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
        # shell steps declare produced files via `with: {artifacts: [...]}`
        artifacts = [cwd / str(p) for p in params.get("artifacts") or []]
        return ActionOutcome(
            success=proc.returncode == 0,
            output=_tail(proc.stdout, self.output_tail),
            artifacts=artifacts if proc.returncode == 0 else [],
            exit_code=proc.returncode,
        )
