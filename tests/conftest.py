"""Shared fixtures: a captured console and a scriptable action executor."""

from __future__ import annotations

import io
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from matrixci.actions import ActionOutcome
from matrixci.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def quiet_console():
    """Route console output into a buffer so tests can assert on it."""
    console = Console(stream=io.StringIO())
    set_console(console)
    yield console
    set_console(Console())


class RecordingExecutor:
    """
    Stand-in for ActionExecutor.

    `fail` decides per call whether the action fails:
        fail(action_ref, params, env) -> bool
    """

    def __init__(self, fail: Optional[Callable[[str, Dict[str, Any], Dict[str, str]], bool]] = None):
        self.fail = fail or (lambda ref, params, env: False)
        self.calls: List[Tuple[str, Dict[str, Any], Dict[str, str]]] = []
        self._lock = threading.Lock()

    def execute(self, action_ref: str, params: Dict[str, Any], env: Dict[str, str]) -> ActionOutcome:
        with self._lock:
            self.calls.append((action_ref, dict(params), dict(env)))
        if self.fail(action_ref, params, env):
            return ActionOutcome(success=False, output="boom", exit_code=1)
        return ActionOutcome(success=True, output="ok")

    def commands(self) -> List[str]:
        return [p.get("run", ref) for ref, p, _ in self.calls]


@pytest.fixture
def recorder():
    return RecordingExecutor()
