"""Test fixtures including ScriptedApproval for deterministic prompt answers."""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from datetime import datetime
from pathlib import Path

import pytest

from policygate.permissions.manager import PermissionEngine
from policygate.permissions.registry import PredicateRegistry
from policygate.types.config import EngineConfig, PermissionMode
from policygate.types.permissions import (
    EvaluationContext,
    PermissionRequest,
    PromptAnswer,
)

# A Wednesday, so daysOfWeek == 3.
WEDNESDAY = datetime(2025, 6, 4)


def at(hour: int, minute: int = 0, day: datetime = WEDNESDAY) -> float:
    """Local epoch timestamp for *hour*:*minute* on *day*."""
    return day.replace(hour=hour, minute=minute).timestamp()


def make_context(
    cwd: str | Path = "/home/u/project",
    *,
    hour: int = 10,
    minute: int = 0,
    environment: dict[str, str] | None = None,
    **kwargs: object,
) -> EvaluationContext:
    return EvaluationContext(
        working_directory=str(cwd),
        session_id="test-session",
        timestamp=at(hour, minute),
        environment=environment or {},
        **kwargs,  # type: ignore[arg-type]
    )


class ScriptedApproval:
    """An approval callback that returns scripted answers.

    Usage:
        approval = ScriptedApproval(PromptAnswer(allowed=True))
        engine = PermissionEngine(config, approval=approval)
    """

    def __init__(self, *answers: PromptAnswer, delay: float = 0.0) -> None:
        self._answers = list(answers)
        self._delay = delay
        self.calls: list[tuple[PermissionRequest, str]] = []

    async def request_approval(
        self, request: PermissionRequest, description: str,
    ) -> PromptAnswer:
        self.calls.append((request, description))
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._answers:
            return self._answers.pop(0)
        return PromptAnswer(allowed=False)


class FailingApproval:
    """An approval callback whose prompt blows up."""

    async def request_approval(
        self, request: PermissionRequest, description: str,
    ) -> PromptAnswer:
        raise RuntimeError("terminal went away")


@pytest.fixture
def context(tmp_path: Path) -> EvaluationContext:
    """Context at 10:00 on a Wednesday, working in tmp_path."""
    return make_context(tmp_path, environment={"CI": "true", "BRANCH": "release/1.2"})


@pytest.fixture
def registry() -> PredicateRegistry:
    return PredicateRegistry()


@pytest.fixture
def engine_config(tmp_path: Path) -> EngineConfig:
    return EngineConfig(
        mode=PermissionMode.DEFAULT,
        config_dir=tmp_path / "config",
        project_dir=tmp_path / ".policygate",
        prompt_timeout=1.0,
    )


@pytest.fixture
def engine(engine_config: EngineConfig) -> Iterator[PermissionEngine]:
    """An engine with no files, no approval prompt and audit disabled."""
    eng = PermissionEngine(engine_config)
    yield eng
    eng.close()


@pytest.fixture
def config_dirs(tmp_path: Path) -> tuple[Path, Path]:
    """Create a user config dir and a project directory with its .policygate dir."""
    user = tmp_path / "home" / ".policygate"
    user.mkdir(parents=True)
    project = tmp_path / "project"
    (project / ".policygate").mkdir(parents=True)
    return user, project
