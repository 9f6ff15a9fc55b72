"""Shared test fixtures for the robotloop test suite."""

import copy

import pytest

from robotloop.config import RobotloopConfig
from robotloop.controller import PlanCycleController
from robotloop.models import ActResult, PlanParams, ReplanResult, SessionSaveResult
from robotloop.store import RunStore


class ScriptedAct:
    """Act operation that replays a script of responses.

    Each item is an act data dict, a ready ActResult, or an exception to
    raise. Once the script runs out the last item repeats.
    """

    def __init__(self, script):
        self.script = list(script)
        self.calls: list[PlanParams] = []

    async def __call__(self, params: PlanParams) -> ActResult:
        self.calls.append(copy.copy(params))
        index = min(len(self.calls), len(self.script)) - 1
        item = self.script[index]
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, ActResult):
            return item
        return ActResult(
            success=True,
            plan_completed=item.get("plan_completed"),
            instance_plan_id=item.get("instance_plan_id"),
            data=item,
        )


class RecordingTimer:
    """Timer that records waits instead of sleeping."""

    def __init__(self, fail_on: dict | None = None):
        self.sleeps: list[tuple[str, float]] = []
        self.fail_on = fail_on or {}

    @property
    def keys(self) -> list[str]:
        return [key for key, _ in self.sleeps]

    async def sleep(self, key: str, seconds: float) -> None:
        self.sleeps.append((key, seconds))
        if key in self.fail_on:
            raise self.fail_on.pop(key)


class RecordingEscalation:
    """Escalation task that records payloads."""

    def __init__(self, error: Exception | None = None):
        self.payloads: list[dict] = []
        self.error = error

    async def __call__(self, payload: dict) -> dict:
        self.payloads.append(payload)
        if self.error:
            raise self.error
        return {"ok": True}


class RecordingReplan:
    def __init__(self, result: ReplanResult | Exception | None = None):
        self.result = result or ReplanResult(success=True, instance_plan_id="plan-2")
        self.calls: list[tuple[PlanParams, str]] = []

    async def __call__(self, params: PlanParams, error_context: str) -> ReplanResult:
        self.calls.append((copy.copy(params), error_context))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class RecordingSessionSave:
    def __init__(self, result: SessionSaveResult | Exception | None = None):
        self.result = result or SessionSaveResult(success=True)
        self.calls: list[tuple[str, str]] = []

    async def __call__(self, remote_instance_id: str, site_id: str) -> SessionSaveResult:
        self.calls.append((remote_instance_id, site_id))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


@pytest.fixture
def store(tmp_path):
    """Provide a RunStore backed by a temporary database."""
    return RunStore(db_path=tmp_path / "test_robotloop.db")


@pytest.fixture
def params():
    return PlanParams(site_id="site-1", activity="Prospect outreach", instance_id="inst-1", user_id="user-1")


@pytest.fixture
def config():
    return RobotloopConfig()


@pytest.fixture
def timer():
    return RecordingTimer()


@pytest.fixture
def escalations():
    return RecordingEscalation()


@pytest.fixture
def replan():
    return RecordingReplan()


@pytest.fixture
def session_save():
    return RecordingSessionSave()


@pytest.fixture
def make_controller(config, timer, escalations, replan, session_save):
    """Build a controller around a scripted act operation."""

    def _make(script, **overrides):
        act = ScriptedAct(script)
        kwargs = {
            "replan": replan,
            "save_session": session_save,
            "escalate": escalations,
            "config": config,
            "timer": timer,
        }
        kwargs.update(overrides)
        return PlanCycleController(act, **kwargs), act

    return _make
