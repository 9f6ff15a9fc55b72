"""Tests for robotloop.starter: the start-robot flow."""

import json

import httpx
import pytest

from robotloop.client import RobotApiClient
from robotloop.config import ApiConfig
from robotloop.controller import PlanCycleController
from robotloop.models import ExitKind
from robotloop.starter import launch_robot, start_robot

from conftest import RecordingTimer


class FakeRobotApi:
    """Routes requests by path; records request bodies."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request):
        body = json.loads(request.content)
        self.requests.append((request.url.path, body))
        route = self.routes[request.url.path]
        return route(body) if callable(route) else route


async def _no_sleep(seconds):
    return None


def _client(api):
    config = ApiConfig(base_url="https://api.example.test", api_key="k", max_attempts=1)
    return RobotApiClient(config, transport=httpx.MockTransport(api), sleeper=_no_sleep)


class TestStartRobot:
    @pytest.mark.asyncio
    async def test_creates_instance_then_plan(self):
        api = FakeRobotApi({
            "/api/robots/instance": httpx.Response(200, json={"instance_id": "inst-1", "status": "ready"}),
            "/api/agents/growth/robot/plan": httpx.Response(200, json={"data": {"instance_plan_id": "plan-1"}}),
        })
        async with _client(api) as client:
            result = await start_robot(client, "site-1", "Outreach", "user-1")

        assert result.success is True
        assert result.instance_id == "inst-1"
        assert result.instance_plan_id == "plan-1"
        assert [path for path, _ in api.requests] == ["/api/robots/instance", "/api/agents/growth/robot/plan"]
        assert api.requests[1][1] == {
            "site_id": "site-1", "activity": "Outreach", "instance_id": "inst-1", "user_id": "user-1",
        }

    @pytest.mark.asyncio
    async def test_instance_id_in_nested_data(self):
        api = FakeRobotApi({
            "/api/robots/instance": httpx.Response(200, json={"data": {"instance_id": "inst-2"}}),
            "/api/agents/growth/robot/plan": httpx.Response(200, json={}),
        })
        async with _client(api) as client:
            result = await start_robot(client, "site-1", "Outreach")
        assert result.instance_id == "inst-2"

    @pytest.mark.asyncio
    async def test_missing_instance_id_fails(self):
        api = FakeRobotApi({"/api/robots/instance": httpx.Response(200, json={"status": "queued"})})
        async with _client(api) as client:
            result = await start_robot(client, "site-1", "Outreach")
        assert result.success is False
        assert result.error == "Instance API did not return instance_id"
        assert len(api.requests) == 1

    @pytest.mark.asyncio
    async def test_instance_call_failure(self):
        api = FakeRobotApi({"/api/robots/instance": httpx.Response(500, text="down")})
        async with _client(api) as client:
            result = await start_robot(client, "site-1", "Outreach")
        assert result.success is False
        assert result.error.startswith("Instance call failed")

    @pytest.mark.asyncio
    async def test_plan_call_failure(self):
        api = FakeRobotApi({
            "/api/robots/instance": httpx.Response(200, json={"instance_id": "inst-1"}),
            "/api/agents/growth/robot/plan": httpx.Response(422, text="bad activity"),
        })
        async with _client(api) as client:
            result = await start_robot(client, "site-1", "Outreach")
        assert result.success is False
        assert result.instance_id == "inst-1"
        assert result.error.startswith("Plan call failed")


class TestLaunchRobot:
    @pytest.mark.asyncio
    async def test_runs_plan_after_start(self):
        api = FakeRobotApi({
            "/api/robots/instance": httpx.Response(200, json={"instance_id": "inst-1"}),
            "/api/agents/growth/robot/plan": httpx.Response(200, json={"data": {"instance_plan_id": "plan-1"}}),
            "/api/robots/plan/act": httpx.Response(200, json={"data": {
                "agent_response": "step 1 finished", "plan_completed": True,
            }}),
        })
        async with _client(api) as client:
            controller = PlanCycleController(client.act, replan=client.replan, timer=RecordingTimer())
            started, report = await launch_robot(client, controller, "site-1", "Outreach")

        assert started.success is True
        assert report.success is True
        assert report.exit_kind is ExitKind.COMPLETED
        act_body = [body for path, body in api.requests if path == "/api/robots/plan/act"][0]
        assert act_body["instance_plan_id"] == "plan-1"

    @pytest.mark.asyncio
    async def test_no_report_when_start_fails(self):
        api = FakeRobotApi({"/api/robots/instance": httpx.Response(200, json={})})
        async with _client(api) as client:
            controller = PlanCycleController(client.act, timer=RecordingTimer())
            started, report = await launch_robot(client, controller, "site-1", "Outreach")
        assert started.success is False
        assert report is None
