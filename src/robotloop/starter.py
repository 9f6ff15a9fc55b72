"""Start-robot flow: create an instance, request its first plan, then run it."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from robotloop.client import RobotApiClient, unwrap
from robotloop.controller import PlanCycleController
from robotloop.models import FinalReport, PlanParams, utc_now_iso

logger = logging.getLogger(__name__)


@dataclass
class StartResult:
    success: bool
    site_id: str
    activity: str
    user_id: str | None = None
    instance_id: str | None = None
    instance_data: dict | None = None
    plan_data: dict | None = None
    error: str | None = None
    executed_at: str = field(default_factory=utc_now_iso)

    @property
    def instance_plan_id(self) -> str | None:
        return (self.plan_data or {}).get("instance_plan_id")


async def start_robot(
    client: RobotApiClient,
    site_id: str,
    activity: str,
    user_id: str | None = None,
) -> StartResult:
    """Create a robot instance and request its initial plan.

    Never raises: every failure is returned as an unsuccessful StartResult.
    """
    logger.info(f"Starting robot for site: {site_id}, activity: {activity}")
    result = StartResult(success=False, site_id=site_id, activity=activity, user_id=user_id)

    try:
        body = await client.create_instance(site_id, activity, user_id)
    except Exception as e:
        logger.error(f"Robot instance call failed for site {site_id}: {e}")
        result.error = f"Instance call failed: {e}"
        return result

    body = body if isinstance(body, dict) else {}
    result.instance_data = unwrap(body)
    instance_id = body.get("instance_id") or result.instance_data.get("instance_id")
    if not instance_id:
        logger.error(f"No instance_id returned from robot instance API for site {site_id}")
        result.error = "Instance API did not return instance_id"
        return result
    result.instance_id = str(instance_id)
    logger.info(f"Robot instance created: {result.instance_id}")

    try:
        result.plan_data = await client.create_plan(site_id, activity, result.instance_id, user_id)
    except Exception as e:
        logger.error(f"Robot plan call failed for site {site_id}: {e}")
        result.error = f"Plan call failed: {e}"
        return result

    result.success = True
    logger.info(
        f"Robot started for site {site_id}: instance {result.instance_id}, "
        f"plan {result.instance_plan_id or 'pending'}"
    )
    return result


async def launch_robot(
    client: RobotApiClient,
    controller: PlanCycleController,
    site_id: str,
    activity: str,
    user_id: str | None = None,
    run_id: str | None = None,
) -> tuple[StartResult, FinalReport | None]:
    """Start a robot and drive its plan to a terminal state.

    The report is None when the start phase failed and no plan loop ran.
    """
    started = await start_robot(client, site_id, activity, user_id)
    if not started.success:
        return started, None

    params = PlanParams(
        site_id=site_id,
        activity=activity,
        instance_id=started.instance_id,
        instance_plan_id=started.instance_plan_id,
        user_id=user_id,
    )
    report = await controller.run(params, run_id=run_id)
    return started, report
