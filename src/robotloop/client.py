"""HTTP client for the remote robot API.

This is the call harness around every remote operation: bounded attempts
with exponential backoff on transport errors and 5xx responses. The plan
controller never retries on its own; it only sees the final outcome.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import httpx

from robotloop.config import ApiConfig
from robotloop.models import ActResult, PlanParams, ReplanResult, SessionSaveResult

logger = logging.getLogger(__name__)

ACT_PATH = "/api/robots/plan/act"
PLAN_PATH = "/api/agents/growth/robot/plan"
AUTH_PATH = "/api/robots/auth"
INSTANCE_PATH = "/api/robots/instance"
INTERVENTION_PATH = "/api/agents/chat/intervention"


class ApiError(RuntimeError):
    """A remote call that failed for good (retries exhausted or 4xx)."""

    def __init__(self, code: str, message: str, status: int | None = None):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
        self.status = status


def unwrap(body: Any) -> dict:
    """Return ``body.data`` when the service nests its payload, else ``body``."""
    if not isinstance(body, dict):
        return {}
    nested = body.get("data")
    if isinstance(nested, dict) and nested:
        return nested
    return body


class RobotApiClient:
    """Async client for the robot endpoints, authenticated with ``x-api-key``."""

    def __init__(
        self,
        config: ApiConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        sleeper: Callable[[float], Awaitable[None]] | None = None,
    ):
        if not config.base_url:
            raise ValueError("API base URL is not configured (set ROBOTLOOP_API_BASE_URL)")
        if not config.api_key:
            raise ValueError("API key is not configured (set ROBOTLOOP_API_KEY)")
        self.config = config
        self._sleep = sleeper or asyncio.sleep
        self._client = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            headers={"Content-Type": "application/json", "x-api-key": config.api_key},
            timeout=config.timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> RobotApiClient:
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, payload: dict) -> dict:
        """POST with retries. Returns the decoded JSON body."""
        attempts = max(1, self.config.max_attempts)
        backoff = self.config.initial_backoff_seconds
        last_error: ApiError | None = None

        for attempt in range(1, attempts + 1):
            logger.debug(f"POST {path} (attempt {attempt}/{attempts})")
            try:
                response = await self._client.post(path, json=payload)
            except httpx.TransportError as e:
                last_error = ApiError("TRANSPORT_ERROR", str(e) or e.__class__.__name__)
            else:
                if response.status_code >= 500:
                    last_error = ApiError(
                        f"HTTP_{response.status_code}", response.text[:500], response.status_code
                    )
                elif response.is_error:
                    raise ApiError(
                        f"HTTP_{response.status_code}", response.text[:500], response.status_code
                    )
                else:
                    try:
                        return response.json()
                    except ValueError as e:
                        raise ApiError("INVALID_JSON", f"Response from {path} is not JSON: {e}") from e

            if attempt < attempts:
                logger.warning(f"POST {path} failed ({last_error}), retrying in {backoff:g}s")
                await self._sleep(backoff)
                backoff = min(backoff * 2, self.config.max_backoff_seconds)

        logger.error(f"POST {path} failed after {attempts} attempts: {last_error}")
        raise last_error

    # --- Plan loop operations ---

    async def act(self, params: PlanParams) -> ActResult:
        """Run one plan act round-trip."""
        body = await self._post(ACT_PATH, params.to_payload())
        data = unwrap(body)
        return ActResult(
            success=True,
            plan_completed=bool(data.get("plan_completed") or False),
            instance_plan_id=data.get("instance_plan_id"),
            data=data,
        )

    async def replan(self, params: PlanParams, error_context: str) -> ReplanResult:
        """Request a replacement plan, passing the failure context along."""
        payload = params.to_payload()
        payload["error_context"] = error_context
        try:
            body = await self._post(PLAN_PATH, payload)
        except ApiError as e:
            return ReplanResult(success=False, error=str(e))
        data = unwrap(body)
        return ReplanResult(success=True, instance_plan_id=data.get("instance_plan_id"), data=data)

    async def save_session(self, remote_instance_id: str, site_id: str) -> SessionSaveResult:
        try:
            body = await self._post(
                AUTH_PATH, {"remote_instance_id": remote_instance_id, "site_id": site_id}
            )
        except ApiError as e:
            return SessionSaveResult(success=False, error=str(e))
        return SessionSaveResult(success=True, data=unwrap(body))

    async def record_intervention(self, payload: dict) -> dict:
        """Open a human-intervention conversation. Used as the escalation task."""
        body = await self._post(INTERVENTION_PATH, payload)
        logger.info(f"Intervention recorded: {payload.get('conversationId')}")
        return unwrap(body)

    # --- Start flow ---

    async def create_instance(self, site_id: str, activity: str, user_id: str | None = None) -> dict:
        """Create a robot instance. Returns the raw response body."""
        payload = {"site_id": site_id, "activity": activity}
        if user_id:
            payload["user_id"] = user_id
        return await self._post(INSTANCE_PATH, payload)

    async def create_plan(
        self,
        site_id: str,
        activity: str,
        instance_id: str,
        user_id: str | None = None,
    ) -> dict:
        params = PlanParams(site_id=site_id, activity=activity, instance_id=instance_id, user_id=user_id)
        return unwrap(await self._post(PLAN_PATH, params.to_payload()))
