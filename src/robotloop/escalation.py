"""Human intervention escalation for stuck robot plans.

Escalations are fire-and-forget: ``dispatch`` spawns a detached asyncio
task and returns immediately. The task's outcome is only ever logged;
neither a spawn failure nor a task failure reaches the caller.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from robotloop.config import EscalationConfig
from robotloop.events import EVENT_ESCALATION_DISPATCHED, EVENT_ESCALATION_FAILED, EventCollector
from robotloop.models import PlanParams

logger = logging.getLogger(__name__)

EscalationTask = Callable[[dict], Awaitable[Any]]


class EscalationKind(Enum):
    """Why a run needs a human. Value: (conversation prefix, title prefix)."""

    PLAN_FAILURE = ("robot-plan", "Robot Plan Failure")
    SESSION_TIMEOUT = ("robot-session-timeout", "Session Required Timeout")
    AUTH_TIMEOUT = ("robot-auth-timeout", "Authentication Timeout")
    ATTENTION = ("robot-attention", "Robot Attention Required")

    @property
    def conversation_prefix(self) -> str:
        return self.value[0]

    @property
    def title_prefix(self) -> str:
        return self.value[1]


_MESSAGES = {
    EscalationKind.PLAN_FAILURE: "Robot plan failed: {detail}.",
    EscalationKind.SESSION_TIMEOUT: (
        "Robot requires session/login after {wait} timeout. "
        "User failed to provide authentication{detail_suffix}."
    ),
    EscalationKind.AUTH_TIMEOUT: (
        "Robot authentication timed out after {wait}. "
        "User failed to complete login process{detail_suffix}."
    ),
    EscalationKind.ATTENTION: "Robot requires human attention: {detail}.",
}


@dataclass(frozen=True)
class EscalationRequest:
    conversation_id: str
    message: str
    user_id: str
    agent_id: str
    conversation_title: str
    site_id: str
    origin: str

    def to_payload(self) -> dict:
        return {
            "conversationId": self.conversation_id,
            "message": self.message,
            "user_id": self.user_id,
            "agentId": self.agent_id,
            "conversation_title": self.conversation_title,
            "site_id": self.site_id,
            "origin": self.origin,
        }


def _format_wait(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    return f"{seconds:g} seconds"


def build_escalation(
    kind: EscalationKind,
    params: PlanParams,
    cycle: int,
    detail: str | None = None,
    *,
    config: EscalationConfig | None = None,
    wait_seconds: float = 300.0,
) -> EscalationRequest:
    """Assemble the intervention payload for a terminal condition."""
    config = config or EscalationConfig()
    body = _MESSAGES[kind].format(
        detail=detail or "no details provided",
        detail_suffix=f" ({detail})" if detail else "",
        wait=_format_wait(wait_seconds),
    )
    message = (
        f"{body} Instance: {params.instance_id}, Site: {params.site_id}, "
        f"Activity: {params.activity}"
    )
    return EscalationRequest(
        conversation_id=f"{kind.conversation_prefix}-{params.instance_id}-{cycle}",
        message=message,
        user_id=params.user_id or config.default_user_id,
        agent_id=config.agent_id,
        conversation_title=f"{kind.title_prefix} - {params.activity}",
        site_id=params.site_id,
        origin=config.origin,
    )


class EscalationDispatcher:
    """Spawns detached human-intervention tasks."""

    def __init__(self, task: EscalationTask, events: EventCollector | None = None):
        self._task = task
        self._events = events
        self._pending: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def dispatch(self, request: EscalationRequest) -> asyncio.Task | None:
        """Spawn the escalation task. Never raises, never awaits it."""
        try:
            task = asyncio.create_task(
                self._task(request.to_payload()),
                name=f"escalation-{request.conversation_id}",
            )
        except Exception as e:
            logger.error(f"Failed to trigger human intervention {request.conversation_id}: {e}")
            self._emit(EVENT_ESCALATION_FAILED, request, error=str(e))
            return None

        self._pending.add(task)
        task.add_done_callback(self._on_task_done)
        logger.warning(f"Human intervention triggered: {request.conversation_id}")
        self._emit(EVENT_ESCALATION_DISPATCHED, request)
        return task

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight escalations, e.g. before the event loop shuts down."""
        if not self._pending:
            return
        done, not_done = await asyncio.wait(set(self._pending), timeout=timeout)
        if not_done:
            logger.warning(f"{len(not_done)} escalation task(s) still running after drain")

    def _on_task_done(self, task: asyncio.Task) -> None:
        """Surface escalation task failures."""
        self._pending.discard(task)
        if task.cancelled():
            logger.warning(f"Escalation task {task.get_name()} was cancelled")
            return
        exc = task.exception()
        if exc:
            logger.error(f"Escalation task {task.get_name()} failed: {exc}")
        else:
            logger.info(f"Escalation task {task.get_name()} delivered")

    def _emit(self, event_type: str, request: EscalationRequest, error: str | None = None) -> None:
        if self._events is None:
            return
        metadata = {"conversation_id": request.conversation_id, "title": request.conversation_title}
        if error:
            metadata["error"] = error
        self._events.emit(event_type, request.message, metadata=metadata)
