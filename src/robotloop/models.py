"""Data model for robot plan runs: params, act results, cycle log, final report."""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_float(value: Any) -> float:
    """Coerce a wire number; anything non-numeric or non-finite is 0."""
    try:
        number = float(value or 0)
    except (TypeError, ValueError, OverflowError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def _as_int(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    try:
        return int(value or 0)
    except (TypeError, ValueError, OverflowError):
        return int(_as_float(value))


class ExitKind(Enum):
    """How a plan run reached its terminal state."""

    COMPLETED = "completed"
    DECLARED_FAILURE = "declared_failure"
    BLOCKED_INSTANCE = "blocked_instance"
    ATTENTION_TIMEOUT = "attention_timeout"
    REPLAN_FAILURE = "replan_failure"
    CAP_EXCEEDED = "cap_exceeded"
    TRANSPORT_FAILURE = "transport_failure"
    CANCELED = "canceled"
    EXCEPTION = "exception"


@dataclass
class PlanParams:
    """Parameters sent on every act call.

    Only ``instance_plan_id`` changes during a run, when a plan is (re)created.
    """

    site_id: str
    activity: str
    instance_id: str
    instance_plan_id: str | None = None
    user_id: str | None = None

    def to_payload(self) -> dict:
        """Request body: optional ids are omitted when unset."""
        payload = {
            "site_id": self.site_id,
            "activity": self.activity,
            "instance_id": self.instance_id,
        }
        if self.instance_plan_id:
            payload["instance_plan_id"] = self.instance_plan_id
        if self.user_id:
            payload["user_id"] = self.user_id
        return payload

    @classmethod
    def from_dict(cls, data: dict) -> PlanParams:
        return cls(
            site_id=data["site_id"],
            activity=data["activity"],
            instance_id=data["instance_id"],
            instance_plan_id=data.get("instance_plan_id"),
            user_id=data.get("user_id"),
        )


@dataclass(frozen=True)
class PlanProgress:
    completed_steps: int = 0
    total_steps: int = 0
    percentage: float = 0.0

    @classmethod
    def from_dict(cls, data: Any) -> PlanProgress | None:
        if not isinstance(data, dict):
            return None
        return cls(
            completed_steps=_as_int(data.get("completed_steps")),
            total_steps=_as_int(data.get("total_steps")),
            percentage=_as_float(data.get("percentage")),
        )

    def to_dict(self) -> dict:
        return {
            "completed_steps": self.completed_steps,
            "total_steps": self.total_steps,
            "percentage": self.percentage,
        }


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    @classmethod
    def from_dict(cls, data: Any) -> TokenUsage | None:
        if not isinstance(data, dict):
            return None
        return cls(
            input_tokens=_as_int(data.get("input_tokens")),
            output_tokens=_as_int(data.get("output_tokens")),
        )

    def to_dict(self) -> dict:
        return {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens}


@dataclass(frozen=True)
class StepInfo:
    """The plan step the remote agent just worked on."""

    id: str | None = None
    order: int | None = None
    title: str = ""
    status: str = ""
    type: str | None = None
    result: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> StepInfo | None:
        if not isinstance(data, dict):
            return None
        order = data.get("order")
        return cls(
            id=str(data["id"]) if data.get("id") is not None else None,
            order=_as_int(order) if order is not None else None,
            title=str(data.get("title") or ""),
            status=str(data.get("status") or ""),
            type=data.get("type"),
            result=data.get("result"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order": self.order,
            "title": self.title,
            "status": self.status,
            "type": self.type,
            "result": self.result,
        }


@dataclass
class ActResult:
    """Outcome of one act call as returned by the call harness."""

    success: bool
    plan_completed: bool | None = None
    instance_plan_id: str | None = None
    data: dict = field(default_factory=dict)
    error: str | None = None

    @classmethod
    def from_dict(cls, raw: dict) -> ActResult:
        data = raw.get("data")
        return cls(
            success=bool(raw.get("success", False)),
            plan_completed=raw.get("plan_completed"),
            instance_plan_id=raw.get("instance_plan_id"),
            data=data if isinstance(data, dict) else {},
            error=raw.get("error"),
        )

    @property
    def agent_response(self) -> str:
        return str(self.data.get("agent_response") or self.data.get("message") or "")


@dataclass
class ReplanResult:
    success: bool
    instance_plan_id: str | None = None
    error: str | None = None
    data: dict | None = None


@dataclass
class SessionSaveResult:
    success: bool
    error: str | None = None
    data: dict | None = None


@dataclass(frozen=True)
class CycleEntry:
    """Immutable record of one act round-trip."""

    cycle: int
    response_type: str
    timestamp: str
    step: StepInfo | None = None
    plan_progress: PlanProgress | None = None
    message: str | None = None
    agent_response: str = ""
    execution_time_ms: float = 0.0
    steps_executed: int = 0
    token_usage: TokenUsage | None = None
    remote_instance_id: str | None = None
    plan_completed: bool = False
    plan_failed: bool = False
    failure_reason: str | None = None
    instance_status: str | None = None
    instance_paused: bool | None = None
    waiting_for_instructions: bool | None = None
    is_blocked: bool | None = None
    waiting_for_session: bool | None = None
    new_session_info: dict | None = None
    session_save_info: dict | None = None

    @classmethod
    def transport_failure(cls, cycle: int, reason: str) -> CycleEntry:
        """Synthetic entry for an act call that raised instead of answering."""
        return cls(
            cycle=cycle,
            response_type="step_failed",
            timestamp=utc_now_iso(),
            message=f"Exception during plan act call: {reason}",
            plan_failed=True,
            failure_reason=f"Plan act exception on cycle {cycle}: {reason}",
        )

    def to_dict(self) -> dict:
        return {
            "cycle": self.cycle,
            "step": self.step.to_dict() if self.step else None,
            "plan_progress": self.plan_progress.to_dict() if self.plan_progress else None,
            "message": self.message,
            "agent_response": self.agent_response,
            "execution_time_ms": self.execution_time_ms,
            "steps_executed": self.steps_executed,
            "token_usage": self.token_usage.to_dict() if self.token_usage else None,
            "remote_instance_id": self.remote_instance_id,
            "plan_completed": self.plan_completed,
            "plan_failed": self.plan_failed,
            "failure_reason": self.failure_reason,
            "instance_status": self.instance_status,
            "instance_paused": self.instance_paused,
            "waiting_for_instructions": self.waiting_for_instructions,
            "is_blocked": self.is_blocked,
            "waiting_for_session": self.waiting_for_session,
            "new_session_info": self.new_session_info,
            "session_save_info": self.session_save_info,
            "response_type": self.response_type,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> CycleEntry:
        return cls(
            cycle=_as_int(data.get("cycle")),
            response_type=data.get("response_type") or "unclassified",
            timestamp=data.get("timestamp") or "",
            step=StepInfo.from_dict(data.get("step")),
            plan_progress=PlanProgress.from_dict(data.get("plan_progress")),
            message=data.get("message"),
            agent_response=data.get("agent_response") or "",
            execution_time_ms=_as_float(data.get("execution_time_ms")),
            steps_executed=_as_int(data.get("steps_executed")),
            token_usage=TokenUsage.from_dict(data.get("token_usage")),
            remote_instance_id=data.get("remote_instance_id"),
            plan_completed=bool(data.get("plan_completed")),
            plan_failed=bool(data.get("plan_failed")),
            failure_reason=data.get("failure_reason"),
            instance_status=data.get("instance_status"),
            instance_paused=data.get("instance_paused"),
            waiting_for_instructions=data.get("waiting_for_instructions"),
            is_blocked=data.get("is_blocked"),
            waiting_for_session=data.get("waiting_for_session"),
            new_session_info=data.get("new_session_info"),
            session_save_info=data.get("session_save_info"),
        )


@dataclass(frozen=True)
class FinalReport:
    """Terminal summary of a plan run, produced once by the finalizer."""

    success: bool
    instance_id: str
    instance_plan_id: str | None
    exit_kind: ExitKind
    cycles: tuple[CycleEntry, ...] = ()
    total_cycles: int = 0
    final_progress: PlanProgress | None = None
    total_execution_time_ms: float = 0.0
    total_token_usage: TokenUsage = field(default_factory=TokenUsage)
    error: str | None = None
    site_id: str = ""
    activity: str = ""
    user_id: str | None = None
    executed_at: str = ""

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "instance_id": self.instance_id,
            "instance_plan_id": self.instance_plan_id,
            "exit_kind": self.exit_kind.value,
            "cycles": [c.to_dict() for c in self.cycles],
            "total_cycles": self.total_cycles,
            "final_progress": self.final_progress.to_dict() if self.final_progress else None,
            "total_execution_time_ms": self.total_execution_time_ms,
            "total_token_usage": self.total_token_usage.to_dict(),
            "error": self.error,
            "site_id": self.site_id,
            "activity": self.activity,
            "user_id": self.user_id,
            "executed_at": self.executed_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> FinalReport:
        usage = TokenUsage.from_dict(data.get("total_token_usage")) or TokenUsage()
        return cls(
            success=bool(data.get("success")),
            instance_id=data.get("instance_id") or "",
            instance_plan_id=data.get("instance_plan_id"),
            exit_kind=ExitKind(data.get("exit_kind", ExitKind.EXCEPTION.value)),
            cycles=tuple(CycleEntry.from_dict(c) for c in data.get("cycles") or []),
            total_cycles=_as_int(data.get("total_cycles")),
            final_progress=PlanProgress.from_dict(data.get("final_progress")),
            total_execution_time_ms=_as_float(data.get("total_execution_time_ms")),
            total_token_usage=usage,
            error=data.get("error"),
            site_id=data.get("site_id") or "",
            activity=data.get("activity") or "",
            user_id=data.get("user_id"),
            executed_at=data.get("executed_at") or "",
        )


def new_run_id() -> str:
    return f"run-{uuid.uuid4().hex[:8]}"
