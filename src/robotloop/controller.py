"""Plan cycle controller: drives a remote robot plan to completion.

Each cycle calls the act operation, records one immutable cycle entry,
classifies the agent response and dispatches it to a state handler:

    plan_failed      escalate, fail
    new_plan         request a replacement plan, continue (fail if replan fails)
    new_session      log, continue (the plan follows with a session_save step)
    session_needed   wait 5 min, escalate, fail
    user_attention   auth step: wait 5 min, escalate, fail
                     otherwise: wait 5 min once and retry, then escalate, fail
    step_completed   save the session on session_save steps, reset retries
    step_failed/
    step_canceled    reset retries

A stopped or paused-and-waiting instance halts the run before any handler
runs. Between cycles the loop waits 3 s. All waits go through a durable
timer; each cycle entry is stored together with its pending checkpoint, and
state is checkpointed again after every decision, so a restarted run resumes
at the same logical point. ``run`` turns every outcome, including unexpected
exceptions, into a FinalReport.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

from robotloop.config import RobotloopConfig
from robotloop.escalation import (
    EscalationDispatcher,
    EscalationKind,
    EscalationTask,
    build_escalation,
)
from robotloop.events import (
    EVENT_CYCLE_RECORDED,
    EVENT_PLAN_REPLACED,
    EVENT_RUN_FINISHED,
    EVENT_RUN_RESUMED,
    EVENT_RUN_STARTED,
    EventCollector,
)
from robotloop.finalizer import finalize, log_report
from robotloop.models import (
    ActResult,
    CycleEntry,
    ExitKind,
    FinalReport,
    PlanParams,
    PlanProgress,
    ReplanResult,
    StepInfo,
    TokenUsage,
    _as_float,
    _as_int,
    new_run_id,
    utc_now_iso,
)
from robotloop.responses import ResponseType, ResponseVariant, classify_response
from robotloop.session import SaveSession, SessionLifecycleHandler, is_session_save_step
from robotloop.store import RUN_STATUS_RUNNING, RunStore
from robotloop.timers import InMemoryTimer, StoreTimer, Timer

logger = logging.getLogger(__name__)

ActOperation = Callable[[PlanParams], Awaitable[ActResult]]
ReplanOperation = Callable[[PlanParams, str], Awaitable[ReplanResult]]

INSTANCE_STOPPED = "stopped"
PAUSED_FAILURE_REASON = "Instance paused and waiting for instructions - manual intervention required"
STOPPED_FAILURE_REASON = "Instance stopped"

PHASE_HANDLE = "handle"
PHASE_PAUSE = "pause"


class RunState(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class LoopState:
    """Per-run loop state. Only the controller mutates it."""

    run_id: str
    params: PlanParams
    entries: list[CycleEntry] = field(default_factory=list)
    attention_retries: int = 0
    state: RunState = RunState.RUNNING
    exit_kind: ExitKind | None = None
    failure_reason: str | None = None
    escalated: bool = False
    pending: dict | None = None
    timer: Timer = field(default_factory=InMemoryTimer)

    @property
    def cycle(self) -> int:
        return self.entries[-1].cycle if self.entries else 0

    @property
    def running(self) -> bool:
        return self.state is RunState.RUNNING

    def complete(self) -> None:
        if self.running:
            self.state = RunState.COMPLETED
            self.exit_kind = ExitKind.COMPLETED

    def fail(self, kind: ExitKind, reason: str) -> None:
        """Enter FAILED. A terminal outcome, once decided, is never replaced."""
        if self.running:
            self.state = RunState.FAILED
            self.exit_kind = kind
            self.failure_reason = reason


class PlanCycleController:
    """Runs the act/classify/handle loop for one plan at a time.

    A controller drives a single run at once: ``events`` is tagged with the
    active run id, so overlapping ``run`` calls raise RuntimeError. Use one
    controller per concurrent run.
    """

    def __init__(
        self,
        act: ActOperation,
        replan: ReplanOperation | None = None,
        save_session: SaveSession | None = None,
        escalate: EscalationTask | None = None,
        *,
        config: RobotloopConfig | None = None,
        store: RunStore | None = None,
        timer: Timer | None = None,
        events: EventCollector | None = None,
    ):
        self.config = config or RobotloopConfig()
        self._act = act
        self._replan = replan
        self._store = store
        self._timer = timer
        self.events = events or EventCollector(store=store)
        self._sessions = SessionLifecycleHandler(save_session, events=self.events)
        self._dispatcher = EscalationDispatcher(escalate, events=self.events) if escalate else None
        self._stop_requested = False
        self._active_run: str | None = None
        self._handlers: dict[ResponseType, Callable[..., Awaitable[None]]] = {
            ResponseType.PLAN_FAILED: self._on_plan_failed,
            ResponseType.NEW_PLAN: self._on_new_plan,
            ResponseType.NEW_SESSION: self._on_new_session,
            ResponseType.SESSION_NEEDED: self._on_session_needed,
            ResponseType.USER_ATTENTION: self._on_user_attention,
            ResponseType.STEP_COMPLETED: self._on_step_completed,
            ResponseType.STEP_FAILED: self._on_step_outcome,
            ResponseType.STEP_CANCELED: self._on_step_outcome,
        }

    # --- Public API ---

    def request_stop(self) -> None:
        """Stop the run at the next between-cycles point.

        A request made before ``run`` stops that run before its first cycle.
        The request is consumed when the run finishes.
        """
        self._stop_requested = True

    async def drain_escalations(self, timeout: float | None = None) -> None:
        if self._dispatcher:
            await self._dispatcher.drain(timeout=timeout)

    async def run(self, params: PlanParams, run_id: str | None = None) -> FinalReport:
        """Drive the plan to a terminal state and return its report.

        Raises RuntimeError if this controller is already driving a run.
        """
        if self._active_run is not None:
            raise RuntimeError(f"Controller is already driving run {self._active_run}")
        run_id = run_id or new_run_id()
        self.events.run_id = run_id
        stored = self._stored_report(run_id)
        if stored is not None:
            return stored

        self._active_run = run_id
        try:
            return await self._drive(LoopState(run_id=run_id, params=params))
        finally:
            self._active_run = None
            self._stop_requested = False

    async def _drive(self, state: LoopState) -> FinalReport:
        try:
            self._open(state)
            await self._loop(state)
        except Exception as e:
            logger.exception(f"Robot execution workflow exception for site {state.params.site_id}: {e}")
            state.fail(ExitKind.EXCEPTION, f"Robot execution workflow failed: {e}")

        if state.running:
            state.fail(ExitKind.EXCEPTION, "Plan loop exited without reaching a terminal state")

        report = finalize(
            state.params,
            state.entries,
            state.exit_kind or ExitKind.EXCEPTION,
            state.failure_reason,
            executed_at=utc_now_iso(),
        )
        log_report(report)
        self._close(state, report)
        return report

    # --- Run lifecycle ---

    def _stored_report(self, run_id: str) -> FinalReport | None:
        if self._store is None:
            return None
        try:
            record = self._store.get_run(run_id)
        except Exception as e:
            logger.warning(f"Could not read stored run {run_id}: {e}")
            return None
        if record is None or record.status == RUN_STATUS_RUNNING or not record.report:
            return None
        logger.info(f"Run {run_id} already finished ({record.status}), returning stored report")
        return FinalReport.from_dict(record.report)

    def _open(self, state: LoopState) -> None:
        """Create the run record, or load it when resuming."""
        if self._timer is not None:
            state.timer = self._timer
        elif self._store is not None:
            state.timer = StoreTimer(self._store, state.run_id)

        params = state.params
        record = self._store.get_run(state.run_id) if self._store else None
        if record is not None:
            state.params = record.params
            state.entries = self._store.get_cycles(state.run_id)
            state.attention_retries = record.attention_retries
            state.pending = record.pending
            logger.info(f"Resuming run {state.run_id} after cycle {state.cycle}")
            self.events.emit(
                EVENT_RUN_RESUMED,
                f"Resumed after cycle {state.cycle}",
                cycle=state.cycle,
                metadata={"pending": state.pending},
            )
            return

        if self._store is not None:
            self._store.create_run(state.run_id, params)
        plan = f", plan: {params.instance_plan_id}" if params.instance_plan_id else ""
        user = f", user: {params.user_id}" if params.user_id else ""
        logger.info(
            f"Starting robot execution for site: {params.site_id}, activity: {params.activity}, "
            f"instance: {params.instance_id}{plan}{user}"
        )
        self.events.emit(
            EVENT_RUN_STARTED,
            f"Run started for {params.activity} on instance {params.instance_id}",
            metadata=params.to_payload(),
        )

    def _close(self, state: LoopState, report: FinalReport) -> None:
        try:
            if self._store is not None:
                self._store.save_report(state.run_id, report)
            self.events.emit(
                EVENT_RUN_FINISHED,
                "Plan completed successfully" if report.success else (report.error or "Plan failed"),
                cycle=report.total_cycles,
                metadata={"exit_kind": report.exit_kind.value, "success": report.success},
            )
        except Exception as e:
            logger.error(f"Failed to persist final report for run {state.run_id}: {e}")

    def _checkpoint(self, state: LoopState, pending: dict | None) -> None:
        state.pending = pending
        if self._store is not None:
            self._store.save_checkpoint(
                state.run_id,
                instance_plan_id=state.params.instance_plan_id,
                attention_retries=state.attention_retries,
                pending=pending,
            )

    def _append(self, state: LoopState, entry: CycleEntry, pending: dict) -> None:
        """Record the entry together with the checkpoint that says how to handle it."""
        state.entries.append(entry)
        state.pending = pending
        if self._store is not None:
            self._store.append_cycle(
                state.run_id,
                entry,
                checkpoint={
                    "instance_plan_id": state.params.instance_plan_id,
                    "attention_retries": state.attention_retries,
                    "pending": pending,
                },
            )
        self.events.emit(
            EVENT_CYCLE_RECORDED,
            f"Cycle {entry.cycle}: {entry.response_type}",
            cycle=entry.cycle,
            metadata={"plan_completed": entry.plan_completed, "plan_failed": entry.plan_failed},
        )

    # --- Main loop ---

    async def _loop(self, state: LoopState) -> None:
        max_cycles = self.config.loop.max_cycles

        if state.pending and state.entries:
            await self._resume_pending(state)

        while state.running:
            if state.cycle >= max_cycles:
                logger.warning(
                    f"Robot plan act execution loop reached maximum cycles ({max_cycles}) "
                    f"for site {state.params.site_id}"
                )
                state.fail(
                    ExitKind.CAP_EXCEEDED,
                    f"Plan act execution loop reached maximum cycles ({max_cycles})",
                )
                break
            if self._stop_requested:
                state.fail(ExitKind.CANCELED, f"Run stopped by request after cycle {state.cycle}")
                break
            await self._run_cycle(state)

    async def _resume_pending(self, state: LoopState) -> None:
        pending = state.pending or {}
        entry = state.entries[-1]
        if pending.get("cycle") != entry.cycle:
            self._checkpoint(state, None)
            return
        if pending.get("transport_failure"):
            state.fail(ExitKind.TRANSPORT_FAILURE, entry.failure_reason)
            self._checkpoint(state, None)
            return
        variant = ResponseVariant.from_dict(pending.get("variant") or {})
        logger.info(f"Resuming cycle {entry.cycle} at phase '{pending.get('phase')}'")
        await self._finish_cycle(
            state,
            entry,
            variant,
            plan_completed=bool(pending.get("plan_completed")),
            plan_failed=bool(pending.get("plan_failed")),
            phase=pending.get("phase", PHASE_HANDLE),
        )

    async def _run_cycle(self, state: LoopState) -> None:
        cycle = state.cycle + 1
        params = state.params
        logger.info(f"Robot plan execution cycle {cycle} for site {params.site_id}...")

        try:
            result = await self._act(params)
        except Exception as e:
            self._record_transport_failure(state, cycle, str(e) or e.__class__.__name__)
            return
        if not result.success:
            self._record_transport_failure(
                state, cycle, f"Plan act call failed: {result.error or 'unknown error'}"
            )
            return

        data = result.data or {}
        variant = classify_response(data)
        plan_completed = bool(result.plan_completed or data.get("plan_completed"))
        plan_failed = bool(data.get("plan_failed"))
        failure_reason = data.get("failure_reason") or variant.reason
        response_type = variant.type.value

        paused = data.get("instance_paused") is True and data.get("waiting_for_instructions") is True
        if paused:
            plan_failed = True
            failure_reason = PAUSED_FAILURE_REASON
            response_type = ResponseType.PLAN_FAILED.value

        entry = self._build_entry(
            cycle, result, response_type, plan_completed, plan_failed, failure_reason
        )

        if result.instance_plan_id and not params.instance_plan_id:
            params.instance_plan_id = result.instance_plan_id
            logger.info(f"Instance plan ID updated: {result.instance_plan_id}")

        # Explicit plan_failed always wins over the 100% completion heuristic.
        if (
            not plan_completed
            and not plan_failed
            and variant.type is ResponseType.STEP_COMPLETED
            and entry.plan_progress is not None
            and entry.plan_progress.percentage == 100
        ):
            plan_completed = True
            logger.info("Plan marked completed: final step finished with 100% progress")

        self._append(state, entry, {
            "cycle": cycle,
            "phase": PHASE_HANDLE,
            "variant": variant.to_dict(),
            "plan_completed": plan_completed,
            "plan_failed": plan_failed,
        })
        self._log_cycle(entry, variant)

        if data.get("session_saved") and self._blocked_reason(entry) is None:
            self._sessions.on_session_saved(entry)

        await self._finish_cycle(state, entry, variant, plan_completed, plan_failed)

    async def _finish_cycle(
        self,
        state: LoopState,
        entry: CycleEntry,
        variant: ResponseVariant,
        plan_completed: bool,
        plan_failed: bool,
        phase: str = PHASE_HANDLE,
    ) -> None:
        pending = {
            "cycle": entry.cycle,
            "variant": variant.to_dict(),
            "plan_completed": plan_completed,
            "plan_failed": plan_failed,
        }

        if phase == PHASE_HANDLE:
            blocked = self._blocked_reason(entry)
            if blocked is not None:
                logger.warning(f"Instance cannot continue, terminating on cycle {entry.cycle}: {blocked}")
                state.fail(ExitKind.BLOCKED_INSTANCE, blocked)
            else:
                await self._dispatch(state, entry, variant)
            if state.running and plan_failed:
                state.fail(
                    ExitKind.DECLARED_FAILURE,
                    entry.failure_reason or "Plan execution failed - check cycle log for details",
                )
            if state.running and plan_completed:
                logger.info(f"Plan completed on cycle {entry.cycle}")
                state.complete()

        if state.running and entry.cycle < self.config.loop.max_cycles:
            self._checkpoint(state, {**pending, "phase": PHASE_PAUSE})
            interval = self.config.loop.cycle_interval_seconds
            logger.info(f"Plan not yet completed, waiting {interval:g}s before next plan/act call...")
            await state.timer.sleep(f"cycle-{entry.cycle}:interval", interval)

        self._checkpoint(state, None)

    def _record_transport_failure(self, state: LoopState, cycle: int, reason: str) -> None:
        logger.error(
            f"Robot plan act exception on cycle {cycle} for site {state.params.site_id}: {reason}"
        )
        entry = CycleEntry.transport_failure(cycle, reason)
        self._append(state, entry, {"cycle": cycle, "phase": PHASE_HANDLE, "transport_failure": True})
        state.fail(ExitKind.TRANSPORT_FAILURE, entry.failure_reason)
        self._checkpoint(state, None)

    @staticmethod
    def _blocked_reason(entry: CycleEntry) -> str | None:
        """Failure reason when the instance can't run further, else None."""
        if not entry.plan_failed:
            return None
        if entry.instance_status == INSTANCE_STOPPED:
            return entry.failure_reason or STOPPED_FAILURE_REASON
        if entry.instance_paused is True and entry.waiting_for_instructions is True:
            return PAUSED_FAILURE_REASON
        return None

    @staticmethod
    def _build_entry(
        cycle: int,
        result: ActResult,
        response_type: str,
        plan_completed: bool,
        plan_failed: bool,
        failure_reason: str | None,
    ) -> CycleEntry:
        data = result.data or {}
        return CycleEntry(
            cycle=cycle,
            response_type=response_type,
            timestamp=utc_now_iso(),
            step=StepInfo.from_dict(data.get("step")),
            plan_progress=PlanProgress.from_dict(data.get("plan_progress")),
            message=data.get("message"),
            agent_response=result.agent_response,
            execution_time_ms=_as_float(data.get("execution_time_ms")),
            steps_executed=_as_int(data.get("steps_executed")),
            token_usage=TokenUsage.from_dict(data.get("token_usage")),
            remote_instance_id=data.get("remote_instance_id"),
            plan_completed=plan_completed,
            plan_failed=plan_failed,
            failure_reason=failure_reason,
            instance_status=data.get("instance_status"),
            instance_paused=data.get("instance_paused"),
            waiting_for_instructions=data.get("waiting_for_instructions"),
            is_blocked=data.get("is_blocked"),
            waiting_for_session=data.get("waiting_for_session"),
            new_session_info=data.get("new_session_info"),
            session_save_info=data.get("session_save_info"),
        )

    @staticmethod
    def _log_cycle(entry: CycleEntry, variant: ResponseVariant) -> None:
        logger.info(
            f"Cycle {entry.cycle} recorded. Response type: {entry.response_type}, "
            f"plan completed: {entry.plan_completed}"
        )
        if entry.plan_progress:
            p = entry.plan_progress
            logger.info(f"Progress: {p.completed_steps}/{p.total_steps} ({p.percentage:g}%)")
        if entry.step:
            logger.info(
                f"Step: {entry.step.title} ({entry.step.status}) - {entry.step.result or 'In progress'}"
            )
        if entry.execution_time_ms:
            logger.info(f"Execution time: {entry.execution_time_ms:.0f}ms")
        if entry.is_blocked:
            logger.warning("Plan is blocked")
        if entry.waiting_for_session:
            logger.info("Waiting for session")
        if entry.plan_failed:
            logger.warning(
                f"Plan failed detected. Reason: {entry.failure_reason}, "
                f"instance status: {entry.instance_status or 'unknown'}"
            )

    # --- State handlers ---

    async def _dispatch(self, state: LoopState, entry: CycleEntry, variant: ResponseVariant) -> None:
        handler = self._handlers.get(variant.type)
        if handler is None:
            logger.info(f"Unclassified agent response on cycle {entry.cycle}, continuing")
            return
        await handler(state, entry, variant)

    async def _on_plan_failed(self, state: LoopState, entry: CycleEntry, variant: ResponseVariant) -> None:
        reason = variant.reason or entry.failure_reason or "no reason given"
        logger.warning(f"Plan failed: {reason}")
        self._escalate(state, entry, EscalationKind.PLAN_FAILURE, reason)
        state.fail(ExitKind.DECLARED_FAILURE, entry.failure_reason or f"Plan failed: {reason}")

    async def _on_new_plan(self, state: LoopState, entry: CycleEntry, variant: ResponseVariant) -> None:
        logger.info("New plan required, requesting a replacement plan with error context...")
        if self._replan is None:
            state.fail(ExitKind.REPLAN_FAILURE, "New plan required but no replan operation is configured")
            return

        context_size = self.config.loop.replan_context_entries
        error_context = {
            "previous_plan_id": state.params.instance_plan_id,
            "error_cycle": entry.cycle,
            "error_reason": "Plan requires replacement",
            "previous_results": [e.to_dict() for e in state.entries[-context_size:]],
        }
        try:
            result = await self._replan(state.params, json.dumps(error_context))
        except Exception as e:
            logger.error(f"Error creating new plan: {e}")
            state.fail(ExitKind.REPLAN_FAILURE, f"Error creating new plan: {e}")
            return

        if not (result.success and result.instance_plan_id):
            error = result.error or "no instance_plan_id returned"
            logger.error(f"Failed to create new plan: {error}")
            state.fail(ExitKind.REPLAN_FAILURE, f"Failed to create new plan: {error}")
            return

        previous = state.params.instance_plan_id
        state.params.instance_plan_id = result.instance_plan_id
        state.attention_retries = 0
        logger.info(f"New plan created with ID: {result.instance_plan_id}")
        self.events.emit(
            EVENT_PLAN_REPLACED,
            f"Plan replaced: {previous} -> {result.instance_plan_id}",
            cycle=entry.cycle,
            metadata={"previous_plan_id": previous, "instance_plan_id": result.instance_plan_id},
        )

    async def _on_new_session(self, state: LoopState, entry: CycleEntry, variant: ResponseVariant) -> None:
        self._sessions.on_new_session(entry, variant)

    async def _on_session_needed(self, state: LoopState, entry: CycleEntry, variant: ResponseVariant) -> None:
        where = variant.platform or "unknown platform"
        if variant.domain:
            where += f", domain: {variant.domain}"
        wait = self.config.loop.attention_wait_seconds
        logger.info(f"Session needed ({where}), waiting {wait:g}s for user to provide session/login...")
        await state.timer.sleep(f"cycle-{entry.cycle}:session", wait)

        logger.warning("Session timeout reached, triggering human intervention...")
        self._escalate(state, entry, EscalationKind.SESSION_TIMEOUT, where if variant.platform else None)
        state.fail(
            ExitKind.ATTENTION_TIMEOUT,
            f"Session required ({where}): timed out waiting for session/login",
        )

    async def _on_user_attention(self, state: LoopState, entry: CycleEntry, variant: ResponseVariant) -> None:
        explanation = variant.explanation or "no explanation given"
        logger.info(f"User attention required: {explanation}")
        wait = self.config.loop.attention_wait_seconds

        if variant.is_auth_step:
            logger.info(f"Authentication step detected, waiting {wait:g}s for user authentication...")
            await state.timer.sleep(f"cycle-{entry.cycle}:auth", wait)
            logger.warning("Authentication timeout reached, triggering human intervention...")
            self._escalate(state, entry, EscalationKind.AUTH_TIMEOUT, variant.explanation)
            state.fail(
                ExitKind.ATTENTION_TIMEOUT,
                f"Authentication attention timed out: {explanation}",
            )
            return

        max_retries = self.config.loop.max_attention_retries
        if state.attention_retries < max_retries:
            logger.info(
                f"Waiting {wait:g}s before retry "
                f"(attempt {state.attention_retries + 1}/{max_retries})..."
            )
            await state.timer.sleep(f"cycle-{entry.cycle}:attention", wait)
            state.attention_retries += 1
            self._checkpoint(state, {**(state.pending or {}), "phase": PHASE_PAUSE})
            logger.info("Retrying after user attention wait...")
            return

        logger.warning("Maximum user attention retries reached, triggering human intervention...")
        self._escalate(state, entry, EscalationKind.ATTENTION, explanation)
        state.fail(
            ExitKind.ATTENTION_TIMEOUT,
            f"User attention timeout after {state.attention_retries} retries: {explanation}",
        )

    async def _on_step_completed(self, state: LoopState, entry: CycleEntry, variant: ResponseVariant) -> None:
        logger.info(f"Step {variant.step_number or 'unknown'} completed successfully")
        if is_session_save_step(entry):
            await self._sessions.save(entry, state.params.site_id)
        state.attention_retries = 0

    async def _on_step_outcome(self, state: LoopState, entry: CycleEntry, variant: ResponseVariant) -> None:
        outcome = "failed" if variant.type is ResponseType.STEP_FAILED else "canceled"
        logger.info(f"Step {variant.step_number or 'unknown'} {outcome}")
        state.attention_retries = 0

    def _escalate(
        self,
        state: LoopState,
        entry: CycleEntry,
        kind: EscalationKind,
        detail: str | None,
    ) -> None:
        """Spawn at most one escalation per run. Never raises."""
        if state.escalated:
            logger.debug("Escalation already dispatched for this run, skipping")
            return
        state.escalated = True
        if self._dispatcher is None:
            logger.warning(f"No escalation task configured, cannot escalate {kind.name}")
            return
        try:
            request = build_escalation(
                kind,
                state.params,
                entry.cycle,
                detail,
                config=self.config.escalation,
                wait_seconds=self.config.loop.attention_wait_seconds,
            )
        except Exception as e:
            logger.error(f"Failed to build escalation request: {e}")
            return
        self._dispatcher.dispatch(request)
