"""Execution finalizer: fold the cycle log into the run's final report."""

from __future__ import annotations

import logging
import math
from typing import Any, Iterable

from robotloop.models import (
    CycleEntry,
    ExitKind,
    FinalReport,
    PlanParams,
    PlanProgress,
    TokenUsage,
)

logger = logging.getLogger(__name__)


def _coerce_entry(item: Any) -> CycleEntry | None:
    if isinstance(item, CycleEntry):
        return item
    if isinstance(item, dict):
        try:
            return CycleEntry.from_dict(item)
        except Exception:
            return None
    return None


def _number(value: Any) -> float:
    try:
        number = float(value or 0)
    except (TypeError, ValueError, OverflowError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def finalize(
    params: PlanParams,
    cycles: Iterable[Any] | None,
    exit_kind: ExitKind,
    error: str | None = None,
    *,
    executed_at: str = "",
) -> FinalReport:
    """Assemble the FinalReport. Pure and total: never raises.

    Entries that are neither CycleEntry nor a cycle dict are skipped.
    """
    entries: list[CycleEntry] = []
    try:
        for item in cycles or ():
            entry = _coerce_entry(item)
            if entry is not None:
                entries.append(entry)
    except TypeError:
        entries = []

    total_time = 0.0
    input_tokens = 0
    output_tokens = 0
    for entry in entries:
        total_time += _number(entry.execution_time_ms)
        usage = entry.token_usage
        if isinstance(usage, TokenUsage):
            input_tokens += int(_number(usage.input_tokens))
            output_tokens += int(_number(usage.output_tokens))

    final_progress: PlanProgress | None = None
    if entries and isinstance(entries[-1].plan_progress, PlanProgress):
        final_progress = entries[-1].plan_progress

    success = exit_kind is ExitKind.COMPLETED
    if not success and not error:
        error = "Plan execution failed - check cycle log for details"

    return FinalReport(
        success=success,
        instance_id=getattr(params, "instance_id", "") or "",
        instance_plan_id=getattr(params, "instance_plan_id", None),
        exit_kind=exit_kind,
        cycles=tuple(entries),
        total_cycles=len(entries),
        final_progress=final_progress,
        total_execution_time_ms=total_time,
        total_token_usage=TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens),
        error=None if success else error,
        site_id=getattr(params, "site_id", "") or "",
        activity=getattr(params, "activity", "") or "",
        user_id=getattr(params, "user_id", None),
        executed_at=executed_at,
    )


def log_report(report: FinalReport) -> None:
    """Log the terminal summary of a run."""
    progress = report.final_progress or PlanProgress()
    logger.info(
        f"Run finished - State: {'SUCCESS' if report.success else 'FAILED'} "
        f"({report.exit_kind.value})"
    )
    if report.error:
        logger.info(f"Reason: {report.error}")
    logger.info(
        f"Total cycles: {report.total_cycles}, execution time: {report.total_execution_time_ms:.0f}ms, "
        f"tokens: {report.total_token_usage.total}, progress: "
        f"{progress.completed_steps}/{progress.total_steps} ({progress.percentage:g}%)"
    )
