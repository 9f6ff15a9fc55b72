"""Authentication session lifecycle during a plan run.

The remote agent may log in to a third-party platform mid-plan. The plan
itself then carries a ``session_save`` step; when that step completes the
acquired session is persisted through the session-save operation. Saving
is best effort: the session was already acquired, so a failed save never
fails the plan.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from robotloop.events import EVENT_SESSION_DETECTED, EVENT_SESSION_SAVED, EventCollector
from robotloop.models import CycleEntry, SessionSaveResult
from robotloop.responses import ResponseVariant

logger = logging.getLogger(__name__)

SESSION_SAVE_STEP_TYPE = "session_save"

SaveSession = Callable[[str, str], Awaitable[SessionSaveResult]]


def is_session_save_step(entry: CycleEntry) -> bool:
    return entry.step is not None and entry.step.type == SESSION_SAVE_STEP_TYPE


class SessionLifecycleHandler:
    """Detects new sessions and persists them when the save step completes."""

    def __init__(self, save_session: SaveSession | None, events: EventCollector | None = None):
        self._save_session = save_session
        self._events = events

    def on_new_session(self, entry: CycleEntry, variant: ResponseVariant) -> None:
        """Log detection only; the plan is expected to follow with a save step."""
        where = variant.platform or "unknown platform"
        if variant.domain:
            where += f" ({variant.domain})"
        logger.info(f"New session acquired on cycle {entry.cycle}: {where}")
        if entry.new_session_info:
            logger.debug(f"Session info: {entry.new_session_info}")
        if self._events:
            self._events.emit(
                EVENT_SESSION_DETECTED,
                f"New session acquired: {where}",
                cycle=entry.cycle,
                metadata={"platform": variant.platform, "domain": variant.domain},
            )

    def on_session_saved(self, entry: CycleEntry) -> None:
        """The remote agent reported the session as saved on its side."""
        info = entry.session_save_info or {}
        auth_session_id = info.get("auth_session_id")
        if auth_session_id:
            logger.info(f"Authentication session saved with ID: {auth_session_id}")
        else:
            logger.info(f"Session saved on cycle {entry.cycle}")

    async def save(self, entry: CycleEntry, site_id: str) -> bool:
        """Persist the session acquired by the instance behind ``entry``.

        Returns True when the save call succeeded. Never raises.
        """
        if self._save_session is None:
            logger.warning("No session-save operation configured, skipping session save")
            return False

        remote_instance_id = entry.remote_instance_id
        if not remote_instance_id:
            logger.error(f"No remote_instance_id available for session save on cycle {entry.cycle}")
            return False

        logger.info(f"Executing session save for remote instance {remote_instance_id}")
        try:
            result = await self._save_session(remote_instance_id, site_id)
        except Exception as e:
            logger.error(f"Failed to execute session save: {e}")
            return False

        if not result.success:
            logger.error(f"Session save rejected: {result.error or 'unknown error'}")
            return False

        logger.info("Session save completed successfully")
        if self._events:
            self._events.emit(
                EVENT_SESSION_SAVED,
                f"Session saved for remote instance {remote_instance_id}",
                cycle=entry.cycle,
                metadata={"remote_instance_id": remote_instance_id, "site_id": site_id},
            )
        return True
