"""Agent response classification.

Maps the free-form text and loosely structured flags the remote agent
returns on each act call into one of a fixed set of response variants:

- plan_failed(reason)        "plan failed: <reason>" or plan_failed flag
- new_plan                   "new plan" or new_plan_required flag
- session_needed(platform?, domain?)
                             "session needed <platform> [<domain>]"
- user_attention(explanation, is_auth_step)
                             "user attention required: <explanation>"
- new_session(platform?, domain?)
                             "new <platform> session acquired"
- step_completed / step_failed / step_canceled (step_number?)
                             "[step N] finished|failed|canceled"
- unclassified               anything else

Classification is pure: no I/O, no logging, no mutation of the input.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping


class ResponseType(Enum):
    PLAN_FAILED = "plan_failed"
    NEW_PLAN = "new_plan"
    NEW_SESSION = "new_session"
    SESSION_NEEDED = "session_needed"
    USER_ATTENTION = "user_attention"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_CANCELED = "step_canceled"
    UNCLASSIFIED = "unclassified"


STEP_OUTCOMES = frozenset({
    ResponseType.STEP_COMPLETED,
    ResponseType.STEP_FAILED,
    ResponseType.STEP_CANCELED,
})

AUTH_STEP_TYPE = "authentication"


@dataclass(frozen=True)
class ResponseVariant:
    """Tagged classification result. Only the fields of ``type`` are set."""

    type: ResponseType
    reason: str | None = None
    platform: str | None = None
    domain: str | None = None
    explanation: str | None = None
    is_auth_step: bool = False
    step_number: int | None = None

    @property
    def is_step_outcome(self) -> bool:
        return self.type in STEP_OUTCOMES

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "reason": self.reason,
            "platform": self.platform,
            "domain": self.domain,
            "explanation": self.explanation,
            "is_auth_step": self.is_auth_step,
            "step_number": self.step_number,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ResponseVariant:
        return cls(
            type=ResponseType(data.get("type", "unclassified")),
            reason=data.get("reason"),
            platform=data.get("platform"),
            domain=data.get("domain"),
            explanation=data.get("explanation"),
            is_auth_step=bool(data.get("is_auth_step", False)),
            step_number=data.get("step_number"),
        )


UNCLASSIFIED = ResponseVariant(ResponseType.UNCLASSIFIED)

_PLAN_FAILED_RE = re.compile(r"plan\s+failed:\s*(.+)", re.IGNORECASE | re.DOTALL)
_NEW_PLAN_RE = re.compile(r"\bnew\s+plan\b", re.IGNORECASE)
_SESSION_NEEDED_RE = re.compile(r"session\s+needed\s+(\w+)(?:\s+(\S+))?", re.IGNORECASE)
_USER_ATTENTION_RE = re.compile(r"user\s+attention\s+required:\s*(.+)", re.IGNORECASE | re.DOTALL)
_NEW_SESSION_RE = re.compile(r"new\s+(\w+)\s+session\s+acquired", re.IGNORECASE)
_STEP_OUTCOME_RE = re.compile(
    r"(?:step\s+(\d+)\s+)?\b(finished|failed|canceled|cancelled)\b",
    re.IGNORECASE,
)

_OUTCOME_WORDS = {
    "finished": ResponseType.STEP_COMPLETED,
    "failed": ResponseType.STEP_FAILED,
    "canceled": ResponseType.STEP_CANCELED,
    "cancelled": ResponseType.STEP_CANCELED,
}

_STEP_STATUSES = {
    "completed": ResponseType.STEP_COMPLETED,
    "finished": ResponseType.STEP_COMPLETED,
    "failed": ResponseType.STEP_FAILED,
    "canceled": ResponseType.STEP_CANCELED,
    "cancelled": ResponseType.STEP_CANCELED,
}


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _step_number(step: Mapping[str, Any] | None) -> int | None:
    if not step:
        return None
    try:
        return int(step["order"])
    except (KeyError, TypeError, ValueError):
        return None


def _classify_flags(data: Mapping[str, Any], text: str, is_auth_step: bool) -> ResponseVariant | None:
    """Structured flags on the act data, highest precedence first."""
    if data.get("plan_failed"):
        reason = _clean(data.get("failure_reason"))
        if reason is None:
            match = _PLAN_FAILED_RE.search(text)
            reason = _clean(match.group(1)) if match else None
        return ResponseVariant(ResponseType.PLAN_FAILED, reason=reason)

    if data.get("new_plan_required"):
        return ResponseVariant(ResponseType.NEW_PLAN)

    if data.get("session_needed"):
        request = data.get("session_request")
        request = request if isinstance(request, Mapping) else {}
        return ResponseVariant(
            ResponseType.SESSION_NEEDED,
            platform=_clean(request.get("platform")),
            domain=_clean(request.get("domain")),
        )

    if data.get("user_attention_required"):
        info = data.get("user_attention_info")
        if isinstance(info, Mapping):
            explanation = _clean(info.get("explanation") or info.get("message"))
        else:
            explanation = _clean(info)
        return ResponseVariant(
            ResponseType.USER_ATTENTION,
            explanation=explanation or _clean(text),
            is_auth_step=is_auth_step,
        )

    if data.get("new_session"):
        info = data.get("new_session_info")
        info = info if isinstance(info, Mapping) else {}
        return ResponseVariant(
            ResponseType.NEW_SESSION,
            platform=_clean(info.get("platform")),
            domain=_clean(info.get("domain")),
        )

    return None


def _classify_text(text: str, is_auth_step: bool) -> ResponseVariant | None:
    if not text:
        return None

    # "plan failed: x" must win over the bare "failed" step outcome.
    match = _PLAN_FAILED_RE.search(text)
    if match:
        return ResponseVariant(ResponseType.PLAN_FAILED, reason=_clean(match.group(1)))

    match = _USER_ATTENTION_RE.search(text)
    if match:
        return ResponseVariant(
            ResponseType.USER_ATTENTION,
            explanation=_clean(match.group(1)),
            is_auth_step=is_auth_step,
        )

    match = _SESSION_NEEDED_RE.search(text)
    if match:
        return ResponseVariant(
            ResponseType.SESSION_NEEDED,
            platform=match.group(1),
            domain=match.group(2),
        )

    match = _NEW_SESSION_RE.search(text)
    if match:
        return ResponseVariant(ResponseType.NEW_SESSION, platform=match.group(1))

    if _NEW_PLAN_RE.search(text):
        return ResponseVariant(ResponseType.NEW_PLAN)

    match = _STEP_OUTCOME_RE.search(text)
    if match:
        number = int(match.group(1)) if match.group(1) else None
        return ResponseVariant(_OUTCOME_WORDS[match.group(2).lower()], step_number=number)

    return None


def classify_response(payload: str | Mapping[str, Any] | None) -> ResponseVariant:
    """Classify an agent response.

    ``payload`` is either the bare agent text or the act result's data
    mapping (``agent_response``/``message``, ``step`` and the optional
    status flags). Structured flags take precedence over text patterns;
    the step's own status is the last resort before ``unclassified``.
    """
    if payload is None:
        return UNCLASSIFIED

    if isinstance(payload, str):
        return _classify_text(payload, is_auth_step=False) or UNCLASSIFIED

    if not isinstance(payload, Mapping):
        return _classify_text(str(payload), is_auth_step=False) or UNCLASSIFIED

    text = str(payload.get("agent_response") or payload.get("message") or "")
    step = payload.get("step")
    step = step if isinstance(step, Mapping) else None
    is_auth_step = bool(step and step.get("type") == AUTH_STEP_TYPE)

    variant = _classify_flags(payload, text, is_auth_step) or _classify_text(text, is_auth_step)
    if variant is not None:
        if variant.is_step_outcome and variant.step_number is None:
            number = _step_number(step)
            if number is not None:
                variant = ResponseVariant(variant.type, step_number=number)
        return variant

    if step:
        status_type = _STEP_STATUSES.get(str(step.get("status") or "").lower())
        if status_type is not None:
            return ResponseVariant(status_type, step_number=_step_number(step))

    return UNCLASSIFIED
