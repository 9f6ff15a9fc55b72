"""Tests for robotloop.responses: agent response classification."""

import pytest

from robotloop.responses import (
    UNCLASSIFIED,
    ResponseType,
    ResponseVariant,
    classify_response,
)


class TestTextPatterns:
    """Free-form agent text."""

    def test_plan_failed_with_reason(self):
        variant = classify_response("Plan failed: the login form changed")
        assert variant.type is ResponseType.PLAN_FAILED
        assert variant.reason == "the login form changed"

    def test_plan_failed_wins_over_step_failed(self):
        variant = classify_response("step 2 failed. plan failed: no retries left")
        assert variant.type is ResponseType.PLAN_FAILED
        assert variant.reason == "no retries left"

    def test_new_plan(self):
        assert classify_response("A new plan is required").type is ResponseType.NEW_PLAN

    def test_new_session_with_platform(self):
        variant = classify_response("New linkedin session acquired")
        assert variant.type is ResponseType.NEW_SESSION
        assert variant.platform == "linkedin"

    def test_session_needed_with_platform_and_domain(self):
        variant = classify_response("session needed linkedin linkedin.com")
        assert variant.type is ResponseType.SESSION_NEEDED
        assert variant.platform == "linkedin"
        assert variant.domain == "linkedin.com"

    def test_session_needed_without_domain(self):
        variant = classify_response("session needed facebook")
        assert variant.platform == "facebook"
        assert variant.domain is None

    def test_user_attention(self):
        variant = classify_response("User attention required: approve the message draft")
        assert variant.type is ResponseType.USER_ATTENTION
        assert variant.explanation == "approve the message draft"
        assert variant.is_auth_step is False

    @pytest.mark.parametrize("text,expected", [
        ("step 3 finished", ResponseType.STEP_COMPLETED),
        ("step 3 failed", ResponseType.STEP_FAILED),
        ("step 3 canceled", ResponseType.STEP_CANCELED),
        ("step 3 cancelled", ResponseType.STEP_CANCELED),
    ])
    def test_step_outcomes(self, text, expected):
        variant = classify_response(text)
        assert variant.type is expected
        assert variant.step_number == 3

    def test_step_outcome_without_number(self):
        variant = classify_response("finished")
        assert variant.type is ResponseType.STEP_COMPLETED
        assert variant.step_number is None

    @pytest.mark.parametrize("text", ["", "thinking...", "navigating to the dashboard"])
    def test_unclassified(self, text):
        assert classify_response(text) == UNCLASSIFIED

    def test_none_is_unclassified(self):
        assert classify_response(None) == UNCLASSIFIED


class TestStructuredFlags:
    """Flags on the act data take precedence over the text."""

    def test_plan_failed_flag_uses_failure_reason(self):
        variant = classify_response({
            "agent_response": "step 4 finished",
            "plan_failed": True,
            "failure_reason": "Verification rejected",
        })
        assert variant.type is ResponseType.PLAN_FAILED
        assert variant.reason == "Verification rejected"

    def test_new_plan_flag(self):
        variant = classify_response({"agent_response": "step 1 finished", "new_plan_required": True})
        assert variant.type is ResponseType.NEW_PLAN

    def test_session_needed_flag(self):
        variant = classify_response({
            "session_needed": True,
            "session_request": {"platform": "linkedin", "domain": "linkedin.com"},
        })
        assert variant.type is ResponseType.SESSION_NEEDED
        assert variant.platform == "linkedin"
        assert variant.domain == "linkedin.com"

    def test_user_attention_on_auth_step(self):
        variant = classify_response({
            "user_attention_required": True,
            "user_attention_info": {"explanation": "Log in to LinkedIn"},
            "step": {"order": 1, "status": "in_progress", "type": "authentication"},
        })
        assert variant.type is ResponseType.USER_ATTENTION
        assert variant.explanation == "Log in to LinkedIn"
        assert variant.is_auth_step is True

    def test_attention_text_on_auth_step(self):
        variant = classify_response({
            "agent_response": "user attention required: enter the 2FA code",
            "step": {"order": 2, "type": "authentication"},
        })
        assert variant.type is ResponseType.USER_ATTENTION
        assert variant.is_auth_step is True

    def test_new_session_flag(self):
        variant = classify_response({
            "new_session": True,
            "new_session_info": {"platform": "facebook", "domain": "facebook.com"},
        })
        assert variant.type is ResponseType.NEW_SESSION
        assert variant.domain == "facebook.com"

    def test_message_used_when_no_agent_response(self):
        variant = classify_response({"message": "step 5 finished"})
        assert variant.type is ResponseType.STEP_COMPLETED
        assert variant.step_number == 5


class TestStepFallbacks:
    """Step metadata fills in what the text leaves out."""

    def test_step_number_from_step_order(self):
        variant = classify_response({"agent_response": "finished", "step": {"order": 7}})
        assert variant.step_number == 7

    def test_step_status_when_text_is_silent(self):
        variant = classify_response({"agent_response": "ok", "step": {"order": 2, "status": "completed"}})
        assert variant.type is ResponseType.STEP_COMPLETED
        assert variant.step_number == 2

    def test_in_progress_step_is_unclassified(self):
        variant = classify_response({"agent_response": "ok", "step": {"order": 2, "status": "in_progress"}})
        assert variant == UNCLASSIFIED

    def test_malformed_step_is_ignored(self):
        variant = classify_response({"agent_response": "step finished", "step": "not a dict"})
        assert variant.type is ResponseType.STEP_COMPLETED


class TestPurity:
    def test_input_not_mutated(self):
        data = {"agent_response": "step 1 finished", "step": {"order": 1}}
        snapshot = {"agent_response": "step 1 finished", "step": {"order": 1}}
        classify_response(data)
        assert data == snapshot

    def test_same_input_same_output(self):
        data = {"user_attention_required": True, "user_attention_info": "check inbox"}
        assert classify_response(data) == classify_response(data)

    def test_variant_round_trips_through_dict(self):
        variant = ResponseVariant(ResponseType.SESSION_NEEDED, platform="linkedin", domain="linkedin.com")
        assert ResponseVariant.from_dict(variant.to_dict()) == variant
