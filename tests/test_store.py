"""Tests for robotloop.store: RunStore persistence layer."""

import pytest

from robotloop.finalizer import finalize
from robotloop.models import CycleEntry, ExitKind, PlanParams, StepInfo
from robotloop.store import RUN_STATUS_COMPLETED, RUN_STATUS_FAILED, RUN_STATUS_RUNNING


@pytest.fixture
def run_params():
    return PlanParams(site_id="site-1", activity="Outreach", instance_id="inst-1", user_id="u-1")


class TestRuns:
    """Run records and checkpoints."""

    def test_create_run(self, store, run_params):
        record = store.create_run("run-1", run_params)
        assert record.run_id == "run-1"
        assert record.status == RUN_STATUS_RUNNING
        assert record.attention_retries == 0
        assert record.pending is None
        assert record.params == run_params

    def test_get_nonexistent_run(self, store):
        assert store.get_run("missing") is None

    def test_update_run_rejects_invalid_columns(self, store, run_params):
        store.create_run("run-2", run_params)
        with pytest.raises(ValueError, match="Invalid run columns"):
            store.update_run("run-2", site_id="DROP TABLE")

    def test_checkpoint(self, store, run_params):
        store.create_run("run-3", run_params)
        pending = {"cycle": 4, "phase": "pause", "variant": {"type": "unclassified"}}
        store.save_checkpoint("run-3", instance_plan_id="plan-2", attention_retries=1, pending=pending)

        record = store.get_run("run-3")
        assert record.instance_plan_id == "plan-2"
        assert record.attention_retries == 1
        assert record.pending == pending

    def test_clear_checkpoint(self, store, run_params):
        store.create_run("run-4", run_params)
        store.save_checkpoint("run-4", instance_plan_id=None, attention_retries=0, pending={"cycle": 1})
        store.save_checkpoint("run-4", instance_plan_id=None, attention_retries=0, pending=None)
        assert store.get_run("run-4").pending is None

    def test_save_report_sets_status(self, store, run_params):
        store.create_run("run-ok", run_params)
        store.create_run("run-bad", run_params)
        store.save_report("run-ok", finalize(run_params, [], ExitKind.COMPLETED))
        store.save_report("run-bad", finalize(run_params, [], ExitKind.CAP_EXCEEDED, "cap"))

        ok = store.get_run("run-ok")
        bad = store.get_run("run-bad")
        assert ok.status == RUN_STATUS_COMPLETED
        assert ok.report["success"] is True
        assert bad.status == RUN_STATUS_FAILED
        assert bad.error == "cap"

    def test_list_runs_by_status(self, store, run_params):
        store.create_run("run-a", run_params)
        store.create_run("run-b", run_params)
        store.save_report("run-a", finalize(run_params, [], ExitKind.COMPLETED))
        runs = store.list_runs(status=RUN_STATUS_COMPLETED)
        assert [r.run_id for r in runs] == ["run-a"]
        assert len(store.list_runs()) == 2


class TestCycleLog:
    """Append-only cycle entries."""

    def test_append_and_read_back(self, store, run_params):
        store.create_run("run-1", run_params)
        entry = CycleEntry(
            cycle=1,
            response_type="step_completed",
            timestamp="t",
            step=StepInfo(id="s1", order=1, title="Open LinkedIn", status="completed", type="action"),
            remote_instance_id="remote-1",
        )
        store.append_cycle("run-1", entry)
        assert store.get_cycles("run-1") == [entry]

    def test_duplicate_cycle_rejected(self, store, run_params):
        store.create_run("run-1", run_params)
        entry = CycleEntry(cycle=1, response_type="unclassified", timestamp="t")
        store.append_cycle("run-1", entry)
        with pytest.raises(ValueError, match="already recorded"):
            store.append_cycle("run-1", entry)

    def test_append_with_checkpoint(self, store, run_params):
        store.create_run("run-1", run_params)
        pending = {"cycle": 1, "phase": "handle", "variant": {"type": "unclassified"}}
        entry = CycleEntry(cycle=1, response_type="unclassified", timestamp="t")
        store.append_cycle(
            "run-1",
            entry,
            checkpoint={"instance_plan_id": "plan-3", "attention_retries": 1, "pending": pending},
        )
        record = store.get_run("run-1")
        assert record.pending == pending
        assert record.instance_plan_id == "plan-3"
        assert record.attention_retries == 1

    def test_rejected_append_leaves_checkpoint(self, store, run_params):
        store.create_run("run-1", run_params)
        entry = CycleEntry(cycle=1, response_type="unclassified", timestamp="t")
        store.append_cycle("run-1", entry)
        with pytest.raises(ValueError, match="already recorded"):
            store.append_cycle(
                "run-1",
                entry,
                checkpoint={"instance_plan_id": None, "attention_retries": 0, "pending": {"cycle": 1}},
            )
        assert store.get_run("run-1").pending is None

    def test_cycles_ordered(self, store, run_params):
        store.create_run("run-1", run_params)
        for cycle in (2, 1, 3):
            store.append_cycle("run-1", CycleEntry(cycle=cycle, response_type="unclassified", timestamp="t"))
        assert [c.cycle for c in store.get_cycles("run-1")] == [1, 2, 3]


class TestTimers:
    def test_first_deadline_wins(self, store):
        assert store.timer_due_at("run-1", "cycle-1:interval", 100.0) == 100.0
        assert store.timer_due_at("run-1", "cycle-1:interval", 500.0) == 100.0

    def test_keys_are_per_run(self, store):
        store.timer_due_at("run-1", "cycle-1:interval", 100.0)
        assert store.timer_due_at("run-2", "cycle-1:interval", 200.0) == 200.0

    def test_mark_fired(self, store):
        store.timer_due_at("run-1", "cycle-1:attention", 100.0)
        assert store.get_timer("run-1", "cycle-1:attention")["fired_at"] is None
        store.mark_timer_fired("run-1", "cycle-1:attention")
        assert store.get_timer("run-1", "cycle-1:attention")["fired_at"] is not None

    def test_unknown_timer(self, store):
        assert store.get_timer("run-1", "nope") is None


class TestTimeline:
    def test_record_and_filter(self, store):
        store.record_event("run_started", "Started", run_id="run-1")
        store.record_event("cycle_recorded", "Cycle 1", run_id="run-1", cycle=1, metadata={"plan_failed": False})
        store.record_event("run_started", "Started", run_id="run-2")

        events = store.get_timeline(run_id="run-1")
        assert [e["event_type"] for e in events] == ["cycle_recorded", "run_started"]
        assert events[0]["metadata"] == {"plan_failed": False}
        assert events[0]["cycle"] == 1
        assert len(store.get_timeline(event_type="run_started")) == 2
