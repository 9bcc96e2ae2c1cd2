"""
Tests for the SQLite run store.
"""

import sqlite3

import pytest

from browser_operator.memory import RunStore
from browser_operator.types import Goal, Run, RunStatus, StepRecord


@pytest.fixture
def store(tmp_path):
    store = RunStore(tmp_path / "operator.db")
    yield store
    store.close()


def finished_run(prompt, success, steps=0):
    run = Run(goal=Goal(user_prompt=prompt))
    for index in range(steps):
        run.steps.append(StepRecord(
            step_index=index,
            tool_call={"name": "scroll", "args": {}},
            result={"success": True},
            duration_ms=5,
            success=True,
        ))
    if success:
        run.finish(RunStatus.COMPLETED, final_result="ok", success=True)
    else:
        run.finish(RunStatus.FAILED, error="ActionError: nope")
    return run


class TestRuns:
    """Tests for run rows and statistics."""

    def test_save_run_upserts(self, store):
        run = Run(goal=Goal(user_prompt="Find the heading", start_url="https://example.com"))
        store.save_run(run)
        assert store.get_run(run.id)["status"] == "running"

        run.finish(RunStatus.TIMED_OUT, final_result="Stopped after 3 steps")
        store.save_run(run)
        saved = store.get_run(run.id)
        assert saved["status"] == "timedOut"
        assert saved["final_result"] == "Stopped after 3 steps"
        assert saved["start_url"] == "https://example.com"

    def test_stats(self, store):
        store.save_run(finished_run("a", True, steps=2))
        store.save_run(finished_run("b", False, steps=4))
        store.save_run(Run(goal=Goal(user_prompt="still going")))

        stats = store.stats()
        assert stats["total_runs"] == 2
        assert stats["successful_runs"] == 1
        assert stats["avg_steps"] == 3.0
        assert stats["success_rate"] == 0.5

    def test_empty_stats(self, store):
        assert store.stats() == {
            "total_runs": 0,
            "successful_runs": 0,
            "avg_steps": 0.0,
            "success_rate": 0.0,
        }

    def test_list_runs_by_status(self, store):
        store.save_run(finished_run("a", True))
        store.save_run(finished_run("b", False))
        failed = store.list_runs(status="failed")
        assert [r["goal"] for r in failed] == ["b"]
        assert len(store.list_runs()) == 2


class TestStepsAndEvents:
    def test_steps_in_order(self, store):
        run = finished_run("a", True, steps=3)
        store.save_run(run)
        for record in reversed(run.steps):
            store.append_step(run.id, record)
        assert [s["step_index"] for s in store.steps_for(run.id)] == [0, 1, 2]

    def test_duplicate_step_rejected(self, store):
        run = finished_run("a", True, steps=1)
        store.append_step(run.id, run.steps[0])
        with pytest.raises(sqlite3.IntegrityError):
            store.append_step(run.id, run.steps[0])

    def test_events_filtered(self, store):
        store.append_event("r1", "run_started", {"goal": "x"})
        store.append_event("r1", "reasoning_retry", {"attempt": 1})
        store.append_event("r2", "reasoning_retry", {"attempt": 1})

        retries = store.events_for("r1", "reasoning_retry")
        assert len(retries) == 1
        assert retries[0]["data"] == {"attempt": 1}
        assert len(store.events_for("r1")) == 2


class TestSelectorStats:
    """Tests for per-domain selector learning."""

    def test_best_selectors_ranked_by_success_rate(self, store):
        for _ in range(3):
            store.record_selector_outcome("example.com", "#search", True)
        store.record_selector_outcome("example.com", "text=\"Go\"", True)
        store.record_selector_outcome("example.com", "text=\"Go\"", False)
        store.record_selector_outcome("example.com", ".broken", False)
        store.record_selector_outcome("other.org", "#search", True)

        best = store.best_selectors("example.com")
        assert [b["selector"] for b in best] == ["#search", "text=\"Go\""]
        assert best[0]["success_count"] == 3
        assert best[0]["success_rate"] == pytest.approx(0.75)
        assert best[1]["failure_count"] == 1

    def test_limit(self, store):
        for i in range(5):
            store.record_selector_outcome("example.com", f"#s{i}", True)
        assert len(store.best_selectors("example.com", limit=2)) == 2

    def test_unknown_domain(self, store):
        assert store.best_selectors("nowhere.test") == []
