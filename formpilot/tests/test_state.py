"""Tests for the session automation state store."""

import asyncio
import threading
from datetime import datetime, timedelta

import pytest

from formpilot.models import Task, TaskKind
from formpilot.state import AutomationStateStore, AutomationStatus


def make_task(name="Passport Renewal"):
    return Task(
        name=name,
        kind=TaskKind.PRERECORDED,
        target_url="https://a.gov",
        steps=[
            {"id": "1", "action": "visit", "target": "https://a.gov"},
            {"id": "2", "action": "click", "target": "#go"},
        ],
    )


class TestAutomationStateStore:
    """Test cases for AutomationStateStore transitions."""

    def test_get_absent_session(self):
        """Unknown sessions have no record until created."""
        store = AutomationStateStore()
        assert store.get("s1") is None
        state = store.get_or_create("s1")
        assert state.status == AutomationStatus.IDLE
        assert store.get("s1") is state

    def test_start_run_resets_to_running(self):
        """start_run replaces any prior record with Running at step 0."""
        store = AutomationStateStore()
        run_id = store.start_run("s1", make_task())
        state = store.get("s1")
        assert state.status == AutomationStatus.RUNNING
        assert state.current_step_index == 0
        assert state.run_id == run_id
        assert state.failure_message is None

    def test_advance_records_index_and_screenshot(self):
        """advance stores the index and keeps the last screenshot when none is given."""
        store = AutomationStateStore()
        run_id = store.start_run("s1", make_task())
        assert store.advance("s1", 1, b"img", run_id=run_id)
        assert store.advance("s1", 1, None, run_id=run_id)
        state = store.get("s1")
        assert state.current_step_index == 1
        assert state.last_screenshot == b"img"

    def test_waiting_round_trip(self):
        """mark_waiting and clear_waiting toggle the pending prompt."""
        store = AutomationStateStore()
        run_id = store.start_run("s1", make_task())
        store.advance("s1", 1, run_id=run_id)
        assert store.mark_waiting("s1", "Enter OTP", "otp", run_id=run_id)
        state = store.get("s1")
        assert state.status == AutomationStatus.WAITING_FOR_INPUT
        assert state.pending_prompt.response_key == "otp"

        assert store.clear_waiting("s1", run_id=run_id)
        state = store.get("s1")
        assert state.status == AutomationStatus.RUNNING
        assert state.pending_prompt is None
        assert state.current_step_index == 1

    def test_advance_not_allowed_while_waiting(self):
        """Only a running record can advance."""
        store = AutomationStateStore()
        run_id = store.start_run("s1", make_task())
        store.mark_waiting("s1", "Enter OTP", "otp", run_id=run_id)
        assert not store.advance("s1", 1, run_id=run_id)

    def test_terminal_states_are_final(self):
        """Completed and Failed only leave through start_run or the reset."""
        store = AutomationStateStore()
        run_id = store.start_run("s1", make_task())
        assert store.mark_completed("s1", run_id=run_id)
        assert not store.advance("s1", 1, run_id=run_id)
        assert not store.mark_waiting("s1", "p", "k", run_id=run_id)
        assert store.get("s1").status == AutomationStatus.COMPLETED
        assert store.get("s1").finished_at is not None

    def test_mark_failed_refines_own_message(self):
        """A failed run may refine its own failure message, never another run's."""
        store = AutomationStateStore()
        run_id = store.start_run("s1", make_task())
        assert store.mark_failed("s1", "User input timeout", run_id=run_id)
        assert store.mark_failed("s1", "Step 2 failed: User input timeout", run_id=run_id)
        assert store.get("s1").failure_message == "Step 2 failed: User input timeout"
        assert not store.mark_failed("s1", "other", run_id="someone-else")

    def test_stale_run_cannot_mutate_successor(self):
        """Mutations carrying a superseded run id are ignored."""
        store = AutomationStateStore()
        old_run = store.start_run("s1", make_task("Old"))
        new_run = store.start_run("s1", make_task("New"))

        assert not store.advance("s1", 1, run_id=old_run)
        assert not store.mark_failed("s1", "boom", run_id=old_run)
        assert not store.mark_completed("s1", run_id=old_run)
        assert not store.is_current_run("s1", old_run)
        assert store.is_current_run("s1", new_run)
        assert store.get("s1").task.name == "New"

    def test_mutating_unknown_session_is_noop(self):
        """Mutations on an absent record do nothing."""
        store = AutomationStateStore()
        assert not store.advance("ghost", 1)
        assert not store.mark_failed("ghost", "x")
        assert store.get("ghost") is None

    def test_reset_expired_returns_terminal_records_to_idle(self):
        """Finished records older than the grace period go back to Idle."""
        store = AutomationStateStore(reset_grace_seconds=60)
        done_run = store.start_run("done", make_task())
        store.mark_completed("done", run_id=done_run)
        store.start_run("busy", make_task())

        assert store.reset_expired() == 0
        later = datetime.now() + timedelta(seconds=61)
        assert store.reset_expired(now=later) == 1
        assert store.get("done").status == AutomationStatus.IDLE
        assert store.get("done").task is None
        assert store.get("busy").status == AutomationStatus.RUNNING

    def test_remove(self):
        """remove drops the record entirely."""
        store = AutomationStateStore()
        store.start_run("s1", make_task())
        store.remove("s1")
        assert store.get("s1") is None

    def test_polling_unknown_sessions_allocates_no_locks(self):
        """Reads and rejected mutations for absent ids leave no locks behind."""
        store = AutomationStateStore()
        for i in range(1000):
            assert store.get(f"unknown-{i}") is None
            assert not store.advance(f"unknown-{i}", 1)
            assert not store.mark_failed(f"unknown-{i}", "x")
        assert store._locks == {}

    def test_locks_released_on_reset_and_remove(self):
        """Idle and removed sessions hold no lock until their next run."""
        store = AutomationStateStore(reset_grace_seconds=0)
        run_id = store.start_run("done", make_task())
        store.mark_completed("done", run_id=run_id)
        store.start_run("gone", make_task())
        assert set(store._locks) == {"done", "gone"}

        store.reset_expired(now=datetime.now() + timedelta(seconds=1))
        store.remove("gone")
        assert store._locks == {}
        assert store.get("done").status == AutomationStatus.IDLE

        new_run = store.start_run("done", make_task())
        assert store.advance("done", 1, run_id=new_run)
        assert set(store._locks) == {"done"}

    def test_remove_while_lock_held(self):
        """A removal racing a writer never leaves two locks for one session."""
        store = AutomationStateStore()
        store.start_run("s1", make_task())
        held = store._locks["s1"]
        held.acquire()

        remover = threading.Thread(target=store.remove, args=("s1",))
        remover.start()
        remover.join(0.05)
        # The removal waits for the holder instead of dropping the lock under it
        assert remover.is_alive()
        assert store._locks["s1"] is held

        held.release()
        remover.join()
        assert store.get("s1") is None
        assert "s1" not in store._locks

    def test_attach_screenshot_keeps_step_index(self):
        """A screenshot-only update leaves the index and stale runs alone."""
        store = AutomationStateStore()
        run_id = store.start_run("s1", make_task())
        store.advance("s1", 1, b"before", run_id=run_id)
        assert store.attach_screenshot("s1", b"after", run_id=run_id)
        assert not store.attach_screenshot("s1", b"stale", run_id="other-run")

        state = store.get("s1")
        assert state.current_step_index == 1
        assert state.last_screenshot == b"after"

    def test_to_dict_excludes_screenshot(self):
        """Snapshots serialize without binary data."""
        store = AutomationStateStore()
        run_id = store.start_run("s1", make_task())
        store.advance("s1", 0, b"img", run_id=run_id)
        data = store.get("s1").to_dict()
        assert data["status"] == "running"
        assert "last_screenshot" not in data
        assert data["task"]["name"] == "Passport Renewal"

    @pytest.mark.asyncio
    async def test_background_reset(self):
        """The cleanup loop resets finished records on its own."""
        store = AutomationStateStore(reset_grace_seconds=0, cleanup_interval=0.02)
        run_id = store.start_run("s1", make_task())
        store.mark_failed("s1", "boom", run_id=run_id)
        await store.start_cleanup()
        try:
            await asyncio.sleep(0.1)
        finally:
            await store.stop_cleanup()
        assert store.get("s1").status == AutomationStatus.IDLE
