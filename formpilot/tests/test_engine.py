"""Tests for the step execution engine."""

import asyncio

import pytest

from formpilot.broker import InputBroker
from formpilot.engine import StepExecutionEngine
from formpilot.errors import TargetError
from formpilot.models import Task, TaskKind
from formpilot.session_data import SessionDataStore
from formpilot.state import AutomationStateStore, AutomationStatus

pytestmark = pytest.mark.asyncio

PORTAL = "https://portal.example.gov"


def make_task(steps, name="Passport Renewal"):
    return Task(name=name, kind=TaskKind.PRERECORDED, target_url=PORTAL, steps=steps)


class EngineHarness:
    """Engine wired to in-memory stores and a recording driver factory."""

    def __init__(self, driver_cls, step_timeout=1.0, input_timeout=1.0, **driver_kwargs):
        self.store = AutomationStateStore()
        self.broker = InputBroker(self.store)
        self.session_data = SessionDataStore()
        self.drivers = []
        self.driver_kwargs = driver_kwargs
        self.driver_cls = driver_cls
        self.engine = StepExecutionEngine(
            self.store,
            self.broker,
            self.factory,
            session_data=self.session_data,
            step_timeout=step_timeout,
            input_timeout=input_timeout,
            placeholder_delay=0,
        )

    def factory(self):
        driver = self.driver_cls(**self.driver_kwargs)
        self.drivers.append(driver)
        return driver

    async def run(self, task, user_data=None, session_id="s1"):
        run_id = self.store.start_run(session_id, task)
        await self.engine.run(session_id, task, user_data or {}, run_id)
        return run_id

    async def wait_for_prompt(self, session_id="s1"):
        for _ in range(200):
            if self.broker.has_pending(session_id):
                return
            await asyncio.sleep(0.005)
        raise AssertionError("run never asked for input")


class TestStepExecutionEngine:
    """Test cases for StepExecutionEngine runs."""

    async def test_full_run_with_prompt(self, fake_driver_cls):
        """A run pauses for input, substitutes the answer and completes."""
        harness = EngineHarness(fake_driver_cls)
        task = make_task(
            [
                {"id": "1", "action": "visit", "target": PORTAL},
                {"id": "2", "action": "fill", "target": "#name", "value": "{firstName} {lastName}"},
                {"id": "3", "action": "prompt_user", "promptText": "Enter OTP", "responseKey": "otp"},
                {"id": "4", "action": "fill", "target": "#otp", "value": "{otp}"},
                {"id": "5", "action": "click", "target": "text=Submit"},
            ]
        )
        run_id = harness.store.start_run("s1", task)
        run = asyncio.create_task(
            harness.engine.run("s1", task, {"firstName": "Asha", "lastName": "Rao"}, run_id)
        )

        await harness.wait_for_prompt()
        state = harness.store.get("s1")
        assert state.status == AutomationStatus.WAITING_FOR_INPUT
        assert state.current_step_index == 2
        assert state.pending_prompt.prompt == "Enter OTP"

        assert harness.broker.deliver("s1", "998877")
        await run

        state = harness.store.get("s1")
        assert state.status == AutomationStatus.COMPLETED
        assert state.current_step_index == 4
        assert state.last_screenshot == b"fake-png"

        driver = harness.drivers[0]
        assert driver.calls == [
            ("navigate", PORTAL),
            ("fill", "#name", "Asha Rao"),
            ("fill", "#otp", "998877"),
            ("click", "text=Submit"),
        ]
        assert driver.closed
        assert harness.session_data.get("s1") == {"otp": "998877"}

    async def test_failure_reports_step_number(self, fake_driver_cls):
        """A target error on the third step fails the run with its number."""
        harness = EngineHarness(
            fake_driver_cls, fail_on={"#missing": TargetError("locator not found")}
        )
        task = make_task(
            [
                {"id": "1", "action": "visit", "target": PORTAL},
                {"id": "2", "action": "click", "target": "#ok"},
                {"id": "3", "action": "click", "target": "#missing"},
                {"id": "4", "action": "click", "target": "#never"},
            ]
        )
        await harness.run(task)

        state = harness.store.get("s1")
        assert state.status == AutomationStatus.FAILED
        assert state.current_step_index == 2
        assert state.failure_message == "Step 3 failed: locator not found"
        driver = harness.drivers[0]
        assert ("click", "#never") not in driver.calls
        assert driver.closed

    async def test_unexpected_driver_error_is_target_error(self, fake_driver_cls):
        """Arbitrary driver exceptions are reported verbatim."""
        harness = EngineHarness(fake_driver_cls, fail_on={PORTAL: RuntimeError("net::ERR_NAME")})
        await harness.run(make_task([{"id": "1", "action": "visit", "target": PORTAL}]))
        assert harness.store.get("s1").failure_message == "Step 1 failed: net::ERR_NAME"

    async def test_slow_action_times_out(self, fake_driver_cls):
        """A driver action over the step bound fails as a timeout."""
        harness = EngineHarness(fake_driver_cls, step_timeout=0.05, delays={"#slow": 1.0})
        await harness.run(
            make_task(
                [
                    {"id": "1", "action": "visit", "target": PORTAL},
                    {"id": "2", "action": "click", "target": "#slow"},
                ]
            )
        )
        state = harness.store.get("s1")
        assert state.status == AutomationStatus.FAILED
        assert state.failure_message.startswith("Step 2 failed: Timed out")
        assert harness.drivers[0].closed

    async def test_input_timeout_keeps_step_index(self, fake_driver_cls):
        """An unanswered prompt fails the run at the prompting step."""
        harness = EngineHarness(fake_driver_cls, input_timeout=0.05)
        await harness.run(
            make_task(
                [
                    {"id": "1", "action": "visit", "target": PORTAL},
                    {"id": "2", "action": "prompt_user", "description": "Enter OTP"},
                    {"id": "3", "action": "click", "target": "#next"},
                ]
            )
        )
        state = harness.store.get("s1")
        assert state.status == AutomationStatus.FAILED
        assert "timeout" in state.failure_message.lower()
        assert state.failure_message.startswith("Step 2 failed")
        assert state.current_step_index == 1
        assert state.pending_prompt is None

    async def test_driver_start_failure(self, fake_driver_cls):
        """A browser that cannot start fails the run and is still released."""
        harness = EngineHarness(fake_driver_cls, fail_start=RuntimeError("no browser"))
        await harness.run(make_task([{"id": "1", "action": "visit", "target": PORTAL}]))
        state = harness.store.get("s1")
        assert state.status == AutomationStatus.FAILED
        assert "no browser" in state.failure_message
        assert harness.drivers[0].closed

    async def test_driver_factory_failure(self):
        """A factory error fails the run before any step."""
        store = AutomationStateStore()

        def broken_factory():
            raise RuntimeError("playwright missing")

        engine = StepExecutionEngine(store, InputBroker(store), broken_factory)
        task = make_task([{"id": "1", "action": "visit", "target": PORTAL}])
        run_id = store.start_run("s1", task)
        await engine.run("s1", task, {}, run_id)
        assert store.get("s1").failure_message == "Could not start browser: playwright missing"

    async def test_screenshot_failure_is_ignored(self, fake_driver_cls):
        """Missing screenshots never fail a run."""
        harness = EngineHarness(fake_driver_cls, screenshot_data=None)
        await harness.run(make_task([{"id": "1", "action": "click", "target": "#a"}]))
        state = harness.store.get("s1")
        assert state.status == AutomationStatus.COMPLETED
        assert state.last_screenshot is None

    async def test_placeholder_actions_succeed(self, fake_driver_cls):
        """read, verify and upload only wait."""
        harness = EngineHarness(fake_driver_cls)
        await harness.run(
            make_task(
                [
                    {"id": "1", "action": "read", "description": "Read status"},
                    {"id": "2", "action": "verify", "description": "Check result"},
                    {"id": "3", "action": "upload", "description": "Attach proof"},
                ]
            )
        )
        assert harness.store.get("s1").status == AutomationStatus.COMPLETED
        assert harness.drivers[0].calls == []

    async def test_relative_visit_uses_substituted_value(self, fake_driver_cls):
        """A visit without an absolute target navigates to its substituted value."""
        harness = EngineHarness(fake_driver_cls)
        await harness.run(
            make_task([{"id": "1", "action": "visit", "target": "portal", "value": "{portalUrl}"}]),
            user_data={"portalUrl": "https://other.gov/apply"},
        )
        assert harness.drivers[0].calls == [("navigate", "https://other.gov/apply")]

    async def test_empty_task_completes(self, fake_driver_cls):
        """A task without steps completes immediately."""
        harness = EngineHarness(fake_driver_cls)
        await harness.run(make_task([]))
        assert harness.store.get("s1").status == AutomationStatus.COMPLETED

    async def test_superseded_run_stops_silently(self, fake_driver_cls):
        """A newer run replaces a waiting one without being clobbered by it."""
        harness = EngineHarness(fake_driver_cls)
        old_task = make_task(
            [
                {"id": "1", "action": "prompt_user", "description": "Enter OTP"},
                {"id": "2", "action": "click", "target": "#old"},
            ],
            name="Old",
        )
        old_run = harness.store.start_run("s1", old_task)
        old = asyncio.create_task(harness.engine.run("s1", old_task, {}, old_run))
        await harness.wait_for_prompt()

        harness.broker.cancel("s1")
        new_task = make_task([{"id": "1", "action": "click", "target": "#new"}], name="New")
        new_run = harness.store.start_run("s1", new_task)
        await old

        state = harness.store.get("s1")
        assert state.run_id == new_run
        assert state.status == AutomationStatus.RUNNING
        assert state.failure_message is None
        assert harness.drivers[0].closed
        assert ("click", "#old") not in harness.drivers[0].calls

        await harness.engine.run("s1", new_task, {}, new_run)
        assert harness.store.get("s1").status == AutomationStatus.COMPLETED
        assert harness.drivers[1].calls == [("click", "#new")]

    async def test_stops_at_step_boundary_when_record_removed(self, fake_driver_cls):
        """Removing the session record stops the run before its next step."""
        harness = EngineHarness(fake_driver_cls, delays={"#first": 0.05})
        task = make_task(
            [
                {"id": "1", "action": "click", "target": "#first"},
                {"id": "2", "action": "click", "target": "#second"},
            ]
        )
        run_id = harness.store.start_run("s1", task)
        run = asyncio.create_task(harness.engine.run("s1", task, {}, run_id))
        await asyncio.sleep(0.01)
        harness.store.remove("s1")
        await run

        assert harness.drivers[0].calls == [("click", "#first")]
        assert harness.store.get("s1") is None
        assert harness.drivers[0].closed

    async def test_concurrent_sessions_are_isolated(self, fake_driver_cls):
        """Runs for different sessions do not share drivers or state."""
        harness = EngineHarness(fake_driver_cls)
        task = make_task([{"id": "1", "action": "fill", "target": "#n", "value": "{name}"}])
        await asyncio.gather(
            harness.run(task, {"name": "A"}, session_id="a"),
            harness.run(task, {"name": "B"}, session_id="b"),
        )
        fills = sorted(call[2] for driver in harness.drivers for call in driver.calls)
        assert fills == ["A", "B"]
        assert len(harness.drivers) == 2
        assert harness.store.get("a").status == AutomationStatus.COMPLETED
        assert harness.store.get("b").status == AutomationStatus.COMPLETED

    async def test_advances_each_step_in_order(self, fake_driver_cls):
        """Three steps produce exactly three advances, 0, 1 and 2."""
        harness = EngineHarness(fake_driver_cls)
        advances = []
        original_advance = harness.store.advance

        def recording_advance(session_id, step_index, screenshot=None, run_id=None):
            advances.append(step_index)
            return original_advance(session_id, step_index, screenshot, run_id=run_id)

        harness.store.advance = recording_advance
        task = make_task(
            [
                {"id": "1", "action": "visit", "target": "https://x"},
                {"id": "2", "action": "fill", "target": "#name", "value": "{fullName}"},
                {"id": "3", "action": "click", "target": "#submit"},
            ]
        )
        await harness.run(task, {"fullName": "Alex"})

        assert advances == [0, 1, 2]
        state = harness.store.get("s1")
        assert state.status == AutomationStatus.COMPLETED
        assert state.current_step_index == 2
        assert harness.drivers[0].calls[1] == ("fill", "#name", "Alex")

    async def test_completed_run_shows_final_page(self, fake_driver_cls):
        """The last screenshot is taken after the final step ran."""

        class PageDriver(fake_driver_cls):
            async def screenshot(self):
                if not self.calls:
                    return b"blank"
                return f"after-{self.calls[-1][1]}".encode()

        harness = EngineHarness(PageDriver)
        task = make_task(
            [
                {"id": "1", "action": "visit", "target": "https://x"},
                {"id": "2", "action": "fill", "target": "#name", "value": "{fullName}"},
                {"id": "3", "action": "click", "target": "#submit"},
            ]
        )
        await harness.run(task, {"fullName": "Alex"})

        state = harness.store.get("s1")
        assert state.status == AutomationStatus.COMPLETED
        assert state.current_step_index == 2
        assert state.last_screenshot == b"after-#submit"
