"""
Step Execution Engine

Drive a target through a task's steps in order, publishing progress to the
session state store and pausing on the input broker for human answers.
"""

import asyncio
import logging
from typing import Awaitable, Mapping, Optional

from .broker import InputBroker
from .drivers import Driver, DriverFactory
from .errors import AutomationError, RunSuperseded, StepTimeoutError, TargetError
from .models import (
    PLACEHOLDER_ACTIONS,
    Step,
    StepAction,
    Task,
    UserData,
    is_absolute_url,
    substitute_placeholders,
)
from .session_data import SessionDataStore
from .state import AutomationStateStore

DEFAULT_STEP_TIMEOUT = 30.0
DEFAULT_INPUT_TIMEOUT = 120.0
DEFAULT_PLACEHOLDER_DELAY = 0.5


class StepExecutionEngine:
    """
    Executes one run of a task against a freshly acquired driver.

    A run stops at the first failing step, when it is superseded by a newer
    run for the same session, or after its last step succeeds. There are no
    retries at this layer; a caller wanting a retry starts a new run.
    """

    def __init__(
        self,
        state_store: AutomationStateStore,
        broker: InputBroker,
        driver_factory: DriverFactory,
        session_data: Optional[SessionDataStore] = None,
        step_timeout: float = DEFAULT_STEP_TIMEOUT,
        input_timeout: float = DEFAULT_INPUT_TIMEOUT,
        placeholder_delay: float = DEFAULT_PLACEHOLDER_DELAY,
    ):
        """
        Initialize the engine.

        Args:
            state_store: Session state written as the run progresses
            broker: Broker used by prompt_user steps
            driver_factory: Creates one driver per run
            session_data: Optional cumulative user data store; prompt answers
                are merged into it
            step_timeout: Ceiling for each driver action (seconds)
            input_timeout: Ceiling for each human-input wait (seconds)
            placeholder_delay: Wait performed by read/verify/upload steps
        """
        self.logger = logging.getLogger(__name__)
        self._state = state_store
        self._broker = broker
        self._driver_factory = driver_factory
        self._session_data = session_data
        self.step_timeout = step_timeout
        self.input_timeout = input_timeout
        self.placeholder_delay = placeholder_delay

    async def run(
        self,
        session_id: str,
        task: Task,
        user_data: Mapping[str, str],
        run_id: str,
    ) -> None:
        """
        Execute the task's steps for a session.

        Args:
            session_id: Session that owns the run
            task: Task to execute
            user_data: UserData snapshot used for placeholder substitution
            run_id: Run id returned by AutomationStateStore.start_run
        """
        working_data: UserData = dict(user_data)
        self.logger.info(
            f"Session {session_id}: run {run_id} starting '{task.name}' "
            f"({task.kind.value}, {len(task.steps)} steps)"
        )

        try:
            driver = self._driver_factory()
        except Exception as e:
            self.logger.error(f"Session {session_id}: could not create driver: {e}")
            self._state.mark_failed(session_id, f"Could not start browser: {e}", run_id=run_id)
            return

        try:
            await driver.start()
        except Exception as e:
            self.logger.error(f"Session {session_id}: could not start driver: {e}")
            self._state.mark_failed(session_id, f"Could not start browser: {e}", run_id=run_id)
            await self._release(driver, session_id)
            return

        try:
            for index, step in enumerate(task.steps):
                if not self._state.is_current_run(session_id, run_id):
                    self.logger.info(
                        f"Session {session_id}: run {run_id} superseded before step {index + 1}"
                    )
                    return

                screenshot = await self._capture(driver, session_id)
                self._state.advance(session_id, index, screenshot, run_id=run_id)

                try:
                    await self._execute_step(driver, step, session_id, working_data, run_id)
                except RunSuperseded:
                    self.logger.info(
                        f"Session {session_id}: run {run_id} superseded during step {index + 1}"
                    )
                    return
                except Exception as e:
                    message = f"Step {index + 1} failed: {e}"
                    self.logger.error(f"Session {session_id}: {message}")
                    self._state.mark_failed(session_id, message, run_id=run_id)
                    return

            # Show pollers the page as the last step left it
            screenshot = await self._capture(driver, session_id)
            if screenshot is not None:
                self._state.attach_screenshot(session_id, screenshot, run_id=run_id)

            if self._state.mark_completed(session_id, run_id=run_id):
                self.logger.info(f"Session {session_id}: run {run_id} completed")
        finally:
            await self._release(driver, session_id)

    async def _execute_step(
        self,
        driver: Driver,
        step: Step,
        session_id: str,
        working_data: UserData,
        run_id: str,
    ) -> None:
        action = step.action
        self.logger.debug(f"Session {session_id}: executing step {step.id} ({action.value})")

        if action == StepAction.PROMPT_USER:
            key = step.answer_key
            answer = await self._broker.await_input(
                session_id, step.prompt, key, self.input_timeout, run_id=run_id
            )
            working_data[key] = answer
            if self._session_data is not None:
                self._session_data.merge(session_id, {key: answer})
            return

        if action == StepAction.VISIT:
            if is_absolute_url(step.target):
                url = step.target
            else:
                url = substitute_placeholders(step.value, working_data) or step.target
            await self._bounded(driver.navigate(url), f"navigating to {url}")
            return

        if action == StepAction.CLICK:
            await self._bounded(driver.click(step.target), f"clicking '{step.target}'")
            return

        if action == StepAction.FILL:
            text = substitute_placeholders(step.value, working_data)
            await self._bounded(driver.fill(step.target, text), f"filling '{step.target}'")
            return

        if action in PLACEHOLDER_ACTIONS:
            await asyncio.sleep(self.placeholder_delay)
            return

        raise TargetError(f"Unsupported action '{action.value}'")

    async def _bounded(self, operation: Awaitable, what: str) -> None:
        """Run a driver action under the step timeout."""
        try:
            await asyncio.wait_for(operation, timeout=self.step_timeout)
        except asyncio.TimeoutError:
            raise StepTimeoutError(f"Timed out after {self.step_timeout}s {what}")
        except AutomationError:
            raise
        except Exception as e:
            raise TargetError(str(e)) from e

    async def _capture(self, driver: Driver, session_id: str) -> Optional[bytes]:
        """Best-effort screenshot; failures only omit the image."""
        try:
            return await asyncio.wait_for(driver.screenshot(), timeout=self.step_timeout)
        except Exception as e:
            self.logger.debug(f"Session {session_id}: screenshot skipped: {e}")
            return None

    async def _release(self, driver: Driver, session_id: str) -> None:
        try:
            await driver.close()
        except Exception as e:
            self.logger.warning(f"Session {session_id}: error closing driver: {e}")
