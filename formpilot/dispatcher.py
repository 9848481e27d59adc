"""
Run Dispatcher

Turns a start_automation intent into a running task: merge the collected
data, resolve a step list (pre-authored template first, generated steps
otherwise), supersede any earlier run of the session and launch the engine
in the background.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

from .broker import InputBroker
from .engine import StepExecutionEngine
from .llm import StepGenerator
from .models import AutomationIntent, Task, TaskKind
from .session_data import SessionDataStore
from .state import AutomationStateStore
from .templates import TemplateStore


@dataclass
class DispatchResult:
    """Outcome of a dispatch request."""

    success: bool
    task: Optional[Task] = None
    run_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        result: Dict[str, Any] = {"success": self.success}
        if self.task is not None:
            result["task_name"] = self.task.name
            result["kind"] = self.task.kind.value
            result["target_url"] = self.task.target_url
            result["step_count"] = len(self.task.steps)
        if self.run_id is not None:
            result["run_id"] = self.run_id
        if self.error is not None:
            result["error"] = self.error
        return result


class RunDispatcher:
    """
    Starts automation runs in the background.

    The dispatcher returns as soon as the run is launched. Progress is
    observed through the state store, never through the return value.
    """

    def __init__(
        self,
        state_store: AutomationStateStore,
        broker: InputBroker,
        engine: StepExecutionEngine,
        session_data: SessionDataStore,
        template_store: TemplateStore,
        step_generator: StepGenerator,
    ):
        self.logger = logging.getLogger(__name__)
        self._state = state_store
        self._broker = broker
        self._engine = engine
        self._session_data = session_data
        self._templates = template_store
        self._step_generator = step_generator
        self._tasks: Set[asyncio.Task] = set()
        self._latest: Dict[str, asyncio.Task] = {}

    async def dispatch(self, session_id: str, intent: AutomationIntent) -> DispatchResult:
        """
        Start a run for the intent's task.

        Args:
            session_id: Session that owns the run
            intent: A start_automation intent

        Returns:
            DispatchResult; failures are reported, never raised
        """
        try:
            user_data = self._session_data.merge(session_id, intent.data)
            task = await self.resolve_task(intent.task_name)

            self._broker.cancel(session_id)
            run_id = self._state.start_run(session_id, task)
            self._launch(session_id, task, user_data, run_id)
        except Exception as e:
            self.logger.error(f"Session {session_id}: could not dispatch '{intent.task_name}': {e}")
            return DispatchResult(success=False, error=str(e))

        self.logger.info(
            f"Session {session_id}: dispatched '{task.name}' as {task.kind.value} run {run_id}"
        )
        return DispatchResult(success=True, task=task, run_id=run_id)

    async def resolve_task(self, task_name: str) -> Task:
        """
        Build the Task for a task name.

        Returns:
            A prerecorded Task when a template matches, otherwise a dynamic
            Task built from generated steps
        """
        template = self._templates.find_by_task_name(task_name)
        if template is not None:
            self.logger.info(f"Using template '{template.name}' for '{task_name}'")
            return Task(
                name=template.name,
                kind=TaskKind.PRERECORDED,
                target_url=template.target_url,
                steps=template.steps,
            )

        self.logger.info(f"No template for '{task_name}', generating steps")
        target_url = await self._step_generator.find_target_url(task_name)
        steps = await self._step_generator.generate_steps(task_name, target_url)
        return Task(
            name=task_name,
            kind=TaskKind.DYNAMIC,
            target_url=target_url,
            steps=tuple(steps),
        )

    def _launch(self, session_id: str, task: Task, user_data: Dict[str, str], run_id: str) -> None:
        run_task = asyncio.create_task(
            self._engine.run(session_id, task, user_data, run_id),
            name=f"automation-{session_id}-{run_id}",
        )
        self._tasks.add(run_task)
        self._latest[session_id] = run_task

        def on_done(finished: asyncio.Task):
            self._tasks.discard(finished)
            if self._latest.get(session_id) is finished:
                del self._latest[session_id]
            if finished.cancelled():
                return
            error = finished.exception()
            if error is not None:
                self.logger.error(
                    f"Session {session_id}: run {run_id} crashed: {error}", exc_info=error
                )
                self._state.mark_failed(session_id, f"Unexpected error: {error}", run_id=run_id)

        run_task.add_done_callback(on_done)

    def get_run_task(self, session_id: str) -> Optional[asyncio.Task]:
        """Return the most recently launched, unfinished run task of a session."""
        return self._latest.get(session_id)

    @property
    def active_run_count(self) -> int:
        return len(self._tasks)

    async def shutdown(self) -> None:
        """Cancel in-flight runs and wait for them to release their drivers."""
        tasks = list(self._tasks)
        if not tasks:
            return
        self.logger.info(f"Cancelling {len(tasks)} in-flight automation runs")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
