"""
Per-session automation state.

The single source of truth read by pollers. The execution engine (and the
input broker on its behalf) is the only writer; any number of observers read
immutable snapshots concurrently.
"""

import asyncio
import contextlib
import logging
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterator, Optional

from .models import Task

logger = logging.getLogger(__name__)


class AutomationStatus(str, Enum):
    """Lifecycle of one session's automation run."""

    IDLE = "idle"
    RUNNING = "running"
    WAITING_FOR_INPUT = "waiting_input"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES: FrozenSet[AutomationStatus] = frozenset(
    {AutomationStatus.RUNNING, AutomationStatus.WAITING_FOR_INPUT}
)
TERMINAL_STATUSES: FrozenSet[AutomationStatus] = frozenset(
    {AutomationStatus.COMPLETED, AutomationStatus.FAILED}
)


@dataclass(frozen=True)
class PendingPrompt:
    """Question shown to the human while a run waits for input."""

    prompt: str
    response_key: str

    def to_dict(self) -> Dict[str, str]:
        return {"prompt": self.prompt, "response_key": self.response_key}


@dataclass(frozen=True)
class SessionAutomationState:
    """Snapshot of one session's automation record."""

    session_id: str
    status: AutomationStatus = AutomationStatus.IDLE
    task: Optional[Task] = None
    current_step_index: int = 0
    pending_prompt: Optional[PendingPrompt] = None
    last_screenshot: Optional[bytes] = None
    failure_message: Optional[str] = None
    run_id: Optional[str] = None
    updated_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (screenshot excluded, it is binary)."""
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "task": self.task.to_dict() if self.task else None,
            "current_step_index": self.current_step_index,
            "pending_prompt": self.pending_prompt.to_dict() if self.pending_prompt else None,
            "failure_message": self.failure_message,
            "run_id": self.run_id,
        }


class AutomationStateStore:
    """
    Registry of session automation records.

    Each session with an active or finished run has its own lock; every
    mutation swaps in a new frozen snapshot so readers never observe a
    half-applied update. Reads take no per-session lock, so polling unknown
    ids allocates nothing. Mutations are no-ops when the record is missing,
    when the caller's run id is not the record's current run id, or when the
    current status does not allow the transition.
    """

    def __init__(self, reset_grace_seconds: float = 300.0, cleanup_interval: float = 5.0):
        """
        Initialize the state store.

        Args:
            reset_grace_seconds: How long Completed/Failed records stay visible
                before returning to Idle
            cleanup_interval: How often the background reset loop runs (seconds)
        """
        self._states: Dict[str, SessionAutomationState] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._reset_grace = timedelta(seconds=reset_grace_seconds)
        self._cleanup_interval = cleanup_interval
        self._cleanup_task: Optional[asyncio.Task] = None
        self._logger = logger.getChild("store")

    def _acquire(self, session_id: str, create: bool) -> Optional[threading.Lock]:
        # A lock dropped from the registry while we waited on it is stale; retry.
        while True:
            with self._registry_lock:
                lock = self._locks.get(session_id)
                if lock is None:
                    if not create:
                        return None
                    lock = threading.Lock()
                    self._locks[session_id] = lock
            lock.acquire()
            with self._registry_lock:
                if self._locks.get(session_id) is lock:
                    return lock
            lock.release()

    @contextlib.contextmanager
    def _locked(self, session_id: str, create: bool = False) -> Iterator[bool]:
        """Hold the session's lock; yields False when the session has none."""
        lock = self._acquire(session_id, create)
        try:
            yield lock is not None
        finally:
            if lock is not None:
                lock.release()

    def _put(self, session_id: str, state: SessionAutomationState) -> None:
        # Caller holds the session's lock; the registry lock orders the swap
        # against lock-free readers.
        with self._registry_lock:
            self._states[session_id] = state

    def _drop_lock(self, session_id: str) -> None:
        # Caller holds the session's lock.
        with self._registry_lock:
            self._locks.pop(session_id, None)

    def get(self, session_id: str) -> Optional[SessionAutomationState]:
        """Return the current snapshot for a session, or None if absent."""
        with self._registry_lock:
            return self._states.get(session_id)

    def get_or_create(self, session_id: str) -> SessionAutomationState:
        """Return the session's snapshot, creating an Idle record on first access."""
        with self._locked(session_id, create=True):
            state = self._states.get(session_id)
            if state is None:
                state = SessionAutomationState(session_id=session_id, updated_at=datetime.now())
                self._put(session_id, state)
            return state

    def start_run(self, session_id: str, task: Task) -> str:
        """
        Reset the session to Running at step 0 for a new run.

        Any prior record is replaced atomically; an in-flight run for the same
        session is thereby abandoned and stops at its next step boundary.

        Returns:
            The run id that owns the new record
        """
        run_id = uuid.uuid4().hex
        now = datetime.now()
        with self._locked(session_id, create=True):
            previous = self._states.get(session_id)
            self._put(
                session_id,
                SessionAutomationState(
                    session_id=session_id,
                    status=AutomationStatus.RUNNING,
                    task=task,
                    current_step_index=0,
                    run_id=run_id,
                    updated_at=now,
                ),
            )
        if previous is not None and previous.is_active:
            self._logger.info(
                f"Session {session_id}: run {previous.run_id} superseded by {run_id}"
            )
        self._logger.info(f"Session {session_id}: started run {run_id} for task '{task.name}'")
        return run_id

    def _mutate(
        self,
        session_id: str,
        operation: str,
        allowed: FrozenSet[AutomationStatus],
        run_id: Optional[str],
        **changes: Any,
    ) -> bool:
        with self._locked(session_id) as held:
            state = self._states.get(session_id) if held else None
            if state is None:
                return False
            if run_id is not None and state.run_id != run_id:
                self._logger.debug(
                    f"Session {session_id}: ignoring {operation} from stale run {run_id}"
                )
                return False
            if state.status not in allowed:
                self._logger.warning(
                    f"Session {session_id}: {operation} not allowed from {state.status.value}"
                )
                return False
            self._put(session_id, replace(state, updated_at=datetime.now(), **changes))
            return True

    def advance(
        self,
        session_id: str,
        step_index: int,
        screenshot: Optional[bytes] = None,
        run_id: Optional[str] = None,
    ) -> bool:
        """Record the step now executing, attaching a screenshot when one was taken."""
        changes: Dict[str, Any] = {"current_step_index": step_index}
        if screenshot is not None:
            changes["last_screenshot"] = screenshot
        return self._mutate(
            session_id,
            "advance",
            frozenset({AutomationStatus.RUNNING}),
            run_id,
            **changes,
        )

    def attach_screenshot(
        self, session_id: str, screenshot: bytes, run_id: Optional[str] = None
    ) -> bool:
        """Replace the last screenshot without moving the step index."""
        return self._mutate(
            session_id,
            "attach_screenshot",
            ACTIVE_STATUSES,
            run_id,
            last_screenshot=screenshot,
        )

    def mark_waiting(
        self,
        session_id: str,
        prompt: str,
        response_key: str,
        run_id: Optional[str] = None,
    ) -> bool:
        """Running -> WaitingForInput with the prompt shown to the human."""
        return self._mutate(
            session_id,
            "mark_waiting",
            frozenset({AutomationStatus.RUNNING}),
            run_id,
            status=AutomationStatus.WAITING_FOR_INPUT,
            pending_prompt=PendingPrompt(prompt=prompt, response_key=response_key),
        )

    def clear_waiting(self, session_id: str, run_id: Optional[str] = None) -> bool:
        """WaitingForInput -> Running; the step index is left untouched."""
        return self._mutate(
            session_id,
            "clear_waiting",
            frozenset({AutomationStatus.WAITING_FOR_INPUT}),
            run_id,
            status=AutomationStatus.RUNNING,
            pending_prompt=None,
        )

    def mark_completed(self, session_id: str, run_id: Optional[str] = None) -> bool:
        """Terminal success."""
        return self._mutate(
            session_id,
            "mark_completed",
            ACTIVE_STATUSES,
            run_id,
            status=AutomationStatus.COMPLETED,
            pending_prompt=None,
            finished_at=datetime.now(),
        )

    def mark_failed(self, session_id: str, message: str, run_id: Optional[str] = None) -> bool:
        """
        Terminal failure.

        A run that is already Failed may refine its own message (the broker
        marks an input timeout before the engine adds the step number).
        """
        with self._locked(session_id) as held:
            state = self._states.get(session_id) if held else None
            if state is not None and state.status == AutomationStatus.FAILED:
                if run_id is None or state.run_id != run_id:
                    return False
                self._put(session_id, replace(state, failure_message=message, updated_at=datetime.now()))
                return True
        return self._mutate(
            session_id,
            "mark_failed",
            ACTIVE_STATUSES,
            run_id,
            status=AutomationStatus.FAILED,
            failure_message=message,
            pending_prompt=None,
            finished_at=datetime.now(),
        )

    def is_current_run(self, session_id: str, run_id: str) -> bool:
        """True while the run still owns an active record for the session."""
        state = self.get(session_id)
        return state is not None and state.run_id == run_id and state.is_active

    def reset_expired(self, now: Optional[datetime] = None) -> int:
        """
        Return Completed/Failed records older than the grace period to Idle.

        Returns:
            Number of records reset
        """
        cutoff = (now or datetime.now()) - self._reset_grace
        with self._registry_lock:
            session_ids = list(self._states.keys())

        reset_count = 0
        for session_id in session_ids:
            with self._locked(session_id) as held:
                if not held:
                    continue
                state = self._states.get(session_id)
                if (
                    state is not None
                    and state.is_terminal
                    and state.finished_at is not None
                    and state.finished_at <= cutoff
                ):
                    self._put(
                        session_id,
                        SessionAutomationState(session_id=session_id, updated_at=datetime.now()),
                    )
                    # Idle records need no lock until the next run creates one
                    self._drop_lock(session_id)
                    reset_count += 1

        if reset_count:
            self._logger.info(f"Reset {reset_count} finished automation records to idle")
        return reset_count

    def remove(self, session_id: str) -> None:
        """Drop a session's record on session teardown."""
        with self._locked(session_id) as held:
            with self._registry_lock:
                self._states.pop(session_id, None)
            if held:
                self._drop_lock(session_id)

    async def start_cleanup(self) -> None:
        """Start the background grace-period reset task."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            self._logger.info("Started state reset task")

    async def stop_cleanup(self) -> None:
        """Stop the background grace-period reset task."""
        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._logger.info("Stopped state reset task")

    async def _cleanup_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._cleanup_interval)
                self.reset_expired()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._logger.error(f"Error during state reset: {e}")
