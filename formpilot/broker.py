"""
Pause/resume broker for human input.

A run that needs a value from a human parks itself on a future keyed by
session id. An external caller later delivers the answer, which resumes
exactly one waiter. Only the waiting run's coroutine is suspended; status
polling and input delivery keep being served.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional

from .errors import InputTimeoutError, RunSuperseded
from .state import AutomationStateStore

logger = logging.getLogger(__name__)

INPUT_TIMEOUT_MESSAGE = "User input timeout"


@dataclass
class _PendingInput:
    future: asyncio.Future
    response_key: str
    run_id: Optional[str]


def _on_loop(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False


def _settle(future: asyncio.Future, value: Optional[str] = None, error: Optional[BaseException] = None) -> None:
    """Resolve a future on its own loop, whichever thread we are called from."""

    def apply():
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(value)

    loop = future.get_loop()
    if _on_loop(loop):
        apply()
    else:
        loop.call_soon_threadsafe(apply)


class InputBroker:
    """
    Matches in-flight input waits to externally delivered answers.

    At most one wait is pending per session id, and each pending wait is
    resolved exactly once: by a delivery, by its timeout, or by cancellation
    when a newer run supersedes it.
    """

    def __init__(self, state_store: AutomationStateStore):
        self._state = state_store
        self._pending: Dict[str, _PendingInput] = {}
        self._lock = threading.Lock()
        self._logger = logger.getChild("broker")

    def has_pending(self, session_id: str) -> bool:
        """Check whether a run is currently waiting for input on this session."""
        with self._lock:
            return session_id in self._pending

    async def await_input(
        self,
        session_id: str,
        prompt: str,
        response_key: str,
        timeout: float,
        run_id: Optional[str] = None,
    ) -> str:
        """
        Suspend the calling run until an answer is delivered.

        Args:
            session_id: Session whose run is waiting
            prompt: Question shown to the human
            response_key: UserData key the answer will be stored under
            timeout: Wall-clock ceiling in seconds
            run_id: Run that owns the wait

        Returns:
            The delivered value

        Raises:
            InputTimeoutError: If nothing was delivered in time (the session is
                marked Failed first)
            RunSuperseded: If a newer run cancelled this wait
            RuntimeError: If another wait is already pending for the session
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        entry = _PendingInput(future=future, response_key=response_key, run_id=run_id)

        with self._lock:
            if session_id in self._pending:
                raise RuntimeError(f"Session {session_id} already has a pending input wait")
            self._pending[session_id] = entry

        self._state.mark_waiting(session_id, prompt, response_key, run_id=run_id)
        self._logger.info(f"Session {session_id}: waiting for '{response_key}' ({timeout}s)")

        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            with self._lock:
                still_ours = self._pending.get(session_id) is entry
                if still_ours:
                    del self._pending[session_id]
            if not still_ours and future.done() and not future.cancelled():
                # A delivery won the race against the timer
                return future.result()
            self._logger.warning(f"Session {session_id}: input wait timed out after {timeout}s")
            self._state.mark_failed(session_id, INPUT_TIMEOUT_MESSAGE, run_id=run_id)
            raise InputTimeoutError(f"{INPUT_TIMEOUT_MESSAGE} after {timeout}s")
        finally:
            with self._lock:
                if self._pending.get(session_id) is entry:
                    del self._pending[session_id]

    def deliver(self, session_id: str, value: str) -> bool:
        """
        Hand a human answer to the waiting run.

        The acceptance is decided on the waiter's own loop, so a True result
        always means the waiter receives the value; it can no longer lose a
        race against its timeout afterwards. Callers on other threads block
        until the loop has decided.

        Returns:
            True if exactly one pending wait was resumed, False if nothing was
            waiting (late or duplicate delivery; no state change)
        """
        with self._lock:
            entry = self._pending.get(session_id)
        if entry is None:
            self._logger.debug(f"Session {session_id}: no pending input wait, delivery rejected")
            return False

        loop = entry.future.get_loop()
        if _on_loop(loop):
            return self._accept(session_id, value)
        return asyncio.run_coroutine_threadsafe(
            self._accept_on_loop(session_id, value), loop
        ).result()

    async def _accept_on_loop(self, session_id: str, value: str) -> bool:
        return self._accept(session_id, value)

    def _accept(self, session_id: str, value: str) -> bool:
        # Runs on the waiter's loop, never concurrently with its timeout handling.
        with self._lock:
            entry = self._pending.get(session_id)
            if entry is None or entry.future.done():
                entry = None
            else:
                del self._pending[session_id]
        if entry is None:
            self._logger.debug(f"Session {session_id}: no pending input wait, delivery rejected")
            return False

        entry.future.set_result(value)
        self._state.clear_waiting(session_id, run_id=entry.run_id)
        self._logger.info(f"Session {session_id}: accepted input for '{entry.response_key}'")
        return True

    def cancel(self, session_id: str) -> bool:
        """
        Reject a pending wait because a newer run replaces it.

        Returns:
            True if a waiter was cancelled
        """
        with self._lock:
            entry = self._pending.pop(session_id, None)
        if entry is None or entry.future.done():
            return False
        _settle(entry.future, error=RunSuperseded(f"Session {session_id}: run superseded"))
        self._logger.info(f"Session {session_id}: cancelled pending input wait of run {entry.run_id}")
        return True
