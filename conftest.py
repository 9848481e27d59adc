"""Shared test fixtures: in-memory stand-ins for the browser and the LLM."""

import asyncio
from typing import Dict, List, Optional

import pytest

from formpilot.drivers import Driver
from formpilot.llm import IntentResolution, IntentResolver, StepGenerator, parse_intent_block
from formpilot.models import Step, parse_steps


class FakeDriver(Driver):
    """Records every action; selected targets can fail or stall."""

    def __init__(
        self,
        fail_on: Optional[Dict[str, Exception]] = None,
        delays: Optional[Dict[str, float]] = None,
        screenshot_data: Optional[bytes] = b"fake-png",
        fail_start: Optional[Exception] = None,
    ):
        self.fail_on = fail_on or {}
        self.delays = delays or {}
        self.screenshot_data = screenshot_data
        self.fail_start = fail_start
        self.calls: List[tuple] = []
        self.started = False
        self.closed = False

    async def start(self) -> None:
        if self.fail_start:
            raise self.fail_start
        self.started = True

    async def close(self) -> None:
        self.closed = True

    async def _act(self, *call) -> None:
        self.calls.append(call)
        target = call[1]
        if target in self.delays:
            await asyncio.sleep(self.delays[target])
        if target in self.fail_on:
            raise self.fail_on[target]

    async def navigate(self, url: str) -> None:
        await self._act("navigate", url)

    async def click(self, locator: str) -> None:
        await self._act("click", locator)

    async def fill(self, locator: str, text: str) -> None:
        await self._act("fill", locator, text)

    async def screenshot(self) -> Optional[bytes]:
        return self.screenshot_data


class ScriptedResolver(IntentResolver):
    """Replies with queued texts, recording what it was asked."""

    def __init__(self, replies: Optional[List[str]] = None):
        self.replies = list(replies or [])
        self.messages: List[tuple] = []
        self.reset_sessions: List[str] = []

    async def resolve(self, session_id: str, text: str) -> IntentResolution:
        self.messages.append((session_id, text))
        reply = self.replies.pop(0) if self.replies else "How can I help?"
        return IntentResolution(reply=reply, intent=parse_intent_block(reply))

    def reset(self, session_id: str) -> None:
        self.reset_sessions.append(session_id)


class StaticStepGenerator(StepGenerator):
    """Returns a fixed URL and step list."""

    def __init__(self, url: str = "https://portal.example.gov", steps=None, error=None):
        self.url = url
        self.steps = list(parse_steps(steps or [{"id": "1", "action": "visit", "target": url}]))
        self.error = error
        self.requests: List[str] = []

    async def find_target_url(self, task_name: str) -> str:
        self.requests.append(task_name)
        return self.url

    async def generate_steps(self, task_name: str, target_url: str) -> List[Step]:
        if self.error:
            raise self.error
        return list(self.steps)


@pytest.fixture
def fake_driver_cls():
    return FakeDriver


@pytest.fixture
def scripted_resolver_cls():
    return ScriptedResolver


@pytest.fixture
def static_generator_cls():
    return StaticStepGenerator
