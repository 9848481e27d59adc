"""
LLM-backed collaborators: the conversational intent resolver and the dynamic
step generator. Both talk to an OpenAI-compatible chat endpoint through
LLMCompletionClient.
"""

import json
import logging
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote_plus

import yaml

from utils.llm_clients import LLMCompletionClient

from .errors import AutomationError, StepValidationError
from .models import AutomationIntent, Step, is_absolute_url, parse_steps

logger = logging.getLogger(__name__)

INTENT_BLOCK_PATTERN = re.compile(r"```json\s*\n([\s\S]*?)\n\s*```")
_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")
SEARCH_URL = "https://google.com/search?q={query}"
MAX_HISTORY_MESSAGES = 40

_PROMPTS_PATH = Path(__file__).resolve().parent / "prompts.yaml"


def load_prompts(path: Optional[Path] = None) -> Dict[str, str]:
    """Load prompt templates keyed by name."""
    yaml_path = path or _PROMPTS_PATH
    with open(yaml_path, "r", encoding="utf-8") as file:
        data = yaml.safe_load(file) or {}
    prompts = data.get("prompts", {})
    return {name: entry["template"] for name, entry in prompts.items() if entry.get("enabled", True)}


@dataclass(frozen=True)
class IntentResolution:
    """Assistant reply plus the automation intent it carried, if any."""

    reply: str
    intent: Optional[AutomationIntent] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reply": self.reply,
            "intent": self.intent.to_dict() if self.intent else None,
        }


def parse_intent_block(text: str) -> Optional[AutomationIntent]:
    """
    Extract a start_automation intent from a fenced ```json block.

    Malformed blocks and blocks with another intent are ignored.
    """
    for match in INTENT_BLOCK_PATTERN.finditer(text or ""):
        try:
            payload = json.loads(match.group(1))
            intent = AutomationIntent.from_dict(payload)
        except (ValueError, TypeError, StepValidationError) as e:
            logger.debug(f"Ignoring malformed intent block: {e}")
            continue
        if intent.is_start_automation:
            return intent
    return None


def strip_intent_block(text: str) -> str:
    """Remove intent blocks from a reply before it is shown to a user."""
    return INTENT_BLOCK_PATTERN.sub("", text or "").strip()


class IntentResolver(ABC):
    """Turns a user's chat message into a reply and an optional intent."""

    @abstractmethod
    async def resolve(self, session_id: str, text: str) -> IntentResolution:
        """
        Answer a message in the context of a session's conversation.

        Args:
            session_id: Conversation the message belongs to
            text: The user's message

        Returns:
            IntentResolution with the reply and any start_automation intent
        """
        pass

    def reset(self, session_id: str) -> None:
        """Forget a session's conversation."""
        pass


class LLMIntentResolver(IntentResolver):
    """Intent resolver that keeps per-session chat history."""

    def __init__(
        self,
        client: LLMCompletionClient,
        system_prompt: Optional[str] = None,
        max_history: int = MAX_HISTORY_MESSAGES,
    ):
        self.client = client
        self.system_prompt = system_prompt or load_prompts()["assistant_system"]
        self.max_history = max_history
        self._history: Dict[str, List[Dict[str, str]]] = {}
        self._lock = threading.Lock()

    async def resolve(self, session_id: str, text: str) -> IntentResolution:
        with self._lock:
            history = self._history.setdefault(session_id, [])
            history.append({"role": "user", "content": text})
            messages = list(history[-self.max_history:])

        try:
            reply = await self.client.complete_text(messages, system_prompt=self.system_prompt)
        except Exception:
            with self._lock:
                # Drop the unanswered turn so a retry does not duplicate it
                if history and history[-1].get("content") == text:
                    history.pop()
            raise

        with self._lock:
            history.append({"role": "assistant", "content": reply})
            del history[:-self.max_history]

        intent = parse_intent_block(reply)
        if intent:
            logger.info(f"Session {session_id}: assistant requested '{intent.task_name}'")
        return IntentResolution(reply=reply, intent=intent)

    def reset(self, session_id: str) -> None:
        with self._lock:
            self._history.pop(session_id, None)


class StepGenerator(ABC):
    """Source of URLs and steps for tasks without a template."""

    @abstractmethod
    async def find_target_url(self, task_name: str) -> str:
        """Return the portal URL for a task."""
        pass

    @abstractmethod
    async def generate_steps(self, task_name: str, target_url: str) -> List[Step]:
        """Return the ordered steps for a task on a portal."""
        pass


def _strip_code_fence(text: str) -> str:
    return _CODE_FENCE.sub("", (text or "").strip()).strip()


def search_url(task_name: str) -> str:
    """Fallback URL used when no portal URL could be found."""
    return SEARCH_URL.format(query=quote_plus(task_name))


class LLMStepGenerator(StepGenerator):
    """Step generator that asks the model for a URL and a step list."""

    def __init__(self, client: LLMCompletionClient, prompts: Optional[Dict[str, str]] = None):
        self.client = client
        self.prompts = prompts or load_prompts()

    async def find_target_url(self, task_name: str) -> str:
        prompt = self.prompts["find_target_url"].format(task_name=task_name)
        try:
            answer = await self.client.complete_text([{"role": "user", "content": prompt}])
        except Exception as e:
            logger.warning(f"URL lookup for '{task_name}' failed: {e}")
            return search_url(task_name)

        url = _strip_code_fence(answer).split()[0] if answer and answer.strip() else ""
        if is_absolute_url(url):
            return url
        logger.info(f"No portal URL for '{task_name}', falling back to search")
        return search_url(task_name)

    async def generate_steps(self, task_name: str, target_url: str) -> List[Step]:
        prompt = self.prompts["generate_steps"].format(task_name=task_name, target_url=target_url)
        answer = await self.client.complete_text([{"role": "user", "content": prompt}])
        try:
            payload = json.loads(_strip_code_fence(answer))
        except ValueError as e:
            raise AutomationError(f"Step generation returned invalid JSON: {e}")
        if isinstance(payload, dict):
            payload = payload.get("steps", [])
        steps = list(parse_steps(payload))
        if not steps:
            raise AutomationError(f"Step generation returned no steps for '{task_name}'")
        logger.info(f"Generated {len(steps)} steps for '{task_name}'")
        return steps
