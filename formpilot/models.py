"""
Step and Task definitions.

Parse and validate the step lists that drive an automation run. Steps come
from pre-authored templates (YAML, snake_case keys) or from the step
generator (JSON, camelCase keys); both spellings are accepted.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import StepValidationError

PLACEHOLDER_PATTERN = re.compile(r"\{(\w+)\}")

DEFAULT_RESPONSE_KEY = "userInput"

UserData = Dict[str, str]


class StepAction(str, Enum):
    """Closed set of automation actions."""

    VISIT = "visit"
    CLICK = "click"
    FILL = "fill"
    READ = "read"
    VERIFY = "verify"
    UPLOAD = "upload"
    PROMPT_USER = "prompt_user"


# Actions that only wait; real handlers are pluggable elsewhere
PLACEHOLDER_ACTIONS = frozenset({StepAction.READ, StepAction.VERIFY, StepAction.UPLOAD})

LOCATOR_ACTIONS = frozenset({StepAction.CLICK, StepAction.FILL})


class TaskKind(str, Enum):
    """Where a task's step list came from."""

    PRERECORDED = "prerecorded"
    DYNAMIC = "dynamic"


def is_absolute_url(value: Optional[str]) -> bool:
    """Return True for http(s) URLs."""
    return bool(value) and value.lower().startswith(("http://", "https://"))


def substitute_placeholders(template: Optional[str], user_data: Mapping[str, str]) -> str:
    """
    Replace ``{key}`` placeholders with values from user data.

    Missing keys become the empty string. The result depends only on the
    template and the data, so repeated calls give identical output.

    Args:
        template: Text containing ``{key}`` placeholders (None is treated as "")
        user_data: Mapping of placeholder keys to values

    Returns:
        The substituted text
    """
    if not template:
        return ""
    return PLACEHOLDER_PATTERN.sub(
        lambda match: str(user_data.get(match.group(1)) or ""), template
    )


def normalize_user_data(data: Optional[Mapping[str, Any]]) -> UserData:
    """Coerce a payload into flat string-to-string user data, dropping nulls."""
    if not data:
        return {}
    if not isinstance(data, Mapping):
        raise StepValidationError("User data must be a mapping of strings")
    normalized: UserData = {}
    for key, value in data.items():
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            raise StepValidationError(f"User data value for '{key}' must not be nested")
        normalized[str(key)] = str(value)
    return normalized


@dataclass(frozen=True)
class Step:
    """One automation action."""

    id: str
    action: StepAction
    target: str = ""
    value: Optional[str] = None
    description: str = ""

    # prompt_user only
    prompt_text: Optional[str] = None
    response_key: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.action, StepAction):
            try:
                object.__setattr__(self, "action", StepAction(self.action))
            except ValueError:
                raise StepValidationError(
                    f"Step '{self.id}' has unknown action '{self.action}'"
                )
        self.validate()

    def validate(self) -> None:
        """
        Check the action-specific requirements.

        Raises:
            StepValidationError: If the step cannot be executed as described
        """
        if not self.id:
            raise StepValidationError("Step is missing an id")
        if self.action in LOCATOR_ACTIONS and not self.target:
            raise StepValidationError(
                f"Step '{self.id}' ({self.action.value}) requires a target locator"
            )
        if self.action == StepAction.VISIT and not (self.target or self.value):
            raise StepValidationError(f"Step '{self.id}' (visit) requires a target URL")
        if self.action == StepAction.PROMPT_USER and not (
            self.prompt_text or self.description
        ):
            raise StepValidationError(
                f"Step '{self.id}' (prompt_user) requires prompt text or a description"
            )

    @property
    def prompt(self) -> str:
        """Text shown to the human for a prompt_user step."""
        return self.prompt_text or self.description

    @property
    def answer_key(self) -> str:
        """UserData key that receives the human's answer."""
        return self.response_key or DEFAULT_RESPONSE_KEY

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], index: int = 0) -> "Step":
        """
        Create from dictionary.

        Args:
            data: Step dictionary (snake_case or camelCase keys)
            index: Position in the list, used when the id is missing

        Returns:
            Step instance
        """
        if not isinstance(data, Mapping):
            raise StepValidationError(f"Step at position {index + 1} is not a mapping")

        step_id = data.get("id")
        return cls(
            id=str(step_id) if step_id not in (None, "") else str(index + 1),
            action=data.get("action", ""),
            target=data.get("target") or "",
            value=data.get("value"),
            description=data.get("description") or "",
            prompt_text=data.get("prompt_text", data.get("promptText")),
            response_key=data.get("response_key", data.get("responseKey")),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        result = {
            "id": self.id,
            "action": self.action.value,
            "target": self.target,
            "value": self.value,
            "description": self.description,
        }
        if self.action == StepAction.PROMPT_USER:
            result["prompt_text"] = self.prompt_text
            result["response_key"] = self.response_key
        return result


def parse_steps(raw_steps: Any) -> Tuple[Step, ...]:
    """Parse a list of step dictionaries (or Step objects) into a tuple."""
    if not isinstance(raw_steps, (list, tuple)):
        raise StepValidationError("Step list must be a list")
    return tuple(
        item if isinstance(item, Step) else Step.from_dict(item, index)
        for index, item in enumerate(raw_steps)
    )


@dataclass(frozen=True)
class Task:
    """
    A resolved, ready-to-execute step list.

    Immutable once built; starting another run always builds a new Task.
    """

    name: str
    kind: TaskKind
    target_url: str
    steps: Tuple[Step, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if not isinstance(self.kind, TaskKind):
            object.__setattr__(self, "kind", TaskKind(self.kind))
        if not isinstance(self.steps, tuple) or not all(
            isinstance(step, Step) for step in self.steps
        ):
            object.__setattr__(self, "steps", parse_steps(self.steps))
        self.validate()

    def validate(self) -> None:
        """Reject duplicate step ids."""
        seen = set()
        for step in self.steps:
            if step.id in seen:
                raise StepValidationError(
                    f"Task '{self.name}' has duplicate step id '{step.id}'"
                )
            seen.add(step.id)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Task":
        """Create from dictionary."""
        return cls(
            name=data.get("name", ""),
            kind=data.get("kind", TaskKind.DYNAMIC),
            target_url=data.get("target_url", data.get("url", "")),
            steps=parse_steps(data.get("steps", [])),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "kind": self.kind.value,
            "target_url": self.target_url,
            "steps": [step.to_dict() for step in self.steps],
        }


@dataclass(frozen=True)
class AutomationIntent:
    """Structured intent emitted by the intent resolver."""

    intent: str
    task_name: str = ""
    data: UserData = field(default_factory=dict)

    START_AUTOMATION = "start_automation"

    @property
    def is_start_automation(self) -> bool:
        return self.intent == self.START_AUTOMATION

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AutomationIntent":
        """Create from the resolver's JSON payload."""
        if not isinstance(data, Mapping):
            raise StepValidationError("Intent payload must be a JSON object")
        return cls(
            intent=str(data.get("intent", "")),
            task_name=str(data.get("taskName", data.get("task_name")) or "Unknown Task"),
            data=normalize_user_data(data.get("data")),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the resolver's JSON shape."""
        return {"intent": self.intent, "taskName": self.task_name, "data": dict(self.data)}
