"""
FormPilot session automation engine.

Drives typed browser steps for one chat session at a time, pausing for
human input and publishing progress for polling clients.
"""

from formpilot.errors import (
    AutomationError,
    AutomationTimeoutError,
    ConfigurationError,
    InputTimeoutError,
    RunSuperseded,
    StepTimeoutError,
    StepValidationError,
    TargetError,
)
from formpilot.models import AutomationIntent, Step, StepAction, Task, TaskKind
from formpilot.state import AutomationStateStore, AutomationStatus, SessionAutomationState
from formpilot.broker import InputBroker
from formpilot.session_data import SessionDataStore
from formpilot.engine import StepExecutionEngine
from formpilot.dispatcher import DispatchResult, RunDispatcher

__all__ = [
    "AutomationError",
    "AutomationTimeoutError",
    "ConfigurationError",
    "InputTimeoutError",
    "RunSuperseded",
    "StepTimeoutError",
    "StepValidationError",
    "TargetError",
    "AutomationIntent",
    "Step",
    "StepAction",
    "Task",
    "TaskKind",
    "AutomationStateStore",
    "AutomationStatus",
    "SessionAutomationState",
    "InputBroker",
    "SessionDataStore",
    "StepExecutionEngine",
    "DispatchResult",
    "RunDispatcher",
]
