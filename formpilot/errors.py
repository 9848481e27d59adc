"""
Error taxonomy for the automation engine.

Configuration errors surface at startup, validation errors before a run
starts, target and timeout errors abort a run, and RunSuperseded stops a run
silently when a newer one has replaced it.
"""


class AutomationError(Exception):
    """Base class for all automation errors."""


class ConfigurationError(AutomationError):
    """A required setting (credential, target) is missing or invalid."""


class StepValidationError(AutomationError, ValueError):
    """A step, task or payload is malformed."""


class TargetError(AutomationError):
    """The remote target rejected an action (locator not found, navigation error)."""


class AutomationTimeoutError(AutomationError):
    """Base class for wall-clock timeouts inside a run."""


class StepTimeoutError(AutomationTimeoutError):
    """A driver action exceeded its bound."""


class InputTimeoutError(AutomationTimeoutError):
    """No human answer arrived before the input ceiling."""


class RunSuperseded(AutomationError):
    """A newer run replaced the one that observed this error."""
