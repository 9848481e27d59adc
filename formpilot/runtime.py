"""
Automation runtime container.

Wires the state store, broker, engine, dispatcher and the LLM collaborators
together from configuration, and owns their background lifecycle.
"""

import logging
from typing import Any, Dict, Optional

from config.types import AutomationSettings
from utils.llm_clients import OpenAIClient

from .broker import InputBroker
from .dispatcher import RunDispatcher
from .drivers import DriverFactory, DriverFactoryBuilder
from .engine import StepExecutionEngine
from .llm import (
    IntentResolver,
    LLMIntentResolver,
    LLMStepGenerator,
    StepGenerator,
    strip_intent_block,
)
from .session_data import SessionDataStore
from .state import AutomationStateStore
from .templates import InMemoryTemplateStore, TemplateStore, YamlTemplateStore

logger = logging.getLogger(__name__)


class AutomationRuntime:
    """Holds one instance of every automation component."""

    def __init__(
        self,
        settings: AutomationSettings,
        resolver: IntentResolver,
        step_generator: StepGenerator,
        template_store: TemplateStore,
        driver_factory: DriverFactory,
    ):
        self.settings = settings
        self.resolver = resolver
        self.state_store = AutomationStateStore(
            reset_grace_seconds=settings.state_reset_grace_seconds,
            cleanup_interval=settings.state_cleanup_interval_seconds,
        )
        self.broker = InputBroker(self.state_store)
        self.session_data = SessionDataStore()
        self.engine = StepExecutionEngine(
            self.state_store,
            self.broker,
            driver_factory,
            session_data=self.session_data,
            step_timeout=settings.step_timeout_seconds,
            input_timeout=settings.input_timeout_seconds,
            placeholder_delay=settings.placeholder_step_delay_seconds,
        )
        self.dispatcher = RunDispatcher(
            self.state_store,
            self.broker,
            self.engine,
            self.session_data,
            template_store,
            step_generator,
        )

    @classmethod
    def from_settings(
        cls,
        settings: AutomationSettings,
        resolver: Optional[IntentResolver] = None,
        step_generator: Optional[StepGenerator] = None,
        template_store: Optional[TemplateStore] = None,
        driver_factory: Optional[DriverFactory] = None,
    ) -> "AutomationRuntime":
        """
        Build a runtime, creating any collaborator that was not supplied.

        The LLM client is only created when the resolver or the step
        generator is missing, so callers that inject both need no API key.
        """
        if resolver is None or step_generator is None:
            client = OpenAIClient(
                api_key=settings.llm_api_key,
                base_url=settings.llm_base_url,
                default_model=settings.llm_model,
            )
            resolver = resolver or LLMIntentResolver(client)
            step_generator = step_generator or LLMStepGenerator(client)

        if template_store is None:
            if settings.template_path:
                template_store = YamlTemplateStore(settings.template_path)
            else:
                template_store = InMemoryTemplateStore()

        if driver_factory is None:
            driver_factory = DriverFactoryBuilder.create_factory(settings)

        return cls(settings, resolver, step_generator, template_store, driver_factory)

    @classmethod
    def from_environment(cls, env_manager) -> "AutomationRuntime":
        """
        Build a runtime from the environment manager.

        Raises:
            ConfigurationError: If the LLM API key is missing or a setting is
                invalid
        """
        env_manager.require_setting("llm_api_key")
        return cls.from_settings(env_manager.get_automation_settings())

    async def start(self) -> None:
        """Start background maintenance."""
        await self.state_store.start_cleanup()
        logger.info("Automation runtime started")

    async def shutdown(self) -> None:
        """Cancel in-flight runs and stop background maintenance."""
        await self.dispatcher.shutdown()
        await self.state_store.stop_cleanup()
        logger.info("Automation runtime stopped")

    async def handle_message(self, session_id: str, text: str) -> Dict[str, Any]:
        """
        Send a chat message to the resolver and start automation if asked to.

        Returns:
            Dictionary with the reply and, when an intent was found, the
            dispatch outcome
        """
        resolution = await self.resolver.resolve(session_id, text)
        result: Dict[str, Any] = {
            "session_id": session_id,
            "reply": strip_intent_block(resolution.reply),
        }
        if resolution.intent is not None:
            dispatch = await self.dispatcher.dispatch(session_id, resolution.intent)
            result["automation"] = dispatch.to_dict()
        return result

    def end_session(self, session_id: str) -> None:
        """Forget everything held for a session."""
        self.broker.cancel(session_id)
        self.state_store.remove(session_id)
        self.session_data.clear(session_id)
        self.resolver.reset(session_id)
        logger.info(f"Session {session_id}: ended")
