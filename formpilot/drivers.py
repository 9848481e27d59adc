"""Driver interface and implementations.

A driver is the capability the engine uses to act on the remote target:
navigate, click, fill and screenshot. Each run owns exactly one driver and
closes it on every exit path.
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from config.types import AutomationSettings
from utils.playwright.playwright_wrapper import PlaywrightWrapper

from .errors import StepTimeoutError, TargetError

logger = logging.getLogger(__name__)


class Driver(ABC):
    """Interface for the target the engine drives.

    Implementations raise TargetError when the target rejects an action and
    StepTimeoutError when an action exceeds its own bound.
    """

    @abstractmethod
    async def start(self) -> None:
        """Acquire the underlying browser/session."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the underlying browser/session."""
        pass

    @abstractmethod
    async def navigate(self, url: str) -> None:
        """Open an absolute URL."""
        pass

    @abstractmethod
    async def click(self, locator: str) -> None:
        """Click the element matched by the locator."""
        pass

    @abstractmethod
    async def fill(self, locator: str, text: str) -> None:
        """Replace the content of the element matched by the locator."""
        pass

    @abstractmethod
    async def screenshot(self) -> Optional[bytes]:
        """Return a snapshot of the target's current visual state, if any."""
        pass

    async def __aenter__(self) -> "Driver":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


DriverFactory = Callable[[], Driver]


class PlaywrightDriver(Driver):
    """Driver backed by a Playwright browser page."""

    def __init__(self, wrapper: PlaywrightWrapper):
        self.wrapper = wrapper

    async def start(self) -> None:
        await self.wrapper.start()

    async def close(self) -> None:
        await self.wrapper.close()

    async def navigate(self, url: str) -> None:
        try:
            await self.wrapper.navigate(url)
        except PlaywrightTimeoutError as e:
            raise StepTimeoutError(f"Navigation to {url} timed out: {e}") from e
        except PlaywrightError as e:
            raise TargetError(f"Navigation to {url} failed: {e}") from e

    async def click(self, locator: str) -> None:
        try:
            await self.wrapper.click_element(locator)
        except PlaywrightTimeoutError as e:
            raise StepTimeoutError(f"Timed out clicking '{locator}': {e}") from e
        except PlaywrightError as e:
            raise TargetError(f"Could not click '{locator}': {e}") from e

    async def fill(self, locator: str, text: str) -> None:
        try:
            await self.wrapper.input_text(locator, text)
        except PlaywrightTimeoutError as e:
            raise StepTimeoutError(f"Timed out filling '{locator}': {e}") from e
        except PlaywrightError as e:
            raise TargetError(f"Could not fill '{locator}': {e}") from e

    async def screenshot(self) -> Optional[bytes]:
        return await self.wrapper.screenshot_bytes()


class DriverFactoryBuilder:
    """Builds driver factories from settings.

    The engine calls the returned factory once per run.
    """

    @staticmethod
    def create_factory(settings: AutomationSettings) -> DriverFactory:
        """Create a factory for the configured driver type.

        Args:
            settings: Automation settings (browser type, headless mode,
                viewport, step timeout)

        Returns:
            Zero-argument callable producing a fresh driver

        Raises:
            ValueError: If an unsupported browser type is configured
        """
        browser_type = settings.browser_type.lower()
        if browser_type not in ["chromium", "chrome", "edge", "firefox", "webkit"]:
            raise ValueError(f"Unsupported browser type for Playwright: {browser_type}")

        def factory() -> Driver:
            wrapper = PlaywrightWrapper(
                browser_type=browser_type,
                headless=settings.browser_headless,
                viewport=(settings.viewport_width, settings.viewport_height),
                action_timeout=settings.step_timeout_seconds,
            )
            return PlaywrightDriver(wrapper)

        logger.debug(f"Created Playwright driver factory for {browser_type}")
        return factory
