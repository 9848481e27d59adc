from typing import Optional, List
from playwright.async_api import (
    async_playwright,
    Playwright,
    Browser,
    Page,
    BrowserContext,
)


class PlaywrightWrapper:
    DEFAULT_ACTION_TIMEOUT = 30  # Default timeout (seconds) for navigation and element actions
    DEFAULT_VIEWPORT = (1280, 720)
    DEFAULT_LAUNCH_ARGS = ["--no-sandbox", "--disable-dev-shm-usage"]

    def __init__(
        self,
        browser_type: str = "chromium",
        headless: bool = True,
        channel: Optional[str] = None,
        viewport: Optional[tuple] = None,
        action_timeout: float = DEFAULT_ACTION_TIMEOUT,
        launch_args: Optional[List[str]] = None,
    ):
        """
        Args:
            browser_type: Browser type string (e.g., 'chromium', 'firefox', 'webkit').
                For Chrome, use 'chrome' and for Edge, use 'edge'.
            headless: Whether to run browser in headless mode (default: True).
            channel: Optional browser channel (e.g., 'chrome', 'msedge').
            viewport: (width, height) of the page viewport.
            action_timeout: Default timeout in seconds for page actions.
            launch_args: Extra command line arguments for the browser process.
        """
        # Map browser_type to the actual Playwright engine
        if browser_type in ["chrome", "edge"]:
            self.browser_type = "chromium"  # Both Chrome and Edge use Chromium engine
        else:
            self.browser_type = browser_type

        # Map browser_type to channel for Chrome and Edge
        if browser_type == "chrome":
            self.channel = "chrome"
        elif browser_type == "edge":
            self.channel = "msedge"
        else:
            self.channel = channel

        self.headless = headless
        self.viewport = viewport or self.DEFAULT_VIEWPORT
        self.action_timeout = action_timeout
        self.launch_args = (
            list(launch_args) if launch_args is not None else list(self.DEFAULT_LAUNCH_ARGS)
        )
        self.playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        """Launch the browser and open a single page in a fresh context."""
        self.playwright = await async_playwright().start()
        browser_launcher = getattr(self.playwright, self.browser_type)

        # Prepare launch options
        launch_options = {"headless": self.headless, "args": self.launch_args}
        if self.channel:
            launch_options["channel"] = self.channel

        try:
            self.browser = await browser_launcher.launch(**launch_options)
            width, height = self.viewport
            self.context = await self.browser.new_context(
                viewport={"width": width, "height": height},
                ignore_https_errors=True,
            )
            self.page = await self.context.new_page()
            self.page.set_default_timeout(self.action_timeout * 1000)
        except Exception:
            await self.close()
            raise
        return self.page

    def _require_page(self) -> Page:
        if not self.page:
            raise RuntimeError(
                "Page not initialized. Use 'async with PlaywrightWrapper()' block."
            )
        return self.page

    async def navigate(
        self,
        url: str,
        wait_until: str = "domcontentloaded",
        timeout: Optional[float] = None,
    ):
        """
        Navigate the current page and wait for the specified event.
        Args:
            url: URL to open.
            wait_until: When to consider navigation succeeded. Supported values:
                - 'load': Waits for the load event (all resources loaded).
                - 'domcontentloaded': Waits for the DOMContentLoaded event (default; DOM ready, but not all resources).
                - 'networkidle': Waits until there are no network connections for at least 500 ms.
                - 'commit': Considers navigation finished when the network response is received and the document starts loading.
            timeout: Max seconds to wait for navigation (default action_timeout).
        """
        page = self._require_page()
        timeout = self.action_timeout if timeout is None else timeout
        await page.goto(url, wait_until=wait_until, timeout=timeout * 1000)
        return page

    async def click_element(self, selector: str, timeout: Optional[float] = None):
        """
        Click the first element matching the given selector.

        Args:
            selector: Selector string. Can be either:
                - A CSS selector (e.g., 'button.submit')
                - An XPath selector by prefixing with 'xpath=' (e.g., 'xpath=//button[@id="submit"]')
                - A text selector (e.g., 'text=Apply Now')
                See Playwright docs for supported selector engines.
            timeout: Max seconds to wait for the element (default action_timeout).
        Raises:
            RuntimeError: If page not initialized.
            playwright.async_api.TimeoutError: If no element became actionable in time.
        """
        page = self._require_page()
        timeout = self.action_timeout if timeout is None else timeout
        await page.click(selector, timeout=timeout * 1000)

    async def input_text(self, selector: str, value: str, timeout: Optional[float] = None):
        """
        Fill the input or textarea matching the selector with the given value.
        Args:
            selector: Selector string (CSS or XPath, e.g., 'input#foo' or 'xpath=//input[@id="foo"]').
            value: Text to input.
            timeout: Max seconds to wait for the element (default action_timeout).
        Raises:
            RuntimeError: If page not initialized.
            playwright.async_api.TimeoutError: If no element became editable in time.
        """
        page = self._require_page()
        timeout = self.action_timeout if timeout is None else timeout
        await page.fill(selector, value, timeout=timeout * 1000)

    async def screenshot_bytes(self, full_page: bool = False) -> bytes:
        """Return a PNG screenshot of the current page."""
        page = self._require_page()
        return await page.screenshot(type="png", full_page=full_page)

    async def close(self):
        if self.page:
            try:
                await self.page.close()
            except Exception:
                pass
            self.page = None
        if self.context:
            await self.context.close()
            self.context = None
        if self.browser:
            await self.browser.close()
            self.browser = None
        if self.playwright:
            await self.playwright.stop()
            self.playwright = None
