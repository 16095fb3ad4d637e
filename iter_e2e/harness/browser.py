# Where: iter_e2e/harness/browser.py
# What: Headless Chromium capture for UI tests, persisted through the ResultStore.
# Why: UI runs must leave PNG evidence; every browser call is bounded by one timeout.
from __future__ import annotations

import logging
import time
from typing import Any, Callable, TypeVar

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from iter_e2e.harness.errors import BrowserError, BrowserTimeoutError, BrowserUnavailableError
from iter_e2e.harness.results import ResultStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

VIEWPORT = {"width": 1280, "height": 800}
LAUNCH_ARGS = ["--no-sandbox", "--disable-gpu", "--disable-dev-shm-usage"]


class BrowserCapture:
    """
    One browser, one page.

    Use ``BrowserCapture.launch(...)`` or the context manager form; ``close()``
    is idempotent.
    """

    def __init__(self, base_url: str, store: ResultStore, page, *, timeout: float = 60.0, closer=None):
        self.base_url = base_url.rstrip("/")
        self.store = store
        self.page = page
        self.timeout = timeout
        self._closer = closer
        page.set_default_timeout(self._timeout_ms)

    @classmethod
    def launch(cls, base_url: str, store: ResultStore, *, timeout: float = 60.0) -> "BrowserCapture":
        playwright = None
        try:
            playwright = sync_playwright().start()
            browser = playwright.chromium.launch(headless=True, args=LAUNCH_ARGS)
            context = browser.new_context(viewport=VIEWPORT)
            page = context.new_page()
        except PlaywrightError as exc:
            if playwright is not None:
                playwright.stop()
            raise BrowserUnavailableError("Headless browser could not be launched", cause=exc)

        def _close() -> None:
            try:
                browser.close()
            finally:
                playwright.stop()

        store.log("Browser launched (%dx%d)", VIEWPORT["width"], VIEWPORT["height"])
        return cls(base_url, store, page, timeout=timeout, closer=_close)

    @property
    def _timeout_ms(self) -> float:
        return self.timeout * 1000

    def _guard(self, description: str, action: Callable[[], T]) -> T:
        try:
            return action()
        except PlaywrightTimeoutError as exc:
            self.store.log("Browser timeout: %s", description)
            raise BrowserTimeoutError(f"{description} timed out after {self.timeout}s", cause=exc)
        except PlaywrightError as exc:
            self.store.log("Browser error: %s: %s", description, exc)
            raise BrowserError(f"{description} failed", cause=exc)

    def navigate_absolute(self, url: str) -> None:
        self.store.log("Navigating to %s", url)

        def _go() -> None:
            self.page.goto(url, timeout=self._timeout_ms)
            self.page.wait_for_selector("body", state="attached", timeout=self._timeout_ms)

        self._guard(f"navigate {url}", _go)

    def navigate(self, path: str) -> None:
        self.navigate_absolute(f"{self.base_url}{path}")

    def _save_png(self, name: str, full_page: bool) -> None:
        data = self._guard(
            f"screenshot {name}",
            lambda: self.page.screenshot(full_page=full_page, timeout=self._timeout_ms),
        )
        self.store.save(f"{name}.png", data)
        self.store.log("Screenshot saved: %s.png", name)

    def screenshot(self, name: str) -> None:
        self._save_png(name, full_page=False)

    def full_page_screenshot(self, name: str) -> None:
        self._save_png(name, full_page=True)

    def navigate_and_screenshot(self, path: str, name: str) -> None:
        self.navigate(path)
        self.full_page_screenshot(name)

    def render_html(self, html: str, name: str) -> None:
        """Load ``html`` directly into the page and save it as ``<name>.png``."""
        self._guard(f"render {name}", lambda: self.page.set_content(html, timeout=self._timeout_ms))
        self.full_page_screenshot(name)

    def wait_visible(self, selector: str) -> None:
        self._guard(
            f"wait visible {selector}",
            lambda: self.page.wait_for_selector(selector, state="visible", timeout=self._timeout_ms),
        )

    def wait_ready(self, selector: str) -> None:
        self._guard(
            f"wait ready {selector}",
            lambda: self.page.wait_for_selector(selector, state="attached", timeout=self._timeout_ms),
        )

    def click(self, selector: str) -> None:
        self._guard(f"click {selector}", lambda: self.page.click(selector, timeout=self._timeout_ms))

    def fill(self, selector: str, value: str) -> None:
        self._guard(f"fill {selector}", lambda: self.page.fill(selector, value, timeout=self._timeout_ms))

    def text(self, selector: str) -> str:
        return self._guard(
            f"text {selector}", lambda: self.page.inner_text(selector, timeout=self._timeout_ms)
        )

    def html(self, selector: str) -> str:
        return self._guard(
            f"html {selector}", lambda: self.page.inner_html(selector, timeout=self._timeout_ms)
        )

    def evaluate(self, expression: str) -> Any:
        return self._guard("evaluate", lambda: self.page.evaluate(expression))

    def sleep(self, seconds: float) -> None:
        time.sleep(min(seconds, self.timeout))

    def close(self) -> None:
        closer, self._closer = self._closer, None
        if closer is None:
            return
        try:
            closer()
        except PlaywrightError as exc:
            logger.warning("Browser close failed: %s", exc)

    def __enter__(self) -> "BrowserCapture":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
