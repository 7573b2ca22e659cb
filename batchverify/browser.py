"""Playwright-backed interaction capability.

The executor only sees `open_session()` and the session methods. The browser
itself lives in a `BrowserPool` owned by whoever built the capability: it is
launched on first use, reused while its health check passes, and relaunched
after a disconnect.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from enum import Enum
import logging
from pathlib import Path
import re
from typing import Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright


logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/119 Safari/537.36"
)
VIEWPORT = {"width": 1280, "height": 900}
LAUNCH_ARGS = ["--no-sandbox", "--disable-blink-features=AutomationControlled"]
NAVIGATION_TIMEOUT_MS = 60000
FORM_WAIT_TIMEOUT_MS = 8000

Launcher = Callable[[], Awaitable[Any]]
HealthCheck = Callable[[Any], bool]


class PoolState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    READY = "ready"
    DISCONNECTED = "disconnected"
    CLOSED = "closed"


class BrowserPoolClosedError(RuntimeError):
    pass


def _is_connected(browser: Any) -> bool:
    return bool(browser.is_connected())


class BrowserPool:
    def __init__(self, launcher: Launcher, health_check: HealthCheck | None = None) -> None:
        self._launcher = launcher
        self._health_check = health_check or _is_connected
        self._browser: Any = None
        self._lock = asyncio.Lock()
        self.state = PoolState.IDLE
        self.launch_count = 0

    async def acquire(self) -> Any:
        async with self._lock:
            if self.state == PoolState.CLOSED:
                raise BrowserPoolClosedError("browser pool is closed")

            if self.state == PoolState.READY:
                if self._health_check(self._browser):
                    return self._browser
                logger.warning("browser disconnected, relaunching", extra={"launch_count": self.launch_count})
                self.state = PoolState.DISCONNECTED
                await self._close_browser()

            self.state = PoolState.STARTING
            try:
                self._browser = await self._launcher()
            except Exception:
                self._browser = None
                self.state = PoolState.IDLE
                raise
            self.launch_count += 1
            self.state = PoolState.READY
            return self._browser

    async def close(self) -> None:
        async with self._lock:
            await self._close_browser()
            self.state = PoolState.CLOSED

    async def _close_browser(self) -> None:
        browser, self._browser = self._browser, None
        if browser is None:
            return
        try:
            await browser.close()
        except PlaywrightError as exc:
            logger.warning("browser close failed", extra={"error": str(exc)})


class PlaywrightSession:
    """One isolated browser context + page, owned by a single attempt."""

    def __init__(self, context: Any, page: Any) -> None:
        self.context = context
        self.page = page

    async def fill_field(self, candidates: Sequence[str], value: str, timeout_ms: int = 3500) -> bool:
        for selector in candidates:
            locator = self.page.locator(selector).first
            try:
                await locator.wait_for(state="visible", timeout=timeout_ms)
                await locator.fill(value, timeout=timeout_ms)
            except PlaywrightError:
                continue
            # Some forms only validate on blur.
            try:
                await locator.press("Tab")
            except PlaywrightError:
                pass
            return True
        return False

    async def click_control(self, candidates: Sequence[str], timeout_ms: int = 2500) -> bool:
        for selector in candidates:
            locator = self.page.locator(selector).first
            try:
                await locator.wait_for(state="visible", timeout=timeout_ms)
                await locator.click(timeout=timeout_ms)
            except PlaywrightError:
                continue
            return True
        return False

    async def find_text(self, pattern: re.Pattern[str]) -> bool:
        try:
            return await self.page.get_by_text(pattern).first.is_visible()
        except PlaywrightError:
            return False

    async def capture_artifact(self, path: str | Path) -> str:
        out_path = Path(path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            await self.page.screenshot(path=str(out_path), type="jpeg", full_page=True, quality=80)
        except PlaywrightError:
            await self.page.screenshot(path=str(out_path), type="jpeg")
        return str(out_path)

    async def close(self) -> None:
        await self.context.close()


class PlaywrightCapability:
    def __init__(
        self,
        target_url: str,
        *,
        headless: bool = True,
        default_timeout_ms: int = 10000,
        pool: BrowserPool | None = None,
    ) -> None:
        self.target_url = target_url
        self.headless = headless
        self.default_timeout_ms = default_timeout_ms
        self._playwright: Any = None
        self.pool = pool or BrowserPool(self._launch_chromium)

    async def _launch_chromium(self) -> Any:
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(headless=self.headless, args=LAUNCH_ARGS)

    async def open_session(self) -> PlaywrightSession:
        browser = await self.pool.acquire()
        context = await browser.new_context(viewport=VIEWPORT, user_agent=USER_AGENT)
        context.set_default_timeout(self.default_timeout_ms)
        opened = False
        try:
            page = await context.new_page()
            await page.goto(self.target_url, wait_until="domcontentloaded", timeout=NAVIGATION_TIMEOUT_MS)
            try:
                await page.locator("form").first.wait_for(state="visible", timeout=FORM_WAIT_TIMEOUT_MS)
            except PlaywrightTimeoutError:
                pass
            opened = True
            return PlaywrightSession(context, page)
        finally:
            if not opened:
                try:
                    await context.close()
                except PlaywrightError:
                    pass

    async def close(self) -> None:
        await self.pool.close()
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
