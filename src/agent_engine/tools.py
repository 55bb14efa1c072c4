# tools.py
# Tool adapters: the external control surface the gateway drives.
# The engine never calls these directly; every action goes through ToolGateway.

import asyncio
from typing import Any

from agent_engine.errors import ToolError

_INVENTORY_SCRIPT = """
(nodes) => nodes.slice(0, LIMIT).map((el) => ({
  tag: el.tagName.toLowerCase(),
  text: (el.innerText || el.value || el.getAttribute('aria-label') || '').trim().slice(0, 80),
  href: el.getAttribute('href'),
  name: el.getAttribute('name'),
  type: el.getAttribute('type'),
}))
"""


class PlaywrightTool:
    """
    Chromium/Firefox/WebKit control via playwright.async_api.

    One page per run id. The browser is launched on first use and shared by
    every run of this tool instance.
    """

    def __init__(
        self,
        browser: str = "chromium",
        headless: bool = True,
        navigation_timeout_ms: int = 30000,
        text_limit: int = 20000,
        inventory_limit: int = 50,
    ) -> None:
        self._browser_name = browser
        self._headless = headless
        self._timeout_ms = navigation_timeout_ms
        self._text_limit = text_limit
        self._inventory_limit = inventory_limit
        self._playwright = None
        self._browser = None
        self._pages: dict[str, Any] = {}
        self._lock = asyncio.Lock()

    async def _ensure_browser(self):
        async with self._lock:
            if self._browser is None or not self._browser.is_connected():
                from playwright.async_api import async_playwright

                if self._playwright is None:
                    self._playwright = await async_playwright().start()
                launcher = getattr(self._playwright, self._browser_name, None)
                if launcher is None:
                    raise ToolError(f"Unsupported browser '{self._browser_name}'.")
                self._browser = await launcher.launch(headless=self._headless)
            return self._browser

    async def _page(self, run_id: str):
        page = self._pages.get(run_id)
        if page is None or page.is_closed():
            browser = await self._ensure_browser()
            context = await browser.new_context(viewport={"width": 1280, "height": 720})
            page = await context.new_page()
            self._pages[run_id] = page
        return page

    async def _describe(self, page) -> dict[str, Any]:
        return {"url": page.url, "title": await page.title()}

    async def goto(self, run_id: str, url: str) -> dict[str, Any]:
        page = await self._page(run_id)
        await page.goto(url, wait_until="domcontentloaded", timeout=self._timeout_ms)
        return await self._describe(page)

    async def reload(self, run_id: str) -> dict[str, Any]:
        page = self._pages.get(run_id)
        if page is None or page.is_closed() or page.url == "about:blank":
            raise ToolError("No page loaded for this run; goto first.")
        await page.reload(wait_until="domcontentloaded", timeout=self._timeout_ms)
        return await self._describe(page)

    async def snapshot(self, run_id: str) -> dict[str, Any]:
        page = await self._page(run_id)
        text = await page.inner_text("body") if page.url != "about:blank" else ""
        elements = await page.eval_on_selector_all(
            "a, button, input, select, textarea",
            _INVENTORY_SCRIPT.replace("LIMIT", str(self._inventory_limit)),
        )
        observation = await self._describe(page)
        observation["text"] = text[: self._text_limit]
        observation["elements"] = elements
        return observation

    async def close_run(self, run_id: str) -> None:
        page = self._pages.pop(run_id, None)
        if page is not None and not page.is_closed():
            await page.context.close()

    async def close(self) -> None:
        for run_id in list(self._pages):
            await self.close_run(run_id)
        async with self._lock:
            if self._browser is not None:
                await self._browser.close()
                self._browser = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None
