"""Playwright (sync API) adapter: one browser per worker thread, one context per task."""
from __future__ import annotations

import threading
from typing import Any, Dict, Optional

from playwright.sync_api import Browser, Error as PlaywrightError, Page, Playwright, sync_playwright

from .logs import CrawlLogger
from .models import DeviceMode
from .sessions import Session

LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-gpu",
    "--no-sandbox",
]

MOBILE_USER_AGENT = (
    "Mozilla/5.0 (Linux; Android 11; Pixel 5) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Mobile Safari/537.36"
)
DESKTOP_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)

DEVICE_PROFILES: Dict[DeviceMode, Dict[str, Any]] = {
    DeviceMode.MOBILE: {
        "user_agent": MOBILE_USER_AGENT,
        "viewport": {"width": 720, "height": 1520},
        "is_mobile": True,
        "has_touch": True,
        "device_scale_factor": 2,
    },
    DeviceMode.DESKTOP: {
        "user_agent": DESKTOP_USER_AGENT,
        "viewport": {"width": 1920, "height": 1080},
        "is_mobile": False,
        "has_touch": False,
        "device_scale_factor": 1,
    },
}


class PlaywrightDriver:
    """Opens pages for crawl tasks.

    Playwright's sync objects are bound to the thread that created them, so
    every worker thread lazily starts its own Playwright instance and
    browser, and must call ``release_thread`` before exiting.
    """

    def __init__(self, headless: bool = True, language: str = "en-US", logger: Optional[CrawlLogger] = None) -> None:
        self._headless = headless
        self._language = language
        self._logger = logger or CrawlLogger()
        self._local = threading.local()

    def _browser(self) -> Browser:
        browser = getattr(self._local, "browser", None)
        if browser is not None and browser.is_connected():
            return browser

        playwright: Optional[Playwright] = getattr(self._local, "playwright", None)
        if playwright is None:
            playwright = sync_playwright().start()
            self._local.playwright = playwright

        browser = playwright.chromium.launch(headless=self._headless, args=LAUNCH_ARGS)
        self._local.browser = browser
        self._logger.debug("Browser launched", thread=threading.current_thread().name)
        return browser

    def open_page(self, session: Optional[Session], device_mode: DeviceMode) -> Page:
        options: Dict[str, Any] = {
            **DEVICE_PROFILES[device_mode],
            "locale": self._language,
            "bypass_csp": True,
            "ignore_https_errors": True,
        }
        if session is not None and session.proxy_url:
            options["proxy"] = {"server": session.proxy_url}

        context = self._browser().new_context(**options)
        return context.new_page()

    def set_language_cookie(self, page: Page, language: str, domain: str) -> None:
        page.context.add_cookies(
            [
                {
                    "name": "locale",
                    "value": language.replace("-", "_"),
                    "domain": f".{domain}",
                    "path": "/",
                    "secure": True,
                }
            ]
        )

    def close_page(self, page: Optional[Page]) -> None:
        """Close a page and its context; a page that is already gone is fine."""
        if page is None:
            return
        try:
            context = page.context
            if not page.is_closed():
                page.close()
            context.close()
        except PlaywrightError as exc:
            self._logger.debug("Closing page failed", error=str(exc))

    def release_thread(self) -> None:
        """Shut down the calling thread's browser and Playwright instance."""
        browser = getattr(self._local, "browser", None)
        playwright = getattr(self._local, "playwright", None)
        self._local.browser = None
        self._local.playwright = None
        try:
            if browser is not None:
                browser.close()
        except PlaywrightError as exc:
            self._logger.debug("Closing browser failed", error=str(exc))
        finally:
            if playwright is not None:
                playwright.stop()

