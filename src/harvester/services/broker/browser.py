"""Chromium windows for captcha surfaces.

Each challenge gets its own visible Chromium window driven by DrissionPage.
The window routes page traffic through the view server acting as an HTTP
proxy, so loading ``http://<site>/...`` renders the captcha page under the
site's own hostname (site keys are bound to that hostname). Google and gstatic
hosts bypass the proxy so the widget itself loads normally.

The window's lifetime is the close signal: a watcher polls the tab and calls
``on_exit`` once it is gone. ``close()`` quits the browser.

Usage:
    launcher = ChromiumWindowLauncher(proxy_server="http://127.0.0.1:8456")
    window = launcher.launch(url, on_exit=surface.window_closed)
    window.close()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit, urlunsplit

from .exceptions import SurfaceError

if TYPE_CHECKING:
    from ...core.config import Settings

logger = logging.getLogger(__name__)

PageFactory = Callable[[str], Any]


def proxied_url(target_url: str) -> str:
    """Plain-http form of ``target_url``.

    The view server answers proxied GETs but not CONNECT tunnels, so https
    targets are loaded over http. Hostname, path and query are unchanged.
    """
    parts = urlsplit(target_url)
    if parts.scheme != "https":
        return target_url
    return urlunsplit(("http", parts.netloc, parts.path, parts.query, parts.fragment))


class ChromiumWindow:
    """One Chromium window showing a captcha page."""

    def __init__(
        self,
        launcher: ChromiumWindowLauncher,
        url: str,
        on_exit: Callable[[], None],
    ) -> None:
        self.url = url
        self._launcher = launcher
        self._on_exit = on_exit
        self._page: Any = None
        self._closing = False
        self._task: asyncio.Task | None = None

    @property
    def page(self) -> Any:
        return self._page

    def start(self) -> None:
        self._task = self._launcher.spawn(self._run())

    async def _run(self) -> None:
        try:
            self._page = await self._launcher.run_sync(self._launcher.page_factory, self.url)
        except Exception as e:
            logger.error(f"[BROWSER] Failed to open window for {self.url}: {e}")
            self._exit()
            return

        if self._closing:
            await self._quit()
            return

        logger.info(f"[BROWSER] Window open: {self.url}")

        while not self._closing:
            await asyncio.sleep(self._launcher.poll_interval)
            if self._closing:
                break
            if not await self._launcher.run_sync(self._is_alive):
                logger.info(f"[BROWSER] Window closed by user: {self.url}")
                self._page = None
                self._exit()
                return

    def _is_alive(self) -> bool:
        try:
            return bool(self._page.states.is_alive)
        except Exception:
            return False

    def _exit(self) -> None:
        if not self._closing:
            self._on_exit()

    def close(self) -> None:
        """Quit the browser. The exit callback is not called for a forced close."""
        if self._closing:
            return
        self._closing = True
        # A window still launching is quit by _run once the page exists
        if self._page is not None:
            self._launcher.spawn(self._quit())

    async def _quit(self) -> None:
        page, self._page = self._page, None
        if page is None:
            return
        try:
            await self._launcher.run_sync(page.quit)
        except Exception as e:
            logger.debug(f"[BROWSER] Error quitting window for {self.url}: {e}")


class ChromiumWindowLauncher:
    """Opens DrissionPage Chromium windows proxied through the view server.

    Args:
        proxy_server: View server address used as the HTTP proxy.
        proxy_bypass: Chromium proxy bypass list (``;`` separated).
        browser_path: Chromium/Chrome executable, or None for the default.
        window_size: ``"width,height"`` of each window.
        poll_interval: Seconds between window liveness checks.
        page_factory: Callable opening a page for a URL (defaults to a
            DrissionPage ``ChromiumPage``).
    """

    def __init__(
        self,
        proxy_server: str,
        proxy_bypass: str = "*.google.com;*.gstatic.com",
        browser_path: str | None = None,
        window_size: str = "360,640",
        poll_interval: float = 1.0,
        page_factory: PageFactory | None = None,
        thread_pool: ThreadPoolExecutor | None = None,
    ) -> None:
        self.proxy_server = proxy_server
        self.proxy_bypass = proxy_bypass
        self.browser_path = browser_path
        self.window_size = window_size
        self.poll_interval = poll_interval
        self.page_factory = page_factory or self._open_page_sync
        self._thread_pool = thread_pool or ThreadPoolExecutor(max_workers=4)
        self._owns_pool = thread_pool is None
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> ChromiumWindowLauncher:
        return cls(
            proxy_server=settings.VIEW_BASE_URL,
            proxy_bypass=settings.HARVEST_PROXY_BYPASS,
            browser_path=settings.HARVEST_BROWSER_PATH,
            window_size=settings.HARVEST_WINDOW_SIZE,
            poll_interval=settings.HARVEST_WINDOW_POLL_INTERVAL,
        )

    def launch(self, target_url: str, on_exit: Callable[[], None]) -> ChromiumWindow:
        """Start opening a window for ``target_url``.

        Raises:
            SurfaceError: No running event loop to drive the window.
        """
        try:
            asyncio.get_running_loop()
        except RuntimeError as e:
            raise SurfaceError(f"Cannot launch browser window: {e}", target_url=target_url)

        window = ChromiumWindow(self, proxied_url(target_url), on_exit)
        window.start()
        return window

    def build_options(self) -> Any:
        """ChromiumOptions for a fresh, proxied, visible browser."""
        try:
            from DrissionPage import ChromiumOptions
        except ImportError as e:
            raise SurfaceError("DrissionPage not installed. Install with: pip install DrissionPage") from e

        options = ChromiumOptions()

        # Separate browser process and profile per window
        options.auto_port()

        if self.browser_path:
            options.set_browser_path(self.browser_path)

        options.set_proxy(self.proxy_server)
        options.set_argument("--proxy-bypass-list", self.proxy_bypass)
        options.set_argument("--window-size", self.window_size)
        return options

    def _open_page_sync(self, url: str) -> Any:
        from DrissionPage import ChromiumPage

        page = ChromiumPage(self.build_options())
        page.get(url)
        return page

    async def run_sync(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._thread_pool, func, *args)

    def spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_closed(self) -> None:
        """Wait for pending window tasks after every window was closed."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._owns_pool:
            self._thread_pool.shutdown(wait=False)
