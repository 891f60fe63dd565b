"""Presentation surfaces for captcha challenges.

A surface is whatever a human looks at to solve a challenge. The broker only
relies on a narrow contract:

    handle = launcher.open(target_url, captcha_id=..., on_closed=..., on_submitted=...)
    handle.close()                      # idempotent

    on_closed()                         # surface went away without a solve
    on_submitted(value, created_at)     # human submitted a token

The concrete surface shipped here is a browser page (served by the view
server) that connects back to ``/ws/surface/{captchaId}``. A submit frame on
that socket is the solve signal. With a Chromium window (see ``browser``) the
window going away is the close signal and the page may reconnect freely
(reloads, navigation). Without one, the page socket staying away longer than
the reconnect grace period is the close signal.

Usage:
    hub = WebSocketSurfaceHub(browser=ChromiumWindowLauncher(proxy_server=...))
    handle = hub.open(url, captcha_id="c1", on_closed=..., on_submitted=...)

    # In the surface WebSocket endpoint
    surface = hub.get("c1")
    surface.attach(websocket)
    surface.handle_frame(await websocket.receive_text())
    surface.detach(websocket)
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import ValidationError as PydanticValidationError

from ...schemas.captcha import CaptchaSubmitData, MessageType
from .exceptions import SurfaceError

if TYPE_CHECKING:
    from fastapi import WebSocket

    from .browser import ChromiumWindow, ChromiumWindowLauncher

logger = logging.getLogger(__name__)

CloseCallback = Callable[[], None]
SubmitCallback = Callable[[str, Any], None]


class SurfaceHandle(ABC):
    """Handle to one open presentation surface.

    Each event callback fires at most once. ``close`` may be called any number
    of times; only the first call does anything.
    """

    def __init__(
        self,
        captcha_id: str,
        target_url: str,
        on_closed: CloseCallback,
        on_submitted: SubmitCallback,
    ) -> None:
        self.captcha_id = captcha_id
        self.target_url = target_url
        self._on_closed = on_closed
        self._on_submitted = on_submitted
        self._closed = False
        self._closed_notified = False
        self._submitted = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Force the surface shut."""
        if self._closed:
            return
        self._closed = True
        logger.info(f"[SURFACE] Closing surface for {self.captcha_id}")
        self._close()

    @abstractmethod
    def _close(self) -> None: ...

    def notify_closed(self) -> None:
        """Report that the surface went away."""
        if self._closed_notified:
            return
        self._closed_notified = True
        self._closed = True
        self._on_closed()

    def notify_submitted(self, value: str, created_at: Any = None) -> None:
        """Report a human-submitted token."""
        if self._submitted:
            return
        self._submitted = True
        self._on_submitted(value, created_at)


class SurfaceLauncher(Protocol):
    def open(
        self,
        target_url: str,
        *,
        captcha_id: str,
        on_closed: CloseCallback,
        on_submitted: SubmitCallback,
    ) -> SurfaceHandle: ...

    def close_all(self) -> None: ...

    async def wait_closed(self) -> None: ...


class WebSocketSurface(SurfaceHandle):
    """Surface backed by a captcha page connected over a WebSocket."""

    def __init__(self, hub: WebSocketSurfaceHub, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._hub = hub
        self.websocket: WebSocket | None = None
        self.window: ChromiumWindow | None = None
        self._grace: asyncio.TimerHandle | None = None

    @property
    def attached(self) -> bool:
        return self.websocket is not None

    def attach(self, websocket: WebSocket) -> None:
        if self._grace is not None:
            self._grace.cancel()
            self._grace = None
            logger.info(f"[SURFACE] Page reconnected for {self.captcha_id}")
        self.websocket = websocket
        logger.info(f"[SURFACE] Page connected for {self.captcha_id}")

    def detach(self, websocket: WebSocket) -> None:
        """The page socket is gone.

        With a window, only the window closing ends the surface. Without one,
        the page has ``reconnect_grace`` seconds to come back.
        """
        if self.websocket is not websocket:
            return
        self.websocket = None
        logger.info(f"[SURFACE] Page disconnected for {self.captcha_id}")

        if self.window is not None or self._closed:
            return

        grace = self._hub.reconnect_grace
        if grace <= 0:
            self._abandon()
            return
        self._grace = asyncio.get_running_loop().call_later(grace, self._abandon)

    def _abandon(self) -> None:
        self._grace = None
        if self.websocket is not None:
            return
        logger.info(f"[SURFACE] Page did not come back for {self.captcha_id}")
        self._hub.discard(self)
        self.notify_closed()

    def window_closed(self) -> None:
        """Exit callback of the Chromium window."""
        self.window = None
        if self._grace is not None:
            self._grace.cancel()
            self._grace = None
        self._hub.discard(self)
        self.notify_closed()

    def handle_frame(self, raw: str) -> None:
        """Handle one frame sent by the captcha page."""
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"[SURFACE] Invalid JSON from page {self.captcha_id}")
            return

        if not isinstance(message, dict) or message.get("type") != MessageType.CAPTCHA_SUBMIT.value:
            return

        try:
            data = CaptchaSubmitData.model_validate(message.get("data"))
        except PydanticValidationError as e:
            logger.warning(f"[SURFACE] Invalid submit from page {self.captcha_id}: {e.error_count()} errors")
            return

        logger.info(f"[SURFACE] Token submitted for {self.captcha_id} (length: {len(data.value)})")
        self.notify_submitted(data.value, data.created_at)

    def _close(self) -> None:
        self._hub.discard(self)
        if self._grace is not None:
            self._grace.cancel()
            self._grace = None

        window, self.window = self.window, None
        if window is not None:
            window.close()

        websocket, self.websocket = self.websocket, None
        if websocket is not None:
            self._hub.spawn(self._close_socket(websocket))

    async def _close_socket(self, websocket: WebSocket) -> None:
        try:
            await websocket.send_text(json.dumps({"type": MessageType.CLOSE.value}))
            await websocket.close()
        except Exception as e:
            logger.debug(f"[SURFACE] Error closing page socket for {self.captcha_id}: {e}")


class WebSocketSurfaceHub:
    """Launcher and lookup table for WebSocket-backed surfaces.

    Args:
        browser: Opens a Chromium window per surface. None leaves opening the
            target URL to the operator.
        reconnect_grace: Seconds a page without a window may stay disconnected
            before the surface counts as closed. 0 closes on first disconnect.
    """

    def __init__(
        self,
        browser: ChromiumWindowLauncher | None = None,
        reconnect_grace: float = 0,
    ) -> None:
        self.browser = browser
        self.reconnect_grace = reconnect_grace
        self._surfaces: dict[str, WebSocketSurface] = {}
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._surfaces)

    def get(self, captcha_id: str) -> WebSocketSurface | None:
        return self._surfaces.get(captcha_id)

    def open(
        self,
        target_url: str,
        *,
        captcha_id: str,
        on_closed: CloseCallback,
        on_submitted: SubmitCallback,
    ) -> WebSocketSurface:
        if captcha_id in self._surfaces:
            raise SurfaceError("Surface already open", captcha_id=captcha_id, target_url=target_url)

        surface = WebSocketSurface(self, captcha_id, target_url, on_closed, on_submitted)

        if self.browser is not None:
            try:
                surface.window = self.browser.launch(target_url, on_exit=surface.window_closed)
            except SurfaceError:
                raise
            except Exception as e:
                raise SurfaceError(f"Failed to open browser: {e}", captcha_id=captcha_id, target_url=target_url)
        else:
            logger.info(f"[SURFACE] No browser configured, open manually: {target_url}")

        self._surfaces[captcha_id] = surface
        logger.info(f"[SURFACE] Opened surface for {captcha_id}: {target_url}")
        return surface

    def discard(self, surface: WebSocketSurface) -> None:
        if self._surfaces.get(surface.captcha_id) is surface:
            del self._surfaces[surface.captcha_id]

    def spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def close_all(self) -> None:
        for surface in list(self._surfaces.values()):
            surface.close()

    async def wait_closed(self) -> None:
        """Wait for page sockets and browser windows closed by ``close_all``."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self.browser is not None:
            await self.browser.wait_closed()
