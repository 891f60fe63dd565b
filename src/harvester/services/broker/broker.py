"""Captcha Broker.

Owns one session registry, one presentation dispatcher and an optional event
publisher. Each application instance builds its own broker, so independent
brokers can run side by side (e.g. in tests).

Usage:
    broker = CaptchaBroker(WebSocketSurfaceHub(), timeout=600)

    # Per harvest connection
    handler = broker.channel(send=websocket_send_json)
    await handler.handle_frame(raw)

    # On process exit
    await broker.shutdown()
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from .browser import ChromiumWindowLauncher
from .dispatcher import PresentationDispatcher
from .protocol import ChannelProtocolHandler, SendFunc
from .pubsub import HarvestEventPublisher
from .registry import Failed, FailureReason, Outcome, ResponseSink, Session, SessionRegistry, Solved
from .surface import SurfaceLauncher, WebSocketSurfaceHub

if TYPE_CHECKING:
    from ...core.config import Settings
    from ...schemas.captcha import CaptchaRequestData

logger = logging.getLogger(__name__)


class CaptchaBroker:
    """Admits challenges, presents them and routes their single outcome.

    Args:
        launcher: Opens presentation surfaces.
        timeout: Per-session deadline in seconds. 0 or None disables.
        base_url: Optional surface base URL instead of each request's pageUrl.
        events: Optional lifecycle event publisher.
    """

    def __init__(
        self,
        launcher: SurfaceLauncher,
        timeout: float | None = None,
        base_url: str | None = None,
        events: HarvestEventPublisher | None = None,
    ) -> None:
        self.launcher = launcher
        self.registry = SessionRegistry(on_complete=self._on_complete)
        self.dispatcher = PresentationDispatcher(self.registry, launcher, timeout=timeout, base_url=base_url)
        self.events = events
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        launcher: SurfaceLauncher | None = None,
        redis_client: Any = None,
    ) -> CaptchaBroker:
        """Build a broker from application settings."""
        if launcher is None:
            browser = ChromiumWindowLauncher.from_settings(settings) if settings.HARVEST_OPEN_BROWSER else None
            launcher = WebSocketSurfaceHub(browser=browser, reconnect_grace=settings.HARVEST_RECONNECT_GRACE)

        events = None
        if redis_client is not None:
            events = HarvestEventPublisher(redis_client, channel=settings.HARVEST_EVENTS_CHANNEL)

        return cls(
            launcher,
            timeout=settings.HARVEST_SESSION_TIMEOUT,
            base_url=settings.HARVEST_SURFACE_BASE_URL,
            events=events,
        )

    def channel(self, send: SendFunc, client: str = "client") -> ChannelProtocolHandler:
        """Create a protocol handler for a new harvest connection."""
        return ChannelProtocolHandler(self, send, client=client)

    def submit(self, request: CaptchaRequestData, sink: ResponseSink) -> Session:
        """Admit ``request`` and present it.

        Raises:
            DuplicateIdError: captchaId already has an active session.
        """
        session = self.registry.create(request.captcha_id, sink)
        if self.events is not None:
            self._spawn(self.events.publish_session_created(request.captcha_id, request.page_url, request.auto_click))
        self.dispatcher.present(request, session)
        return session

    def reject(self, captcha_id: str | None, reason: str) -> None:
        if self.events is not None:
            self._spawn(self.events.publish_rejected(captcha_id, reason))

    def _on_complete(self, session: Session, outcome: Outcome) -> None:
        if self.events is None:
            return
        if isinstance(outcome, Solved):
            self._spawn(self.events.publish_solved(session.correlation_id, duration=session.age))
        elif isinstance(outcome, Failed):
            self._spawn(self.events.publish_failed(session.correlation_id, outcome.reason.value, duration=session.age))

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def shutdown(self) -> None:
        """Fail every pending session and close all surfaces."""
        pending = [self.registry.get(captcha_id) for captcha_id in self.registry.active_ids()]
        for session in pending:
            if session is not None:
                self.dispatcher.abort(session, FailureReason.SHUTDOWN)
        self.launcher.close_all()
        await self.launcher.wait_closed()

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self.events is not None:
            await self.events.close()

        logger.info(f"[BROKER] Shut down, failed {len(pending)} pending sessions")
