"""Presentation Dispatcher.

Opens a presentation surface for each admitted challenge and turns the
surface's signals into session outcomes:

- on_submitted(value, created_at) -> Solved, then the surface is closed
- on_closed()                     -> Failed(SURFACE_CLOSED)
- deadline expiry                 -> Failed(TIMEOUT), then the surface is closed

Every path goes through ``SessionRegistry.complete_once``. Closing the surface
after a solve makes the page disconnect, which raises on_closed; that second
signal finds the session already responded and is dropped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from urllib.parse import urlencode, urlsplit

from ...schemas.captcha import CaptchaRequestData
from .exceptions import SurfaceError
from .registry import Failed, FailureReason, Session, SessionRegistry, Solved
from .surface import SurfaceHandle, SurfaceLauncher

logger = logging.getLogger(__name__)


def build_target_url(request: CaptchaRequestData, base_url: str | None = None) -> str:
    """Build the URL the surface loads for ``request``.

    The page reads sitekey, captchaId and autoClick back from the query. When
    ``base_url`` overrides the page URL, pageUrl travels as a parameter too.
    """
    params = {
        "sitekey": request.sitekey,
        "captchaId": request.captcha_id,
        "autoClick": "true" if request.auto_click else "false",
    }
    base = request.page_url
    if base_url:
        base = base_url
        params["pageUrl"] = request.page_url

    separator = "&" if urlsplit(base).query else "?"
    return f"{base}{separator}{urlencode(params)}"


class PresentationDispatcher:
    """Connects sessions to presentation surfaces.

    Args:
        registry: Registry owning the sessions.
        launcher: Opens surfaces (see ``surface.SurfaceLauncher``).
        timeout: Seconds before an unanswered session fails. 0 or None disables.
        base_url: Optional base URL for surfaces instead of the request's pageUrl.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        launcher: SurfaceLauncher,
        timeout: float | None = None,
        base_url: str | None = None,
    ) -> None:
        self.registry = registry
        self.launcher = launcher
        self.timeout = timeout
        self.base_url = base_url

    def present(self, request: CaptchaRequestData, session: Session) -> SurfaceHandle | None:
        """Open a surface for ``request`` and wire its signals to ``session``.

        Returns:
            The surface handle, or None if the surface failed to open (the
            session is then already completed with SURFACE_ERROR).
        """
        captcha_id = request.captcha_id

        def on_closed() -> None:
            if self.registry.complete_once(captcha_id, Failed(FailureReason.SURFACE_CLOSED), session=session):
                logger.info(f"[DISPATCH] Surface closed before solve for {captcha_id}")

        def on_submitted(value: str, created_at: Any) -> None:
            delivered = self.registry.complete_once(captcha_id, Solved(value, created_at), session=session)
            if delivered:
                logger.info(f"[DISPATCH] Captcha {captcha_id} solved after {session.age:.1f}s")
            # Close regardless of delivery so no surface is left open
            if session.surface is not None:
                session.surface.close()

        try:
            handle = self.launcher.open(
                build_target_url(request, self.base_url),
                captcha_id=captcha_id,
                on_closed=on_closed,
                on_submitted=on_submitted,
            )
        except SurfaceError as e:
            logger.error(f"[DISPATCH] Could not open surface for {captcha_id}: {e}")
            self.registry.complete_once(captcha_id, Failed(FailureReason.SURFACE_ERROR), session=session)
            return None
        except Exception as e:
            logger.exception(f"[DISPATCH] Unexpected error opening surface for {captcha_id}: {e}")
            self.registry.complete_once(captcha_id, Failed(FailureReason.SURFACE_ERROR), session=session)
            return None

        session.surface = handle

        # Surface may have reported back while opening
        if session.responded:
            handle.close()
            return handle

        if self.timeout:
            session.deadline = asyncio.get_running_loop().call_later(self.timeout, self._expire, session)

        logger.info(f"[DISPATCH] Presented captcha {captcha_id}")
        return handle

    def _expire(self, session: Session) -> None:
        session.deadline = None
        if self.registry.complete_once(session.correlation_id, Failed(FailureReason.TIMEOUT), session=session):
            logger.warning(f"[DISPATCH] Captcha {session.correlation_id} timed out after {self.timeout}s")
        if session.surface is not None:
            session.surface.close()

    def abort(self, session: Session, reason: FailureReason = FailureReason.SHUTDOWN) -> bool:
        """Fail ``session`` with ``reason`` and close its surface."""
        delivered = self.registry.complete_once(session.correlation_id, Failed(reason), session=session)
        if session.surface is not None:
            session.surface.close()
        return delivered
