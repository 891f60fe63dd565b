"""
Harvest Event Publisher

Publishes captcha session lifecycle events to Redis pub/sub:
- session_created: Challenge admitted and presented
- solved: Token delivered to the requester
- failed: Session ended without a token (closed, timeout, ...)
- rejected: Request refused (validation, duplicate id)

Publishing is best effort. Errors are logged and never reach the broker.

Usage:
    events = HarvestEventPublisher(redis_client)
    await events.publish_session_created("c1", "https://example.com")
    await events.publish_failed("c1", "timeout")
"""

import logging
from datetime import UTC, datetime
from typing import Any, cast

from ...core.config import settings
from ...schemas.captcha import HarvestEvent, HarvestEventType

logger = logging.getLogger(__name__)


class HarvestEventPublisher:
    """
    Redis publisher for harvest session events.

    Example:
        events = HarvestEventPublisher(Redis.from_url(settings.REDIS_EVENTS_URL))
        await events.publish_solved("c1")
        await events.close()
    """

    def __init__(self, redis_client, channel: str | None = None):
        """
        Initialize publisher.

        Args:
            redis_client: Async Redis client.
            channel: Channel override (defaults to HARVEST_EVENTS_CHANNEL).
        """
        self._redis = redis_client
        self._channel = channel or settings.HARVEST_EVENTS_CHANNEL

    @property
    def channel(self) -> str:
        return self._channel

    async def close(self) -> None:
        """Close the underlying Redis client."""
        try:
            await self._redis.aclose()
        except Exception as e:
            logger.warning(f"[EVENTS] Error closing Redis client: {e}")

    async def _publish(self, event_type: HarvestEventType, payload: dict[str, Any]) -> int:
        """
        Publish an event to the harvest events channel.

        Returns:
            Number of subscribers that received the message.
        """
        event = HarvestEvent(
            type=event_type,
            payload=payload,
            timestamp=datetime.now(UTC),
        )

        try:
            count = await self._redis.publish(self._channel, event.model_dump_json())
            logger.debug(f"[EVENTS] Published {event_type.value} to {count} subscribers")
            return cast(int, count)
        except Exception as e:
            logger.error(f"[EVENTS] Error publishing event: {e}")
            return 0

    async def publish_session_created(self, captcha_id: str, page_url: str, auto_click: bool = False) -> int:
        """Publish session_created event."""
        return await self._publish(
            HarvestEventType.SESSION_CREATED,
            {
                "captcha_id": captcha_id,
                "page_url": page_url,
                "auto_click": auto_click,
            },
        )

    async def publish_solved(self, captcha_id: str, duration: float | None = None) -> int:
        """Publish solved event. The token itself is never published."""
        return await self._publish(
            HarvestEventType.SOLVED,
            {
                "captcha_id": captcha_id,
                "duration": duration,
            },
        )

    async def publish_failed(self, captcha_id: str, reason: str, duration: float | None = None) -> int:
        """Publish failed event."""
        return await self._publish(
            HarvestEventType.FAILED,
            {
                "captcha_id": captcha_id,
                "reason": reason,
                "duration": duration,
            },
        )

    async def publish_rejected(self, captcha_id: str | None, reason: str) -> int:
        """Publish rejected event."""
        return await self._publish(
            HarvestEventType.REJECTED,
            {
                "captcha_id": captcha_id,
                "reason": reason,
            },
        )
