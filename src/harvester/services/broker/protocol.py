"""Channel Protocol Handler.

One handler per harvest client connection. Parses inbound frames, admits
CaptchaRequests through the broker and sends exactly one outbound frame per
admitted request when its session ends.

Inbound:
    {"type": "CaptchaRequest", "data": {"pageUrl", "sitekey", "captchaId", "autoClick"?}}

Outbound:
    {"type": "CaptchaResponse", "data": {"value", "createdAt"}}
    {"type": "Error", "data": "Captcha Window Closed" | "Captcha Timed Out" |
                              "Invalid Message Format" | "Invalid Captcha Request" |
                              "Duplicate Captcha Id"}

Unknown message types are ignored.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError

from ...schemas.captcha import (
    CaptchaRequestData,
    CaptchaResponseData,
    CaptchaResponseFrame,
    ErrorFrame,
    ErrorMessage,
    MessageType,
)
from .exceptions import DuplicateIdError, MalformedFrameError, ValidationError
from .registry import Failed, FailureReason, Outcome, Solved

if TYPE_CHECKING:
    from .broker import CaptchaBroker

logger = logging.getLogger(__name__)

SendFunc = Callable[[dict[str, Any]], Awaitable[None]]


def parse_frame(raw: str | bytes) -> dict[str, Any]:
    """Decode one inbound frame.

    Raises:
        MalformedFrameError: Not JSON, or not a JSON object.
    """
    try:
        message = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise MalformedFrameError(raw=raw)
    if not isinstance(message, dict):
        raise MalformedFrameError("Frame is not a JSON object", raw=raw)
    return message


def validate_request(data: Any) -> CaptchaRequestData:
    """Validate the data of a CaptchaRequest frame.

    Raises:
        ValidationError: data is not an object or a required field is missing/empty.
    """
    if not isinstance(data, dict):
        raise ValidationError("CaptchaRequest data must be an object", fields=["data"])

    try:
        return CaptchaRequestData.model_validate(data)
    except PydanticValidationError as e:
        fields = [".".join(str(part) for part in error["loc"]) for error in e.errors()]
        captcha_id = data.get("captchaId") if isinstance(data.get("captchaId"), str) else None
        raise ValidationError(fields=fields, captcha_id=captcha_id)


def outcome_frame(outcome: Outcome) -> dict[str, Any]:
    """Serialize a session outcome to its outbound frame."""
    if isinstance(outcome, Solved):
        data = CaptchaResponseData(value=outcome.value, created_at=outcome.solved_at)
        return CaptchaResponseFrame(data=data).to_wire()
    if isinstance(outcome, Failed) and outcome.reason is FailureReason.TIMEOUT:
        return ErrorFrame(data=ErrorMessage.TIMED_OUT).to_wire()
    return ErrorFrame(data=ErrorMessage.WINDOW_CLOSED).to_wire()


class ChannelProtocolHandler:
    """Handles frames for a single harvest connection.

    Args:
        broker: Broker that owns sessions.
        send: Coroutine function sending one JSON frame on this connection.
        client: Label for logs.
    """

    def __init__(self, broker: CaptchaBroker, send: SendFunc, client: str = "client") -> None:
        self.broker = broker
        self._send = send
        self.client = client
        self.closed = False
        self._tasks: set[asyncio.Task] = set()

    async def handle_frame(self, raw: str | bytes) -> None:
        """Process one inbound frame. Never raises."""
        try:
            message = parse_frame(raw)
        except MalformedFrameError as e:
            logger.warning(f"[WS] Malformed frame from {self.client}: {e}")
            await self.send_error(ErrorMessage.INVALID_MESSAGE_FORMAT)
            return

        message_type = message.get("type")
        try:
            if message_type == MessageType.CAPTCHA_REQUEST.value:
                self._handle_captcha_request(message.get("data"))
            else:
                logger.debug(f"[WS] Ignoring message type {message_type!r} from {self.client}")
        except ValidationError as e:
            logger.warning(f"[WS] Rejected request from {self.client}: {e}")
            self.broker.reject(e.captcha_id, "validation")
            await self.send_error(ErrorMessage.INVALID_CAPTCHA_REQUEST)
        except DuplicateIdError as e:
            logger.warning(f"[WS] Rejected request from {self.client}: {e}")
            self.broker.reject(e.captcha_id, "duplicate")
            await self.send_error(ErrorMessage.DUPLICATE_CAPTCHA_ID)
        except Exception as e:
            logger.error(f"[WS] Error handling {message_type!r} from {self.client}: {e}")
            await self.send_error(ErrorMessage.INVALID_MESSAGE_FORMAT)

    def _handle_captcha_request(self, data: Any) -> None:
        request = validate_request(data)
        logger.info(f"[WS] CaptchaRequest {request.captcha_id} from {self.client} for {request.page_url}")
        self.broker.submit(request, self.deliver)

    def deliver(self, outcome: Outcome) -> None:
        """Response sink: schedule the single outbound frame for an outcome."""
        task = asyncio.get_running_loop().create_task(self.send(outcome_frame(outcome)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def send_error(self, message: ErrorMessage) -> None:
        await self.send(ErrorFrame(data=message).to_wire())

    async def send(self, frame: dict[str, Any]) -> None:
        """Send a frame; a closed or failing connection drops it."""
        if self.closed:
            logger.debug(f"[WS] Dropping {frame.get('type')} frame for closed {self.client}")
            return
        try:
            await self._send(frame)
        except Exception as e:
            logger.warning(f"[WS] Error sending to {self.client}: {e}")

    async def drain(self) -> None:
        """Wait for scheduled outbound frames."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        """Mark the connection closed. Pending sessions keep running."""
        self.closed = True
