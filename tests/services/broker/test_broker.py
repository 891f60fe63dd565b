"""
Unit Tests for CaptchaBroker

Tests for:
- Construction from settings
- Lifecycle events published around sessions
- Shutdown of pending sessions
"""

import asyncio
import json

import pytest

from src.harvester.core.config import Settings
from src.harvester.schemas.captcha import CaptchaRequestData
from src.harvester.services.broker import (
    CaptchaBroker,
    ChromiumWindowLauncher,
    DuplicateIdError,
    Failed,
    FailureReason,
    WebSocketSurfaceHub,
)
from tests.helpers import FakeLauncher, RecordingChannel, request_frame


def published_types(mock_redis) -> list[str]:
    return [json.loads(call.args[1])["type"] for call in mock_redis.publish.call_args_list]


class TestFromSettings:
    """Tests for CaptchaBroker.from_settings."""

    def test_defaults(self):
        app_settings = Settings(HARVEST_OPEN_BROWSER=False, HARVEST_SESSION_TIMEOUT=30)

        broker = CaptchaBroker.from_settings(app_settings)

        assert isinstance(broker.launcher, WebSocketSurfaceHub)
        assert broker.launcher.browser is None
        assert broker.launcher.reconnect_grace == 5.0
        assert broker.dispatcher.timeout == 30
        assert broker.events is None

    def test_browser_windows(self):
        app_settings = Settings(HARVEST_OPEN_BROWSER=True, VIEW_PORT=9001)

        broker = CaptchaBroker.from_settings(app_settings)

        assert isinstance(broker.launcher.browser, ChromiumWindowLauncher)
        assert broker.launcher.browser.proxy_server == "http://127.0.0.1:9001"

    def test_with_redis(self, mock_redis):
        app_settings = Settings(HARVEST_EVENTS_CHANNEL="test:events")

        broker = CaptchaBroker.from_settings(app_settings, launcher=FakeLauncher(), redis_client=mock_redis)

        assert broker.events is not None
        assert broker.events.channel == "test:events"


class TestSubmit:
    """Tests for CaptchaBroker.submit."""

    @pytest.mark.asyncio
    async def test_submit_returns_session(self, broker, launcher, sample_request_data):
        outcomes = []
        request = CaptchaRequestData.model_validate(sample_request_data)

        session = broker.submit(request, outcomes.append)
        launcher.surfaces["c1"].notify_closed()

        assert session.correlation_id == "c1"
        assert outcomes == [Failed(FailureReason.SURFACE_CLOSED)]

    @pytest.mark.asyncio
    async def test_submit_duplicate(self, broker, sample_request_data):
        request = CaptchaRequestData.model_validate(sample_request_data)
        broker.submit(request, lambda outcome: None)

        with pytest.raises(DuplicateIdError):
            broker.submit(request, lambda outcome: None)


class TestEvents:
    """Tests for lifecycle event publishing."""

    @pytest.mark.asyncio
    async def test_solved_flow_events(self, mock_redis, sample_request_data):
        launcher = FakeLauncher()
        broker = CaptchaBroker.from_settings(Settings(), launcher=launcher, redis_client=mock_redis)
        channel = RecordingChannel()
        handler = broker.channel(channel.send)

        await handler.handle_frame(request_frame(sample_request_data))
        launcher.surfaces["c1"].notify_submitted("tokenXYZ", 1000)
        await handler.drain()
        await asyncio.sleep(0)

        assert published_types(mock_redis) == ["session_created", "solved"]
        assert all("tokenXYZ" not in call.args[1] for call in mock_redis.publish.call_args_list)

    @pytest.mark.asyncio
    async def test_rejection_events(self, mock_redis, sample_request_data):
        broker = CaptchaBroker.from_settings(Settings(), launcher=FakeLauncher(), redis_client=mock_redis)
        handler = broker.channel(RecordingChannel().send)

        await handler.handle_frame(request_frame({"captchaId": "c9"}))
        await handler.handle_frame(request_frame(sample_request_data))
        await handler.handle_frame(request_frame(sample_request_data))
        await asyncio.sleep(0)

        assert published_types(mock_redis) == ["rejected", "session_created", "rejected"]
        reasons = [json.loads(call.args[1])["payload"].get("reason") for call in mock_redis.publish.call_args_list]
        assert reasons == ["validation", None, "duplicate"]

    @pytest.mark.asyncio
    async def test_publish_failure_does_not_block_delivery(self, mock_redis, sample_request_data):
        mock_redis.publish.side_effect = ConnectionError("Redis down")
        launcher = FakeLauncher()
        broker = CaptchaBroker.from_settings(Settings(), launcher=launcher, redis_client=mock_redis)
        channel = RecordingChannel()
        handler = broker.channel(channel.send)

        await handler.handle_frame(request_frame(sample_request_data))
        launcher.surfaces["c1"].notify_closed()
        await handler.drain()

        assert channel.frames == [{"type": "Error", "data": "Captcha Window Closed"}]


class TestShutdown:
    """Tests for CaptchaBroker.shutdown."""

    @pytest.mark.asyncio
    async def test_shutdown_fails_pending_sessions(self, broker, launcher, sample_request_data):
        channel = RecordingChannel()
        handler = broker.channel(channel.send)
        await handler.handle_frame(request_frame(sample_request_data))
        await handler.handle_frame(request_frame({**sample_request_data, "captchaId": "c2"}))

        await broker.shutdown()
        await handler.drain()

        assert len(broker.registry) == 0
        assert channel.frames == [{"type": "Error", "data": "Captcha Window Closed"}] * 2
        assert all(surface.closed for surface in launcher.surfaces.values())

    @pytest.mark.asyncio
    async def test_shutdown_closes_event_publisher(self, mock_redis):
        broker = CaptchaBroker.from_settings(Settings(), launcher=FakeLauncher(), redis_client=mock_redis)

        await broker.shutdown()

        mock_redis.aclose.assert_awaited_once()
