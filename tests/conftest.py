from typing import Any
from unittest.mock import AsyncMock

import pytest

from src.harvester.services.broker import CaptchaBroker, SessionRegistry
from tests.helpers import FakeLauncher, RecordingChannel


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture
def broker(launcher) -> CaptchaBroker:
    """Broker with fake surfaces and no deadline."""
    return CaptchaBroker(launcher)


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def mock_redis():
    """Mock Redis client."""
    redis = AsyncMock()
    redis.publish = AsyncMock(return_value=1)
    redis.aclose = AsyncMock(return_value=None)
    return redis


@pytest.fixture
def sample_request_data() -> dict[str, Any]:
    """Data of a valid CaptchaRequest frame."""
    return {
        "pageUrl": "https://x",
        "sitekey": "sk",
        "captchaId": "c1",
        "autoClick": False,
    }
