import os

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    APP_NAME: str = "Captcha Harvester"
    APP_DESCRIPTION: str | None = "Human-in-the-loop captcha broker"
    APP_VERSION: str | None = "0.1.0"


class HarvestServerSettings(BaseSettings):
    """Network settings for the harvest (WebSocket) and view (captcha page) servers."""

    HARVEST_HOST: str = "127.0.0.1"
    HARVEST_PORT: int = 8457
    VIEW_PORT: int = 8456

    @computed_field  # type: ignore[prop-decorator]
    @property
    def VIEW_BASE_URL(self) -> str:
        return f"http://{self.HARVEST_HOST}:{self.VIEW_PORT}"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def SURFACE_WS_URL(self) -> str:
        return f"ws://{self.HARVEST_HOST}:{self.HARVEST_PORT}/ws/surface"


class BrokerSettings(BaseSettings):
    """Configuration for the captcha session broker.

    A session that is neither solved nor closed within
    HARVEST_SESSION_TIMEOUT seconds fails with a timeout and its
    window is force-closed. 0 disables the deadline.
    """

    HARVEST_SESSION_TIMEOUT: float = 600  # 10 minutes

    # Open a Chromium window (DrissionPage) per challenge, proxied through the
    # view server so the captcha page renders under pageUrl's hostname
    HARVEST_OPEN_BROWSER: bool = True
    HARVEST_BROWSER_PATH: str | None = None
    HARVEST_PROXY_BYPASS: str = "*.google.com;*.gstatic.com"
    HARVEST_WINDOW_SIZE: str = "360,640"
    HARVEST_WINDOW_POLL_INTERVAL: float = 1.0

    # Without a browser window, seconds a disconnected captcha page has to
    # reconnect before the surface counts as closed
    HARVEST_RECONNECT_GRACE: float = 5.0

    # Load surfaces from this base instead of each request's pageUrl.
    # pageUrl is then passed as a query parameter.
    HARVEST_SURFACE_BASE_URL: str | None = None


class RedisEventSettings(BaseSettings):
    """Optional Redis pub/sub for session lifecycle events.

    Pub/Sub:
    - captcha:harvest:events => session_created, solved, failed, rejected
    """

    HARVEST_REDIS_ENABLED: bool = False
    REDIS_EVENTS_HOST: str = "localhost"
    REDIS_EVENTS_PORT: int = 6379
    HARVEST_EVENTS_CHANNEL: str = "captcha:harvest:events"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def REDIS_EVENTS_URL(self) -> str:
        return f"redis://{self.REDIS_EVENTS_HOST}:{self.REDIS_EVENTS_PORT}"


class LoggingSettings(BaseSettings):
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(
    AppSettings,
    HarvestServerSettings,
    BrokerSettings,
    RedisEventSettings,
    LoggingSettings,
):
    model_config = SettingsConfigDict(
        env_file=os.path.join(os.path.dirname(os.path.realpath(__file__)), "..", "..", "..", ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
