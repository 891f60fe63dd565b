import json
from typing import Any

from src.harvester.services.broker import SurfaceError, SurfaceHandle


class FakeSurface(SurfaceHandle):
    """Surface that records close requests instead of touching a browser."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.close_requests = 0
        self.close_count = 0

    def close(self) -> None:
        self.close_requests += 1
        super().close()

    def _close(self) -> None:
        self.close_count += 1


class FakeLauncher:
    """Launcher that opens FakeSurfaces.

    ``fail`` raises SurfaceError on open; ``error`` raises that exception instead.
    """

    def __init__(self, fail: bool = False, error: Exception | None = None) -> None:
        self.fail = fail
        self.error = error
        self.surfaces: dict[str, FakeSurface] = {}
        self.opened: list[str] = []

    def open(self, target_url: str, *, captcha_id: str, on_closed, on_submitted) -> FakeSurface:
        if self.error is not None:
            raise self.error
        if self.fail:
            raise SurfaceError("No browser available", captcha_id=captcha_id, target_url=target_url)
        surface = FakeSurface(captcha_id, target_url, on_closed, on_submitted)
        self.surfaces[captcha_id] = surface
        self.opened.append(target_url)
        return surface

    def close_all(self) -> None:
        for surface in self.surfaces.values():
            surface.close()

    async def wait_closed(self) -> None:
        pass


class RecordingChannel:
    """Collects frames sent on a fake harvest connection."""

    def __init__(self) -> None:
        self.frames: list[dict[str, Any]] = []

    async def send(self, frame: dict[str, Any]) -> None:
        self.frames.append(frame)


def request_frame(data: Any) -> str:
    return json.dumps({"type": "CaptchaRequest", "data": data})
