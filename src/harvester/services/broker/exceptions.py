"""Captcha broker exceptions.

Hierarchy:
    BrokerException (base)
    ├── MalformedFrameError - inbound frame is not a JSON object
    ├── ValidationError     - CaptchaRequest is missing a required field
    ├── DuplicateIdError    - captchaId already has an active session
    └── SurfaceError        - presentation surface could not be opened
"""


class BrokerException(Exception):
    """Base exception for all captcha broker errors."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class MalformedFrameError(BrokerException):
    """Inbound frame could not be parsed as a JSON object."""

    def __init__(self, message: str = "Invalid message format", raw: str | bytes | None = None) -> None:
        preview = raw[:200] if raw is not None else None
        super().__init__(message, {"raw": preview} if preview is not None else None)
        self.raw = raw


class ValidationError(BrokerException):
    """CaptchaRequest payload failed validation.

    Raised before any session is created.
    """

    def __init__(
        self,
        message: str = "Invalid captcha request",
        fields: list[str] | None = None,
        captcha_id: str | None = None,
    ) -> None:
        super().__init__(message, {"fields": fields or [], "captcha_id": captcha_id})
        self.fields = fields or []
        self.captcha_id = captcha_id


class DuplicateIdError(BrokerException):
    """A session for this captchaId is already active."""

    def __init__(self, captcha_id: str) -> None:
        super().__init__(f"Captcha {captcha_id} already has an active session", {"captcha_id": captcha_id})
        self.captcha_id = captcha_id


class SurfaceError(BrokerException):
    """Presentation surface failed to open."""

    def __init__(self, message: str, captcha_id: str | None = None, target_url: str | None = None) -> None:
        super().__init__(message, {"captcha_id": captcha_id, "target_url": target_url})
        self.captcha_id = captcha_id
        self.target_url = target_url
