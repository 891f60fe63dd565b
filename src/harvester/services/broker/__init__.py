"""Captcha Broker Services.

This module provides the human-in-the-loop captcha broker:
- SessionRegistry: Active sessions and at-most-once completion
- PresentationDispatcher: Opens surfaces and routes their signals
- ChannelProtocolHandler: Harvest channel frame handling
- WebSocketSurfaceHub: Browser page surfaces over WebSocket
- ChromiumWindowLauncher: DrissionPage Chromium windows for surfaces
- HarvestEventPublisher: Redis pub/sub lifecycle events
"""

from .broker import CaptchaBroker
from .browser import ChromiumWindow, ChromiumWindowLauncher, proxied_url
from .dispatcher import PresentationDispatcher, build_target_url
from .exceptions import (
    BrokerException,
    DuplicateIdError,
    MalformedFrameError,
    SurfaceError,
    ValidationError,
)
from .protocol import ChannelProtocolHandler, outcome_frame, parse_frame, validate_request
from .pubsub import HarvestEventPublisher
from .registry import Failed, FailureReason, Outcome, Session, SessionRegistry, SessionState, Solved
from .surface import SurfaceHandle, SurfaceLauncher, WebSocketSurface, WebSocketSurfaceHub

__all__ = [
    # Broker
    "CaptchaBroker",
    "ChannelProtocolHandler",
    "PresentationDispatcher",
    "SessionRegistry",
    # Sessions and outcomes
    "Session",
    "SessionState",
    "Outcome",
    "Solved",
    "Failed",
    "FailureReason",
    # Surfaces
    "SurfaceHandle",
    "SurfaceLauncher",
    "WebSocketSurface",
    "WebSocketSurfaceHub",
    "ChromiumWindow",
    "ChromiumWindowLauncher",
    # Events
    "HarvestEventPublisher",
    # Helpers
    "build_target_url",
    "proxied_url",
    "outcome_frame",
    "parse_frame",
    "validate_request",
    # Exceptions
    "BrokerException",
    "DuplicateIdError",
    "MalformedFrameError",
    "SurfaceError",
    "ValidationError",
]
