"""Captcha Session Registry.

In-memory table of active captcha sessions keyed by captchaId.

Every session ends with exactly one Outcome. All terminal transitions go
through ``SessionRegistry.complete_once``, which runs without awaiting, so on
a single event loop the check-and-set of ``responded`` cannot interleave with
another completion signal. Whichever signal arrives first wins; later ones
return False and do nothing.

Usage:
    registry = SessionRegistry()
    session = registry.create("c1", sink=lambda outcome: ...)

    registry.complete_once("c1", Solved(value="token", solved_at=1000))  # True
    registry.complete_once("c1", Failed(reason=FailureReason.SURFACE_CLOSED))  # False
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from .exceptions import DuplicateIdError

if TYPE_CHECKING:
    from .surface import SurfaceHandle

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class FailureReason(str, Enum):
    SURFACE_CLOSED = "surface closed"
    SURFACE_ERROR = "surface error"
    TIMEOUT = "timeout"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class Solved:
    """Human submitted a value."""

    value: str
    solved_at: Any = None


@dataclass(frozen=True)
class Failed:
    """Session ended without a solve."""

    reason: FailureReason


Outcome = Solved | Failed
ResponseSink = Callable[[Outcome], None]


@dataclass(eq=False)
class Session:
    """A pending captcha challenge owned by the registry."""

    correlation_id: str
    sink: ResponseSink
    state: SessionState = SessionState.PENDING
    responded: bool = False
    created_at: float = field(default_factory=time.time)
    outcome: Outcome | None = None
    surface: SurfaceHandle | None = None
    deadline: asyncio.TimerHandle | None = None
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def age(self) -> float:
        return time.time() - self.created_at

    async def wait(self) -> Outcome:
        """Wait for the terminal outcome of this session."""
        await self._done.wait()
        if self.outcome is None:
            raise RuntimeError(f"Session {self.correlation_id} finished without an outcome")
        return self.outcome

    def to_dict(self) -> dict[str, Any]:
        return {
            "captcha_id": self.correlation_id,
            "state": self.state.value,
            "responded": self.responded,
            "created_at": self.created_at,
            "age": self.age,
        }


class SessionRegistry:
    """Active captcha sessions keyed by correlation id.

    Args:
        on_complete: Optional hook called with (session, outcome) after each
            delivered outcome. Exceptions raised by it are logged.
    """

    def __init__(self, on_complete: Callable[[Session, Outcome], None] | None = None) -> None:
        self._sessions: dict[str, Session] = {}
        self._on_complete = on_complete

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, correlation_id: object) -> bool:
        return correlation_id in self._sessions

    def active_ids(self) -> list[str]:
        return list(self._sessions)

    def get(self, correlation_id: str) -> Session | None:
        return self._sessions.get(correlation_id)

    def create(self, correlation_id: str, sink: ResponseSink) -> Session:
        """Register a new pending session.

        Raises:
            DuplicateIdError: correlation_id already has an active session.
        """
        if correlation_id in self._sessions:
            raise DuplicateIdError(correlation_id)

        session = Session(correlation_id=correlation_id, sink=sink)
        self._sessions[correlation_id] = session
        logger.info(f"[REGISTRY] Created session {correlation_id}. Active: {len(self._sessions)}")
        return session

    def complete_once(
        self,
        correlation_id: str,
        outcome: Outcome,
        session: Session | None = None,
    ) -> bool:
        """Deliver ``outcome`` to the session's sink if it has not responded yet.

        Args:
            correlation_id: Session to complete.
            outcome: Solved or Failed.
            session: When given, only complete if the active session for this
                id is this exact object. Keeps late signals from a finished
                session away from a newer session that reused the id.

        Returns:
            True if the outcome was delivered, False if ignored.
        """
        current = self._sessions.get(correlation_id)
        if current is None or current.responded or (session is not None and current is not session):
            logger.debug(f"[REGISTRY] Ignored {type(outcome).__name__} for {correlation_id}")
            return False

        current.responded = True
        current.state = SessionState.COMPLETED
        current.outcome = outcome
        del self._sessions[correlation_id]

        if current.deadline is not None:
            current.deadline.cancel()
            current.deadline = None

        current._done.set()

        try:
            current.sink(outcome)
        except Exception as e:
            logger.error(f"[REGISTRY] Response sink failed for {correlation_id}: {e}")

        if self._on_complete is not None:
            try:
                self._on_complete(current, outcome)
            except Exception as e:
                logger.error(f"[REGISTRY] Completion hook failed for {correlation_id}: {e}")

        logger.info(
            f"[REGISTRY] Completed session {correlation_id} with {type(outcome).__name__}. "
            f"Active: {len(self._sessions)}"
        )
        return True
