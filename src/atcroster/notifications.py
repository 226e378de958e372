"""Membership events emitted by the transfer workflow.

The core only produces these structured events. Rendering emails or
forum posts from them belongs to whatever dispatcher is plugged in.
"""

import logging
from datetime import UTC, datetime
from typing import Literal, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class Event(BaseModel):
    """Base for all membership events."""

    cid: int
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def event_type(self) -> str:
        return type(self).__name__


class TransferRequested(Event):
    transfer_id: str
    from_facility: str
    to_facility: str
    reason: str
    administrative: bool = False


class TransferResolved(Event):
    """A pending transfer reached accepted, rejected or cancelled.

    Recipients are the controller and the staff of both facilities.
    """

    transfer_id: str
    from_facility: str
    to_facility: str
    status: str
    by: int
    reason: str = ""


class MembershipChanged(Event):
    """A controller's home facility changed."""

    from_facility: str
    to_facility: str
    by: int | None = None
    welcome: bool = False  # Destination is active, send its welcome text


class StaffDiscrepancy(Event):
    """A controller left a facility while holding staff roles there."""

    facility: str
    new_facility: str
    kind: Literal["senior", "training", "other"]
    roles: list[str]


class RosterRemoval(Event):
    facility: str
    by: int
    reason: str


class RatingReviewRequired(Event):
    """An instructor-rated controller joined or left a facility."""

    facility: str
    rating: str
    action: Literal["added", "removed"]


class ActionLogged(Event):
    """Audit trail entry against a controller."""

    message: str


class NotificationDispatcher(Protocol):
    """Receives membership events. Delivery is the dispatcher's business."""

    async def dispatch(self, event: Event) -> None: ...


class LoggingDispatcher:
    """Default dispatcher: writes each event to the log."""

    async def dispatch(self, event: Event) -> None:
        logger.info(
            "%s for %s: %s",
            event.event_type,
            event.cid,
            event.model_dump(mode="json", exclude={"cid", "occurred_at"}),
        )


class RecordingDispatcher:
    """Keeps events in memory, for tests and local development."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    async def dispatch(self, event: Event) -> None:
        self.events.append(event)

    def of_type(self, event_type: type[Event]) -> list[Event]:
        return [e for e in self.events if isinstance(e, event_type)]


_dispatcher: NotificationDispatcher | None = None


def get_dispatcher() -> NotificationDispatcher:
    """Get the process-wide dispatcher (logging by default)."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = LoggingDispatcher()
    return _dispatcher


def set_dispatcher(dispatcher: NotificationDispatcher | None) -> None:
    """Replace the process-wide dispatcher (None restores the default)."""
    global _dispatcher
    _dispatcher = dispatcher
