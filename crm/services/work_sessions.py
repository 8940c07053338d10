from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from core.errors import TicketStateError
from database.models import Ticket, TicketStatus
from utils.time import floor_seconds


@dataclass(frozen=True, slots=True)
class WorkToggle:
    """The status/session/duration triple, always written as one update."""

    status: TicketStatus
    work_session_started_at: datetime | None
    total_work_duration: int

    def as_changes(self) -> dict[str, object]:
        return {
            "status": self.status,
            "work_session_started_at": self.work_session_started_at,
            "total_work_duration": self.total_work_duration,
        }


def elapsed_seconds(ticket: Ticket, now: datetime) -> int:
    """Seconds of the running session, 0 when none is running."""
    if ticket.status != TicketStatus.IN_PROGRESS or ticket.work_session_started_at is None:
        return 0
    return floor_seconds(now - ticket.work_session_started_at)


def start_session(ticket: Ticket, now: datetime) -> WorkToggle:
    return WorkToggle(
        status=TicketStatus.IN_PROGRESS,
        work_session_started_at=now,
        total_work_duration=ticket.total_work_duration,
    )


def stop_session(ticket: Ticket, now: datetime) -> WorkToggle:
    return WorkToggle(
        status=TicketStatus.DONE,
        work_session_started_at=None,
        total_work_duration=ticket.total_work_duration + elapsed_seconds(ticket, now),
    )


def toggle_work(ticket: Ticket, now: datetime) -> WorkToggle:
    """Start work on a fresh ticket or stop the running session.

    Closed tickets (done, referred) are rejected, so a second stop never
    touches the accumulated duration.
    """
    if ticket.status == TicketStatus.IN_PROGRESS:
        return stop_session(ticket, now)
    if ticket.status == TicketStatus.NOT_STARTED:
        return start_session(ticket, now)
    raise TicketStateError(f"Ticket {ticket.ticket_number} is {ticket.status.value} and cannot be toggled.")


def settle_session_on_referral(ticket: Ticket, now: datetime) -> WorkToggle:
    """Close out a ticket's session when it is referred.

    In-flight time is discarded; only previously accumulated duration is kept.
    """
    del now
    return WorkToggle(
        status=TicketStatus.REFERRED,
        work_session_started_at=None,
        total_work_duration=ticket.total_work_duration,
    )


def complete_session(ticket: Ticket) -> WorkToggle:
    """Force a ticket to done for bulk completion, discarding in-flight time."""
    return WorkToggle(
        status=TicketStatus.DONE,
        work_session_started_at=None,
        total_work_duration=ticket.total_work_duration,
    )


def reopen_session(ticket: Ticket) -> WorkToggle:
    return WorkToggle(
        status=TicketStatus.NOT_STARTED,
        work_session_started_at=None,
        total_work_duration=ticket.total_work_duration,
    )
