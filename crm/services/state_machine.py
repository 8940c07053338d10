"""Ticket status transitions.

Any (status, event) pair missing from ``TRANSITIONS`` is rejected before the
caller gets a chance to persist anything.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from enum import StrEnum

from core.errors import TicketStateError
from database.models import Ticket, TicketStatus
from services.work_sessions import (
    WorkToggle,
    complete_session,
    reopen_session,
    settle_session_on_referral,
    start_session,
    stop_session,
)


class TicketEvent(StrEnum):
    START_WORK = "start_work"
    STOP_WORK = "stop_work"
    REFER = "refer"
    ACCEPT = "accept"
    REOPEN = "reopen"
    BULK_COMPLETE = "bulk_complete"


TRANSITIONS: dict[tuple[TicketStatus, TicketEvent], TicketStatus] = {
    (TicketStatus.NOT_STARTED, TicketEvent.START_WORK): TicketStatus.IN_PROGRESS,
    (TicketStatus.IN_PROGRESS, TicketEvent.STOP_WORK): TicketStatus.DONE,
    (TicketStatus.NOT_STARTED, TicketEvent.REFER): TicketStatus.REFERRED,
    (TicketStatus.IN_PROGRESS, TicketEvent.REFER): TicketStatus.REFERRED,
    (TicketStatus.REFERRED, TicketEvent.ACCEPT): TicketStatus.IN_PROGRESS,
    (TicketStatus.DONE, TicketEvent.REOPEN): TicketStatus.NOT_STARTED,
    (TicketStatus.NOT_STARTED, TicketEvent.BULK_COMPLETE): TicketStatus.DONE,
    (TicketStatus.IN_PROGRESS, TicketEvent.BULK_COMPLETE): TicketStatus.DONE,
    (TicketStatus.REFERRED, TicketEvent.BULK_COMPLETE): TicketStatus.DONE,
}

_EFFECTS: dict[TicketEvent, Callable[[Ticket, datetime], WorkToggle]] = {
    TicketEvent.START_WORK: start_session,
    TicketEvent.STOP_WORK: stop_session,
    TicketEvent.REFER: settle_session_on_referral,
    TicketEvent.ACCEPT: start_session,
    TicketEvent.REOPEN: lambda ticket, _now: reopen_session(ticket),
    TicketEvent.BULK_COMPLETE: lambda ticket, _now: complete_session(ticket),
}


def can_transition(status: TicketStatus, event: TicketEvent) -> bool:
    return (status, event) in TRANSITIONS


def apply_transition(ticket: Ticket, event: TicketEvent, now: datetime) -> WorkToggle:
    target = TRANSITIONS.get((ticket.status, event))
    if target is None:
        raise TicketStateError(
            f"Ticket {ticket.ticket_number} cannot {event.value.replace('_', ' ')} while {ticket.status.value}."
        )
    return _EFFECTS[event](ticket, now)


def work_event_for(ticket: Ticket) -> TicketEvent:
    """The event a start/stop button press maps to for the ticket's status."""
    if ticket.status == TicketStatus.IN_PROGRESS:
        return TicketEvent.STOP_WORK
    return TicketEvent.START_WORK
