from __future__ import annotations

from datetime import datetime, timedelta

from database.models import Ticket, TicketStatus
from utils.constants import DEFAULT_EDIT_WINDOW_MINUTES
from utils.time import floor_seconds


def open_window(now: datetime, minutes: int = DEFAULT_EDIT_WINDOW_MINUTES) -> datetime:
    return now + timedelta(minutes=minutes)


def is_editable(ticket: Ticket, now: datetime) -> bool:
    if ticket.status == TicketStatus.DONE:
        return False
    return now < ticket.editable_until


def extend_edit_time(now: datetime, minutes: int = DEFAULT_EDIT_WINDOW_MINUTES) -> datetime:
    """New ``editable_until`` for a manager extension; remaining time is ignored."""
    return open_window(now, minutes)


def remaining_seconds(ticket: Ticket, now: datetime) -> int:
    return floor_seconds(ticket.editable_until - now)


def countdown(ticket: Ticket, now: datetime) -> str | None:
    """``MM:SS`` left in the edit window, or None once it has closed."""
    if not is_editable(ticket, now):
        return None
    remaining = remaining_seconds(ticket, now)
    if remaining <= 0:
        return None
    minutes, seconds = divmod(remaining, 60)
    return f"{minutes:02d}:{seconds:02d}"
