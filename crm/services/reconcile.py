"""Merge ticket changes into a local, ordered ticket list.

The acting caller feeds the record returned by its own update through here;
observers feed change notifications through the same function.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, replace
from typing import Any

from database.models import Ticket, TicketStatus
from services.notifications import ChangeEvent
from utils.constants import CHANGE_DELETE, CHANGE_INSERT, CHANGE_UPDATE, TABLE_TICKETS
from utils.time import parse_iso


@dataclass(frozen=True, slots=True)
class TicketChange:
    event_type: str
    ticket_id: int
    ticket: Ticket | None = None


def local_change(ticket: Ticket) -> TicketChange:
    return TicketChange(event_type=CHANGE_UPDATE, ticket_id=ticket.id, ticket=ticket)


def ticket_from_record(record: dict[str, Any]) -> Ticket:
    created = parse_iso(record.get("creation_date_time"))
    if created is None:
        raise ValueError(f"Ticket record {record.get('id')} has no creation time")
    updated = parse_iso(record.get("last_update_date")) or created
    editable_until = parse_iso(record.get("editable_until")) or created
    return Ticket(
        id=int(record["id"]),
        ticket_number=record["ticket_number"],
        title=record.get("title", ""),
        customer_id=record.get("customer_id"),
        status=TicketStatus(record["status"]),
        creation_date_time=created,
        last_update_date=updated,
        editable_until=editable_until,
        description=record.get("description") or "",
        priority=record.get("priority") or "medium",
        ticket_type=record.get("ticket_type") or "",
        channel=record.get("channel") or "phone",
        assigned_to=record.get("assigned_to"),
        attachments=list(record.get("attachments") or []),
        work_session_started_at=parse_iso(record.get("work_session_started_at")),
        total_work_duration=int(record.get("total_work_duration") or 0),
        score=record.get("score"),
    )


def remote_change(event: ChangeEvent) -> TicketChange:
    if event.table != TABLE_TICKETS:
        raise ValueError(f"Not a ticket change: {event.table}")
    ticket_id = int(event.record["id"])
    if event.event_type == CHANGE_DELETE:
        return TicketChange(event_type=CHANGE_DELETE, ticket_id=ticket_id)
    return TicketChange(event_type=event.event_type, ticket_id=ticket_id, ticket=ticket_from_record(event.record))


def _order_key(ticket: Ticket) -> tuple[float, Any, int]:
    return (-(ticket.score or 0.0), ticket.creation_date_time, ticket.id)


def reconcile(tickets: Sequence[Ticket], change: TicketChange) -> list[Ticket]:
    """Return a new list with ``change`` applied.

    Inserts and updates are upserts by id; an incoming record without a score
    keeps the score of the copy it replaces.
    """
    merged = [ticket for ticket in tickets if ticket.id != change.ticket_id]
    if change.event_type in (CHANGE_INSERT, CHANGE_UPDATE):
        if change.ticket is None:
            raise ValueError("Insert and update changes need a ticket")
        incoming = change.ticket
        if incoming.score is None:
            previous = next((ticket for ticket in tickets if ticket.id == change.ticket_id), None)
            if previous is not None and previous.score is not None:
                incoming = replace(incoming, score=previous.score)
        merged.append(incoming)
    elif change.event_type != CHANGE_DELETE:
        raise ValueError(f"Unknown change type: {change.event_type}")
    merged.sort(key=_order_key)
    return merged
