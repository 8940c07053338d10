from __future__ import annotations

import itertools
from datetime import UTC, datetime, timedelta

import pytest

from core.errors import TicketStateError
from database.models import Ticket, TicketStatus
from services.state_machine import TRANSITIONS, TicketEvent, apply_transition, can_transition, work_event_for

T0 = datetime(2024, 5, 1, 9, 0, 0, tzinfo=UTC)

ALLOWED = {
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


def _ticket(status: TicketStatus) -> Ticket:
    running = status == TicketStatus.IN_PROGRESS
    return Ticket(
        id=7,
        ticket_number="T-2024-0007",
        title="Password reset",
        customer_id=None,
        status=status,
        creation_date_time=T0,
        last_update_date=T0,
        editable_until=T0 + timedelta(minutes=30),
        work_session_started_at=T0 if running else None,
        total_work_duration=90,
    )


def test_transition_table_is_exactly_the_documented_one() -> None:
    assert TRANSITIONS == ALLOWED


@pytest.mark.parametrize(("status", "event"), list(itertools.product(TicketStatus, TicketEvent)))
def test_every_pair_is_allowed_or_rejected(status: TicketStatus, event: TicketEvent) -> None:
    ticket = _ticket(status)
    now = T0 + timedelta(seconds=30)
    if (status, event) in ALLOWED:
        toggle = apply_transition(ticket, event, now)
        assert toggle.status == ALLOWED[(status, event)]
        # started is set iff the ticket ends up in progress
        assert (toggle.work_session_started_at is not None) == (toggle.status == TicketStatus.IN_PROGRESS)
        assert toggle.total_work_duration >= ticket.total_work_duration
    else:
        assert not can_transition(status, event)
        with pytest.raises(TicketStateError):
            apply_transition(ticket, event, now)


def test_referred_ticket_cannot_be_referred_again() -> None:
    with pytest.raises(TicketStateError):
        apply_transition(_ticket(TicketStatus.REFERRED), TicketEvent.REFER, T0)


def test_reopen_preserves_duration() -> None:
    toggle = apply_transition(_ticket(TicketStatus.DONE), TicketEvent.REOPEN, T0)
    assert toggle.status == TicketStatus.NOT_STARTED
    assert toggle.total_work_duration == 90


def test_stop_accumulates_and_accept_starts_session() -> None:
    stopped = apply_transition(_ticket(TicketStatus.IN_PROGRESS), TicketEvent.STOP_WORK, T0 + timedelta(seconds=30))
    assert stopped.total_work_duration == 120

    accepted = apply_transition(_ticket(TicketStatus.REFERRED), TicketEvent.ACCEPT, T0)
    assert accepted.work_session_started_at == T0


def test_work_event_for() -> None:
    assert work_event_for(_ticket(TicketStatus.IN_PROGRESS)) == TicketEvent.STOP_WORK
    assert work_event_for(_ticket(TicketStatus.NOT_STARTED)) == TicketEvent.START_WORK
    assert work_event_for(_ticket(TicketStatus.DONE)) == TicketEvent.START_WORK
