from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

from core.errors import TicketStateError, ValidationError
from database.models import Ticket, TicketStatus
from services.work_sessions import elapsed_seconds, settle_session_on_referral, toggle_work
from utils.time import format_duration

T0 = datetime(2024, 5, 1, 9, 0, 0, tzinfo=UTC)


def _ticket(**overrides: object) -> Ticket:
    ticket = Ticket(
        id=1,
        ticket_number="T-2024-0001",
        title="VPN drops",
        customer_id=None,
        status=TicketStatus.NOT_STARTED,
        creation_date_time=T0,
        last_update_date=T0,
        editable_until=T0 + timedelta(minutes=30),
    )
    return replace(ticket, **overrides)


def test_start_then_stop_accumulates_elapsed_seconds() -> None:
    ticket = _ticket()
    started = toggle_work(ticket, T0)
    assert started.status == TicketStatus.IN_PROGRESS
    assert started.work_session_started_at == T0
    assert started.total_work_duration == 0

    running = replace(ticket, **started.as_changes())
    stopped = toggle_work(running, T0 + timedelta(seconds=125, milliseconds=900))
    assert stopped.status == TicketStatus.DONE
    assert stopped.work_session_started_at is None
    assert stopped.total_work_duration == 125


def test_duration_adds_to_previous_total() -> None:
    running = _ticket(status=TicketStatus.IN_PROGRESS, work_session_started_at=T0, total_work_duration=600)
    assert toggle_work(running, T0 + timedelta(minutes=2)).total_work_duration == 720


def test_clock_skew_never_reduces_total() -> None:
    running = _ticket(status=TicketStatus.IN_PROGRESS, work_session_started_at=T0, total_work_duration=50)
    assert toggle_work(running, T0 - timedelta(seconds=30)).total_work_duration == 50


def test_second_stop_is_rejected_and_duration_unchanged() -> None:
    running = _ticket(status=TicketStatus.IN_PROGRESS, work_session_started_at=T0)
    done = replace(running, **toggle_work(running, T0 + timedelta(seconds=10)).as_changes())

    with pytest.raises(TicketStateError):
        toggle_work(done, T0 + timedelta(seconds=20))
    assert done.total_work_duration == 10


@pytest.mark.parametrize("status", [TicketStatus.DONE, TicketStatus.REFERRED])
def test_closed_tickets_cannot_toggle(status: TicketStatus) -> None:
    with pytest.raises(ValidationError):
        toggle_work(_ticket(status=status), T0)


def test_elapsed_seconds_only_for_running_session() -> None:
    running = _ticket(status=TicketStatus.IN_PROGRESS, work_session_started_at=T0)
    assert elapsed_seconds(running, T0 + timedelta(seconds=61)) == 61
    assert elapsed_seconds(_ticket(), T0 + timedelta(seconds=61)) == 0


def test_referral_discards_running_session() -> None:
    running = _ticket(status=TicketStatus.IN_PROGRESS, work_session_started_at=T0, total_work_duration=40)
    settled = settle_session_on_referral(running, T0 + timedelta(minutes=5))
    assert settled.status == TicketStatus.REFERRED
    assert settled.work_session_started_at is None
    assert settled.total_work_duration == 40


@pytest.mark.parametrize(
    ("seconds", "expected"),
    [(0, "00:00:00"), (125, "00:02:05"), (3_725, "01:02:05"), (-4, "00:00:00"), (float("nan"), "00:00:00")],
)
def test_format_duration(seconds: float, expected: str) -> None:
    assert format_duration(seconds) == expected
