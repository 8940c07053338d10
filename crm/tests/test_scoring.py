from __future__ import annotations

from datetime import UTC, datetime, timedelta

from database.models import Customer, SupportContract, Ticket, TicketStatus
from services.scoring import recompute_and_sort, score

T0 = datetime(2024, 5, 1, 9, 0, 0, tzinfo=UTC)


def _ticket(ticket_id: int, customer_id: int | None, priority: str, minutes: int = 0) -> Ticket:
    created = T0 + timedelta(minutes=minutes)
    return Ticket(
        id=ticket_id,
        ticket_number=f"T-2024-{ticket_id:04d}",
        title="Scored",
        customer_id=customer_id,
        status=TicketStatus.NOT_STARTED,
        creation_date_time=created,
        last_update_date=created,
        editable_until=created + timedelta(minutes=30),
        priority=priority,
    )


def test_score_adds_customer_contract_and_priority() -> None:
    customer = Customer(id=1, level="B")
    contracts = [
        SupportContract(id=1, customer_id=1, level="silver"),
        SupportContract(id=2, customer_id=1, level="gold", status="expired"),
    ]
    assert score(_ticket(1, 1, "medium"), customer, contracts) == 30 + 20 + 15
    assert score(_ticket(2, None, "low"), None) == 0
    assert score(_ticket(3, 1, "unknown"), Customer(id=1, level="Z")) == 0


def test_recompute_and_sort_orders_by_score_then_age() -> None:
    customers = [Customer(id=1, level="A"), Customer(id=2, level="D")]
    contracts = [SupportContract(id=1, customer_id=1, level="bronze")]
    tickets = [
        _ticket(1, 2, "urgent", minutes=0),
        _ticket(2, 1, "low", minutes=5),
        _ticket(3, 2, "urgent", minutes=-5),
    ]

    ordered = recompute_and_sort(tickets, customers, contracts)

    assert [ticket.id for ticket in ordered] == [2, 3, 1]
    assert [ticket.score for ticket in ordered] == [50, 40, 40]
    # inputs are not mutated
    assert all(ticket.score is None for ticket in tickets)
