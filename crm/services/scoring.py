from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import replace

from database.models import Customer, SupportContract, Ticket
from utils.constants import (
    ACTIVE_CONTRACT_STATUS,
    CONTRACT_LEVEL_WEIGHTS,
    CUSTOMER_LEVEL_WEIGHTS,
    PRIORITY_WEIGHTS,
)


def score(ticket: Ticket, customer: Customer | None, contracts: Iterable[SupportContract] = ()) -> float:
    """Ordering weight for a ticket.

    Customer level, the best active support contract and the ticket priority
    each add a fixed weight. Unknown levels count as zero.
    """
    total = float(PRIORITY_WEIGHTS.get(ticket.priority, 0))
    if customer is not None:
        total += CUSTOMER_LEVEL_WEIGHTS.get(customer.level.upper(), 0)
    contract_weights = [
        CONTRACT_LEVEL_WEIGHTS.get(contract.level.lower(), 0)
        for contract in contracts
        if contract.status == ACTIVE_CONTRACT_STATUS
        and (customer is None or contract.customer_id == customer.id)
    ]
    if contract_weights:
        total += max(contract_weights)
    return total


def recompute_and_sort(
    tickets: Iterable[Ticket],
    customers: Sequence[Customer],
    contracts: Sequence[SupportContract],
) -> list[Ticket]:
    """Return scored copies ordered by score, then oldest first."""
    by_id = {customer.id: customer for customer in customers}
    contracts_by_customer: dict[int, list[SupportContract]] = {}
    for contract in contracts:
        if contract.customer_id is not None:
            contracts_by_customer.setdefault(contract.customer_id, []).append(contract)

    scored: list[Ticket] = []
    for ticket in tickets:
        customer = by_id.get(ticket.customer_id) if ticket.customer_id is not None else None
        related = contracts_by_customer.get(ticket.customer_id, []) if ticket.customer_id is not None else []
        scored.append(replace(ticket, score=score(ticket, customer, related)))
    scored.sort(key=lambda item: (-(item.score or 0.0), item.creation_date_time, item.id))
    return scored
