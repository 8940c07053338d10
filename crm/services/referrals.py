from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from core.errors import CrmError, TicketNotFoundError, UserNotFoundError, ValidationError
from database.models import Referral, Ticket, User, as_record
from database.repositories import CounterRepository, TicketReferralRepository, TicketRepository, UserRepository
from services.notifications import ChangeNotifier
from services.policy import is_eligible_target, require_ticket_standing
from services.state_machine import TicketEvent, apply_transition
from utils.constants import CHANGE_INSERT, CHANGE_UPDATE, TABLE_REFERRALS, TABLE_TICKETS
from utils.time import Clock, utc_now

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class BulkReferralFailure:
    ticket_id: int
    error: str
    message: str


@dataclass(slots=True)
class BulkReferralResult:
    succeeded: list[Ticket] = field(default_factory=list)
    failures: list[BulkReferralFailure] = field(default_factory=list)

    @property
    def all_succeeded(self) -> bool:
        return not self.failures


@dataclass(slots=True)
class ReferralDeps:
    ticket_repo: TicketRepository
    referral_repo: TicketReferralRepository
    user_repo: UserRepository
    counter_repo: CounterRepository
    notifier: ChangeNotifier


class ReferralOrchestrator:
    """Hands tickets from one user to another.

    The ticket row is written before the referral row. If the second write
    fails the ticket keeps its new assignee without a history entry; the
    opposite order never happens.
    """

    def __init__(self, deps: ReferralDeps, clock: Clock = utc_now) -> None:
        self.deps = deps
        self.clock = clock

    async def refer_ticket(self, ticket_id: int, actor: User, target_username: str) -> Ticket:
        users = await self.deps.user_repo.list_all()
        return await self._refer(ticket_id, actor, target_username, users)

    async def refer_many(self, ticket_ids: Sequence[int], actor: User, target_username: str) -> BulkReferralResult:
        users = await self.deps.user_repo.list_all()
        result = BulkReferralResult()
        for ticket_id in ticket_ids:
            try:
                ticket = await self._refer(ticket_id, actor, target_username, users)
            except CrmError as error:
                LOGGER.info(
                    "Bulk referral skipped ticket. ticket_id=%s target=%s error=%s",
                    ticket_id,
                    target_username,
                    type(error).__name__,
                )
                result.failures.append(
                    BulkReferralFailure(ticket_id=ticket_id, error=type(error).__name__, message=error.user_message)
                )
                continue
            result.succeeded.append(ticket)
        return result

    async def _refer(self, ticket_id: int, actor: User, target_username: str, users: Sequence[User]) -> Ticket:
        ticket = await self.deps.ticket_repo.get_by_id(ticket_id)
        if not ticket:
            raise TicketNotFoundError()
        require_ticket_standing(actor, ticket, users, "refer")
        now = self.clock()
        toggle = apply_transition(ticket, TicketEvent.REFER, now)
        if not any(user.username == target_username for user in users):
            raise UserNotFoundError(f"User {target_username} does not exist.")
        if not is_eligible_target(actor, target_username, users, {ticket.assigned_to}):
            raise ValidationError(f"{target_username} is not an eligible referral target for {actor.username}.")

        updated = await self.deps.ticket_repo.update(
            ticket.id,
            {**toggle.as_changes(), "assigned_to": target_username, "last_update_date": now},
        )
        if not updated:
            raise TicketNotFoundError()

        await self.deps.notifier.notify(TABLE_TICKETS, CHANGE_UPDATE, as_record(updated))

        referral_id = await self.deps.counter_repo.next_value(TABLE_REFERRALS)
        referral = await self.deps.referral_repo.add(
            Referral(
                id=referral_id,
                ticket_id=ticket.id,
                referred_by=actor.username,
                referred_to=target_username,
                referral_date=now,
            )
        )
        LOGGER.info(
            "Ticket referred. ticket=%s from=%s to=%s",
            updated.ticket_number,
            actor.username,
            target_username,
        )
        await self.deps.notifier.notify(TABLE_REFERRALS, CHANGE_INSERT, as_record(referral))
        return updated
