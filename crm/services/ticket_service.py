from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from core.config import AppConfig
from core.errors import (
    PermissionDeniedError,
    TicketNotFoundError,
    TicketStateError,
    UserNotFoundError,
    ValidationError,
)
from core.roles import is_manager
from database.models import Referral, Ticket, TicketStatus, User, as_record
from database.repositories import (
    CounterRepository,
    CustomerRepository,
    TicketReferralRepository,
    TicketRepository,
    UserRepository,
)
from services import edit_window
from services.notifications import ChangeNotifier
from services.policy import can_act_on_ticket, eligible_referral_targets, require_manager, visible_tickets
from services.scoring import recompute_and_sort
from services.state_machine import TicketEvent, apply_transition, work_event_for
from utils.constants import (
    CHANGE_DELETE,
    CHANGE_INSERT,
    CHANGE_UPDATE,
    TABLE_TICKETS,
    TICKET_CHANNELS,
    TICKET_PRIORITIES,
    USERS_MENU,
)
from utils.time import Clock, utc_now

LOGGER = logging.getLogger(__name__)

EDITABLE_FIELDS = frozenset(
    {"title", "description", "customer_id", "priority", "ticket_type", "channel", "attachments"}
)


@dataclass(slots=True)
class ReferralInboxItem:
    referral: Referral
    ticket: Ticket


@dataclass(slots=True)
class TicketServiceDeps:
    ticket_repo: TicketRepository
    referral_repo: TicketReferralRepository
    user_repo: UserRepository
    counter_repo: CounterRepository
    customer_repo: CustomerRepository
    notifier: ChangeNotifier


class TicketService:
    def __init__(self, config: AppConfig, deps: TicketServiceDeps, clock: Clock = utc_now) -> None:
        self.config = config
        self.deps = deps
        self.clock = clock

    @property
    def edit_window_minutes(self) -> int:
        return self.config.tickets.edit_window_minutes

    async def resolve_actor(self, username: str) -> User:
        user = await self.deps.user_repo.get_by_username(username)
        if not user:
            raise UserNotFoundError(f"User {username} does not exist.")
        return user

    async def get_ticket(self, ticket_id: int) -> Ticket:
        ticket = await self.deps.ticket_repo.get_by_id(ticket_id)
        if not ticket:
            raise TicketNotFoundError()
        return ticket

    async def _next_ticket_number(self, year: int) -> str:
        sequence = await self.deps.counter_repo.next_value(f"ticket_number:{year}")
        return f"{self.config.tickets.ticket_number_prefix}-{year}-{sequence:04d}"

    @staticmethod
    def _customer_id(value: Any) -> int | None:
        if value is None or value == "":
            return None
        if isinstance(value, bool):
            raise ValidationError("customerId must be a numeric id.")
        try:
            return int(value)
        except (TypeError, ValueError) as error:
            raise ValidationError("customerId must be a numeric id.") from error

    @staticmethod
    def _validate_fields(fields: dict[str, Any]) -> None:
        if "title" in fields and not str(fields["title"] or "").strip():
            raise ValidationError("Ticket title is required.")
        if "priority" in fields and fields["priority"] not in TICKET_PRIORITIES:
            raise ValidationError(f"Priority must be one of: {', '.join(TICKET_PRIORITIES)}.")
        if "channel" in fields and fields["channel"] not in TICKET_CHANNELS:
            raise ValidationError(f"Channel must be one of: {', '.join(TICKET_CHANNELS)}.")
        if "attachments" in fields and not isinstance(fields["attachments"], (list, tuple)):
            raise ValidationError("Attachments must be a list of references.")

    async def create_ticket(
        self,
        actor: User,
        title: str,
        customer_id: int | None = None,
        description: str = "",
        priority: str = "medium",
        ticket_type: str = "",
        channel: str = "phone",
        assigned_to: str | None = None,
        attachments: Sequence[str] | None = None,
    ) -> Ticket:
        self._validate_fields(
            {"title": title, "priority": priority, "channel": channel, "attachments": list(attachments or [])}
        )
        customer_id = self._customer_id(customer_id)
        assignee = assigned_to or actor.username
        if assignee != actor.username and not await self.deps.user_repo.get_by_username(assignee):
            raise UserNotFoundError(f"User {assignee} does not exist.")

        now = self.clock()
        ticket_id = await self.deps.counter_repo.next_value(TABLE_TICKETS)
        ticket = await self.deps.ticket_repo.create(
            Ticket(
                id=ticket_id,
                ticket_number=await self._next_ticket_number(now.year),
                title=title.strip(),
                customer_id=customer_id,
                status=TicketStatus.NOT_STARTED,
                creation_date_time=now,
                last_update_date=now,
                editable_until=edit_window.open_window(now, self.edit_window_minutes),
                description=description,
                priority=priority,
                ticket_type=ticket_type,
                channel=channel,
                assigned_to=assignee,
                attachments=list(attachments or []),
            )
        )
        LOGGER.info("Ticket created. ticket=%s actor=%s assignee=%s", ticket.ticket_number, actor.username, assignee)
        await self.deps.notifier.notify(TABLE_TICKETS, CHANGE_INSERT, as_record(ticket))
        return ticket

    async def _write(self, ticket: Ticket, changes: dict[str, Any]) -> Ticket:
        updated = await self.deps.ticket_repo.update(ticket.id, {**changes, "last_update_date": self.clock()})
        if not updated:
            raise TicketNotFoundError()
        await self.deps.notifier.notify(TABLE_TICKETS, CHANGE_UPDATE, as_record(updated))
        return updated

    @staticmethod
    def _require_holder_or_manager(actor: User, ticket: Ticket, action: str) -> None:
        if ticket.assigned_to != actor.username and not is_manager(actor.role):
            raise PermissionDeniedError(f"Only the assignee or a manager can {action}.")

    async def update_fields(self, ticket_id: int, actor: User, changes: dict[str, Any]) -> Ticket:
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"These fields cannot be edited: {', '.join(sorted(unknown))}.")
        self._validate_fields(changes)
        ticket = await self.get_ticket(ticket_id)
        self._require_holder_or_manager(actor, ticket, "edit this ticket")
        if not edit_window.is_editable(ticket, self.clock()):
            raise TicketStateError(f"The edit window for ticket {ticket.ticket_number} has closed.")
        if "title" in changes:
            changes = {**changes, "title": str(changes["title"]).strip()}
        if "customer_id" in changes:
            changes = {**changes, "customer_id": self._customer_id(changes["customer_id"])}
        return await self._write(ticket, changes)

    async def toggle_work(self, ticket_id: int, actor: User) -> Ticket:
        ticket = await self.get_ticket(ticket_id)
        self._require_holder_or_manager(actor, ticket, "start or stop work on this ticket")
        toggle = apply_transition(ticket, work_event_for(ticket), self.clock())
        updated = await self._write(ticket, toggle.as_changes())
        LOGGER.info(
            "Work toggled. ticket=%s status=%s total=%s",
            updated.ticket_number,
            updated.status.value,
            updated.total_work_duration,
        )
        return updated

    async def accept_referral(self, ticket_id: int, actor: User) -> Ticket:
        ticket = await self.get_ticket(ticket_id)
        if ticket.assigned_to != actor.username:
            raise PermissionDeniedError("Only the user a ticket was referred to can accept it.")
        toggle = apply_transition(ticket, TicketEvent.ACCEPT, self.clock())
        return await self._write(ticket, toggle.as_changes())

    async def reopen(self, ticket_id: int, actor: User) -> Ticket:
        require_manager(actor, "reopen tickets")
        ticket = await self.get_ticket(ticket_id)
        now = self.clock()
        toggle = apply_transition(ticket, TicketEvent.REOPEN, now)
        changes: dict[str, Any] = {
            **toggle.as_changes(),
            "editable_until": edit_window.open_window(now, self.edit_window_minutes),
        }
        updated = await self._write(ticket, changes)
        LOGGER.info("Ticket reopened. ticket=%s actor=%s", updated.ticket_number, actor.username)
        return updated

    async def extend_edit_time(self, ticket_id: int, actor: User) -> Ticket:
        require_manager(actor, "extend edit time")
        ticket = await self.get_ticket(ticket_id)
        editable_until = edit_window.extend_edit_time(self.clock(), self.edit_window_minutes)
        return await self._write(ticket, {"editable_until": editable_until})

    async def bulk_complete(self, ticket_ids: Sequence[int], actor: User) -> list[Ticket]:
        """Mark tickets done, discarding any running session.

        Tickets that are already done or no longer exist are left alone, and so
        are tickets the actor has no standing over. Only the tickets the actor
        holds come back.
        """
        now = self.clock()
        users = await self.deps.user_repo.list_all()
        requested = await self.deps.ticket_repo.list_by_ids(list(dict.fromkeys(ticket_ids)))
        tickets = [ticket for ticket in requested if can_act_on_ticket(actor, ticket, users)]
        pending = [ticket for ticket in tickets if ticket.status != TicketStatus.DONE]
        for ticket in pending:
            apply_transition(ticket, TicketEvent.BULK_COMPLETE, now)
        if pending:
            await self.deps.ticket_repo.update_many(
                [ticket.id for ticket in pending],
                {"status": TicketStatus.DONE, "work_session_started_at": None, "last_update_date": now},
            )

        completed = await self.deps.ticket_repo.list_by_ids([ticket.id for ticket in tickets])
        pending_ids = {ticket.id for ticket in pending}
        for ticket in completed:
            if ticket.id in pending_ids:
                await self.deps.notifier.notify(TABLE_TICKETS, CHANGE_UPDATE, as_record(ticket))
        LOGGER.info(
            "Bulk complete. actor=%s requested=%s changed=%s skipped=%s",
            actor.username,
            len(ticket_ids),
            len(pending),
            len(requested) - len(tickets),
        )
        return completed

    async def delete_ticket(self, ticket_id: int, actor: User) -> None:
        require_manager(actor, "delete tickets")
        ticket = await self.get_ticket(ticket_id)
        await self.deps.ticket_repo.delete(ticket.id)
        LOGGER.info("Ticket deleted. ticket=%s actor=%s", ticket.ticket_number, actor.username)
        await self.deps.notifier.notify(TABLE_TICKETS, CHANGE_DELETE, {"id": ticket.id})

    async def delete_many(self, ticket_ids: Sequence[int], actor: User) -> int:
        require_manager(actor, "delete tickets")
        unique_ids = list(dict.fromkeys(ticket_ids))
        existing = await self.deps.ticket_repo.list_by_ids(unique_ids)
        deleted = await self.deps.ticket_repo.delete_many([ticket.id for ticket in existing])
        for ticket in existing:
            await self.deps.notifier.notify(TABLE_TICKETS, CHANGE_DELETE, {"id": ticket.id})
        LOGGER.info("Tickets deleted. actor=%s count=%s", actor.username, deleted)
        return deleted

    async def list_visible(self, actor: User, show_completed: bool = False) -> list[Ticket]:
        users = await self.deps.user_repo.list_all()
        tickets = visible_tickets(actor, await self.deps.ticket_repo.list_all(), users, show_completed)
        customers = await self.deps.customer_repo.list_customers()
        contracts = await self.deps.customer_repo.list_support_contracts()
        return recompute_and_sort(tickets, customers, contracts)

    async def referral_history(self, ticket_id: int) -> list[Referral]:
        ticket = await self.get_ticket(ticket_id)
        return await self.deps.referral_repo.list_for_ticket(ticket.id)

    async def referral_targets(self, ticket_id: int, actor: User) -> list[User]:
        ticket = await self.get_ticket(ticket_id)
        users = await self.deps.user_repo.list_all()
        return eligible_referral_targets(actor, users, {ticket.assigned_to})

    async def referred_to_me(self, actor: User) -> list[ReferralInboxItem]:
        """Open referrals addressed to ``actor``, newest first.

        A manager with the user-management menu sees every open referral.
        """
        if is_manager(actor.role) and USERS_MENU in actor.accessible_menus:
            referrals = await self.deps.referral_repo.list_all()
        else:
            referrals = await self.deps.referral_repo.list_referred_to(actor.username)
        tickets = {
            ticket.id: ticket
            for ticket in await self.deps.ticket_repo.list_by_ids(sorted({item.ticket_id for item in referrals}))
        }
        inbox = [
            ReferralInboxItem(referral=referral, ticket=tickets[referral.ticket_id])
            for referral in referrals
            if referral.ticket_id in tickets and tickets[referral.ticket_id].status != TicketStatus.DONE
        ]
        inbox.sort(key=lambda item: (item.referral.referral_date, item.referral.id), reverse=True)
        return inbox
