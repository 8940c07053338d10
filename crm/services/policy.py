"""Who may hand work to whom, and who may see which ticket.

Everything here is a pure function of parsed roles; no I/O.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable, Sequence

from core.errors import PermissionDeniedError
from core.roles import Lead, Manager, Role, Specialist
from database.models import Ticket, TicketStatus, User
from utils.constants import INTRODUCTIONS_MENU


def _role_admits(actor: Role, candidate: Role) -> bool:
    match actor:
        case Manager():
            return isinstance(candidate, (Manager, Lead))
        case Lead(department=department):
            if isinstance(candidate, (Manager, Lead)):
                return True
            return isinstance(candidate, Specialist) and candidate.department == department
        case Specialist(department=department):
            return isinstance(candidate, (Lead, Specialist)) and candidate.department == department
        case _:
            return False


def eligible_referral_targets(
    actor: User,
    all_users: Iterable[User],
    current_assignees: Collection[str | None] = (),
) -> list[User]:
    """Return the users ``actor`` may refer a ticket to, in input order.

    The actor and anyone already holding the ticket are never eligible.
    """
    excluded = {name for name in current_assignees if name}
    excluded.add(actor.username)
    return [
        user
        for user in all_users
        if user.username not in excluded and _role_admits(actor.role, user.role)
    ]


def is_eligible_target(actor: User, target_username: str, all_users: Iterable[User], current_assignees: Collection[str | None] = ()) -> bool:
    return any(user.username == target_username for user in eligible_referral_targets(actor, all_users, current_assignees))


def _department_members(department: str, users: Sequence[User]) -> set[str]:
    return {
        user.username
        for user in users
        if isinstance(user.role, Specialist) and user.role.department == department
    }


def can_act_on_ticket(actor: User, ticket: Ticket, users: Sequence[User]) -> bool:
    """Standing over a ticket regardless of its status.

    Managers hold every ticket. A lead also holds tickets assigned to the
    specialists of the lead's department.
    """
    match actor.role:
        case Manager():
            return True
        case Lead(department=department):
            if ticket.assigned_to == actor.username:
                return True
            return ticket.assigned_to in _department_members(department, users)
        case Specialist():
            return ticket.assigned_to == actor.username
        case _:
            return False


def require_ticket_standing(actor: User, ticket: Ticket, users: Sequence[User], action: str) -> None:
    if not can_act_on_ticket(actor, ticket, users):
        raise PermissionDeniedError(f"{actor.username} cannot {action} ticket {ticket.ticket_number}.")


def can_view_ticket(actor: User, ticket: Ticket, users: Sequence[User], show_completed: bool = False) -> bool:
    """Visibility rule for ticket lists.

    The completed view shows only done tickets; the main view shows the rest.
    Referred tickets stay in a manager's main view but leave everyone else's.
    """
    if show_completed:
        if ticket.status != TicketStatus.DONE:
            return False
    else:
        if ticket.status == TicketStatus.DONE:
            return False
        if ticket.status == TicketStatus.REFERRED and not isinstance(actor.role, Manager):
            return False

    return can_act_on_ticket(actor, ticket, users)


def visible_tickets(actor: User, tickets: Iterable[Ticket], users: Sequence[User], show_completed: bool = False) -> list[Ticket]:
    return [ticket for ticket in tickets if can_view_ticket(actor, ticket, users, show_completed)]


def eligible_introduction_targets(
    actor: User,
    all_users: Iterable[User],
    current_assignee: str | None = None,
) -> list[User]:
    excluded = {actor.username}
    if current_assignee:
        excluded.add(current_assignee)
    return [
        user
        for user in all_users
        if user.username not in excluded and INTRODUCTIONS_MENU in user.accessible_menus
    ]


def require_manager(actor: User, action: str) -> None:
    if not isinstance(actor.role, Manager):
        raise PermissionDeniedError(f"Only managers can {action}.")
