from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from conftest import make_user, seed_users
from core.errors import PermissionDeniedError
from core.roles import Lead, Manager, OtherRole, Specialist, format_role, parse_role
from database.models import Ticket, TicketStatus
from services.policy import (
    can_act_on_ticket,
    can_view_ticket,
    eligible_introduction_targets,
    eligible_referral_targets,
    require_manager,
    require_ticket_standing,
)

USERS = seed_users()
BY_NAME = {user.username: user for user in USERS}


def _targets(actor: str, assignees: set[str] | None = None) -> set[str]:
    return {user.username for user in eligible_referral_targets(BY_NAME[actor], USERS, assignees or set())}


def _ticket(status: TicketStatus, assignee: str) -> Ticket:
    now = datetime(2024, 5, 1, tzinfo=UTC)
    return Ticket(
        id=1,
        ticket_number="T-2024-0001",
        title="Printer offline",
        customer_id=None,
        status=status,
        creation_date_time=now,
        last_update_date=now,
        editable_until=now + timedelta(minutes=30),
        assigned_to=assignee,
    )


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("مدیر", Manager()),
        ("manager", Manager()),
        ("مسئول پشتیبان", Lead("پشتیبان")),
        ("کارشناس پشتیبانی", Specialist("پشتیبان")),
        ("lead of  Sales", Lead("sales")),
        ("specialist of sales", Specialist("sales")),
        ("accountant", OtherRole("accountant")),
        ("", OtherRole("")),
        ("lead of ", OtherRole("lead of")),
    ],
)
def test_parse_role(raw: str, expected: object) -> None:
    assert parse_role(raw) == expected


def test_format_role_keeps_stored_label() -> None:
    assert format_role(parse_role("مسئول پشتیبان")) == "مسئول پشتیبان"
    assert format_role(Lead("sales")) == "lead of sales"
    assert format_role(Specialist("sales")) == "specialist of sales"
    assert format_role(Manager(label="")) == "manager"


def test_manager_targets_other_managers_and_leads() -> None:
    assert _targets("mina") == {"omid", "sara", "nima"}


def test_lead_targets_managers_leads_and_own_specialists() -> None:
    assert _targets("sara") == {"mina", "omid", "nima", "ali", "reza"}
    assert _targets("nima") == {"mina", "omid", "sara", "kian"}


def test_specialist_targets_own_lead_and_peers() -> None:
    assert _targets("ali") == {"sara", "reza"}
    assert _targets("kian") == {"nima"}


def test_other_role_has_no_targets() -> None:
    assert _targets("guest") == set()


def test_actor_and_current_assignees_are_excluded() -> None:
    assert "sara" not in _targets("ali", {"sara"})
    assert _targets("ali", {"sara"}) == {"reza"}
    assert "mina" not in _targets("mina")


def test_policy_asymmetry() -> None:
    # specialist -> own lead, lead -> that specialist, never across departments
    assert "sara" in _targets("ali")
    assert "ali" in _targets("sara")
    assert "kian" not in _targets("ali")
    assert "ali" not in _targets("kian")
    assert "ali" not in _targets("nima")
    assert "mina" not in _targets("ali")


def test_targets_preserve_input_order() -> None:
    names = [user.username for user in eligible_referral_targets(BY_NAME["sara"], USERS, set())]
    assert names == ["mina", "omid", "ali", "reza", "nima"]


def test_visibility_by_role() -> None:
    ali_ticket = _ticket(TicketStatus.IN_PROGRESS, "ali")
    kian_ticket = _ticket(TicketStatus.NOT_STARTED, "kian")

    assert can_view_ticket(BY_NAME["mina"], ali_ticket, USERS)
    assert can_view_ticket(BY_NAME["sara"], ali_ticket, USERS)
    assert not can_view_ticket(BY_NAME["sara"], kian_ticket, USERS)
    assert can_view_ticket(BY_NAME["ali"], ali_ticket, USERS)
    assert not can_view_ticket(BY_NAME["reza"], ali_ticket, USERS)
    assert not can_view_ticket(BY_NAME["guest"], ali_ticket, USERS)


def test_referred_tickets_only_in_manager_main_view() -> None:
    referred = _ticket(TicketStatus.REFERRED, "ali")
    assert can_view_ticket(BY_NAME["mina"], referred, USERS)
    assert not can_view_ticket(BY_NAME["ali"], referred, USERS)
    assert not can_view_ticket(BY_NAME["mina"], referred, USERS, show_completed=True)


def test_completed_view_shows_only_done() -> None:
    done = _ticket(TicketStatus.DONE, "ali")
    assert not can_view_ticket(BY_NAME["ali"], done, USERS)
    assert can_view_ticket(BY_NAME["ali"], done, USERS, show_completed=True)
    assert can_view_ticket(BY_NAME["sara"], done, USERS, show_completed=True)


def test_introduction_targets_need_menu_access() -> None:
    targets = eligible_introduction_targets(BY_NAME["mina"], USERS, current_assignee="sara")
    assert [user.username for user in targets] == ["kian"]


def test_require_manager() -> None:
    require_manager(BY_NAME["omid"], "reopen tickets")
    with pytest.raises(PermissionDeniedError):
        require_manager(BY_NAME["sara"], "reopen tickets")
    with pytest.raises(PermissionDeniedError):
        require_manager(make_user(99, "temp", "lead of مدیر"), "reopen tickets")


@pytest.mark.parametrize("status", list(TicketStatus))
def test_standing_ignores_status(status: TicketStatus) -> None:
    ticket = _ticket(status, "ali")
    assert can_act_on_ticket(BY_NAME["ali"], ticket, USERS)
    assert can_act_on_ticket(BY_NAME["sara"], ticket, USERS)
    assert can_act_on_ticket(BY_NAME["omid"], ticket, USERS)
    assert not can_act_on_ticket(BY_NAME["reza"], ticket, USERS)
    assert not can_act_on_ticket(BY_NAME["nima"], ticket, USERS)
    assert not can_act_on_ticket(BY_NAME["kian"], ticket, USERS)
    assert not can_act_on_ticket(BY_NAME["guest"], ticket, USERS)


def test_require_ticket_standing() -> None:
    ticket = _ticket(TicketStatus.REFERRED, "kian")
    require_ticket_standing(BY_NAME["nima"], ticket, USERS, "refer")
    with pytest.raises(PermissionDeniedError):
        require_ticket_standing(BY_NAME["ali"], ticket, USERS, "refer")
