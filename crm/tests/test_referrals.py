from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import START, FixedClock, seed_users
from core.app import CrmApplication
from core.errors import (
    PermissionDeniedError,
    TicketNotFoundError,
    TicketStateError,
    TransientIOError,
    UserNotFoundError,
    ValidationError,
)
from database.models import Ticket, TicketStatus
from services.referrals import ReferralDeps, ReferralOrchestrator

USERS = {user.username: user for user in seed_users()}


def _ticket(ticket_id: int = 1, assignee: str = "ali", status: TicketStatus = TicketStatus.NOT_STARTED) -> Ticket:
    return Ticket(
        id=ticket_id,
        ticket_number=f"T-2024-{ticket_id:04d}",
        title="Server room alarm",
        customer_id=None,
        status=status,
        creation_date_time=START,
        last_update_date=START,
        editable_until=START + timedelta(minutes=30),
        assigned_to=assignee,
    )


def _mocked_orchestrator(ticket: Ticket) -> tuple[ReferralOrchestrator, ReferralDeps]:
    deps = ReferralDeps(
        ticket_repo=AsyncMock(),
        referral_repo=AsyncMock(),
        user_repo=AsyncMock(),
        counter_repo=AsyncMock(),
        notifier=AsyncMock(),
    )
    deps.user_repo.list_all.return_value = list(USERS.values())
    deps.ticket_repo.get_by_id.return_value = ticket
    deps.ticket_repo.update.side_effect = lambda ticket_id, changes: replace(ticket, **changes)
    deps.counter_repo.next_value.return_value = 11
    return ReferralOrchestrator(deps, clock=FixedClock()), deps


@pytest.mark.asyncio
async def test_ticket_is_written_before_referral_row() -> None:
    orchestrator, deps = _mocked_orchestrator(_ticket())
    calls: list[str] = []

    def update(ticket_id: int, changes: dict) -> Ticket:
        calls.append("ticket")
        return replace(_ticket(), **changes)

    def add(referral):
        calls.append("referral")
        return referral

    deps.ticket_repo.update.side_effect = update
    deps.referral_repo.add.side_effect = add

    updated = await orchestrator.refer_ticket(1, USERS["ali"], "sara")

    assert calls == ["ticket", "referral"]
    assert updated.status == TicketStatus.REFERRED
    assert updated.assigned_to == "sara"
    referral = deps.referral_repo.add.await_args.args[0]
    assert (referral.id, referral.referred_by, referral.referred_to) == (11, "ali", "sara")


@pytest.mark.asyncio
async def test_referral_row_failure_leaves_ticket_reassigned() -> None:
    orchestrator, deps = _mocked_orchestrator(_ticket())
    deps.referral_repo.add.side_effect = TransientIOError()

    with pytest.raises(TransientIOError):
        await orchestrator.refer_ticket(1, USERS["ali"], "sara")

    deps.ticket_repo.update.assert_awaited_once()
    changes = deps.ticket_repo.update.await_args.args[1]
    assert changes["assigned_to"] == "sara"
    assert changes["status"] == TicketStatus.REFERRED


@pytest.mark.asyncio
async def test_ticket_write_failure_never_creates_referral() -> None:
    orchestrator, deps = _mocked_orchestrator(_ticket())
    deps.ticket_repo.update.side_effect = TransientIOError()

    with pytest.raises(TransientIOError):
        await orchestrator.refer_ticket(1, USERS["ali"], "sara")

    deps.referral_repo.add.assert_not_awaited()


@pytest.mark.asyncio
async def test_ineligible_target_rejected_before_any_write() -> None:
    orchestrator, deps = _mocked_orchestrator(_ticket())

    with pytest.raises(ValidationError):
        await orchestrator.refer_ticket(1, USERS["ali"], "kian")
    with pytest.raises(UserNotFoundError):
        await orchestrator.refer_ticket(1, USERS["ali"], "nobody")
    deps.ticket_repo.get_by_id.return_value = _ticket(status=TicketStatus.REFERRED)
    with pytest.raises(TicketStateError):
        await orchestrator.refer_ticket(1, USERS["ali"], "sara")

    deps.ticket_repo.update.assert_not_awaited()
    deps.referral_repo.add.assert_not_awaited()


@pytest.mark.asyncio
async def test_actor_without_standing_cannot_refer() -> None:
    orchestrator, deps = _mocked_orchestrator(_ticket(assignee="ali"))

    with pytest.raises(PermissionDeniedError):
        await orchestrator.refer_ticket(1, USERS["kian"], "nima")

    deps.ticket_repo.update.assert_not_awaited()
    deps.referral_repo.add.assert_not_awaited()
    deps.notifier.notify.assert_not_awaited()


@pytest.mark.asyncio
async def test_missing_ticket() -> None:
    orchestrator, deps = _mocked_orchestrator(_ticket())
    deps.ticket_repo.get_by_id.return_value = None
    with pytest.raises(TicketNotFoundError):
        await orchestrator.refer_ticket(99, USERS["ali"], "sara")


@pytest.mark.asyncio
async def test_support_specialist_referrals(crm: CrmApplication) -> None:
    ali = USERS["ali"]
    ticket = await crm.ticket_service.create_ticket(ali, title="Mail server down")

    with pytest.raises(ValidationError):
        await crm.referrals.refer_ticket(ticket.id, ali, "kian")
    assert await crm.ticket_service.referral_history(ticket.id) == []

    referred = await crm.referrals.refer_ticket(ticket.id, ali, "sara")
    assert referred.status == TicketStatus.REFERRED
    assert referred.assigned_to == "sara"

    history = await crm.ticket_service.referral_history(ticket.id)
    assert [(item.referred_by, item.referred_to) for item in history] == [("ali", "sara")]


@pytest.mark.asyncio
async def test_referral_of_running_ticket_discards_session(crm: CrmApplication, clock: FixedClock) -> None:
    ali = USERS["ali"]
    ticket = await crm.ticket_service.create_ticket(ali, title="Slow laptop")
    await crm.ticket_service.toggle_work(ticket.id, ali)
    clock.advance(seconds=300)

    referred = await crm.referrals.refer_ticket(ticket.id, ali, "reza")

    assert referred.work_session_started_at is None
    assert referred.total_work_duration == 0


@pytest.mark.asyncio
async def test_bulk_referral_collects_failures(crm: CrmApplication) -> None:
    sara = USERS["sara"]
    first = await crm.ticket_service.create_ticket(sara, title="Backup failed")
    second = await crm.ticket_service.create_ticket(sara, title="Disk full")
    already_done = await crm.ticket_service.create_ticket(sara, title="Old request")
    await crm.ticket_service.bulk_complete([already_done.id], sara)

    result = await crm.referrals.refer_many([first.id, already_done.id, 999, second.id], sara, "ali")

    assert [ticket.id for ticket in result.succeeded] == [first.id, second.id]
    assert {failure.ticket_id: failure.error for failure in result.failures} == {
        already_done.id: "TicketStateError",
        999: "TicketNotFoundError",
    }
    assert not result.all_succeeded
    assert len(await crm.ticket_service.referral_history(second.id)) == 1


@pytest.mark.asyncio
async def test_only_holder_or_department_lead_can_refer(crm: CrmApplication) -> None:
    ali = USERS["ali"]
    ticket = await crm.ticket_service.create_ticket(ali, title="VPN drops")

    with pytest.raises(PermissionDeniedError):
        await crm.referrals.refer_ticket(ticket.id, USERS["kian"], "nima")
    with pytest.raises(PermissionDeniedError):
        await crm.referrals.refer_ticket(ticket.id, USERS["reza"], "sara")
    unchanged = await crm.ticket_service.get_ticket(ticket.id)
    assert (unchanged.status, unchanged.assigned_to) == (TicketStatus.NOT_STARTED, "ali")
    assert await crm.ticket_service.referral_history(ticket.id) == []

    bulk = await crm.referrals.refer_many([ticket.id], USERS["kian"], "nima")
    assert [failure.error for failure in bulk.failures] == ["PermissionDeniedError"]

    referred = await crm.referrals.refer_ticket(ticket.id, USERS["sara"], "reza")
    assert referred.assigned_to == "reza"
