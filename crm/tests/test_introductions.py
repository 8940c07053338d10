from __future__ import annotations

from pathlib import Path

import pytest

from conftest import FixedClock, build_crm, seed_users
from core.app import CrmApplication
from core.errors import (
    DegradedFeatureError,
    IntroductionNotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from database.models import IntroductionStatus

USERS = {user.username: user for user in seed_users()}


@pytest.mark.asyncio
async def test_introduction_lifecycle(crm: CrmApplication) -> None:
    service = crm.introduction_service
    intro = await service.create(
        USERS["sara"],
        "Pars Trading",
        key_person_name="Mr. Karimi",
        contact_number="0912",
        main_need="Accounting software",
    )
    assert intro.status == IntroductionStatus.NEW
    assert intro.introducer == "sara"
    assert intro.assigned_to == "sara"
    assert intro.key_person_name == "Mr. Karimi"

    referred = await service.refer(intro.id, USERS["sara"], "kian")
    assert referred.assigned_to == "kian"
    history = await service.referral_history(intro.id)
    assert [(item.referred_by, item.referred_to) for item in history] == [("sara", "kian")]

    with pytest.raises(ValidationError):
        await service.link_customer(intro.id, USERS["kian"], 10)

    won = await service.set_status(intro.id, USERS["kian"], "won")
    assert won.status == IntroductionStatus.WON
    linked = await service.link_customer(intro.id, USERS["kian"], 10)
    assert linked.customer_id == 10


@pytest.mark.asyncio
async def test_introduction_rules(crm: CrmApplication) -> None:
    service = crm.introduction_service
    intro = await service.create(USERS["mina"], "Kavir Steel")

    with pytest.raises(ValidationError):
        await service.create(USERS["mina"], "  ")
    with pytest.raises(ValidationError):
        await service.create(USERS["mina"], "Kavir Steel", budget="high")
    with pytest.raises(ValidationError):
        await service.set_status(intro.id, USERS["mina"], "archived")
    with pytest.raises(ValidationError):
        await service.refer(intro.id, USERS["mina"], "ali")
    with pytest.raises(PermissionDeniedError):
        await service.set_status(intro.id, USERS["reza"], "lost")
    with pytest.raises(IntroductionNotFoundError):
        await service.set_status(999, USERS["mina"], "lost")

    assert [item.id for item in await service.list_visible(USERS["mina"])] == [intro.id]
    assert await service.list_visible(USERS["reza"]) == []


@pytest.mark.asyncio
async def test_missing_history_table_disables_feature(tmp_path: Path) -> None:
    crm = await build_crm(tmp_path, FixedClock(), skip={"0002_introduction_referrals.sql"})
    try:
        service = crm.introduction_service
        assert service.history_enabled is False

        intro = await service.create(USERS["sara"], "Arian Tech")
        referred = await service.refer(intro.id, USERS["sara"], "kian")
        assert referred.assigned_to == "kian"

        with pytest.raises(DegradedFeatureError):
            await service.referral_history(intro.id)
    finally:
        await crm.close()


@pytest.mark.asyncio
async def test_history_write_degrades_when_table_disappears(crm: CrmApplication) -> None:
    service = crm.introduction_service
    intro = await service.create(USERS["sara"], "Negin Foods")
    await crm.database.executescript("DROP TABLE introduction_referrals;")

    referred = await service.refer(intro.id, USERS["sara"], "kian")

    assert referred.assigned_to == "kian"
    assert service.history_enabled is False
