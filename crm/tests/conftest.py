from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio

from core.app import CrmApplication
from core.config import AppConfig, DatabaseConfig
from core.roles import parse_role
from database.models import User

START = datetime(2024, 5, 1, 9, 0, 0, tzinfo=UTC)

SEED_USERS = [
    (1, "mina", "مدیر", ["tickets", "introductions"]),
    (2, "omid", "manager", ["tickets"]),
    (3, "sara", "مسئول پشتیبان", ["tickets", "introductions"]),
    (4, "ali", "کارشناس پشتیبانی", ["tickets"]),
    (5, "reza", "کارشناس پشتیبان", ["tickets"]),
    (6, "nima", "lead of sales", ["tickets"]),
    (7, "kian", "specialist of sales", ["tickets", "introductions"]),
    (8, "guest", "accountant", []),
]


class FixedClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_user(user_id: int, username: str, role: str, menus: list[str] | None = None) -> User:
    return User(id=user_id, username=username, role=parse_role(role), accessible_menus=list(menus or []))


def seed_users() -> list[User]:
    return [make_user(*row) for row in SEED_USERS]


async def build_crm(tmp_path: Path, clock: FixedClock, skip: set[str] | None = None) -> CrmApplication:
    config = AppConfig(database=DatabaseConfig(url=f"sqlite:///{tmp_path / 'crm.db'}"))
    crm = CrmApplication(config=config, clock=clock, skip_migrations=skip)
    await crm.setup()
    for user in seed_users():
        await crm.user_repo.create(user)
    return crm


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest_asyncio.fixture
async def crm(tmp_path: Path, clock: FixedClock) -> AsyncIterator[CrmApplication]:
    app = await build_crm(tmp_path, clock)
    try:
        yield app
    finally:
        await app.close()
