from __future__ import annotations

import logging
from pathlib import Path
from types import TracebackType

from core.config import AppConfig
from database.base import Database
from database.migrations.runner import MIGRATIONS_DIR, run_migrations
from database.repositories import (
    CounterRepository,
    CustomerRepository,
    IntroductionReferralRepository,
    IntroductionRepository,
    TicketReferralRepository,
    TicketRepository,
    UserRepository,
)
from services.cache import CacheBackend, build_cache
from services.introduction_service import IntroductionService, IntroductionServiceDeps
from services.notifications import ChangeNotifier, NotificationBus, WebhookNotifier, build_notification_bus
from services.referrals import ReferralDeps, ReferralOrchestrator
from services.session_store import SessionStore
from services.ticket_service import TicketService, TicketServiceDeps
from utils.constants import TABLE_INTRODUCTION_REFERRALS
from utils.time import Clock, utc_now

LOGGER = logging.getLogger(__name__)


class CrmApplication:
    """Owns the database, cache, notification bus and the services built on them."""

    def __init__(
        self,
        config: AppConfig,
        clock: Clock = utc_now,
        migrations_path: Path = MIGRATIONS_DIR,
        skip_migrations: set[str] | None = None,
    ) -> None:
        self.config = config
        self.clock = clock
        self.migrations_path = migrations_path
        self.skip_migrations = skip_migrations or set()
        self.database = Database(
            url=config.database.url,
            timeout_seconds=config.database.timeout_seconds,
            pool_min_size=config.database.pool_min_size,
            pool_max_size=config.database.pool_max_size,
        )
        self.cache: CacheBackend | None = None
        self.bus: NotificationBus | None = None

        # Repositories and services are initialized during setup.
        self.counter_repo: CounterRepository
        self.user_repo: UserRepository
        self.ticket_repo: TicketRepository
        self.referral_repo: TicketReferralRepository
        self.customer_repo: CustomerRepository
        self.intro_repo: IntroductionRepository
        self.intro_referral_repo: IntroductionReferralRepository

        self.notifier: ChangeNotifier
        self.sessions: SessionStore
        self.ticket_service: TicketService
        self.referrals: ReferralOrchestrator
        self.introduction_service: IntroductionService

    async def setup(self) -> None:
        await self.database.connect()
        applied = await run_migrations(self.database, self.migrations_path, skip=self.skip_migrations)
        if applied:
            LOGGER.info("Applied %s migrations", len(applied))
        self.cache = await build_cache(self.config.redis, clock=self.clock)
        self.bus = await build_notification_bus(self.config.redis)

        self.counter_repo = CounterRepository(self.database)
        self.user_repo = UserRepository(self.database)
        self.ticket_repo = TicketRepository(self.database)
        self.referral_repo = TicketReferralRepository(self.database)
        self.customer_repo = CustomerRepository(self.database)
        self.intro_repo = IntroductionRepository(self.database)
        self.intro_referral_repo = IntroductionReferralRepository(self.database)

        webhook = WebhookNotifier(self.config.webhook_log)
        self.notifier = ChangeNotifier(self.bus, webhook if webhook.enabled else None)

        self.sessions = SessionStore(
            self.cache,
            clock=self.clock,
            ttl_days=self.config.session.ttl_days,
            key_prefix=self.config.session.key_prefix,
        )
        await self.sessions.start()

        self.ticket_service = TicketService(
            self.config,
            TicketServiceDeps(
                ticket_repo=self.ticket_repo,
                referral_repo=self.referral_repo,
                user_repo=self.user_repo,
                counter_repo=self.counter_repo,
                customer_repo=self.customer_repo,
                notifier=self.notifier,
            ),
            clock=self.clock,
        )
        self.referrals = ReferralOrchestrator(
            ReferralDeps(
                ticket_repo=self.ticket_repo,
                referral_repo=self.referral_repo,
                user_repo=self.user_repo,
                counter_repo=self.counter_repo,
                notifier=self.notifier,
            ),
            clock=self.clock,
        )
        self.introduction_service = IntroductionService(
            IntroductionServiceDeps(
                intro_repo=self.intro_repo,
                intro_referral_repo=self.intro_referral_repo,
                user_repo=self.user_repo,
                counter_repo=self.counter_repo,
                notifier=self.notifier,
            ),
            clock=self.clock,
        )
        if not await self.database.table_exists(TABLE_INTRODUCTION_REFERRALS):
            self.introduction_service.disable_history(f"table {TABLE_INTRODUCTION_REFERRALS} is missing")
        LOGGER.info("CRM core ready. driver=%s", self.database.driver)

    async def close(self) -> None:
        if hasattr(self, "sessions"):
            await self.sessions.close()
        if self.bus:
            await self.bus.close()
            self.bus = None
        if self.cache:
            await self.cache.close()
            self.cache = None
        await self.database.close()

    async def __aenter__(self) -> CrmApplication:
        await self.setup()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
