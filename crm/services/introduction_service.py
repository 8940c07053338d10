from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from core.errors import (
    DegradedFeatureError,
    IntroductionNotFoundError,
    PermissionDeniedError,
    UserNotFoundError,
    ValidationError,
)
from core.roles import is_manager
from database.models import (
    CustomerIntroduction,
    IntroductionReferral,
    IntroductionStatus,
    User,
    as_record,
)
from database.repositories import (
    CounterRepository,
    IntroductionReferralRepository,
    IntroductionRepository,
    UserRepository,
)
from services.notifications import ChangeNotifier
from services.policy import eligible_introduction_targets
from utils.constants import (
    CHANGE_INSERT,
    CHANGE_UPDATE,
    TABLE_INTRODUCTION_REFERRALS,
    TABLE_INTRODUCTIONS,
)
from utils.time import Clock, utc_now

LOGGER = logging.getLogger(__name__)

DETAIL_FIELDS = (
    "key_person_name",
    "position",
    "contact_number",
    "business_type",
    "location",
    "main_need",
    "familiarity_level",
    "acquaintance_details",
)


@dataclass(slots=True)
class IntroductionServiceDeps:
    intro_repo: IntroductionRepository
    intro_referral_repo: IntroductionReferralRepository
    user_repo: UserRepository
    counter_repo: CounterRepository
    notifier: ChangeNotifier


class IntroductionService:
    """Customer-introduction leads and their referral history.

    Referral history lives in an optional table. When it is missing the
    service keeps working without history and remembers that, so the warning
    is logged once.
    """

    def __init__(self, deps: IntroductionServiceDeps, clock: Clock = utc_now, history_enabled: bool = True) -> None:
        self.deps = deps
        self.clock = clock
        self.history_enabled = history_enabled

    def disable_history(self, reason: str) -> None:
        if not self.history_enabled:
            return
        self.history_enabled = False
        LOGGER.warning("Introduction referral history disabled: %s", reason)

    async def get(self, introduction_id: int) -> CustomerIntroduction:
        intro = await self.deps.intro_repo.get_by_id(introduction_id)
        if not intro:
            raise IntroductionNotFoundError()
        return intro

    async def list_visible(self, actor: User) -> list[CustomerIntroduction]:
        intros = await self.deps.intro_repo.list_all()
        if is_manager(actor.role):
            return intros
        return [intro for intro in intros if actor.username in (intro.introducer, intro.assigned_to)]

    async def create(
        self,
        actor: User,
        customer_name: str,
        assigned_to: str | None = None,
        **details: Any,
    ) -> CustomerIntroduction:
        if not customer_name.strip():
            raise ValidationError("Customer name is required.")
        unknown = set(details) - set(DETAIL_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown introduction fields: {', '.join(sorted(unknown))}.")
        assignee = assigned_to or actor.username
        if assignee != actor.username and not await self.deps.user_repo.get_by_username(assignee):
            raise UserNotFoundError(f"User {assignee} does not exist.")

        intro_id = await self.deps.counter_repo.next_value(TABLE_INTRODUCTIONS)
        intro = await self.deps.intro_repo.create(
            CustomerIntroduction(
                id=intro_id,
                introducer=actor.username,
                assigned_to=assignee,
                customer_name=customer_name.strip(),
                status=IntroductionStatus.NEW,
                created_at=self.clock(),
                **{name: str(value) for name, value in details.items() if value is not None},
            )
        )
        await self.deps.notifier.notify(TABLE_INTRODUCTIONS, CHANGE_INSERT, as_record(intro))
        return intro

    @staticmethod
    def _require_participant(actor: User, intro: CustomerIntroduction) -> None:
        if is_manager(actor.role) or actor.username in (intro.introducer, intro.assigned_to):
            return
        raise PermissionDeniedError("Only the introducer, the assignee or a manager can change this introduction.")

    async def _write(self, intro: CustomerIntroduction, changes: dict[str, Any]) -> CustomerIntroduction:
        updated = await self.deps.intro_repo.update(intro.id, changes)
        if not updated:
            raise IntroductionNotFoundError()
        await self.deps.notifier.notify(TABLE_INTRODUCTIONS, CHANGE_UPDATE, as_record(updated))
        return updated

    async def set_status(self, introduction_id: int, actor: User, status: str) -> CustomerIntroduction:
        try:
            new_status = IntroductionStatus(status)
        except ValueError as error:
            raise ValidationError(f"Unknown introduction status: {status}.") from error
        intro = await self.get(introduction_id)
        self._require_participant(actor, intro)
        return await self._write(intro, {"status": new_status})

    async def refer(self, introduction_id: int, actor: User, target_username: str) -> CustomerIntroduction:
        intro = await self.get(introduction_id)
        self._require_participant(actor, intro)
        users = await self.deps.user_repo.list_all()
        if not any(user.username == target_username for user in users):
            raise UserNotFoundError(f"User {target_username} does not exist.")
        eligible = eligible_introduction_targets(actor, users, intro.assigned_to)
        if all(user.username != target_username for user in eligible):
            raise ValidationError(f"{target_username} cannot receive introductions.")

        updated = await self._write(intro, {"assigned_to": target_username})
        if self.history_enabled:
            await self._record_referral(updated, actor, target_username)
        return updated

    async def _record_referral(self, intro: CustomerIntroduction, actor: User, target_username: str) -> None:
        try:
            referral_id = await self.deps.counter_repo.next_value(TABLE_INTRODUCTION_REFERRALS)
            referral = await self.deps.intro_referral_repo.add(
                IntroductionReferral(
                    id=referral_id,
                    introduction_id=intro.id,
                    referred_by=actor.username,
                    referred_to=target_username,
                    referral_date=self.clock(),
                )
            )
        except DegradedFeatureError as error:
            self.disable_history(error.user_message)
            return
        await self.deps.notifier.notify(TABLE_INTRODUCTION_REFERRALS, CHANGE_INSERT, as_record(referral))

    async def link_customer(self, introduction_id: int, actor: User, customer_id: int) -> CustomerIntroduction:
        intro = await self.get(introduction_id)
        self._require_participant(actor, intro)
        if intro.status != IntroductionStatus.WON:
            raise ValidationError("Only successful introductions can be linked to a customer.")
        return await self._write(intro, {"customer_id": customer_id})

    async def referral_history(self, introduction_id: int) -> list[IntroductionReferral]:
        if not self.history_enabled:
            raise DegradedFeatureError("Introduction referral history is not available.")
        intro = await self.get(introduction_id)
        try:
            return await self.deps.intro_referral_repo.list_for_introduction(intro.id)
        except DegradedFeatureError as error:
            self.disable_history(error.user_message)
            raise
