from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import StrEnum
from typing import Any

from core.roles import Role, format_role
from utils.time import to_iso


class TicketStatus(StrEnum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    REFERRED = "referred"


class IntroductionStatus(StrEnum):
    NEW = "new"
    IN_PROGRESS = "in_progress"
    WON = "won"
    LOST = "lost"


@dataclass(slots=True)
class User:
    id: int
    username: str
    role: Role
    first_name: str = ""
    last_name: str = ""
    accessible_menus: list[str] = field(default_factory=list)

    @property
    def display_name(self) -> str:
        full = f"{self.first_name} {self.last_name}".strip()
        return full or self.username


@dataclass(slots=True)
class Ticket:
    id: int
    ticket_number: str
    title: str
    customer_id: int | None
    status: TicketStatus
    creation_date_time: datetime
    last_update_date: datetime
    editable_until: datetime
    description: str = ""
    priority: str = "medium"
    ticket_type: str = ""
    channel: str = "phone"
    assigned_to: str | None = None
    attachments: list[str] = field(default_factory=list)
    work_session_started_at: datetime | None = None
    total_work_duration: int = 0
    # Derived for ordering only; recomputed by services.scoring.
    score: float | None = None


@dataclass(slots=True)
class Referral:
    id: int
    ticket_id: int
    referred_by: str
    referred_to: str
    referral_date: datetime


@dataclass(slots=True)
class Customer:
    id: int
    first_name: str = ""
    last_name: str = ""
    company_name: str = ""
    level: str = "D"
    status: str = "active"


@dataclass(slots=True)
class SupportContract:
    id: int
    customer_id: int | None
    level: str = "bronze"
    status: str = "active"
    start_date: datetime | None = None
    end_date: datetime | None = None


@dataclass(slots=True)
class CustomerIntroduction:
    id: int
    introducer: str
    assigned_to: str
    customer_name: str
    status: IntroductionStatus = IntroductionStatus.NEW
    key_person_name: str = ""
    position: str = ""
    contact_number: str = ""
    business_type: str = ""
    location: str = ""
    main_need: str = ""
    familiarity_level: str = "new"
    acquaintance_details: str = ""
    customer_id: int | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class IntroductionReferral:
    id: int
    introduction_id: int
    referred_by: str
    referred_to: str
    referral_date: datetime


def _plain(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, StrEnum):
        return value.value
    if isinstance(value, list):
        return [_plain(item) for item in value]
    return value


def as_record(entity: Any) -> dict[str, Any]:
    """Flatten a model into JSON-ready snake_case values."""
    record: dict[str, Any] = {}
    for item in fields(entity):
        value = getattr(entity, item.name)
        if item.name == "role":
            record["role"] = format_role(value)
            continue
        record[item.name] = _plain(value)
    return record
