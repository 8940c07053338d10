from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from core.roles import format_role, parse_role
from database.base import Database
from database.models import (
    Customer,
    CustomerIntroduction,
    IntroductionReferral,
    IntroductionStatus,
    Referral,
    SupportContract,
    Ticket,
    TicketStatus,
    User,
)
from utils.time import parse_iso, to_iso


def _json_load(value: str | None, default: Any) -> Any:
    if value is None:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def _json_dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


def _required_time(value: Any) -> datetime:
    parsed = parse_iso(value)
    if parsed is None:
        raise ValueError("Missing required timestamp column")
    return parsed


class CounterRepository:
    """Allocates numeric ids and ticket sequence numbers.

    Both drivers run the increment as one ``UPDATE ... RETURNING`` statement so
    two callers never receive the same value.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    async def next_value(self, name: str) -> int:
        await self.db.execute(
            """
            INSERT INTO counters(name, value)
            VALUES (?, 0)
            ON CONFLICT(name) DO NOTHING;
            """,
            [name],
        )
        row = await self.db.fetchone(
            """
            UPDATE counters
            SET value = value + 1
            WHERE name = ?
            RETURNING value;
            """,
            [name],
        )
        if not row:
            raise RuntimeError(f"Counter {name} could not be advanced")
        return int(row["value"])


class UserRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def create(self, user: User) -> User:
        await self.db.execute(
            """
            INSERT INTO users(id, username, first_name, last_name, role, accessible_menus_json)
            VALUES (?, ?, ?, ?, ?, ?);
            """,
            [
                user.id,
                user.username,
                user.first_name,
                user.last_name,
                format_role(user.role),
                _json_dump(user.accessible_menus),
            ],
        )
        return user

    async def get_by_username(self, username: str) -> User | None:
        row = await self.db.fetchone("SELECT * FROM users WHERE username = ?;", [username])
        if not row:
            return None
        return self._row_to_user(row)

    async def list_all(self) -> list[User]:
        rows = await self.db.fetchall("SELECT * FROM users ORDER BY id ASC;")
        return [self._row_to_user(row) for row in rows]

    async def delete(self, user_id: int) -> int:
        return await self.db.execute("DELETE FROM users WHERE id = ?;", [user_id])

    def _row_to_user(self, row: dict[str, Any]) -> User:
        return User(
            id=int(row["id"]),
            username=row["username"],
            role=parse_role(row["role"]),
            first_name=row["first_name"] or "",
            last_name=row["last_name"] or "",
            accessible_menus=[str(item) for item in _json_load(row["accessible_menus_json"], [])],
        )


class TicketRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def create(self, ticket: Ticket) -> Ticket:
        row = await self.db.fetchone(
            """
            INSERT INTO tickets(
                id, ticket_number, title, description, customer_id, creation_date_time,
                last_update_date, status, priority, type, channel, assigned_to_username,
                attachments_json, editable_until, work_session_started_at, total_work_duration
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING *;
            """,
            [
                ticket.id,
                ticket.ticket_number,
                ticket.title,
                ticket.description,
                ticket.customer_id,
                to_iso(ticket.creation_date_time),
                to_iso(ticket.last_update_date),
                ticket.status.value,
                ticket.priority,
                ticket.ticket_type,
                ticket.channel,
                ticket.assigned_to,
                _json_dump(ticket.attachments),
                to_iso(ticket.editable_until),
                to_iso(ticket.work_session_started_at),
                ticket.total_work_duration,
            ],
        )
        assert row is not None
        return self._row_to_ticket(row)

    async def get_by_id(self, ticket_id: int) -> Ticket | None:
        row = await self.db.fetchone("SELECT * FROM tickets WHERE id = ?;", [ticket_id])
        if not row:
            return None
        return self._row_to_ticket(row)

    async def list_by_ids(self, ticket_ids: Sequence[int]) -> list[Ticket]:
        if not ticket_ids:
            return []
        rows = await self.db.fetchall(
            f"SELECT * FROM tickets WHERE id IN ({_placeholders(len(ticket_ids))}) ORDER BY id ASC;",
            list(ticket_ids),
        )
        return [self._row_to_ticket(row) for row in rows]

    async def list_all(self) -> list[Ticket]:
        rows = await self.db.fetchall("SELECT * FROM tickets ORDER BY id ASC;")
        return [self._row_to_ticket(row) for row in rows]

    async def update(self, ticket_id: int, changes: dict[str, Any]) -> Ticket | None:
        """Apply column changes and return the stored record, or None if gone."""
        if not changes:
            return await self.get_by_id(ticket_id)
        columns = [self._column(name) for name in changes]
        assignments = ", ".join(f"{column} = ?" for column in columns)
        values = [self._db_value(name, value) for name, value in changes.items()]
        row = await self.db.fetchone(
            f"UPDATE tickets SET {assignments} WHERE id = ? RETURNING *;",
            [*values, ticket_id],
        )
        if not row:
            return None
        return self._row_to_ticket(row)

    async def update_many(self, ticket_ids: Sequence[int], changes: dict[str, Any]) -> int:
        if not ticket_ids or not changes:
            return 0
        assignments = ", ".join(f"{self._column(name)} = ?" for name in changes)
        values = [self._db_value(name, value) for name, value in changes.items()]
        return await self.db.execute(
            f"UPDATE tickets SET {assignments} WHERE id IN ({_placeholders(len(ticket_ids))});",
            [*values, *ticket_ids],
        )

    async def delete(self, ticket_id: int) -> int:
        return await self.delete_many([ticket_id])

    async def delete_many(self, ticket_ids: Sequence[int]) -> int:
        if not ticket_ids:
            return 0
        marks = _placeholders(len(ticket_ids))
        # Referral history goes with its ticket even where FK cascades are off.
        await self.db.execute(f"DELETE FROM referrals WHERE ticket_id IN ({marks});", list(ticket_ids))
        return await self.db.execute(f"DELETE FROM tickets WHERE id IN ({marks});", list(ticket_ids))

    _COLUMNS = {
        "ticket_type": "type",
        "assigned_to": "assigned_to_username",
        "attachments": "attachments_json",
    }
    _UPDATABLE = {
        "title",
        "description",
        "customer_id",
        "last_update_date",
        "status",
        "priority",
        "ticket_type",
        "channel",
        "assigned_to",
        "attachments",
        "editable_until",
        "work_session_started_at",
        "total_work_duration",
    }

    def _column(self, name: str) -> str:
        if name not in self._UPDATABLE:
            raise ValueError(f"Ticket field cannot be updated: {name}")
        return self._COLUMNS.get(name, name)

    @staticmethod
    def _db_value(name: str, value: Any) -> Any:
        if isinstance(value, datetime):
            return to_iso(value)
        if isinstance(value, TicketStatus):
            return value.value
        if name == "attachments":
            return _json_dump(list(value or []))
        return value

    def _row_to_ticket(self, row: dict[str, Any]) -> Ticket:
        return Ticket(
            id=int(row["id"]),
            ticket_number=row["ticket_number"],
            title=row["title"],
            description=row["description"] or "",
            customer_id=int(row["customer_id"]) if row["customer_id"] is not None else None,
            status=TicketStatus(row["status"]),
            creation_date_time=_required_time(row["creation_date_time"]),
            last_update_date=_required_time(row["last_update_date"]),
            editable_until=_required_time(row["editable_until"]),
            priority=row["priority"],
            ticket_type=row["type"] or "",
            channel=row["channel"],
            assigned_to=row["assigned_to_username"],
            attachments=[str(item) for item in _json_load(row["attachments_json"], [])],
            work_session_started_at=parse_iso(row["work_session_started_at"]),
            total_work_duration=int(row["total_work_duration"] or 0),
        )


class ReferralRepository:
    def __init__(self, db: Database, table: str = "referrals", subject_column: str = "ticket_id") -> None:
        self.db = db
        self.table = table
        self.subject_column = subject_column

    async def create(self, subject_id: int, referral_id: int, referred_by: str, referred_to: str, at: datetime) -> dict[str, Any]:
        row = await self.db.fetchone(
            f"""
            INSERT INTO {self.table}(id, {self.subject_column}, referred_by_username, referred_to_username, referral_date)
            VALUES (?, ?, ?, ?, ?)
            RETURNING *;
            """,
            [referral_id, subject_id, referred_by, referred_to, to_iso(at)],
        )
        assert row is not None
        return row

    async def list_rows_for(self, subject_id: int) -> list[dict[str, Any]]:
        return await self.db.fetchall(
            f"""
            SELECT * FROM {self.table}
            WHERE {self.subject_column} = ?
            ORDER BY referral_date ASC, id ASC;
            """,
            [subject_id],
        )

    async def list_rows(self) -> list[dict[str, Any]]:
        return await self.db.fetchall(f"SELECT * FROM {self.table} ORDER BY id ASC;")


class TicketReferralRepository(ReferralRepository):
    def __init__(self, db: Database) -> None:
        super().__init__(db, table="referrals", subject_column="ticket_id")

    async def add(self, referral: Referral) -> Referral:
        row = await self.create(
            referral.ticket_id, referral.id, referral.referred_by, referral.referred_to, referral.referral_date
        )
        return self._row_to_referral(row)

    async def list_for_ticket(self, ticket_id: int) -> list[Referral]:
        return [self._row_to_referral(row) for row in await self.list_rows_for(ticket_id)]

    async def list_all(self) -> list[Referral]:
        return [self._row_to_referral(row) for row in await self.list_rows()]

    async def list_referred_to(self, username: str) -> list[Referral]:
        rows = await self.db.fetchall(
            "SELECT * FROM referrals WHERE referred_to_username = ? ORDER BY id ASC;",
            [username],
        )
        return [self._row_to_referral(row) for row in rows]

    @staticmethod
    def _row_to_referral(row: dict[str, Any]) -> Referral:
        return Referral(
            id=int(row["id"]),
            ticket_id=int(row["ticket_id"]),
            referred_by=row["referred_by_username"],
            referred_to=row["referred_to_username"],
            referral_date=_required_time(row["referral_date"]),
        )


class IntroductionReferralRepository(ReferralRepository):
    def __init__(self, db: Database) -> None:
        super().__init__(db, table="introduction_referrals", subject_column="introduction_id")

    async def add(self, referral: IntroductionReferral) -> IntroductionReferral:
        row = await self.create(
            referral.introduction_id,
            referral.id,
            referral.referred_by,
            referral.referred_to,
            referral.referral_date,
        )
        return self._row_to_referral(row)

    async def list_for_introduction(self, introduction_id: int) -> list[IntroductionReferral]:
        return [self._row_to_referral(row) for row in await self.list_rows_for(introduction_id)]

    @staticmethod
    def _row_to_referral(row: dict[str, Any]) -> IntroductionReferral:
        return IntroductionReferral(
            id=int(row["id"]),
            introduction_id=int(row["introduction_id"]),
            referred_by=row["referred_by_username"],
            referred_to=row["referred_to_username"],
            referral_date=_required_time(row["referral_date"]),
        )


class IntroductionRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def create(self, intro: CustomerIntroduction) -> CustomerIntroduction:
        row = await self.db.fetchone(
            """
            INSERT INTO customer_introductions(
                id, introducer_username, assigned_to_username, customer_name, key_person_name,
                position, contact_number, business_type, location, main_need,
                familiarity_level, acquaintance_details, status, customer_id, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING *;
            """,
            [
                intro.id,
                intro.introducer,
                intro.assigned_to,
                intro.customer_name,
                intro.key_person_name,
                intro.position,
                intro.contact_number,
                intro.business_type,
                intro.location,
                intro.main_need,
                intro.familiarity_level,
                intro.acquaintance_details,
                intro.status.value,
                intro.customer_id,
                to_iso(intro.created_at),
            ],
        )
        assert row is not None
        return self._row_to_introduction(row)

    async def get_by_id(self, introduction_id: int) -> CustomerIntroduction | None:
        row = await self.db.fetchone("SELECT * FROM customer_introductions WHERE id = ?;", [introduction_id])
        if not row:
            return None
        return self._row_to_introduction(row)

    async def list_all(self) -> list[CustomerIntroduction]:
        rows = await self.db.fetchall("SELECT * FROM customer_introductions ORDER BY created_at DESC, id DESC;")
        return [self._row_to_introduction(row) for row in rows]

    async def update(self, introduction_id: int, changes: dict[str, Any]) -> CustomerIntroduction | None:
        if not changes:
            return await self.get_by_id(introduction_id)
        columns = {
            "assigned_to": "assigned_to_username",
            "status": "status",
            "customer_id": "customer_id",
        }
        unknown = set(changes) - set(columns)
        if unknown:
            raise ValueError(f"Introduction fields cannot be updated: {', '.join(sorted(unknown))}")
        assignments = ", ".join(f"{columns[name]} = ?" for name in changes)
        values = [value.value if isinstance(value, IntroductionStatus) else value for value in changes.values()]
        row = await self.db.fetchone(
            f"UPDATE customer_introductions SET {assignments} WHERE id = ? RETURNING *;",
            [*values, introduction_id],
        )
        if not row:
            return None
        return self._row_to_introduction(row)

    async def delete(self, introduction_id: int) -> int:
        return await self.db.execute("DELETE FROM customer_introductions WHERE id = ?;", [introduction_id])

    def _row_to_introduction(self, row: dict[str, Any]) -> CustomerIntroduction:
        return CustomerIntroduction(
            id=int(row["id"]),
            introducer=row["introducer_username"],
            assigned_to=row["assigned_to_username"],
            customer_name=row["customer_name"],
            status=IntroductionStatus(row["status"]),
            key_person_name=row["key_person_name"] or "",
            position=row["position"] or "",
            contact_number=row["contact_number"] or "",
            business_type=row["business_type"] or "",
            location=row["location"] or "",
            main_need=row["main_need"] or "",
            familiarity_level=row["familiarity_level"] or "new",
            acquaintance_details=row["acquaintance_details"] or "",
            customer_id=int(row["customer_id"]) if row["customer_id"] is not None else None,
            created_at=parse_iso(row["created_at"]),
        )


class CustomerRepository:
    """Read side of customers and support contracts, used for ticket scoring."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def upsert_customer(self, customer: Customer) -> None:
        await self.db.execute(
            """
            INSERT INTO customers(id, first_name, last_name, company_name, level, status)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                first_name = excluded.first_name,
                last_name = excluded.last_name,
                company_name = excluded.company_name,
                level = excluded.level,
                status = excluded.status;
            """,
            [
                customer.id,
                customer.first_name,
                customer.last_name,
                customer.company_name,
                customer.level,
                customer.status,
            ],
        )

    async def upsert_contract(self, contract: SupportContract) -> None:
        await self.db.execute(
            """
            INSERT INTO support_contracts(id, customer_id, level, status, start_date, end_date)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                customer_id = excluded.customer_id,
                level = excluded.level,
                status = excluded.status,
                start_date = excluded.start_date,
                end_date = excluded.end_date;
            """,
            [
                contract.id,
                contract.customer_id,
                contract.level,
                contract.status,
                to_iso(contract.start_date),
                to_iso(contract.end_date),
            ],
        )

    async def list_customers(self) -> list[Customer]:
        rows = await self.db.fetchall("SELECT * FROM customers ORDER BY id ASC;")
        return [
            Customer(
                id=int(row["id"]),
                first_name=row["first_name"] or "",
                last_name=row["last_name"] or "",
                company_name=row["company_name"] or "",
                level=row["level"],
                status=row["status"],
            )
            for row in rows
        ]

    async def list_support_contracts(self) -> list[SupportContract]:
        rows = await self.db.fetchall("SELECT * FROM support_contracts ORDER BY id ASC;")
        return [
            SupportContract(
                id=int(row["id"]),
                customer_id=int(row["customer_id"]) if row["customer_id"] is not None else None,
                level=row["level"],
                status=row["status"],
                start_date=parse_iso(row["start_date"]),
                end_date=parse_iso(row["end_date"]),
            )
            for row in rows
        ]
