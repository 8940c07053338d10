from __future__ import annotations

from typing import Any

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query

from core.app import CrmApplication
from core.errors import UserNotFoundError, ValidationError, register_error_handlers
from database.models import Ticket, User, as_record
from services.edit_window import countdown
from services.session_store import Session
from services.work_sessions import elapsed_seconds
from utils.casing import camel_key, to_camel, to_snake
from utils.time import format_duration, to_iso


def _auth(x_api_key: str | None, expected: str) -> None:
    if not expected:
        return
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


def _user_payload(user: User) -> dict[str, Any]:
    return to_camel({**as_record(user), "display_name": user.display_name})


def _ticket_payload(ticket: Ticket, crm: CrmApplication) -> dict[str, Any]:
    now = crm.clock()
    running = elapsed_seconds(ticket, now)
    record = as_record(ticket)
    record["running_seconds"] = running
    record["total_display"] = format_duration(ticket.total_work_duration + running)
    record["edit_countdown"] = countdown(ticket, now)
    return to_camel(record)


def _bearer_token(authorization: str | None) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return token.strip()


def _ids(payload: dict[str, Any]) -> list[int]:
    raw = payload.get("ticket_ids")
    if not isinstance(raw, list) or not raw:
        raise ValidationError("ticketIds must be a non-empty list.")
    try:
        return [int(item) for item in raw]
    except (TypeError, ValueError) as error:
        raise ValidationError("ticketIds must contain numeric ids.") from error


def _required(payload: dict[str, Any], key: str) -> Any:
    value = payload.get(key)
    if value is None or value == "":
        raise ValidationError(f"{camel_key(key)} is required.")
    return value


def create_api_app(crm: CrmApplication) -> FastAPI:
    app = FastAPI(title="CRM Core API", version="1.0.0")
    register_error_handlers(app)

    async def require_api_key(x_api_key: str | None = Header(default=None)) -> None:
        _auth(x_api_key, crm.config.api.api_key)

    async def current_session(
        authorization: str | None = Header(default=None),
        _: None = Depends(require_api_key),
    ) -> Session:
        session = await crm.sessions.current(_bearer_token(authorization))
        if not session:
            raise HTTPException(status_code=401, detail="Session expired or unknown")
        return session

    async def current_actor(session: Session = Depends(current_session)) -> User:
        try:
            return await crm.ticket_service.resolve_actor(session.username)
        except UserNotFoundError as error:
            await crm.sessions.logout(session.token)
            raise HTTPException(status_code=401, detail="Session user no longer exists") from error

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/login")
    async def login(body: dict[str, Any] = Body(...), _: None = Depends(require_api_key)) -> dict[str, Any]:
        username = str(_required(to_snake(body), "username"))
        try:
            user = await crm.ticket_service.resolve_actor(username)
        except UserNotFoundError as error:
            raise HTTPException(status_code=401, detail="Unknown user") from error
        session = await crm.sessions.login(user)
        return {"token": session.token, "loginAt": to_iso(session.login_at), "user": _user_payload(user)}

    @app.post("/logout", status_code=204)
    async def logout(session: Session = Depends(current_session)) -> None:
        await crm.sessions.logout(session.token)

    @app.get("/me")
    async def me(actor: User = Depends(current_actor)) -> dict[str, Any]:
        return _user_payload(actor)

    @app.get("/tickets")
    async def list_tickets(
        show_completed: bool = Query(default=False, alias="showCompleted"),
        actor: User = Depends(current_actor),
    ) -> dict[str, Any]:
        tickets = await crm.ticket_service.list_visible(actor, show_completed=show_completed)
        return {"items": [_ticket_payload(ticket, crm) for ticket in tickets]}

    @app.post("/tickets", status_code=201)
    async def create_ticket(body: dict[str, Any] = Body(...), actor: User = Depends(current_actor)) -> dict[str, Any]:
        payload = to_snake(body)
        ticket = await crm.ticket_service.create_ticket(
            actor,
            title=str(_required(payload, "title")),
            customer_id=payload.get("customer_id"),
            description=payload.get("description") or "",
            priority=payload.get("priority") or "medium",
            ticket_type=payload.get("ticket_type") or "",
            channel=payload.get("channel") or "phone",
            assigned_to=payload.get("assigned_to"),
            attachments=payload.get("attachments") or [],
        )
        return _ticket_payload(ticket, crm)

    # Bulk routes first so "bulk" is never read as a ticket id.
    @app.post("/tickets/bulk/complete")
    async def bulk_complete(body: dict[str, Any] = Body(...), actor: User = Depends(current_actor)) -> dict[str, Any]:
        tickets = await crm.ticket_service.bulk_complete(_ids(to_snake(body)), actor)
        return {"items": [_ticket_payload(ticket, crm) for ticket in tickets]}

    @app.post("/tickets/bulk/refer")
    async def bulk_refer(body: dict[str, Any] = Body(...), actor: User = Depends(current_actor)) -> dict[str, Any]:
        payload = to_snake(body)
        result = await crm.referrals.refer_many(_ids(payload), actor, str(_required(payload, "target_username")))
        return {
            "succeeded": [_ticket_payload(ticket, crm) for ticket in result.succeeded],
            "failures": [to_camel(as_record(failure)) for failure in result.failures],
        }

    @app.post("/tickets/bulk/delete")
    async def bulk_delete(body: dict[str, Any] = Body(...), actor: User = Depends(current_actor)) -> dict[str, int]:
        deleted = await crm.ticket_service.delete_many(_ids(to_snake(body)), actor)
        return {"deleted": deleted}

    @app.patch("/tickets/{ticket_id}")
    async def update_ticket(
        ticket_id: int,
        body: dict[str, Any] = Body(...),
        actor: User = Depends(current_actor),
    ) -> dict[str, Any]:
        ticket = await crm.ticket_service.update_fields(ticket_id, actor, to_snake(body))
        return _ticket_payload(ticket, crm)

    @app.delete("/tickets/{ticket_id}", status_code=204)
    async def delete_ticket(ticket_id: int, actor: User = Depends(current_actor)) -> None:
        await crm.ticket_service.delete_ticket(ticket_id, actor)

    @app.post("/tickets/{ticket_id}/toggle-work")
    async def toggle_work(ticket_id: int, actor: User = Depends(current_actor)) -> dict[str, Any]:
        return _ticket_payload(await crm.ticket_service.toggle_work(ticket_id, actor), crm)

    @app.post("/tickets/{ticket_id}/accept")
    async def accept_referral(ticket_id: int, actor: User = Depends(current_actor)) -> dict[str, Any]:
        return _ticket_payload(await crm.ticket_service.accept_referral(ticket_id, actor), crm)

    @app.post("/tickets/{ticket_id}/reopen")
    async def reopen(ticket_id: int, actor: User = Depends(current_actor)) -> dict[str, Any]:
        return _ticket_payload(await crm.ticket_service.reopen(ticket_id, actor), crm)

    @app.post("/tickets/{ticket_id}/extend-edit-time")
    async def extend_edit_time(ticket_id: int, actor: User = Depends(current_actor)) -> dict[str, Any]:
        return _ticket_payload(await crm.ticket_service.extend_edit_time(ticket_id, actor), crm)

    @app.post("/tickets/{ticket_id}/refer")
    async def refer(
        ticket_id: int,
        body: dict[str, Any] = Body(...),
        actor: User = Depends(current_actor),
    ) -> dict[str, Any]:
        target = str(_required(to_snake(body), "target_username"))
        return _ticket_payload(await crm.referrals.refer_ticket(ticket_id, actor, target), crm)

    @app.get("/tickets/{ticket_id}/referrals")
    async def ticket_referrals(ticket_id: int, actor: User = Depends(current_actor)) -> dict[str, Any]:
        referrals = await crm.ticket_service.referral_history(ticket_id)
        return {"items": [to_camel(as_record(referral)) for referral in referrals]}

    @app.get("/tickets/{ticket_id}/referral-targets")
    async def referral_targets(ticket_id: int, actor: User = Depends(current_actor)) -> dict[str, Any]:
        users = await crm.ticket_service.referral_targets(ticket_id, actor)
        return {"items": [_user_payload(user) for user in users]}

    @app.get("/referrals")
    async def referral_inbox(actor: User = Depends(current_actor)) -> dict[str, Any]:
        inbox = await crm.ticket_service.referred_to_me(actor)
        return {
            "items": [
                {"referral": to_camel(as_record(item.referral)), "ticket": _ticket_payload(item.ticket, crm)}
                for item in inbox
            ]
        }

    @app.get("/introductions")
    async def list_introductions(actor: User = Depends(current_actor)) -> dict[str, Any]:
        intros = await crm.introduction_service.list_visible(actor)
        return {"items": [to_camel(as_record(intro)) for intro in intros]}

    @app.post("/introductions", status_code=201)
    async def create_introduction(
        body: dict[str, Any] = Body(...),
        actor: User = Depends(current_actor),
    ) -> dict[str, Any]:
        payload = to_snake(body)
        customer_name = str(_required(payload, "customer_name"))
        assigned_to = payload.pop("assigned_to", None)
        payload.pop("customer_name", None)
        intro = await crm.introduction_service.create(actor, customer_name, assigned_to=assigned_to, **payload)
        return to_camel(as_record(intro))

    @app.post("/introductions/{introduction_id}/status")
    async def introduction_status(
        introduction_id: int,
        body: dict[str, Any] = Body(...),
        actor: User = Depends(current_actor),
    ) -> dict[str, Any]:
        status = str(_required(to_snake(body), "status"))
        intro = await crm.introduction_service.set_status(introduction_id, actor, status)
        return to_camel(as_record(intro))

    @app.post("/introductions/{introduction_id}/refer")
    async def refer_introduction(
        introduction_id: int,
        body: dict[str, Any] = Body(...),
        actor: User = Depends(current_actor),
    ) -> dict[str, Any]:
        target = str(_required(to_snake(body), "target_username"))
        intro = await crm.introduction_service.refer(introduction_id, actor, target)
        return to_camel(as_record(intro))

    @app.post("/introductions/{introduction_id}/link-customer")
    async def link_customer(
        introduction_id: int,
        body: dict[str, Any] = Body(...),
        actor: User = Depends(current_actor),
    ) -> dict[str, Any]:
        payload = to_snake(body)
        try:
            customer_id = int(_required(payload, "customer_id"))
        except (TypeError, ValueError) as error:
            raise ValidationError("customerId must be numeric.") from error
        intro = await crm.introduction_service.link_customer(introduction_id, actor, customer_id)
        return to_camel(as_record(intro))

    @app.get("/introductions/{introduction_id}/referrals")
    async def introduction_referrals(introduction_id: int, actor: User = Depends(current_actor)) -> dict[str, Any]:
        referrals = await crm.introduction_service.referral_history(introduction_id)
        return {"items": [to_camel(as_record(referral)) for referral in referrals]}

    return app
