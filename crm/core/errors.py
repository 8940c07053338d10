from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

LOGGER = logging.getLogger(__name__)


class CrmError(RuntimeError):
    user_message: str = "An unexpected error occurred."
    status_code: int = 500


@dataclass(slots=True)
class ValidationError(CrmError):
    user_message: str = "The provided input is not valid."
    status_code: int = 422


@dataclass(slots=True)
class TicketStateError(ValidationError):
    user_message: str = "The ticket is not in a valid state for this action."
    status_code: int = 422


@dataclass(slots=True)
class PermissionDeniedError(CrmError):
    user_message: str = "You do not have permission to run this action."
    status_code: int = 403


@dataclass(slots=True)
class NotFoundError(CrmError):
    user_message: str = "The requested record could not be found. Refresh and try again."
    status_code: int = 404


@dataclass(slots=True)
class TicketNotFoundError(NotFoundError):
    user_message: str = "The requested ticket could not be found. Refresh and try again."
    status_code: int = 404


@dataclass(slots=True)
class UserNotFoundError(NotFoundError):
    user_message: str = "The requested user could not be found."
    status_code: int = 404


@dataclass(slots=True)
class IntroductionNotFoundError(NotFoundError):
    user_message: str = "The requested introduction could not be found. Refresh and try again."
    status_code: int = 404


@dataclass(slots=True)
class TransientIOError(CrmError):
    user_message: str = "The data service is unavailable. Please retry the action."
    status_code: int = 503


@dataclass(slots=True)
class DegradedFeatureError(CrmError):
    user_message: str = "This feature is currently disabled."
    status_code: int = 409


def error_payload(error: CrmError) -> dict[str, str]:
    return {"error": type(error).__name__, "message": error.user_message}


async def handle_crm_error(request: Request, error: CrmError) -> JSONResponse:
    if error.status_code >= 500:
        LOGGER.exception(
            "Request failed. method=%s path=%s",
            request.method,
            request.url.path,
            exc_info=error,
        )
    else:
        LOGGER.info(
            "Request rejected. method=%s path=%s error=%s reason=%s",
            request.method,
            request.url.path,
            type(error).__name__,
            error.user_message,
        )
    return JSONResponse(status_code=error.status_code, content=error_payload(error))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CrmError, handle_crm_error)
