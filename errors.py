"""
Error taxonomy for the payments API.

Every failure is terminal for the request. Each error carries a kind that the
client matches on and a message meant to be shown to the end user verbatim.
"""
from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import logging

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    kind = "internal"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Unauthenticated(ServiceError):
    kind = "unauthenticated"
    status_code = status.HTTP_401_UNAUTHORIZED


class InvalidArgument(ServiceError):
    kind = "invalid-argument"
    status_code = status.HTTP_400_BAD_REQUEST


class NotFound(ServiceError):
    kind = "not-found"
    status_code = status.HTTP_404_NOT_FOUND


class PermissionDenied(ServiceError):
    kind = "permission-denied"
    status_code = status.HTTP_403_FORBIDDEN


class FailedPrecondition(ServiceError):
    kind = "failed-precondition"
    status_code = status.HTTP_400_BAD_REQUEST


def error_response(exc: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "kind": exc.kind})


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    logger.info("%s %s failed (%s): %s", request.method, request.url.path, exc.kind, exc.message)
    return error_response(exc)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Body errors carry ("body", field, ...) locations; drop the "body" prefix.
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())[1:])
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return await service_error_handler(request, InvalidArgument("; ".join(parts) or "Invalid request."))


def register_error_handlers(app) -> None:
    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
