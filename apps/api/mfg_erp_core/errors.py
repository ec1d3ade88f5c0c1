from __future__ import annotations

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class ManufacturingError(HTTPException):
    """Base for errors surfaced to API callers.

    `kind` is the machine-readable category, `detail` the human message.
    """

    kind = "Error"
    http_status = 400

    def __init__(self, detail: str):
        super().__init__(status_code=self.http_status, detail=detail)


class NotFound(ManufacturingError):
    kind = "NotFound"
    http_status = 404


class InvalidState(ManufacturingError):
    kind = "InvalidState"
    http_status = 409


class ValidationError(ManufacturingError):
    kind = "ValidationError"
    http_status = 422


class InsufficientStock(ManufacturingError):
    kind = "InsufficientStock"
    http_status = 409


class Conflict(ManufacturingError):
    kind = "Conflict"
    http_status = 409


async def manufacturing_error_handler(request: Request, exc: ManufacturingError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.kind, "detail": exc.detail})


async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=ValidationError.http_status,
        content={"error": ValidationError.kind, "detail": jsonable_encoder(exc.errors())},
    )
