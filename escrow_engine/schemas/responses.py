"""Shared response envelopes."""

from pydantic import BaseModel, Field


class ErrorDetail(BaseModel):
    """A single field-level or contextual error detail."""

    field: str | None = None
    message: str


class ErrorBody(BaseModel):
    """Structured error body returned inside every error response."""

    code: str
    message: str
    details: list[ErrorDetail] = []
    request_id: str = Field(alias="requestId")

    model_config = {"populate_by_name": True}


class ErrorResponse(BaseModel):
    """Top-level error envelope."""

    error: ErrorBody


# OpenAPI documentation for the errors every mutating endpoint can return
COMMAND_ERROR_RESPONSES: dict = {
    403: {"model": ErrorResponse, "description": "Caller may not perform this action"},
    404: {"model": ErrorResponse, "description": "Unknown transaction, dispute or action"},
    409: {"model": ErrorResponse, "description": "Illegal transition or stale version"},
    422: {"model": ErrorResponse, "description": "Invalid input"},
}
