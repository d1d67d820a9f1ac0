"""Shared schema base and the error envelope."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class BaseSchema(BaseModel):
    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        serialize_by_alias=True,
        str_strip_whitespace=True,
    )


class ErrorDetail(BaseModel):
    code: str = Field(..., examples=["AUTH_INVALID_CREDENTIALS"])
    message: str = Field(..., description="Message in the caller's locale (hr or en)")
    details: dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Body of every 4xx/5xx response.

    Contains nothing request-specific; the trace id is sent in the
    ``X-Trace-Id`` header.
    """

    error: ErrorDetail


class SuccessResponse(BaseModel):
    success: bool = True
    message: str
