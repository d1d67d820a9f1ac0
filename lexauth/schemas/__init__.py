"""Pydantic schemas for API requests and responses."""

from lexauth.schemas.auth import (
    AccountResponse,
    BackupCodesResponse,
    CompleteLoginRequest,
    LoginRequest,
    LoginResponse,
    TokenResponse,
    TwoFactorCodeRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
)
from lexauth.schemas.common import ErrorDetail, ErrorResponse, SuccessResponse

__all__ = [
    "AccountResponse",
    "BackupCodesResponse",
    "CompleteLoginRequest",
    "ErrorDetail",
    "ErrorResponse",
    "LoginRequest",
    "LoginResponse",
    "SuccessResponse",
    "TokenResponse",
    "TwoFactorCodeRequest",
    "TwoFactorSetupResponse",
    "TwoFactorStatusResponse",
]
