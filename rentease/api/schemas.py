from __future__ import annotations

from typing import Any, Dict, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Stable error codes returned in the error envelope
_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "unauthorized",
    "forbidden",
    "ACCOUNT_DISABLED",
    "not_found",
    "conflict",
    "unprocessable",
    "rate_limited",
    "server_error",
})

MAX_CREDENTIAL_LENGTH = 1024
MAX_TOKEN_LENGTH = 256
MAX_PROFILE_FIELD_LENGTH = 2048


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _CamelRequest(BaseModel):
    """Request bodies accept the client's camelCase keys or snake_case."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# Fields are optional at the schema level: presence checks run in the
# service so the first failing rule decides the message.
class RegisterRequest(_CamelRequest):
    email: Optional[str] = Field(default=None, max_length=MAX_CREDENTIAL_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_CREDENTIAL_LENGTH)
    confirm_password: Optional[str] = Field(
        default=None, alias="confirmPassword", max_length=MAX_CREDENTIAL_LENGTH
    )
    role: Optional[str] = Field(default=None, max_length=32)


class RegisterResponse(BaseModel):
    message: str
    token: str


class VerifyEmailRequest(_CamelRequest):
    token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)
    otp: Optional[Union[str, int]] = None

    @field_validator("otp")
    @classmethod
    def _otp_as_text(cls, value: Optional[Union[str, int]]) -> Optional[str]:
        if value is None:
            return None
        text = str(value)
        if len(text) > 16:
            raise ValueError("otp is too long")
        return text


class VerifyEmailResponse(BaseModel):
    message: str
    context: str


class ResendVerificationRequest(_CamelRequest):
    token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class LoginRequest(_CamelRequest):
    email: Optional[str] = Field(default=None, max_length=MAX_CREDENTIAL_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_CREDENTIAL_LENGTH)


class LoginResponse(BaseModel):
    message: str
    verified: bool
    token: Optional[str] = None


class ForgotPasswordRequest(_CamelRequest):
    email: Optional[str] = Field(default=None, max_length=MAX_CREDENTIAL_LENGTH)


class ResetPasswordRequest(_CamelRequest):
    token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)
    new_password: Optional[str] = Field(
        default=None, alias="newPassword", max_length=MAX_CREDENTIAL_LENGTH
    )
    confirm_password: Optional[str] = Field(
        default=None, alias="confirmPassword", max_length=MAX_CREDENTIAL_LENGTH
    )


class MessageResponse(BaseModel):
    message: str


class StatusResponse(BaseModel):
    role: str


class ProfileRequest(_CamelRequest):
    """Profile fields for onboarding and profile updates.

    Only keys present in the body are applied; an explicit ``null`` clears
    the field.
    """

    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=MAX_PROFILE_FIELD_LENGTH)
    middle_name: Optional[str] = Field(default=None, alias="middleName", max_length=MAX_PROFILE_FIELD_LENGTH)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=MAX_PROFILE_FIELD_LENGTH)
    avatar_url: Optional[str] = Field(default=None, alias="avatarUrl", max_length=MAX_PROFILE_FIELD_LENGTH)
    birthdate: Optional[str] = Field(default=None, max_length=64)
    gender: Optional[str] = Field(default=None, max_length=64)
    bio: Optional[str] = Field(default=None, max_length=MAX_PROFILE_FIELD_LENGTH)
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber", max_length=64)
    messenger_url: Optional[str] = Field(default=None, alias="messengerUrl", max_length=MAX_PROFILE_FIELD_LENGTH)
    facebook_url: Optional[str] = Field(default=None, alias="facebookUrl", max_length=MAX_PROFILE_FIELD_LENGTH)
    whatsapp_url: Optional[str] = Field(default=None, alias="whatsappUrl", max_length=MAX_PROFILE_FIELD_LENGTH)

    def provided_fields(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class UserInfoResponse(BaseModel):
    user: Dict[str, Any]
