from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

ROLE_LANDLORD = "LANDLORD"
ROLE_TENANT = "TENANT"
ROLE_ADMIN = "ADMIN"
ALL_ROLES = frozenset({ROLE_LANDLORD, ROLE_TENANT, ROLE_ADMIN})
SELF_REGISTER_ROLES = frozenset({ROLE_LANDLORD, ROLE_TENANT})

# Outcomes of the atomic verification-record operations
OTP_MISSING = "missing"
OTP_LOCKED = "locked"
OTP_MISMATCH = "mismatch"
OTP_MATCH = "match"
RESEND_EXHAUSTED = "exhausted"
RESEND_OK = "ok"

# Mutable through onboarding / update-profile
PROFILE_FIELDS = (
    "first_name",
    "middle_name",
    "last_name",
    "avatar_url",
    "birthdate",
    "gender",
    "bio",
    "phone_number",
    "messenger_url",
    "facebook_url",
    "whatsapp_url",
)

# Everything update_by_id accepts; id, email, role and created_at are fixed
UPDATABLE_FIELDS = frozenset(
    {
        "password_hash",
        "is_verified",
        "is_disabled",
        "has_seen_onboarding",
        "last_login",
        "last_password_change",
        *PROFILE_FIELDS,
    }
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    role: str = ROLE_TENANT
    is_verified: bool = False
    is_disabled: bool = False
    has_seen_onboarding: bool = False
    last_login: Optional[datetime] = None
    last_password_change: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    first_name: Optional[str] = None
    middle_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
    birthdate: Optional[datetime] = None
    gender: Optional[str] = None
    bio: Optional[str] = None
    phone_number: Optional[str] = None
    messenger_url: Optional[str] = None
    facebook_url: Optional[str] = None
    whatsapp_url: Optional[str] = None

    @classmethod
    def new(cls, email: str, password_hash: str, role: str) -> "User":
        return cls(id=str(uuid.uuid4()), email=email, password_hash=password_hash, role=role)

    def to_public_dict(self) -> Dict[str, Any]:
        """Client-facing representation; never includes the password hash."""
        payload: Dict[str, Any] = {
            "id": self.id,
            "email": self.email,
            "role": self.role,
            "isVerified": self.is_verified,
            "isDisabled": self.is_disabled,
            "hasSeenOnboarding": self.has_seen_onboarding,
            "lastLogin": _iso(self.last_login),
            "lastPasswordChange": _iso(self.last_password_change),
        }
        for name in PROFILE_FIELDS:
            value = getattr(self, name)
            payload[_camel(name)] = _iso(value) if isinstance(value, datetime) else value
        return payload


@dataclass
class EmailVerificationRecord:
    """Hash stored under ``verify_email:{token}``.

    Counters are integers here and strings inside the key-value store.
    """

    email: str
    otp: str
    attempts: int = 0
    resends: int = 0
    context: str = "register"

    def to_fields(self) -> Dict[str, str]:
        return {
            "email": self.email,
            "otp": self.otp,
            "attempts": str(self.attempts),
            "resends": str(self.resends),
            "context": self.context,
        }

    @classmethod
    def from_fields(cls, fields: Dict[str, str]) -> Optional["EmailVerificationRecord"]:
        if not fields or "email" not in fields or "otp" not in fields:
            return None
        return cls(
            email=fields["email"],
            otp=fields["otp"],
            attempts=int(fields.get("attempts") or 0),
            resends=int(fields.get("resends") or 0),
            context=fields.get("context") or "register",
        )


@dataclass
class PasswordResetRecord:
    """Hash stored under ``reset_password:{token}``."""

    email: str

    def to_fields(self) -> Dict[str, str]:
        return {"email": self.email}

    @classmethod
    def from_fields(cls, fields: Dict[str, str]) -> Optional["PasswordResetRecord"]:
        if not fields or not fields.get("email"):
            return None
        return cls(email=fields["email"])
