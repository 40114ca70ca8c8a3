from __future__ import annotations

import asyncio
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from rentease.config import Settings
from rentease.logging import get_logger, redact_email
from rentease.service.email import DeliveryResult, EmailService
from rentease.service.errors import (
    AccountDisabledError,
    AuthenticationError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    UnprocessableError,
)
from rentease.service.retry import retry_db_operation
from rentease.service.tokens import TokenError, TokenIssuer, TokenPair
from rentease.storage.errors import ConstraintViolation
from rentease.storage.models import (
    OTP_LOCKED,
    OTP_MATCH,
    OTP_MISMATCH,
    OTP_MISSING,
    PROFILE_FIELDS,
    RESEND_EXHAUSTED,
    SELF_REGISTER_ROLES,
    EmailVerificationRecord,
    PasswordResetRecord,
    User,
)

logger = get_logger(__name__)

ANY_ROLE = "ANY_ROLE"

VERIFY_EMAIL_PREFIX = "verify_email:"
RESET_PASSWORD_PREFIX = "reset_password:"
SESSION_PREFIX = "session:"

CONTEXT_REGISTER = "register"
CONTEXT_LOGIN = "login"

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
# One lowercase, one uppercase, one digit and any non-alphanumeric symbol
_PASSWORD_RULES = (
    re.compile(r"[a-z]"),
    re.compile(r"[A-Z]"),
    re.compile(r"\d"),
    re.compile(r"[\W_]"),
)
PASSWORD_POLICY_MESSAGE = (
    "Password must have at least 8 characters including uppercase, lowercase, "
    "number, and symbol"
)


class CredentialStore(Protocol):
    def find_by_email(self, email: str) -> Optional[User]: ...

    def find_by_id(self, user_id: str) -> Optional[User]: ...

    def create(self, email: str, password_hash: str, role: str) -> User: ...

    def update_by_id(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def reset_connection(self) -> None: ...


class EphemeralStore(Protocol):
    async def set_fields(
        self, key: str, mapping: Dict[str, str], ttl: Optional[int] = None
    ) -> None: ...

    async def get_fields(self, key: str) -> Dict[str, str]: ...

    async def expire(self, key: str, seconds: int) -> bool: ...

    async def delete(self, key: str) -> int: ...

    async def list_keys_by_prefix(self, prefix: str) -> List[str]: ...

    async def set_value(self, key: str, value: str, ttl: Optional[int] = None) -> None: ...

    async def get_value(self, key: str) -> Optional[str]: ...

    async def verify_otp_attempt(
        self, key: str, otp: str, max_attempts: int
    ) -> Tuple[str, Dict[str, str]]: ...

    async def claim_resend(
        self, key: str, otp: str, max_attempts: int, max_resends: int, ttl: int
    ) -> Tuple[str, Dict[str, str]]: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    session_id: str


@dataclass
class LoginResult:
    user: User
    tokens: TokenPair
    verified: bool
    verification_token: Optional[str] = None


def verification_key(token: str) -> str:
    return f"{VERIFY_EMAIL_PREFIX}{token}"


def reset_key(token: str) -> str:
    return f"{RESET_PASSWORD_PREFIX}{token}"


def session_key(user_id: str, ip: str) -> str:
    return f"{SESSION_PREFIX}{user_id}:{ip}"


def password_meets_policy(password: str) -> bool:
    if not PASSWORD_MIN_LENGTH <= len(password) <= PASSWORD_MAX_LENGTH:
        return False
    return all(rule.search(password) for rule in _PASSWORD_RULES)


def _clean(value: Optional[str]) -> str:
    return value.strip() if isinstance(value, str) else ""


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AuthService:
    """Registration, email verification, IP-bound sessions and password reset."""

    def __init__(
        self,
        store: CredentialStore,
        cache: EphemeralStore,
        settings: Settings,
        *,
        tokens: Optional[TokenIssuer] = None,
        mailer: Optional[EmailService] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.tokens = tokens or TokenIssuer()
        self.mailer = mailer or EmailService(frontend_url=settings.frontend_url)
        self._sleep = sleep
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    # helpers
    @staticmethod
    def _generate_otp() -> str:
        return str(100000 + secrets.randbelow(900000))

    @staticmethod
    def _generate_token() -> str:
        return secrets.token_hex(16)

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _password_matches(self, user: User, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    async def _read(self, operation: Callable[[], Any]) -> Any:
        """Credential-store read with transient-error retry."""
        return await retry_db_operation(
            operation,
            reset=self.store.reset_connection,
            max_retries=self.settings.db_retry_attempts,
            delay=self.settings.db_retry_base_delay_ms / 1000.0,
            sleep=self._sleep,
        )

    async def _dispatch(
        self, send: Callable[..., DeliveryResult], *args: Any, **kwargs: Any
    ) -> DeliveryResult:
        try:
            return await asyncio.to_thread(send, *args, **kwargs)
        except Exception as exc:
            self.logger.error(
                "email_dispatch_crashed", error_type=type(exc).__name__, error=str(exc)
            )
            return DeliveryResult(False, str(exc))

    async def _issue_verification(self, email: str, context: str) -> Tuple[str, str]:
        token = self._generate_token()
        otp = self._generate_otp()
        record = EmailVerificationRecord(email=email, otp=otp, context=context)
        await self.cache.set_fields(
            verification_key(token), record.to_fields(), ttl=self.settings.otp_ttl_seconds
        )
        return token, otp

    def _sign_pair(self, user_id: str, session_id: str, ip: str) -> TokenPair:
        claims = {"userId": user_id, "sid": session_id, "ip": ip}
        return TokenPair(
            access=self.tokens.sign(
                claims, self.settings.jwt_secret, self.settings.access_token_ttl_seconds
            ),
            refresh=self.tokens.sign(
                claims,
                self.settings.jwt_refresh_secret,
                self.settings.refresh_token_ttl_seconds,
            ),
        )

    def _apply_profile(self, profile: Dict[str, Any]) -> Dict[str, Any]:
        updates: Dict[str, Any] = {}
        for name, value in profile.items():
            if name not in PROFILE_FIELDS:
                continue
            if name == "birthdate":
                value = self._parse_birthdate(value)
            updates[name] = value
        return updates

    @staticmethod
    def _parse_birthdate(value: Any) -> Optional[datetime]:
        if value in (None, ""):
            return None
        if isinstance(value, datetime):
            return _as_utc(value)
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise BadRequestError("Invalid birthdate", detail={"field": "birthdate"})
        return _as_utc(parsed)

    # registration / verification
    async def register(
        self,
        email: Optional[str],
        password: Optional[str],
        confirm_password: Optional[str],
        role: Optional[str],
    ) -> str:
        """Create an unverified account and email its OTP.

        Returns the verification token; the OTP itself only travels by email.
        """
        if not email or not password or not confirm_password or not role:
            raise BadRequestError("All fields are required")
        email = _clean(email)
        password = _clean(password)
        confirm_password = _clean(confirm_password)
        role = _clean(role).upper()

        if password != confirm_password:
            raise BadRequestError("Passwords do not match")
        if not password_meets_policy(password):
            raise BadRequestError(PASSWORD_POLICY_MESSAGE)
        if role not in SELF_REGISTER_ROLES:
            raise BadRequestError("Invalid role")
        if self.store.find_by_email(email):
            raise ConflictError("Email already registered", detail={"field": "email"})

        try:
            user = self.store.create(email, self._hash_password(password), role)
        except ConstraintViolation:
            raise ConflictError("Email already registered", detail={"field": "email"})

        token, otp = await self._issue_verification(email, CONTEXT_REGISTER)
        self.logger.info("user_registered", user_id=user.id, role=role)

        result = await self._dispatch(self.mailer.send_email_verification, email, otp)
        if not result.success:
            # The account stays; the user can recover through resend-verification
            self.logger.error(
                "registration_email_failed", user_id=user.id, error=result.error
            )
            raise ServerError("Failed to send verification email")
        return token

    async def verify_email(self, token: Optional[str], otp: Optional[str]) -> str:
        """Check an OTP; returns the context (``register`` or ``login``) to resume."""
        if not token or not otp:
            raise BadRequestError("Token and OTP are required")
        key = verification_key(str(token).strip())
        outcome, fields = await self.cache.verify_otp_attempt(
            key, str(otp).strip(), self.settings.max_otp_attempts
        )
        if outcome == OTP_MISSING:
            raise BadRequestError("Invalid or expired token")
        if outcome == OTP_LOCKED:
            raise RateLimitedError("Maximum OTP attempts reached. Try again later.")
        if outcome == OTP_MISMATCH:
            self.logger.info("otp_mismatch", attempts=fields.get("attempts"))
            raise BadRequestError("Invalid OTP")
        if outcome != OTP_MATCH:
            raise ServerError(f"unexpected verification outcome: {outcome}")

        record = EmailVerificationRecord.from_fields(fields)
        if record is None:
            raise BadRequestError("Invalid or expired token")
        user = self.store.find_by_email(record.email)
        if user is None:
            raise NotFoundError("User not found")
        self.store.update_by_id(user.id, is_verified=True)

        welcome = await self._dispatch(self.mailer.send_registration_welcome, record.email)
        if not welcome.success:
            self.logger.warning("welcome_email_failed", user_id=user.id, error=welcome.error)

        await self.cache.delete(key)
        self.logger.info("email_verified", user_id=user.id, context=record.context)
        return CONTEXT_LOGIN if record.context == CONTEXT_LOGIN else CONTEXT_REGISTER

    async def resend_verification(self, token: Optional[str]) -> None:
        if not token:
            raise BadRequestError("Token is required")
        key = verification_key(str(token).strip())
        otp = self._generate_otp()
        outcome, fields = await self.cache.claim_resend(
            key,
            otp,
            self.settings.max_otp_attempts,
            self.settings.max_resend_attempts,
            self.settings.otp_ttl_seconds,
        )
        if outcome == OTP_MISSING:
            raise BadRequestError("Invalid or expired token")
        if outcome == OTP_LOCKED:
            raise RateLimitedError("Maximum OTP attempts reached. Cannot resend.")
        if outcome == RESEND_EXHAUSTED:
            raise RateLimitedError("OTP has already been resent. Cannot resend again.")

        email = fields.get("email", "")
        result = await self._dispatch(
            self.mailer.send_email_verification, email, otp, resent=True
        )
        if not result.success:
            self.logger.warning(
                "resend_email_failed", email=redact_email(email), error=result.error
            )

    # sessions
    async def login(self, email: Optional[str], password: Optional[str], ip: str) -> LoginResult:
        if not email or not password:
            raise BadRequestError("Email and password are required")
        email = _clean(email)

        user = await self._read(lambda: self.store.find_by_email(email))
        if user is None:
            raise NotFoundError("Invalid credentials")
        if user.is_disabled:
            raise AccountDisabledError("Account is disabled due to violations")
        if not self._password_matches(user, password):
            self.logger.info("login_failed", user_id=user.id, reason="password_mismatch")
            raise AuthenticationError("Invalid credentials")

        # One live session per (user, ip); a new login replaces the previous one
        session_id = secrets.token_hex(16)
        await self.cache.set_value(
            session_key(user.id, ip), session_id, ttl=self.settings.session_ttl_seconds
        )
        tokens = self._sign_pair(user.id, session_id, ip)
        self.store.update_by_id(user.id, last_login=self._now())

        if user.is_verified:
            self.logger.info("login_succeeded", user_id=user.id)
            return LoginResult(user=user, tokens=tokens, verified=True)

        await self._purge_verification_records(user.email)
        token, otp = await self._issue_verification(user.email, CONTEXT_LOGIN)
        result = await self._dispatch(self.mailer.send_email_verification, user.email, otp)
        if not result.success:
            self.logger.warning("login_otp_email_failed", user_id=user.id, error=result.error)
        self.logger.info("login_pending_verification", user_id=user.id)
        return LoginResult(user=user, tokens=tokens, verified=False, verification_token=token)

    async def _purge_verification_records(self, email: str) -> int:
        """Drop outstanding verification records that belong to ``email``."""
        removed = 0
        for key in await self.cache.list_keys_by_prefix(VERIFY_EMAIL_PREFIX):
            fields = await self.cache.get_fields(key)
            if fields.get("email") == email:
                removed += await self.cache.delete(key)
        if removed:
            self.logger.info("stale_verification_purged", count=removed)
        return removed

    async def refresh(self, refresh_token: Optional[str], ip: str) -> TokenPair:
        """Rotate the token pair in place; the session id itself does not change."""
        if not refresh_token:
            raise AuthenticationError("Missing refresh token")
        try:
            claims = self.tokens.verify(refresh_token, self.settings.jwt_refresh_secret)
        except TokenError as exc:
            self.logger.info("refresh_token_rejected", reason=str(exc))
            raise ForbiddenError("Invalid or expired refresh token")

        user_id, sid = claims.get("userId"), claims.get("sid")
        if not user_id or not sid:
            raise ForbiddenError("Invalid or expired refresh token")
        key = session_key(str(user_id), ip)
        stored = await self.cache.get_value(key)
        if not stored or stored != sid:
            self.logger.info("refresh_session_mismatch", user_id=user_id)
            raise ForbiddenError("Session invalid or expired")

        tokens = self._sign_pair(str(user_id), str(sid), ip)
        await self.cache.expire(key, self.settings.session_ttl_seconds)
        return tokens

    async def logout(self, access_token: Optional[str], ip: str) -> None:
        """Drop the caller's live session if the access token still verifies."""
        if not access_token:
            return
        try:
            claims = self.tokens.verify(access_token, self.settings.jwt_secret)
        except TokenError:
            self.logger.info("logout_token_invalid")
            return
        user_id = claims.get("userId")
        if user_id:
            await self.cache.delete(session_key(str(user_id), ip))
            self.logger.info("session_cleared", user_id=user_id)

    async def status(self, access_token: Optional[str]) -> str:
        """Return the caller's role; checks the token and the user record only."""
        if not access_token:
            raise AuthenticationError("Not authenticated")
        try:
            claims = self.tokens.verify(access_token, self.settings.jwt_secret)
        except TokenError:
            raise AuthenticationError("Invalid or expired token")
        user_id = claims.get("userId")
        user = await self._read(lambda: self.store.find_by_id(str(user_id))) if user_id else None
        if user is None:
            raise AuthenticationError("User not found")
        return user.role

    async def authenticate(
        self,
        access_token: Optional[str],
        ip: str,
        allowed_roles: Iterable[str] = (ANY_ROLE,),
    ) -> AuthContext:
        if not access_token:
            raise AuthenticationError("Authentication required")
        try:
            claims = self.tokens.verify(access_token, self.settings.jwt_secret)
        except TokenError:
            raise AuthenticationError("Unauthorized")
        user_id, sid, token_ip = claims.get("userId"), claims.get("sid"), claims.get("ip")
        if not user_id or not sid or not token_ip:
            raise AuthenticationError("Invalid token")

        stored = await self.cache.get_value(session_key(str(user_id), ip))
        if not stored or stored != sid or ip != token_ip:
            raise AuthenticationError("Session expired or invalid")

        user = await self._read(lambda: self.store.find_by_id(str(user_id)))
        if user is None:
            raise AuthenticationError("User not found")
        if user.is_disabled:
            raise ForbiddenError("Account is disabled")
        roles = set(allowed_roles)
        if ANY_ROLE not in roles and user.role not in roles:
            raise ForbiddenError("Forbidden: Insufficient role")
        return AuthContext(user_id=user.id, role=user.role, session_id=str(sid))

    # password reset
    async def forgot_password(self, email: Optional[str]) -> None:
        if not email:
            raise BadRequestError("Email is required")
        email = _clean(email)
        user = self.store.find_by_email(email)
        if user is None:
            raise NotFoundError("Invalid email")
        if user.is_disabled:
            raise ForbiddenError("Account is disabled due to violations")
        last_change = _as_utc(user.last_password_change)
        cooldown = timedelta(days=self.settings.password_change_cooldown_days)
        if last_change and self._now() - last_change < cooldown:
            raise RateLimitedError(
                "You can only change your password once every "
                f"{self.settings.password_change_cooldown_days} days. Please try again later."
            )

        token = self._generate_token()
        await self.cache.set_fields(
            reset_key(token),
            PasswordResetRecord(email=user.email).to_fields(),
            ttl=self.settings.reset_token_ttl_seconds,
        )
        result = await self._dispatch(self.mailer.send_password_reset, user.email, token)
        if not result.success:
            self.logger.error("password_reset_email_failed", user_id=user.id, error=result.error)
            raise ServerError("Failed to send password reset email")
        self.logger.info("password_reset_requested", user_id=user.id)

    async def reset_password(
        self,
        token: Optional[str],
        new_password: Optional[str],
        confirm_password: Optional[str],
    ) -> None:
        if not token or not new_password or not confirm_password:
            raise BadRequestError("Token, new password, and confirm password are required")
        if new_password != confirm_password:
            raise BadRequestError("Passwords do not match")
        if not password_meets_policy(new_password):
            raise BadRequestError(PASSWORD_POLICY_MESSAGE)

        key = reset_key(str(token).strip())
        record = PasswordResetRecord.from_fields(await self.cache.get_fields(key))
        if record is None:
            self.logger.warning("password_reset_invalid_token")
            raise BadRequestError("Invalid or expired reset token")
        user = self.store.find_by_email(record.email)
        if user is None:
            raise NotFoundError("Invalid account")

        self.store.update_by_id(
            user.id,
            password_hash=self._hash_password(new_password),
            last_password_change=self._now(),
        )
        await self.cache.delete(key)
        self.logger.info("password_reset_completed", user_id=user.id)

    # profile
    def get_user_info(self, user_id: str) -> Dict[str, Any]:
        user = self.store.find_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user.to_public_dict()

    def complete_onboarding(self, user_id: str, profile: Dict[str, Any]) -> User:
        user = self.store.find_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        if user.has_seen_onboarding:
            raise UnprocessableError("Onboarding already completed")
        updates = self._apply_profile(profile)
        updates["has_seen_onboarding"] = True
        updated = self.store.update_by_id(user_id, **updates)
        self.logger.info("onboarding_completed", user_id=user_id, fields=sorted(updates))
        return updated

    def update_profile(self, user_id: str, profile: Dict[str, Any]) -> User:
        updates = self._apply_profile(profile)
        if not updates:
            user = self.store.find_by_id(user_id)
        else:
            user = self.store.update_by_id(user_id, **updates)
        if user is None:
            raise NotFoundError("User not found")
        self.logger.info("profile_updated", user_id=user_id, fields=sorted(updates))
        return user
