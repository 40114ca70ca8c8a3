from __future__ import annotations

import json
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from rentease.logging import get_logger
from rentease.storage.errors import ConstraintViolation
from rentease.storage.models import (
    OTP_LOCKED,
    OTP_MATCH,
    OTP_MISMATCH,
    OTP_MISSING,
    PROFILE_FIELDS,
    RESEND_EXHAUSTED,
    RESEND_OK,
    UPDATABLE_FIELDS,
    User,
)

_DATETIME_FIELDS = ("last_login", "last_password_change", "created_at", "birthdate")


class MemoryStore:
    """In-process credential store for tests and local development.

    When ``fs_root`` is given, users are written to
    ``fs_root/state/memory_store.json`` after every mutation and reloaded on
    start-up.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # RLock so persistence can run while a mutation still holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> None:
        return None

    def reset_connection(self) -> None:
        """Nothing to reset; present so the retry helper can treat stores alike."""
        return None

    # user / auth
    def create(self, email: str, password_hash: str, role: str) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(email, password_hash, role)
            self.users[user.id] = user
            self._persist_state()
            return user

    def find_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def find_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def update_by_id(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for name, value in fields.items():
                setattr(user, name, value)
            self._persist_state()
            return user

    def list_users(self, limit: int = 100, role: Optional[str] = None) -> List[User]:
        with self._data_lock:
            users = [u for u in self.users.values() if role is None or u.role == role]
            results = sorted(users, key=lambda u: u.created_at, reverse=True)
            return results[:limit]

    # persistence
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {"users": [self._serialize_user(u) for u in self.users.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.logger.info("memory_store_loaded", users=len(self.users))
        return True

    @staticmethod
    def _serialize_user(user: User) -> dict:
        payload = {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "role": user.role,
            "is_verified": user.is_verified,
            "is_disabled": user.is_disabled,
            "has_seen_onboarding": user.has_seen_onboarding,
        }
        for name in _DATETIME_FIELDS:
            value = getattr(user, name)
            payload[name] = value.isoformat() if value else None
        for name in PROFILE_FIELDS:
            if name not in payload:
                payload[name] = getattr(user, name)
        return payload

    @staticmethod
    def _deserialize_user(data: dict) -> User:
        values = dict(data)
        for name in _DATETIME_FIELDS:
            raw = values.get(name)
            values[name] = datetime.fromisoformat(raw) if raw else None
        if values["created_at"] is None:
            values.pop("created_at")
        return User(**values)


class MemoryCache:
    """In-process stand-in for the Redis key-value store.

    Keeps the same async surface and atomicity as ``RedisCache``: every
    operation runs under one lock, so OTP checks and resend claims are
    serialized per process. Expired keys are dropped lazily on access.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        rate_limit_sweep_size: int = 1024,
    ) -> None:
        self._clock = clock
        self._sweep_size = rate_limit_sweep_size
        self._hashes: Dict[str, Dict[str, str]] = {}
        self._values: Dict[str, str] = {}
        self._expiry: Dict[str, float] = {}
        # key -> (tokens, last_ts, limit, refill_rate)
        self._rate_limits: Dict[str, Tuple[float, float, float, float]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            self._hashes.clear()
            self._values.clear()
            self._expiry.clear()
            self._rate_limits.clear()

    def _purge_if_expired(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= self._clock():
            self._hashes.pop(key, None)
            self._values.pop(key, None)
            self._expiry.pop(key, None)

    def _exists(self, key: str) -> bool:
        self._purge_if_expired(key)
        return key in self._hashes or key in self._values

    def _set_ttl(self, key: str, seconds: Optional[int]) -> None:
        if seconds is None:
            self._expiry.pop(key, None)
        else:
            self._expiry[key] = self._clock() + seconds

    async def set_fields(
        self, key: str, mapping: Dict[str, str], ttl: Optional[int] = None
    ) -> None:
        with self._lock:
            self._purge_if_expired(key)
            self._values.pop(key, None)
            current = self._hashes.setdefault(key, {})
            current.update({k: str(v) for k, v in mapping.items()})
            if ttl is not None:
                self._set_ttl(key, ttl)

    async def get_fields(self, key: str) -> Dict[str, str]:
        with self._lock:
            self._purge_if_expired(key)
            return dict(self._hashes.get(key, {}))

    async def expire(self, key: str, seconds: int) -> bool:
        with self._lock:
            if not self._exists(key):
                return False
            self._set_ttl(key, seconds)
            return True

    async def delete(self, key: str) -> int:
        with self._lock:
            existed = self._exists(key)
            self._hashes.pop(key, None)
            self._values.pop(key, None)
            self._expiry.pop(key, None)
            return 1 if existed else 0

    async def list_keys_by_prefix(self, prefix: str) -> List[str]:
        with self._lock:
            keys = [k for k in (*self._hashes, *self._values) if k.startswith(prefix)]
            return [k for k in keys if self._exists(k)]

    async def set_value(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        with self._lock:
            self._hashes.pop(key, None)
            self._values[key] = str(value)
            self._set_ttl(key, ttl)

    async def get_value(self, key: str) -> Optional[str]:
        with self._lock:
            self._purge_if_expired(key)
            return self._values.get(key)

    async def verify_otp_attempt(
        self, key: str, otp: str, max_attempts: int
    ) -> Tuple[str, Dict[str, str]]:
        with self._lock:
            self._purge_if_expired(key)
            record = self._hashes.get(key)
            if not record or "otp" not in record:
                return OTP_MISSING, {}
            attempts = int(record.get("attempts") or 0)
            if attempts >= max_attempts:
                return OTP_LOCKED, dict(record)
            if record["otp"] != otp:
                record["attempts"] = str(attempts + 1)
                return OTP_MISMATCH, dict(record)
            return OTP_MATCH, dict(record)

    async def claim_resend(
        self, key: str, otp: str, max_attempts: int, max_resends: int, ttl: int
    ) -> Tuple[str, Dict[str, str]]:
        with self._lock:
            self._purge_if_expired(key)
            record = self._hashes.get(key)
            if not record:
                return OTP_MISSING, {}
            if int(record.get("attempts") or 0) >= max_attempts:
                return OTP_LOCKED, dict(record)
            resends = int(record.get("resends") or 0)
            if resends >= max_resends:
                return RESEND_EXHAUSTED, dict(record)
            record["otp"] = otp
            record["resends"] = str(resends + 1)
            self._set_ttl(key, ttl)
            return RESEND_OK, dict(record)

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        """Token bucket mirroring the Redis Lua script."""
        now = self._clock()
        refill_rate = float(limit) / float(window_seconds)
        with self._lock:
            tokens, last_ts, _, _ = self._rate_limits.get(
                key, (float(limit), now, float(limit), refill_rate)
            )
            elapsed = max(0.0, now - last_ts)
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= 1
            if allowed:
                tokens -= 1
            self._rate_limits[key] = (tokens, now, float(limit), refill_rate)
            if len(self._rate_limits) > self._sweep_size:
                self._evict_refilled_buckets(now)
        return allowed

    def _evict_refilled_buckets(self, now: float) -> None:
        """Forget buckets that are full again; a full bucket equals a fresh one."""
        refilled = [
            key
            for key, (tokens, last_ts, limit, rate) in self._rate_limits.items()
            if tokens + max(0.0, now - last_ts) * rate >= limit
        ]
        for key in refilled:
            del self._rate_limits[key]
