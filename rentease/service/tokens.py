from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict

from rentease.logging import get_logger

logger = get_logger(__name__)


class TokenError(Exception):
    """Raised when a token is malformed, forged or expired."""


@dataclass(frozen=True)
class TokenPair:
    access: str
    refresh: str


class TokenIssuer:
    """Compact HS256 JWS signer/verifier.

    The issuer holds no keys: callers pass the secret for the token kind they
    are handling so access and refresh tokens stay independently revocable.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time, leeway_seconds: int = 0):
        self._clock = clock
        self._leeway = leeway_seconds

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str, secret: str) -> str:
        digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def sign(self, claims: Dict[str, Any], secret: str, ttl_seconds: int) -> str:
        now = int(self._clock())
        payload = {**claims, "iat": now, "exp": now + int(ttl_seconds)}
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input, secret)}"

    def verify(self, token: str, secret: str) -> Dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise TokenError("malformed token")

        # Pin the algorithm to prevent algorithm confusion attacks
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenError("malformed token header")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenError("unsupported token algorithm")

        expected_sig = self._signature(f"{header_b64}.{payload_b64}", secret)
        # compare_digest rejects non-ASCII str, so compare bytes
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "surrogatepass")
        ):
            raise TokenError("bad signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenError("malformed token payload")
        if not isinstance(payload, dict):
            raise TokenError("malformed token payload")

        exp = payload.get("exp")
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            raise TokenError("token has no expiry")
        if exp_ts <= self._clock() - self._leeway:
            raise TokenError("token expired")
        return payload
