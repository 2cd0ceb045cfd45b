from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from oceanblog.config import Settings
from oceanblog.logging import get_logger

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
EMAIL_VERIFICATION = "email_verification"
PASSWORD_RESET = "password_reset"
PURPOSES = (EMAIL_VERIFICATION, PASSWORD_RESET)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenInvalid(Exception):
    """Token is malformed, forged, or minted for another issuer/audience."""


class TokenExpired(Exception):
    """Token signature is fine but ``exp`` has passed."""

    def __init__(self, message: str = "token expired", *, claims: Optional[dict] = None) -> None:
        super().__init__(message)
        self.claims = claims or {}


class TokenIssuer:
    """Mint and check HS256 tokens.

    Access and purpose tokens share ``jwt_secret``; refresh tokens are signed
    with ``jwt_refresh_secret`` so one cannot be replayed as the other. The
    issuer keeps no state: recording issued refresh tokens is up to the caller.
    """

    def __init__(self, settings: Settings, *, clock: Optional[Clock] = None) -> None:
        self.settings = settings
        self._clock = clock or _utcnow
        self._purpose_ttls = {
            EMAIL_VERIFICATION: timedelta(minutes=settings.email_verification_ttl_minutes),
            PASSWORD_RESET: timedelta(minutes=settings.password_reset_ttl_minutes),
        }

    @property
    def access_secret(self) -> str:
        return self.settings.jwt_secret

    @property
    def refresh_secret(self) -> str:
        return self.settings.jwt_refresh_secret

    def now(self) -> datetime:
        return self._clock()

    def issue_access_token(self, user_id: str, email: str, role: str) -> str:
        ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        return self._issue(
            {"sub": user_id, "email": email, "role": role, "token_type": ACCESS},
            ttl,
            self.access_secret,
        )

    def issue_refresh_token(self, user_id: str) -> str:
        ttl = timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        return self._issue({"sub": user_id, "token_type": REFRESH}, ttl, self.refresh_secret)

    def issue_purpose_token(
        self, user_id: str, purpose: str, ttl: Optional[timedelta] = None
    ) -> str:
        if purpose not in PURPOSES:
            raise ValueError(f"unknown token purpose: {purpose}")
        return self._issue(
            {"sub": user_id, "type": purpose, "token_type": purpose},
            ttl or self._purpose_ttls[purpose],
            self.access_secret,
        )

    def purpose_ttl(self, purpose: str) -> timedelta:
        return self._purpose_ttls[purpose]

    def verify(self, token: str, secret: str) -> dict[str, Any]:
        """Return the claims of ``token`` or raise TokenInvalid / TokenExpired."""
        if not token or not isinstance(token, str):
            raise TokenInvalid("token missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalid("token is not a JWS compact serialization")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise TokenInvalid("header is not valid JSON")
        # Reject anything but HS256 so "none" or RS/HS confusion is impossible
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise TokenInvalid("unsupported algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        # compare_digest refuses non-ASCII str, so compare bytes
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "surrogatepass")
        ):
            raise TokenInvalid("signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise TokenInvalid("payload is not valid JSON")
        if not isinstance(payload, dict):
            raise TokenInvalid("payload is not an object")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalid("issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenInvalid("audience mismatch")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid("exp claim missing")
        if exp_ts <= self.now().timestamp():
            raise TokenExpired(claims=payload)
        return payload

    def verify_access(self, token: str) -> dict[str, Any]:
        return self.verify(token, self.access_secret)

    def verify_refresh(self, token: str) -> dict[str, Any]:
        claims = self.verify(token, self.refresh_secret)
        if claims.get("token_type") != REFRESH:
            raise TokenInvalid("not a refresh token")
        return claims

    def _issue(self, claims: dict[str, Any], ttl: timedelta, secret: str) -> str:
        now = self.now()
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            # unique per token so two issued in the same second never collide
            "jti": str(uuid.uuid4()),
            **claims,
        }
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _sign(self, signing_input: str, secret: str) -> str:
        digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)
