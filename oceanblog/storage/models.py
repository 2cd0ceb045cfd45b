from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

USER_ROLES = ("user", "admin", "moderator")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dt(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    value = datetime.fromisoformat(raw)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class RefreshTokenRecord:
    token: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class User:
    """A blog account together with its credentials and live refresh tokens.

    ``version`` is bumped by the store on every successful save; writers hand
    back the version they read so a concurrent change is detected instead of
    silently overwritten.
    """

    id: str
    email: str
    name: str
    password_hash: str
    role: str = "user"
    is_active: bool = True
    is_email_verified: bool = False
    email_verification_token: Optional[str] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    refresh_tokens: List[RefreshTokenRecord] = field(default_factory=list)
    bio: Optional[str] = None
    avatar: Optional[str] = None
    location: Optional[str] = None
    website: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 1

    @classmethod
    def new(cls, email: str, name: str, password_hash: str, *, role: str = "user") -> "User":
        return cls(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            name=name.strip(),
            password_hash=password_hash,
            role=role,
        )

    def clone(self) -> "User":
        return copy.deepcopy(self)

    def has_refresh_token(self, token: str) -> bool:
        return any(record.token == token for record in self.refresh_tokens)

    def add_refresh_token(self, token: str, *, limit: int, issued_at: Optional[datetime] = None) -> None:
        """Append a token, evicting the oldest entries beyond ``limit``."""
        self.refresh_tokens.append(RefreshTokenRecord(token=token, created_at=issued_at or utcnow()))
        if len(self.refresh_tokens) > limit:
            self.refresh_tokens = self.refresh_tokens[-limit:]

    def remove_refresh_token(self, token: str) -> bool:
        before = len(self.refresh_tokens)
        self.refresh_tokens = [r for r in self.refresh_tokens if r.token != token]
        return len(self.refresh_tokens) != before

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "password_hash": self.password_hash,
            "role": self.role,
            "is_active": self.is_active,
            "is_email_verified": self.is_email_verified,
            "email_verification_token": self.email_verification_token,
            "password_reset_token": self.password_reset_token,
            "password_reset_expires": _iso(self.password_reset_expires),
            "login_attempts": self.login_attempts,
            "lock_until": _iso(self.lock_until),
            "last_login": _iso(self.last_login),
            "refresh_tokens": [
                {"token": r.token, "created_at": _iso(r.created_at)} for r in self.refresh_tokens
            ],
            "bio": self.bio,
            "avatar": self.avatar,
            "location": self.location,
            "website": self.website,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        return cls(
            id=data["id"],
            email=data["email"],
            name=data.get("name") or "",
            password_hash=data["password_hash"],
            role=data.get("role", "user"),
            is_active=data.get("is_active", True),
            is_email_verified=data.get("is_email_verified", False),
            email_verification_token=data.get("email_verification_token"),
            password_reset_token=data.get("password_reset_token"),
            password_reset_expires=_dt(data.get("password_reset_expires")),
            login_attempts=int(data.get("login_attempts") or 0),
            lock_until=_dt(data.get("lock_until")),
            last_login=_dt(data.get("last_login")),
            refresh_tokens=[
                RefreshTokenRecord(token=r["token"], created_at=_dt(r.get("created_at")) or utcnow())
                for r in data.get("refresh_tokens") or []
            ],
            bio=data.get("bio"),
            avatar=data.get("avatar"),
            location=data.get("location"),
            website=data.get("website"),
            created_at=_dt(data.get("created_at")) or utcnow(),
            updated_at=_dt(data.get("updated_at")) or utcnow(),
            version=int(data.get("version") or 1),
        )
