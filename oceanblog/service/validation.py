from __future__ import annotations

import re
import unicodedata
from typing import Optional

NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 50
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
BIO_MAX_LENGTH = 500
PASSWORD_SPECIALS = "@$!%*?&"

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_ZERO_WIDTH = "​‌‍﻿"
_BIDI_OVERRIDES = {chr(c) for c in range(0x202A, 0x202F)} | {chr(c) for c in range(0x2066, 0x206A)}


def normalize_unicode(value: str) -> str:
    """Drop zero-width and bidi override characters, then NFKC-normalize."""
    cleaned = "".join(c for c in value if c not in _ZERO_WIDTH and c not in _BIDI_OVERRIDES)
    return unicodedata.normalize("NFKC", cleaned)


def canonical_email(value: str) -> str:
    """Lookup form of an address; registration stores exactly this."""
    return normalize_unicode(value.strip().lower())


def validate_email(value: str) -> str:
    """Return the canonical (trimmed, lower-cased) address or raise ValueError."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = canonical_email(value)
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("Please provide a valid email")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Please provide a valid email")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Please provide a valid email")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Please provide a valid email")
    return normalized


def validate_name(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("name must be a string")
    name = normalize_unicode(value).strip()
    if not NAME_MIN_LENGTH <= len(name) <= NAME_MAX_LENGTH:
        raise ValueError(
            f"Name must be between {NAME_MIN_LENGTH} and {NAME_MAX_LENGTH} characters"
        )
    return name


def validate_password_strength(value: str) -> str:
    """Require mixed case, a digit and one of ``@$!%*?&``."""
    if not isinstance(value, str):
        raise ValueError("password must be a string")
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError(f"Password must be at most {PASSWORD_MAX_LENGTH} characters long")
    if not (
        any(c.islower() for c in value)
        and any(c.isupper() for c in value)
        and any(c.isdigit() for c in value)
        and any(c in PASSWORD_SPECIALS for c in value)
    ):
        raise ValueError(
            "Password must contain at least one uppercase letter, one lowercase letter, "
            "one number, and one special character"
        )
    return value


def validate_bio(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if len(value) > BIO_MAX_LENGTH:
        raise ValueError(f"Bio cannot exceed {BIO_MAX_LENGTH} characters")
    return value
