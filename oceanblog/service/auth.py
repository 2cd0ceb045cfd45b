from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Optional, Protocol, TypeVar

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from oceanblog.config import Settings
from oceanblog.logging import get_logger
from oceanblog.service.email import EmailService
from oceanblog.service.errors import (
    AccountDeactivatedError,
    AccountLockedError,
    AlreadyVerifiedError,
    ConflictError,
    DuplicateAccountError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    InvalidTokenError,
    NotFoundError,
    NotificationError,
    TokenExpiredError,
    UnauthorizedError,
    ValidationError,
)
from oceanblog.service.lockout import LockoutGuard
from oceanblog.service.tokens import (
    ACCESS,
    EMAIL_VERIFICATION,
    PASSWORD_RESET,
    Clock,
    TokenExpired,
    TokenInvalid,
    TokenIssuer,
)
from oceanblog.service.validation import (
    canonical_email,
    validate_bio,
    validate_email,
    validate_name,
    validate_password_strength,
)
from oceanblog.storage.errors import ConstraintViolation, RecordNotFound, StaleRecordError
from oceanblog.storage.models import User

logger = get_logger(__name__)

T = TypeVar("T")

INVALID_LOGIN_MESSAGE = "Invalid email or password"
RESET_REQUESTED_MESSAGE = "If a user with that email exists, we have sent a password reset link"
_MAX_SAVE_ATTEMPTS = 3


class UserStore(Protocol):
    def create_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def save_user(self, user: User) -> User: ...


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.encode()).hexdigest()[:16]


class AuthService:
    """Account lifecycle: registration, login, token rotation and recovery.

    Expected failures surface as ``ServiceError`` subclasses so the HTTP layer
    can render them; anything else (an unreachable store, say) propagates.
    Every write goes through :meth:`_save`, which re-reads and re-applies the
    change when another request updated the same user first.
    """

    def __init__(
        self,
        store: UserStore,
        settings: Settings,
        email: EmailService,
        *,
        tokens: Optional[TokenIssuer] = None,
        lockout: Optional[LockoutGuard] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.email = email
        self.tokens = tokens or TokenIssuer(settings, clock=clock)
        self.lockout = lockout or LockoutGuard(
            max_attempts=settings.login_max_attempts,
            lock_minutes=settings.login_lock_minutes,
            clock=clock,
        )
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    def _now(self) -> datetime:
        return self.tokens.now()

    # passwords
    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user: User, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unusable", user_id=user.id)
            return False

    def _burn_password_check(self, password: str) -> None:
        """Spend the same hashing time as a real check so lookups don't leak."""
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash("oceanblog-placeholder-password")
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerifyMismatchError:
            pass

    # persistence
    def _save(self, user: User, mutate: Callable[[User], T]) -> tuple[User, T]:
        """Apply ``mutate`` and write the record, retrying on version conflicts.

        ``mutate`` may raise a ServiceError to abort; it is re-run against the
        freshly loaded record after a conflict, so it must decide from the
        record it is handed rather than from captured state.
        """
        candidate = user
        for attempt in range(1, _MAX_SAVE_ATTEMPTS + 1):
            result = mutate(candidate)
            try:
                return self.store.save_user(candidate), result
            except StaleRecordError as exc:
                self.logger.info(
                    "user_save_conflict",
                    user_id=user.id,
                    attempt=attempt,
                    expected_version=exc.expected,
                    actual_version=exc.actual,
                )
            except RecordNotFound:
                raise NotFoundError("User not found")
            fresh = self.store.get_user(user.id)
            if fresh is None:
                raise NotFoundError("User not found")
            candidate = fresh
        self.logger.warning("user_save_conflict_exhausted", user_id=user.id)
        raise ConflictError("The account was modified concurrently, please retry")

    def _issue_pair(self, user: User) -> TokenPair:
        return TokenPair(
            access_token=self.tokens.issue_access_token(user.id, user.email, user.role),
            refresh_token=self.tokens.issue_refresh_token(user.id),
        )

    async def _dispatch(self, send: Callable[..., bool], *args: Any, **kwargs: Any) -> bool:
        """Run a blocking email send off the event loop; report delivery."""
        try:
            return bool(await asyncio.to_thread(send, *args, **kwargs))
        except Exception as exc:
            self.logger.error(
                "email_dispatch_failed",
                sender=getattr(send, "__name__", "send"),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

    # registration / login
    async def register(
        self, name: str, email: str, password: str, confirm_password: str
    ) -> AuthResult:
        errors: list[dict[str, str]] = []
        clean: dict[str, str] = {}
        for field, value, check in (
            ("name", name, validate_name),
            ("email", email, validate_email),
            ("password", password, validate_password_strength),
        ):
            try:
                clean[field] = check(value)
            except ValueError as exc:
                errors.append({"field": field, "message": str(exc)})
        if password != confirm_password:
            errors.append({"field": "confirm_password", "message": "Password confirmation does not match password"})
        if errors:
            raise ValidationError("Validation failed", detail={"errors": errors})

        if self.store.get_user_by_email(clean["email"]):
            self.logger.info("register_duplicate_email", email_hash=_email_hash(clean["email"]))
            raise DuplicateAccountError("User with this email already exists")

        user = User.new(clean["email"], clean["name"], self._hash_password(clean["password"]))
        pair = self._issue_pair(user)
        user.add_refresh_token(pair.refresh_token, limit=self.settings.max_refresh_tokens, issued_at=self._now())
        try:
            user = self.store.create_user(user)
        except ConstraintViolation:
            # lost a race with a concurrent registration of the same address
            raise DuplicateAccountError("User with this email already exists")
        self.logger.info("user_registered", user_id=user.id)

        sent = await self._dispatch(self.email.send_welcome, user.email, user.name)
        if not sent:
            self.logger.warning("welcome_email_not_sent", user_id=user.id)
        return AuthResult(user=user, tokens=pair)

    async def login(self, email: str, password: str) -> AuthResult:
        normalized = canonical_email(email or "")
        user = self.store.get_user_by_email(normalized) if normalized else None
        if not user:
            self._burn_password_check(password or "")
            self.logger.info("login_unknown_email", email_hash=_email_hash(normalized))
            raise InvalidCredentialsError(INVALID_LOGIN_MESSAGE)

        if self.lockout.is_locked(user):
            self.logger.warning("login_while_locked", user_id=user.id, lock_until=user.lock_until.isoformat())
            raise AccountLockedError(
                "Account temporarily locked due to too many failed login attempts",
                detail={"lock_until": user.lock_until.isoformat()},
            )

        if not user.is_active:
            raise AccountDeactivatedError("Account is deactivated")

        if not self.verify_password(user, password or ""):
            user, locked_now = self._save(user, self.lockout.register_failure)
            self.logger.info(
                "login_failed",
                user_id=user.id,
                attempts=user.login_attempts,
                locked=locked_now,
            )
            if locked_now:
                self.logger.warning("account_locked", user_id=user.id, lock_until=user.lock_until.isoformat())
            raise InvalidCredentialsError(INVALID_LOGIN_MESSAGE)

        pair = self._issue_pair(user)
        new_hash = self._hash_password(password) if self._pwd_hasher.check_needs_rehash(user.password_hash) else None

        def _record_login(candidate: User) -> None:
            self.lockout.register_success(candidate)
            candidate.last_login = self._now()
            candidate.add_refresh_token(
                pair.refresh_token, limit=self.settings.max_refresh_tokens, issued_at=self._now()
            )
            if new_hash:
                candidate.password_hash = new_hash

        user, _ = self._save(user, _record_login)
        self.logger.info("login_succeeded", user_id=user.id, sessions=len(user.refresh_tokens))
        return AuthResult(user=user, tokens=pair)

    # token rotation
    async def refresh(self, refresh_token: str) -> AuthResult:
        if not refresh_token:
            raise ValidationError("Refresh token is required")
        try:
            claims = self.tokens.verify_refresh(refresh_token)
        except (TokenInvalid, TokenExpired) as exc:
            self.logger.info("refresh_rejected", reason=type(exc).__name__)
            raise InvalidRefreshTokenError("Invalid refresh token")

        user = self.store.get_user(str(claims.get("sub")))
        if not user or not user.is_active:
            raise InvalidRefreshTokenError("Invalid or expired refresh token")

        pair = self._issue_pair(user)

        def _rotate(candidate: User) -> int:
            if not candidate.has_refresh_token(refresh_token):
                raise InvalidRefreshTokenError("Invalid or expired refresh token")
            before = len(candidate.refresh_tokens)
            candidate.refresh_tokens = [
                record for record in candidate.refresh_tokens if self._refresh_still_valid(record.token)
            ]
            pruned = before - len(candidate.refresh_tokens)
            if self.settings.strict_refresh_rotation:
                candidate.remove_refresh_token(refresh_token)
            candidate.add_refresh_token(
                pair.refresh_token, limit=self.settings.max_refresh_tokens, issued_at=self._now()
            )
            return pruned

        user, pruned = self._save(user, _rotate)
        self.logger.info("refresh_succeeded", user_id=user.id, pruned=pruned)
        return AuthResult(user=user, tokens=pair)

    def _refresh_still_valid(self, token: str) -> bool:
        try:
            self.tokens.verify_refresh(token)
        except (TokenInvalid, TokenExpired):
            return False
        return True

    async def logout(self, user: User, refresh_token: Optional[str] = None) -> User:
        def _revoke(candidate: User) -> None:
            if refresh_token:
                candidate.remove_refresh_token(refresh_token)
            else:
                candidate.refresh_tokens = []

        user, _ = self._save(user, _revoke)
        self.logger.info("logout", user_id=user.id, all_sessions=not refresh_token)
        return user

    # password recovery
    async def request_password_reset(self, email: str) -> bool:
        """Issue and mail a reset token. Returns whether a mail went out.

        Callers must answer identically whatever this returns.
        """
        normalized = canonical_email(email or "")
        user = self.store.get_user_by_email(normalized) if normalized else None
        if not user:
            self.logger.info("password_reset_unknown_email", email_hash=_email_hash(normalized))
            return False

        token = self.tokens.issue_purpose_token(user.id, PASSWORD_RESET)
        ttl = self.tokens.purpose_ttl(PASSWORD_RESET)

        def _store_token(candidate: User) -> None:
            candidate.password_reset_token = token
            candidate.password_reset_expires = self._now() + ttl

        user, _ = self._save(user, _store_token)
        sent = await self._dispatch(
            self.email.send_password_reset,
            user.email,
            token,
            expires_minutes=int(ttl.total_seconds() // 60),
        )
        if sent:
            self.logger.info("password_reset_requested", user_id=user.id)
            return True

        def _clear_token(candidate: User) -> None:
            if candidate.password_reset_token == token:
                candidate.password_reset_token = None
                candidate.password_reset_expires = None

        self._save(user, _clear_token)
        self.logger.error("password_reset_email_failed", user_id=user.id)
        return False

    async def reset_password(self, token: str, new_password: str) -> User:
        try:
            validate_password_strength(new_password)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "password"})
        if not token:
            raise InvalidTokenError("Invalid or expired reset token")
        try:
            claims = self.tokens.verify_access(token)
        except (TokenInvalid, TokenExpired) as exc:
            self.logger.info("password_reset_token_rejected", reason=type(exc).__name__)
            raise InvalidTokenError("Invalid or expired reset token")
        if claims.get("type") != PASSWORD_RESET:
            raise InvalidTokenError("Invalid or expired reset token")

        user = self.store.get_user(str(claims.get("sub")))
        if not user:
            raise NotFoundError("User not found")
        new_hash = self._hash_password(new_password)

        def _apply(candidate: User) -> None:
            if not candidate.password_reset_token or candidate.password_reset_token != token:
                raise InvalidTokenError("Invalid or expired reset token")
            if not candidate.password_reset_expires or candidate.password_reset_expires <= self._now():
                raise InvalidTokenError("Reset token has expired")
            candidate.password_hash = new_hash
            candidate.password_reset_token = None
            candidate.password_reset_expires = None
            candidate.refresh_tokens = []

        user, _ = self._save(user, _apply)
        self.logger.info("password_reset_completed", user_id=user.id)
        return user

    async def change_password(self, user: User, current_password: str, new_password: str) -> User:
        if not self.verify_password(user, current_password or ""):
            self.logger.info("change_password_wrong_current", user_id=user.id)
            raise InvalidCredentialsError("Current password is incorrect", status_code=400)
        try:
            validate_password_strength(new_password)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "new_password"})
        new_hash = self._hash_password(new_password)

        def _apply(candidate: User) -> None:
            candidate.password_hash = new_hash
            candidate.refresh_tokens = []

        user, _ = self._save(user, _apply)
        self.logger.info("password_changed", user_id=user.id)
        return user

    # email verification
    async def request_email_verification(self, user: User) -> None:
        if user.is_email_verified:
            raise AlreadyVerifiedError("Email is already verified")
        token = self.tokens.issue_purpose_token(user.id, EMAIL_VERIFICATION)
        ttl = self.tokens.purpose_ttl(EMAIL_VERIFICATION)

        def _store_token(candidate: User) -> None:
            if candidate.is_email_verified:
                raise AlreadyVerifiedError("Email is already verified")
            candidate.email_verification_token = token

        user, _ = self._save(user, _store_token)
        sent = await self._dispatch(
            self.email.send_email_verification,
            user.email,
            token,
            expires_hours=max(1, int(ttl.total_seconds() // 3600)),
        )
        if sent:
            self.logger.info("email_verification_requested", user_id=user.id)
            return

        def _clear_token(candidate: User) -> None:
            if candidate.email_verification_token == token:
                candidate.email_verification_token = None

        self._save(user, _clear_token)
        raise NotificationError("Could not send verification email")

    async def verify_email(self, token: str) -> User:
        if not token:
            raise InvalidTokenError("Invalid verification token")
        try:
            claims = self.tokens.verify_access(token)
        except TokenExpired:
            raise TokenExpiredError("Verification token has expired")
        except TokenInvalid:
            raise InvalidTokenError("Invalid verification token")
        if claims.get("type") != EMAIL_VERIFICATION:
            raise InvalidTokenError("Invalid verification token")

        user = self.store.get_user(str(claims.get("sub")))
        if not user:
            raise NotFoundError("User not found")
        if user.is_email_verified:
            raise AlreadyVerifiedError("Email is already verified")

        def _apply(candidate: User) -> None:
            if candidate.is_email_verified:
                raise AlreadyVerifiedError("Email is already verified")
            if candidate.email_verification_token != token:
                raise InvalidTokenError("Invalid verification token")
            candidate.is_email_verified = True
            candidate.email_verification_token = None

        user, _ = self._save(user, _apply)
        self.logger.info("email_verified", user_id=user.id)
        return user

    # identity resolution for the HTTP and realtime gates
    def authenticate_access_token(self, token: Optional[str]) -> User:
        """Resolve a bearer access token to an active user.

        ``detail["reason"]`` tells the realtime gate which rejection applied.
        """
        if not token:
            raise UnauthorizedError("Access token is required", detail={"reason": "token_missing"})
        try:
            claims = self.tokens.verify_access(token)
        except TokenExpired:
            raise UnauthorizedError("Token expired", detail={"reason": "token_expired"})
        except TokenInvalid:
            raise UnauthorizedError("Invalid token", detail={"reason": "token_invalid"})
        if claims.get("token_type") != ACCESS:
            # purpose tokens share the access secret but are not credentials
            raise UnauthorizedError("Invalid token", detail={"reason": "token_invalid"})
        user = self.store.get_user(str(claims.get("sub")))
        if not user:
            raise UnauthorizedError("User no longer exists", detail={"reason": "user_missing"})
        if not user.is_active:
            raise AccountDeactivatedError("Account is deactivated", detail={"reason": "user_inactive"})
        return user

    # profile / administration
    def get_user(self, user_id: str) -> Optional[User]:
        return self.store.get_user(user_id)

    def list_users(self, limit: int = 100) -> List[User]:
        return self.store.list_users(limit=limit)

    async def update_profile(self, user: User, **changes: Optional[str]) -> User:
        updates = {key: value for key, value in changes.items() if value is not None}
        try:
            if "name" in updates:
                updates["name"] = validate_name(updates["name"])
            if "bio" in updates:
                updates["bio"] = validate_bio(updates["bio"])
        except ValueError as exc:
            raise ValidationError(str(exc))
        unknown = set(updates) - {"name", "bio", "avatar", "location", "website"}
        if unknown:
            raise ValidationError("Unsupported profile fields", detail={"fields": sorted(unknown)})

        def _apply(candidate: User) -> None:
            for key, value in updates.items():
                setattr(candidate, key, value)

        user, _ = self._save(user, _apply)
        self.logger.info("profile_updated", user_id=user.id, fields=sorted(updates))
        return user

    async def set_active(self, user_id: str, is_active: bool) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")

        def _apply(candidate: User) -> None:
            candidate.is_active = is_active
            if not is_active:
                candidate.refresh_tokens = []

        user, _ = self._save(user, _apply)
        self.logger.info("user_active_changed", user_id=user.id, is_active=is_active)
        return user
