from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from oceanblog.storage.models import User


class LockoutGuard:
    """Failed-login counter with a temporary lock.

    A user is *open* while ``lock_until`` is unset or in the past and *locked*
    while it lies in the future. The guard only mutates the record it is
    given; persisting it is the caller's job.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 5,
        lock_minutes: int = 120,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.max_attempts = max_attempts
        self.lock_duration = timedelta(minutes=lock_minutes)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def is_locked(self, user: User) -> bool:
        return user.lock_until is not None and user.lock_until > self._clock()

    def register_failure(self, user: User) -> bool:
        """Count a failed password check. Returns True if this call locked the account."""
        now = self._clock()
        if user.lock_until is not None and user.lock_until <= now:
            # lapsed lock: start a fresh window instead of counting on
            user.login_attempts = 1
            user.lock_until = None
            return False
        user.login_attempts += 1
        if user.login_attempts >= self.max_attempts and not self.is_locked(user):
            user.lock_until = now + self.lock_duration
            return True
        return False

    def register_success(self, user: User) -> None:
        user.login_attempts = 0
        user.lock_until = None

    def remaining_attempts(self, user: User) -> int:
        return max(0, self.max_attempts - user.login_attempts)
