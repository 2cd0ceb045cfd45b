from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Dict, List, Optional

from oceanblog.logging import get_logger
from oceanblog.storage.errors import ConstraintViolation, RecordNotFound, StaleRecordError
from oceanblog.storage.models import User, utcnow


class MemoryStore:
    """In-process user store with a JSON snapshot on disk.

    Records handed out are copies; callers mutate their copy and write it back
    with :meth:`save_user`, which rejects the write when the stored version has
    moved on since the copy was read.
    """

    def __init__(self, fs_root: str = "/tmp/oceanblog", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._email_index: Dict[str, str] = {}
        # RLock so helpers can re-enter while a write holds the lock
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # user / auth
    def create_user(self, user: User) -> User:
        email = user.email.strip().lower()
        with self._data_lock:
            if email in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            stored = user.clone()
            stored.email = email
            stored.version = 1
            self.users[stored.id] = stored
            self._email_index[email] = stored.id
            self._persist_state()
            return stored.clone()

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return user.clone() if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._email_index.get(email.strip().lower())
            if not user_id:
                return None
            return self.users[user_id].clone()

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            results = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [u.clone() for u in results[:limit]]

    def save_user(self, user: User) -> User:
        with self._data_lock:
            current = self.users.get(user.id)
            if current is None:
                raise RecordNotFound(user.id)
            if current.version != user.version:
                raise StaleRecordError(user.id, user.version, current.version)
            email = user.email.strip().lower()
            owner = self._email_index.get(email)
            if owner is not None and owner != user.id:
                raise ConstraintViolation("email already exists", {"field": "email"})
            stored = user.clone()
            stored.email = email
            stored.version = current.version + 1
            stored.updated_at = utcnow()
            if current.email != email:
                self._email_index.pop(current.email, None)
                self._email_index[email] = user.id
            self.users[user.id] = stored
            self._persist_state()
            return stored.clone()

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.get_user(user_id)
            if not user:
                return None
            user.role = role
            return self.save_user(user)

    def verify_connection(self) -> None:
        """Nothing to reach; present so health checks treat stores alike."""

    def close(self) -> None:
        return None

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {"users": [u.to_dict() for u in self.users.values()]}
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
        self.users = {u["id"]: User.from_dict(u) for u in data.get("users", [])}
        self._email_index = {u.email: u.id for u in self.users.values()}
        self.logger.info("memory_store_loaded", users=len(self.users))
        return True
