from __future__ import annotations

import threading
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from eventauth.logging import get_logger
from eventauth.storage.common import (
    CLEANUP_MARKER_KEY,
    REFRESH_PREFIX,
    blacklist_key,
    refresh_key,
)
from eventauth.storage.errors import ConstraintViolation
from eventauth.storage.models import Account, PasswordHistoryEntry, RefreshTokenRecord


class MemoryStore:
    """In-process account and credential store used for tests and local runs."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.credentials: Dict[str, str] = {}
        self.password_history: Dict[str, List[PasswordHistoryEntry]] = {}
        self.policy_overrides: Dict[str, Any] = {}
        # RLock so helpers can be composed inside a locked section
        self._data_lock = threading.RLock()

    # accounts
    def create_account(
        self,
        email: str,
        *,
        full_name: Optional[str] = None,
        role: str = "student",
        is_active: bool = True,
    ) -> Account:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account.new(normalized, full_name=full_name, role=role)
            account.is_active = is_active
            self.accounts[account.id] = account
            return replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = email.strip().lower()
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.email == normalized), None
            )
            return replace(account) if account else None

    def get_account_by_reset_hash(self, token_hash: str) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.reset_token_hash == token_hash),
                None,
            )
            return replace(account) if account else None

    def get_account_by_verification_hash(self, token_hash: str) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (
                    a
                    for a in self.accounts.values()
                    if a.verification_token_hash == token_hash
                ),
                None,
            )
            return replace(account) if account else None

    def save_account(self, account: Account) -> Account:
        with self._data_lock:
            if account.id not in self.accounts:
                raise ConstraintViolation(
                    "account not found", {"account_id": account.id}
                )
            self.accounts[account.id] = replace(account)
            return replace(account)

    def list_accounts(self, limit: int = 100) -> List[Account]:
        with self._data_lock:
            results = sorted(
                self.accounts.values(), key=lambda a: a.created_at, reverse=True
            )
            return [replace(a) for a in results[:limit]]

    # credentials
    def save_password(self, account_id: str, password_hash: str) -> None:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for credentials", {"account_id": account_id}
                )
            self.credentials[account_id] = password_hash

    def get_password_hash(self, account_id: str) -> Optional[str]:
        with self._data_lock:
            return self.credentials.get(account_id)

    def add_password_history(
        self, account_id: str, entry: PasswordHistoryEntry
    ) -> None:
        with self._data_lock:
            self.password_history.setdefault(account_id, []).append(entry)

    def get_password_history(
        self, account_id: str, limit: int = 10
    ) -> List[PasswordHistoryEntry]:
        with self._data_lock:
            entries = self.password_history.get(account_id, [])
            ordered = sorted(entries, key=lambda e: e.changed_at, reverse=True)
            return list(ordered[:limit])

    # policy
    def get_policy_overrides(self) -> Dict[str, Any]:
        with self._data_lock:
            return dict(self.policy_overrides)

    def set_policy_overrides(self, values: Dict[str, Any]) -> None:
        with self._data_lock:
            self.policy_overrides = dict(values)


class MemoryCache:
    """Process-local revocation store for TEST_MODE and the dev fallback.

    Mirrors ``RedisCache`` key layout and TTL semantics so the session layer
    behaves identically against either backend.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _set(self, key: str, value: str, ttl_seconds: Optional[int]) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._values[key] = (value, expires_at)

    def _get(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._values.get(key)
            if item is None:
                return None
            value, expires_at = item
            if expires_at is not None and expires_at <= self._clock():
                self._values.pop(key, None)
                return None
            return value

    def _live_keys(self, prefix: str) -> List[str]:
        now = self._clock()
        with self._lock:
            expired = [
                k for k, (_, exp) in self._values.items() if exp is not None and exp <= now
            ]
            for key in expired:
                self._values.pop(key, None)
            return [k for k in self._values if k.startswith(prefix)]

    async def put_refresh(
        self, subject: str, record: RefreshTokenRecord, ttl_seconds: int
    ) -> None:
        self._set(refresh_key(subject), record.to_json(), max(1, int(ttl_seconds)))

    async def get_refresh(self, subject: str) -> Optional[RefreshTokenRecord]:
        raw = self._get(refresh_key(subject))
        if raw is None:
            return None
        return RefreshTokenRecord.from_json(raw)

    async def delete_refresh(self, subject: str) -> None:
        with self._lock:
            self._values.pop(refresh_key(subject), None)

    async def blacklist(self, token: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        self._set(blacklist_key(token), "true", int(ttl_seconds))

    async def is_blacklisted(self, token: str) -> bool:
        return self._get(blacklist_key(token)) is not None

    async def count_keys(self, prefix: str) -> int:
        return len(self._live_keys(prefix))

    async def iter_refresh_subjects(self) -> List[str]:
        return [k[len(REFRESH_PREFIX):] for k in self._live_keys(REFRESH_PREFIX)]

    async def set_cleanup_marker(self, value: str) -> None:
        self._set(CLEANUP_MARKER_KEY, value, None)

    async def get_cleanup_marker(self) -> Optional[str]:
        return self._get(CLEANUP_MARKER_KEY)

    async def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            self._values.clear()


__all__ = ["MemoryStore", "MemoryCache"]
