"""Key layout and interfaces shared by the memory and Redis backends.

The session layer only talks to these protocols so that tests and
development runs can swap the Redis revocation store for the in-process
one without touching service code.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol

if TYPE_CHECKING:
    from eventauth.storage.models import (
        Account,
        PasswordHistoryEntry,
        RefreshTokenRecord,
    )


REFRESH_PREFIX = "refresh_token:"
BLACKLIST_PREFIX = "blacklist:"
CLEANUP_MARKER_KEY = "token_cleanup_last_run"


def refresh_key(subject: str) -> str:
    return f"{REFRESH_PREFIX}{subject}"


def blacklist_key(token: str) -> str:
    return f"{BLACKLIST_PREFIX}{token}"


class RevocationStore(Protocol):
    async def put_refresh(
        self, subject: str, record: "RefreshTokenRecord", ttl_seconds: int
    ) -> None: ...

    async def get_refresh(self, subject: str) -> Optional["RefreshTokenRecord"]: ...

    async def delete_refresh(self, subject: str) -> None: ...

    async def blacklist(self, token: str, ttl_seconds: int) -> None: ...

    async def is_blacklisted(self, token: str) -> bool: ...

    async def count_keys(self, prefix: str) -> int: ...

    async def iter_refresh_subjects(self) -> List[str]: ...

    async def set_cleanup_marker(self, value: str) -> None: ...

    async def get_cleanup_marker(self) -> Optional[str]: ...

    async def verify_connection(self) -> None: ...

    async def close(self) -> None: ...


class AccountStore(Protocol):
    """Account and credential persistence consumed by the password and session services."""

    def create_account(
        self,
        email: str,
        *,
        full_name: Optional[str] = None,
        role: str = "student",
        is_active: bool = True,
    ) -> "Account": ...

    def get_account(self, account_id: str) -> Optional["Account"]: ...

    def get_account_by_email(self, email: str) -> Optional["Account"]: ...

    def get_account_by_reset_hash(self, token_hash: str) -> Optional["Account"]: ...

    def get_account_by_verification_hash(
        self, token_hash: str
    ) -> Optional["Account"]: ...

    def save_account(self, account: "Account") -> "Account": ...

    def list_accounts(self, limit: int = 100) -> List["Account"]: ...

    def save_password(self, account_id: str, password_hash: str) -> None: ...

    def get_password_hash(self, account_id: str) -> Optional[str]: ...

    def add_password_history(
        self, account_id: str, entry: "PasswordHistoryEntry"
    ) -> None: ...

    def get_password_history(
        self, account_id: str, limit: int = 10
    ) -> List["PasswordHistoryEntry"]: ...

    def get_policy_overrides(self) -> Dict[str, Any]: ...

    def set_policy_overrides(self, values: Dict[str, Any]) -> None: ...
