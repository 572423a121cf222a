from __future__ import annotations

import hmac
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from eventauth.logging import get_logger
from eventauth.service.errors import (
    AccountLockedError,
    AuthenticationError,
    InvalidTokenError,
)
from eventauth.service.passwords import PasswordService
from eventauth.service.tokens import TokenIssuer, TokenVerifier
from eventauth.storage.common import (
    BLACKLIST_PREFIX,
    REFRESH_PREFIX,
    AccountStore,
    RevocationStore,
)
from eventauth.storage.errors import StoreUnavailableError
from eventauth.storage.models import Account, DeviceInfo, RefreshTokenRecord

logger = get_logger(__name__)


class SessionState(str, Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    REFRESHED = "refreshed"
    REVOKED = "revoked"


@dataclass
class SessionOutcome:
    state: SessionState
    account: Optional[Account] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    must_change_password: bool = False
    password_expired: bool = False

    def token_payload(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }


@dataclass(frozen=True)
class AuthContext:
    account_id: str
    email: str
    role: str
    token: str
    claims: Dict[str, Any] = field(default_factory=dict)
    must_change_password: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class SessionLifecycle:
    """Login, refresh rotation, logout and forced invalidation of sessions.

    A session is the pair of one access token and the single refresh record
    stored under ``refresh_token:<account id>``. Storing a new record
    replaces the previous one, so each account holds at most one live
    refresh token.
    """

    def __init__(
        self,
        store: AccountStore,
        cache: RevocationStore,
        issuer: TokenIssuer,
        verifier: TokenVerifier,
        passwords: PasswordService,
        *,
        rotate_refresh_tokens: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.cache = cache
        self.issuer = issuer
        self.verifier = verifier
        self.passwords = passwords
        self.rotate_refresh_tokens = rotate_refresh_tokens
        self.clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    def _access_claims(self, account: Account) -> Dict[str, Any]:
        return {"sub": account.id, "email": account.email, "role": account.role}

    async def _store_refresh(
        self,
        account_id: str,
        token: str,
        device_info: Optional[DeviceInfo],
        created_at: Optional[datetime] = None,
    ) -> None:
        record = RefreshTokenRecord(
            token=token,
            created_at=created_at or self._now(),
            device_info=device_info or DeviceInfo(),
        )
        await self.cache.put_refresh(account_id, record, self.issuer.refresh_lifetime)

    async def login(
        self,
        email: str,
        password: str,
        device_info: Optional[DeviceInfo] = None,
    ) -> SessionOutcome:
        account = self.store.get_account_by_email(email)
        if not account:
            self.passwords.verify_against_dummy(password)
            raise AuthenticationError("Invalid email or password")
        if not account.is_active:
            raise AuthenticationError("Account is deactivated")
        now = self._now()
        if account.is_locked(now):
            raise AccountLockedError(
                "Account is temporarily locked",
                detail={"locked_until": account.locked_until.isoformat()},
            )
        if not self.passwords.verify_account_password(account.id, password):
            account = self.passwords.record_failed_login(account)
            if account.is_locked(now):
                try:
                    await self.force_invalidate(account.id)
                except StoreUnavailableError as exc:
                    # Lockout is already persisted; the refresh path rejects locked accounts
                    logger.warning(
                        "lockout_invalidate_failed", account_id=account.id, error=str(exc)
                    )
                raise AccountLockedError(
                    "Account is temporarily locked after repeated failed logins",
                    detail={"locked_until": account.locked_until.isoformat()},
                )
            threshold = self.passwords.get_policy().lockout_threshold
            remaining = threshold - account.failed_login_attempts
            raise AuthenticationError(
                "Invalid email or password",
                detail={"remaining_attempts": max(0, remaining)},
            )
        if (
            account.temporary_password_expires_at is not None
            and account.temporary_password_expires_at <= now
        ):
            raise AuthenticationError("Temporary password has expired")

        account = self.passwords.record_successful_login(account)
        access_token = self.issuer.issue_access(self._access_claims(account))
        refresh_token = self.issuer.issue_refresh(account.id)
        await self._store_refresh(account.id, refresh_token, device_info, created_at=now)
        logger.info("login_succeeded", account_id=account.id)
        return SessionOutcome(
            state=SessionState.AUTHENTICATED,
            account=account,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.issuer.access_lifetime,
            must_change_password=account.must_change_password,
            password_expired=self.passwords.is_password_expired(account),
        )

    async def refresh(
        self, refresh_token: str, device_info: Optional[DeviceInfo] = None
    ) -> SessionOutcome:
        result = self.verifier.verify_refresh(refresh_token)
        if result.expired:
            subject = result.subject
            if subject:
                await self._discard_expired_record(subject, refresh_token)
            logger.info("refresh_token_expired", account_id=subject)
            result.raise_for_failure()
        if not result.valid:
            logger.info(
                "refresh_token_rejected",
                reason=result.reason.value if result.reason else None,
            )
            result.raise_for_failure()

        subject = result.subject
        if not subject:
            raise InvalidTokenError("Invalid refresh token")
        stored = await self.cache.get_refresh(subject)
        # A missing or different record means the token was rotated, revoked,
        # or its store write never landed; all are treated as invalid
        if stored is None or not hmac.compare_digest(stored.token, refresh_token):
            logger.warning("refresh_token_not_current", account_id=subject)
            raise InvalidTokenError("Invalid refresh token")

        account = self.store.get_account(subject)
        if not account or not account.is_active or account.is_locked(self._now()):
            logger.warning("refresh_account_unavailable", account_id=subject)
            raise InvalidTokenError("Invalid refresh token")

        access_token = self.issuer.issue_access(self._access_claims(account))
        new_refresh = refresh_token
        if self.rotate_refresh_tokens:
            new_refresh = self.issuer.issue_refresh(account.id)
            # The record keeps the session start across rotations
            await self._store_refresh(
                account.id,
                new_refresh,
                device_info or stored.device_info,
                created_at=stored.created_at,
            )
        logger.info(
            "tokens_refreshed", account_id=account.id, rotated=self.rotate_refresh_tokens
        )
        return SessionOutcome(
            state=SessionState.REFRESHED,
            account=account,
            access_token=access_token,
            refresh_token=new_refresh,
            expires_in=self.issuer.access_lifetime,
            must_change_password=account.must_change_password,
        )

    async def _discard_expired_record(self, subject: str, refresh_token: str) -> None:
        try:
            stored = await self.cache.get_refresh(subject)
            if stored is not None and hmac.compare_digest(stored.token, refresh_token):
                await self.cache.delete_refresh(subject)
        except StoreUnavailableError as exc:
            logger.warning("expired_refresh_cleanup_failed", account_id=subject, error=str(exc))

    async def logout(
        self, access_token: str, subject: Optional[str] = None
    ) -> SessionOutcome:
        """Revoke the access token for its remaining lifetime and end its session.

        Safe to repeat. Only a token whose signature verifies is acted on;
        expiry is ignored so an expired token still ends its own session.
        The refresh record is dropped only when the token is not already
        revoked and was issued no earlier than the session it would end, so
        an old token cannot log out a later login.
        """
        result = self.verifier.verify_access(access_token, verify_exp=False)
        if not result.valid:
            logger.info(
                "logout_token_not_blacklisted",
                reason=result.reason.value if result.reason else None,
            )
            return SessionOutcome(state=SessionState.REVOKED)

        subject = subject or result.subject
        if await self.cache.is_blacklisted(access_token):
            logger.info("logout_token_already_revoked", account_id=subject)
            return SessionOutcome(state=SessionState.REVOKED)
        ttl = int(result.claims["exp"]) - int(self.clock())
        await self.cache.blacklist(access_token, ttl)
        if subject:
            await self._end_session(subject, result.claims.get("iat"))
        logger.info("logout_completed", account_id=subject)
        return SessionOutcome(state=SessionState.REVOKED)

    async def _end_session(self, subject: str, issued_at: Any) -> None:
        stored = await self.cache.get_refresh(subject)
        if stored is None:
            return
        if isinstance(issued_at, bool) or not isinstance(issued_at, (int, float)):
            issued_at = None
        if issued_at is None or int(issued_at) < int(stored.created_at.timestamp()):
            logger.info("logout_token_predates_session", account_id=subject)
            return
        await self.cache.delete_refresh(subject)

    async def force_invalidate(self, subject: str) -> SessionOutcome:
        await self.cache.delete_refresh(subject)
        logger.info("sessions_invalidated", account_id=subject)
        return SessionOutcome(state=SessionState.REVOKED)

    async def authenticate(self, access_token: str) -> AuthContext:
        claims = self.verifier.verify_access(access_token).raise_for_failure()
        try:
            revoked = await self.cache.is_blacklisted(access_token)
        except StoreUnavailableError as exc:
            # Fail closed: an unreachable blacklist cannot vouch for the token
            logger.warning("blacklist_check_failed", error=str(exc))
            revoked = True
        if revoked:
            raise InvalidTokenError("Token has been revoked")
        account = self.store.get_account(str(claims.get("sub")))
        if not account or not account.is_active:
            raise InvalidTokenError("Invalid token")
        if account.is_locked(self._now()):
            raise AccountLockedError("Account is temporarily locked")
        return AuthContext(
            account_id=account.id,
            email=account.email,
            role=account.role,
            token=access_token,
            claims=claims,
            must_change_password=account.must_change_password,
        )

    async def token_statistics(self) -> Dict[str, Any]:
        try:
            active = await self.cache.count_keys(REFRESH_PREFIX)
            blacklisted = await self.cache.count_keys(BLACKLIST_PREFIX)
            last_run = await self.cache.get_cleanup_marker()
        except StoreUnavailableError as exc:
            logger.error("token_statistics_failed", error=str(exc))
            return {
                "active_refresh_tokens": 0,
                "blacklisted_tokens": 0,
                "cleanup_last_run": "Error",
            }
        return {
            "active_refresh_tokens": active,
            "blacklisted_tokens": blacklisted,
            "cleanup_last_run": last_run or "Never",
        }
