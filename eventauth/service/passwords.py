from __future__ import annotations

import hashlib
import secrets
import string
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from eventauth.config import Settings
from eventauth.logging import get_logger
from eventauth.service.errors import (
    AuthenticationError,
    InvalidTokenError,
    NotFoundError,
    PolicyViolationError,
    ValidationError,
)
from eventauth.service.notifier import AccountNotifier
from eventauth.service.tokens import TokenIssuer, hash_opaque_token, parse_expiry
from eventauth.storage.common import AccountStore
from eventauth.storage.models import Account, OpaqueToken, PasswordHistoryEntry

logger = get_logger(__name__)

HIBP_RANGE_URL = "https://api.pwnedpasswords.com/range/{prefix}"
SPECIAL_CHARACTERS = "!@#$%^&*()-_=+[]{};:,.<>?/~"
STRENGTH_LABELS = ("very_weak", "weak", "fair", "strong", "very_strong")
LOCKOUT_REASON_FAILED_ATTEMPTS = "too_many_failed_attempts"
MAX_TEMPORARY_PASSWORD_SECONDS = 7 * 86400
MAX_STATS_WINDOW_SECONDS = 5 * 365 * 86400
# Scores below "fair" are reported by the weak password sweep
WEAK_PASSWORD_SCORE = 2
ACCOUNT_SCAN_LIMIT = 10_000
HISTORY_SCAN_LIMIT = 1_000

COMMON_PASSWORDS = frozenset(
    {
        "123456",
        "123456789",
        "12345678",
        "1234567890",
        "password",
        "password1",
        "password123",
        "qwerty",
        "qwerty123",
        "abc123",
        "111111",
        "123123",
        "admin",
        "admin123",
        "letmein",
        "welcome",
        "welcome1",
        "iloveyou",
        "monkey",
        "dragon",
        "football",
        "baseball",
        "sunshine",
        "princess",
        "master",
        "login",
        "passw0rd",
        "p@ssw0rd",
        "p@ssword",
        "changeme",
        "student",
        "student123",
    }
)

SessionInvalidator = Callable[[str], Awaitable[None]]


class PasswordPolicy(BaseModel):
    """Active password rules. Admin overrides are merged over these defaults."""

    min_length: int = Field(8, ge=4, le=128)
    max_length: int = Field(128, ge=8, le=1024)
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_numbers: bool = True
    require_special_chars: bool = True
    prevent_common_passwords: bool = True
    prevent_personal_info: bool = True
    password_history_count: int = Field(5, ge=0, le=24)
    max_age_days: int = Field(90, ge=0)
    lockout_threshold: int = Field(5, ge=1, le=100)
    lockout_duration_minutes: int = Field(30, ge=1)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _length_bounds(self) -> "PasswordPolicy":
        if self.min_length > self.max_length:
            raise ValueError("min_length cannot exceed max_length")
        return self


@dataclass
class StrengthReport:
    score: int
    label: str
    feedback: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PolicyValidation:
    valid: bool
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BreachResult:
    is_breached: bool
    breach_count: int = 0
    checked: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _character_classes(password: str) -> Dict[str, bool]:
    return {
        "lower": any(c.islower() for c in password),
        "upper": any(c.isupper() for c in password),
        "digit": any(c.isdigit() for c in password),
        "special": any(not c.isalnum() for c in password),
    }


def _has_repeated_run(password: str, run: int = 3) -> bool:
    count = 1
    for prev, cur in zip(password, password[1:]):
        count = count + 1 if cur == prev else 1
        if count >= run:
            return True
    return False


def _is_common(password: str) -> bool:
    return password.lower() in COMMON_PASSWORDS


def _personal_fragments(user_info: Optional[Dict[str, Any]]) -> List[str]:
    if not user_info:
        return []
    fragments: List[str] = []
    email = user_info.get("email")
    if isinstance(email, str) and "@" in email:
        fragments.append(email.split("@", 1)[0])
    for key in ("full_name", "name", "first_name", "last_name", "username"):
        value = user_info.get(key)
        if isinstance(value, str):
            fragments.extend(value.split())
    return [f.lower() for f in fragments if len(f) >= 3]


class PasswordService:
    """Hashing, policy enforcement, reset flows and lockout bookkeeping."""

    def __init__(
        self,
        store: AccountStore,
        issuer: TokenIssuer,
        settings: Settings,
        *,
        notifier: Optional[AccountNotifier] = None,
        session_invalidator: Optional[SessionInvalidator] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.settings = settings
        self.notifier = notifier or AccountNotifier(
            base_url=settings.app_base_url, dev_mode=settings.notifier_dev_mode
        )
        self.session_invalidator = session_invalidator
        self.http_client = http_client
        self.clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    async def _invalidate_sessions(self, account_id: str) -> None:
        if self.session_invalidator is None:
            return
        await self.session_invalidator(account_id)

    def _require_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("Account not found", detail={"account_id": account_id})
        return account

    # hashing
    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, password_hash: Optional[str], password: str) -> bool:
        if not password_hash:
            return False
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def verify_account_password(self, account_id: str, password: str) -> bool:
        stored = self.store.get_password_hash(account_id)
        if not stored:
            self.logger.warning("password_record_missing", account_id=account_id)
            return False
        ok = self.verify_password(stored, password)
        if not ok:
            self.logger.info("password_verification_failed", account_id=account_id)
        return ok

    def verify_against_dummy(self, password: str) -> None:
        """Run one argon2 verify for a login that matched no account."""
        if self._dummy_hash is None:
            self._dummy_hash = self.hash_password(secrets.token_urlsafe(16))
        self.verify_password(self._dummy_hash, password)

    # policy
    def get_policy(self) -> PasswordPolicy:
        overrides = self.store.get_policy_overrides()
        try:
            return PasswordPolicy(**overrides)
        except PydanticValidationError as exc:
            # Stored overrides were written by an older policy shape
            self.logger.warning("password_policy_overrides_invalid", error=str(exc))
            return PasswordPolicy()

    def update_policy(
        self, changes: Dict[str, Any], actor_id: Optional[str] = None
    ) -> PasswordPolicy:
        current = self.get_policy().model_dump()
        updates = {k: v for k, v in changes.items() if v is not None}
        try:
            policy = PasswordPolicy(**{**current, **updates})
        except PydanticValidationError as exc:
            errors = [
                {
                    "field": ".".join(str(p) for p in err.get("loc", ())) or "policy",
                    "message": err.get("msg", "invalid value"),
                }
                for err in exc.errors()
            ]
            raise ValidationError("Invalid password policy", errors=errors) from exc
        self.store.set_policy_overrides(policy.model_dump())
        self.logger.info(
            "password_policy_updated", actor_id=actor_id, fields=sorted(updates)
        )
        return policy

    def check_strength(self, password: str) -> StrengthReport:
        feedback: List[str] = []
        classes = _character_classes(password)
        points = 0
        if len(password) >= 8:
            points += 1
        else:
            feedback.append("Use at least 8 characters")
        if len(password) >= 12:
            points += 1
        else:
            feedback.append("Longer passwords are harder to guess")
        variety = sum(classes.values())
        points += max(0, variety - 1)
        if not classes["upper"] or not classes["lower"]:
            feedback.append("Mix upper and lower case letters")
        if not classes["digit"]:
            feedback.append("Add a number")
        if not classes["special"]:
            feedback.append("Add a special character")
        if _has_repeated_run(password):
            points -= 1
            feedback.append("Avoid repeating the same character")
        if _is_common(password):
            points = 0
            feedback.append("This is a commonly used password")
        score = max(0, min(4, points))
        return StrengthReport(score=score, label=STRENGTH_LABELS[score], feedback=feedback)

    def validate_policy(
        self,
        password: str,
        user_info: Optional[Dict[str, Any]] = None,
        *,
        policy: Optional[PasswordPolicy] = None,
    ) -> PolicyValidation:
        policy = policy or self.get_policy()
        errors: List[Dict[str, str]] = []

        def _fail(code: str, message: str) -> None:
            errors.append({"code": code, "message": message})

        if len(password) < policy.min_length:
            _fail("min_length", f"Password must be at least {policy.min_length} characters")
        if len(password) > policy.max_length:
            _fail("max_length", f"Password must be at most {policy.max_length} characters")
        classes = _character_classes(password)
        if policy.require_uppercase and not classes["upper"]:
            _fail("uppercase", "Password must contain an uppercase letter")
        if policy.require_lowercase and not classes["lower"]:
            _fail("lowercase", "Password must contain a lowercase letter")
        if policy.require_numbers and not classes["digit"]:
            _fail("number", "Password must contain a number")
        if policy.require_special_chars and not classes["special"]:
            _fail("special_char", "Password must contain a special character")
        if policy.prevent_common_passwords and _is_common(password):
            _fail("common_password", "Password is too common")
        if policy.prevent_personal_info:
            lowered = password.lower()
            if any(fragment in lowered for fragment in _personal_fragments(user_info)):
                _fail("personal_info", "Password must not contain personal information")
        return PolicyValidation(valid=not errors, errors=errors)

    def _enforce_policy(self, password: str, account: Account) -> PasswordPolicy:
        policy = self.get_policy()
        result = self.validate_policy(
            password,
            {"email": account.email, "full_name": account.full_name},
            policy=policy,
        )
        if not result.valid:
            raise PolicyViolationError(
                "Password does not meet the password policy", errors=result.errors
            )
        return policy

    def _enforce_history(self, account_id: str, password: str, policy: PasswordPolicy) -> None:
        if policy.password_history_count <= 0:
            return
        hashes = [
            entry.password_hash
            for entry in self.store.get_password_history(
                account_id, limit=policy.password_history_count
            )
        ]
        current = self.store.get_password_hash(account_id)
        if current:
            hashes.append(current)
        if any(self.verify_password(h, password) for h in hashes):
            raise PolicyViolationError(
                "Password was used recently",
                errors=[
                    {
                        "code": "password_reused",
                        "message": (
                            "Password must differ from the last "
                            f"{policy.password_history_count} passwords"
                        ),
                    }
                ],
            )

    def _store_password(
        self,
        account: Account,
        password: str,
        *,
        reason: str,
        actor_id: Optional[str] = None,
    ) -> Account:
        password_hash = self.hash_password(password)
        self.store.save_password(account.id, password_hash)
        self.store.add_password_history(
            account.id,
            PasswordHistoryEntry(
                password_hash=password_hash,
                changed_at=self._now(),
                changed_by=actor_id or account.id,
                reason=reason,
            ),
        )
        account.password_changed_at = self._now()
        account.password_strength = self.check_strength(password).score
        return account

    def set_password(
        self,
        account_id: str,
        password: str,
        *,
        reason: str = "initial",
        actor_id: Optional[str] = None,
        enforce_policy: bool = True,
    ) -> Account:
        """Set a password without the current-password check (provisioning)."""
        account = self._require_account(account_id)
        if enforce_policy:
            self._enforce_policy(password, account)
        self._store_password(account, password, reason=reason, actor_id=actor_id)
        return self.store.save_account(account)

    def is_password_expired(self, account: Account) -> bool:
        if account.temporary_password_expires_at is not None:
            if account.temporary_password_expires_at <= self._now():
                return True
        policy = self.get_policy()
        if policy.max_age_days <= 0 or account.password_changed_at is None:
            return False
        return account.password_changed_at + timedelta(days=policy.max_age_days) <= self._now()

    async def check_breach(self, password: str) -> BreachResult:
        """Look the password up in Have I Been Pwned using the k-anonymity range API.

        Only the first five hex characters of the SHA-1 digest leave the
        process. Any network failure reports ``checked=False`` rather than
        blocking the caller.
        """
        if not self.settings.hibp_enabled:
            return BreachResult(is_breached=False, checked=False)
        digest = hashlib.sha1(password.encode("utf-8")).hexdigest().upper()
        prefix, suffix = digest[:5], digest[5:]
        client = self.http_client or httpx.AsyncClient(
            timeout=self.settings.hibp_timeout_seconds
        )
        try:
            resp = await client.get(
                HIBP_RANGE_URL.format(prefix=prefix),
                headers={"Add-Padding": "true"},
                timeout=self.settings.hibp_timeout_seconds,
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            self.logger.warning("breach_check_unavailable", error=str(exc))
            return BreachResult(is_breached=False, checked=False)
        finally:
            if self.http_client is None:
                await client.aclose()
        for line in resp.text.splitlines():
            candidate, _, count = line.strip().partition(":")
            if candidate.upper() == suffix:
                try:
                    breach_count = int(count)
                except ValueError:
                    breach_count = 0
                # Padding entries carry a count of zero
                if breach_count > 0:
                    return BreachResult(is_breached=True, breach_count=breach_count)
        return BreachResult(is_breached=False)

    # password changes
    async def change_password(
        self, account_id: str, current_password: str, new_password: str
    ) -> Dict[str, Any]:
        account = self._require_account(account_id)
        if not self.verify_account_password(account_id, current_password):
            raise AuthenticationError("Current password is incorrect")
        if current_password == new_password:
            raise ValidationError("New password must differ from the current password")
        policy = self._enforce_policy(new_password, account)
        self._enforce_history(account_id, new_password, policy)
        self._store_password(account, new_password, reason="change")
        account.must_change_password = False
        account.temporary_password_expires_at = None
        self.store.save_account(account)
        await self._invalidate_sessions(account_id)
        self.logger.info("password_changed", account_id=account_id)
        return {"password_changed_at": account.password_changed_at.isoformat()}

    async def request_password_reset(self, email: str) -> Optional[OpaqueToken]:
        account = self.store.get_account_by_email(email)
        if not account or not account.is_active:
            self.logger.info(
                "password_reset_unknown_account",
                email_hash=hashlib.sha256(email.strip().lower().encode()).hexdigest(),
            )
            return None
        token = self.issuer.issue_reset()
        account.reset_token_hash = token.hashed_token
        account.reset_token_expires_at = token.expires_at
        self.store.save_account(account)
        await self.notifier.send_password_reset(account.email, token.token, token.expires_at)
        self.logger.info("password_reset_requested", account_id=account.id)
        return token

    def _account_for_reset_token(self, raw_token: str) -> Account:
        account = self.store.get_account_by_reset_hash(hash_opaque_token(raw_token))
        if (
            not account
            or account.reset_token_expires_at is None
            or account.reset_token_expires_at <= self._now()
        ):
            self.logger.warning("password_reset_invalid_token")
            raise InvalidTokenError("Reset token is invalid or has expired")
        return account

    def verify_reset_token(self, raw_token: str) -> Dict[str, Any]:
        account = self._account_for_reset_token(raw_token)
        return {
            "valid": True,
            "email": account.email,
            "expires_at": account.reset_token_expires_at.isoformat(),
        }

    async def reset_password(self, raw_token: str, new_password: str) -> Dict[str, Any]:
        account = self._account_for_reset_token(raw_token)
        policy = self._enforce_policy(new_password, account)
        self._enforce_history(account.id, new_password, policy)
        self._store_password(account, new_password, reason="reset")
        account.reset_token_hash = None
        account.reset_token_expires_at = None
        account.clear_lock()
        account.must_change_password = False
        account.temporary_password_expires_at = None
        self.store.save_account(account)
        await self._invalidate_sessions(account.id)
        self.logger.info("password_reset_completed", account_id=account.id)
        return {"password_changed_at": account.password_changed_at.isoformat()}

    async def request_email_verification(self, account_id: str) -> OpaqueToken:
        account = self._require_account(account_id)
        if account.email_verified:
            raise ValidationError("Email is already verified")
        token = self.issuer.issue_verification()
        account.verification_token_hash = token.hashed_token
        account.verification_token_expires_at = token.expires_at
        self.store.save_account(account)
        await self.notifier.send_email_verification(
            account.email, token.token, token.expires_at
        )
        self.logger.info("email_verification_requested", account_id=account.id)
        return token

    def verify_email(self, raw_token: str) -> Account:
        account = self.store.get_account_by_verification_hash(hash_opaque_token(raw_token))
        if (
            not account
            or account.verification_token_expires_at is None
            or account.verification_token_expires_at <= self._now()
        ):
            self.logger.warning("email_verification_invalid_token")
            raise InvalidTokenError("Verification token is invalid or has expired")
        account.email_verified = True
        account.verification_token_hash = None
        account.verification_token_expires_at = None
        self.logger.info("email_verified", account_id=account.id)
        return self.store.save_account(account)

    # generators
    def generate_random_password(
        self, length: int = 12, include_symbols: bool = True
    ) -> str:
        length = max(8, min(int(length), 128))
        pools = [string.ascii_lowercase, string.ascii_uppercase, string.digits]
        if include_symbols:
            pools.append(SPECIAL_CHARACTERS)
        # One character from each pool so the result satisfies the default policy
        chars = [secrets.choice(pool) for pool in pools]
        alphabet = "".join(pools)
        chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars)))
        secrets.SystemRandom().shuffle(chars)
        return "".join(chars)

    async def generate_temporary_password(
        self, email: str, actor_id: str, expires_in: str = "24h"
    ) -> Dict[str, Any]:
        account = self.store.get_account_by_email(email)
        if not account:
            raise NotFoundError("Account not found")
        lifetime = parse_expiry(expires_in)
        if lifetime > MAX_TEMPORARY_PASSWORD_SECONDS:
            raise ValidationError(
                "Temporary password lifetime is too long",
                errors=[
                    {
                        "field": "expires_in",
                        "message": f"must not exceed {MAX_TEMPORARY_PASSWORD_SECONDS} seconds",
                    }
                ],
            )
        temporary = self.generate_random_password(12, include_symbols=True)
        self._store_password(account, temporary, reason="temporary", actor_id=actor_id)
        expires_at = self._now() + timedelta(seconds=lifetime)
        account.must_change_password = True
        account.temporary_password_expires_at = expires_at
        self.store.save_account(account)
        await self._invalidate_sessions(account.id)
        email_sent = await self.notifier.send_temporary_password(account.email, expires_at)
        self.logger.info(
            "temporary_password_generated", account_id=account.id, actor_id=actor_id
        )
        return {
            "temporary_password": temporary,
            "expires_at": expires_at.isoformat(),
            "email_sent": email_sent,
        }

    async def force_password_change(
        self, account_id: str, reason: Optional[str], actor_id: str
    ) -> Dict[str, Any]:
        account = self._require_account(account_id)
        account.must_change_password = True
        self.store.save_account(account)
        await self._invalidate_sessions(account_id)
        self.logger.info(
            "password_change_forced",
            account_id=account_id,
            actor_id=actor_id,
            reason=reason,
        )
        return {"account_id": account_id, "must_change_password": True, "reason": reason}

    # lockout
    def record_failed_login(self, account: Account) -> Account:
        """Count a failed attempt and lock the account once the threshold is hit."""
        policy = self.get_policy()
        now = self._now()
        if account.locked_until is not None and account.locked_until <= now:
            account.clear_lock()
        account.failed_login_attempts += 1
        if account.failed_login_attempts >= policy.lockout_threshold:
            account.locked_at = now
            account.locked_until = now + timedelta(minutes=policy.lockout_duration_minutes)
            account.lock_reason = LOCKOUT_REASON_FAILED_ATTEMPTS
            self.logger.warning(
                "account_locked_failed_attempts",
                account_id=account.id,
                attempts=account.failed_login_attempts,
            )
        return self.store.save_account(account)

    def record_successful_login(self, account: Account) -> Account:
        if account.failed_login_attempts or account.locked_until or account.lock_reason:
            account.clear_lock()
            return self.store.save_account(account)
        return account

    async def lock_account(
        self,
        account_id: str,
        reason: Optional[str],
        actor_id: str,
        *,
        duration_minutes: Optional[int] = None,
    ) -> Dict[str, Any]:
        account = self._require_account(account_id)
        minutes = duration_minutes or self.get_policy().lockout_duration_minutes
        account.locked_at = self._now()
        account.locked_until = account.locked_at + timedelta(minutes=minutes)
        account.lock_reason = reason or "locked_by_admin"
        self.store.save_account(account)
        await self._invalidate_sessions(account_id)
        self.logger.info(
            "account_locked", account_id=account_id, actor_id=actor_id, reason=reason
        )
        return self.lock_summary(account)

    def unlock_account(
        self, account_id: str, reason: Optional[str], actor_id: str
    ) -> Dict[str, Any]:
        account = self._require_account(account_id)
        account.clear_lock()
        self.store.save_account(account)
        self.logger.info(
            "account_unlocked", account_id=account_id, actor_id=actor_id, reason=reason
        )
        return self.lock_summary(account)

    def lock_summary(self, account: Account) -> Dict[str, Any]:
        return {
            "account_id": account.id,
            "email": account.email,
            "locked": account.is_locked(self._now()),
            "locked_at": _isoformat(account.locked_at),
            "locked_until": _isoformat(account.locked_until),
            "lock_reason": account.lock_reason,
            "failed_login_attempts": account.failed_login_attempts,
        }

    def list_locked_accounts(
        self,
        *,
        reason: Optional[str] = None,
        locked_from: Optional[datetime] = None,
        locked_to: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        """Currently locked accounts, newest lock first, one page at a time.

        ``reason`` matches ``lock_reason`` exactly. The date bounds apply to
        ``locked_at`` and are inclusive; naive datetimes are read as UTC.
        """
        now = self._now()
        locked_from = _as_utc(locked_from)
        locked_to = _as_utc(locked_to)
        matches = []
        for account in self.store.list_accounts(limit=ACCOUNT_SCAN_LIMIT):
            if not account.is_locked(now):
                continue
            if reason is not None and account.lock_reason != reason:
                continue
            locked_at = account.locked_at
            if locked_from is not None and (locked_at is None or locked_at < locked_from):
                continue
            if locked_to is not None and (locked_at is None or locked_at > locked_to):
                continue
            matches.append(account)
        matches.sort(key=lambda a: a.locked_at or a.created_at, reverse=True)

        page = max(1, page)
        limit = max(1, limit)
        start = (page - 1) * limit
        total = len(matches)
        return {
            "accounts": [self.lock_summary(a) for a in matches[start : start + limit]],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }

    def password_history(self, account_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        self._require_account(account_id)
        return [
            {
                "changed_at": entry.changed_at.isoformat(),
                "changed_by": entry.changed_by,
                "reason": entry.reason,
            }
            for entry in self.store.get_password_history(account_id, limit=limit)
        ]

    # reporting
    def password_security_stats(self, timeframe: str = "30d") -> Dict[str, Any]:
        """Aggregate password health across accounts.

        ``timeframe`` uses the token duration syntax and bounds the window
        for password change counts; it is capped at five years.
        """
        window = min(parse_expiry(timeframe), MAX_STATS_WINDOW_SECONDS)
        now = self._now()
        since = now - timedelta(seconds=window)
        accounts = self.store.list_accounts(limit=ACCOUNT_SCAN_LIMIT)

        changes: Dict[str, int] = {}
        for account in accounts:
            for entry in self.store.get_password_history(
                account.id, limit=HISTORY_SCAN_LIMIT
            ):
                if entry.changed_at >= since:
                    changes[entry.reason] = changes.get(entry.reason, 0) + 1

        strength = {label: 0 for label in STRENGTH_LABELS}
        strength["unknown"] = 0
        for account in accounts:
            if account.password_strength is None:
                strength["unknown"] += 1
            else:
                strength[STRENGTH_LABELS[account.password_strength]] += 1

        return {
            "timeframe": timeframe,
            "since": since.isoformat(),
            "total_accounts": len(accounts),
            "password_changes": changes,
            "password_changes_total": sum(changes.values()),
            "locked_accounts": sum(1 for a in accounts if a.is_locked(now)),
            "accounts_with_failed_logins": sum(
                1 for a in accounts if a.failed_login_attempts > 0
            ),
            "must_change_password": sum(1 for a in accounts if a.must_change_password),
            "expired_passwords": sum(1 for a in accounts if self.is_password_expired(a)),
            "strength_distribution": strength,
        }

    def _weak_password_reason(self, account: Account) -> Optional[str]:
        score = account.password_strength
        if score is not None and score < WEAK_PASSWORD_SCORE:
            return "weak"
        if self.is_password_expired(account):
            return "expired"
        return None

    async def send_weak_password_alerts(self, actor_id: str) -> Dict[str, Any]:
        """Notify active accounts whose password is weak or past its maximum age."""
        alerts_sent = 0
        notified: List[str] = []
        for account in self.store.list_accounts(limit=ACCOUNT_SCAN_LIMIT):
            if not account.is_active:
                continue
            reason = self._weak_password_reason(account)
            if reason is None:
                continue
            notified.append(account.id)
            if await self.notifier.send_weak_password_alert(account.email, reason):
                alerts_sent += 1
        self.logger.info(
            "weak_password_alerts_sent",
            actor_id=actor_id,
            alerts_sent=alerts_sent,
            accounts=len(notified),
        )
        return {"alerts_sent": alerts_sent, "users_notified": len(notified)}


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
