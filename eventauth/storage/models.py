from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        value = raw
    elif isinstance(raw, str):
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(raw)
        except ValueError:
            return utcnow()
    else:
        return utcnow()
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


ROLES = ("student", "organizer", "admin")


@dataclass
class Account:
    id: str
    email: str
    full_name: Optional[str] = None
    role: str = "student"
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    password_changed_at: Optional[datetime] = None
    password_strength: Optional[int] = None
    failed_login_attempts: int = 0
    locked_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    lock_reason: Optional[str] = None
    must_change_password: bool = False
    temporary_password_expires_at: Optional[datetime] = None
    email_verified: bool = False
    reset_token_hash: Optional[str] = None
    reset_token_expires_at: Optional[datetime] = None
    verification_token_hash: Optional[str] = None
    verification_token_expires_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        email: str,
        *,
        full_name: Optional[str] = None,
        role: str = "student",
    ) -> "Account":
        return cls(id=str(uuid.uuid4()), email=email, full_name=full_name, role=role)

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if self.locked_until is None:
            return False
        return self.locked_until > (now or utcnow())

    def clear_lock(self) -> None:
        self.failed_login_attempts = 0
        self.locked_at = None
        self.locked_until = None
        self.lock_reason = None


@dataclass
class PasswordHistoryEntry:
    password_hash: str
    changed_at: datetime = field(default_factory=utcnow)
    changed_by: Optional[str] = None
    reason: str = "change"


@dataclass
class DeviceInfo:
    user_agent: Optional[str] = None
    ip: Optional[str] = None
    platform: Optional[str] = None


@dataclass
class RefreshTokenRecord:
    """Value stored under ``refresh_token:<subject>``.

    Persisted as ``{"token", "createdAt", "deviceInfo": {"userAgent", "ip",
    "platform"}}`` with ``createdAt`` in millisecond ISO-8601 UTC, the layout
    other services reading the store expect.
    """

    token: str
    created_at: datetime = field(default_factory=utcnow)
    device_info: DeviceInfo = field(default_factory=DeviceInfo)

    def to_json(self) -> str:
        created = self.created_at.astimezone(timezone.utc)
        payload = {
            "token": self.token,
            "createdAt": created.isoformat(timespec="milliseconds").replace(
                "+00:00", "Z"
            ),
            "deviceInfo": {
                "userAgent": self.device_info.user_agent,
                "ip": self.device_info.ip,
                "platform": self.device_info.platform,
            },
        }
        return json.dumps(payload, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str | bytes) -> "RefreshTokenRecord":
        if isinstance(raw, bytes):
            raw = raw.decode()
        data: Dict[str, Any] = json.loads(raw)
        device = data.get("deviceInfo") or {}
        if not isinstance(device, dict):
            device = {}
        return cls(
            token=data["token"],
            created_at=_parse_datetime(data.get("createdAt")),
            device_info=DeviceInfo(
                user_agent=device.get("userAgent"),
                ip=device.get("ip"),
                platform=device.get("platform"),
            ),
        )


@dataclass(frozen=True)
class OpaqueToken:
    """Single-use random token; only ``hashed_token`` is ever persisted."""

    token: str
    hashed_token: str
    expires_at: datetime
