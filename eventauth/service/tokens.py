from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import secrets
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from eventauth.config import Settings
from eventauth.logging import get_logger
from eventauth.service.errors import (
    ExpiredTokenError,
    InvalidTokenError,
    SigningError,
    TokenIssuanceError,
    ValidationError,
)
from eventauth.storage.models import OpaqueToken

logger = get_logger(__name__)

ALGORITHM = "HS256"
RESET_TOKEN_TTL = timedelta(minutes=30)
VERIFICATION_TOKEN_TTL = timedelta(hours=24)
DEVICE_TOKEN_EXPIRY = "30d"
API_KEY_EXPIRY = "1y"
TEMPORARY_TOKEN_EXPIRY = "10m"
MAX_TEMPORARY_TOKEN_SECONDS = 3600
DEFAULT_EXPIRY_SECONDS = 900

_EXPIRY_UNITS = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 604800,
    "y": 31536000,
}
_EXPIRY_PATTERN = re.compile(r"^(\d+)([smhdwy])$")

# Claims owned by the issuer; caller-supplied values are overwritten
_RESERVED_CLAIMS = ("type", "iat", "exp", "iss", "aud", "jti")


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    RESET = "reset"
    VERIFICATION = "verification"
    DEVICE = "device"
    API_KEY = "api_key"
    TEMPORARY = "temporary"


class TokenFailure(str, Enum):
    EXPIRED = "expired"
    MALFORMED = "malformed"
    BAD_SIGNATURE = "bad_signature"
    BAD_ALGORITHM = "bad_algorithm"
    WRONG_ISSUER = "wrong_issuer"
    WRONG_AUDIENCE = "wrong_audience"
    WRONG_TYPE = "wrong_type"
    ACTION_MISMATCH = "action_mismatch"


_FAILURE_MESSAGES = {
    TokenFailure.EXPIRED: "Token has expired",
    TokenFailure.WRONG_TYPE: "Token is not valid for this operation",
    TokenFailure.ACTION_MISMATCH: "Token is not valid for this action",
}


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of a token check.

    ``claims`` is populated for valid tokens and for expired tokens whose
    signature checked out; it is ``None`` for every other failure.
    """

    valid: bool
    reason: Optional[TokenFailure] = None
    claims: Optional[Dict[str, Any]] = field(default=None)

    @property
    def expired(self) -> bool:
        return self.reason is TokenFailure.EXPIRED

    @property
    def subject(self) -> Optional[str]:
        if not self.claims:
            return None
        sub = self.claims.get("sub")
        return str(sub) if sub is not None else None

    @classmethod
    def ok(cls, claims: Dict[str, Any]) -> "VerificationResult":
        return cls(valid=True, claims=claims)

    @classmethod
    def fail(
        cls, reason: TokenFailure, claims: Optional[Dict[str, Any]] = None
    ) -> "VerificationResult":
        return cls(valid=False, reason=reason, claims=claims)

    def raise_for_failure(self) -> Dict[str, Any]:
        """Return the claims or raise the matching ``AuthenticationError``."""
        if self.valid and self.claims is not None:
            return self.claims
        if self.expired:
            raise ExpiredTokenError(_FAILURE_MESSAGES[TokenFailure.EXPIRED])
        message = _FAILURE_MESSAGES.get(self.reason, "Invalid token")
        raise InvalidTokenError(
            message, detail={"reason": self.reason.value if self.reason else None}
        )


def parse_expiry(value: Any) -> int:
    """Convert a duration such as ``"15m"`` or ``"7d"`` to seconds.

    Unrecognised or non-positive values fall back to 15 minutes.
    """
    if isinstance(value, bool):
        return DEFAULT_EXPIRY_SECONDS
    if isinstance(value, int):
        return value if value > 0 else DEFAULT_EXPIRY_SECONDS
    if not isinstance(value, str):
        return DEFAULT_EXPIRY_SECONDS
    match = _EXPIRY_PATTERN.match(value.strip())
    if not match:
        return DEFAULT_EXPIRY_SECONDS
    amount, unit = match.groups()
    seconds = int(amount) * _EXPIRY_UNITS[unit]
    return seconds if seconds > 0 else DEFAULT_EXPIRY_SECONDS


def hash_opaque_token(raw: str) -> str:
    return hashlib.sha256(raw.encode()).hexdigest()


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(signing_input: str, secret: str) -> str:
    return _encode_segment(
        hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    )


def encode_jwt(payload: Mapping[str, Any], secret: str) -> str:
    header = {"alg": ALGORITHM, "typ": "JWT"}
    header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
    payload_enc = _encode_segment(
        json.dumps(dict(payload), separators=(",", ":")).encode()
    )
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{_sign(signing_input, secret)}"


def decode_unverified(token: str) -> Optional[Dict[str, Any]]:
    """Return the payload without checking the signature, or ``None``."""
    if not isinstance(token, str):
        return None
    parts = token.split(".")
    if len(parts) != 3:
        return None
    try:
        payload = json.loads(_decode_segment(parts[1]))
    except (ValueError, UnicodeDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


def decode_jwt(
    token: str,
    secret: Optional[str],
    *,
    issuer: str,
    audience: str,
    now: float,
    verify_exp: bool = True,
) -> VerificationResult:
    """Check signature, algorithm, issuer, audience and expiry, in that order."""
    if not isinstance(token, str) or not token:
        return VerificationResult.fail(TokenFailure.MALFORMED)
    try:
        header_b64, payload_b64, sig_b64 = token.split(".")
    except ValueError:
        return VerificationResult.fail(TokenFailure.MALFORMED)

    try:
        header = json.loads(_decode_segment(header_b64))
    except (ValueError, UnicodeDecodeError):
        logger.warning("jwt_header_decode_failed")
        return VerificationResult.fail(TokenFailure.MALFORMED)
    if not isinstance(header, dict):
        return VerificationResult.fail(TokenFailure.MALFORMED)
    # Only HS256 is accepted; "none" and asymmetric algs are rejected outright
    if header.get("alg") != ALGORITHM:
        logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
        return VerificationResult.fail(TokenFailure.BAD_ALGORITHM)

    if not secret:
        logger.warning("jwt_verification_secret_missing")
        return VerificationResult.fail(TokenFailure.BAD_SIGNATURE)
    expected_sig = _sign(f"{header_b64}.{payload_b64}", secret)
    # compare_digest refuses non-ASCII str, so compare the raw bytes
    if not hmac.compare_digest(
        expected_sig.encode("ascii"), sig_b64.encode("utf-8", "surrogatepass")
    ):
        return VerificationResult.fail(TokenFailure.BAD_SIGNATURE)

    try:
        payload = json.loads(_decode_segment(payload_b64))
    except (ValueError, UnicodeDecodeError) as exc:
        logger.warning("jwt_payload_decode_failed", error=str(exc))
        return VerificationResult.fail(TokenFailure.MALFORMED)
    if not isinstance(payload, dict):
        return VerificationResult.fail(TokenFailure.MALFORMED)

    if payload.get("iss") != issuer:
        return VerificationResult.fail(TokenFailure.WRONG_ISSUER)
    aud = payload.get("aud")
    if isinstance(aud, str):
        valid_aud = aud == audience
    elif isinstance(aud, list):
        valid_aud = audience in aud
    else:
        valid_aud = False
    if not valid_aud:
        return VerificationResult.fail(TokenFailure.WRONG_AUDIENCE)

    exp = payload.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return VerificationResult.fail(TokenFailure.MALFORMED)
    if verify_exp and exp <= now:
        return VerificationResult.fail(TokenFailure.EXPIRED, claims=payload)
    return VerificationResult.ok(payload)


class TokenIssuer:
    """Creates signed and opaque tokens with explicit keys and lifetimes."""

    def __init__(
        self,
        access_secret: Optional[str],
        refresh_secret: Optional[str],
        *,
        issuer: str,
        audience: str,
        access_expiry: str = "15m",
        refresh_expiry: str = "7d",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.access_secret = access_secret
        self.refresh_secret = refresh_secret
        self.issuer = issuer
        self.audience = audience
        self.access_expiry = access_expiry
        self.refresh_expiry = refresh_expiry
        self.clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], float] = time.time
    ) -> "TokenIssuer":
        return cls(
            settings.jwt_secret,
            settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_expiry=settings.jwt_expire,
            refresh_expiry=settings.jwt_refresh_expire,
            clock=clock,
        )

    @property
    def access_lifetime(self) -> int:
        return parse_expiry(self.access_expiry)

    @property
    def refresh_lifetime(self) -> int:
        return parse_expiry(self.refresh_expiry)

    def _sign(
        self,
        token_type: TokenType,
        claims: Mapping[str, Any],
        *,
        secret: Optional[str],
        lifetime: int,
    ) -> str:
        if not secret:
            logger.error("token_signing_secret_missing", token_type=token_type.value)
            raise SigningError(f"Unable to issue {token_type.value} token")
        iat = int(self.clock())
        payload = {k: v for k, v in claims.items() if k not in _RESERVED_CLAIMS}
        payload.update(
            {
                "type": token_type.value,
                "iat": iat,
                "exp": iat + lifetime,
                "iss": self.issuer,
                "aud": self.audience,
                "jti": str(uuid.uuid4()),
            }
        )
        try:
            return encode_jwt(payload, secret)
        except (TypeError, ValueError) as exc:
            logger.error(
                "token_signing_failed", token_type=token_type.value, error=str(exc)
            )
            raise TokenIssuanceError(f"Unable to issue {token_type.value} token") from exc

    def issue_access(self, claims: Mapping[str, Any]) -> str:
        return self._sign(
            TokenType.ACCESS,
            claims,
            secret=self.access_secret,
            lifetime=self.access_lifetime,
        )

    def issue_refresh(self, subject: str) -> str:
        return self._sign(
            TokenType.REFRESH,
            {"sub": subject},
            secret=self.refresh_secret,
            lifetime=self.refresh_lifetime,
        )

    def _opaque(self, ttl: timedelta) -> OpaqueToken:
        raw = secrets.token_hex(32)
        expires_at = datetime.fromtimestamp(self.clock(), tz=timezone.utc) + ttl
        return OpaqueToken(
            token=raw, hashed_token=hash_opaque_token(raw), expires_at=expires_at
        )

    def issue_reset(self) -> OpaqueToken:
        return self._opaque(RESET_TOKEN_TTL)

    def issue_verification(self) -> OpaqueToken:
        return self._opaque(VERIFICATION_TOKEN_TTL)

    def issue_device(
        self, subject: str, device_id: str, device_info: Mapping[str, Any]
    ) -> str:
        claims = {
            "sub": subject,
            "device_id": device_id,
            "device_info": {
                "platform": device_info.get("platform"),
                "version": device_info.get("version"),
                "model": device_info.get("model"),
            },
        }
        return self._sign(
            TokenType.DEVICE,
            claims,
            secret=self.access_secret,
            lifetime=parse_expiry(DEVICE_TOKEN_EXPIRY),
        )

    def issue_api_key(
        self,
        subject: str,
        permissions: Iterable[str] = (),
        expiry: str = API_KEY_EXPIRY,
    ) -> str:
        claims = {
            "sub": subject,
            "permissions": list(permissions),
            "key_id": secrets.token_hex(16),
        }
        return self._sign(
            TokenType.API_KEY,
            claims,
            secret=self.access_secret,
            lifetime=parse_expiry(expiry),
        )

    def issue_temporary(
        self,
        subject: str,
        action: str,
        data: Optional[Mapping[str, Any]] = None,
        expiry: str = TEMPORARY_TOKEN_EXPIRY,
    ) -> str:
        lifetime = parse_expiry(expiry)
        if lifetime > MAX_TEMPORARY_TOKEN_SECONDS:
            raise ValidationError(
                "Temporary token lifetime is too long",
                errors=[
                    {
                        "field": "expiry",
                        "message": f"must not exceed {MAX_TEMPORARY_TOKEN_SECONDS} seconds",
                    }
                ],
            )
        claims = {"sub": subject, "action": action, "data": dict(data or {})}
        return self._sign(
            TokenType.TEMPORARY,
            claims,
            secret=self.access_secret,
            lifetime=lifetime,
        )


class TokenVerifier:
    """Validates signed tokens and reports a tagged ``VerificationResult``."""

    def __init__(
        self,
        access_secret: Optional[str],
        refresh_secret: Optional[str],
        *,
        issuer: str,
        audience: str,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.access_secret = access_secret
        self.refresh_secret = refresh_secret
        self.issuer = issuer
        self.audience = audience
        self.clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], float] = time.time
    ) -> "TokenVerifier":
        return cls(
            settings.jwt_secret,
            settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            clock=clock,
        )

    def verify(
        self, token: str, secret: Optional[str] = None, *, verify_exp: bool = True
    ) -> VerificationResult:
        return decode_jwt(
            token,
            secret if secret is not None else self.access_secret,
            issuer=self.issuer,
            audience=self.audience,
            now=self.clock(),
            verify_exp=verify_exp,
        )

    def _verify_typed(
        self,
        token: str,
        token_type: TokenType,
        secret: Optional[str],
        *,
        verify_exp: bool = True,
    ) -> VerificationResult:
        result = self.verify(token, secret, verify_exp=verify_exp)
        if result.claims is None:
            return result
        if result.claims.get("type") != token_type.value:
            return VerificationResult.fail(TokenFailure.WRONG_TYPE)
        return result

    def verify_access(self, token: str, *, verify_exp: bool = True) -> VerificationResult:
        return self._verify_typed(
            token, TokenType.ACCESS, self.access_secret, verify_exp=verify_exp
        )

    def verify_refresh(self, token: str) -> VerificationResult:
        return self._verify_typed(token, TokenType.REFRESH, self.refresh_secret)

    def verify_temporary(
        self, token: str, expected_action: Optional[str] = None
    ) -> VerificationResult:
        result = self._verify_typed(token, TokenType.TEMPORARY, self.access_secret)
        if not result.valid:
            return result
        if expected_action and result.claims.get("action") != expected_action:
            return VerificationResult.fail(TokenFailure.ACTION_MISMATCH)
        return result

    def decode_unverified(self, token: str) -> Optional[Dict[str, Any]]:
        return decode_unverified(token)

    def get_token_expiration(self, token: str) -> Optional[datetime]:
        payload = decode_unverified(token)
        if not payload:
            return None
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return None
        try:
            return datetime.fromtimestamp(exp, tz=timezone.utc)
        except (OverflowError, ValueError, OSError):
            return None

    def is_token_expiring(self, token: str, threshold_minutes: int = 5) -> bool:
        expiration = self.get_token_expiration(token)
        if expiration is None:
            return True
        threshold = datetime.fromtimestamp(self.clock(), tz=timezone.utc) + timedelta(
            minutes=threshold_minutes
        )
        return expiration <= threshold
