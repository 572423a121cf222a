from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request

from eventauth.api.schemas import (
    AccountView,
    AdminLockRequest,
    AdminReasonRequest,
    ChangePasswordRequest,
    DeviceInfoModel,
    ForgotPasswordRequest,
    LoginRequest,
    PasswordCheckRequest,
    PasswordPolicyUpdate,
    PasswordValidateRequest,
    RefreshRequest,
    ResetPasswordRequest,
    TemporaryPasswordRequest,
    TemporaryTokenRequest,
    TemporaryTokenVerifyRequest,
    TokenResponse,
    VerifyEmailRequest,
    ok,
)
from eventauth.logging import get_logger
from eventauth.service.errors import AuthenticationError, ForbiddenError, NotFoundError
from eventauth.service.runtime import get_runtime
from eventauth.service.sessions import AuthContext, SessionOutcome
from eventauth.storage.models import Account, DeviceInfo

logger = get_logger(__name__)

router = APIRouter(prefix="/auth")

FORGOT_PASSWORD_MESSAGE = (
    "If the email exists in our system, password reset instructions have been sent"
)


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    token = _extract_bearer(authorization)
    if not token:
        raise AuthenticationError("Authentication required")
    return await get_runtime().sessions.authenticate(token)


async def get_admin_principal(
    principal: AuthContext = Depends(get_principal),
) -> AuthContext:
    if not principal.is_admin:
        raise ForbiddenError("Admin access required")
    return principal


def _device_info(request: Request, body: Optional[DeviceInfoModel]) -> DeviceInfo:
    supplied = body or DeviceInfoModel()
    return DeviceInfo(
        user_agent=supplied.user_agent or request.headers.get("user-agent"),
        ip=supplied.ip or (request.client.host if request.client else None),
        platform=supplied.platform,
    )


def _account_view(account: Account) -> AccountView:
    return AccountView(
        id=account.id,
        email=account.email,
        full_name=account.full_name,
        role=account.role,
        email_verified=account.email_verified,
        must_change_password=account.must_change_password,
    )


def _token_response(outcome: SessionOutcome) -> dict:
    return TokenResponse(
        access_token=outcome.access_token,
        refresh_token=outcome.refresh_token,
        token_type=outcome.token_type,
        expires_in=outcome.expires_in,
        account=_account_view(outcome.account) if outcome.account else None,
        must_change_password=outcome.must_change_password,
        password_expired=outcome.password_expired,
    ).model_dump()


# sessions
@router.post("/login", tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Exchange credentials for an access and refresh token pair.

    Raises:
        401: invalid credentials
        423: account locked
        503: revocation store unavailable
    """
    runtime = get_runtime()
    outcome = await runtime.sessions.login(
        body.email, body.password, _device_info(request, body.device_info)
    )
    return ok(_token_response(outcome), "Login successful")


@router.post("/refresh", tags=["auth"])
async def refresh(body: RefreshRequest, request: Request):
    runtime = get_runtime()
    device = _device_info(request, body.device_info) if body.device_info else None
    outcome = await runtime.sessions.refresh(body.refresh_token, device)
    return ok(_token_response(outcome), "Token refreshed")


@router.post("/logout", tags=["auth"])
async def logout(authorization: Optional[str] = Header(None)):
    """Revoke the presented access token and the account's refresh record.

    Repeating the call with the same token succeeds.
    """
    token = _extract_bearer(authorization)
    if not token:
        raise AuthenticationError("Authentication required")
    await get_runtime().sessions.logout(token)
    return ok(message="Logged out")


@router.get("/me", tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    account = runtime.store.get_account(principal.account_id)
    if not account:
        raise AuthenticationError("Invalid token")
    return ok(_account_view(account).model_dump())


# password reset and verification
@router.post("/forgot-password", tags=["password"])
async def forgot_password(body: ForgotPasswordRequest):
    """Start a password reset. The response never reveals whether the email exists."""
    runtime = get_runtime()
    try:
        await runtime.passwords.request_password_reset(body.email)
    except Exception as exc:
        # The response must not differ for known and unknown addresses
        logger.error(
            "password_reset_request_failed",
            error_type=type(exc).__name__,
            error=str(exc),
        )
    return ok(message=FORGOT_PASSWORD_MESSAGE)


@router.post("/reset-password", tags=["password"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    result = await runtime.passwords.reset_password(body.token, body.new_password)
    return ok(result, "Password has been reset")


@router.get("/verify-reset-token/{token}", tags=["password"])
async def verify_reset_token(token: str = Path(..., min_length=1, max_length=256)):
    runtime = get_runtime()
    return ok(runtime.passwords.verify_reset_token(token), "Token is valid")


@router.post("/change-password", tags=["password"])
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    result = await runtime.passwords.change_password(
        principal.account_id, body.current_password, body.new_password
    )
    return ok(result, "Password changed")


@router.post("/verify-email/request", tags=["password"])
async def request_email_verification(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    token = await runtime.passwords.request_email_verification(principal.account_id)
    return ok(
        {"expires_at": token.expires_at.isoformat()},
        "Verification email sent",
    )


@router.post("/verify-email", tags=["password"])
async def verify_email(body: VerifyEmailRequest):
    runtime = get_runtime()
    account = runtime.passwords.verify_email(body.token)
    return ok(_account_view(account).model_dump(), "Email verified")


# password tooling
@router.post("/password/strength", tags=["password"])
async def password_strength(body: PasswordCheckRequest):
    runtime = get_runtime()
    return ok(runtime.passwords.check_strength(body.password).to_dict())


@router.post("/password/validate", tags=["password"])
async def password_validate(body: PasswordValidateRequest):
    runtime = get_runtime()
    return ok(runtime.passwords.validate_policy(body.password, body.user_info).to_dict())


@router.post("/password/breach", tags=["password"])
async def password_breach(body: PasswordCheckRequest):
    runtime = get_runtime()
    result = await runtime.passwords.check_breach(body.password)
    data = result.to_dict()
    if not result.checked:
        data["message"] = "Breach check unavailable"
    elif result.is_breached:
        data["message"] = "This password has appeared in a known data breach"
    else:
        data["message"] = "Password not found in known breaches"
    return ok(data)


@router.get("/password/policy", tags=["password"])
async def get_password_policy():
    runtime = get_runtime()
    return ok(runtime.passwords.get_policy().model_dump())


@router.put("/password/policy", tags=["password"])
async def update_password_policy(
    body: PasswordPolicyUpdate, principal: AuthContext = Depends(get_admin_principal)
):
    runtime = get_runtime()
    policy = runtime.passwords.update_policy(
        body.model_dump(exclude_none=True), actor_id=principal.account_id
    )
    return ok(policy.model_dump(), "Password policy updated")


@router.get("/password/history", tags=["password"])
async def password_history(
    limit: int = Query(10, ge=1, le=100),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    return ok(runtime.passwords.password_history(principal.account_id, limit=limit))


@router.get("/password/generate", tags=["password"])
async def generate_password(
    length: int = Query(12, ge=8, le=128),
    include_symbols: bool = Query(True),
):
    runtime = get_runtime()
    password = runtime.passwords.generate_random_password(length, include_symbols)
    return ok(
        {
            "password": password,
            "strength": runtime.passwords.check_strength(password).to_dict(),
        }
    )


# action tokens
@router.post("/temporary-token", tags=["tokens"])
async def issue_temporary_token(
    body: TemporaryTokenRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    token = runtime.issuer.issue_temporary(
        principal.account_id, body.action, body.data, body.expiry
    )
    expires_at = runtime.verifier.get_token_expiration(token)
    return ok(
        {
            "token": token,
            "action": body.action,
            "expires_at": expires_at.isoformat() if expires_at else None,
        }
    )


@router.post("/temporary-token/verify", tags=["tokens"])
async def verify_temporary_token(body: TemporaryTokenVerifyRequest):
    runtime = get_runtime()
    claims = runtime.verifier.verify_temporary(body.token, body.action).raise_for_failure()
    return ok(
        {
            "valid": True,
            "subject": claims.get("sub"),
            "action": claims.get("action"),
            "data": claims.get("data") or {},
        }
    )


# admin
@router.post("/admin/accounts/{account_id}/invalidate", tags=["admin"])
async def admin_invalidate_sessions(
    account_id: str, principal: AuthContext = Depends(get_admin_principal)
):
    runtime = get_runtime()
    if not runtime.store.get_account(account_id):
        raise NotFoundError("Account not found")
    await runtime.sessions.force_invalidate(account_id)
    logger.info(
        "admin_sessions_invalidated", account_id=account_id, actor_id=principal.account_id
    )
    return ok({"account_id": account_id}, "Sessions invalidated")


@router.post("/admin/accounts/{account_id}/lock", tags=["admin"])
async def admin_lock_account(
    account_id: str,
    body: AdminLockRequest,
    principal: AuthContext = Depends(get_admin_principal),
):
    runtime = get_runtime()
    result = await runtime.passwords.lock_account(
        account_id,
        body.reason,
        principal.account_id,
        duration_minutes=body.duration_minutes,
    )
    return ok(result, "Account locked")


@router.post("/admin/accounts/{account_id}/unlock", tags=["admin"])
async def admin_unlock_account(
    account_id: str,
    body: AdminReasonRequest,
    principal: AuthContext = Depends(get_admin_principal),
):
    runtime = get_runtime()
    result = runtime.passwords.unlock_account(account_id, body.reason, principal.account_id)
    return ok(result, "Account unlocked")


@router.get("/admin/accounts/locked", tags=["admin"])
async def admin_locked_accounts(
    reason: Optional[str] = Query(None, max_length=256),
    locked_date_start: Optional[datetime] = Query(None),
    locked_date_end: Optional[datetime] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: AuthContext = Depends(get_admin_principal),
):
    runtime = get_runtime()
    result = runtime.passwords.list_locked_accounts(
        reason=reason,
        locked_from=locked_date_start,
        locked_to=locked_date_end,
        page=page,
        limit=limit,
    )
    return ok(result)


@router.post("/admin/accounts/{account_id}/force-password-change", tags=["admin"])
async def admin_force_password_change(
    account_id: str,
    body: AdminReasonRequest,
    principal: AuthContext = Depends(get_admin_principal),
):
    runtime = get_runtime()
    result = await runtime.passwords.force_password_change(
        account_id, body.reason, principal.account_id
    )
    return ok(result, "Password change required")


@router.post("/admin/temporary-password", tags=["admin"])
async def admin_temporary_password(
    body: TemporaryPasswordRequest,
    principal: AuthContext = Depends(get_admin_principal),
):
    runtime = get_runtime()
    result = await runtime.passwords.generate_temporary_password(
        body.email, principal.account_id, body.expires_in
    )
    return ok(result, "Temporary password generated")


@router.get("/admin/passwords/stats", tags=["admin"])
async def admin_password_stats(
    timeframe: str = Query("30d", pattern=r"^\d{1,6}[smhdwy]$"),
    principal: AuthContext = Depends(get_admin_principal),
):
    runtime = get_runtime()
    return ok(runtime.passwords.password_security_stats(timeframe))


@router.post("/admin/passwords/weak-alerts", tags=["admin"])
async def admin_weak_password_alerts(
    principal: AuthContext = Depends(get_admin_principal),
):
    runtime = get_runtime()
    result = await runtime.passwords.send_weak_password_alerts(principal.account_id)
    return ok(result, "Weak password alerts sent")


@router.get("/admin/tokens/stats", tags=["admin"])
async def admin_token_stats(principal: AuthContext = Depends(get_admin_principal)):
    runtime = get_runtime()
    return ok(await runtime.sessions.token_statistics())
