from __future__ import annotations

from datetime import datetime
from typing import Optional
from urllib.parse import quote

from eventauth.logging import get_logger

logger = get_logger(__name__)

WEAK_PASSWORD_REASONS = {
    "weak": "Your password is weaker than our current guidance recommends.",
    "expired": "Your password has passed its maximum age.",
}


class AccountNotifier:
    """Builds account messages and hands them to a delivery transport.

    Mail transport lives outside this service: deployments subclass and
    override ``_deliver``. In dev mode the default transport logs a preview
    of the body, links included, so reset and verification flows can be
    completed locally. Otherwise nothing is sent and ``False`` is returned.
    """

    def __init__(self, *, base_url: Optional[str] = None, dev_mode: bool = False) -> None:
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")
        self.dev_mode = dev_mode

    @staticmethod
    def _redact_address(address: str) -> str:
        if "@" not in address:
            return "redacted"
        local, domain = address.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def reset_link(self, raw_token: str) -> str:
        return f"{self.base_url}/reset-password?token={quote(raw_token)}"

    def verification_link(self, raw_token: str) -> str:
        return f"{self.base_url}/verify-email?token={quote(raw_token)}"

    async def _deliver(self, to_address: str, subject: str, body: str) -> bool:
        """Send one message. Returns True when the message left the process."""
        if not self.dev_mode:
            logger.warning(
                "notification_transport_missing",
                to=self._redact_address(to_address),
                subject=subject,
            )
            return False
        logger.info(
            "notification_dev_mode",
            to=self._redact_address(to_address),
            subject=subject,
            body_preview=body[:300],
        )
        return True

    async def send_password_reset(
        self, to_address: str, raw_token: str, expires_at: datetime
    ) -> bool:
        body = (
            "We received a request to reset your password.\n\n"
            f"Choose a new password here: {self.reset_link(raw_token)}\n\n"
            f"The link expires at {expires_at.isoformat()}. "
            "If you did not ask for this, you can ignore this message."
        )
        return await self._deliver(to_address, "Reset your password", body)

    async def send_email_verification(
        self, to_address: str, raw_token: str, expires_at: datetime
    ) -> bool:
        body = (
            "Confirm your email address to finish setting up your account.\n\n"
            f"Verify here: {self.verification_link(raw_token)}\n\n"
            f"The link expires at {expires_at.isoformat()}."
        )
        return await self._deliver(to_address, "Verify your email address", body)

    async def send_temporary_password(
        self, to_address: str, expires_at: datetime
    ) -> bool:
        # The password itself goes back to the administrator, never by mail
        body = (
            "An administrator issued a temporary password for your account.\n\n"
            f"It expires at {expires_at.isoformat()} and must be changed at "
            "your next sign-in."
        )
        return await self._deliver(to_address, "Your temporary password", body)

    async def send_weak_password_alert(self, to_address: str, reason: str) -> bool:
        body = (
            f"{WEAK_PASSWORD_REASONS.get(reason, WEAK_PASSWORD_REASONS['weak'])}\n\n"
            f"Please change it soon: {self.base_url}/account/security"
        )
        return await self._deliver(to_address, "Please update your password", body)
