from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
from typing import List, Optional
from urllib.parse import quote

from authguard.config import Settings
from authguard.logging import get_logger
from authguard.service.clock import Clock, SystemClock
from authguard.service.errors import Invalid2FACodeError, InvalidTokenError
from authguard.service.events import SecurityEventLog
from authguard.service.outcomes import TwoFactorSetup
from authguard.storage.models import (
    PendingTwoFactorSetup,
    RiskLevel,
    SecurityEventType,
)

logger = get_logger(__name__)


def generate_totp(
    secret: str, timestamp: float, *, interval: int = 30, digits: int = 6
) -> str:
    """RFC 6238 code for ``timestamp``; empty string when the secret is not base32."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str, code: str, timestamp: float, *, window: int = 2, interval: int = 30
) -> bool:
    code = (code or "").strip()
    if not (code.isascii() and code.isdigit()):
        return False
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, timestamp + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(code.strip().upper().encode()).hexdigest()


class OneTimeCodeVerifier:
    """TOTP enrolment and verification with single-use backup codes."""

    def __init__(
        self,
        store,
        events: SecurityEventLog,
        settings: Settings,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.events = events
        self.settings = settings
        self.clock = clock or SystemClock()

    def _new_secret(self) -> str:
        # 160-bit key, base32 without padding
        return base64.b32encode(secrets.token_bytes(20)).decode("utf-8").rstrip("=")

    def _new_backup_codes(self) -> List[str]:
        return [
            secrets.token_hex(4).upper() for _ in range(self.settings.backup_code_count)
        ]

    def provisioning_uri(self, secret: str, account: str) -> str:
        issuer = self.settings.totp_issuer
        label = quote(f"{issuer}:{account}")
        return (
            f"otpauth://totp/{label}?secret={secret}&issuer={quote(issuer)}"
            f"&period={self.settings.totp_interval_seconds}"
        )

    def setup(self, principal_id: str) -> TwoFactorSetup:
        principal = self.store.get_principal(principal_id)
        if principal is None:
            raise InvalidTokenError("unknown principal")
        secret = self._new_secret()
        backup_codes = self._new_backup_codes()
        self.store.save_pending_two_factor(
            PendingTwoFactorSetup(
                principal_id=principal_id,
                secret=secret,
                backup_codes=[hash_backup_code(c) for c in backup_codes],
                created_at=self.clock.now(),
            )
        )
        logger.info("two_factor_setup_started", principal_id=principal_id)
        return TwoFactorSetup(
            secret=secret,
            provisioning_uri=self.provisioning_uri(secret, principal.email),
            backup_codes=backup_codes,
        )

    def confirm_setup(self, principal_id: str, code: str) -> None:
        pending = self.store.get_pending_two_factor(principal_id)
        if pending is None:
            raise InvalidTokenError("no two-factor setup in progress")
        if not self._totp_matches(pending.secret, code):
            logger.info("two_factor_confirm_rejected", principal_id=principal_id)
            raise Invalid2FACodeError("invalid two-factor code")
        self.store.set_two_factor(
            principal_id,
            enabled=True,
            secret=pending.secret,
            backup_codes=pending.backup_codes,
        )
        self.store.delete_pending_two_factor(principal_id)
        logger.info("two_factor_enabled", principal_id=principal_id)

    def verify(
        self,
        principal_id: str,
        code: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        principal = self.store.get_principal(principal_id)
        if principal is None or not principal.two_factor_enabled:
            return False
        if principal.two_factor_secret and self._totp_matches(
            principal.two_factor_secret, code
        ):
            return True
        if not code or not code.strip() or not code.isascii():
            return False
        remaining = self.store.consume_backup_code(principal_id, hash_backup_code(code))
        if remaining is None:
            return False
        self.events.record(
            SecurityEventType.BACKUP_CODE_USED,
            principal_id,
            ip_address=ip_address,
            user_agent=user_agent,
            risk_level=RiskLevel.MEDIUM,
            details={"codes_remaining": remaining},
        )
        if remaining == 0:
            logger.warning("backup_codes_exhausted", principal_id=principal_id)
        return True

    def disable(self, principal_id: str) -> None:
        self.store.set_two_factor(
            principal_id, enabled=False, secret=None, backup_codes=None
        )
        self.store.delete_pending_two_factor(principal_id)
        logger.info("two_factor_disabled", principal_id=principal_id)

    def _totp_matches(self, secret: str, code: str) -> bool:
        return verify_totp(
            secret,
            code,
            self.clock.now().timestamp(),
            window=self.settings.totp_window,
            interval=self.settings.totp_interval_seconds,
        )
