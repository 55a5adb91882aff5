from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PrincipalStatus(str, Enum):
    PENDING_VERIFICATION = "pending_verification"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    BLOCKED = "blocked"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]

    @classmethod
    def highest(cls, *levels: "RiskLevel") -> "RiskLevel":
        return max(levels, key=lambda level: level.rank, default=cls.LOW)


_RISK_RANK = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


class SecurityEventType(str, Enum):
    LOGIN = "login"
    FAILED_LOGIN = "failed_login"
    LOGOUT = "logout"
    PASSWORD_CHANGE = "password_change"
    PASSWORD_RESET = "password_reset"
    SECURITY_SETTING_CHANGE = "security_setting_change"
    BACKUP_CODE_USED = "backup_code_used"
    EMAIL_VERIFICATION = "email_verification"
    REGISTRATION = "registration"


@dataclass
class Principal:
    id: str
    email: str
    password_hash: str
    role: str = "user"
    status: PrincipalStatus = PrincipalStatus.PENDING_VERIFICATION
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    email_verified: bool = False
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    backup_codes: Optional[List[str]] = None
    password_changed_at: datetime = field(default_factory=_utcnow)
    created_at: datetime = field(default_factory=_utcnow)
    email_verification_sent_at: Optional[datetime] = None
    tenant_id: Optional[str] = None
    meta: Dict | None = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def is_password_expired(self, now: datetime, max_age_days: int) -> bool:
        if max_age_days <= 0:
            return False
        return now - self.password_changed_at > timedelta(days=max_age_days)


@dataclass
class Session:
    id: str
    principal_id: str
    created_at: datetime
    last_activity_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: Dict | None = None
    is_active: bool = True
    invalidated_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        principal_id: str,
        now: datetime,
        *,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_info: Dict | None = None,
    ) -> "Session":
        return cls(
            id=session_id or str(uuid.uuid4()),
            principal_id=principal_id,
            created_at=now,
            last_activity_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
            device_info=device_info,
        )


@dataclass
class SecurityEvent:
    id: str
    type: SecurityEventType
    principal_id: Optional[str]
    timestamp: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    risk_level: RiskLevel = RiskLevel.LOW
    details: Dict = field(default_factory=dict)


@dataclass
class OneTimeToken:
    """Single-use, hashed, time-boxed token (password reset, email verification)."""

    token_hash: str
    principal_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=_utcnow)
    used: bool = False

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class PendingTwoFactorSetup:
    principal_id: str
    secret: str
    backup_codes: List[str]
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class RateLimitWindow:
    """Outcome of a sliding-window count for one key."""

    allowed: bool
    count: int
    oldest: Optional[datetime] = None
