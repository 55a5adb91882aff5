from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Union

from authguard.storage.models import RiskLevel


class LoginState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    CREDENTIALS_VALIDATED = "credentials_validated"
    SECURITY_CHECKED = "security_checked"
    TWO_FACTOR_PENDING = "two_factor_pending"
    AUTHENTICATED = "authenticated"
    REJECTED = "rejected"


@dataclass
class LoginSuccess:
    access_token: str
    refresh_token: str
    expires_in: int
    expires_at: datetime
    session_id: str
    principal_id: str
    risk_level: RiskLevel
    status: str = "authenticated"


@dataclass
class TwoFactorChallenge:
    """Returned instead of tokens when the principal must supply a second factor."""

    principal_id: str
    risk_level: RiskLevel
    status: str = "two_factor_required"


LoginResult = Union[LoginSuccess, TwoFactorChallenge]


@dataclass
class TwoFactorSetup:
    secret: str
    provisioning_uri: str
    backup_codes: List[str] = field(default_factory=list)


@dataclass
class SecurityMetrics:
    active_sessions: int
    recent_logins: int
    failed_attempts: int
    security_events: int


@dataclass
class AuthContext:
    principal_id: str
    role: str
    session_id: str
    email: Optional[str] = None
    tenant_id: Optional[str] = None
