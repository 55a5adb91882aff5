from __future__ import annotations

import uuid
from typing import Any, Dict, Optional

from authguard.logging import get_logger
from authguard.service.clock import Clock, SystemClock
from authguard.storage.models import RiskLevel, SecurityEvent, SecurityEventType

logger = get_logger(__name__)


class SecurityEventLog:
    """Append-only audit trail written through the principal store.

    Store failures propagate: an operation whose audit record cannot be
    written does not report success.
    """

    def __init__(self, store, clock: Optional[Clock] = None) -> None:
        self.store = store
        self.clock = clock or SystemClock()

    def record(
        self,
        event_type: SecurityEventType,
        principal_id: Optional[str],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        risk_level: RiskLevel = RiskLevel.LOW,
        details: Optional[Dict[str, Any]] = None,
    ) -> SecurityEvent:
        event = SecurityEvent(
            id=str(uuid.uuid4()),
            type=event_type,
            principal_id=principal_id,
            timestamp=self.clock.now(),
            ip_address=ip_address,
            user_agent=user_agent,
            risk_level=risk_level,
            details=dict(details or {}),
        )
        self.store.append_security_event(event)
        if risk_level == RiskLevel.HIGH:
            logger.warning(
                "security_event_high_risk",
                event_type=event_type.value,
                principal_id=principal_id,
                ip_address=ip_address,
            )
        else:
            logger.info(
                "security_event_recorded",
                event_type=event_type.value,
                principal_id=principal_id,
                risk_level=risk_level.value,
            )
        return event
