from __future__ import annotations

from datetime import timedelta
from typing import Optional

from authguard.logging import get_logger
from authguard.service.clock import Clock, SystemClock
from authguard.storage.models import RiskLevel, SecurityEventType

logger = get_logger(__name__)

RECENT_LOGIN_SAMPLE = 10
DISTINCT_IP_THRESHOLD = 5
DISTINCT_AGENT_THRESHOLD = 3
LOGIN_VOLUME_THRESHOLD = 10


class RiskAnalyzer:
    """Scores a login from the principal's recent successful-login history."""

    def __init__(self, store, clock: Optional[Clock] = None) -> None:
        self.store = store
        self.clock = clock or SystemClock()

    def score(self, principal_id: str, window_hours: int = 24) -> RiskLevel:
        since = self.clock.now() - timedelta(hours=window_hours)
        recent = self.store.list_security_events(
            principal_id,
            event_type=SecurityEventType.LOGIN,
            since=since,
            limit=RECENT_LOGIN_SAMPLE,
        )
        volume = self.store.count_security_events(
            principal_id, event_type=SecurityEventType.LOGIN, since=since
        )
        ips = {e.ip_address for e in recent if e.ip_address}
        agents = {e.user_agent for e in recent if e.user_agent}

        triggered = [RiskLevel.LOW]
        if len(ips) > DISTINCT_IP_THRESHOLD:
            triggered.append(RiskLevel.HIGH)
        if len(agents) > DISTINCT_AGENT_THRESHOLD:
            triggered.append(RiskLevel.MEDIUM)
        if volume > LOGIN_VOLUME_THRESHOLD:
            triggered.append(RiskLevel.MEDIUM)
        level = RiskLevel.highest(*triggered)
        if level != RiskLevel.LOW:
            logger.info(
                "login_risk_elevated",
                principal_id=principal_id,
                risk_level=level.value,
                distinct_ips=len(ips),
                distinct_agents=len(agents),
                login_count=volume,
            )
        return level
