from __future__ import annotations

import uuid
from typing import Dict, Optional

from authguard.config import Settings
from authguard.logging import get_logger
from authguard.service.clock import Clock, SystemClock
from authguard.service.retry import Sleep, retry_store_write
from authguard.storage.errors import StoreError
from authguard.storage.models import Session

logger = get_logger(__name__)


class SessionStore:
    """Session lifecycle over the principal store.

    Creation enforces the per-principal cap atomically with the insert;
    invalidation retries transient store failures with exponential backoff.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleep] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock or SystemClock()
        self._sleep = sleep

    def create(
        self,
        principal_id: str,
        device_info: Optional[Dict] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> str:
        session = Session.new(
            principal_id,
            self.clock.now(),
            session_id=session_id or str(uuid.uuid4()),
            ip_address=ip_address,
            user_agent=user_agent,
            device_info=device_info,
        )
        evicted = self.store.create_session_capped(
            session, self.settings.max_active_sessions
        )
        if evicted:
            logger.info(
                "session_cap_evicted",
                principal_id=principal_id,
                evicted=evicted,
                max_sessions=self.settings.max_active_sessions,
            )
        logger.debug("session_created", principal_id=principal_id, session_id=session.id)
        return session.id

    def get(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)

    def touch(self, session_id: str) -> None:
        try:
            self.store.touch_session(session_id, self.clock.now())
        except StoreError as exc:
            logger.warning("session_touch_failed", session_id=session_id, error=str(exc))

    def count_active(self, principal_id: str) -> int:
        return self.store.count_active_sessions(principal_id)

    async def invalidate(self, session_id: str) -> bool:
        """Deactivate one session; False when it was already inactive or missing."""
        return await retry_store_write(
            lambda: self.store.deactivate_session(session_id, self.clock.now()),
            max_attempts=self.settings.session_invalidate_max_attempts,
            backoff_seconds=self.settings.session_invalidate_backoff_seconds,
            sleep=self._sleep,
            op_name="session_invalidate",
            session_id=session_id,
        )

    async def invalidate_all(self, principal_id: str) -> int:
        return await retry_store_write(
            lambda: self.store.deactivate_principal_sessions(
                principal_id, self.clock.now()
            ),
            max_attempts=self.settings.session_invalidate_max_attempts,
            backoff_seconds=self.settings.session_invalidate_backoff_seconds,
            sleep=self._sleep,
            op_name="session_invalidate_all",
            principal_id=principal_id,
        )
