from __future__ import annotations

import base64
import hashlib
import secrets
import threading
import uuid
from collections import deque
from dataclasses import replace
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from authguard.logging import get_logger
from authguard.storage.errors import (
    ConstraintViolation,
    StoreError,
    StoreErrorCategory,
)
from authguard.storage.models import (
    OneTimeToken,
    PendingTwoFactorSetup,
    Principal,
    PrincipalStatus,
    RateLimitWindow,
    SecurityEvent,
    SecurityEventType,
    Session,
)

TOKEN_KINDS = ("password_reset", "email_verification")


class MemoryStore:
    """In-process principal store.

    Every compound write (failed-attempt increment, capped session insert,
    backup code consumption, token consumption, rate-limit count-and-insert)
    runs under a single ``RLock`` so it is atomic with respect to other
    callers. Records handed out are copies; callers persist changes through
    the store methods.
    """

    def __init__(self, *, mfa_encryption_key: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self.sessions: Dict[str, Session] = {}
        self.security_events: List[SecurityEvent] = []
        self.rate_limits: Dict[str, Deque[datetime]] = {}
        self.one_time_tokens: Dict[str, Dict[str, OneTimeToken]] = {
            kind: {} for kind in TOKEN_KINDS
        }
        self.pending_two_factor: Dict[str, PendingTwoFactorSetup] = {}
        # RLock so helpers can re-acquire inside a compound write
        self._data_lock = threading.RLock()
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        if not key_material:
            self.logger.warning("mfa_encryption_key_generated")
            key_material = secrets.token_urlsafe(64)
        return Fernet(self._derive_cipher_key(key_material))

    def _encrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken as exc:
            self.logger.error("mfa_secret_decrypt_failed")
            raise StoreError(
                "stored two-factor secret cannot be decrypted",
                StoreErrorCategory.INTERNAL,
            ) from exc

    def _export_principal(self, principal: Principal) -> Principal:
        return replace(
            principal,
            two_factor_secret=self._decrypt_mfa_secret(principal.two_factor_secret),
            backup_codes=list(principal.backup_codes)
            if principal.backup_codes is not None
            else None,
            meta=dict(principal.meta) if principal.meta else principal.meta,
        )

    def _require_principal(self, principal_id: str) -> Principal:
        principal = self.principals.get(principal_id)
        if principal is None:
            raise StoreError(
                "principal not found",
                StoreErrorCategory.NOT_FOUND,
                {"principal_id": principal_id},
            )
        return principal

    # -- principals ---------------------------------------------------------

    def create_principal(
        self,
        email: str,
        password_hash: str,
        *,
        created_at: datetime,
        role: str = "user",
        status: PrincipalStatus = PrincipalStatus.PENDING_VERIFICATION,
        email_verified: bool = False,
        tenant_id: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> Principal:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.principals.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            principal = Principal(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                role=role,
                status=status,
                email_verified=email_verified,
                password_changed_at=created_at,
                created_at=created_at,
                tenant_id=tenant_id,
                meta=meta.copy() if meta else {},
            )
            self.principals[principal.id] = principal
            return self._export_principal(principal)

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            return self._export_principal(principal) if principal else None

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        normalized = email.strip().lower()
        with self._data_lock:
            principal = next(
                (p for p in self.principals.values() if p.email == normalized), None
            )
            return self._export_principal(principal) if principal else None

    def update_principal(self, principal_id: str, **fields: Any) -> Principal:
        with self._data_lock:
            principal = self._require_principal(principal_id)
            for name, value in fields.items():
                if not hasattr(principal, name) or name == "id":
                    raise StoreError(
                        f"unknown principal field: {name}",
                        StoreErrorCategory.INVALID_ARGUMENT,
                    )
                if name == "two_factor_secret":
                    value = self._encrypt_mfa_secret(value)
                setattr(principal, name, value)
            return self._export_principal(principal)

    def record_failed_login(
        self,
        principal_id: str,
        *,
        now: datetime,
        threshold: int,
        lockout_until: datetime,
    ) -> Principal:
        """Increment the failed-attempt counter and lock once it reaches ``threshold``."""
        with self._data_lock:
            principal = self._require_principal(principal_id)
            if principal.locked_until is not None and principal.locked_until <= now:
                # previous lockout elapsed; start a fresh count
                principal.failed_login_attempts = 0
                principal.locked_until = None
            principal.failed_login_attempts += 1
            if principal.failed_login_attempts >= threshold:
                principal.locked_until = lockout_until
            return self._export_principal(principal)

    def reset_failed_logins(self, principal_id: str) -> None:
        with self._data_lock:
            principal = self._require_principal(principal_id)
            principal.failed_login_attempts = 0
            principal.locked_until = None

    # -- two-factor -----------------------------------------------------------

    def set_two_factor(
        self,
        principal_id: str,
        *,
        enabled: bool,
        secret: Optional[str],
        backup_codes: Optional[List[str]],
    ) -> Principal:
        with self._data_lock:
            principal = self._require_principal(principal_id)
            principal.two_factor_enabled = enabled
            principal.two_factor_secret = self._encrypt_mfa_secret(secret)
            principal.backup_codes = list(backup_codes) if backup_codes is not None else None
            return self._export_principal(principal)

    def consume_backup_code(self, principal_id: str, code_digest: str) -> Optional[int]:
        """Remove a matching backup code; returns the codes left, or None on no match."""
        with self._data_lock:
            principal = self._require_principal(principal_id)
            codes = principal.backup_codes or []
            if code_digest not in codes:
                return None
            codes.remove(code_digest)
            principal.backup_codes = codes
            return len(codes)

    def save_pending_two_factor(self, setup: PendingTwoFactorSetup) -> None:
        with self._data_lock:
            self._require_principal(setup.principal_id)
            self.pending_two_factor[setup.principal_id] = replace(
                setup,
                secret=self._encrypt_mfa_secret(setup.secret),
                backup_codes=list(setup.backup_codes),
            )

    def get_pending_two_factor(self, principal_id: str) -> Optional[PendingTwoFactorSetup]:
        with self._data_lock:
            setup = self.pending_two_factor.get(principal_id)
            if setup is None:
                return None
            return replace(
                setup,
                secret=self._decrypt_mfa_secret(setup.secret),
                backup_codes=list(setup.backup_codes),
            )

    def delete_pending_two_factor(self, principal_id: str) -> None:
        with self._data_lock:
            self.pending_two_factor.pop(principal_id, None)

    # -- sessions -------------------------------------------------------------

    def create_session_capped(self, session: Session, max_active: int) -> List[str]:
        """Insert ``session`` and deactivate the overflow in the same critical section.

        Returns the ids of evicted sessions.
        """
        with self._data_lock:
            self._require_principal(session.principal_id)
            if session.id in self.sessions:
                raise ConstraintViolation("session already exists", {"session_id": session.id})
            active = self._active_sessions(session.principal_id)
            evicted: List[str] = []
            for stale in active[max(max_active - 1, 0):]:
                stale.is_active = False
                stale.invalidated_at = session.created_at
                evicted.append(stale.id)
            self.sessions[session.id] = replace(session)
            return evicted

    def _active_sessions(self, principal_id: str) -> List[Session]:
        active = [
            s
            for s in self.sessions.values()
            if s.principal_id == principal_id and s.is_active
        ]
        # reversed first so ties keep newest-first order and the oldest is evicted
        return sorted(
            reversed(active),
            key=lambda s: (s.last_activity_at, s.created_at),
            reverse=True,
        )

    def list_active_sessions(self, principal_id: str) -> List[Session]:
        with self._data_lock:
            return [replace(s) for s in self._active_sessions(principal_id)]

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return replace(session) if session else None

    def touch_session(self, session_id: str, at: datetime) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session is None or not session.is_active:
                return False
            session.last_activity_at = at
            return True

    def deactivate_session(self, session_id: str, at: datetime) -> bool:
        """Conditionally flip one session to inactive; False when it already was."""
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session is None or not session.is_active:
                return False
            session.is_active = False
            session.invalidated_at = at
            return True

    def deactivate_principal_sessions(self, principal_id: str, at: datetime) -> int:
        with self._data_lock:
            active = self._active_sessions(principal_id)
            for session in active:
                session.is_active = False
                session.invalidated_at = at
            return len(active)

    def count_active_sessions(self, principal_id: str) -> int:
        with self._data_lock:
            return len(self._active_sessions(principal_id))

    # -- rate limits ----------------------------------------------------------

    def _prune_rate_limit(self, key: str, window_start: datetime) -> Deque[datetime]:
        """Drop attempts outside the window; keys with none left are removed."""
        attempts = self.rate_limits.get(key)
        if attempts is None:
            return deque()
        while attempts and attempts[0] <= window_start:
            attempts.popleft()
        if not attempts:
            del self.rate_limits[key]
        return attempts

    def record_rate_limit_attempt(
        self, key: str, *, limit: int, window_start: datetime, now: datetime
    ) -> RateLimitWindow:
        """Count attempts inside the window and record one more if under ``limit``."""
        with self._data_lock:
            attempts = self._prune_rate_limit(key, window_start)
            if len(attempts) >= limit:
                return RateLimitWindow(
                    allowed=False, count=len(attempts), oldest=attempts[0]
                )
            attempts.append(now)
            self.rate_limits[key] = attempts
            return RateLimitWindow(allowed=True, count=len(attempts), oldest=attempts[0])

    def peek_rate_limit(
        self, key: str, *, limit: int, window_start: datetime
    ) -> RateLimitWindow:
        with self._data_lock:
            attempts = self._prune_rate_limit(key, window_start)
            return RateLimitWindow(
                allowed=len(attempts) < limit,
                count=len(attempts),
                oldest=attempts[0] if attempts else None,
            )

    # -- security events ------------------------------------------------------

    def append_security_event(self, event: SecurityEvent) -> None:
        with self._data_lock:
            self.security_events.append(replace(event, details=dict(event.details)))

    def _matching_events(
        self,
        principal_id: Optional[str],
        event_type: Optional[SecurityEventType],
        since: Optional[datetime],
    ) -> List[SecurityEvent]:
        return [
            e
            for e in self.security_events
            if e.principal_id == principal_id
            and (event_type is None or e.type == event_type)
            and (since is None or e.timestamp >= since)
        ]

    def list_security_events(
        self,
        principal_id: Optional[str],
        *,
        event_type: Optional[SecurityEventType] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityEvent]:
        with self._data_lock:
            # reversed first so ties on timestamp keep newest-first order
            events = sorted(
                reversed(self._matching_events(principal_id, event_type, since)),
                key=lambda e: e.timestamp,
                reverse=True,
            )
            if limit is not None:
                events = events[:limit]
            return [replace(e, details=dict(e.details)) for e in events]

    def count_security_events(
        self,
        principal_id: Optional[str],
        *,
        event_type: Optional[SecurityEventType] = None,
        since: Optional[datetime] = None,
    ) -> int:
        with self._data_lock:
            return len(self._matching_events(principal_id, event_type, since))

    # -- one-time tokens ------------------------------------------------------

    def _tokens(self, kind: str) -> Dict[str, OneTimeToken]:
        if kind not in self.one_time_tokens:
            raise StoreError(
                f"unknown token kind: {kind}", StoreErrorCategory.INVALID_ARGUMENT
            )
        return self.one_time_tokens[kind]

    def save_one_time_token(self, kind: str, token: OneTimeToken) -> None:
        with self._data_lock:
            self._require_principal(token.principal_id)
            self._tokens(kind)[token.token_hash] = replace(token)

    def get_one_time_token(self, kind: str, token_hash: str) -> Optional[OneTimeToken]:
        with self._data_lock:
            token = self._tokens(kind).get(token_hash)
            return replace(token) if token else None

    def consume_one_time_token(
        self, kind: str, token_hash: str, now: datetime
    ) -> Optional[OneTimeToken]:
        """Mark a token used if it exists, is unused and unexpired; else None."""
        with self._data_lock:
            token = self._tokens(kind).get(token_hash)
            if token is None or token.used or token.is_expired(now):
                return None
            token.used = True
            return replace(token)
