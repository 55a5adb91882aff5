from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, List, Optional

from authguard.config import Settings
from authguard.logging import get_logger
from authguard.service.clock import Clock, SystemClock
from authguard.service.errors import InvalidTokenError
from authguard.storage.models import Principal

logger = get_logger(__name__)


@dataclass
class TenantContext:
    tenant_id: str
    role: Optional[str] = None
    permissions: List[str] = field(default_factory=list)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    expires_at: datetime
    session_id: str
    token_type: str = "bearer"


class TokenIssuer:
    """Mints and verifies HS256 access/refresh tokens.

    Access and refresh tokens are signed with different secrets so one can
    never be presented as the other.
    """

    def __init__(self, settings: Settings, clock: Optional[Clock] = None) -> None:
        self.settings = settings
        self.clock = clock or SystemClock()

    def mint(
        self,
        principal: Principal,
        session_id: Optional[str] = None,
        tenant_context: Optional[TenantContext] = None,
    ) -> TokenPair:
        now = self.clock.now()
        sid = session_id or str(uuid.uuid4())
        access_ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_ttl = timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        iat = int(now.timestamp())
        access_payload: dict[str, Any] = {
            "sub": principal.id,
            "email": principal.email,
            "role": principal.role,
            "sid": sid,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": iat,
            "exp": int((now + access_ttl).timestamp()),
            "jti": str(uuid.uuid4()),
            "token_type": "access",
        }
        refresh_payload: dict[str, Any] = {
            "sub": principal.id,
            "sid": sid,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": iat,
            "exp": int((now + refresh_ttl).timestamp()),
            "jti": str(uuid.uuid4()),
            "token_type": "refresh",
        }
        if tenant_context:
            access_payload["tenant_id"] = tenant_context.tenant_id
            access_payload["tenant_role"] = tenant_context.role
            access_payload["tenant_permissions"] = list(tenant_context.permissions)
            refresh_payload["tenant_id"] = tenant_context.tenant_id
        return TokenPair(
            access_token=self._encode_jwt(access_payload, self.settings.jwt_secret),
            refresh_token=self._encode_jwt(
                refresh_payload, self.settings.jwt_refresh_secret
            ),
            expires_in=int(access_ttl.total_seconds()),
            expires_at=now + access_ttl,
            session_id=sid,
        )

    def verify(self, token: str) -> Optional[dict[str, Any]]:
        """Return the access token's claims, or None if it is not valid now."""
        return self._decode_jwt(token, self.settings.jwt_secret, "access")

    def verify_refresh(self, token: str) -> dict[str, Any]:
        payload = self._decode_jwt(token, self.settings.jwt_refresh_secret, "refresh")
        if payload is None:
            raise InvalidTokenError("invalid or expired refresh token")
        return payload

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: str) -> str:
        return self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _decode_jwt(
        self, token: str, secret: str, token_type: str
    ) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            logger.info("jwt_malformed", token_type=token_type)
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        if not sig_b64.isascii():
            logger.info("jwt_signature_malformed", token_type=token_type)
            return None
        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        if not hmac.compare_digest(expected_sig, sig_b64):
            logger.info("jwt_signature_mismatch", token_type=token_type)
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("token_type") != token_type:
            logger.info("jwt_wrong_token_type", expected=token_type)
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            logger.info("jwt_issuer_mismatch")
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            logger.info("jwt_audience_mismatch")
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self.clock.now().timestamp():
            logger.info("jwt_expired", token_type=token_type)
            return None
        return payload
