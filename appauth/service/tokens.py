from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from appauth.logging import get_logger
from appauth.storage.models import RefreshToken, utcnow

logger = get_logger(__name__)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = 0


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class TokenIssuer:
    """Signed HS256 access tokens plus opaque, server-side refresh tokens.

    Refresh tokens are random hex strings; only their sha256 is stored, so a
    leaked token table cannot be replayed.
    """

    # Expired refresh tokens are pruned once every this many issues
    cleanup_every = 200

    def __init__(self, store, settings) -> None:
        self.store = store
        self.settings = settings
        self._clock_skew_leeway = timedelta(seconds=30)
        self._issued = 0

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode_access_token(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Reject anything but HS256 before touching the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def issue(
        self,
        user_id: str,
        *,
        app_identifier: Optional[str] = None,
        role: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        now = utcnow()
        ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        payload: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "user_id": user_id,
            "iat": now.timestamp(),
            "exp": int((now + ttl).timestamp()),
            "jti": str(uuid.uuid4()),
        }
        if app_identifier:
            payload["app"] = app_identifier
        if role:
            payload["role"] = role
        refresh_token = secrets.token_hex(40)
        self.store.save_refresh_token(
            RefreshToken.new(
                hash_token(refresh_token),
                user_id,
                self.settings.refresh_token_ttl_minutes,
                app_identifier=app_identifier,
                role=role,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
        self._issued += 1
        if self._issued % self.cleanup_every == 0:
            self.cleanup_expired()
        return TokenPair(
            access_token=self._encode_jwt(payload),
            refresh_token=refresh_token,
            expires_in=int(ttl.total_seconds()),
        )

    def lookup(self, refresh_token: str) -> Optional[RefreshToken]:
        if not refresh_token:
            return None
        return self.store.get_refresh_token(hash_token(refresh_token))

    def rotate(self, refresh_token: str) -> Optional[RefreshToken]:
        """Consume a refresh token; returns its record if it was still valid."""
        record = self.lookup(refresh_token)
        if record is None or not record.is_valid(utcnow()):
            return None
        if not self.store.revoke_refresh_token(record.token_hash):
            # Lost a race with another rotation of the same token
            return None
        return record

    def revoke(self, refresh_token: str) -> bool:
        if not refresh_token:
            return False
        return self.store.revoke_refresh_token(hash_token(refresh_token))

    def revoke_all(self, user_id: str) -> int:
        revoked = self.store.revoke_user_refresh_tokens(user_id)
        logger.info("refresh_tokens_revoked", user_id=user_id, count=revoked)
        return revoked

    def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_refresh_tokens(utcnow())
        if removed:
            logger.info("refresh_tokens_pruned", count=removed)
        return removed
