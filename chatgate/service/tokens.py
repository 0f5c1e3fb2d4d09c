from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any, Optional

from chatgate.logging import get_logger
from chatgate.storage.models import AuthSession

logger = get_logger(__name__)


class SessionTokenCodec:
    """HS256 tokens naming a server-side session.

    Claims other than ``sid`` are informational; authorization decisions are
    always made against the stored session record.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 0,
    ) -> None:
        if not secret:
            raise ValueError("a signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = max(0, leeway_seconds)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self._secret,
                signing_input.encode("utf-8", "surrogatepass"),
                hashlib.sha256,
            ).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue(self, session: AuthSession) -> str:
        """Mint a token whose iat/exp mirror the session record."""
        return self.encode(
            {
                "sid": session.id,
                "sub": session.user_id,
                "idp_sub": session.subject,
                "email": session.email,
                "name": session.display_name,
                "role": session.role,
                "iss": self.issuer,
                "aud": self.audience,
                "iat": int(session.created_at.timestamp()),
                "exp": int(session.expires_at.timestamp()),
            }
        )

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        """Return verified claims, or None for any malformed, forged or expired token."""
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm so "none" or asymmetric headers cannot be substituted
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.debug("session_token_header_invalid")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("session_token_algorithm_rejected")
            return None

        # Compare bytes; str comparison raises on non-ASCII input
        if not sig_b64 or not hmac.compare_digest(
            self._sign(f"{header_b64}.{payload_b64}").encode("ascii"),
            sig_b64.encode("utf-8", "surrogatepass"),
        ):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("session_token_payload_invalid", error=str(exc))
            return None
        if not isinstance(payload, dict) or not payload.get("sid"):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self.leeway_seconds:
            return None
        return payload
