from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import math
from typing import Any, Optional

from tokenguard.logging import get_logger
from tokenguard.service.errors import SigningError, TokenExpired, TokenMalformed

logger = get_logger(__name__)


class HS256TokenCodec:
    """Compact JWS (JWT) signing and verification with HMAC-SHA256."""

    ALGORITHM = "HS256"

    def __init__(self, *, issuer: str, audience: str) -> None:
        self.issuer = issuer
        self.audience = audience

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: str) -> str:
        return self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any], secret: str) -> str:
        if not secret:
            raise SigningError("signing secret is not configured")
        header = {"alg": self.ALGORITHM, "typ": "JWT"}
        try:
            header_enc = self._encode_segment(
                json.dumps(header, separators=(",", ":")).encode()
            )
            payload_enc = self._encode_segment(
                json.dumps(payload, separators=(",", ":")).encode()
            )
            signing_input = f"{header_enc}.{payload_enc}"
            return f"{signing_input}.{self._sign(signing_input, secret)}"
        except (TypeError, ValueError) as exc:
            logger.error("jwt_encode_failed", error=str(exc))
            raise SigningError("unable to sign token") from exc

    def _split(self, token: str) -> tuple[str, str, str]:
        if not isinstance(token, str):
            raise TokenMalformed("token must be a string")
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise TokenMalformed("token is not a compact JWS")
        return parts[0], parts[1], parts[2]

    def _load_segment(self, segment: str, what: str) -> dict[str, Any]:
        try:
            value = json.loads(self._decode_segment(segment))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise TokenMalformed(f"token {what} is not valid base64url JSON") from exc
        if not isinstance(value, dict):
            raise TokenMalformed(f"token {what} must be a JSON object")
        return value

    def decode_unverified(self, token: str) -> dict[str, Any]:
        """Return the payload without checking signature, issuer or expiry."""
        _, payload_b64, _ = self._split(token)
        return self._load_segment(payload_b64, "payload")

    def decode(
        self,
        token: str,
        secret: str,
        *,
        now: float,
        leeway: float = 0.0,
    ) -> dict[str, Any]:
        header_b64, payload_b64, sig_b64 = self._split(token)

        # Pin the algorithm to prevent algorithm confusion attacks
        header = self._load_segment(header_b64, "header")
        if header.get("alg") != self.ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenMalformed("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenMalformed("token signature mismatch")

        payload = self._load_segment(payload_b64, "payload")
        if payload.get("iss") != self.issuer:
            raise TokenMalformed("token issuer mismatch")
        if not self._audience_matches(payload.get("aud")):
            raise TokenMalformed("token audience mismatch")

        exp_ts = self.numeric_claim(payload.get("exp"))
        if exp_ts is None:
            raise TokenMalformed("token has no valid exp claim")
        if exp_ts <= now - leeway:
            raise TokenExpired("token has expired", detail={"exp": int(exp_ts)})
        return payload

    def _audience_matches(self, aud: Any) -> bool:
        if isinstance(aud, str):
            return aud == self.audience
        if isinstance(aud, list):
            return self.audience in aud
        return False

    @staticmethod
    def numeric_claim(value: Any) -> Optional[float]:
        """Float value of a NumericDate claim; None unless it is a finite number."""
        if isinstance(value, bool):
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        return number if math.isfinite(number) else None
