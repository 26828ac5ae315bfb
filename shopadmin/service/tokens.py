from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from typing import Any, Callable, Dict, Tuple

from shopadmin.logging import get_logger
from shopadmin.service.errors import InvalidSignatureError, TokenExpiredError

logger = get_logger(__name__)

ALGORITHM = "HS256"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenSigner:
    """HS256 compact JWS encoding bound to one issuer and audience.

    The secret is read once at construction and never changes afterwards.
    ``decode`` raises :class:`InvalidSignatureError` for anything that is not a
    well-formed token signed with this secret for this issuer/audience, and
    :class:`TokenExpiredError` once ``exp`` has passed.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("signing secret must not be empty")
        self._key = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    def now(self) -> int:
        return int(self._clock())

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._key, signing_input.encode("utf-8"), hashlib.sha256).digest()
        )

    def encode(self, claims: Dict[str, Any], *, ttl_seconds: int) -> str:
        token, _payload = self.issue(claims, ttl_seconds=ttl_seconds)
        return token

    def issue(
        self, claims: Dict[str, Any], *, ttl_seconds: int
    ) -> Tuple[str, Dict[str, Any]]:
        """Sign ``claims`` and return the token together with the full payload."""
        issued_at = self.now()
        payload = {
            **claims,
            "iat": issued_at,
            "exp": issued_at + int(ttl_seconds),
            "iss": self.issuer,
            "aud": self.audience,
        }
        header = {"alg": ALGORITHM, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}", payload

    def decode(self, token: str) -> Dict[str, Any]:
        if not isinstance(token, str):
            raise InvalidSignatureError("invalid token")
        parts = token.split(".")
        if len(parts) != 3:
            raise InvalidSignatureError("invalid token")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, binascii.Error, RecursionError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidSignatureError("invalid token")
        # Pin the algorithm so "none" or asymmetric headers are never honoured
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise InvalidSignatureError("invalid token")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8")):
            raise InvalidSignatureError("invalid token")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, binascii.Error, RecursionError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidSignatureError("invalid token")
        if not isinstance(payload, dict):
            raise InvalidSignatureError("invalid token")

        if payload.get("iss") != self.issuer:
            raise InvalidSignatureError("invalid token")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise InvalidSignatureError("invalid token")

        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            raise InvalidSignatureError("invalid token")
        if self.now() >= exp + self.leeway_seconds:
            raise TokenExpiredError("token expired")
        return payload
