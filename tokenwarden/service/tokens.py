from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Iterable, Optional

from tokenwarden.logging import get_logger
from tokenwarden.service.errors import (
    InvalidSignature,
    SigningError,
    TokenExpired,
    WrongPurpose,
)

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
RESET = "reset"

_RESERVED_CLAIMS = frozenset({"sub", "purpose", "iat", "exp", "jti"})


@dataclass(frozen=True)
class TokenClaims:
    sub: str
    purpose: str
    iat: int
    exp: int
    jti: str
    extra: dict[str, Any] = field(default_factory=dict)


class TokenSigner:
    """HS256 signer/verifier for time-bounded subject tokens.

    A signer only produces and accepts the purposes it was built for, so the
    access/refresh signer and the reset signer can never vouch for each
    other's tokens even if their secrets were mixed up.
    """

    def __init__(
        self,
        secret: str,
        purposes: Iterable[str],
        *,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("signing secret must not be empty")
        self._key = secret.encode()
        self.purposes = frozenset(purposes)
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def sign(
        self, subject_id: str, purpose: str, ttl: timedelta, **claims: Any
    ) -> str:
        if purpose not in self.purposes:
            raise SigningError(f"signer cannot issue {purpose} tokens")
        if not subject_id:
            raise SigningError("token subject must not be empty")
        reserved = _RESERVED_CLAIMS.intersection(claims)
        if reserved:
            raise SigningError(
                "reserved claim names", detail={"claims": sorted(reserved)}
            )
        iat = int(self.now())
        payload: dict[str, Any] = {
            "sub": subject_id,
            "purpose": purpose,
            "iat": iat,
            "exp": iat + int(ttl.total_seconds()),
            "jti": str(uuid.uuid4()),
            **claims,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        try:
            header_enc = self._encode_segment(
                json.dumps(header, separators=(",", ":")).encode()
            )
            payload_enc = self._encode_segment(
                json.dumps(payload, separators=(",", ":")).encode()
            )
        except (TypeError, ValueError) as exc:
            raise SigningError("token claims are not serialisable") from exc
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def verify(
        self, token: str, expected_purpose: str, *, verify_expiry: bool = True
    ) -> TokenClaims:
        payload = self._decode(token)

        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise InvalidSignature("token has no usable expiry")
        if verify_expiry and exp <= self.now() - self.leeway_seconds:
            raise TokenExpired("token expired")

        purpose = payload.get("purpose")
        if purpose != expected_purpose or purpose not in self.purposes:
            raise WrongPurpose(f"expected {expected_purpose} token")

        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub:
            raise InvalidSignature("token has no subject")

        return TokenClaims(
            sub=sub,
            purpose=purpose,
            iat=int(payload.get("iat") or 0),
            exp=int(exp),
            jti=str(payload.get("jti") or ""),
            extra={k: v for k, v in payload.items() if k not in _RESERVED_CLAIMS},
        )

    def _decode(self, token: Optional[str]) -> dict[str, Any]:
        if not isinstance(token, str):
            raise InvalidSignature("token is not a string")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidSignature("token is not a compact JWT") from None

        # Pin the algorithm before looking at the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            raise InvalidSignature("token header is malformed") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            alg = header.get("alg") if isinstance(header, dict) else None
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise InvalidSignature("unsupported token algorithm")

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidSignature("token signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidSignature("token payload is malformed") from None
        if not isinstance(payload, dict):
            raise InvalidSignature("token payload is malformed")
        return payload
