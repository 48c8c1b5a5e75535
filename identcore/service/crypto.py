from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from typing import Any, Callable, Mapping

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from identcore.logging import get_logger
from identcore.service.errors import (
    InvalidSignatureError,
    MalformedTokenError,
    TokenExpiredError,
)

logger = get_logger(__name__)


class PasswordHashing:
    """argon2id hashing with tunable cost."""

    def __init__(
        self, *, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Verified against when no account matches so both paths cost the same
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))

    def hash_password(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify_password(self, plaintext: str, password_hash: str) -> bool:
        try:
            return self._hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHashError:
            return True

    def burn_verification(self, plaintext: str) -> None:
        self.verify_password(plaintext, self._dummy_hash)


def generate_otp_code(length: int = 6) -> str:
    """Uniformly random fixed-width numeric code."""
    return str(secrets.randbelow(10**length)).zfill(length)


def hash_otp_code(account_id: str, purpose: str, code: str, *, key: str) -> str:
    """Keyed HMAC-SHA256 of a code bound to its account and purpose."""
    message = f"{account_id}:{purpose}:{code.strip()}".encode()
    return hmac.new(key.encode(), message, hashlib.sha256).hexdigest()


def codes_match(expected: str, actual: str) -> bool:
    return hmac.compare_digest(expected.encode(), actual.encode())


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenSigner:
    """Compact HS256 JWT signing with a keyring.

    The header ``kid`` names the key that signed the token. Retired keys stay in
    the ring for verification until every token they signed has expired.
    """

    ALGORITHM = "HS256"

    def __init__(
        self,
        keyring: Mapping[str, str],
        active_kid: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if active_kid not in keyring:
            raise ValueError(f"active key id {active_kid!r} missing from keyring")
        self.keyring = dict(keyring)
        self.active_kid = active_kid
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self.clock = clock

    def _signature(self, kid: str, signing_input: str) -> str:
        digest = hmac.new(
            self.keyring[kid].encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return _encode_segment(digest)

    def sign(self, claims: Mapping[str, Any], ttl_seconds: int) -> str:
        now = int(self.clock())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + int(ttl_seconds),
            **claims,
        }
        header = {"alg": self.ALGORITHM, "typ": "JWT", "kid": self.active_kid}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(self.active_kid, signing_input)}"

    def verify(self, token: str, *, verify_exp: bool = True) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError) as exc:
            raise MalformedTokenError("token is not a compact JWT") from exc

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError) as exc:
            raise MalformedTokenError("token header is not valid JSON") from exc
        if not isinstance(header, dict):
            raise MalformedTokenError("token header is not an object")
        # Reject alg confusion before touching the key
        if header.get("alg") != self.ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise InvalidSignatureError("unsupported token algorithm")
        kid = header.get("kid") or self.active_kid
        if kid not in self.keyring:
            logger.warning("jwt_unknown_key_id", kid=kid)
            raise InvalidSignatureError("unknown signing key")

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._signature(kid, signing_input).encode(), sig_b64.encode()):
            raise InvalidSignatureError("token signature mismatch")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            raise MalformedTokenError("token payload is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise MalformedTokenError("token payload is not an object")

        if payload.get("iss") != self.issuer:
            raise InvalidSignatureError("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise InvalidSignatureError("token audience mismatch")

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedTokenError("token has no usable expiry") from exc
        if verify_exp and exp_ts <= self.clock() - self.leeway_seconds:
            raise TokenExpiredError("token has expired")
        return payload

