from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple

from identcore.config import Settings
from identcore.service.crypto import TokenSigner
from identcore.service.errors import MalformedTokenError
from identcore.storage.models import AuthContext, Role


@dataclass
class RefreshClaims:
    account_id: str
    family_id: str
    session_id: str
    sequence: int
    expires_at: datetime
    device_id: Optional[str] = None


def _from_ts(value) -> datetime:
    return datetime.fromtimestamp(float(value), timezone.utc)


class TokenIssuer:
    """Mints and verifies access and refresh tokens.

    Access tokens embed the role and token version so the guard can detect a
    stale token with one account read. Refresh tokens only point at a
    (family, session, sequence) triple; their validity lives in the session store.
    """

    def __init__(
        self,
        signer: TokenSigner,
        *,
        access_ttl_minutes: int = 15,
        refresh_ttl_minutes: int = 60 * 24 * 30,
    ) -> None:
        self.signer = signer
        self.access_ttl_seconds = access_ttl_minutes * 60
        self.refresh_ttl_seconds = refresh_ttl_minutes * 60

    @classmethod
    def from_settings(cls, settings: Settings, **signer_kwargs) -> "TokenIssuer":
        signer = TokenSigner(
            settings.signing_keyring,
            settings.jwt_key_id,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway_seconds=settings.clock_skew_seconds,
            **signer_kwargs,
        )
        return cls(
            signer,
            access_ttl_minutes=settings.access_token_ttl_minutes,
            refresh_ttl_minutes=settings.refresh_token_ttl_minutes,
        )

    def issue_access_token(
        self, account_id: str, role: Role, token_version: int
    ) -> Tuple[str, datetime]:
        issued_at = int(self.signer.clock())
        expires_at = issued_at + self.access_ttl_seconds
        token = self.signer.sign(
            {
                "sub": account_id,
                "role": role.value,
                "tv": token_version,
                "jti": uuid.uuid4().hex,
                "token_type": "access",
                "iat": issued_at,
                "exp": expires_at,
            },
            self.access_ttl_seconds,
        )
        return token, _from_ts(expires_at)

    def verify_access_token(self, token: str) -> AuthContext:
        claims = self.signer.verify(token)
        if claims.get("token_type") != "access":
            raise MalformedTokenError("not an access token")
        try:
            return AuthContext(
                account_id=str(claims["sub"]),
                role=Role(claims["role"]),
                token_version=int(claims["tv"]),
                token_id=claims.get("jti"),
                expires_at=_from_ts(claims["exp"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedTokenError("access token claims are incomplete") from exc

    def issue_refresh_token(
        self,
        account_id: str,
        family_id: str,
        session_id: str,
        sequence: int,
        expires_at: datetime,
        device_id: Optional[str] = None,
    ) -> str:
        ttl = max(1, int(expires_at.timestamp() - self.signer.clock()))
        claims = {
            "sub": account_id,
            "fid": family_id,
            "sid": session_id,
            "seq": sequence,
            "token_type": "refresh",
            "exp": int(expires_at.timestamp()),
        }
        if device_id:
            claims["did"] = device_id
        return self.signer.sign(claims, ttl)

    def verify_refresh_token(self, token: str, *, verify_exp: bool = True) -> RefreshClaims:
        claims = self.signer.verify(token, verify_exp=verify_exp)
        if claims.get("token_type") != "refresh":
            raise MalformedTokenError("not a refresh token")
        try:
            return RefreshClaims(
                account_id=str(claims["sub"]),
                family_id=str(claims["fid"]),
                session_id=str(claims["sid"]),
                sequence=int(claims["seq"]),
                expires_at=_from_ts(claims["exp"]),
                device_id=claims.get("did"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedTokenError("refresh token claims are incomplete") from exc
