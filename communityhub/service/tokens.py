from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from communityhub.logging import get_logger
from communityhub.service.errors import ConfigurationError, InvalidTokenError
from communityhub.storage.models import User

logger = get_logger(__name__)

DEFAULT_TOKEN_TTL_SECONDS = 7 * 24 * 60 * 60

_ALGORITHM = "HS256"
_RESERVED_CLAIMS = frozenset({"iss", "aud", "iat", "exp", "kind"})


class TokenKind(str, Enum):
    """The two signed token shapes the service issues.

    ``APP`` tokens travel in the ``Authorization`` header; ``SESSION`` tokens
    live in the HTTP-only cookie and carry display profile fields.
    """

    APP = "app"
    SESSION = "session"


_REQUIRED_CLAIMS: Dict[TokenKind, tuple[str, ...]] = {
    TokenKind.APP: ("userId", "providerCustomerId"),
    TokenKind.SESSION: ("customerId", "issuedAt"),
}


@dataclass(frozen=True)
class AppTokenClaims:
    user_id: str
    provider_customer_id: str


@dataclass(frozen=True)
class SessionTokenClaims:
    customer_id: str
    issued_at: int
    user_id: Optional[str] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    display_name: Optional[str] = None
    access_token: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "customerId": self.customer_id,
            "userId": self.user_id,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "displayName": self.display_name,
            "issuedAt": self.issued_at,
        }
        if self.access_token:
            payload["accessToken"] = self.access_token
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SessionTokenClaims":
        return cls(
            customer_id=str(payload["customerId"]),
            issued_at=int(payload["issuedAt"]),
            user_id=payload.get("userId"),
            email=payload.get("email"),
            first_name=payload.get("firstName"),
            last_name=payload.get("lastName"),
            display_name=payload.get("displayName"),
            access_token=payload.get("accessToken"),
        )


class TokenCodec:
    """HS256 signer/verifier for app and session tokens.

    Verification is stateless: a token is valid until its ``exp`` passes, and
    there is no revocation list.
    """

    def __init__(
        self,
        secret: str,
        *,
        ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS,
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ConfigurationError("token signing secret is not configured")
        self._secret = secret.encode()
        self.ttl_seconds = ttl_seconds
        self.issuer = issuer
        self.audience = audience
        self._clock = clock

    # -- JWT primitives ----------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, claims: Dict[str, Any]) -> str:
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(claims, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def _decode_jwt(self, token: str) -> Dict[str, Any]:
        if not isinstance(token, str) or not token:
            raise InvalidTokenError("token missing")
        parts = token.split(".")
        if len(parts) != 3:
            raise InvalidTokenError("malformed token")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise InvalidTokenError("malformed token header")
        # Pin the algorithm so a forged header cannot downgrade verification
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError("unsupported token algorithm")

        if not hmac.compare_digest(self._signature(f"{header_b64}.{payload_b64}"), sig_b64):
            raise InvalidTokenError("bad token signature")

        try:
            claims = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise InvalidTokenError("malformed token payload")
        if not isinstance(claims, dict):
            raise InvalidTokenError("malformed token payload")
        return claims

    # -- generic sign / verify ---------------------------------------------

    def sign(self, payload: Mapping[str, Any], kind: TokenKind) -> str:
        """Sign ``payload`` as a ``kind`` token with issued-at and expiry."""
        kind = TokenKind(kind)
        clash = _RESERVED_CLAIMS.intersection(payload)
        if clash:
            raise ValueError(f"payload uses reserved claims: {sorted(clash)}")
        missing = [name for name in _REQUIRED_CLAIMS[kind] if not payload.get(name)]
        if missing:
            raise ValueError(f"{kind.value} token payload missing {missing}")
        now = int(self._clock())
        claims: Dict[str, Any] = dict(payload)
        claims.update({"kind": kind.value, "iat": now, "exp": now + self.ttl_seconds})
        if self.issuer:
            claims["iss"] = self.issuer
        if self.audience:
            claims["aud"] = self.audience
        return self._encode_jwt(claims)

    def verify(self, token: str, kind: TokenKind) -> Dict[str, Any]:
        """Return the caller payload of a valid ``kind`` token.

        Raises ``InvalidTokenError`` for a bad signature, a foreign algorithm,
        a passed expiry, a kind mismatch or a structurally malformed string.
        """
        claims = self.decode(token, kind)
        return {k: v for k, v in claims.items() if k not in _RESERVED_CLAIMS}

    def decode(self, token: str, kind: TokenKind) -> Dict[str, Any]:
        """Like ``verify`` but keeps the registered claims (``iat``, ``exp``...)."""
        kind = TokenKind(kind)
        claims = self._decode_jwt(token)
        if claims.get("kind") != kind.value:
            raise InvalidTokenError("token kind mismatch")
        if self.issuer and claims.get("iss") != self.issuer:
            raise InvalidTokenError("token issuer mismatch")
        if self.audience:
            aud = claims.get("aud")
            if not (aud == self.audience or (isinstance(aud, list) and self.audience in aud)):
                raise InvalidTokenError("token audience mismatch")
        try:
            exp = float(claims["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("token has no expiry")
        if exp <= self._clock():
            raise InvalidTokenError("token expired")
        for name in _REQUIRED_CLAIMS[kind]:
            if not claims.get(name):
                raise InvalidTokenError(f"token missing {name}")
        return claims

    # -- typed helpers -----------------------------------------------------

    def issue_app_token(self, user: User) -> str:
        return self.sign(
            {"userId": user.id, "providerCustomerId": user.provider_customer_id},
            TokenKind.APP,
        )

    def read_app_token(self, token: str) -> AppTokenClaims:
        payload = self.verify(token, TokenKind.APP)
        return AppTokenClaims(
            user_id=str(payload["userId"]),
            provider_customer_id=str(payload["providerCustomerId"]),
        )

    def session_claims_for(
        self, user: User, *, access_token: Optional[str] = None
    ) -> SessionTokenClaims:
        return SessionTokenClaims(
            customer_id=user.provider_customer_id,
            issued_at=int(self._clock()),
            user_id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            display_name=user.display_name,
            access_token=access_token,
        )

    def issue_session_token(self, claims: SessionTokenClaims) -> str:
        return self.sign(claims.to_payload(), TokenKind.SESSION)

    def read_session_token(self, token: str) -> SessionTokenClaims:
        return SessionTokenClaims.from_payload(self.verify(token, TokenKind.SESSION))


__all__ = [
    "TokenKind",
    "TokenCodec",
    "AppTokenClaims",
    "SessionTokenClaims",
    "DEFAULT_TOKEN_TTL_SECONDS",
]
