from __future__ import annotations

import ipaddress
import json
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Protocol
from urllib.parse import urlencode, urlparse

from communityhub.config import Settings
from communityhub.logging import get_logger
from communityhub.service.errors import (
    AuthenticationError,
    InvalidStateError,
    InvalidTokenError,
    ProviderError,
    ServiceError,
    TokenExchangeError,
)
from communityhub.service.identity import IdentityResolver
from communityhub.service.shopify import ProviderProfile, TokenResponse
from communityhub.service.state_store import OAuthState, StateStore
from communityhub.service.tokens import SessionTokenClaims, TokenCodec
from communityhub.storage.models import User

logger = get_logger(__name__)

_STATE_BYTES = 32


class OAuthProvider(Protocol):
    def build_auth_url(self, state: str, nonce: str) -> str: ...

    async def exchange_code_for_token(self, code: str) -> TokenResponse: ...

    async def fetch_profile(self, access_token: str) -> ProviderProfile: ...

    def verify_callback_hmac(self, params: Mapping[str, str]) -> bool: ...


@dataclass
class AuthContext:
    user_id: str
    provider_customer_id: str


@dataclass
class LoginRedirect:
    url: str
    state: str


@dataclass
class LoginResult:
    user: User
    session_token: str
    app_token: str
    return_to: str


@dataclass
class SessionView:
    authenticated: bool
    user: Optional[Dict[str, Any]] = None
    # an unusable cookie was presented and should be cleared
    clear_cookie: bool = False


def generate_state_token() -> str:
    return secrets.token_hex(_STATE_BYTES)


def sanitize_return_to(value: Optional[str]) -> str:
    """Only same-site relative paths survive; anything else collapses to ``/``."""
    if not value or not isinstance(value, str):
        return "/"
    value = value.strip()
    if not value.startswith("/") or value.startswith("//") or "\\" in value:
        return "/"
    if any(ord(ch) < 0x20 for ch in value):
        return "/"
    return value


def extract_root_domain(url: str) -> Optional[str]:
    """``https://forum.example.com`` -> ``.example.com``.

    Single-label hosts and IP literals get ``None`` (a host-only cookie).
    """
    try:
        hostname = urlparse(url).hostname
    except ValueError:
        return None
    if not hostname:
        return None
    try:
        ipaddress.ip_address(hostname)
        return None
    except ValueError:
        pass
    parts = hostname.split(".")
    if len(parts) < 2:
        return None
    return "." + ".".join(parts[-2:])


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _id_token_nonce(id_token: str) -> Optional[str]:
    parts = id_token.split(".")
    if len(parts) < 2:
        raise TokenExchangeError("malformed id_token")
    try:
        claims = json.loads(TokenCodec._decode_segment(parts[1]))
    except (ValueError, TypeError):
        raise TokenExchangeError("malformed id_token")
    if not isinstance(claims, dict):
        raise TokenExchangeError("malformed id_token")
    nonce = claims.get("nonce")
    return str(nonce) if nonce is not None else None


class AuthService:
    """Login redirect dance, session cookies and bearer authentication."""

    def __init__(
        self,
        *,
        settings: Settings,
        state_store: StateStore,
        tokens: TokenCodec,
        provider: OAuthProvider,
        identity: IdentityResolver,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.state_store = state_store
        self.tokens = tokens
        self.provider = provider
        self.identity = identity
        self._clock = clock
        self.logger = logger

    # -- redirect targets --------------------------------------------------

    def frontend_callback_url(self, app_token: str, return_to: str) -> str:
        query = urlencode({"token": app_token, "returnTo": return_to})
        return f"{self.settings.frontend_url}{self.settings.auth_callback_path}?{query}"

    def error_redirect_url(self, code: str, description: Optional[str] = None) -> str:
        params = {"error": code}
        if description:
            params["error_description"] = description
        return f"{self.settings.frontend_url}{self.settings.auth_error_path}?{urlencode(params)}"

    def redirect_for_error(self, error: ServiceError) -> str:
        """Error page URL for a failed login; only provider errors carry a description."""
        description = error.description if isinstance(error, ProviderError) else None
        return self.error_redirect_url(error.error_code, description)

    def cookie_domain(self) -> Optional[str]:
        if self.settings.cookie_domain:
            return self.settings.cookie_domain
        return extract_root_domain(self.settings.frontend_url)

    # -- login -------------------------------------------------------------

    async def initiate_login(self, return_to: Optional[str] = None) -> LoginRedirect:
        state = generate_state_token()
        nonce = generate_state_token()
        url = self.provider.build_auth_url(state, nonce)
        await self.state_store.put(
            state,
            OAuthState(nonce=nonce, created_at=self._clock(), return_to=sanitize_return_to(return_to)),
        )
        self.logger.info("oauth_login_initiated", state_prefix=state[:8])
        return LoginRedirect(url=url, state=state)

    async def handle_callback(
        self,
        *,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
        error_description: Optional[str] = None,
        params: Optional[Mapping[str, str]] = None,
    ) -> LoginResult:
        """Run one callback through validation, exchange, upsert and issuance.

        Steps are strictly sequential; each one's output feeds the next.
        Raises an ``OAuthFlowError`` subclass on any failure.
        """
        if error:
            if state:
                await self.state_store.delete(state)
            self.logger.warning(
                "oauth_provider_error", error=error, description=error_description
            )
            raise ProviderError(error, error_description)
        if not code:
            raise InvalidStateError("authorization code missing", error_code="missing_code")
        if not state:
            raise InvalidStateError("state missing", error_code="missing_state")
        if params is not None and not self.provider.verify_callback_hmac(params):
            self.logger.warning("oauth_callback_hmac_mismatch", state_prefix=state[:8])
            raise InvalidStateError("callback signature mismatch", error_code="invalid_signature")

        stored = await self.state_store.pop(state)
        if stored is None:
            self.logger.warning("oauth_state_invalid", state_prefix=state[:8])
            raise InvalidStateError("state is unknown, expired or already used")

        token_response = await self.provider.exchange_code_for_token(code)
        if token_response.id_token:
            nonce = _id_token_nonce(token_response.id_token)
            if nonce is not None and nonce != stored.nonce:
                self.logger.warning("oauth_nonce_mismatch", state_prefix=state[:8])
                raise TokenExchangeError("id_token nonce mismatch")

        profile = await self.provider.fetch_profile(token_response.access_token)
        user = await self.identity.resolve(profile)

        embedded = token_response.access_token if self.settings.session_embed_provider_token else None
        session_token = self.tokens.issue_session_token(
            self.tokens.session_claims_for(user, access_token=embedded)
        )
        app_token = self.tokens.issue_app_token(user)
        self.logger.info("oauth_login_completed", user_id=user.id)
        return LoginResult(
            user=user,
            session_token=session_token,
            app_token=app_token,
            return_to=stored.return_to,
        )

    # -- session cookie ----------------------------------------------------

    @staticmethod
    def session_user(claims: SessionTokenClaims) -> Dict[str, Any]:
        return {
            "id": claims.user_id,
            "customerId": claims.customer_id,
            "email": claims.email,
            "firstName": claims.first_name,
            "lastName": claims.last_name,
            "displayName": claims.display_name,
        }

    def get_session(self, cookie: Optional[str]) -> SessionView:
        if not cookie:
            return SessionView(authenticated=False)
        try:
            claims = self.tokens.read_session_token(cookie)
        except InvalidTokenError as exc:
            self.logger.info("session_cookie_rejected", reason=exc.message)
            return SessionView(authenticated=False, clear_cookie=True)
        return SessionView(authenticated=True, user=self.session_user(claims))

    def refresh_session(self, cookie: Optional[str]) -> tuple[str, SessionTokenClaims]:
        """Re-sign the cookie's claims with a fresh expiry."""
        if not cookie:
            raise InvalidTokenError("no session cookie")
        claims = self.tokens.read_session_token(cookie)
        return self.tokens.issue_session_token(claims), claims

    # -- bearer ------------------------------------------------------------

    def authenticate_bearer(self, authorization: Optional[str]) -> AuthContext:
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        claims = self.tokens.read_app_token(token)
        return AuthContext(
            user_id=claims.user_id, provider_customer_id=claims.provider_customer_id
        )


__all__ = [
    "AuthContext",
    "AuthService",
    "LoginRedirect",
    "LoginResult",
    "SessionView",
    "extract_bearer",
    "extract_root_domain",
    "sanitize_return_to",
]
