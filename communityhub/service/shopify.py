"""Shopify Customer Account API client.

Covers the three provider calls a login needs: the authorization redirect, the
code-for-token exchange and the GraphQL profile query. Every network or
payload failure is translated into ``TokenExchangeError`` or
``ProfileFetchError`` here; raw provider bodies are logged, never returned.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import urlencode

import httpx

from communityhub.config import Settings
from communityhub.logging import get_logger
from communityhub.service.errors import (
    ConfigurationError,
    ProfileFetchError,
    TokenExchangeError,
)

logger = get_logger(__name__)

AUTH_URL_TEMPLATE = "https://shopify.com/authentication/{shop_id}/login"
TOKEN_URL = "https://shopify.com/authentication/oauth/token"
GRAPHQL_URL_TEMPLATE = "https://shopify.com/{shop_domain}/account/customer/api/{version}/graphql"

_CUSTOMER_GID_PREFIX = "gid://shopify/Customer/"
_LOGGED_BODY_LIMIT = 500

CUSTOMER_PROFILE_QUERY = """
query {
  customer {
    id
    emailAddress {
      emailAddress
    }
    firstName
    lastName
    phoneNumber {
      phoneNumber
    }
    metafields(first: 10) {
      nodes {
        key
        namespace
        value
        type
      }
    }
  }
}
"""


@dataclass(frozen=True)
class TokenResponse:
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    id_token: Optional[str] = None
    scope: Optional[str] = None


@dataclass(frozen=True)
class ProviderProfile:
    """Customer identity as returned by the provider, already validated."""

    provider_customer_id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    tags: Tuple[str, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)


def normalize_customer_id(raw: Any) -> str:
    """Reduce ``gid://shopify/Customer/<n>`` to ``<n>``; other ids pass through trimmed."""
    value = str(raw or "").strip()
    if value.startswith(_CUSTOMER_GID_PREFIX):
        value = value[len(_CUSTOMER_GID_PREFIX):].split("?", 1)[0]
    return value


def split_tags(raw: Any) -> List[str]:
    """Accept a comma-separated string or a list and return trimmed, non-empty tags."""
    if raw is None:
        return []
    if isinstance(raw, str):
        items: Iterable[Any] = raw.split(",")
    elif isinstance(raw, (list, tuple)):
        items = raw
    else:
        return []
    return [str(item).strip() for item in items if str(item).strip()]


def _metafield_nodes(customer: Mapping[str, Any]) -> List[Mapping[str, Any]]:
    metafields = customer.get("metafields")
    if isinstance(metafields, Mapping):
        nodes = metafields.get("nodes") or []
    elif isinstance(metafields, list):
        nodes = metafields
    else:
        nodes = []
    return [node for node in nodes if isinstance(node, Mapping)]


def _tags_from_customer(customer: Mapping[str, Any], metafields: List[Mapping[str, Any]]) -> Tuple[str, ...]:
    tags = split_tags(customer.get("tags"))
    for node in metafields:
        key = str(node.get("key") or "").lower()
        namespace = str(node.get("namespace") or "").lower()
        if key == "tags":
            tags.extend(split_tags(node.get("value")))
        elif namespace == "community" and node.get("value"):
            tags.append(f"community:{str(node['value']).strip()}")
    # keep first occurrence order
    return tuple(dict.fromkeys(tags))


def parse_profile(payload: Any) -> ProviderProfile:
    """Turn a GraphQL response body into a ``ProviderProfile``.

    Raises ``ProfileFetchError`` when the body reports errors or lacks the
    ``customer`` object or its id.
    """
    if not isinstance(payload, Mapping):
        raise ProfileFetchError("profile response is not an object")
    if payload.get("errors"):
        logger.error("shopify_profile_graphql_errors", errors=payload.get("errors"))
        raise ProfileFetchError("profile query returned errors")
    data = payload.get("data")
    customer = data.get("customer") if isinstance(data, Mapping) else None
    if not isinstance(customer, Mapping):
        raise ProfileFetchError("profile response has no customer")
    provider_customer_id = normalize_customer_id(customer.get("id"))
    if not provider_customer_id:
        raise ProfileFetchError("customer id missing from profile")

    email_field = customer.get("emailAddress")
    email = email_field.get("emailAddress") if isinstance(email_field, Mapping) else customer.get("email")
    phone_field = customer.get("phoneNumber")
    phone = phone_field.get("phoneNumber") if isinstance(phone_field, Mapping) else None
    metafields = _metafield_nodes(customer)

    return ProviderProfile(
        provider_customer_id=provider_customer_id,
        email=email or None,
        first_name=customer.get("firstName") or None,
        last_name=customer.get("lastName") or None,
        phone=phone,
        tags=_tags_from_customer(customer, metafields),
        metadata={
            "gid": customer.get("id"),
            "metafields": [dict(node) for node in metafields],
        },
    )


def callback_hmac(params: Mapping[str, str], secret: str) -> str:
    message = "&".join(
        f"{key}={params[key]}" for key in sorted(params) if key not in {"hmac", "signature"}
    )
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


class ShopifyCustomerAccountClient:
    """Customer Account API OAuth client backed by ``httpx.AsyncClient``."""

    def __init__(
        self,
        *,
        client_id: Optional[str],
        client_secret: Optional[str],
        shop_id: Optional[str],
        shop_domain: Optional[str],
        redirect_uri: Optional[str],
        scopes: str = "openid email customer-account-api:full",
        locale: Optional[str] = "en",
        region_country: Optional[str] = None,
        api_version: str = "2024-01",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.shop_id = shop_id
        self.shop_domain = shop_domain
        self.redirect_uri = redirect_uri
        self.scopes = scopes
        self.locale = locale
        self.region_country = region_country
        self.api_version = api_version
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(
        cls, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "ShopifyCustomerAccountClient":
        return cls(
            client_id=settings.shopify_client_id,
            client_secret=settings.shopify_client_secret,
            shop_id=settings.shopify_shop_id,
            shop_domain=settings.shopify_shop_domain,
            redirect_uri=settings.shopify_redirect_uri,
            scopes=settings.shopify_scopes,
            locale=settings.shopify_locale,
            region_country=settings.shopify_region_country,
            api_version=settings.shopify_api_version,
            timeout=settings.shopify_http_timeout_seconds,
            transport=transport,
        )

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self._transport
        )

    @property
    def graphql_url(self) -> str:
        return GRAPHQL_URL_TEMPLATE.format(
            shop_domain=self.shop_domain, version=self.api_version
        )

    def build_auth_url(self, state: str, nonce: str) -> str:
        if not self.client_id or not self.shop_id:
            raise ConfigurationError("SHOPIFY_CLIENT_ID and SHOPIFY_SHOP_ID must be configured")
        if not self.redirect_uri:
            raise ConfigurationError("SHOPIFY_REDIRECT_URI must be configured")
        params = {
            "client_id": self.client_id,
            # Must equal the URI registered with the Shopify app or the provider refuses
            "redirect_uri": self.redirect_uri,
            "scope": self.scopes,
            "response_type": "code",
            "state": state,
            "nonce": nonce,
        }
        if self.locale:
            params["locale"] = self.locale
        if self.region_country:
            params["region_country"] = self.region_country
        return f"{AUTH_URL_TEMPLATE.format(shop_id=self.shop_id)}?{urlencode(params)}"

    async def exchange_code_for_token(self, code: str) -> TokenResponse:
        if not self.client_id or not self.client_secret or not self.redirect_uri:
            raise ConfigurationError("Shopify client credentials are not configured")
        form = {
            "grant_type": "authorization_code",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "redirect_uri": self.redirect_uri,
        }
        try:
            async with self._http() as client:
                response = await client.post(
                    TOKEN_URL, data=form, headers={"Accept": "application/json"}
                )
        except httpx.HTTPError as exc:
            logger.error(
                "oauth_token_exchange_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise TokenExchangeError("token exchange request failed") from exc

        if response.status_code >= 400:
            logger.error(
                "oauth_token_exchange_failed",
                status_code=response.status_code,
                body=response.text[:_LOGGED_BODY_LIMIT],
            )
            raise TokenExchangeError(
                "token exchange rejected", detail={"status_code": response.status_code}
            )
        try:
            body = response.json()
        except ValueError as exc:
            logger.error("oauth_token_parse_error", body=response.text[:_LOGGED_BODY_LIMIT])
            raise TokenExchangeError("token response was not JSON") from exc

        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not access_token:
            logger.error("oauth_no_access_token", keys=sorted(body) if isinstance(body, dict) else None)
            raise TokenExchangeError("token response missing access_token")
        expires_in = body.get("expires_in")
        return TokenResponse(
            access_token=access_token,
            refresh_token=body.get("refresh_token"),
            expires_in=int(expires_in) if isinstance(expires_in, (int, float)) else None,
            id_token=body.get("id_token"),
            scope=body.get("scope"),
        )

    async def fetch_profile(self, access_token: str) -> ProviderProfile:
        if not self.shop_domain:
            raise ConfigurationError("SHOPIFY_SHOP_DOMAIN must be configured")
        try:
            async with self._http() as client:
                response = await client.post(
                    self.graphql_url,
                    json={"query": CUSTOMER_PROFILE_QUERY},
                    headers={
                        "Content-Type": "application/json",
                        "Authorization": f"Bearer {access_token}",
                    },
                )
        except httpx.HTTPError as exc:
            logger.error(
                "oauth_profile_fetch_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ProfileFetchError("profile request failed") from exc

        if response.status_code >= 400:
            logger.error(
                "oauth_profile_fetch_failed",
                status_code=response.status_code,
                body=response.text[:_LOGGED_BODY_LIMIT],
            )
            raise ProfileFetchError(
                "profile request rejected", detail={"status_code": response.status_code}
            )
        try:
            payload = response.json()
        except ValueError as exc:
            logger.error("oauth_profile_parse_error", body=response.text[:_LOGGED_BODY_LIMIT])
            raise ProfileFetchError("profile response was not JSON") from exc
        return parse_profile(payload)

    def verify_callback_hmac(self, params: Mapping[str, str]) -> bool:
        """Check the optional ``hmac`` query parameter on the callback.

        Passes when the provider sent no ``hmac`` or no client secret is
        configured; otherwise compares in constant time.
        """
        received = params.get("hmac")
        if not received or not self.client_secret:
            return True
        expected = callback_hmac(params, self.client_secret)
        return hmac.compare_digest(expected, received)


__all__ = [
    "ProviderProfile",
    "TokenResponse",
    "ShopifyCustomerAccountClient",
    "normalize_customer_id",
    "parse_profile",
    "split_tags",
    "callback_hmac",
]
