from __future__ import annotations

import asyncio
import re
from typing import Iterable, Optional, Protocol

from communityhub.logging import get_logger
from communityhub.service.errors import ValidationError
from communityhub.service.shopify import ProviderProfile, normalize_customer_id
from communityhub.storage.models import User, UserProfileUpdate

logger = get_logger(__name__)

DEFAULT_COMMUNITY_ID = "the_bar_wardrobe"
COMMUNITY_TAG_PREFIX = "community:"
USERNAME_SUFFIX_LENGTH = 5

_NON_SLUG = re.compile(r"[^a-z0-9_]")


class IdentityStore(Protocol):
    def find_user_by_provider_id(self, provider_customer_id: str) -> Optional[User]: ...

    def upsert_user(self, provider_customer_id: str, profile: UserProfileUpdate) -> User: ...


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def string_hash(value: str) -> int:
    """``(h << 5) - h + c`` over UTF-16 code units, JavaScript number semantics.

    Only the shifted term wraps to int32; the running value itself is never
    clamped, so long ids drift outside the int32 range.
    """
    h = 0
    encoded = value.encode("utf-16-le")
    for i in range(0, len(encoded), 2):
        unit = encoded[i] | (encoded[i + 1] << 8)
        h = unit + _to_int32(_to_int32(h) << 5) - h
    return h


def avatar_color(provider_customer_id: str) -> str:
    """Deterministic HSL colour for a customer id."""
    h = abs(string_hash(provider_customer_id))
    hue = h % 360
    saturation = 60 + h % 20
    lightness = 45 + h % 15
    return f"hsl({hue}, {saturation}%, {lightness}%)"


def derive_username(email: Optional[str], provider_customer_id: str) -> str:
    """``<slug>_<last 5 chars of id>``; slug is the email local part or ``customer<id>``."""
    local_part = email.split("@", 1)[0] if email and "@" in email else (email or "")
    base = local_part or f"customer{provider_customer_id}"
    slug = _NON_SLUG.sub("", base.lower())
    if not slug:
        slug = _NON_SLUG.sub("", f"customer{provider_customer_id}".lower()) or "customer"
    return f"{slug}_{provider_customer_id[-USERNAME_SUFFIX_LENGTH:]}"


def community_from_tags(
    tags: Iterable[str],
    *,
    prefix: str = COMMUNITY_TAG_PREFIX,
    fallback: str = DEFAULT_COMMUNITY_ID,
) -> str:
    for tag in tags:
        tag = tag.strip()
        if tag.startswith(prefix):
            community_id = tag[len(prefix):].strip()
            if community_id:
                return community_id
    return fallback


class IdentityResolver:
    """Maps a provider profile onto a stored user, creating it on first login."""

    def __init__(
        self,
        store: IdentityStore,
        *,
        default_community_id: str = DEFAULT_COMMUNITY_ID,
        community_tag_prefix: str = COMMUNITY_TAG_PREFIX,
    ) -> None:
        self.store = store
        self.default_community_id = default_community_id
        self.community_tag_prefix = community_tag_prefix

    def profile_update(self, profile: ProviderProfile) -> tuple[str, UserProfileUpdate]:
        provider_customer_id = normalize_customer_id(profile.provider_customer_id)
        if not provider_customer_id:
            raise ValidationError("provider profile has no customer id")
        return provider_customer_id, UserProfileUpdate(
            email=profile.email,
            first_name=profile.first_name,
            last_name=profile.last_name,
            username=derive_username(profile.email, provider_customer_id),
            avatar_color=avatar_color(provider_customer_id),
            community_id=community_from_tags(
                profile.tags,
                prefix=self.community_tag_prefix,
                fallback=self.default_community_id,
            ),
        )

    async def resolve(self, profile: ProviderProfile) -> User:
        provider_customer_id, update = self.profile_update(profile)
        # Store calls block on I/O for the postgres backend
        user = await asyncio.to_thread(self.store.upsert_user, provider_customer_id, update)
        logger.info(
            "identity_resolved",
            user_id=user.id,
            provider_customer_id=provider_customer_id,
            community_id=user.community_id,
        )
        return user


__all__ = [
    "IdentityResolver",
    "avatar_color",
    "community_from_tags",
    "derive_username",
    "string_hash",
]
