import re

import pytest

from communityhub.service.errors import ValidationError
from communityhub.service.identity import (
    IdentityResolver,
    avatar_color,
    community_from_tags,
    derive_username,
    string_hash,
)
from communityhub.service.shopify import ProviderProfile
from communityhub.storage.memory import MemoryStore

HSL = re.compile(r"^hsl\((\d+), (\d+)%, (\d+)%\)$")


class TestUsername:
    def test_email_local_part_is_slugged(self):
        assert derive_username("Jane.Doe+shop@example.com", "7012345678") == "janedoeshop_45678"

    def test_missing_email_uses_customer_prefix(self):
        assert derive_username(None, "C123") == "customerc123_C123"

    def test_symbols_only_local_part_falls_back(self):
        assert derive_username("...@example.com", "99") == "customer99_99"


class TestAvatarColor:
    def test_is_deterministic(self):
        assert avatar_color("7012345678") == avatar_color("7012345678")

    def test_components_are_in_range(self):
        for customer_id in ("1", "C123", "7012345678", "gid-ish-value"):
            hue, sat, light = (int(x) for x in HSL.match(avatar_color(customer_id)).groups())
            assert 0 <= hue < 360
            assert 60 <= sat < 80
            assert 45 <= light < 60

    def test_hash_matches_31_polynomial(self):
        # "ab" -> 97 * 31 + 98
        assert string_hash("ab") == 3105
        assert string_hash("") == 0

    def test_running_value_is_not_clamped(self):
        # only the shifted term wraps; the sum runs past int32
        assert string_hash("7654321098765") == -6027763781

    def test_realistic_customer_id_colour(self):
        assert avatar_color("7654321098765") == "hsl(101, 61%, 56%)"


class TestCommunityFromTags:
    def test_first_prefixed_tag_wins(self):
        assert community_from_tags(["vip", "community:gaming", "community:movies"]) == "gaming"

    def test_fallback_when_absent(self):
        assert community_from_tags(["vip"]) == "the_bar_wardrobe"
        assert community_from_tags([], fallback="movies") == "movies"

    def test_empty_suffix_is_ignored(self):
        assert community_from_tags(["community:", " community:movies "]) == "movies"


@pytest.fixture
def resolver(tmp_path):
    return IdentityResolver(MemoryStore(fs_root=str(tmp_path)))


async def test_first_login_creates_user(resolver):
    profile = ProviderProfile(
        provider_customer_id="C123", email=None, tags=("community:gaming",)
    )
    user = await resolver.resolve(profile)

    assert user.provider_customer_id == "C123"
    assert user.community_id == "gaming"
    assert user.username.endswith("C123")
    assert user.avatar_color == avatar_color("C123")


async def test_repeat_login_updates_same_user(resolver):
    first = await resolver.resolve(ProviderProfile(provider_customer_id="C123", first_name="Old"))
    second = await resolver.resolve(
        ProviderProfile(provider_customer_id="C123", first_name="New", email="new@example.com")
    )

    assert second.id == first.id
    assert second.first_name == "New"
    assert second.email == "new@example.com"
    assert second.avatar_color == first.avatar_color
    assert len(resolver.store.users) == 1


async def test_gid_and_bare_ids_resolve_to_one_user(resolver):
    a = await resolver.resolve(ProviderProfile(provider_customer_id="gid://shopify/Customer/55"))
    b = await resolver.resolve(ProviderProfile(provider_customer_id="55"))
    assert a.id == b.id


async def test_profile_without_id_is_rejected(resolver):
    with pytest.raises(ValidationError):
        await resolver.resolve(ProviderProfile(provider_customer_id=""))
