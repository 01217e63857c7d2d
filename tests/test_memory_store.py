import json

import pytest

from communityhub.storage.errors import ConstraintViolation
from communityhub.storage.memory import MemoryStore
from communityhub.storage.models import Community, UserProfileUpdate


def _profile(**overrides) -> UserProfileUpdate:
    values = dict(
        email="jane@example.com",
        first_name="Jane",
        last_name="Doe",
        username="jane_45678",
        avatar_color="hsl(10, 70%, 50%)",
        community_id="gaming",
    )
    values.update(overrides)
    return UserProfileUpdate(**values)


def test_first_start_seeds_default_communities(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    assert {c.id for c in store.list_communities()} == {"the_bar_wardrobe", "gaming", "movies"}
    assert (tmp_path / "state" / "community_store.json").exists()


def test_state_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.upsert_user("7012345678", _profile())
    post = store.create_post(community_id="gaming", title="Hello", owner_user_id=user.id)
    comment = store.create_comment(post_id=post.id, text="hi", owner_user_id=user.id)
    store.vote_post(post.id, user.id, 1)
    store.vote_comment(comment.id, user.id, -1)

    reloaded = MemoryStore(fs_root=str(tmp_path))

    assert reloaded.find_user_by_provider_id("7012345678").id == user.id
    assert reloaded.get_post(post.id).upvotes == 1
    assert reloaded.get_comment(comment.id).displayed_score == -1
    assert reloaded.post_votes == {(post.id, user.id): 1}
    assert reloaded.comment_votes == {(comment.id, user.id): -1}


def test_upsert_user_is_keyed_by_provider_id(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    first = store.upsert_user("7012345678", _profile())
    second = store.upsert_user("7012345678", _profile(email="new@example.com", community_id="movies"))

    assert first.id == second.id
    assert second.email == "new@example.com"
    assert second.community_id == "movies"
    assert len(store.list_users()) == 1


def test_upsert_user_requires_provider_id(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    with pytest.raises(ConstraintViolation):
        store.upsert_user("", _profile())


def test_post_requires_existing_community(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    with pytest.raises(ConstraintViolation):
        store.create_post(community_id="nope", title="t", owner_user_id=None)


def test_duplicate_post_id_is_rejected(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_post(community_id="gaming", title="t", owner_user_id=None, post_id="p1")
    with pytest.raises(ConstraintViolation):
        store.create_post(community_id="gaming", title="t2", owner_user_id=None, post_id="p1")


def test_delete_post_cascades(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    post = store.create_post(community_id="gaming", title="t", owner_user_id="u1")
    comment = store.create_comment(post_id=post.id, text="c", owner_user_id="u1")
    store.vote_post(post.id, "u2", 1)
    store.vote_comment(comment.id, "u2", 1)

    assert store.delete_post(post.id)

    assert store.get_comment(comment.id) is None
    assert store.post_votes == {}
    assert store.comment_votes == {}
    assert not store.delete_post(post.id)


def test_update_ignores_immutable_fields(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    post = store.create_post(community_id="gaming", title="t", owner_user_id="u1")
    updated = store.update_post(post.id, {"title": "new", "owner_user_id": "u2", "upvotes": 99})
    assert updated.title == "new"
    assert updated.owner_user_id == "u1"
    assert updated.upvotes == 0
    assert store.update_post("missing", {"title": "x"}) is None


def test_upsert_community_persists(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.upsert_community(Community(id="books", name="Books", tags=["books"]))
    snapshot = json.loads((tmp_path / "state" / "community_store.json").read_text())
    assert "books" in {c["id"] for c in snapshot["communities"]}


def test_list_posts_filters_by_community(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_post(community_id="gaming", title="g", owner_user_id=None)
    store.create_post(community_id="movies", title="m", owner_user_id=None)
    assert [p.title for p in store.list_posts("movies")] == ["m"]
    assert len(store.list_posts()) == 2
