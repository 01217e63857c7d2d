import importlib.util
from pathlib import Path

import pytest

from communityhub.storage.memory import MemoryStore

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "seed_forum.py"


@pytest.fixture(scope="module")
def seed_module():
    spec = importlib.util.spec_from_file_location("seed_forum", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_seed_inserts_legacy_posts_once(seed_module, tmp_path):
    store = MemoryStore(fs_root=str(tmp_path / "seed"))

    first = seed_module.seed_forum(store)
    second = seed_module.seed_forum(store)

    # communities already exist from the store's own first-start seeding
    assert first == {"communities": [], "posts": ["p-gaming-1", "p-movies-1", "p-bar-1"]}
    assert second == {"communities": [], "posts": []}
    post = store.get_post("p-gaming-1")
    assert post.owner_user_id == "legacy"
    assert post.author_name == "Moderator"


def test_seed_restores_missing_community(seed_module, tmp_path):
    store = MemoryStore(fs_root=str(tmp_path / "seed"))
    del store.communities["movies"]

    result = seed_module.seed_forum(store)

    assert result["communities"] == ["movies"]
    assert store.get_community("movies") is not None


def test_dry_run_writes_nothing(seed_module, tmp_path):
    store = MemoryStore(fs_root=str(tmp_path / "seed"))
    result = seed_module.seed_forum(store, dry_run=True)
    assert len(result["posts"]) == 3
    assert store.list_posts() == []
