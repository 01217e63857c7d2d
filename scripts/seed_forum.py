#!/usr/bin/env python3
"""Seed the default communities and a few legacy posts.

Usage:
    # Against PostgreSQL:
    DATABASE_URL=postgresql://localhost:5432/communityhub python scripts/seed_forum.py

    # Against the JSON-backed memory store:
    python scripts/seed_forum.py --memory --fs-root /tmp/communityhub

Legacy posts are owned by the placeholder ``legacy`` owner, so any signed-in
user may edit them while nobody may edit legacy comments.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

LEGACY_OWNER_ID = "legacy"
DEFAULT_AVATAR = "/images/avatars/default-avatar.jpg"

LEGACY_POSTS = (
    {
        "post_id": "p-gaming-1",
        "community_id": "gaming",
        "title": "Welcome to the Gaming community",
        "content": "Share your latest builds, wins, or game recommendations.",
        "author_name": "Moderator",
    },
    {
        "post_id": "p-movies-1",
        "community_id": "movies",
        "title": "Best movies of the year?",
        "content": "Drop your must-watch picks.",
        "author_name": "FilmBuff",
    },
    {
        "post_id": "p-bar-1",
        "community_id": "the_bar_wardrobe",
        "title": "Outfit inspo thread",
        "content": "Share your fits and styling tips.",
        "author_name": "Stylist",
    },
)


def seed_forum(store, *, dry_run: bool = False) -> dict:
    """Insert missing communities and legacy posts; existing rows are left untouched."""
    from communityhub.storage.common import default_communities

    created = {"communities": [], "posts": []}
    for community in default_communities():
        if store.get_community(community.id):
            continue
        if not dry_run:
            store.upsert_community(community)
        created["communities"].append(community.id)

    for row in LEGACY_POSTS:
        if store.get_post(row["post_id"]):
            continue
        if not dry_run:
            store.create_post(
                owner_user_id=LEGACY_OWNER_ID,
                author_avatar=DEFAULT_AVATAR,
                **row,
            )
        created["posts"].append(row["post_id"])
    return created


def main():
    parser = argparse.ArgumentParser(
        description="Seed communities and legacy posts for Community Hub",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--memory",
        action="store_true",
        help="Seed the JSON-backed memory store instead of PostgreSQL",
    )
    parser.add_argument(
        "--fs-root",
        default=os.environ.get("SHARED_FS_ROOT"),
        help="Shared filesystem root (or set SHARED_FS_ROOT env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be inserted without writing",
    )
    args = parser.parse_args()

    if args.memory or not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using the memory store (set DATABASE_URL for PostgreSQL)")
    if args.fs_root:
        os.environ["SHARED_FS_ROOT"] = args.fs_root
    elif not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/communityhub-seed"
    # OAuth state is irrelevant to seeding
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        from communityhub.service.runtime import get_runtime

        result = seed_forum(get_runtime().store, dry_run=args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    prefix = "[DRY RUN] Would create" if args.dry_run else "Created"
    print(f"{prefix} {len(result['communities'])} communities: {', '.join(result['communities']) or '-'}")
    print(f"{prefix} {len(result['posts'])} posts: {', '.join(result['posts']) or '-'}")


if __name__ == "__main__":
    main()
