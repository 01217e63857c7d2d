from __future__ import annotations

import json
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from communityhub.logging import get_logger
from communityhub.storage.common import (
    comment_vote_transition,
    default_communities,
    post_vote_transition,
)
from communityhub.storage.errors import ConstraintViolation
from communityhub.storage.memory import COMMENT_MUTABLE_FIELDS, POST_MUTABLE_FIELDS
from communityhub.storage.models import (
    Comment,
    Community,
    Post,
    User,
    UserProfileUpdate,
    VoteOutcome,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS community (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT,
        icon TEXT,
        header_image TEXT,
        is_public BOOLEAN NOT NULL DEFAULT TRUE,
        tags JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS community_user (
        id UUID PRIMARY KEY,
        provider_customer_id TEXT NOT NULL UNIQUE,
        email TEXT,
        first_name TEXT,
        last_name TEXT,
        username TEXT NOT NULL,
        avatar_color TEXT NOT NULL,
        community_id TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS post (
        id TEXT PRIMARY KEY,
        community_id TEXT NOT NULL REFERENCES community(id),
        title TEXT NOT NULL,
        content TEXT NOT NULL DEFAULT '',
        owner_user_id TEXT,
        author_name TEXT,
        author_avatar TEXT,
        image_url TEXT,
        video_url TEXT,
        upvotes INTEGER NOT NULL DEFAULT 0,
        downvotes INTEGER NOT NULL DEFAULT 0,
        posted_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS comment (
        id TEXT PRIMARY KEY,
        post_id TEXT NOT NULL REFERENCES post(id) ON DELETE CASCADE,
        text TEXT NOT NULL,
        owner_user_id TEXT,
        author_name TEXT,
        author_avatar TEXT,
        displayed_score INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS post_vote (
        post_id TEXT NOT NULL REFERENCES post(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL,
        value SMALLINT NOT NULL CHECK (value IN (-1, 1)),
        PRIMARY KEY (post_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS comment_vote (
        comment_id TEXT NOT NULL REFERENCES comment(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL,
        value SMALLINT NOT NULL CHECK (value IN (-1, 1)),
        PRIMARY KEY (comment_id, user_id)
    )
    """,
)


class PostgresStore:
    """Postgres-backed store for users, communities, posts and votes."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()
        self._ensure_default_communities()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _ensure_default_communities(self) -> None:
        with self._connect() as conn:
            for community in default_communities():
                conn.execute(
                    """
                    INSERT INTO community (id, name, description, is_public, tags)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO NOTHING
                    """,
                    (
                        community.id,
                        community.name,
                        community.description,
                        community.is_public,
                        json.dumps(community.tags),
                    ),
                )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- row mapping -------------------------------------------------------

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            provider_customer_id=row["provider_customer_id"],
            email=row.get("email"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            username=row["username"],
            avatar_color=row["avatar_color"],
            community_id=row["community_id"],
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
        )

    @staticmethod
    def _row_to_community(row: Dict[str, Any]) -> Community:
        tags = row.get("tags") or []
        if isinstance(tags, str):
            tags = json.loads(tags)
        return Community(
            id=row["id"],
            name=row["name"],
            description=row.get("description"),
            icon=row.get("icon"),
            header_image=row.get("header_image"),
            is_public=row.get("is_public", True),
            tags=list(tags),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_post(row: Dict[str, Any]) -> Post:
        return Post(
            id=row["id"],
            community_id=row["community_id"],
            title=row["title"],
            content=row.get("content") or "",
            owner_user_id=row.get("owner_user_id"),
            author_name=row.get("author_name"),
            author_avatar=row.get("author_avatar"),
            image_url=row.get("image_url"),
            video_url=row.get("video_url"),
            upvotes=int(row.get("upvotes") or 0),
            downvotes=int(row.get("downvotes") or 0),
            posted_at=row["posted_at"],
            updated_at=row.get("updated_at") or row["posted_at"],
        )

    @staticmethod
    def _row_to_comment(row: Dict[str, Any]) -> Comment:
        return Comment(
            id=row["id"],
            post_id=row["post_id"],
            text=row["text"],
            owner_user_id=row.get("owner_user_id"),
            author_name=row.get("author_name"),
            author_avatar=row.get("author_avatar"),
            displayed_score=int(row.get("displayed_score") or 0),
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
        )

    # -- users -------------------------------------------------------------

    def find_user_by_provider_id(self, provider_customer_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM community_user WHERE provider_customer_id = %s",
                (provider_customer_id,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM community_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM community_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def upsert_user(self, provider_customer_id: str, profile: UserProfileUpdate) -> User:
        if not provider_customer_id:
            raise ConstraintViolation(
                "provider customer id is required", {"field": "provider_customer_id"}
            )
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO community_user (
                    id, provider_customer_id, email, first_name, last_name,
                    username, avatar_color, community_id
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (provider_customer_id) DO UPDATE SET
                    email = EXCLUDED.email,
                    first_name = EXCLUDED.first_name,
                    last_name = EXCLUDED.last_name,
                    username = EXCLUDED.username,
                    avatar_color = EXCLUDED.avatar_color,
                    community_id = EXCLUDED.community_id,
                    updated_at = now()
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    provider_customer_id,
                    profile.email,
                    profile.first_name,
                    profile.last_name,
                    profile.username,
                    profile.avatar_color,
                    profile.community_id,
                ),
            ).fetchone()
        return self._row_to_user(row)

    # -- communities -------------------------------------------------------

    def list_communities(self) -> List[Community]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM community ORDER BY lower(name)").fetchall()
        return [self._row_to_community(row) for row in rows]

    def get_community(self, community_id: str) -> Optional[Community]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM community WHERE id = %s", (community_id,)
            ).fetchone()
        return self._row_to_community(row) if row else None

    def upsert_community(self, community: Community) -> Community:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO community (id, name, description, icon, header_image, is_public, tags)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name,
                    description = EXCLUDED.description,
                    icon = EXCLUDED.icon,
                    header_image = EXCLUDED.header_image,
                    is_public = EXCLUDED.is_public,
                    tags = EXCLUDED.tags
                RETURNING *
                """,
                (
                    community.id,
                    community.name,
                    community.description,
                    community.icon,
                    community.header_image,
                    community.is_public,
                    json.dumps(community.tags),
                ),
            ).fetchone()
        return self._row_to_community(row)

    # -- posts -------------------------------------------------------------

    def list_posts(self, community_id: Optional[str] = None, limit: int = 100) -> List[Post]:
        with self._connect() as conn:
            if community_id:
                rows = conn.execute(
                    "SELECT * FROM post WHERE community_id = %s ORDER BY posted_at DESC LIMIT %s",
                    (community_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM post ORDER BY posted_at DESC LIMIT %s", (limit,)
                ).fetchall()
        return [self._row_to_post(row) for row in rows]

    def get_post(self, post_id: str) -> Optional[Post]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM post WHERE id = %s", (post_id,)).fetchone()
        return self._row_to_post(row) if row else None

    def create_post(
        self,
        *,
        community_id: str,
        title: str,
        content: str = "",
        owner_user_id: Optional[str],
        author_name: Optional[str] = None,
        author_avatar: Optional[str] = None,
        image_url: Optional[str] = None,
        video_url: Optional[str] = None,
        post_id: Optional[str] = None,
    ) -> Post:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO post (
                        id, community_id, title, content, owner_user_id,
                        author_name, author_avatar, image_url, video_url
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        post_id or str(uuid.uuid4()),
                        community_id,
                        title,
                        content,
                        owner_user_id,
                        author_name,
                        author_avatar,
                        image_url,
                        video_url,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "community does not exist", {"community_id": community_id}
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("post already exists", {"post_id": post_id})
        return self._row_to_post(row)

    def update_post(self, post_id: str, fields: Dict[str, Any]) -> Optional[Post]:
        updates = {k: v for k, v in fields.items() if k in POST_MUTABLE_FIELDS}
        assignments = ", ".join(f"{name} = %s" for name in updates)
        sql = (
            f"UPDATE post SET {assignments + ', ' if assignments else ''}updated_at = now() "
            "WHERE id = %s RETURNING *"
        )
        with self._connect() as conn:
            row = conn.execute(sql, (*updates.values(), post_id)).fetchone()
        return self._row_to_post(row) if row else None

    def delete_post(self, post_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM post WHERE id = %s", (post_id,))
            return cur.rowcount > 0

    def vote_post(self, post_id: str, user_id: str, value: int) -> Optional[VoteOutcome]:
        with self._connect() as conn:
            with conn.transaction():
                post_row = conn.execute(
                    "SELECT id FROM post WHERE id = %s FOR UPDATE", (post_id,)
                ).fetchone()
                if not post_row:
                    return None
                existing = conn.execute(
                    "SELECT value FROM post_vote WHERE post_id = %s AND user_id = %s",
                    (post_id, user_id),
                ).fetchone()
                previous = int(existing["value"]) if existing else None
                new_vote, up_delta, down_delta = post_vote_transition(previous, value)
                if new_vote is None:
                    conn.execute(
                        "DELETE FROM post_vote WHERE post_id = %s AND user_id = %s",
                        (post_id, user_id),
                    )
                else:
                    conn.execute(
                        """
                        INSERT INTO post_vote (post_id, user_id, value) VALUES (%s, %s, %s)
                        ON CONFLICT (post_id, user_id) DO UPDATE SET value = EXCLUDED.value
                        """,
                        (post_id, user_id, new_vote),
                    )
                row = conn.execute(
                    """
                    UPDATE post SET upvotes = upvotes + %s, downvotes = downvotes + %s
                    WHERE id = %s RETURNING upvotes, downvotes
                    """,
                    (up_delta, down_delta, post_id),
                ).fetchone()
        return VoteOutcome(
            resource_id=post_id,
            user_vote=new_vote,
            upvotes=row["upvotes"],
            downvotes=row["downvotes"],
            displayed_score=row["upvotes"] - row["downvotes"],
        )

    # -- comments ----------------------------------------------------------

    def list_comments(self, post_id: str) -> List[Comment]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM comment WHERE post_id = %s ORDER BY created_at", (post_id,)
            ).fetchall()
        return [self._row_to_comment(row) for row in rows]

    def get_comment(self, comment_id: str) -> Optional[Comment]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM comment WHERE id = %s", (comment_id,)
            ).fetchone()
        return self._row_to_comment(row) if row else None

    def create_comment(
        self,
        *,
        post_id: str,
        text: str,
        owner_user_id: Optional[str],
        author_name: Optional[str] = None,
        author_avatar: Optional[str] = None,
    ) -> Comment:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO comment (id, post_id, text, owner_user_id, author_name, author_avatar)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), post_id, text, owner_user_id, author_name, author_avatar),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("post does not exist", {"post_id": post_id})
        return self._row_to_comment(row)

    def update_comment(self, comment_id: str, fields: Dict[str, Any]) -> Optional[Comment]:
        updates = {k: v for k, v in fields.items() if k in COMMENT_MUTABLE_FIELDS}
        assignments = ", ".join(f"{name} = %s" for name in updates)
        sql = (
            f"UPDATE comment SET {assignments + ', ' if assignments else ''}updated_at = now() "
            "WHERE id = %s RETURNING *"
        )
        with self._connect() as conn:
            row = conn.execute(sql, (*updates.values(), comment_id)).fetchone()
        return self._row_to_comment(row) if row else None

    def delete_comment(self, comment_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM comment WHERE id = %s", (comment_id,))
            return cur.rowcount > 0

    def vote_comment(self, comment_id: str, user_id: str, value: int) -> Optional[VoteOutcome]:
        with self._connect() as conn:
            with conn.transaction():
                comment_row = conn.execute(
                    "SELECT id FROM comment WHERE id = %s FOR UPDATE", (comment_id,)
                ).fetchone()
                if not comment_row:
                    return None
                existing = conn.execute(
                    "SELECT value FROM comment_vote WHERE comment_id = %s AND user_id = %s",
                    (comment_id, user_id),
                ).fetchone()
                previous = int(existing["value"]) if existing else None
                new_vote, delta = comment_vote_transition(previous, value)
                if new_vote is None:
                    conn.execute(
                        "DELETE FROM comment_vote WHERE comment_id = %s AND user_id = %s",
                        (comment_id, user_id),
                    )
                else:
                    conn.execute(
                        """
                        INSERT INTO comment_vote (comment_id, user_id, value) VALUES (%s, %s, %s)
                        ON CONFLICT (comment_id, user_id) DO UPDATE SET value = EXCLUDED.value
                        """,
                        (comment_id, user_id, new_vote),
                    )
                row = conn.execute(
                    """
                    UPDATE comment SET displayed_score = displayed_score + %s
                    WHERE id = %s RETURNING displayed_score
                    """,
                    (delta, comment_id),
                ).fetchone()
        return VoteOutcome(
            resource_id=comment_id,
            user_vote=new_vote,
            displayed_score=row["displayed_score"],
        )
