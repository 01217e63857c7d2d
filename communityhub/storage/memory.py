from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from communityhub.logging import get_logger
from communityhub.storage.common import (
    comment_vote_transition,
    default_communities,
    post_vote_transition,
)
from communityhub.storage.errors import ConstraintViolation, PersistenceError
from communityhub.storage.models import (
    Comment,
    Community,
    Post,
    User,
    UserProfileUpdate,
    VoteOutcome,
    utcnow,
)

POST_MUTABLE_FIELDS = frozenset({"title", "content", "image_url", "video_url"})
COMMENT_MUTABLE_FIELDS = frozenset({"text"})


class MemoryStore:
    """In-process store persisted to a JSON snapshot under ``fs_root/state``."""

    def __init__(self, fs_root: str = "/tmp/communityhub") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # provider_customer_id -> user id
        self.provider_index: Dict[str, str] = {}
        self.communities: Dict[str, Community] = {}
        self.posts: Dict[str, Post] = {}
        self.comments: Dict[str, Comment] = {}
        self.post_votes: Dict[tuple[str, str], int] = {}
        self.comment_votes: Dict[tuple[str, str], int] = {}
        # RLock so upsert helpers can nest inside other locked sections
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            for community in default_communities():
                self.communities[community.id] = community
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "community_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    # -- users -------------------------------------------------------------

    def find_user_by_provider_id(self, provider_customer_id: str) -> Optional[User]:
        with self._data_lock:
            user_id = self.provider_index.get(provider_customer_id)
            return self.users.get(user_id) if user_id else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)[:limit]

    def upsert_user(self, provider_customer_id: str, profile: UserProfileUpdate) -> User:
        """Create or update the user keyed by ``provider_customer_id``.

        Concurrent logins for one customer resolve last-writer-wins.
        """
        if not provider_customer_id:
            raise ConstraintViolation(
                "provider customer id is required", {"field": "provider_customer_id"}
            )
        with self._data_lock:
            existing = self.find_user_by_provider_id(provider_customer_id)
            now = utcnow()
            if existing:
                existing.email = profile.email
                existing.first_name = profile.first_name
                existing.last_name = profile.last_name
                existing.username = profile.username
                existing.avatar_color = profile.avatar_color
                existing.community_id = profile.community_id
                existing.updated_at = now
                user = existing
            else:
                user = User(
                    id=str(uuid.uuid4()),
                    provider_customer_id=provider_customer_id,
                    email=profile.email,
                    first_name=profile.first_name,
                    last_name=profile.last_name,
                    username=profile.username,
                    avatar_color=profile.avatar_color,
                    community_id=profile.community_id,
                    created_at=now,
                    updated_at=now,
                )
                self.users[user.id] = user
                self.provider_index[provider_customer_id] = user.id
            self._persist_state()
            return user

    # -- communities -------------------------------------------------------

    def list_communities(self) -> List[Community]:
        with self._data_lock:
            return sorted(self.communities.values(), key=lambda c: c.name.lower())

    def get_community(self, community_id: str) -> Optional[Community]:
        with self._data_lock:
            return self.communities.get(community_id)

    def upsert_community(self, community: Community) -> Community:
        with self._data_lock:
            self.communities[community.id] = community
            self._persist_state()
            return community

    # -- posts -------------------------------------------------------------

    def list_posts(self, community_id: Optional[str] = None, limit: int = 100) -> List[Post]:
        with self._data_lock:
            posts = [
                p for p in self.posts.values() if not community_id or p.community_id == community_id
            ]
            return sorted(posts, key=lambda p: p.posted_at, reverse=True)[:limit]

    def get_post(self, post_id: str) -> Optional[Post]:
        with self._data_lock:
            return self.posts.get(post_id)

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
        with self._data_lock:
            if community_id not in self.communities:
                raise ConstraintViolation(
                    "community does not exist", {"community_id": community_id}
                )
            post = Post(
                id=post_id or str(uuid.uuid4()),
                community_id=community_id,
                title=title,
                content=content,
                owner_user_id=owner_user_id,
                author_name=author_name,
                author_avatar=author_avatar,
                image_url=image_url,
                video_url=video_url,
            )
            if post.id in self.posts:
                raise ConstraintViolation("post already exists", {"post_id": post.id})
            self.posts[post.id] = post
            self._persist_state()
            return post

    def update_post(self, post_id: str, fields: Dict[str, Any]) -> Optional[Post]:
        with self._data_lock:
            post = self.posts.get(post_id)
            if not post:
                return None
            for name, value in fields.items():
                if name in POST_MUTABLE_FIELDS:
                    setattr(post, name, value)
            post.updated_at = utcnow()
            self._persist_state()
            return post

    def delete_post(self, post_id: str) -> bool:
        with self._data_lock:
            if self.posts.pop(post_id, None) is None:
                return False
            orphaned = [c.id for c in self.comments.values() if c.post_id == post_id]
            for comment_id in orphaned:
                self._drop_comment(comment_id)
            self.post_votes = {
                key: value for key, value in self.post_votes.items() if key[0] != post_id
            }
            self._persist_state()
            return True

    def vote_post(self, post_id: str, user_id: str, value: int) -> Optional[VoteOutcome]:
        with self._data_lock:
            post = self.posts.get(post_id)
            if not post:
                return None
            key = (post_id, user_id)
            new_vote, up_delta, down_delta = post_vote_transition(
                self.post_votes.get(key), value
            )
            if new_vote is None:
                self.post_votes.pop(key, None)
            else:
                self.post_votes[key] = new_vote
            post.upvotes += up_delta
            post.downvotes += down_delta
            self._persist_state()
            return VoteOutcome(
                resource_id=post_id,
                user_vote=new_vote,
                upvotes=post.upvotes,
                downvotes=post.downvotes,
                displayed_score=post.score,
            )

    # -- comments ----------------------------------------------------------

    def list_comments(self, post_id: str) -> List[Comment]:
        with self._data_lock:
            return sorted(
                (c for c in self.comments.values() if c.post_id == post_id),
                key=lambda c: c.created_at,
            )

    def get_comment(self, comment_id: str) -> Optional[Comment]:
        with self._data_lock:
            return self.comments.get(comment_id)

    def create_comment(
        self,
        *,
        post_id: str,
        text: str,
        owner_user_id: Optional[str],
        author_name: Optional[str] = None,
        author_avatar: Optional[str] = None,
    ) -> Comment:
        with self._data_lock:
            if post_id not in self.posts:
                raise ConstraintViolation("post does not exist", {"post_id": post_id})
            comment = Comment(
                id=str(uuid.uuid4()),
                post_id=post_id,
                text=text,
                owner_user_id=owner_user_id,
                author_name=author_name,
                author_avatar=author_avatar,
            )
            self.comments[comment.id] = comment
            self._persist_state()
            return comment

    def update_comment(self, comment_id: str, fields: Dict[str, Any]) -> Optional[Comment]:
        with self._data_lock:
            comment = self.comments.get(comment_id)
            if not comment:
                return None
            for name, value in fields.items():
                if name in COMMENT_MUTABLE_FIELDS:
                    setattr(comment, name, value)
            comment.updated_at = utcnow()
            self._persist_state()
            return comment

    def delete_comment(self, comment_id: str) -> bool:
        with self._data_lock:
            if not self._drop_comment(comment_id):
                return False
            self._persist_state()
            return True

    def _drop_comment(self, comment_id: str) -> bool:
        if self.comments.pop(comment_id, None) is None:
            return False
        self.comment_votes = {
            key: value for key, value in self.comment_votes.items() if key[0] != comment_id
        }
        return True

    def vote_comment(self, comment_id: str, user_id: str, value: int) -> Optional[VoteOutcome]:
        with self._data_lock:
            comment = self.comments.get(comment_id)
            if not comment:
                return None
            key = (comment_id, user_id)
            new_vote, delta = comment_vote_transition(self.comment_votes.get(key), value)
            if new_vote is None:
                self.comment_votes.pop(key, None)
            else:
                self.comment_votes[key] = new_vote
            comment.displayed_score += delta
            self._persist_state()
            return VoteOutcome(
                resource_id=comment_id,
                user_vote=new_vote,
                displayed_score=comment.displayed_score,
            )

    # -- persistence -------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "communities": [self._serialize_community(c) for c in self.communities.values()],
            "posts": [self._serialize_post(p) for p in self.posts.values()],
            "comments": [self._serialize_comment(c) for c in self.comments.values()],
            "post_votes": [
                {"post_id": post_id, "user_id": user_id, "value": value}
                for (post_id, user_id), value in self.post_votes.items()
            ],
            "comment_votes": [
                {"comment_id": comment_id, "user_id": user_id, "value": value}
                for (comment_id, user_id), value in self.comment_votes.items()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise PersistenceError(
                "failed to persist in-memory state", {"path": str(path), "error": str(exc)}
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.provider_index = {u.provider_customer_id: u.id for u in self.users.values()}
        self.communities = {
            c["id"]: self._deserialize_community(c) for c in data.get("communities", [])
        }
        self.posts = {p["id"]: self._deserialize_post(p) for p in data.get("posts", [])}
        self.comments = {
            c["id"]: self._deserialize_comment(c) for c in data.get("comments", [])
        }
        self.post_votes = {
            (v["post_id"], v["user_id"]): int(v["value"]) for v in data.get("post_votes", [])
        }
        self.comment_votes = {
            (v["comment_id"], v["user_id"]): int(v["value"])
            for v in data.get("comment_votes", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "provider_customer_id": user.provider_customer_id,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "username": user.username,
            "avatar_color": user.avatar_color,
            "community_id": user.community_id,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            provider_customer_id=data["provider_customer_id"],
            email=data.get("email"),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            username=data["username"],
            avatar_color=data["avatar_color"],
            community_id=data["community_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
        )

    def _serialize_community(self, community: Community) -> dict:
        return {
            "id": community.id,
            "name": community.name,
            "description": community.description,
            "icon": community.icon,
            "header_image": community.header_image,
            "is_public": community.is_public,
            "tags": list(community.tags),
            "created_at": self._serialize_datetime(community.created_at),
        }

    def _deserialize_community(self, data: dict) -> Community:
        return Community(
            id=data["id"],
            name=data["name"],
            description=data.get("description"),
            icon=data.get("icon"),
            header_image=data.get("header_image"),
            is_public=data.get("is_public", True),
            tags=list(data.get("tags") or []),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_post(self, post: Post) -> dict:
        return {
            "id": post.id,
            "community_id": post.community_id,
            "title": post.title,
            "content": post.content,
            "owner_user_id": post.owner_user_id,
            "author_name": post.author_name,
            "author_avatar": post.author_avatar,
            "image_url": post.image_url,
            "video_url": post.video_url,
            "upvotes": post.upvotes,
            "downvotes": post.downvotes,
            "posted_at": self._serialize_datetime(post.posted_at),
            "updated_at": self._serialize_datetime(post.updated_at),
        }

    def _deserialize_post(self, data: dict) -> Post:
        return Post(
            id=data["id"],
            community_id=data["community_id"],
            title=data["title"],
            content=data.get("content", ""),
            owner_user_id=data.get("owner_user_id"),
            author_name=data.get("author_name"),
            author_avatar=data.get("author_avatar"),
            image_url=data.get("image_url"),
            video_url=data.get("video_url"),
            upvotes=int(data.get("upvotes", 0)),
            downvotes=int(data.get("downvotes", 0)),
            posted_at=self._deserialize_datetime(data["posted_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["posted_at"]),
        )

    def _serialize_comment(self, comment: Comment) -> dict:
        return {
            "id": comment.id,
            "post_id": comment.post_id,
            "text": comment.text,
            "owner_user_id": comment.owner_user_id,
            "author_name": comment.author_name,
            "author_avatar": comment.author_avatar,
            "displayed_score": comment.displayed_score,
            "created_at": self._serialize_datetime(comment.created_at),
            "updated_at": self._serialize_datetime(comment.updated_at),
        }

    def _deserialize_comment(self, data: dict) -> Comment:
        return Comment(
            id=data["id"],
            post_id=data["post_id"],
            text=data["text"],
            owner_user_id=data.get("owner_user_id"),
            author_name=data.get("author_name"),
            author_avatar=data.get("author_avatar"),
            displayed_score=int(data.get("displayed_score", 0)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
        )
