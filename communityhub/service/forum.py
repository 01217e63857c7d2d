from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, List, Mapping, Optional

from communityhub.logging import get_logger
from communityhub.service.authorization import enforce_ownership, sanitize_body
from communityhub.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from communityhub.storage.common import VALID_VOTE_VALUES
from communityhub.storage.errors import ConstraintViolation
from communityhub.storage.models import Comment, Community, Post, User, VoteOutcome

logger = get_logger(__name__)

POST_KIND = "post"
COMMENT_KIND = "comment"

_NON_SLUG = re.compile(r"[^a-z0-9]+")


def _clean_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def slugify_community_id(name: str) -> str:
    """Lowercase ASCII slug: accents folded, other runs of symbols become ``-``."""
    folded = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    return _NON_SLUG.sub("-", folded.lower()).strip("-")


class ForumService:
    """Posts, comments and votes; identity always comes from the caller id."""

    def __init__(self, store: Any) -> None:
        self.store = store

    def _author(self, caller_id: str) -> User:
        user = self.store.get_user(caller_id)
        if not user:
            raise AuthenticationError("authenticated user no longer exists")
        return user

    def _require_post(self, post_id: str) -> Post:
        post = self.store.get_post(post_id)
        if not post:
            raise NotFoundError("post not found", detail={"post_id": post_id})
        return post

    def _require_comment(self, comment_id: str) -> Comment:
        comment = self.store.get_comment(comment_id)
        if not comment:
            raise NotFoundError("comment not found", detail={"comment_id": comment_id})
        return comment

    @staticmethod
    def _check_vote(value: Any) -> int:
        if isinstance(value, bool) or value not in VALID_VOTE_VALUES:
            raise ValidationError("Invalid vote value", detail={"allowed": list(VALID_VOTE_VALUES)})
        return int(value)

    # -- communities -------------------------------------------------------

    def list_communities(self) -> List[Community]:
        return self.store.list_communities()

    def get_community(self, community_id: str) -> Community:
        community = self.store.get_community(community_id)
        if not community:
            raise NotFoundError("community not found", detail={"community_id": community_id})
        return community

    def create_community(self, caller_id: str, body: Mapping[str, Any]) -> Community:
        """Create a community; the id defaults to a slug of ``name``."""
        fields = sanitize_body(body)
        name = _clean_text(fields.get("name"))
        if not name:
            raise ValidationError("Name is required", detail={"field": "name"})
        community_id = _clean_text(fields.get("id")) or slugify_community_id(name)
        if not community_id:
            raise ValidationError(
                "Community id cannot be derived from name", detail={"field": "name"}
            )
        author = self._author(caller_id)
        if self.store.get_community(community_id):
            raise ConflictError(
                "Community already exists with this id",
                detail={"community_id": community_id},
            )
        tags = [t.strip() for t in fields.get("tags") or [] if isinstance(t, str) and t.strip()]
        community = self.store.upsert_community(
            Community(
                id=community_id,
                name=name,
                description=fields.get("description"),
                icon=fields.get("icon"),
                header_image=fields.get("header_image"),
                is_public=fields.get("is_public", True) is not False,
                tags=tags,
            )
        )
        logger.info("community_created", community_id=community_id, user_id=author.id)
        return community

    # -- posts -------------------------------------------------------------

    def list_posts(self, community_id: Optional[str] = None) -> List[Post]:
        return self.store.list_posts(community_id)

    def get_post(self, post_id: str) -> Post:
        return self._require_post(post_id)

    def list_comments(self, post_id: str) -> List[Comment]:
        self._require_post(post_id)
        return self.store.list_comments(post_id)

    def create_post(self, caller_id: str, body: Mapping[str, Any]) -> Post:
        fields = sanitize_body(body)
        title = _clean_text(fields.get("title"))
        community_id = _clean_text(fields.get("community_id"))
        if not title:
            raise ValidationError("title is required", detail={"field": "title"})
        if not community_id:
            raise ValidationError("community_id is required", detail={"field": "community_id"})
        author = self._author(caller_id)
        try:
            post = self.store.create_post(
                community_id=community_id,
                title=title,
                content=fields.get("content") or "",
                owner_user_id=author.id,
                author_name=author.username,
                author_avatar=author.avatar_color,
                image_url=fields.get("image_url"),
                video_url=fields.get("video_url"),
            )
        except ConstraintViolation as exc:
            raise ValidationError(exc.message, detail=exc.detail)
        logger.info("post_created", post_id=post.id, user_id=author.id, community_id=community_id)
        return post

    def update_post(self, caller_id: str, post_id: str, body: Mapping[str, Any]) -> Post:
        post = self._require_post(post_id)
        enforce_ownership(post.owner_user_id, caller_id, POST_KIND, strict=False, resource_id=post_id)
        fields: Dict[str, Any] = {
            k: v for k, v in sanitize_body(body).items() if v is not None
        }
        if "title" in fields and not _clean_text(fields["title"]):
            raise ValidationError("title cannot be empty", detail={"field": "title"})
        updated = self.store.update_post(post_id, fields)
        if not updated:
            raise NotFoundError("post not found", detail={"post_id": post_id})
        return updated

    def delete_post(self, caller_id: str, post_id: str) -> None:
        post = self._require_post(post_id)
        enforce_ownership(post.owner_user_id, caller_id, POST_KIND, strict=False, resource_id=post_id)
        self.store.delete_post(post_id)
        logger.info("post_deleted", post_id=post_id, user_id=caller_id)

    def vote_post(self, caller_id: str, post_id: str, value: Any) -> VoteOutcome:
        vote = self._check_vote(value)
        outcome = self.store.vote_post(post_id, caller_id, vote)
        if outcome is None:
            raise NotFoundError("post not found", detail={"post_id": post_id})
        return outcome

    # -- comments ----------------------------------------------------------

    def add_comment(self, caller_id: str, post_id: str, body: Mapping[str, Any]) -> Comment:
        fields = sanitize_body(body)
        text = _clean_text(fields.get("text"))
        if not text:
            raise ValidationError("Comment text is required", detail={"field": "text"})
        self._require_post(post_id)
        author = self._author(caller_id)
        return self.store.create_comment(
            post_id=post_id,
            text=text,
            owner_user_id=author.id,
            author_name=author.username,
            author_avatar=author.avatar_color,
        )

    def update_comment(self, caller_id: str, comment_id: str, body: Mapping[str, Any]) -> Comment:
        fields = sanitize_body(body)
        text = _clean_text(fields.get("text"))
        if not text:
            raise ValidationError("Comment text is required", detail={"field": "text"})
        comment = self._require_comment(comment_id)
        enforce_ownership(
            comment.owner_user_id, caller_id, COMMENT_KIND, strict=True, resource_id=comment_id
        )
        updated = self.store.update_comment(comment_id, {"text": text})
        if not updated:
            raise NotFoundError("comment not found", detail={"comment_id": comment_id})
        return updated

    def delete_comment(self, caller_id: str, comment_id: str) -> None:
        comment = self._require_comment(comment_id)
        enforce_ownership(
            comment.owner_user_id, caller_id, COMMENT_KIND, strict=True, resource_id=comment_id
        )
        self.store.delete_comment(comment_id)
        logger.info("comment_deleted", comment_id=comment_id, user_id=caller_id)

    def vote_comment(self, caller_id: str, comment_id: str, value: Any) -> VoteOutcome:
        vote = self._check_vote(value)
        outcome = self.store.vote_comment(comment_id, caller_id, vote)
        if outcome is None:
            raise NotFoundError("comment not found", detail={"comment_id": comment_id})
        return outcome
