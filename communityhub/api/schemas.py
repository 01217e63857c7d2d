from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from communityhub.storage.models import Comment, Community, Post, User, VoteOutcome

MAX_TITLE_LENGTH = 300
MAX_CONTENT_LENGTH = 40000
MAX_COMMENT_LENGTH = 10000
MAX_URL_LENGTH = 2048
MAX_COMMUNITY_NAME_LENGTH = 100
_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    # OAuth flow
    "invalid_state",
    "missing_code",
    "missing_state",
    "invalid_signature",
    "provider_error",
    "authentication_failed",
    "auth_config_missing",
})


def _normalize_text(value: Optional[str]) -> Optional[str]:
    """NFKC-normalize and drop zero-width characters used for spoofing."""
    if value is None:
        return None
    cleaned = "".join(c for c in value if c not in _ZERO_WIDTH)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with a stable machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# -- requests ----------------------------------------------------------------


class _CamelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class PostCreateRequest(_CamelRequest):
    title: str = Field(..., min_length=1, max_length=MAX_TITLE_LENGTH)
    content: str = Field(default="", max_length=MAX_CONTENT_LENGTH)
    community_id: str = Field(..., alias="communityId", min_length=1, max_length=128)
    image_url: Optional[str] = Field(default=None, alias="imageUrl", max_length=MAX_URL_LENGTH)
    video_url: Optional[str] = Field(default=None, alias="videoUrl", max_length=MAX_URL_LENGTH)

    @field_validator("title", "content")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return _normalize_text(value)


class PostUpdateRequest(_CamelRequest):
    title: Optional[str] = Field(default=None, min_length=1, max_length=MAX_TITLE_LENGTH)
    content: Optional[str] = Field(default=None, max_length=MAX_CONTENT_LENGTH)
    image_url: Optional[str] = Field(default=None, alias="imageUrl", max_length=MAX_URL_LENGTH)
    video_url: Optional[str] = Field(default=None, alias="videoUrl", max_length=MAX_URL_LENGTH)

    @field_validator("title", "content")
    @classmethod
    def _normalize(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_text(value)


class CommentRequest(_CamelRequest):
    text: str = Field(..., min_length=1, max_length=MAX_COMMENT_LENGTH)

    @field_validator("text")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return _normalize_text(value)


class CommunityCreateRequest(_CamelRequest):
    # a missing name is reported by ForumService.create_community
    id: Optional[str] = Field(default=None, max_length=128)
    name: Optional[str] = Field(default=None, max_length=MAX_COMMUNITY_NAME_LENGTH)
    description: Optional[str] = Field(default=None, max_length=MAX_CONTENT_LENGTH)
    icon: Optional[str] = Field(default=None, max_length=MAX_URL_LENGTH)
    header_image: Optional[str] = Field(
        default=None, alias="headerImage", max_length=MAX_URL_LENGTH
    )
    is_public: bool = Field(default=True, alias="isPublic")
    tags: List[str] = Field(default_factory=list)

    @field_validator("name", "description")
    @classmethod
    def _normalize(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_text(value)


class VoteRequest(_CamelRequest):
    # strict so that true/"1" are not coerced into a vote
    value: int = Field(..., strict=True)


# -- responses ---------------------------------------------------------------


class UserResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    id: str
    provider_customer_id: str = Field(alias="customerId")
    username: str
    email: Optional[str] = None
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    display_name: str = Field(alias="displayName")
    avatar_color: str = Field(alias="avatarColor")
    community_id: str = Field(alias="communityId")
    created_at: datetime = Field(alias="createdAt")

    @classmethod
    def from_model(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            provider_customer_id=user.provider_customer_id,
            username=user.username,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            display_name=user.display_name,
            avatar_color=user.avatar_color,
            community_id=user.community_id,
            created_at=user.created_at,
        )


class CommunityResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    id: str
    name: str
    description: Optional[str] = None
    icon: Optional[str] = None
    header_image: Optional[str] = Field(default=None, alias="headerImage")
    is_public: bool = Field(default=True, alias="isPublic")
    tags: List[str] = Field(default_factory=list)

    @classmethod
    def from_model(cls, community: Community) -> "CommunityResponse":
        return cls(
            id=community.id,
            name=community.name,
            description=community.description,
            icon=community.icon,
            header_image=community.header_image,
            is_public=community.is_public,
            tags=list(community.tags),
        )


class CommentResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    id: str
    post_id: str = Field(alias="postId")
    text: str
    owner_user_id: Optional[str] = Field(default=None, alias="ownerUserId")
    author_name: Optional[str] = Field(default=None, alias="author")
    author_avatar: Optional[str] = Field(default=None, alias="authorAvatar")
    displayed_score: int = Field(default=0, alias="displayedScore")
    created_at: datetime = Field(alias="createdAt")

    @classmethod
    def from_model(cls, comment: Comment) -> "CommentResponse":
        return cls(
            id=comment.id,
            post_id=comment.post_id,
            text=comment.text,
            owner_user_id=comment.owner_user_id,
            author_name=comment.author_name,
            author_avatar=comment.author_avatar,
            displayed_score=comment.displayed_score,
            created_at=comment.created_at,
        )


class PostResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    id: str
    community_id: str = Field(alias="communityId")
    title: str
    content: str = ""
    owner_user_id: Optional[str] = Field(default=None, alias="ownerUserId")
    author_name: Optional[str] = Field(default=None, alias="author")
    author_avatar: Optional[str] = Field(default=None, alias="authorAvatar")
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    video_url: Optional[str] = Field(default=None, alias="videoUrl")
    upvotes: int = 0
    downvotes: int = 0
    score: int = 0
    posted_at: datetime = Field(alias="postedAt")
    comments: Optional[List[CommentResponse]] = None

    @classmethod
    def from_model(
        cls, post: Post, comments: Optional[List[Comment]] = None
    ) -> "PostResponse":
        return cls(
            id=post.id,
            community_id=post.community_id,
            title=post.title,
            content=post.content,
            owner_user_id=post.owner_user_id,
            author_name=post.author_name,
            author_avatar=post.author_avatar,
            image_url=post.image_url,
            video_url=post.video_url,
            upvotes=post.upvotes,
            downvotes=post.downvotes,
            score=post.score,
            posted_at=post.posted_at,
            comments=[CommentResponse.from_model(c) for c in comments]
            if comments is not None
            else None,
        )


class VoteResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    id: str
    user_vote: Optional[int] = Field(default=None, alias="userVote")
    upvotes: Optional[int] = None
    downvotes: Optional[int] = None
    displayed_score: Optional[int] = Field(default=None, alias="displayedScore")

    @classmethod
    def from_model(cls, outcome: VoteOutcome) -> "VoteResponse":
        return cls(
            id=outcome.resource_id,
            user_vote=outcome.user_vote,
            upvotes=outcome.upvotes,
            downvotes=outcome.downvotes,
            displayed_score=outcome.displayed_score,
        )


class CommunityAssignmentResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    community_id: str = Field(alias="communityId")


class PostListResponse(BaseModel):
    items: List[PostResponse]


class CommentListResponse(BaseModel):
    items: List[CommentResponse]


class CommunityListResponse(BaseModel):
    items: List[CommunityResponse]


class DeletedResponse(BaseModel):
    id: str
    deleted: bool = True
