from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    provider_customer_id: str
    username: str
    avatar_color: str
    community_id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def display_name(self) -> str:
        full = " ".join(part for part in (self.first_name, self.last_name) if part)
        return full or self.username


@dataclass
class UserProfileUpdate:
    """Mutable fields written on every successful login."""

    email: Optional[str]
    first_name: Optional[str]
    last_name: Optional[str]
    username: str
    avatar_color: str
    community_id: str


@dataclass
class Community:
    id: str
    name: str
    description: Optional[str] = None
    icon: Optional[str] = None
    header_image: Optional[str] = None
    is_public: bool = True
    tags: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Post:
    id: str
    community_id: str
    title: str
    content: str = ""
    # None or a placeholder such as "legacy" for seeded content
    owner_user_id: Optional[str] = None
    author_name: Optional[str] = None
    author_avatar: Optional[str] = None
    image_url: Optional[str] = None
    video_url: Optional[str] = None
    upvotes: int = 0
    downvotes: int = 0
    posted_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def score(self) -> int:
        return self.upvotes - self.downvotes


@dataclass
class Comment:
    id: str
    post_id: str
    text: str
    owner_user_id: Optional[str] = None
    author_name: Optional[str] = None
    author_avatar: Optional[str] = None
    displayed_score: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class VoteOutcome:
    """Result of casting a vote: the caller's vote after toggling, if any."""

    resource_id: str
    user_vote: Optional[int]
    upvotes: int = 0
    downvotes: int = 0
    displayed_score: int = 0
