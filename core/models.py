"""
Core data models for the Audio Feed API

Table models (SQLModel) for profiles, posts, comments, like relations and
channels, plus the Pydantic models used at the API boundary: the verified
identity handed over by the identity provider, post drafts, and the
viewer-relative views returned to clients.
"""

import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy import Column, DateTime, Index, JSON
from sqlalchemy.types import TypeDecorator
from sqlmodel import SQLModel, Field


_clock_lock = threading.Lock()
_last_timestamp = datetime.min.replace(tzinfo=timezone.utc)


def utc_now() -> datetime:
    """
    Return the current time as an aware UTC datetime, strictly increasing
    within this process so records created back to back never share a sort key.
    """
    global _last_timestamp
    with _clock_lock:
        now = datetime.now(timezone.utc)
        if now <= _last_timestamp:
            now = _last_timestamp + timedelta(microseconds=1)
        _last_timestamp = now
        return now


def as_utc(value: datetime) -> datetime:
    """Naive values are taken to be UTC already"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timestamp column that always hands back aware UTC datetimes.

    PostgreSQL stores them as `timestamptz`. SQLite keeps no offset, so values
    are normalized to UTC before writing and re-tagged on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return as_utc(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return as_utc(value)


def new_id() -> str:
    return uuid.uuid4().hex


class UserProfile(SQLModel, table=True):
    """Profile provisioned on first login, keyed by the identity provider's id."""

    __tablename__ = "user_profiles"

    id: str = Field(primary_key=True, max_length=128)
    username: str = Field(index=True, unique=True, max_length=64)
    name: str = Field(max_length=255)
    email: str = Field(default="", max_length=320)
    bio: Optional[str] = Field(default=None, max_length=1024)
    profile_image_url: Optional[str] = Field(default=None, max_length=1024)
    followers: int = Field(default=0)
    following: int = Field(default=0)
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)
    updated_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class AudioPost(SQLModel, table=True):
    """
    Published audio post. Author fields are a snapshot taken at creation time
    and are not kept in sync with later profile edits.
    """

    __tablename__ = "audio_posts"
    __table_args__ = (
        Index("ix_audio_posts_recent", "created_at", "id"),
        Index("ix_audio_posts_author_recent", "author_id", "created_at", "id"),
        Index("ix_audio_posts_trending", "likes", "created_at", "id"),
    )

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    title: str = Field(max_length=255)
    description: Optional[str] = Field(default=None)
    audio_url: str = Field(max_length=1024)
    author_id: str = Field(max_length=128)
    author_name: str = Field(max_length=255)
    author_username: str = Field(max_length=64)
    author_profile_image_url: Optional[str] = Field(default=None, max_length=1024)
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)
    duration: float = Field(default=0.0)
    likes: int = Field(default=0)
    plays: int = Field(default=0)
    comments: int = Field(default=0)
    tags: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    version: int = Field(default=1)


class Comment(SQLModel, table=True):
    """Append-only comment on a post."""

    __tablename__ = "comments"
    __table_args__ = (Index("ix_comments_post_created", "post_id", "created_at", "id"),)

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    post_id: str = Field(foreign_key="audio_posts.id", max_length=32)
    author_id: str = Field(max_length=128)
    author_name: str = Field(max_length=255)
    author_username: str = Field(max_length=64)
    author_profile_image_url: Optional[str] = Field(default=None, max_length=1024)
    text: str
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)
    likes: int = Field(default=0)


class PostLike(SQLModel, table=True):
    """A row exists while the viewer likes the post."""

    __tablename__ = "post_likes"

    post_id: str = Field(foreign_key="audio_posts.id", primary_key=True, max_length=32)
    viewer_id: str = Field(primary_key=True, max_length=128)
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)


class CommentLike(SQLModel, table=True):
    """A row exists while the viewer likes the comment."""

    __tablename__ = "comment_likes"

    comment_id: str = Field(foreign_key="comments.id", primary_key=True, max_length=32)
    viewer_id: str = Field(primary_key=True, max_length=128)
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)


class Channel(SQLModel, table=True):
    """Categorical grouping of posts. Seeded catalog, read-only through the API."""

    __tablename__ = "channels"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    name: str = Field(unique=True, max_length=128)
    description: str = Field(default="")
    icon_name: str = Field(default="", max_length=64)
    is_nsfw: bool = Field(default=False)
    post_ids: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    subscriber_ids: List[str] = Field(default_factory=list, sa_column=Column(JSON))


# API boundary models


class Identity(BaseModel):
    """Verified identity supplied by the external identity provider."""

    id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    photo_url: Optional[str] = None


class PostDraft(BaseModel):
    title: str
    description: Optional[str] = None
    audio_url: Optional[str] = None
    duration: float = 0.0
    tags: List[str] = []


class PostView(BaseModel):
    """Post as seen by one viewer."""

    id: str
    title: str
    description: Optional[str] = None
    audio_url: str
    author_id: str
    author_name: str
    author_username: str
    author_profile_image_url: Optional[str] = None
    created_at: datetime
    duration: float
    likes: int
    plays: int
    comments: int
    tags: List[str]
    version: int
    is_liked: bool = False

    @classmethod
    def from_post(cls, post: AudioPost, is_liked: bool = False) -> "PostView":
        return cls(**post.model_dump(), is_liked=is_liked)


class PostPage(BaseModel):
    posts: List[PostView]
    next_cursor: Optional[str] = None


class CommentView(BaseModel):
    """Comment as seen by one viewer."""

    id: str
    post_id: str
    author_id: str
    author_name: str
    author_username: str
    author_profile_image_url: Optional[str] = None
    text: str
    created_at: datetime
    likes: int
    is_liked: bool = False

    @classmethod
    def from_comment(cls, comment: Comment, is_liked: bool = False) -> "CommentView":
        return cls(**comment.model_dump(), is_liked=is_liked)


class LikeState(BaseModel):
    """Outcome of a like toggle: the viewer's state and the authoritative count."""

    target_id: str
    liked: bool
    likes: int
    changed: bool
