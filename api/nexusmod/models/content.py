"""Records owned by the surrounding platform.

The moderation core only reads engagement signals from these tables and
writes their moderation-status / suspension columns. Each model carries just
the columns the core touches.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Profile content is moderated on the user row itself
    moderation_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    moderation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    suspended: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    suspension_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    suspended_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class CommunityPost(Base):
    __tablename__ = "community_posts"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    likes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    comments_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    moderation_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    moderation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class PostComment(Base):
    __tablename__ = "post_comments"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    post_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    moderation_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    moderation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(String(128), nullable=False)
    sender_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    moderation_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    moderation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class MarketplaceProduct(Base):
    __tablename__ = "marketplace_products"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    seller_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    rating: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    rating_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    moderation_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    moderation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
