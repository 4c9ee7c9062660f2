from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on PostgreSQL, plain JSON elsewhere so local SQLite stores stay usable.
JsonDocument = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)


class UserProfile(Base):
    __tablename__ = "user_profiles"

    id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), primary_key=True)
    last_check_in: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    online_status: Mapped[str] = mapped_column(String, default="offline")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class License(Base):
    __tablename__ = "licenses"
    __table_args__ = (Index("ix_licenses_purchase_status", "purchase_date", "status"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    # active | expired | canceled
    status: Mapped[str] = mapped_column(String, default="active")
    license_type: Mapped[str] = mapped_column(String, default="lifetime")
    purchase_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    expiry_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    stripe_payment_id: Mapped[str | None] = mapped_column(String, nullable=True)


class UserNotification(Base):
    __tablename__ = "user_notifications"
    __table_args__ = (
        # One delivery per user, type, reference and channel.
        UniqueConstraint(
            "user_id",
            "notification_type",
            "reference_id",
            "channel",
            name="uq_user_notifications_delivery",
        ),
        Index("ix_user_notifications_user_type", "user_id", "notification_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String)
    notification_type: Mapped[str] = mapped_column(String)
    reference_id: Mapped[str] = mapped_column(String)
    channel: Mapped[str] = mapped_column(String)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    provider_result: Mapped[dict[str, Any] | None] = mapped_column(JsonDocument, nullable=True)
    data: Mapped[dict[str, Any] | None] = mapped_column(JsonDocument, nullable=True)


class SlackWorkspace(Base):
    __tablename__ = "slack_workspaces"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    team_id: Mapped[str] = mapped_column(String, unique=True)
    team_name: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SlackUserConnection(Base):
    __tablename__ = "slack_user_connections"
    __table_args__ = (
        UniqueConstraint("user_id", "workspace_id", name="uq_slack_connections_user_workspace"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    workspace_id: Mapped[str] = mapped_column(String, ForeignKey("slack_workspaces.id"))
    slack_user_id: Mapped[str] = mapped_column(String)
    # Fernet token; never stored in plaintext.
    access_token_encrypted: Mapped[str] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    connected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SlackPreferences(Base):
    __tablename__ = "slack_preferences"

    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), primary_key=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    auto_status_update: Mapped[bool] = mapped_column(Boolean, default=True)
    auto_dnd: Mapped[bool] = mapped_column(Boolean, default=True)
    status_text: Mapped[str | None] = mapped_column(String, nullable=True)
    status_emoji: Mapped[str | None] = mapped_column(String, nullable=True)


class SlackFocusSession(Base):
    __tablename__ = "slack_focus_sessions"
    __table_args__ = (Index("ix_slack_focus_sessions_user_active", "user_id", "is_active"),)

    session_id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"))
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    duration_minutes: Mapped[int] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class SlackFocusSessionWorkspace(Base):
    __tablename__ = "slack_focus_session_workspaces"
    __table_args__ = (
        UniqueConstraint("session_id", "workspace_id", name="uq_focus_session_workspace"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String, ForeignKey("slack_focus_sessions.session_id"), index=True)
    workspace_id: Mapped[str] = mapped_column(String, ForeignKey("slack_workspaces.id"))
    status_updated: Mapped[bool] = mapped_column(Boolean, default=False)
    dnd_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    previous_status_text: Mapped[str | None] = mapped_column(String, nullable=True)
    previous_status_emoji: Mapped[str | None] = mapped_column(String, nullable=True)


class SlackSessionActivity(Base):
    __tablename__ = "slack_session_activities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String)
    workspace_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # status_cleared | dnd_disabled | cleanup_error
    activity_type: Mapped[str] = mapped_column(String)
    details: Mapped[dict[str, Any] | None] = mapped_column(JsonDocument, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, default=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
