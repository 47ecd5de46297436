"""ORM models for academy members, the XP activity log and course completions.

Tables are created by the Alembic migrations in ``alembic/versions``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    false,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hoodie.db.base import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class User(Base):
    """An academy member, identified by wallet address."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    wallet_address: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    total_xp: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    squad: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    activities: Mapped[list[UserActivity]] = relationship("UserActivity", back_populates="user")


# ---------------------------------------------------------------------------
# Activity log
# ---------------------------------------------------------------------------


class UserActivity(Base):
    """Append-only log entry written for every XP grant.

    ``idempotency_key`` is unique: it is only set when the duplicate check is
    active, so a racing second grant for the same (wallet, action, reference)
    fails at insert time.
    """

    __tablename__ = "user_activity"
    __table_args__ = (
        Index("idx_user_activity_wallet_type_created", "wallet_address", "activity_type", "created_at"),
        Index("idx_user_activity_wallet_action_created", "wallet_address", "action", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    wallet_address: Mapped[str] = mapped_column(
        String(128), ForeignKey("users.wallet_address", ondelete="CASCADE"), nullable=False
    )
    activity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    action: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    xp_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    details: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    idempotency_key: Mapped[str | None] = mapped_column(String(512), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    user: Mapped[User] = relationship("User", back_populates="activities")


# ---------------------------------------------------------------------------
# Courses
# ---------------------------------------------------------------------------


class CourseCompletion(Base):
    """One row per (wallet, course) once the course has been completed."""

    __tablename__ = "course_completions"
    __table_args__ = (UniqueConstraint("wallet_address", "course_id", name="uq_course_completion"),)

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    wallet_address: Mapped[str] = mapped_column(
        String(128), ForeignKey("users.wallet_address", ondelete="CASCADE"), nullable=False
    )
    course_id: Mapped[str] = mapped_column(String(128), nullable=False)
    course_title: Mapped[str | None] = mapped_column(String(256), nullable=True)
    xp_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
