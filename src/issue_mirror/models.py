"""SQLAlchemy ORM models for mirrored issues, their authors and per-repository stats.

Table and column names follow the mirror's persisted layout:
github_users, github_issues, repository_stats.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

__all__ = ["Author", "Base", "Issue", "RepositoryStat", "UTCDateTime", "utcnow"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetime on every dialect.

    PostgreSQL stores timestamptz; SQLite has no timezone support, so values
    are normalized to UTC on the way in and re-tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for all mirror tables."""

    pass


class Author(Base):
    """Remote account referenced by one or more issues.

    Identity is the remote account id; the handle is unique as well.
    Upserted by github_id whenever a new or changed issue references it.
    """

    __tablename__ = "github_users"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    github_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    username: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    avatar_url: Mapped[str] = mapped_column(String(1024), nullable=False)
    # User or Organization
    account_type: Mapped[str] = mapped_column(String(32), nullable=False)
    api_url: Mapped[str] = mapped_column(String(1024), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    issues: Mapped[list["Issue"]] = relationship(back_populates="author", lazy="raise")


class Issue(Base):
    """One remote issue mirrored locally.

    Natural key: (owner_name, repository_name, issue_number).
    issue_created_at / issue_updated_at are the remote timestamps;
    created_at / updated_at record local writes and drive staleness checks.
    """

    __tablename__ = "github_issues"
    __table_args__ = (
        UniqueConstraint(
            "owner_name", "repository_name", "issue_number", name="uq_github_issues_natural_key"
        ),
        CheckConstraint("state IN ('open', 'closed')", name="ck_github_issues_state"),
        CheckConstraint("issue_number > 0", name="ck_github_issues_number_positive"),
        Index("ix_github_issues_repo_state", "owner_name", "repository_name", "state"),
        Index(
            "ix_github_issues_repo_issue_created", "owner_name", "repository_name", "issue_created_at"
        ),
        Index(
            "ix_github_issues_repo_issue_updated", "owner_name", "repository_name", "issue_updated_at"
        ),
        Index("ix_github_issues_repo_local_updated", "owner_name", "repository_name", "updated_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    owner_name: Mapped[str] = mapped_column(String(255), nullable=False)
    repository_name: Mapped[str] = mapped_column(String(255), nullable=False)
    issue_number: Mapped[int] = mapped_column(Integer, nullable=False)
    github_user_id: Mapped[int] = mapped_column(
        ForeignKey("github_users.id"), nullable=False, index=True
    )
    state: Mapped[str] = mapped_column(String(16), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    issue_created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    issue_updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    author: Mapped[Author] = relationship(back_populates="issues", lazy="joined")


class RepositoryStat(Base):
    """Derived per-repository aggregate.

    total_issues_count is an exact COUNT(*) taken at updated_at; it is
    recomputed after every sync run and may lag between runs.
    """

    __tablename__ = "repository_stats"
    __table_args__ = (
        UniqueConstraint(
            "provider", "owner_name", "repository_name", name="idx_repository_stats_unique"
        ),
        CheckConstraint("total_issues_count >= 0", name="ck_repository_stats_count"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    owner_name: Mapped[str] = mapped_column(String(255), nullable=False)
    repository_name: Mapped[str] = mapped_column(String(255), nullable=False)
    total_issues_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
