"""ORM models for users, rounds, attempts and the lineage edge relation."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from gartic.db.base import Base, BigIntId, UTCDateTime
from gartic.sessions.states import AttemptState, StateType, state_from_columns

_OCCUPYING_SQL = "state_type IN ('active', 'uploading', 'pending')"


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class User(Base):
    """A player or moderator, keyed by the chat platform's user id."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    external_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    notify: Mapped[str] = mapped_column(String(16), nullable=False, default="disabled", server_default="disabled")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        CheckConstraint("notify IN ('disabled', 'once', 'always')", name="ck_users_notify"),
    )


# ---------------------------------------------------------------------------
# Rounds
# ---------------------------------------------------------------------------


class Round(Base):
    """One slot of the lineage tree."""

    __tablename__ = "rounds"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    mode: Mapped[str] = mapped_column(String(32), nullable=False)
    nsfw: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    round_no: Mapped[int] = mapped_column(Integer, nullable=False)
    multiplex: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    # Approved attempt this round continues; NULL for round 0.
    origin_attempt_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, unique=True)

    attempts: Mapped[list[Attempt]] = relationship("Attempt", back_populates="round")

    __table_args__ = (
        CheckConstraint("round_no >= 0", name="ck_rounds_round_no"),
        CheckConstraint("multiplex >= 1", name="ck_rounds_multiplex"),
        Index("idx_rounds_lookup", "mode", "nsfw", "round_no"),
    )


# ---------------------------------------------------------------------------
# Attempts
# ---------------------------------------------------------------------------


class Attempt(Base):
    """One user's claim on one round, tracked through the moderation states."""

    __tablename__ = "attempts"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id"), nullable=False)
    round_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("rounds.id"), nullable=False)
    state_type: Mapped[str] = mapped_column(String(16), nullable=False)
    active_until: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    state_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    moderator_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("users.id"), nullable=True)
    image_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    user: Mapped[User] = relationship("User", foreign_keys=[user_id])
    round: Mapped[Round] = relationship("Round", back_populates="attempts")

    __table_args__ = (
        CheckConstraint(
            "state_type IN ('active', 'cancelled', 'expired', 'uploading', 'pending', 'approved', 'rejected')",
            name="ck_attempts_state_type",
        ),
        CheckConstraint("state_type <> 'active' OR active_until IS NOT NULL", name="ck_attempts_active_until"),
        CheckConstraint("state_type = 'active' OR state_at IS NOT NULL", name="ck_attempts_state_at"),
        CheckConstraint(
            "state_type NOT IN ('pending', 'approved', 'rejected') OR image_ref IS NOT NULL",
            name="ck_attempts_image_ref",
        ),
        CheckConstraint(
            "state_type NOT IN ('approved', 'rejected') OR moderator_id IS NOT NULL",
            name="ck_attempts_moderator",
        ),
        Index("idx_attempts_round_state", "round_id", "state_type"),
        Index("idx_attempts_user_state", "user_id", "state_type"),
        Index("idx_attempts_state_until", "state_type", "active_until"),
        Index("idx_attempts_image_ref", "image_ref"),
        # At most one open attempt per (user, round).
        Index(
            "uq_attempts_user_round_open",
            "user_id",
            "round_id",
            unique=True,
            postgresql_where=text(_OCCUPYING_SQL),
            sqlite_where=text(_OCCUPYING_SQL),
        ),
    )

    @property
    def state(self) -> AttemptState:
        return state_from_columns(
            self.state_type,
            self.active_until,
            self.state_at,
            self.moderator_id,
            self.image_ref,
        )

    @property
    def kind(self) -> StateType:
        return StateType(self.state_type)


# ---------------------------------------------------------------------------
# Lineage
# ---------------------------------------------------------------------------


class LineageEdge(Base):
    """Approved ancestor attempt -> round it (transitively) gave rise to."""

    __tablename__ = "lineage_edges"

    round_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("rounds.id"), primary_key=True)
    attempt_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("attempts.id"), primary_key=True)

    __table_args__ = (
        Index("idx_lineage_attempt", "attempt_id"),
    )
