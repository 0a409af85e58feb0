from __future__ import annotations

import enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class GroupStatus(str, enum.Enum):
    OPEN = "open"
    DRAWN = "drawn"


class NotificationType(str, enum.Enum):
    OUTCOME_READY = "outcome_ready"
    WISH_UPDATED = "wish_updated"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    telegram_id = Column(BigInteger, unique=True, nullable=False, index=True)
    telegram_username = Column(String, nullable=True, index=True)
    display_name = Column(String, nullable=True)
    has_private_chat = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    memberships = relationship("Participant", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return (
            "<User(id={0}, telegram_id={1}, username={2}, has_private_chat={3})>"
        ).format(self.id, self.telegram_id, self.telegram_username, self.has_private_chat)


class Group(Base):
    __tablename__ = "groups"

    id = Column(Integer, primary_key=True)
    telegram_chat_id = Column(BigInteger, unique=True, nullable=True, index=True)
    name = Column(String, nullable=False)
    owner_user_id = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    budget = Column(Numeric(10, 2), nullable=True)
    draw_completed_at = Column(DateTime(), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(), nullable=True)

    owner = relationship("User", foreign_keys=[owner_user_id])
    participants = relationship("Participant", back_populates="group", cascade="all, delete-orphan")
    exclusion_rules = relationship("ExclusionRule", back_populates="group", cascade="all, delete-orphan")
    assignments = relationship("Assignment", back_populates="group", cascade="all, delete-orphan")

    @property
    def status(self) -> GroupStatus:
        if self.draw_completed_at is None:
            return GroupStatus.OPEN
        return GroupStatus.DRAWN

    @property
    def is_drawn(self) -> bool:
        return self.draw_completed_at is not None

    def __repr__(self) -> str:
        return f"<Group(id={self.id}, name={self.name!r}, status={self.status.value})>"


class Participant(Base):
    __tablename__ = "participants"

    id = Column(Integer, primary_key=True)
    group_id = Column(Integer, ForeignKey("groups.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    budget_suggestion = Column(Numeric(10, 2), nullable=True)
    joined_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    wish_content = Column(Text, nullable=True)
    wish_updated_at = Column(DateTime(), nullable=True)

    group = relationship("Group", back_populates="participants")
    user = relationship("User", back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_participants_group_user"),
        Index("ix_participants_user_id", "user_id"),
    )


class ExclusionRule(Base):
    """Unordered pair of users in one group; stored with user_a_id < user_b_id."""

    __tablename__ = "exclusion_rules"

    id = Column(Integer, primary_key=True)
    group_id = Column(Integer, ForeignKey("groups.id", ondelete="CASCADE"), nullable=False)
    user_a_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    user_b_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_by_user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    group = relationship("Group", back_populates="exclusion_rules")
    user_a = relationship("User", foreign_keys=[user_a_id])
    user_b = relationship("User", foreign_keys=[user_b_id])

    __table_args__ = (
        UniqueConstraint("group_id", "user_a_id", "user_b_id", name="uq_exclusion_rules_pair"),
        CheckConstraint("user_a_id <> user_b_id", name="ck_exclusion_rules_different_users"),
        Index("ix_exclusion_rules_group_id", "group_id"),
    )

    @property
    def pair(self) -> tuple[int, int]:
        return (self.user_a_id, self.user_b_id)


class Assignment(Base):
    __tablename__ = "assignments"

    id = Column(Integer, primary_key=True)
    group_id = Column(Integer, ForeignKey("groups.id", ondelete="CASCADE"), nullable=False)
    giver_user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    receiver_user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    group = relationship("Group", back_populates="assignments")
    giver = relationship("User", foreign_keys=[giver_user_id])
    receiver = relationship("User", foreign_keys=[receiver_user_id])

    __table_args__ = (
        UniqueConstraint("group_id", "giver_user_id", name="uq_assignments_group_giver"),
        UniqueConstraint("group_id", "receiver_user_id", name="uq_assignments_group_receiver"),
        CheckConstraint("giver_user_id <> receiver_user_id", name="ck_assignments_not_self"),
        Index("ix_assignments_giver_user_id", "giver_user_id"),
        Index("ix_assignments_receiver_user_id", "receiver_user_id"),
    )


class NotificationIntent(Base):
    __tablename__ = "notification_intents"

    id = Column(Integer, primary_key=True)
    type = Column(
        Enum(NotificationType, name="notification_type", values_callable=_enum_values),
        nullable=False,
    )
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    group_id = Column(Integer, ForeignKey("groups.id", ondelete="CASCADE"), nullable=False)
    send_after = Column(DateTime(), nullable=False)
    sent_at = Column(DateTime(), nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0, server_default="0")
    last_error = Column(Text, nullable=True)
    first_attempt_at = Column(DateTime(), nullable=True)
    last_attempt_at = Column(DateTime(), nullable=True)
    failed_at = Column(DateTime(), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    user = relationship("User")
    group = relationship("Group")

    __table_args__ = (
        Index("ix_notification_intents_queue", "sent_at", "send_after"),
        Index("ix_notification_intents_group_id", "group_id"),
        Index("ix_notification_intents_user_id", "user_id"),
        Index("ix_notification_intents_dedup", "group_id", "user_id", "type"),
    )

    @property
    def is_sent(self) -> bool:
        return self.sent_at is not None

    @property
    def is_failed(self) -> bool:
        return self.failed_at is not None

    def __repr__(self) -> str:
        return (
            f"<NotificationIntent(id={self.id}, type={self.type}, user_id={self.user_id}, "
            f"send_after={self.send_after}, sent_at={self.sent_at}, attempts={self.attempt_count})>"
        )
