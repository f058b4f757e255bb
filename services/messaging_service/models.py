from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Boolean, Enum, Index, CheckConstraint
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import enum

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


class UserRole(str, enum.Enum):
    TEACHER = "teacher"
    STUDENT = "student"

    @property
    def opposite(self) -> "UserRole":
        return UserRole.STUDENT if self is UserRole.TEACHER else UserRole.TEACHER


class Profile(Base):
    """Local mirror of the profiles owned by the auth service."""

    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=False)
    role = Column(Enum(UserRole), nullable=False, index=True)
    avatar_url = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint("sender_id <> receiver_id", name="ck_messages_distinct_parties"),
        Index("ix_messages_unread", "receiver_id", "sender_id", "read"),
        Index("ix_messages_pair_created", "sender_id", "receiver_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    sender_id = Column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)
    receiver_id = Column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    read = Column(Boolean, nullable=False, default=False)
    # Set client-side so rows created within the same second still order correctly
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    sender = relationship("Profile", foreign_keys=[sender_id])
    receiver = relationship("Profile", foreign_keys=[receiver_id])
