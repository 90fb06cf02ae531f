"""
SQLAlchemy Models for QuestionFlow
Tables: class_sessions, doubts, doubt_submissions, doubt_upvotes, confusion_readings
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, ForeignKey,
    UniqueConstraint, Index
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

CODE_LENGTH = 6


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo so every column stays naive."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


def session_code(session_id: str) -> str:
    """Short shareable code: the last six characters of the id, upper-cased."""
    return str(session_id)[-CODE_LENGTH:].upper()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ─── Class Session Model ──────────────────────────────────────
class ClassSession(Base):
    __tablename__ = "class_sessions"

    id = Column(String(32), primary_key=True, default=new_id)
    title = Column(String(255), nullable=False)
    instructor_name = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    # settings
    auto_merge_doubts = Column(Boolean, nullable=False, default=True)
    allow_anonymous = Column(Boolean, nullable=False, default=True)

    # stats
    total_doubts = Column(Integer, nullable=False, default=0)
    answered_doubts = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    ended_at = Column(DateTime, nullable=True)

    @property
    def code(self) -> str:
        return session_code(self.id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "title": self.title,
            "instructorName": self.instructor_name,
            "isActive": self.is_active,
            "settings": {
                "autoMergeDoubts": self.auto_merge_doubts,
                "allowAnonymous": self.allow_anonymous,
            },
            "stats": {
                "totalDoubts": self.total_doubts,
                "answeredDoubts": self.answered_doubts,
            },
            "createdAt": _iso(self.created_at),
            "endedAt": _iso(self.ended_at),
        }


# ─── Doubt Model ──────────────────────────────────────────────
class Doubt(Base):
    __tablename__ = "doubts"
    __table_args__ = (
        Index("ix_doubts_session_canonical", "session_id", "merged_with"),
    )

    id = Column(String(32), primary_key=True, default=new_id)
    session_id = Column(String(32), ForeignKey("class_sessions.id"), nullable=False, index=True)

    question = Column(Text, nullable=False)
    student_id = Column(String(100), nullable=False)
    student_name = Column(String(255), nullable=False)
    is_anonymous = Column(Boolean, nullable=False, default=False)
    topic = Column(String(100), nullable=False, default="General", index=True)
    confusion_level = Column(Integer, nullable=False, default=1)

    is_answered = Column(Boolean, nullable=False, default=False)
    answer = Column(Text, nullable=True)
    answered_at = Column(DateTime, nullable=True)

    upvotes = Column(Integer, nullable=False, default=0)

    # Non-owning back-reference to the canonical doubt; NULL means canonical
    merged_with = Column(String(32), ForeignKey("doubts.id"), nullable=True)
    merged_count = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    submissions = relationship(
        "DoubtSubmission",
        order_by="DoubtSubmission.id",
        lazy="selectin",
        cascade="all, delete-orphan",
    )
    upvoters = relationship(
        "DoubtUpvote",
        order_by="DoubtUpvote.id",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "question": self.question,
            "studentId": self.student_id,
            "studentName": self.student_name,
            "isAnonymous": self.is_anonymous,
            "topic": self.topic,
            "confusionLevel": self.confusion_level,
            "isAnswered": self.is_answered,
            "answer": self.answer,
            "answeredAt": _iso(self.answered_at),
            "upvotes": self.upvotes,
            "upvotedBy": [u.student_id for u in self.upvoters],
            "mergedWith": self.merged_with,
            "mergedCount": self.merged_count,
            "mergedStudents": [s.to_dict() for s in self.submissions],
            "createdAt": _iso(self.created_at),
        }


# ─── Merged Submission Model ──────────────────────────────────
class DoubtSubmission(Base):
    """One row per submission folded into a doubt (append-only)."""
    __tablename__ = "doubt_submissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    doubt_id = Column(String(32), ForeignKey("doubts.id"), nullable=False, index=True)
    student_id = Column(String(100), nullable=False)
    student_name = Column(String(255), nullable=False)
    timestamp = Column(DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "studentId": self.student_id,
            "studentName": self.student_name,
            "timestamp": _iso(self.timestamp),
        }


# ─── Upvote Model ─────────────────────────────────────────────
class DoubtUpvote(Base):
    __tablename__ = "doubt_upvotes"
    __table_args__ = (
        UniqueConstraint("doubt_id", "student_id", name="uq_doubt_upvote"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    doubt_id = Column(String(32), ForeignKey("doubts.id"), nullable=False, index=True)
    student_id = Column(String(100), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


# ─── Confusion Reading Model ──────────────────────────────────
class ConfusionReading(Base):
    __tablename__ = "confusion_readings"
    __table_args__ = (
        Index("ix_confusion_session_time", "session_id", "timestamp"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(32), ForeignKey("class_sessions.id"), nullable=False)
    student_id = Column(String(100), nullable=False)
    student_name = Column(String(255), nullable=True)
    level = Column(Integer, nullable=False)
    timestamp = Column(DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "studentId": self.student_id,
            "studentName": self.student_name,
            "level": self.level,
            "timestamp": _iso(self.timestamp),
        }
