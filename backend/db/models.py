# db/models.py
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    Float,
    String,
    Text,
    DateTime,
    func,
    ForeignKey,
    Boolean,
    JSON,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import relationship
from sqlalchemy.types import Enum as SAEnum

from .session import Base


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class InterviewStatus(str, enum.Enum):
    in_progress = "IN_PROGRESS"
    completed = "COMPLETED"
    archived = "ARCHIVED"


class TurnRole(str, enum.Enum):
    user = "user"
    model = "model"


class TurnKind(str, enum.Enum):
    message = "message"
    seed = "seed"            # engine kickoff message, never displayed
    bootstrap = "bootstrap"  # resume hand-off pair, not counted as a question


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    is_admin = Column(Boolean, default=False, nullable=False)

    # optional profile
    target_role = Column(String(255), nullable=True)
    experience_level = Column(String(50), nullable=True)
    resume_s3_key = Column(String(1024), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_now, server_default=func.now())

    interviews = relationship("Interview", back_populates="user")


class Interview(Base):
    __tablename__ = "interviews"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    role = Column(String(255), nullable=False)
    focus_area = Column(String(255), nullable=True)
    level = Column(String(100), nullable=True)
    language = Column(String(50), nullable=False, default="English")
    jd = Column(Text, nullable=True)
    has_resume = Column(Boolean, nullable=False, default=False)
    total_questions = Column(Integer, nullable=False, default=7)

    status = Column(
        SAEnum(InterviewStatus, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=InterviewStatus.in_progress,
    )
    duration_seconds = Column(Float, nullable=False, default=0)
    question_count = Column(Integer, nullable=False, default=0)
    turn_counter = Column(Integer, nullable=False, default=0)

    feedback = Column(JSON, nullable=True)

    total_input_tokens = Column(Integer, nullable=False, default=0)
    total_output_tokens = Column(Integer, nullable=False, default=0)
    total_tokens = Column(Integer, nullable=False, default=0)
    estimated_cost = Column(Float, nullable=False, default=0.0)

    interaction_id = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_now, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_now, server_default=func.now(), onupdate=_now, nullable=False)

    user = relationship("User", back_populates="interviews")
    turns = relationship(
        "Turn",
        back_populates="interview",
        cascade="all, delete-orphan",
        order_by="Turn.seq",
    )
    recordings = relationship("AudioRecording", back_populates="interview", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("user_id", "interaction_id", name="uq_interviews_user_interaction"),
        Index("ix_interviews_user_updated", "user_id", "updated_at"),
    )


class Turn(Base):
    __tablename__ = "turns"

    id = Column(String(36), primary_key=True, default=_uuid)
    interview_id = Column(String(36), ForeignKey("interviews.id", ondelete="CASCADE"), nullable=False, index=True)
    seq = Column(Integer, nullable=False)

    role = Column(SAEnum(TurnRole, native_enum=False), nullable=False)
    kind = Column(SAEnum(TurnKind, native_enum=False), nullable=False, default=TurnKind.message)
    content = Column(Text, nullable=False, default="")

    audio_key = Column(String(1024), nullable=True)
    audio_mime = Column(String(255), nullable=True)
    audio_duration_seconds = Column(Float, nullable=True)
    tts_audio_key = Column(String(1024), nullable=True)

    question_index = Column(Integer, nullable=True)
    interaction_id = Column(String(255), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), default=_now, server_default=func.now(), nullable=False)

    interview = relationship("Interview", back_populates="turns")

    __table_args__ = (
        UniqueConstraint("interview_id", "seq", name="uq_turns_interview_seq"),
        Index("ix_turns_interview_created_seq", "interview_id", "created_at", "seq"),
    )


class AudioRecording(Base):
    __tablename__ = "audio_recordings"

    id = Column(String(36), primary_key=True, default=_uuid)
    interview_id = Column(String(36), ForeignKey("interviews.id", ondelete="CASCADE"), nullable=False, index=True)
    question_index = Column(Integer, nullable=False)
    blob_key = Column(String(1024), nullable=False)
    mime_type = Column(String(255), nullable=False, default="audio/webm")
    duration_seconds = Column(Float, nullable=False, default=0)
    interaction_id = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now, server_default=func.now(), nullable=False)

    interview = relationship("Interview", back_populates="recordings")

    __table_args__ = (
        UniqueConstraint("interview_id", "question_index", name="uq_recordings_interview_question"),
    )


class PendingAudioBinding(Base):
    """Recording uploaded before its user turn was appended."""
    __tablename__ = "pending_audio_bindings"

    id = Column(Integer, primary_key=True)
    interview_id = Column(String(36), ForeignKey("interviews.id", ondelete="CASCADE"), nullable=False)
    question_index = Column(Integer, nullable=False)
    recording_id = Column(String(36), ForeignKey("audio_recordings.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_now, server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("interview_id", "question_index", name="uq_pending_interview_question"),
    )


class TokenUsageEntry(Base):
    __tablename__ = "token_usage"

    id = Column(Integer, primary_key=True)
    interview_id = Column(String(36), ForeignKey("interviews.id", ondelete="CASCADE"), nullable=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    operation = Column(String(50), nullable=False)  # chat | feedback | resume_analysis | tts | transcription
    model = Column(String(255), nullable=True)
    input_tokens = Column(Integer, nullable=False, default=0)
    output_tokens = Column(Integer, nullable=False, default=0)
    cost = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime(timezone=True), default=_now, server_default=func.now(), nullable=False)


class TranscriptCache(Base):
    __tablename__ = "transcript_cache"

    blob_key = Column(String(1024), primary_key=True)
    text = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_now, server_default=func.now(), nullable=False)
