from sqlalchemy import (
    Boolean, DateTime, Enum as SQLEnum, Float, ForeignKey, Index, Integer,
    JSON, String, Text, UniqueConstraint, Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from typing import Optional, Dict, Any
import uuid
import enum
from examdesk.core.database import Base, utcnow


class UserRole(str, enum.Enum):
    GURU = "GURU"
    MURID = "MURID"


class MaterialType(str, enum.Enum):
    PPT = "PPT"
    RPP = "RPP"
    LKPD = "LKPD"
    QUESTIONS = "QUESTIONS"


class QuestionType(str, enum.Enum):
    PG = "PG"
    ESSAY = "ESSAY"


class Difficulty(str, enum.Enum):
    MUDAH = "mudah"
    SEDANG = "sedang"
    SULIT = "sulit"


class ExamStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    ONGOING = "ONGOING"
    FINISHED = "FINISHED"
    PUBLISHED = "PUBLISHED"


class ParticipantStatus(str, enum.Enum):
    JOINED = "JOINED"
    IN_PROGRESS = "IN_PROGRESS"
    SUBMITTED = "SUBMITTED"
    SCORED = "SCORED"


class AnswerStatus(str, enum.Enum):
    PENDING = "PENDING"
    SCORED = "SCORED"


class ProctoringEventType(str, enum.Enum):
    HEAD_POSE = "HEAD_POSE"
    EYE_GAZE = "EYE_GAZE"
    OBJECT = "OBJECT"
    LIP = "LIP"
    MULTI_FACE = "MULTI_FACE"
    FACE_ABSENT = "FACE_ABSENT"


class ScoringJobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


DEFAULT_EXAM_SETTINGS: Dict[str, Any] = {
    "enable_proctoring": True,
    "allow_late_submission": False,
    "shuffle_questions": False,
    "show_results": True,
}


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


# ========== Accounts ==========

class User(TimestampMixin, Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(SQLEnum(UserRole, name="user_role"), nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.pop("password_hash", None)
        return data


class RefreshToken(Base):
    __tablename__ = "refresh_tokens"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token: Mapped[str] = mapped_column(String(1024), unique=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


# ========== Content ==========

class Material(TimestampMixin, Base):
    __tablename__ = "materials"
    __table_args__ = (
        Index("idx_materials_teacher", "teacher_id"),
        Index("idx_materials_published", "is_published"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    teacher_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[MaterialType] = mapped_column(SQLEnum(MaterialType, name="material_type"), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    file_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    preview_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_published: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    params: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)


class Question(TimestampMixin, Base):
    __tablename__ = "questions"
    __table_args__ = (
        Index("idx_questions_teacher", "teacher_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    teacher_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[QuestionType] = mapped_column(SQLEnum(QuestionType, name="question_type"), nullable=False)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    options: Mapped[Optional[Dict[str, str]]] = mapped_column(JSON, nullable=True)
    answer_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rubric: Mapped[Optional[Dict[str, float]]] = mapped_column(JSON, nullable=True)
    difficulty: Mapped[Optional[Difficulty]] = mapped_column(SQLEnum(Difficulty, name="difficulty"), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    is_hots: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


# ========== Exams ==========

class Exam(TimestampMixin, Base):
    __tablename__ = "exams"
    __table_args__ = (
        Index("idx_exams_teacher", "teacher_id"),
        Index("idx_exams_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    teacher_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    start_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status: Mapped[ExamStatus] = mapped_column(
        SQLEnum(ExamStatus, name="exam_status"), default=ExamStatus.DRAFT, nullable=False
    )
    settings: Mapped[Dict[str, Any]] = mapped_column(JSON, default=lambda: dict(DEFAULT_EXAM_SETTINGS), nullable=False)


class ExamQuestion(Base):
    __tablename__ = "exam_questions"

    exam_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("exams.id", ondelete="CASCADE"), primary_key=True)
    question_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("questions.id", ondelete="CASCADE"), primary_key=True)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    points: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)


class ExamParticipant(Base):
    __tablename__ = "exam_participants"
    __table_args__ = (
        UniqueConstraint("exam_id", "student_id", name="uq_participant_exam_student"),
        Index("idx_participants_student", "student_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    exam_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("exams.id", ondelete="CASCADE"), nullable=False)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    proctoring_session_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    start_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    submit_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    status: Mapped[ParticipantStatus] = mapped_column(
        SQLEnum(ParticipantStatus, name="participant_status"), default=ParticipantStatus.JOINED, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class Answer(TimestampMixin, Base):
    __tablename__ = "answers"
    __table_args__ = (
        UniqueConstraint("participant_id", "question_id", name="uq_answer_participant_question"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    participant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("exam_participants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    question_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("questions.id", ondelete="CASCADE"), nullable=False)
    answer_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    answer_file_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ai_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    final_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    feedback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    feedback_detail: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    status: Mapped[AnswerStatus] = mapped_column(
        SQLEnum(AnswerStatus, name="answer_status"), default=AnswerStatus.PENDING, nullable=False
    )


# ========== Proctoring / derived ==========

class ProctoringLog(Base):
    __tablename__ = "proctoring_logs"
    __table_args__ = (
        Index("idx_plogs_exam_student", "exam_id", "student_id"),
        Index("idx_plogs_created", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    exam_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("exams.id", ondelete="CASCADE"), nullable=False)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    participant_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("exam_participants.id", ondelete="CASCADE"), nullable=True
    )
    event_type: Mapped[ProctoringEventType] = mapped_column(
        SQLEnum(ProctoringEventType, name="proctoring_event_type"), nullable=False
    )
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    snapshot_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class ExamStatistic(Base):
    __tablename__ = "exam_statistics"

    exam_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("exams.id", ondelete="CASCADE"), primary_key=True)
    avg_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    max_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    min_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    total_participants: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    submitted_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    scored_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    suspicious_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class ScoringJob(Base):
    __tablename__ = "scoring_jobs"
    __table_args__ = (
        Index("idx_sj_exam_status", "exam_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    exam_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("exams.id", ondelete="CASCADE"), nullable=False)
    participant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("exam_participants.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    status: Mapped[ScoringJobStatus] = mapped_column(
        SQLEnum(ScoringJobStatus, name="scoring_job_status", values_callable=lambda e: [m.value for m in e]),
        default=ScoringJobStatus.PENDING,
        nullable=False,
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
