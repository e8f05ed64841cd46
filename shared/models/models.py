"""
shared/models/models.py
All SQLAlchemy ORM models for the Tutoring Marketplace.
UUID primary keys throughout; JSON columns become JSONB on PostgreSQL.
"""

import uuid
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    Time,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    TEACHER = "teacher"
    STUDENT = "student"
    GUARDIAN = "guardian"
    SUPER_ADMIN = "super-admin"


class OAuthProvider(str, PyEnum):
    GOOGLE = "google"


class BookingStatus(str, PyEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    UPCOMING = "upcoming"
    COMPLETED = "completed"
    MISSED = "missed"
    CANCELLED = "cancelled"


# Bookings in these states occupy the teacher's calendar
ACTIVE_BOOKING_STATUSES = (BookingStatus.PENDING, BookingStatus.APPROVED, BookingStatus.UPCOMING)


class BookingNoteType(str, PyEnum):
    ADMIN_NOTE = "admin_note"
    REASSIGNMENT_NOTE = "reassignment_note"
    RESCHEDULE_NOTE = "reschedule_note"
    CANCELLATION_NOTE = "cancellation_note"


class ModificationType(str, PyEnum):
    RESCHEDULE = "reschedule"
    REBOOK = "rebook"


class ModificationStatus(str, PyEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class VerificationStatus(str, PyEnum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"
    LIVE_VIDEO = "live_video"


class VideoStatus(str, PyEnum):
    NOT_SCHEDULED = "not_scheduled"
    SCHEDULED = "scheduled"
    PASSED = "passed"
    FAILED = "failed"


class DocumentStatus(str, PyEnum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class DocumentType(str, PyEnum):
    ID_CARD = "id_card"
    CERTIFICATE = "certificate"
    RESUME = "resume"
    OTHER = "other"


class VideoPlatform(str, PyEnum):
    ZOOM = "zoom"
    GOOGLE_MEET = "google_meet"
    OTHER = "other"


class CallStatus(str, PyEnum):
    SCHEDULED = "scheduled"
    LIVE = "live"
    COMPLETED = "completed"
    MISSED = "missed"


class VerificationResult(str, PyEnum):
    PASSED = "passed"
    FAILED = "failed"


class NotificationStatus(str, PyEnum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class RecipientStatus(str, PyEnum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class NotificationChannel(str, PyEnum):
    IN_APP = "in-app"
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


class SenderType(str, PyEnum):
    SYSTEM = "system"
    ADMIN = "admin"


class TransactionType(str, PyEnum):
    CREDIT = "credit"
    DEBIT = "debit"
    REFUND = "refund"
    SESSION_PAYMENT = "session_payment"
    WITHDRAWAL = "withdrawal"


class TransactionStatus(str, PyEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PayoutStatus(str, PyEnum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"
    PAID = "paid"


class PayoutMethod(str, PyEnum):
    BANK_TRANSFER = "bank_transfer"
    MOBILE_MONEY = "mobile_money"
    PAYPAL = "paypal"


class PaymentMethodType(str, PyEnum):
    CARD = "card"
    BANK_ACCOUNT = "bank_account"
    MOBILE_MONEY = "mobile_money"


class ConversationType(str, PyEnum):
    DIRECT = "direct"
    GROUP = "group"
    SUPPORT = "support"


class MessageType(str, PyEnum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    VOICE = "voice"
    SYSTEM = "system"


class MessageDeliveryStatus(str, PyEnum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class SoftDeleteMixin:
    """Adds soft delete capability."""
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


def _pk() -> Mapped[uuid.UUID]:
    return mapped_column(Uuid, primary_key=True, default=uuid.uuid4)


# ── Users & Profiles ──────────────────────────────────────────

class User(TimestampMixin, SoftDeleteMixin, Base):
    """Core user account. Password login, optionally linked to Google."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = _pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    avatar_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    oauth_provider: Mapped[Optional[OAuthProvider]] = mapped_column(
        Enum(OAuthProvider), nullable=True
    )
    oauth_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole), nullable=False, default=UserRole.STUDENT
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    fcm_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # Push notification token
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    refresh_tokens: Mapped[List["RefreshToken"]] = relationship(back_populates="user")

    __table_args__ = (
        UniqueConstraint("oauth_provider", "oauth_id", name="uq_oauth_provider_id"),
        Index("ix_users_role", "role"),
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.SUPER_ADMIN

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


class RefreshToken(Base):
    """Refresh tokens stored for rotation and revocation."""
    __tablename__ = "refresh_tokens"

    id: Mapped[uuid.UUID] = _pk()
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    token_hash: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)

    user: Mapped["User"] = relationship(back_populates="refresh_tokens")

    __table_args__ = (Index("ix_refresh_tokens_user_id", "user_id"),)


class TeacherProfile(TimestampMixin, Base):
    """Teacher's professional profile. One-to-one with a teacher User."""
    __tablename__ = "teacher_profiles"

    id: Mapped[uuid.UUID] = _pk()
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    bio: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    experience_years: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    hourly_rate: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    timezone: Mapped[str] = mapped_column(String(64), default="Africa/Lagos")
    verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class StudentProfile(TimestampMixin, Base):
    """Student profile. guardian_id links a child account to its guardian."""
    __tablename__ = "student_profiles"

    id: Mapped[uuid.UUID] = _pk()
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    guardian_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    grade_level: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    learning_goals: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("ix_student_profiles_guardian", "guardian_id"),)


class GuardianProfile(TimestampMixin, Base):
    __tablename__ = "guardian_profiles"

    id: Mapped[uuid.UUID] = _pk()
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    relationship_label: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)  # "Mother", "Uncle"


class Subject(TimestampMixin, Base):
    """Master list of subjects taught on the platform."""
    __tablename__ = "subjects"

    id: Mapped[uuid.UUID] = _pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class TeacherSubject(Base):
    __tablename__ = "teacher_subjects"

    id: Mapped[uuid.UUID] = _pk()
    teacher_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    subject_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subjects.id", ondelete="CASCADE"), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("teacher_id", "subject_id", name="uq_teacher_subject"),
        Index("ix_teacher_subjects_subject", "subject_id"),
    )


class TeacherAvailability(Base):
    """
    Weekly recurring availability window for a teacher.
    day_of_week follows Python's date.weekday(): Monday=0 ... Sunday=6.
    """
    __tablename__ = "teacher_availability"

    id: Mapped[uuid.UUID] = _pk()
    teacher_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    day_of_week: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="ck_availability_day"),
        Index("ix_availability_teacher_day", "teacher_id", "day_of_week"),
    )


# ── Bookings ──────────────────────────────────────────────────

class Booking(TimestampMixin, Base):
    """
    A scheduled lesson between a student and a teacher.
    Status only changes through explicit teacher/admin/participant actions.
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = _pk()
    booking_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    teacher_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    subject_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("subjects.id"), nullable=False)

    # Schedule
    booking_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=60)

    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus), nullable=False, default=BookingStatus.PENDING
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    meeting_link: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Pricing (held from the student wallet at creation)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    currency: Mapped[str] = mapped_column(String(3), default="NGN")
    is_refunded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_teacher_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("users.id"))
    approved_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("users.id"))
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("users.id"))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_bookings_student_id", "student_id"),
        Index("ix_bookings_teacher_date", "teacher_id", "booking_date"),
        Index("ix_bookings_status", "status"),
    )


class BookingHistory(Base):
    """Immutable log of every action taken on a booking."""
    __tablename__ = "booking_history"

    id: Mapped[uuid.UUID] = _pk()
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False
    )
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # "status", "rescheduled", ...
    previous_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    new_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    performed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("users.id"))
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    history_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (Index("ix_booking_history_booking", "booking_id"),)


class BookingNote(TimestampMixin, Base):
    __tablename__ = "booking_notes"

    id: Mapped[uuid.UUID] = _pk()
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False
    )
    created_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("users.id"))
    note_type: Mapped[BookingNoteType] = mapped_column(Enum(BookingNoteType), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    is_private: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class BookingModification(TimestampMixin, Base):
    """
    A student's (or guardian's) request to move a booking to another time,
    or to another teacher/subject. `teacher_id` is the teacher who must answer:
    the one who will teach the session once the request is approved.
    """
    __tablename__ = "booking_modifications"

    id: Mapped[uuid.UUID] = _pk()
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False
    )
    modification_type: Mapped[ModificationType] = mapped_column(Enum(ModificationType), nullable=False)
    status: Mapped[ModificationStatus] = mapped_column(
        Enum(ModificationStatus), nullable=False, default=ModificationStatus.PENDING
    )
    requested_by_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    teacher_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)

    # Booking as it was when the request was made
    original_teacher_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    original_subject_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("subjects.id"), nullable=False)
    original_booking_date: Mapped[date] = mapped_column(Date, nullable=False)
    original_start_time: Mapped[time] = mapped_column(Time, nullable=False)
    original_end_time: Mapped[time] = mapped_column(Time, nullable=False)
    original_duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)

    # Requested values
    new_teacher_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    new_subject_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("subjects.id"), nullable=False)
    new_booking_date: Mapped[date] = mapped_column(Date, nullable=False)
    new_start_time: Mapped[time] = mapped_column(Time, nullable=False)
    new_end_time: Mapped[time] = mapped_column(Time, nullable=False)
    new_duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)

    reason: Mapped[str] = mapped_column(Text, nullable=False)
    teacher_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # new price minus the amount already paid; settled on approval
    price_difference: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    responded_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("users.id"))

    __table_args__ = (
        Index("ix_booking_modifications_booking", "booking_id"),
        Index("ix_booking_modifications_teacher_status", "teacher_id", "status"),
    )


# ── Teacher Verification ──────────────────────────────────────

class VerificationRequest(TimestampMixin, Base):
    """Admin-reviewed teacher onboarding record."""
    __tablename__ = "verification_requests"

    id: Mapped[uuid.UUID] = _pk()
    teacher_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[VerificationStatus] = mapped_column(
        Enum(VerificationStatus), default=VerificationStatus.PENDING, nullable=False
    )
    docs_status: Mapped[DocumentStatus] = mapped_column(
        Enum(DocumentStatus), default=DocumentStatus.PENDING, nullable=False
    )
    video_status: Mapped[VideoStatus] = mapped_column(
        Enum(VideoStatus), default=VideoStatus.NOT_SCHEDULED, nullable=False
    )
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    reviewed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("users.id"))
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_verification_requests_teacher", "teacher_id"),
        Index("ix_verification_requests_status", "status"),
    )


class VerificationCall(TimestampMixin, Base):
    __tablename__ = "verification_calls"

    id: Mapped[uuid.UUID] = _pk()
    verification_request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("verification_requests.id", ondelete="CASCADE"), nullable=False
    )
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    platform: Mapped[VideoPlatform] = mapped_column(Enum(VideoPlatform), nullable=False)
    meeting_link: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[CallStatus] = mapped_column(
        Enum(CallStatus), default=CallStatus.SCHEDULED, nullable=False
    )
    verification_result: Mapped[Optional[VerificationResult]] = mapped_column(
        Enum(VerificationResult), nullable=True
    )
    verifier_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("users.id"))
    verifier_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class Document(TimestampMixin, Base):
    """Teacher-submitted document. Stored externally; we keep the URL."""
    __tablename__ = "documents"

    id: Mapped[uuid.UUID] = _pk()
    teacher_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    verification_request_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("verification_requests.id", ondelete="SET NULL"), nullable=True
    )
    document_type: Mapped[DocumentType] = mapped_column(Enum(DocumentType), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_url: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[DocumentStatus] = mapped_column(
        Enum(DocumentStatus), default=DocumentStatus.PENDING, nullable=False
    )
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    verified_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("users.id"))
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (Index("ix_documents_teacher", "teacher_id"),)


class AdminAuditLog(Base):
    """Immutable log of all admin actions."""
    __tablename__ = "admin_audit_logs"

    id: Mapped[uuid.UUID] = _pk()
    admin_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("users.id"), nullable=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_admin_audit_admin_id", "admin_id"),
        Index("ix_admin_audit_entity", "entity_type", "entity_id"),
    )


# ── Notifications ─────────────────────────────────────────────

class Notification(TimestampMixin, Base):
    """A notification authored by the system or an admin; fanned out to recipients."""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = _pk()
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False, default="custom")
    status: Mapped[NotificationStatus] = mapped_column(
        Enum(NotificationStatus), nullable=False, default=NotificationStatus.DRAFT
    )
    sender_type: Mapped[SenderType] = mapped_column(
        Enum(SenderType), nullable=False, default=SenderType.SYSTEM
    )
    sender_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("users.id"), nullable=True)
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    notification_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSONType, nullable=True)

    __table_args__ = (
        Index("ix_notifications_status_scheduled", "status", "scheduled_at"),
    )


class NotificationRecipient(Base):
    """Per-user, per-channel delivery record for a notification."""
    __tablename__ = "notification_recipients"

    id: Mapped[uuid.UUID] = _pk()
    notification_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("notifications.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    channel: Mapped[str] = mapped_column(String(20), nullable=False, default=NotificationChannel.IN_APP.value)
    status: Mapped[RecipientStatus] = mapped_column(
        Enum(RecipientStatus), nullable=False, default=RecipientStatus.PENDING
    )
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("notification_id", "user_id", "channel", name="uq_notification_recipient"),
        Index("ix_notification_recipients_user_read", "user_id", "channel", "read_at"),
    )


class NotificationTemplate(TimestampMixin, Base):
    __tablename__ = "notification_templates"

    id: Mapped[uuid.UUID] = _pk()
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)  # "{student_name} booked {subject}"
    type: Mapped[str] = mapped_column(String(50), nullable=False, default="custom")
    channels: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class NotificationTrigger(TimestampMixin, Base):
    """Maps a domain event (e.g. "booking.approved") to a template and audience."""
    __tablename__ = "notification_triggers"

    id: Mapped[uuid.UUID] = _pk()
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    event: Mapped[str] = mapped_column(String(100), nullable=False)
    template_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("notification_templates.id", ondelete="CASCADE"), nullable=False
    )
    audience: Mapped[str] = mapped_column(String(30), nullable=False, default="user")
    channels: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (Index("ix_notification_triggers_event", "event"),)


# ── Wallets & Ledger ──────────────────────────────────────────

class StudentWallet(TimestampMixin, Base):
    __tablename__ = "student_wallets"

    id: Mapped[uuid.UUID] = _pk()
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    balance: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0.00"), nullable=False)
    total_spent: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0.00"), nullable=False)
    total_refunded: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0.00"), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="NGN", nullable=False)


class TeacherWallet(TimestampMixin, Base):
    __tablename__ = "teacher_wallets"

    id: Mapped[uuid.UUID] = _pk()
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    balance: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0.00"), nullable=False)
    total_earned: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0.00"), nullable=False)
    total_withdrawn: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0.00"), nullable=False)
    pending_payouts: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0.00"), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="NGN", nullable=False)
    auto_withdrawal_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    auto_withdrawal_threshold: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("50000.00"))
    preferred_payout_method: Mapped[Optional[PayoutMethod]] = mapped_column(Enum(PayoutMethod), nullable=True)
    payout_details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)


class PaymentMethod(TimestampMixin, Base):
    """A saved way for a user to pay. Only display-safe details are stored."""
    __tablename__ = "payment_methods"

    id: Mapped[uuid.UUID] = _pk()
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[PaymentMethodType] = mapped_column(Enum(PaymentMethodType), nullable=False)
    label: Mapped[str] = mapped_column(String(100), nullable=False)  # "GTBank ••••4321"
    details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (Index("ix_payment_methods_user", "user_id"),)


class Transaction(Base):
    """Append-only money movement record for student and teacher wallets."""
    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = _pk()
    transaction_uuid: Mapped[str] = mapped_column(String(40), unique=True, nullable=False)
    student_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("users.id"), nullable=True)
    teacher_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("users.id"), nullable=True)
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True
    )
    transaction_type: Mapped[TransactionType] = mapped_column(Enum(TransactionType), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="NGN", nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus), default=TransactionStatus.COMPLETED, nullable=False
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    gateway_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_transactions_student", "student_id"),
        Index("ix_transactions_teacher_type", "teacher_id", "transaction_type"),
    )


class PayoutRequest(TimestampMixin, Base):
    """Teacher request to withdraw wallet balance."""
    __tablename__ = "payout_requests"

    id: Mapped[uuid.UUID] = _pk()
    request_uuid: Mapped[str] = mapped_column(String(40), unique=True, nullable=False)
    teacher_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)  # net of fee
    fee_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0.00"), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="NGN", nullable=False)
    payment_method: Mapped[PayoutMethod] = mapped_column(Enum(PayoutMethod), nullable=False)
    payment_details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    status: Mapped[PayoutStatus] = mapped_column(
        Enum(PayoutStatus), default=PayoutStatus.PENDING, nullable=False
    )
    request_date: Mapped[date] = mapped_column(Date, nullable=False)
    processed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("users.id"))
    processed_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("transactions.id"), nullable=True
    )
    external_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_payout_requests_teacher", "teacher_id"),
        Index("ix_payout_requests_status", "status"),
    )


# ── Messaging ─────────────────────────────────────────────────

class Conversation(TimestampMixin, Base):
    __tablename__ = "conversations"

    id: Mapped[uuid.UUID] = _pk()
    type: Mapped[ConversationType] = mapped_column(
        Enum(ConversationType), default=ConversationType.DIRECT, nullable=False
    )
    context_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)  # "booking"
    context_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class ConversationParticipant(Base):
    __tablename__ = "conversation_participants"

    id: Mapped[uuid.UUID] = _pk()
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_muted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_conversation_participant"),
        Index("ix_conversation_participants_user", "user_id"),
    )


class Message(TimestampMixin, SoftDeleteMixin, Base):
    __tablename__ = "messages"

    id: Mapped[uuid.UUID] = _pk()
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    sender_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[MessageType] = mapped_column(
        Enum(MessageType), default=MessageType.TEXT, nullable=False
    )
    edited_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (Index("ix_messages_conversation_created", "conversation_id", "created_at"),)


class MessageStatus(Base):
    __tablename__ = "message_statuses"

    id: Mapped[uuid.UUID] = _pk()
    message_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[MessageDeliveryStatus] = mapped_column(
        Enum(MessageDeliveryStatus), default=MessageDeliveryStatus.SENT, nullable=False
    )
    status_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="uq_message_status"),
        Index("ix_message_statuses_user_status", "user_id", "status"),
    )
