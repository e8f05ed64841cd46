"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import uuid
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Optional

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    HttpUrl,
    field_validator,
    model_validator,
)

from shared.models.models import (
    BookingStatus,
    DocumentType,
    MessageType,
    NotificationChannel,
    NotificationStatus,
    PaymentMethodType,
    PayoutMethod,
    UserRole,
    VerificationResult,
    VideoPlatform,
)

HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


# ── Auth ──────────────────────────────────────────────────────

class RegisterRequest(BaseSchema):
    name: str = Field(..., min_length=2, max_length=255)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    role: UserRole
    phone: Optional[str] = Field(None, pattern=r"^\+?[1-9]\d{9,14}$")

    @field_validator("role")
    @classmethod
    def role_self_registrable(cls, v: UserRole) -> UserRole:
        if v == UserRole.SUPER_ADMIN:
            raise ValueError("Administrator accounts cannot be self-registered")
        return v


class LoginRequest(BaseSchema):
    email: EmailStr
    password: str = Field(..., min_length=1)


class RefreshRequest(BaseSchema):
    refresh_token: Optional[str] = None


class TokenResponse(BaseSchema):
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds


class AuthResponse(BaseSchema):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: "UserResponse"


# ── User ──────────────────────────────────────────────────────

class UserResponse(BaseSchema):
    id: uuid.UUID
    name: str
    email: EmailStr
    phone: Optional[str]
    avatar_url: Optional[str]
    role: str
    is_active: bool
    created_at: datetime


class UserUpdateRequest(BaseSchema):
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    phone: Optional[str] = Field(None, pattern=r"^\+?[1-9]\d{9,14}$")
    avatar_url: Optional[str] = None
    fcm_token: Optional[str] = None


class TeacherProfileUpdate(BaseSchema):
    bio: Optional[str] = Field(None, max_length=2000)
    experience_years: Optional[int] = Field(None, ge=0, le=70)
    hourly_rate: Optional[Decimal] = Field(None, ge=0)
    timezone: Optional[str] = Field(None, max_length=64)
    subject_ids: Optional[List[uuid.UUID]] = None


class TeacherProfileResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    bio: Optional[str]
    experience_years: int
    hourly_rate: Decimal
    timezone: str
    verified: bool
    subject_ids: List[uuid.UUID] = []


class StudentProfileUpdate(BaseSchema):
    grade_level: Optional[str] = Field(None, max_length=50)
    learning_goals: Optional[str] = Field(None, max_length=2000)


class AvailabilityWindow(BaseSchema):
    day_of_week: int = Field(..., ge=0, le=6, description="Monday=0 ... Sunday=6")
    start_time: time
    end_time: time
    is_available: bool = True

    @model_validator(mode="after")
    def end_after_start(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class AvailabilityUpdate(BaseSchema):
    windows: List[AvailabilityWindow] = Field(..., max_length=50)


class LinkChildRequest(BaseSchema):
    student_email: EmailStr


# ── Subject ───────────────────────────────────────────────────

class SubjectCreate(BaseSchema):
    name: str = Field(..., min_length=2, max_length=255)
    slug: Optional[str] = Field(None, pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$", max_length=255)
    description: Optional[str] = None


class SubjectUpdate(BaseSchema):
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    description: Optional[str] = None
    is_active: Optional[bool] = None


class SubjectResponse(BaseSchema):
    id: uuid.UUID
    name: str
    slug: str
    description: Optional[str]
    is_active: bool


# ── Booking ───────────────────────────────────────────────────

class BookingCreateRequest(BaseSchema):
    teacher_id: uuid.UUID
    subject_id: uuid.UUID
    booking_date: date
    start_time: str = Field(..., pattern=HHMM_PATTERN, description="HH:MM")
    duration_minutes: int = Field(60, ge=30, le=240)
    notes: Optional[str] = Field(None, max_length=1000)
    student_id: Optional[uuid.UUID] = Field(None, description="Required when a guardian books for a child")

    @field_validator("booking_date")
    @classmethod
    def must_be_after_today(cls, v: date) -> date:
        if v <= date.today():
            raise ValueError("Booking date must be after today")
        return v

    @field_validator("duration_minutes")
    @classmethod
    def half_hour_steps(cls, v: int) -> int:
        if v % 30:
            raise ValueError("Duration must be a multiple of 30 minutes")
        return v


class BookingResponse(BaseSchema):
    id: uuid.UUID
    booking_number: str
    student_id: uuid.UUID
    teacher_id: uuid.UUID
    subject_id: uuid.UUID
    booking_date: date
    start_time: time
    end_time: time
    duration_minutes: int
    status: str
    notes: Optional[str]
    meeting_link: Optional[str]
    amount: Decimal
    currency: str
    is_refunded: bool = False
    is_teacher_paid: bool = False
    approved_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    cancellation_reason: Optional[str]
    completed_at: Optional[datetime]
    created_at: datetime
    # Injected from joins
    student_name: Optional[str] = None
    teacher_name: Optional[str] = None
    subject_name: Optional[str] = None


class BookingCancelRequest(BaseSchema):
    reason: str = Field(..., min_length=3, max_length=1000)


class BookingRejectRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=1000)


class BookingApproveRequest(BaseSchema):
    meeting_link: Optional[HttpUrl] = None


class BookingStatusUpdateRequest(BaseSchema):
    status: BookingStatus
    notes: Optional[str] = Field(None, max_length=1000)
    notify_parties: bool = True


class BulkStatusUpdateRequest(BookingStatusUpdateRequest):
    booking_ids: List[uuid.UUID] = Field(..., min_length=1, max_length=200)


class ReassignTeacherRequest(BaseSchema):
    new_teacher_id: uuid.UUID
    notify_parties: bool = True
    admin_note: Optional[str] = Field(None, max_length=1000)


class RescheduleRequest(BaseSchema):
    new_date: date
    new_time: str = Field(..., pattern=HHMM_PATTERN, description="HH:MM")
    reason: Optional[str] = Field(None, max_length=1000)
    notify_parties: bool = True

    @field_validator("new_date")
    @classmethod
    def must_be_after_today(cls, v: date) -> date:
        if v <= date.today():
            raise ValueError("The new date must be a date after today")
        return v


class RescheduleModificationRequest(BaseSchema):
    new_booking_date: date
    new_start_time: str = Field(..., pattern=HHMM_PATTERN, description="HH:MM")
    new_duration_minutes: Optional[int] = Field(None, ge=30, le=240, description="Defaults to the current duration")
    reason: str = Field(..., min_length=3, max_length=1000)

    @field_validator("new_booking_date")
    @classmethod
    def must_be_after_today(cls, v: date) -> date:
        if v <= date.today():
            raise ValueError("The new date must be a date after today")
        return v

    @field_validator("new_duration_minutes")
    @classmethod
    def half_hour_steps(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v % 30:
            raise ValueError("Duration must be a multiple of 30 minutes")
        return v


class RebookModificationRequest(RescheduleModificationRequest):
    """Omitted teacher or subject keeps the booking's current one; at least one must change."""
    new_teacher_id: Optional[uuid.UUID] = None
    new_subject_id: Optional[uuid.UUID] = None


class ModificationAnswerRequest(BaseSchema):
    teacher_notes: Optional[str] = Field(None, max_length=1000)


class BookingModificationResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    modification_type: str
    status: str
    requested_by_id: uuid.UUID
    student_id: uuid.UUID
    teacher_id: uuid.UUID
    original_teacher_id: uuid.UUID
    original_subject_id: uuid.UUID
    original_booking_date: date
    original_start_time: time
    original_end_time: time
    original_duration_minutes: int
    new_teacher_id: uuid.UUID
    new_subject_id: uuid.UUID
    new_booking_date: date
    new_start_time: time
    new_end_time: time
    new_duration_minutes: int
    reason: str
    teacher_notes: Optional[str]
    price_difference: Decimal
    expires_at: datetime
    responded_at: Optional[datetime]
    created_at: datetime
    # Injected from joins
    booking_number: Optional[str] = None


# ── Verification ──────────────────────────────────────────────

class DocumentCreateRequest(BaseSchema):
    document_type: DocumentType
    name: str = Field(..., min_length=1, max_length=255)
    file_url: HttpUrl


class VerificationRejectRequest(BaseSchema):
    rejection_reason: str = Field(..., min_length=1, max_length=1000)


class RequestVideoVerificationRequest(BaseSchema):
    scheduled_call_at: datetime
    video_platform: VideoPlatform
    meeting_link: Optional[HttpUrl] = None
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator("scheduled_call_at")
    @classmethod
    def must_be_in_future(cls, v: datetime) -> datetime:
        v = _as_utc(v)
        if v <= datetime.now(timezone.utc):
            raise ValueError("The call must be scheduled in the future")
        return v


class CompleteVideoVerificationRequest(BaseSchema):
    verification_result: VerificationResult
    notes: Optional[str] = Field(None, max_length=1000)


class DocumentRejectRequest(BaseSchema):
    reason: str = Field(..., min_length=1, max_length=1000)


# ── Notification ──────────────────────────────────────────────

class RecipientSelector(BaseSchema):
    all_users: bool = False
    roles: List[UserRole] = []
    user_ids: List[uuid.UUID] = []

    @model_validator(mode="after")
    def at_least_one_audience(self):
        if not (self.all_users or self.roles or self.user_ids):
            raise ValueError("Select all_users, one or more roles, or specific user_ids")
        return self


def _check_channels(v: List[str]) -> List[str]:
    allowed = {c.value for c in NotificationChannel}
    unknown = [c for c in v if c not in allowed]
    if unknown:
        raise ValueError(f"Unknown channel(s): {', '.join(unknown)}")
    return list(dict.fromkeys(v))


ChannelList = Annotated[List[str], AfterValidator(_check_channels)]


class NotificationCreateRequest(BaseSchema):
    title: str = Field(..., min_length=1, max_length=255)
    message: str = Field(..., min_length=1, max_length=5000)
    type: str = Field("custom", max_length=50)
    scheduled_at: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None
    recipients: RecipientSelector
    channels: ChannelList = Field(default_factory=lambda: [NotificationChannel.IN_APP.value], min_length=1)
    send_now: bool = False

    @field_validator("scheduled_at")
    @classmethod
    def normalise_schedule(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v) if v else v


class NotificationStatusUpdate(BaseSchema):
    status: NotificationStatus


class NotificationTemplateCreate(BaseSchema):
    name: str = Field(..., min_length=2, max_length=100)
    title: str = Field(..., min_length=1, max_length=255)
    body: str = Field(..., min_length=1, max_length=5000)
    type: str = Field("custom", max_length=50)
    channels: ChannelList = Field(default_factory=lambda: [NotificationChannel.IN_APP.value])
    is_active: bool = True


class NotificationTemplateUpdate(BaseSchema):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    body: Optional[str] = Field(None, min_length=1, max_length=5000)
    type: Optional[str] = Field(None, max_length=50)
    channels: Optional[ChannelList] = None
    is_active: Optional[bool] = None


class SendFromTemplateRequest(BaseSchema):
    data: Dict[str, Any] = {}
    recipients: RecipientSelector
    channels: Optional[ChannelList] = None


class NotificationTriggerCreate(BaseSchema):
    name: str = Field(..., min_length=2, max_length=100)
    event: str = Field(..., pattern=r"^[a-z_]+\.[a-z_]+$", description="e.g. booking.approved")
    template_id: uuid.UUID
    audience: str = Field("user", pattern=r"^(user|student|teacher|guardian|admin)$")
    channels: ChannelList = Field(default_factory=lambda: [NotificationChannel.IN_APP.value])
    is_enabled: bool = True


class NotificationTriggerUpdate(BaseSchema):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    template_id: Optional[uuid.UUID] = None
    audience: Optional[str] = Field(None, pattern=r"^(user|student|teacher|guardian|admin)$")
    channels: Optional[ChannelList] = None
    is_enabled: Optional[bool] = None


class NotificationResponse(BaseSchema):
    """In-app notification as seen by its recipient."""
    id: uuid.UUID  # recipient row id
    notification_id: uuid.UUID
    title: str
    message: str
    type: str
    status: str
    delivered_at: Optional[datetime]
    read_at: Optional[datetime]
    created_at: datetime
    metadata: Optional[Dict[str, Any]] = None


# ── Wallet & Earnings ─────────────────────────────────────────

class TopUpInitiateRequest(BaseSchema):
    amount: Decimal = Field(..., gt=0, le=Decimal("10000000"))


class TopUpVerifyRequest(BaseSchema):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class PaymentMethodCreate(BaseSchema):
    type: PaymentMethodType
    label: str = Field(..., min_length=2, max_length=100)
    details: Optional[Dict[str, Any]] = None
    is_default: bool = False


class PayoutRequestCreate(BaseSchema):
    amount: Decimal = Field(..., gt=0)
    payment_method: PayoutMethod
    bank_name: Optional[str] = Field(None, max_length=100)
    account_number: Optional[str] = Field(None, pattern=r"^\d{6,20}$")
    account_name: Optional[str] = Field(None, max_length=255)
    mobile_provider: Optional[str] = Field(None, max_length=50)
    mobile_number: Optional[str] = Field(None, pattern=r"^\+?\d{9,15}$")
    paypal_email: Optional[EmailStr] = None
    notes: Optional[str] = Field(None, max_length=1000)


class EarningsSettingsUpdate(BaseSchema):
    auto_withdrawal_enabled: Optional[bool] = None
    auto_withdrawal_threshold: Optional[Decimal] = Field(None, gt=0)
    preferred_payout_method: Optional[PayoutMethod] = None
    payout_details: Optional[Dict[str, Any]] = None


class PayoutDeclineRequest(BaseSchema):
    reason: str = Field(..., min_length=3, max_length=1000)


class PayoutMarkPaidRequest(BaseSchema):
    external_reference: Optional[str] = Field(None, max_length=100)


# ── Messaging ─────────────────────────────────────────────────

class ConversationCreateRequest(BaseSchema):
    participant_ids: List[uuid.UUID] = Field(..., min_length=1, max_length=20)
    type: str = Field("direct", pattern=r"^(direct|group|support)$")
    context_type: Optional[str] = Field(None, max_length=50)
    context_id: Optional[str] = Field(None, max_length=100)
    initial_message: Optional[str] = Field(None, min_length=1, max_length=10000)


class MessageCreateRequest(BaseSchema):
    conversation_id: uuid.UUID
    content: str = Field(..., min_length=1, max_length=10000)
    type: MessageType = MessageType.TEXT


class MessageUpdateRequest(BaseSchema):
    content: str = Field(..., min_length=1, max_length=10000)


# ── Admin ─────────────────────────────────────────────────────

class AdminUserStatusRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=1000)
