"""
services/messaging/service.py
Who may message whom, direct-conversation reuse, and read-state bookkeeping.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional
from uuid import UUID

from fastapi import HTTPException
from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import (
    Booking,
    BookingStatus,
    Conversation,
    ConversationParticipant,
    ConversationType,
    Message,
    MessageDeliveryStatus,
    MessageStatus,
    StudentProfile,
    User,
    UserRole,
)

logger = logging.getLogger(__name__)

# Bookings that let a guardian reach their child's teacher
GUARDIAN_CONTACT_STATUSES = (BookingStatus.APPROVED, BookingStatus.COMPLETED)

PREVIEW_LENGTH = 100


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def preview(text: str, length: int = PREVIEW_LENGTH) -> str:
    return text if len(text) <= length else text[: length - 3] + "..."


# ── Permissions ───────────────────────────────────────────────

async def _share_booking(db: AsyncSession, student_id: UUID, teacher_id: UUID) -> bool:
    found = await db.scalar(
        select(Booking.id).where(Booking.student_id == student_id, Booking.teacher_id == teacher_id).limit(1)
    )
    return found is not None


async def _teaches_child_of(db: AsyncSession, guardian_id: UUID, teacher_id: UUID) -> bool:
    found = await db.scalar(
        select(Booking.id)
        .join(StudentProfile, StudentProfile.user_id == Booking.student_id)
        .where(
            StudentProfile.guardian_id == guardian_id,
            Booking.teacher_id == teacher_id,
            Booking.status.in_(GUARDIAN_CONTACT_STATUSES),
        )
        .limit(1)
    )
    return found is not None


async def can_message(db: AsyncSession, sender: User, recipient: User) -> bool:
    """
    Students and teachers who share a booking; guardians and the teachers of
    their children (approved or completed bookings). Super-admins can reach
    anyone and anyone can reach a super-admin.
    """
    if sender.id == recipient.id:
        return False
    if sender.is_admin or recipient.is_admin:
        return True

    roles = {sender.role, recipient.role}
    if roles == {UserRole.STUDENT, UserRole.TEACHER}:
        student, teacher = (sender, recipient) if sender.role == UserRole.STUDENT else (recipient, sender)
        return await _share_booking(db, student.id, teacher.id)
    if roles == {UserRole.GUARDIAN, UserRole.TEACHER}:
        guardian, teacher = (sender, recipient) if sender.role == UserRole.GUARDIAN else (recipient, sender)
        return await _teaches_child_of(db, guardian.id, teacher.id)
    return False


# ── Conversations ─────────────────────────────────────────────

async def get_participant(
    db: AsyncSession, conversation_id: UUID, user_id: UUID
) -> Optional[ConversationParticipant]:
    return (await db.execute(
        select(ConversationParticipant).where(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.user_id == user_id,
        )
    )).scalar_one_or_none()


async def require_participant(db: AsyncSession, conversation_id: UUID, user: User) -> ConversationParticipant:
    """404 for unknown conversations, 403 for ones the user is not part of."""
    conversation = await db.get(Conversation, conversation_id)
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")
    participant = await get_participant(db, conversation_id, user.id)
    if not participant:
        raise HTTPException(status_code=403, detail="You are not a participant in this conversation")
    return participant


async def participant_ids(db: AsyncSession, conversation_id: UUID) -> list[UUID]:
    result = await db.execute(
        select(ConversationParticipant.user_id).where(ConversationParticipant.conversation_id == conversation_id)
    )
    return list(result.scalars().all())


async def find_direct_conversation(db: AsyncSession, user_a: UUID, user_b: UUID) -> Optional[Conversation]:
    """An existing two-person direct conversation between these users, if any."""
    shared = (
        select(ConversationParticipant.conversation_id)
        .where(ConversationParticipant.user_id.in_([user_a, user_b]))
        .group_by(ConversationParticipant.conversation_id)
        .having(func.count(ConversationParticipant.user_id) == 2)
    )
    sizes = (
        select(ConversationParticipant.conversation_id)
        .group_by(ConversationParticipant.conversation_id)
        .having(func.count(ConversationParticipant.user_id) == 2)
    )
    return (await db.execute(
        select(Conversation)
        .where(
            Conversation.type == ConversationType.DIRECT,
            Conversation.id.in_(shared),
            Conversation.id.in_(sizes),
        )
        .order_by(Conversation.created_at)
        .limit(1)
    )).scalar_one_or_none()


async def create_conversation(
    db: AsyncSession,
    creator: User,
    others: Iterable[User],
    conversation_type: ConversationType = ConversationType.DIRECT,
    context_type: Optional[str] = None,
    context_id: Optional[str] = None,
) -> Conversation:
    conversation = Conversation(type=conversation_type, context_type=context_type, context_id=context_id)
    db.add(conversation)
    await db.flush()
    for user in [creator, *others]:
        db.add(ConversationParticipant(conversation_id=conversation.id, user_id=user.id))
    await db.flush()
    return conversation


# ── Messages ──────────────────────────────────────────────────

async def post_message(
    db: AsyncSession,
    conversation: Conversation,
    sender: User,
    content: str,
    message_type,
) -> tuple[Message, list[UUID]]:
    """
    Store a message with a `sent` status row per other participant.
    Returns the message and the IDs of the recipients.
    """
    now = utcnow()
    message = Message(
        conversation_id=conversation.id,
        sender_id=sender.id,
        content=content,
        type=message_type,
        created_at=now,
        updated_at=now,
    )
    db.add(message)
    await db.flush()

    recipients = [uid for uid in await participant_ids(db, conversation.id) if uid != sender.id]
    for uid in recipients:
        db.add(MessageStatus(message_id=message.id, user_id=uid, status=MessageDeliveryStatus.SENT, status_at=now))

    conversation.last_message_at = now
    await db.execute(
        update(ConversationParticipant)
        .where(
            ConversationParticipant.conversation_id == conversation.id,
            ConversationParticipant.user_id.in_(recipients),
        )
        .values(is_archived=False)
    )
    sender_row = await get_participant(db, conversation.id, sender.id)
    if sender_row:
        sender_row.last_read_at = now
    await db.flush()
    return message, recipients


async def unread_counts(db: AsyncSession, user_id: UUID, conversation_ids: list[UUID]) -> dict[UUID, int]:
    if not conversation_ids:
        return {}
    result = await db.execute(
        select(Message.conversation_id, func.count(MessageStatus.id))
        .join(Message, Message.id == MessageStatus.message_id)
        .where(
            MessageStatus.user_id == user_id,
            MessageStatus.status != MessageDeliveryStatus.READ,
            Message.deleted_at.is_(None),
            Message.conversation_id.in_(conversation_ids),
        )
        .group_by(Message.conversation_id)
    )
    return {cid: count for cid, count in result.all()}


async def mark_read(
    db: AsyncSession, user_id: UUID, conversation_id: Optional[UUID] = None, message_id: Optional[UUID] = None
) -> int:
    """Mark the user's unread status rows as read. Returns the number updated."""
    now = utcnow()
    conditions = [MessageStatus.user_id == user_id, MessageStatus.status != MessageDeliveryStatus.READ]
    if message_id:
        conditions.append(MessageStatus.message_id == message_id)
    if conversation_id:
        conditions.append(
            MessageStatus.message_id.in_(select(Message.id).where(Message.conversation_id == conversation_id))
        )

    result = await db.execute(
        update(MessageStatus)
        .where(and_(*conditions))
        .values(status=MessageDeliveryStatus.READ, status_at=now)
        .execution_options(synchronize_session=False)
    )

    touched = update(ConversationParticipant).where(ConversationParticipant.user_id == user_id)
    if conversation_id:
        touched = touched.where(ConversationParticipant.conversation_id == conversation_id)
    if not message_id:
        await db.execute(touched.values(last_read_at=now).execution_options(synchronize_session=False))
    return result.rowcount or 0
