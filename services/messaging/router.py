"""
services/messaging/router.py
Conversations and messages between students, guardians, teachers and admins.
Clients poll; there is no websocket push.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.messaging import service
from services.notification.service import notify_users
from shared.middleware.auth import get_current_user
from shared.models.models import (
    Conversation,
    ConversationParticipant,
    ConversationType,
    Message,
    MessageType,
    User,
)
from shared.schemas.schemas import ConversationCreateRequest, MessageCreateRequest, MessageUpdateRequest
from shared.utils.responses import FieldValidationError, page_meta, paginate, success

conversations_router = APIRouter(prefix="/api/conversations", tags=["Conversations"])
messages_router = APIRouter(prefix="/api/messages", tags=["Messages"])


def _message_dict(m: Message, sender: Optional[User] = None) -> dict:
    return {
        "id": m.id,
        "conversation_id": m.conversation_id,
        "sender_id": m.sender_id,
        "sender_name": sender.name if sender else None,
        "content": m.content,
        "type": m.type.value,
        "edited_at": m.edited_at,
        "created_at": m.created_at,
    }


def _user_summary(u: User) -> dict:
    return {"id": u.id, "name": u.name, "role": u.role.value, "avatar_url": u.avatar_url}


async def _users_by_id(db: AsyncSession, ids) -> dict[UUID, User]:
    ids = set(ids)
    if not ids:
        return {}
    result = await db.execute(select(User).where(User.id.in_(ids)))
    return {u.id: u for u in result.scalars().all()}


async def _get_message_or_404(db: AsyncSession, message_id: UUID) -> Message:
    message = await db.get(Message, message_id)
    if not message or message.deleted_at is not None:
        raise HTTPException(status_code=404, detail="Message not found")
    return message


async def _deliver(db: AsyncSession, conversation: Conversation, sender: User, content: str, message_type) -> Message:
    """Post a message and notify recipients who have not muted the conversation."""
    message, recipients = await service.post_message(db, conversation, sender, content, message_type)

    muted = set((await db.execute(
        select(ConversationParticipant.user_id).where(
            ConversationParticipant.conversation_id == conversation.id,
            ConversationParticipant.is_muted == True,  # noqa: E712
        )
    )).scalars().all())
    to_notify = [uid for uid in recipients if uid not in muted]
    if to_notify:
        await notify_users(
            db, to_notify,
            event="message.received",
            title=f"New message from {sender.name}",
            message=service.preview(content),
            data={"conversation_id": str(conversation.id), "message_id": str(message.id), "sender_name": sender.name},
        )
    return message


async def _conversation_summaries(db: AsyncSession, user: User, rows: list[tuple]) -> list[dict]:
    """rows: (Conversation, ConversationParticipant) for the current user."""
    conversation_ids = [c.id for c, _ in rows]
    if not conversation_ids:
        return []

    members = (await db.execute(
        select(ConversationParticipant.conversation_id, ConversationParticipant.user_id)
        .where(ConversationParticipant.conversation_id.in_(conversation_ids))
    )).all()
    users = await _users_by_id(db, [uid for _, uid in members])

    latest = (
        select(Message.conversation_id, func.max(Message.created_at).label("latest"))
        .where(Message.conversation_id.in_(conversation_ids), Message.deleted_at.is_(None))
        .group_by(Message.conversation_id)
        .subquery()
    )
    last_messages = {
        m.conversation_id: m
        for m in (await db.execute(
            select(Message).join(
                latest,
                (Message.conversation_id == latest.c.conversation_id) & (Message.created_at == latest.c.latest),
            )
        )).scalars().all()
    }
    unread = await service.unread_counts(db, user.id, conversation_ids)

    out = []
    for conversation, me in rows:
        last = last_messages.get(conversation.id)
        out.append({
            "id": conversation.id,
            "type": conversation.type.value,
            "context_type": conversation.context_type,
            "context_id": conversation.context_id,
            "participants": [
                _user_summary(users[uid])
                for cid, uid in members
                if cid == conversation.id and uid != user.id and uid in users
            ],
            "last_message": _message_dict(last, users.get(last.sender_id)) if last else None,
            "last_message_at": conversation.last_message_at,
            "unread_count": unread.get(conversation.id, 0),
            "is_archived": me.is_archived,
            "is_muted": me.is_muted,
            "created_at": conversation.created_at,
        })
    return out


# ── Conversations ─────────────────────────────────────────────

@conversations_router.get("")
async def list_conversations(
    archived: bool = Query(False, description="Show archived conversations instead of active ones"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    query = (
        select(Conversation, ConversationParticipant)
        .join(ConversationParticipant, ConversationParticipant.conversation_id == Conversation.id)
        .where(
            ConversationParticipant.user_id == current_user.id,
            ConversationParticipant.is_archived == archived,
        )
    )
    total = await db.scalar(select(func.count()).select_from(query.subquery())) or 0
    rows = (await db.execute(
        query.order_by(func.coalesce(Conversation.last_message_at, Conversation.created_at).desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )).all()

    items = await _conversation_summaries(db, current_user, rows)
    total_unread = sum((await service.unread_counts(
        db, current_user.id, [c.id for c, _ in rows]
    )).values())
    return success(items, meta=page_meta(total, page, page_size), unread_count=total_unread)


@conversations_router.post("", status_code=status.HTTP_201_CREATED)
async def create_conversation(
    data: ConversationCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Start a conversation. A direct conversation with someone you already talk
    to is returned instead of creating a duplicate.
    """
    other_ids = [uid for uid in dict.fromkeys(data.participant_ids) if uid != current_user.id]
    if not other_ids:
        raise FieldValidationError({"participant_ids": ["Choose at least one other participant."]})

    conversation_type = ConversationType(data.type)
    if conversation_type == ConversationType.DIRECT and len(other_ids) != 1:
        raise FieldValidationError({"participant_ids": ["A direct conversation has exactly one other participant."]})

    users = await _users_by_id(db, other_ids)
    missing = [str(uid) for uid in other_ids if uid not in users or not users[uid].is_active]
    if missing:
        raise FieldValidationError({"participant_ids": [f"Unknown user(s): {', '.join(missing)}"]})

    for uid in other_ids:
        if not await service.can_message(db, current_user, users[uid]):
            raise HTTPException(status_code=403, detail=f"You cannot message {users[uid].name}")

    conversation = None
    created = False
    if conversation_type == ConversationType.DIRECT:
        conversation = await service.find_direct_conversation(db, current_user.id, other_ids[0])
        if conversation:
            me = await service.get_participant(db, conversation.id, current_user.id)
            me.is_archived = False
    if not conversation:
        conversation = await service.create_conversation(
            db, current_user, [users[uid] for uid in other_ids],
            conversation_type, data.context_type, data.context_id,
        )
        created = True

    if data.initial_message:
        await _deliver(db, conversation, current_user, data.initial_message, MessageType.TEXT)

    me = await service.get_participant(db, conversation.id, current_user.id)
    summary = (await _conversation_summaries(db, current_user, [(conversation, me)]))[0]
    return success(summary, "Conversation created" if created else "Conversation already exists", created=created)


@conversations_router.get("/{conversation_id}")
async def get_conversation(
    conversation_id: UUID,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Conversation details with messages, newest first."""
    me = await service.require_participant(db, conversation_id, current_user)
    conversation = await db.get(Conversation, conversation_id)

    query = (
        select(Message)
        .where(Message.conversation_id == conversation_id, Message.deleted_at.is_(None))
        .order_by(Message.created_at.desc())
    )
    messages, meta = await paginate(db, query, page, page_size)
    senders = await _users_by_id(db, [m.sender_id for m in messages])

    summary = (await _conversation_summaries(db, current_user, [(conversation, me)]))[0]
    summary["messages"] = [_message_dict(m, senders.get(m.sender_id)) for m in messages]
    return success(summary, meta=meta)


async def _set_flag(db: AsyncSession, conversation_id: UUID, user: User, **values) -> ConversationParticipant:
    me = await service.require_participant(db, conversation_id, user)
    for field, value in values.items():
        setattr(me, field, value)
    await db.flush()
    return me


@conversations_router.post("/{conversation_id}/archive")
async def archive_conversation(
    conversation_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await _set_flag(db, conversation_id, current_user, is_archived=True)
    return success({"is_archived": True}, "Conversation archived")


@conversations_router.post("/{conversation_id}/unarchive")
async def unarchive_conversation(
    conversation_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await _set_flag(db, conversation_id, current_user, is_archived=False)
    return success({"is_archived": False}, "Conversation restored")


@conversations_router.post("/{conversation_id}/mute")
async def mute_conversation(
    conversation_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await _set_flag(db, conversation_id, current_user, is_muted=True)
    return success({"is_muted": True}, "Conversation muted")


@conversations_router.post("/{conversation_id}/unmute")
async def unmute_conversation(
    conversation_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await _set_flag(db, conversation_id, current_user, is_muted=False)
    return success({"is_muted": False}, "Conversation unmuted")


@conversations_router.post("/{conversation_id}/read")
async def read_conversation(
    conversation_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await service.require_participant(db, conversation_id, current_user)
    updated = await service.mark_read(db, current_user.id, conversation_id=conversation_id)
    return success({"updated": updated}, "Conversation marked as read")


# ── Messages ──────────────────────────────────────────────────

@messages_router.get("/search")
async def search_messages(
    q: str = Query(..., min_length=2, max_length=100),
    conversation_id: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Search message text across the user's conversations."""
    mine = select(ConversationParticipant.conversation_id).where(ConversationParticipant.user_id == current_user.id)
    query = select(Message).where(
        Message.conversation_id.in_(mine),
        Message.deleted_at.is_(None),
        Message.content.ilike(f"%{q}%"),
    )
    if conversation_id:
        query = query.where(Message.conversation_id == conversation_id)
    messages, meta = await paginate(db, query.order_by(Message.created_at.desc()), page, page_size)
    senders = await _users_by_id(db, [m.sender_id for m in messages])
    return success([_message_dict(m, senders.get(m.sender_id)) for m in messages], meta=meta)


@messages_router.post("/read-all")
async def read_all_messages(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    updated = await service.mark_read(db, current_user.id)
    return success({"updated": updated}, "All messages marked as read")


@messages_router.post("", status_code=status.HTTP_201_CREATED)
async def send_message(
    data: MessageCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await service.require_participant(db, data.conversation_id, current_user)
    conversation = await db.get(Conversation, data.conversation_id)
    message = await _deliver(db, conversation, current_user, data.content, MessageType(data.type))
    return success(_message_dict(message, current_user), "Message sent")


@messages_router.patch("/{message_id}")
async def update_message(
    message_id: UUID,
    data: MessageUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    message = await _get_message_or_404(db, message_id)
    if message.sender_id != current_user.id:
        raise HTTPException(status_code=403, detail="You can only edit your own messages")
    message.content = data.content
    message.edited_at = service.utcnow()
    await db.flush()
    return success(_message_dict(message, current_user), "Message updated")


@messages_router.delete("/{message_id}")
async def delete_message(
    message_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    message = await _get_message_or_404(db, message_id)
    if message.sender_id != current_user.id and not current_user.is_admin:
        raise HTTPException(status_code=403, detail="You can only delete your own messages")
    message.deleted_at = service.utcnow()
    await db.flush()
    return success(None, "Message deleted")


@messages_router.post("/{message_id}/read")
async def read_message(
    message_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    message = await _get_message_or_404(db, message_id)
    await service.require_participant(db, message.conversation_id, current_user)
    updated = await service.mark_read(db, current_user.id, message_id=message.id)
    return success({"updated": updated}, "Message marked as read")
