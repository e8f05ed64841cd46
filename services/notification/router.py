"""
services/notification/router.py
In-app notification inbox for the signed-in user.
Each item is a NotificationRecipient row on the in-app channel.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.notification import service
from shared.middleware.auth import get_current_user
from shared.models.models import (
    Notification,
    NotificationChannel,
    NotificationRecipient,
    RecipientStatus,
    User,
)
from shared.schemas.schemas import NotificationResponse
from shared.utils.responses import page_meta, success

router = APIRouter(prefix="/api/notifications", tags=["Notifications"])

VISIBLE_STATUSES = (RecipientStatus.DELIVERED, RecipientStatus.SENT, RecipientStatus.READ)


def _to_response(recipient: NotificationRecipient, notification: Notification) -> NotificationResponse:
    return NotificationResponse(
        id=recipient.id,
        notification_id=notification.id,
        title=notification.title,
        message=notification.message,
        type=notification.type,
        status=recipient.status.value,
        delivered_at=recipient.delivered_at,
        read_at=recipient.read_at,
        created_at=recipient.created_at,
        metadata=notification.notification_metadata,
    )


async def _get_mine_or_404(db: AsyncSession, recipient_id: UUID, user: User) -> NotificationRecipient:
    recipient = (await db.execute(
        select(NotificationRecipient).where(
            NotificationRecipient.id == recipient_id,
            NotificationRecipient.user_id == user.id,
            NotificationRecipient.channel == NotificationChannel.IN_APP.value,
        )
    )).scalar_one_or_none()
    if not recipient:
        raise HTTPException(status_code=404, detail="Notification not found")
    return recipient


@router.get("")
async def list_notifications(
    unread_only: bool = Query(False),
    type_filter: Optional[str] = Query(None, alias="type", max_length=50),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Newest first. Pending (not yet sent) and failed deliveries are hidden."""
    query = (
        select(NotificationRecipient, Notification)
        .join(Notification, Notification.id == NotificationRecipient.notification_id)
        .where(
            NotificationRecipient.user_id == current_user.id,
            NotificationRecipient.channel == NotificationChannel.IN_APP.value,
            NotificationRecipient.status.in_(VISIBLE_STATUSES),
        )
    )
    if unread_only:
        query = query.where(NotificationRecipient.read_at.is_(None))
    if type_filter:
        query = query.where(Notification.type == type_filter)

    total = await db.scalar(select(func.count()).select_from(query.subquery())) or 0
    result = await db.execute(
        query.order_by(NotificationRecipient.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    items = [_to_response(r, n) for r, n in result.all()]
    return success(
        items,
        meta=page_meta(total, page, page_size),
        unread_count=await service.unread_count(db, current_user.id),
    )


@router.get("/unread-count")
async def unread_count(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return success({"unread_count": await service.unread_count(db, current_user.id)})


@router.post("/read-all")
async def mark_all_read(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    updated = await service.mark_all_as_read(db, current_user.id)
    return success({"updated": updated}, "All notifications marked as read")


@router.post("/{recipient_id}/read")
async def mark_read(
    recipient_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    recipient = await _get_mine_or_404(db, recipient_id, current_user)
    await service.mark_as_read(db, recipient)
    notification = await db.get(Notification, recipient.notification_id)
    return success(_to_response(recipient, notification), "Marked as read")


@router.delete("/{recipient_id}")
async def delete_notification(
    recipient_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Removes the notification from this user's inbox only."""
    recipient = await _get_mine_or_404(db, recipient_id, current_user)
    await db.delete(recipient)
    await db.flush()
    return success(None, "Notification deleted")
