"""
services/notification/admin_router.py
Admin notification console: compose, schedule and send notifications,
manage templates and event triggers.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.admin.audit import log_admin_action
from services.notification import service
from shared.middleware.auth import require_admin
from shared.models.models import (
    Notification,
    NotificationRecipient,
    NotificationStatus,
    NotificationTemplate,
    NotificationTrigger,
    SenderType,
    User,
)
from shared.schemas.schemas import (
    NotificationCreateRequest,
    NotificationStatusUpdate,
    NotificationTemplateCreate,
    NotificationTemplateUpdate,
    NotificationTriggerCreate,
    NotificationTriggerUpdate,
    RecipientSelector,
    SendFromTemplateRequest,
)
from shared.utils.responses import FieldValidationError, paginate, success

router = APIRouter(prefix="/admin/notifications", tags=["Admin Notifications"])


def _notification_dict(n: Notification, stats: Optional[dict] = None) -> dict:
    body = {
        "id": n.id,
        "title": n.title,
        "message": n.message,
        "type": n.type,
        "status": n.status.value,
        "sender_type": n.sender_type.value,
        "sender_id": n.sender_id,
        "scheduled_at": n.scheduled_at,
        "sent_at": n.sent_at,
        "metadata": n.notification_metadata,
        "created_at": n.created_at,
    }
    if stats is not None:
        body["stats"] = stats
    return body


def _template_dict(t: NotificationTemplate) -> dict:
    return {
        "id": t.id,
        "name": t.name,
        "title": t.title,
        "body": t.body,
        "type": t.type,
        "channels": t.channels,
        "is_active": t.is_active,
    }


def _trigger_dict(t: NotificationTrigger) -> dict:
    return {
        "id": t.id,
        "name": t.name,
        "event": t.event,
        "template_id": t.template_id,
        "audience": t.audience,
        "channels": t.channels,
        "is_enabled": t.is_enabled,
    }


async def _get_or_404(db: AsyncSession, model, object_id: UUID, label: str):
    obj = await db.get(model, object_id)
    if not obj:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return obj


async def _resolve(db: AsyncSession, selector: RecipientSelector) -> list[UUID]:
    user_ids = await service.resolve_recipients(
        db, all_users=selector.all_users, roles=selector.roles, user_ids=selector.user_ids
    )
    if not user_ids:
        raise FieldValidationError({"recipients": ["No active users match the selected recipients."]})
    return user_ids


# ── Templates ─────────────────────────────────────────────────

@router.get("/templates")
async def list_templates(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(NotificationTemplate).order_by(NotificationTemplate.name))
    return success([_template_dict(t) for t in result.scalars().all()])


@router.post("/templates", status_code=status.HTTP_201_CREATED)
async def create_template(
    data: NotificationTemplateCreate,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    exists = await db.scalar(select(NotificationTemplate.id).where(NotificationTemplate.name == data.name))
    if exists:
        raise FieldValidationError({"name": ["A template with this name already exists."]})

    template = NotificationTemplate(**data.model_dump())
    db.add(template)
    await db.flush()
    log_admin_action(db, current_user, "notification_template.created", "notification_template",
                     template.id, payload={"name": template.name}, request=request)
    return success(_template_dict(template), "Template created")


@router.patch("/templates/{template_id}")
async def update_template(
    template_id: UUID,
    data: NotificationTemplateUpdate,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    template = await _get_or_404(db, NotificationTemplate, template_id, "Template")
    changes = data.model_dump(exclude_unset=True)
    for field, value in changes.items():
        setattr(template, field, value)
    await db.flush()
    log_admin_action(db, current_user, "notification_template.updated", "notification_template",
                     template.id, payload={"fields": sorted(changes)}, request=request)
    return success(_template_dict(template), "Template updated")


@router.post("/templates/{template_id}/send")
async def send_from_template(
    template_id: UUID,
    data: SendFromTemplateRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Render the template with `data` and send it to the selected recipients."""
    template = await _get_or_404(db, NotificationTemplate, template_id, "Template")
    if not template.is_active:
        raise HTTPException(status_code=409, detail="Template is inactive")

    user_ids = await _resolve(db, data.recipients)
    notification = await service.create_from_template(
        db, template.name, data.data, user_ids,
        channels=data.channels,
        sender_type=SenderType.ADMIN,
        sender_id=current_user.id,
    )
    log_admin_action(db, current_user, "notification.sent_from_template", "notification",
                     notification.id, payload={"template": template.name, "recipients": len(user_ids)},
                     request=request)
    stats = await service.delivery_stats(db, notification.id)
    return success(_notification_dict(notification, stats), "Notification sent")


# ── Triggers ──────────────────────────────────────────────────

@router.get("/triggers")
async def list_triggers(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(NotificationTrigger).order_by(NotificationTrigger.event))
    return success([_trigger_dict(t) for t in result.scalars().all()])


@router.post("/triggers", status_code=status.HTTP_201_CREATED)
async def create_trigger(
    data: NotificationTriggerCreate,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    if not await db.get(NotificationTemplate, data.template_id):
        raise FieldValidationError({"template_id": ["The selected template does not exist."]})

    trigger = NotificationTrigger(**data.model_dump())
    db.add(trigger)
    await db.flush()
    log_admin_action(db, current_user, "notification_trigger.created", "notification_trigger",
                     trigger.id, payload={"event": trigger.event}, request=request)
    return success(_trigger_dict(trigger), "Trigger created")


@router.patch("/triggers/{trigger_id}")
async def update_trigger(
    trigger_id: UUID,
    data: NotificationTriggerUpdate,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    trigger = await _get_or_404(db, NotificationTrigger, trigger_id, "Trigger")
    changes = data.model_dump(exclude_unset=True)
    if changes.get("template_id") and not await db.get(NotificationTemplate, changes["template_id"]):
        raise FieldValidationError({"template_id": ["The selected template does not exist."]})
    for field, value in changes.items():
        setattr(trigger, field, value)
    await db.flush()
    log_admin_action(db, current_user, "notification_trigger.updated", "notification_trigger",
                     trigger.id, payload={"fields": sorted(changes)}, request=request)
    return success(_trigger_dict(trigger), "Trigger updated")


@router.delete("/triggers/{trigger_id}")
async def delete_trigger(
    trigger_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    trigger = await _get_or_404(db, NotificationTrigger, trigger_id, "Trigger")
    log_admin_action(db, current_user, "notification_trigger.deleted", "notification_trigger",
                     trigger.id, payload={"event": trigger.event}, request=request)
    await db.delete(trigger)
    await db.flush()
    return success(None, "Trigger deleted")


# ── Notifications ─────────────────────────────────────────────

@router.get("")
async def list_notifications(
    status_filter: Optional[NotificationStatus] = Query(None, alias="status"),
    type_filter: Optional[str] = Query(None, alias="type", max_length=50),
    search: Optional[str] = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = select(Notification)
    if status_filter:
        query = query.where(Notification.status == status_filter)
    if type_filter:
        query = query.where(Notification.type == type_filter)
    if search:
        query = query.where(or_(
            Notification.title.ilike(f"%{search}%"),
            Notification.message.ilike(f"%{search}%"),
        ))
    query = query.order_by(Notification.created_at.desc())

    rows, meta = await paginate(db, query, page, page_size)
    items = [_notification_dict(n, await service.delivery_stats(db, n.id)) for n in rows]
    return success(items, meta=meta)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_notification(
    data: NotificationCreateRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Compose a notification. With send_now or a scheduled_at it is sent
    (or scheduled) right away; otherwise it stays a draft.
    """
    user_ids = await _resolve(db, data.recipients)

    notification = await service.create_notification(
        db,
        title=data.title,
        message=data.message,
        type=data.type,
        sender_type=SenderType.ADMIN,
        sender_id=current_user.id,
        scheduled_at=data.scheduled_at,
        metadata=data.metadata,
    )
    added = await service.add_recipients(db, notification, user_ids, data.channels)
    if data.send_now or data.scheduled_at:
        await service.send_notification(db, notification)

    log_admin_action(
        db, current_user, "notification.created", "notification", notification.id,
        payload={"recipients": len(user_ids), "deliveries": added, "status": notification.status.value},
        request=request,
    )
    stats = await service.delivery_stats(db, notification.id)
    return success(_notification_dict(notification, stats), "Notification created")


@router.get("/{notification_id}")
async def show_notification(
    notification_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    notification = await _get_or_404(db, Notification, notification_id, "Notification")
    recipients = (await db.execute(
        select(NotificationRecipient, User.name, User.email)
        .join(User, User.id == NotificationRecipient.user_id)
        .where(NotificationRecipient.notification_id == notification.id)
        .order_by(NotificationRecipient.created_at)
        .limit(100)
    )).all()

    body = _notification_dict(notification, await service.delivery_stats(db, notification.id))
    body["recipients"] = [
        {
            "id": r.id,
            "user_id": r.user_id,
            "name": name,
            "email": email,
            "channel": r.channel,
            "status": r.status.value,
            "delivered_at": r.delivered_at,
            "read_at": r.read_at,
            "error_message": r.error_message,
        }
        for r, name, email in recipients
    ]
    return success(body)


@router.post("/{notification_id}/send")
async def send_notification(
    notification_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Send a draft or scheduled notification immediately."""
    notification = await _get_or_404(db, Notification, notification_id, "Notification")
    if notification.status not in (NotificationStatus.DRAFT, NotificationStatus.SCHEDULED):
        raise HTTPException(status_code=409, detail=f"Notification is already {notification.status.value}")

    await service.send_notification(db, notification, force=True)
    log_admin_action(db, current_user, "notification.sent", "notification", notification.id, request=request)
    return success(
        _notification_dict(notification, await service.delivery_stats(db, notification.id)),
        "Notification sent",
    )


@router.patch("/{notification_id}/status")
async def update_status(
    notification_id: UUID,
    data: NotificationStatusUpdate,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    notification = await _get_or_404(db, Notification, notification_id, "Notification")
    new_status = NotificationStatus(data.status)
    if new_status == NotificationStatus.SCHEDULED and not notification.scheduled_at:
        raise FieldValidationError({"status": ["A notification without scheduled_at cannot be scheduled."]})

    previous = notification.status
    notification.status = new_status
    if new_status == NotificationStatus.SENT and not notification.sent_at:
        notification.sent_at = datetime.now(timezone.utc)
    await db.flush()
    log_admin_action(
        db, current_user, "notification.status_changed", "notification", notification.id,
        payload={"from": previous.value, "to": new_status.value}, request=request,
    )
    return success(_notification_dict(notification), "Status updated")


@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    notification = await _get_or_404(db, Notification, notification_id, "Notification")
    await db.execute(delete(NotificationRecipient).where(NotificationRecipient.notification_id == notification.id))
    log_admin_action(db, current_user, "notification.deleted", "notification", notification.id,
                     payload={"title": notification.title}, request=request)
    await db.delete(notification)
    await db.flush()
    return success(None, "Notification deleted")
