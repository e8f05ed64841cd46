"""
services/notification/service.py
Notification fan-out shared by every service.

Lifecycle: draft → scheduled | sent → (per recipient) delivered → read | failed
In-app recipients are delivered immediately; email/SMS/push recipients
are marked sent and handed to Celery (tasks.notification_tasks).
"""

import logging
import re
from datetime import datetime, timezone
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import (
    Notification,
    NotificationChannel,
    NotificationRecipient,
    NotificationStatus,
    NotificationTemplate,
    NotificationTrigger,
    RecipientStatus,
    SenderType,
    User,
    UserRole,
)

logger = logging.getLogger(__name__)

EXTERNAL_CHANNELS = {
    NotificationChannel.EMAIL.value,
    NotificationChannel.SMS.value,
    NotificationChannel.PUSH.value,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Some drivers (SQLite) hand back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


PLACEHOLDER = re.compile(r"\{(\w+)\}")


def render(text: str, data: dict) -> str:
    """Fill {placeholders}. Unknown placeholders and any other braces are left as written."""
    values = data or {}

    def _fill(match: re.Match) -> str:
        key = match.group(1)
        return str(values[key]) if key in values else match.group(0)

    return PLACEHOLDER.sub(_fill, text or "")


# ── Creation & Recipients ─────────────────────────────────────

async def create_notification(
    db: AsyncSession,
    *,
    title: str,
    message: str,
    type: str = "custom",
    sender_type: SenderType = SenderType.SYSTEM,
    sender_id: Optional[UUID] = None,
    scheduled_at: Optional[datetime] = None,
    metadata: Optional[dict] = None,
) -> Notification:
    notification = Notification(
        title=title,
        message=message,
        type=type or "custom",
        status=NotificationStatus.DRAFT,
        sender_type=sender_type,
        sender_id=sender_id,
        scheduled_at=scheduled_at,
        notification_metadata=metadata,
    )
    db.add(notification)
    await db.flush()
    return notification


async def resolve_recipients(
    db: AsyncSession,
    all_users: bool = False,
    roles: Iterable[str] = (),
    user_ids: Iterable[UUID] = (),
) -> list[UUID]:
    """Expand an audience selector into active user IDs (order preserved, no duplicates)."""
    base = select(User.id).where(User.is_active == True, User.deleted_at.is_(None))  # noqa: E712
    found: list[UUID] = []

    if all_users:
        found.extend((await db.execute(base.order_by(User.created_at))).scalars().all())
    else:
        roles = [UserRole(r) for r in roles]
        if roles:
            found.extend((await db.execute(base.where(User.role.in_(roles)))).scalars().all())
        user_ids = list(user_ids)
        if user_ids:
            found.extend((await db.execute(base.where(User.id.in_(user_ids)))).scalars().all())

    return list(dict.fromkeys(found))


async def add_recipients(
    db: AsyncSession,
    notification: Notification,
    user_ids: Iterable[UUID],
    channels: Optional[Iterable[str]] = None,
) -> int:
    """Attach recipients per channel. Existing (user, channel) pairs are skipped."""
    channels = list(dict.fromkeys(channels or [NotificationChannel.IN_APP.value]))
    user_ids = list(dict.fromkeys(user_ids))
    if not user_ids:
        return 0

    existing = await db.execute(
        select(NotificationRecipient.user_id, NotificationRecipient.channel).where(
            NotificationRecipient.notification_id == notification.id
        )
    )
    seen = {(row.user_id, row.channel) for row in existing}

    added = 0
    for user_id in user_ids:
        for channel in channels:
            if (user_id, channel) in seen:
                continue
            db.add(NotificationRecipient(
                notification_id=notification.id,
                user_id=user_id,
                channel=channel,
                status=RecipientStatus.PENDING,
            ))
            seen.add((user_id, channel))
            added += 1

    await db.flush()
    return added


# ── Delivery ──────────────────────────────────────────────────

def enqueue_external_delivery(recipient_ids: list[UUID]) -> None:
    """Hand email/SMS/push recipients to the Celery notification queue."""
    from tasks.notification_tasks import deliver_recipient

    for recipient_id in recipient_ids:
        try:
            # Small delay so the request transaction commits before the worker reads the row
            deliver_recipient.apply_async(args=[str(recipient_id)], countdown=5)
        except Exception as e:
            logger.warning(f"Could not queue delivery for recipient {recipient_id}: {e}")


async def send_notification(
    db: AsyncSession, notification: Notification, force: bool = False
) -> Notification:
    """
    Send now, or mark scheduled if scheduled_at is in the future.
    Only recipients still pending are processed, so re-sending is safe.
    """
    now = _utcnow()
    scheduled_at = as_aware(notification.scheduled_at)
    if not force and scheduled_at and scheduled_at > now:
        notification.status = NotificationStatus.SCHEDULED
        await db.flush()
        return notification

    notification.status = NotificationStatus.SENT
    notification.sent_at = now

    result = await db.execute(
        select(NotificationRecipient).where(
            NotificationRecipient.notification_id == notification.id,
            NotificationRecipient.status == RecipientStatus.PENDING,
        )
    )
    recipients = result.scalars().all()

    user_ids = {r.user_id for r in recipients}
    live_users = set()
    if user_ids:
        live_users = set((await db.execute(
            select(User.id).where(User.id.in_(user_ids), User.deleted_at.is_(None))
        )).scalars().all())

    queued: list[UUID] = []
    for recipient in recipients:
        if recipient.user_id not in live_users:
            recipient.status = RecipientStatus.FAILED
            recipient.error_message = "User not found"
        elif recipient.channel == NotificationChannel.IN_APP.value:
            recipient.status = RecipientStatus.DELIVERED
            recipient.delivered_at = now
        elif recipient.channel in EXTERNAL_CHANNELS:
            recipient.status = RecipientStatus.SENT
            queued.append(recipient.id)
        else:
            recipient.status = RecipientStatus.FAILED
            recipient.error_message = f"Unknown channel: {recipient.channel}"

    await db.flush()
    if queued:
        enqueue_external_delivery(queued)
    return notification


async def send_scheduled_notifications(db: AsyncSession) -> int:
    """Send every scheduled notification whose time has come. Returns number sent."""
    now = _utcnow()
    result = await db.execute(
        select(Notification).where(
            Notification.status == NotificationStatus.SCHEDULED,
            Notification.scheduled_at <= now,
        )
    )
    sent = 0
    for notification in result.scalars().all():
        try:
            await send_notification(db, notification, force=True)
            sent += 1
        except Exception as e:
            logger.error(f"Scheduled notification {notification.id} failed: {e}", exc_info=True)
            notification.status = NotificationStatus.SCHEDULED
    return sent


async def delivery_stats(db: AsyncSession, notification_id: UUID) -> dict:
    result = await db.execute(
        select(NotificationRecipient.status, func.count())
        .where(NotificationRecipient.notification_id == notification_id)
        .group_by(NotificationRecipient.status)
    )
    counts = {status: count for status, count in result.all()}
    return {
        "total": sum(counts.values()),
        "delivered": counts.get(RecipientStatus.DELIVERED, 0),
        "read": counts.get(RecipientStatus.READ, 0),
        "failed": counts.get(RecipientStatus.FAILED, 0),
        "pending": counts.get(RecipientStatus.PENDING, 0) + counts.get(RecipientStatus.SENT, 0),
    }


# ── Read State ────────────────────────────────────────────────

async def unread_count(
    db: AsyncSession, user_id: UUID, channel: str = NotificationChannel.IN_APP.value
) -> int:
    count = await db.scalar(
        select(func.count(NotificationRecipient.id))
        .join(Notification, Notification.id == NotificationRecipient.notification_id)
        .where(
            NotificationRecipient.user_id == user_id,
            NotificationRecipient.channel == channel,
            NotificationRecipient.read_at.is_(None),
            NotificationRecipient.status.in_([RecipientStatus.DELIVERED, RecipientStatus.SENT]),
        )
    )
    return count or 0


async def mark_as_read(db: AsyncSession, recipient: NotificationRecipient) -> NotificationRecipient:
    if recipient.read_at is None:
        now = _utcnow()
        recipient.read_at = now
        recipient.delivered_at = recipient.delivered_at or now
        recipient.status = RecipientStatus.READ
        await db.flush()
    return recipient


async def mark_all_as_read(
    db: AsyncSession, user_id: UUID, channel: str = NotificationChannel.IN_APP.value
) -> int:
    result = await db.execute(
        update(NotificationRecipient)
        .where(
            NotificationRecipient.user_id == user_id,
            NotificationRecipient.channel == channel,
            NotificationRecipient.read_at.is_(None),
            NotificationRecipient.status.in_([RecipientStatus.DELIVERED, RecipientStatus.SENT]),
        )
        .values(read_at=_utcnow(), status=RecipientStatus.READ)
    )
    return result.rowcount or 0


# ── Templates & Triggers ──────────────────────────────────────

async def create_from_template(
    db: AsyncSession,
    template_name: str,
    data: dict,
    user_ids: Iterable[UUID],
    channels: Optional[list[str]] = None,
    sender_type: SenderType = SenderType.SYSTEM,
    sender_id: Optional[UUID] = None,
) -> Optional[Notification]:
    """Render an active template and send it. Returns None if no such active template."""
    template = (await db.execute(
        select(NotificationTemplate).where(
            NotificationTemplate.name == template_name,
            NotificationTemplate.is_active == True,  # noqa: E712
        )
    )).scalar_one_or_none()
    if not template:
        return None

    notification = await create_notification(
        db,
        title=render(template.title, data),
        message=render(template.body, data),
        type=template.type,
        sender_type=sender_type,
        sender_id=sender_id,
        metadata={"template": template.name, **(data or {})},
    )
    await add_recipients(db, notification, user_ids, channels or template.channels or None)
    return await send_notification(db, notification)


async def _admin_ids(db: AsyncSession) -> list[UUID]:
    return await resolve_recipients(db, roles=[UserRole.SUPER_ADMIN.value])


async def process_event(
    db: AsyncSession,
    event: str,
    data: dict,
    audiences: dict[str, list[UUID]],
) -> Optional[Notification]:
    """
    Fire the first enabled trigger for `event`.
    `audiences` maps audience names ("student", "teacher", "user", ...) to user IDs.
    Returns None when no trigger is configured.
    """
    trigger = (await db.execute(
        select(NotificationTrigger)
        .where(NotificationTrigger.event == event, NotificationTrigger.is_enabled == True)  # noqa: E712
        .order_by(NotificationTrigger.created_at)
        .limit(1)
    )).scalar_one_or_none()
    if not trigger:
        return None

    template = await db.get(NotificationTemplate, trigger.template_id)
    if not template or not template.is_active:
        logger.info(f"Trigger {trigger.name} for {event} has no active template, skipping")
        return None

    if trigger.audience == "admin":
        user_ids = await _admin_ids(db)
    else:
        user_ids = audiences.get(trigger.audience) or audiences.get("user", [])

    return await create_from_template(
        db, template.name, data, user_ids, channels=trigger.channels or None
    )


async def notify_users(
    db: AsyncSession,
    user_ids: Iterable[UUID],
    *,
    event: str,
    title: str,
    message: str,
    data: Optional[dict] = None,
    audience: str = "user",
    channels: Optional[list[str]] = None,
) -> Optional[Notification]:
    """
    System notification used by the other services.
    A configured trigger for `event` takes precedence over the default text.
    Failures are logged and never propagate into the calling action.
    """
    user_ids = [u for u in dict.fromkeys(user_ids) if u]
    if not user_ids:
        return None
    try:
        async with db.begin_nested():
            notification = await process_event(
                db, event, data or {}, {audience: user_ids, "user": user_ids}
            )
        if notification:
            return notification
    except Exception as e:
        logger.warning(f"Trigger for '{event}' failed, sending the default text: {e}")

    try:
        async with db.begin_nested():
            notification = await create_notification(
                db, title=title, message=message, type=event, metadata=data
            )
            await add_recipients(db, notification, user_ids, channels)
            return await send_notification(db, notification)
    except Exception as e:
        logger.warning(f"Notification '{event}' to {len(user_ids)} user(s) failed: {e}")
        return None
