"""
tasks/notification_tasks.py
Celery tasks for email / SMS / push delivery and time-based notifications.

Delivery is per NotificationRecipient row and idempotent: a recipient that is
already delivered, read or failed is skipped, so a re-queued task is harmless.
A failure on one channel never touches the recipient rows of other channels.

Usage from a service:
    from tasks.notification_tasks import deliver_recipient
    deliver_recipient.apply_async(args=[str(recipient.id)], countdown=5)
"""

import asyncio
import html
import logging
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from celery import Task
from sqlalchemy import select

from config.settings import settings
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


# ── Base Task with DB session ──────────────────────────────────────────────────

class DatabaseTask(Task):
    """Base class that provides a synchronous DB session for tasks."""
    abstract = True
    _session_factory = None

    def get_session(self):
        """Get a synchronous SQLAlchemy session (Celery runs sync by default)."""
        if DatabaseTask._session_factory is None:
            from sqlalchemy import create_engine
            from sqlalchemy.orm import sessionmaker

            # Convert async URL (postgresql+asyncpg://) to sync (postgresql+psycopg2://)
            sync_url = settings.DATABASE_URL.replace("+asyncpg", "+psycopg2")
            engine = create_engine(sync_url, pool_pre_ping=True)
            DatabaseTask._session_factory = sessionmaker(bind=engine)
        return DatabaseTask._session_factory()


def run_async(coro_factory):
    """
    Run an async unit of work from a sync Celery task.
    The async engine pool is bound to the loop that created its connections,
    so it is disposed before the loop closes.
    """
    from config.database import engine

    async def _runner():
        try:
            return await coro_factory()
        finally:
            await engine.dispose()

    return asyncio.run(_runner())


# ── Core Delivery Functions ────────────────────────────────────────────────────

def _firebase_app():
    import firebase_admin
    from firebase_admin import credentials

    if not firebase_admin._apps:
        firebase_admin.initialize_app(
            credentials.Certificate(settings.FIREBASE_CREDENTIALS_PATH),
            {"projectId": settings.FIREBASE_PROJECT_ID} if settings.FIREBASE_PROJECT_ID else None,
        )
    return firebase_admin.get_app()


def _send_fcm(fcm_token: str, title: str, body: str, data: dict = None) -> bool:
    """Send FCM push notification. Returns True on success."""
    try:
        from firebase_admin import messaging

        message = messaging.Message(
            notification=messaging.Notification(title=title, body=body),
            data={k: str(v) for k, v in (data or {}).items()},
            token=fcm_token,
            android=messaging.AndroidConfig(priority="high"),
            apns=messaging.APNSConfig(
                payload=messaging.APNSPayload(
                    aps=messaging.Aps(badge=1, sound="default")
                )
            ),
        )
        messaging.send(message, app=_firebase_app())
        return True
    except Exception as e:
        logger.warning(f"FCM send failed: {e}")
        return False


def _send_sms(phone: str, body: str) -> bool:
    """Send SMS via Twilio. Returns True on success."""
    try:
        from twilio.rest import Client
        client = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
        client.messages.create(
            body=body,
            from_=settings.TWILIO_FROM_NUMBER,
            to=phone if phone.startswith("+") else f"{settings.SMS_DEFAULT_COUNTRY_CODE}{phone.lstrip('0')}",
        )
        return True
    except Exception as e:
        logger.warning(f"SMS send failed: {e}")
        return False


def _send_email(to_email: str, subject: str, html_body: str) -> bool:
    """Send transactional email via Resend. Returns True on success."""
    try:
        import resend
        resend.api_key = settings.RESEND_API_KEY
        resend.Emails.send({
            "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>",
            "to": to_email,
            "subject": subject,
            "html": html_body,
        })
        return True
    except Exception as e:
        logger.warning(f"Email send failed: {e}")
        return False


def _email_html(title: str, message: str) -> str:
    return (
        f"<h2>{html.escape(title)}</h2>"
        f"<p>{html.escape(message).replace(chr(10), '<br>')}</p>"
        f"<p style=\"color:#888\">{html.escape(settings.EMAIL_FROM_NAME)}</p>"
    )


def _dispatch(channel: str, user, notification) -> str | None:
    """Send one recipient over its channel. Returns an error message, or None on success."""
    from shared.models.models import NotificationChannel

    if channel == NotificationChannel.EMAIL.value:
        if not user.email:
            return "User has no email address"
        ok = _send_email(user.email, notification.title, _email_html(notification.title, notification.message))
    elif channel == NotificationChannel.SMS.value:
        if not user.phone:
            return "User has no phone number"
        ok = _send_sms(user.phone, f"{notification.title}: {notification.message}")
    elif channel == NotificationChannel.PUSH.value:
        if not user.fcm_token:
            return "User has no push token"
        data = {"notification_id": notification.id, "type": notification.type}
        data.update(notification.notification_metadata or {})
        ok = _send_fcm(user.fcm_token, notification.title, notification.message, data)
    else:
        return f"Unknown channel: {channel}"
    return None if ok else f"{channel} provider rejected the message"


# ── Delivery Task ──────────────────────────────────────────────────────────────

@celery_app.task(bind=True, base=DatabaseTask, max_retries=3, default_retry_delay=60)
def deliver_recipient(self, recipient_id: str):
    """
    Deliver one email / SMS / push recipient.
    Missing contact details fail immediately; provider errors retry with backoff
    and the row is marked failed once retries are exhausted.
    """
    from shared.models.models import Notification, NotificationRecipient, RecipientStatus, User

    db = self.get_session()
    try:
        recipient = db.get(NotificationRecipient, recipient_id)
        if not recipient:
            logger.error(f"deliver_recipient: recipient {recipient_id} not found")
            return
        if recipient.status not in (RecipientStatus.PENDING, RecipientStatus.SENT):
            logger.info(f"deliver_recipient: {recipient_id} already {recipient.status.value}, skipping")
            return

        notification = db.get(Notification, recipient.notification_id)
        user = db.get(User, recipient.user_id)
        if not notification or not user or user.deleted_at is not None:
            recipient.status = RecipientStatus.FAILED
            recipient.error_message = "User not found" if notification else "Notification not found"
            db.commit()
            return

        error = _dispatch(recipient.channel, user, notification)
        if error is None:
            recipient.status = RecipientStatus.DELIVERED
            recipient.delivered_at = datetime.now(timezone.utc)
            recipient.error_message = None
            db.commit()
            logger.info(f"Delivered notification {notification.id} to {user.id} via {recipient.channel}")
            return

        provider_failure = error.endswith("rejected the message")
        if provider_failure and self.request.retries < self.max_retries:
            recipient.error_message = error
            db.commit()
            raise self.retry(countdown=60 * (2 ** self.request.retries))

        recipient.status = RecipientStatus.FAILED
        recipient.error_message = error
        db.commit()
        logger.warning(f"Delivery of recipient {recipient_id} failed: {error}")
    finally:
        db.close()


# ── Scheduled Notifications ───────────────────────────────────────────────────

@celery_app.task
def send_scheduled_notifications():
    """
    Beat task: runs every minute.
    Sends admin notifications whose scheduled_at has passed.
    """
    from config.database import get_db_context
    from services.notification.service import send_scheduled_notifications as send_due

    async def _run():
        async with get_db_context() as db:
            return await send_due(db)

    sent = run_async(_run)
    if sent:
        logger.info(f"Sent {sent} scheduled notification(s)")
    return sent


# ── Session Reminders ──────────────────────────────────────────────────────────

def _session_start(booking, tz_name: str | None) -> datetime:
    """Booking dates and times are wall-clock values in the teacher's timezone."""
    try:
        tz = ZoneInfo(tz_name or settings.DEFAULT_TIMEZONE)
    except ZoneInfoNotFoundError:
        tz = timezone.utc
    return datetime.combine(booking.booking_date, booking.start_time, tzinfo=tz)


@celery_app.task
def send_session_reminders():
    """
    Beat task: runs hourly.
    Reminds the student and teacher of sessions starting between
    SESSION_REMINDER_HOURS - 1 and SESSION_REMINDER_HOURS from now,
    so each session is picked up by exactly one run.
    """
    from config.database import get_db_context
    from services.booking.service import format_12h, notify_parties
    from shared.models.models import Booking, BookingStatus, TeacherProfile

    async def _run():
        now = datetime.now(timezone.utc)
        window_end = now + timedelta(hours=settings.SESSION_REMINDER_HOURS)
        window_start = window_end - timedelta(hours=1)
        reminded = 0

        async with get_db_context() as db:
            result = await db.execute(
                select(Booking, TeacherProfile.timezone)
                .outerjoin(TeacherProfile, TeacherProfile.user_id == Booking.teacher_id)
                .where(
                    Booking.status.in_([BookingStatus.APPROVED, BookingStatus.UPCOMING]),
                    Booking.booking_date >= (window_start - timedelta(days=1)).date(),
                    Booking.booking_date <= (window_end + timedelta(days=1)).date(),
                )
            )
            for booking, tz_name in result.all():
                starts_at = _session_start(booking, tz_name)
                if not window_start <= starts_at < window_end:
                    continue
                await notify_parties(
                    db, booking, "booking.reminder",
                    "Upcoming session reminder",
                    f"Your session {booking.booking_number} starts on "
                    f"{booking.booking_date.strftime('%a %d %b')} at {format_12h(booking.start_time)}.",
                )
                reminded += 1
        return reminded

    reminded = run_async(_run)
    logger.info(f"Session reminders sent for {reminded} booking(s)")
    return reminded
