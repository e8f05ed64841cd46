"""
tasks/payment_tasks.py
Celery tasks for teacher payouts.

Flow:
1. Teacher requests a withdrawal (or the nightly auto-withdrawal creates one)
2. Admin approves → wallet moves pending → withdrawn, transfer pushed to gateway
3. If the push failed, retry_failed_payout_transfers picks it up hourly
4. Admin marks the payout paid once the gateway settles it
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select

from services.earnings import gateway
from services.wallet import ledger
from tasks.celery_app import celery_app
from tasks.notification_tasks import DatabaseTask, run_async

logger = logging.getLogger(__name__)

# Approved payouts younger than this are still owned by the approve request
TRANSFER_GRACE_MINUTES = 10


@celery_app.task(bind=True, base=DatabaseTask)
def retry_failed_payout_transfers(self):
    """
    Beat task: runs hourly.
    Pushes approved payouts that never reached the gateway.
    Idempotent: the gateway de-duplicates on request_uuid and rows with an
    external_reference are never selected again.
    """
    from shared.models.models import PayoutRequest, PayoutStatus

    if not gateway.is_configured():
        logger.info("retry_failed_payout_transfers: payout gateway not configured, skipping")
        return 0

    cutoff = datetime.now(timezone.utc) - timedelta(minutes=TRANSFER_GRACE_MINUTES)
    db = self.get_session()
    transferred = 0
    try:
        payouts = db.execute(
            select(PayoutRequest).where(
                PayoutRequest.status == PayoutStatus.APPROVED,
                PayoutRequest.external_reference.is_(None),
                PayoutRequest.processed_date <= cutoff,
            ).order_by(PayoutRequest.processed_date)
        ).scalars().all()

        for payout in payouts:
            try:
                reference = gateway.transfer(payout)
            except gateway.PayoutGatewayError as e:
                logger.warning(f"Retry transfer for payout {payout.request_uuid} failed: {e}")
                continue
            payout.external_reference = reference
            ledger.append_note(payout, f"Transfer submitted to gateway on retry: {reference}")
            db.commit()
            transferred += 1

        logger.info(f"retry_failed_payout_transfers: {transferred}/{len(payouts)} payouts transferred")
        return transferred
    finally:
        db.close()


@celery_app.task
def process_auto_withdrawals():
    """
    Beat task: runs nightly.
    Creates a payout request for every teacher wallet with auto-withdrawal on,
    a balance at or above its threshold, and saved payout details.
    The amount is the full balance, capped at the method's maximum.
    Each wallet commits on its own so one rejection never blocks the rest.
    """
    from config.database import get_db_context
    from services.notification.service import notify_users
    from shared.models.models import PayoutMethod, TeacherWallet, User

    async def _candidates() -> list:
        async with get_db_context() as db:
            result = await db.execute(
                select(TeacherWallet.user_id).where(
                    TeacherWallet.auto_withdrawal_enabled == True,  # noqa: E712
                    TeacherWallet.preferred_payout_method.is_not(None),
                    TeacherWallet.payout_details.is_not(None),
                    TeacherWallet.balance > 0,
                )
            )
            return list(result.scalars().all())

    async def _withdraw(user_id) -> bool:
        async with get_db_context() as db:
            wallet = await ledger.get_teacher_wallet(db, user_id)
            teacher = await db.get(User, user_id)
            if not teacher or not teacher.is_active or not ledger.can_auto_withdraw(wallet):
                return False

            method = PayoutMethod(wallet.preferred_payout_method)
            amount = min(ledger.money(wallet.balance), Decimal(ledger.METHOD_LIMITS[method][1]))
            try:
                payout = await ledger.create_payout_request(
                    db, teacher, amount, method, wallet.payout_details or {},
                    notes="Automatic withdrawal",
                )
            except ledger.LedgerError as e:
                logger.warning(f"Auto-withdrawal for teacher {user_id} rejected: {e}")
                return False

            await notify_users(
                db, [teacher.id], event="payout.requested",
                title="Automatic withdrawal requested",
                message=f"A withdrawal of {payout.currency} {amount:,.2f} was requested automatically.",
                data={"payout_id": str(payout.id), "amount": str(amount)},
                audience="teacher",
            )
            return True

    async def _run() -> int:
        created = 0
        for user_id in await _candidates():
            if await _withdraw(user_id):
                created += 1
        return created

    created = run_async(_run)
    logger.info(f"process_auto_withdrawals: {created} payout request(s) created")
    return created
