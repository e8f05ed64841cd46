"""
services/earnings/router.py
Teacher earnings and withdrawals, plus the admin payout desk.

Teacher: /teacher/earnings/*
Admin:   /admin/payouts/*, /admin/transactions
"""

import asyncio
import logging
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.admin.audit import log_admin_action
from services.earnings import gateway
from services.notification.service import notify_users
from services.wallet import ledger
from services.wallet.router import transaction_dict
from shared.middleware.auth import require_admin, require_teacher
from shared.models.models import (
    PayoutMethod,
    PayoutRequest,
    PayoutStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)
from shared.schemas.schemas import (
    EarningsSettingsUpdate,
    PayoutDeclineRequest,
    PayoutMarkPaidRequest,
    PayoutRequestCreate,
)
from shared.utils.responses import FieldValidationError, paginate, success

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/teacher/earnings", tags=["Teacher Earnings"])
admin_router = APIRouter(tags=["Admin Payouts"])

ENTITY = "payout_request"


def payout_dict(p: PayoutRequest, teacher_name: Optional[str] = None) -> dict:
    return {
        "id": p.id,
        "request_uuid": p.request_uuid,
        "teacher_id": p.teacher_id,
        "teacher_name": teacher_name,
        "amount": p.amount,
        "fee_amount": p.fee_amount,
        "gross_amount": ledger.money(p.amount) + ledger.money(p.fee_amount),
        "currency": p.currency,
        "payment_method": p.payment_method.value,
        "payment_details": p.payment_details,
        "status": p.status.value,
        "request_date": p.request_date,
        "processed_date": p.processed_date,
        "transaction_id": p.transaction_id,
        "external_reference": p.external_reference,
        "notes": p.notes,
        "created_at": p.created_at,
    }


def _wallet_dict(wallet) -> dict:
    return {
        "balance": wallet.balance,
        "total_earned": wallet.total_earned,
        "total_withdrawn": wallet.total_withdrawn,
        "pending_payouts": wallet.pending_payouts,
        "currency": wallet.currency,
        "auto_withdrawal_enabled": wallet.auto_withdrawal_enabled,
        "auto_withdrawal_threshold": wallet.auto_withdrawal_threshold,
        "preferred_payout_method": wallet.preferred_payout_method.value if wallet.preferred_payout_method else None,
        "payout_details": wallet.payout_details,
    }


# ── Teacher: Overview ─────────────────────────────────────────

@router.get("")
async def earnings_overview(
    current_user: User = Depends(require_teacher),
    db: AsyncSession = Depends(get_db),
):
    """Wallet totals plus this month's session earnings."""
    wallet = await ledger.get_teacher_wallet(db, current_user.id)
    month_start = datetime.now(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    this_month = await db.scalar(
        select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.teacher_id == current_user.id,
            Transaction.transaction_type == TransactionType.SESSION_PAYMENT,
            Transaction.status == TransactionStatus.COMPLETED,
            Transaction.created_at >= month_start,
        )
    )
    sessions_paid = await db.scalar(
        select(func.count(Transaction.id)).where(
            Transaction.teacher_id == current_user.id,
            Transaction.transaction_type == TransactionType.SESSION_PAYMENT,
        )
    )
    pending_requests = await db.scalar(
        select(func.count(PayoutRequest.id)).where(
            PayoutRequest.teacher_id == current_user.id,
            PayoutRequest.status == PayoutStatus.PENDING,
        )
    )
    return success({
        **_wallet_dict(wallet),
        "earned_this_month": ledger.money(this_month or 0),
        "sessions_paid": sessions_paid or 0,
        "pending_payout_requests": pending_requests or 0,
        "can_auto_withdraw": ledger.can_auto_withdraw(wallet),
    })


@router.get("/history")
async def earnings_history(
    type_filter: Optional[TransactionType] = Query(None, alias="type"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_teacher),
    db: AsyncSession = Depends(get_db),
):
    """Session payments and withdrawals, newest first."""
    query = select(Transaction).where(
        Transaction.teacher_id == current_user.id,
        Transaction.transaction_type.in_([TransactionType.SESSION_PAYMENT, TransactionType.WITHDRAWAL]),
    )
    if type_filter:
        query = query.where(Transaction.transaction_type == type_filter)
    rows, meta = await paginate(db, query.order_by(Transaction.created_at.desc()), page, page_size)
    return success([transaction_dict(t) for t in rows], meta=meta)


@router.get("/payouts")
async def my_payouts(
    status_filter: Optional[PayoutStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_teacher),
    db: AsyncSession = Depends(get_db),
):
    query = select(PayoutRequest).where(PayoutRequest.teacher_id == current_user.id)
    if status_filter:
        query = query.where(PayoutRequest.status == status_filter)
    rows, meta = await paginate(db, query.order_by(PayoutRequest.created_at.desc()), page, page_size)
    return success([payout_dict(p) for p in rows], meta=meta)


# ── Teacher: Withdrawals ──────────────────────────────────────

@router.get("/quote")
async def withdrawal_quote(
    amount: Decimal = Query(..., gt=0),
    method: PayoutMethod = Query(...),
    current_user: User = Depends(require_teacher),
    db: AsyncSession = Depends(get_db),
):
    """Fee, net amount and any limit violations for a prospective withdrawal."""
    gross = ledger.money(amount)
    fee = ledger.calculate_withdrawal_fee(method, gross)
    errors = await ledger.validate_withdrawal(db, current_user.id, gross, method)
    wallet = await ledger.get_teacher_wallet(db, current_user.id)
    if not ledger.has_sufficient_balance(wallet, gross):
        errors.append("Insufficient balance for this withdrawal")
    return success({
        "amount": gross,
        "fee": fee,
        "net_amount": gross - fee,
        "currency": wallet.currency,
        "allowed": not errors,
        "errors": errors,
    })


@router.post("/request-payout", status_code=status.HTTP_201_CREATED)
async def request_payout(
    data: PayoutRequestCreate,
    current_user: User = Depends(require_teacher),
    db: AsyncSession = Depends(get_db),
):
    try:
        payout = await ledger.create_payout_request(
            db,
            current_user,
            data.amount,
            PayoutMethod(data.payment_method),
            data.model_dump(exclude={"amount", "payment_method", "notes"}),
            notes=data.notes,
        )
    except ledger.LedgerError as e:
        raise FieldValidationError(e.errors, message=str(e))

    await notify_users(
        db, [current_user.id],
        event="payout.requested",
        title="Withdrawal request received",
        message=f"Your withdrawal of {payout.currency} {payout.amount:,.2f} is awaiting review.",
        data={"request_uuid": payout.request_uuid, "amount": str(payout.amount)},
        audience="teacher",
    )
    return success(payout_dict(payout), "Withdrawal request submitted")


@router.patch("/settings")
async def update_earnings_settings(
    data: EarningsSettingsUpdate,
    current_user: User = Depends(require_teacher),
    db: AsyncSession = Depends(get_db),
):
    """Auto-withdrawal preferences. Payout details are checked against the chosen method."""
    wallet = await ledger.get_teacher_wallet(db, current_user.id)
    updates = data.model_dump(exclude_unset=True)

    method = updates.get("preferred_payout_method") or wallet.preferred_payout_method
    details = updates.get("payout_details", wallet.payout_details)
    if "payout_details" in updates or "preferred_payout_method" in updates:
        if method and details is not None:
            try:
                updates["payout_details"] = ledger.payment_details_for(method, details)
            except ledger.LedgerError as e:
                raise FieldValidationError(
                    {f"payout_details.{field}": msgs for field, msgs in e.errors.items()}
                )

    if updates.get("auto_withdrawal_enabled") and not (method and details):
        raise FieldValidationError({
            "preferred_payout_method": ["A payout method and its details are required for auto-withdrawal."]
        })

    if updates.get("preferred_payout_method"):
        updates["preferred_payout_method"] = PayoutMethod(updates["preferred_payout_method"])
    if updates.get("auto_withdrawal_threshold") is not None:
        updates["auto_withdrawal_threshold"] = ledger.money(updates["auto_withdrawal_threshold"])

    for field, value in updates.items():
        setattr(wallet, field, value)
    await db.flush()
    return success(_wallet_dict(wallet), "Earnings settings updated")


# ── Admin: Payouts ────────────────────────────────────────────

async def _get_payout_or_404(db: AsyncSession, payout_id: UUID) -> PayoutRequest:
    payout = await db.get(PayoutRequest, payout_id)
    if not payout:
        raise HTTPException(status_code=404, detail="Payout request not found")
    return payout


async def attempt_transfer(payout: PayoutRequest) -> bool:
    """
    Push an approved payout to the gateway. On failure the payout stays
    approved with a note, to be retried or marked paid by hand.
    """
    try:
        reference = await asyncio.to_thread(gateway.transfer, payout)
    except gateway.PayoutGatewayError as e:
        logger.warning(f"Automatic transfer for payout {payout.request_uuid} failed: {e}")
        ledger.append_note(payout, f"Automatic transfer failed: {e}")
        return False
    payout.external_reference = reference
    ledger.append_note(payout, f"Transfer submitted to gateway: {reference}")
    return True


@admin_router.get("/admin/payouts")
async def admin_list_payouts(
    status_filter: Optional[PayoutStatus] = Query(None, alias="status"),
    method: Optional[PayoutMethod] = Query(None),
    teacher_id: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = select(PayoutRequest)
    if status_filter:
        query = query.where(PayoutRequest.status == status_filter)
    if method:
        query = query.where(PayoutRequest.payment_method == method)
    if teacher_id:
        query = query.where(PayoutRequest.teacher_id == teacher_id)
    rows, meta = await paginate(db, query.order_by(PayoutRequest.created_at.desc()), page, page_size)

    names = {}
    if rows:
        names = dict((await db.execute(
            select(User.id, User.name).where(User.id.in_({p.teacher_id for p in rows}))
        )).all())

    totals = dict((await db.execute(
        select(PayoutRequest.status, func.count()).group_by(PayoutRequest.status)
    )).all())
    return success(
        [payout_dict(p, names.get(p.teacher_id)) for p in rows],
        meta=meta,
        counts={s.value: totals.get(s, 0) for s in PayoutStatus},
    )


@admin_router.get("/admin/payouts/{payout_id}")
async def admin_get_payout(
    payout_id: UUID,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    payout = await _get_payout_or_404(db, payout_id)
    teacher = await db.get(User, payout.teacher_id)
    data = payout_dict(payout, teacher.name if teacher else None)
    if payout.transaction_id:
        txn = await db.get(Transaction, payout.transaction_id)
        data["transaction"] = transaction_dict(txn) if txn else None
    return success(data)


@admin_router.post("/admin/payouts/{payout_id}/approve")
async def admin_approve_payout(
    payout_id: UUID,
    request: Request,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    payout = await _get_payout_or_404(db, payout_id)
    try:
        await ledger.approve_payout(db, payout, admin)
    except ledger.LedgerError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    transferred = await attempt_transfer(payout)
    log_admin_action(
        db, admin, "approve_payout", ENTITY, payout.id,
        notes=f"Approved {payout.currency} {payout.amount:,.2f} via {payout.payment_method.value}",
        payload={"transferred": transferred, "external_reference": payout.external_reference},
        request=request,
    )
    await db.flush()

    await notify_users(
        db, [payout.teacher_id],
        event="payout.approved",
        title="Withdrawal approved",
        message=f"Your withdrawal {payout.request_uuid} of {payout.currency} {payout.amount:,.2f} has been approved.",
        data={"request_uuid": payout.request_uuid, "amount": str(payout.amount)},
        audience="teacher",
    )
    message = "Payout approved" if transferred else "Payout approved; automatic transfer failed"
    return success(payout_dict(payout), message, transferred=transferred)


@admin_router.post("/admin/payouts/{payout_id}/decline")
async def admin_decline_payout(
    payout_id: UUID,
    data: PayoutDeclineRequest,
    request: Request,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    payout = await _get_payout_or_404(db, payout_id)
    try:
        await ledger.decline_payout(db, payout, admin, data.reason)
    except ledger.LedgerError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    log_admin_action(db, admin, "decline_payout", ENTITY, payout.id, notes=data.reason, request=request)
    await db.flush()

    await notify_users(
        db, [payout.teacher_id],
        event="payout.declined",
        title="Withdrawal declined",
        message=f"Your withdrawal {payout.request_uuid} was declined: {data.reason}",
        data={"request_uuid": payout.request_uuid, "reason": data.reason},
        audience="teacher",
    )
    return success(payout_dict(payout), "Payout declined")


@admin_router.post("/admin/payouts/{payout_id}/mark-paid")
async def admin_mark_payout_paid(
    payout_id: UUID,
    data: PayoutMarkPaidRequest,
    request: Request,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    payout = await _get_payout_or_404(db, payout_id)
    try:
        ledger.mark_payout_paid(payout, data.external_reference)
    except ledger.LedgerError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    log_admin_action(
        db, admin, "mark_payout_paid", ENTITY, payout.id,
        payload={"external_reference": payout.external_reference},
        request=request,
    )
    await db.flush()
    return success(payout_dict(payout), "Payout marked as paid")


# ── Admin: Transactions ───────────────────────────────────────

@admin_router.get("/admin/transactions")
async def admin_list_transactions(
    type_filter: Optional[TransactionType] = Query(None, alias="type"),
    status_filter: Optional[TransactionStatus] = Query(None, alias="status"),
    user_id: Optional[UUID] = Query(None),
    booking_id: Optional[UUID] = Query(None),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = select(Transaction)
    if type_filter:
        query = query.where(Transaction.transaction_type == type_filter)
    if status_filter:
        query = query.where(Transaction.status == status_filter)
    if user_id:
        query = query.where((Transaction.student_id == user_id) | (Transaction.teacher_id == user_id))
    if booking_id:
        query = query.where(Transaction.booking_id == booking_id)
    if date_from:
        query = query.where(Transaction.created_at >= datetime.combine(date_from, time.min, tzinfo=timezone.utc))
    if date_to:
        query = query.where(
            Transaction.created_at < datetime.combine(date_to + timedelta(days=1), time.min, tzinfo=timezone.utc)
        )
    rows, meta = await paginate(db, query.order_by(Transaction.created_at.desc()), page, page_size)
    return success([transaction_dict(t) for t in rows], meta=meta)
