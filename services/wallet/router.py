"""
services/wallet/router.py
Student wallet: balance, transaction history, Razorpay top-ups and saved
payment methods.
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.wallet import ledger
from shared.middleware.auth import get_current_user, require_student
from shared.models.models import (
    PaymentMethod,
    PaymentMethodType,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)
from shared.schemas.schemas import PaymentMethodCreate, TopUpInitiateRequest, TopUpVerifyRequest
from shared.utils.responses import FieldValidationError, paginate, success
from shared.utils.security import verify_razorpay_signature

router = APIRouter(prefix="/wallet", tags=["Wallet"])


def get_razorpay_client():
    """Lazy Razorpay client; 503 when the gateway is not configured."""
    if not settings.RAZORPAY_KEY_ID or not settings.RAZORPAY_KEY_SECRET:
        raise HTTPException(status_code=503, detail="Payment service unavailable")
    import razorpay
    return razorpay.Client(auth=(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET))


def transaction_dict(t: Transaction) -> dict:
    return {
        "id": t.id,
        "transaction_uuid": t.transaction_uuid,
        "type": t.transaction_type.value,
        "amount": t.amount,
        "currency": t.currency,
        "status": t.status.value,
        "description": t.description,
        "booking_id": t.booking_id,
        "gateway_reference": t.gateway_reference,
        "created_at": t.created_at,
    }


def _method_dict(m: PaymentMethod) -> dict:
    return {
        "id": m.id,
        "type": m.type.value,
        "label": m.label,
        "details": m.details,
        "is_default": m.is_default,
        "created_at": m.created_at,
    }


async def _method_or_404(db: AsyncSession, method_id: UUID, user: User) -> PaymentMethod:
    method = (await db.execute(
        select(PaymentMethod).where(
            PaymentMethod.id == method_id,
            PaymentMethod.user_id == user.id,
            PaymentMethod.is_active == True,  # noqa: E712
        )
    )).scalar_one_or_none()
    if not method:
        raise HTTPException(status_code=404, detail="Payment method not found")
    return method


# ── Balance & History ─────────────────────────────────────────

@router.get("")
async def get_wallet(
    current_user: User = Depends(require_student),
    db: AsyncSession = Depends(get_db),
):
    wallet = await ledger.get_student_wallet(db, current_user.id)
    return success({
        "balance": wallet.balance,
        "total_spent": wallet.total_spent,
        "total_refunded": wallet.total_refunded,
        "currency": wallet.currency,
    })


@router.get("/transactions")
async def list_transactions(
    type_filter: Optional[TransactionType] = Query(None, alias="type"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_student),
    db: AsyncSession = Depends(get_db),
):
    query = select(Transaction).where(Transaction.student_id == current_user.id)
    if type_filter:
        query = query.where(Transaction.transaction_type == type_filter)
    query = query.order_by(Transaction.created_at.desc())
    rows, meta = await paginate(db, query, page, page_size)
    return success([transaction_dict(t) for t in rows], meta=meta)


# ── Top-up ────────────────────────────────────────────────────

@router.post("/topup/initiate", status_code=status.HTTP_201_CREATED)
async def initiate_topup(
    data: TopUpInitiateRequest,
    current_user: User = Depends(require_student),
    db: AsyncSession = Depends(get_db),
):
    """
    Create a Razorpay order and a pending credit transaction.
    The client opens checkout with order_id + key_id, then calls /topup/verify.
    """
    wallet = await ledger.get_student_wallet(db, current_user.id)
    amount = ledger.money(data.amount)

    rzp = get_razorpay_client()
    try:
        order = rzp.order.create({
            "amount": int(amount * 100),  # smallest currency unit
            "currency": wallet.currency,
            "receipt": f"topup-{current_user.id}"[:40],
            "notes": {"user_id": str(current_user.id), "purpose": "wallet_topup"},
        })
    except Exception as e:
        raise HTTPException(status_code=502, detail=f"Payment gateway error: {str(e)}")

    txn = ledger.start_topup(db, wallet, amount, order["id"])
    await db.flush()
    return success({
        "order_id": order["id"],
        "amount": amount,
        "currency": wallet.currency,
        "key_id": settings.RAZORPAY_KEY_ID,
        "transaction_id": txn.id,
    }, "Top-up initiated")


@router.post("/topup/verify")
async def verify_topup(
    data: TopUpVerifyRequest,
    current_user: User = Depends(require_student),
    db: AsyncSession = Depends(get_db),
):
    """Verify the checkout signature and credit the wallet."""
    txn = (await db.execute(
        select(Transaction).where(
            Transaction.gateway_reference == data.razorpay_order_id,
            Transaction.student_id == current_user.id,
            Transaction.transaction_type == TransactionType.CREDIT,
        )
    )).scalar_one_or_none()
    if not txn:
        raise HTTPException(status_code=404, detail="Top-up not found")

    if not verify_razorpay_signature(data.razorpay_order_id, data.razorpay_payment_id, data.razorpay_signature):
        if txn.status == TransactionStatus.PENDING:
            txn.status = TransactionStatus.FAILED
            # Persist the failure; get_db rolls back once the exception propagates
            await db.commit()
        raise HTTPException(status_code=400, detail="Payment signature verification failed")

    wallet = await ledger.get_student_wallet(db, current_user.id)
    try:
        ledger.complete_topup(wallet, txn, data.razorpay_payment_id)
    except ledger.LedgerError as e:
        raise FieldValidationError(e.errors)
    await db.flush()
    return success(
        {"balance": wallet.balance, "transaction": transaction_dict(txn)},
        f"{wallet.currency} {Decimal(txn.amount):,.2f} added to your wallet",
    )


# ── Payment Methods ───────────────────────────────────────────

@router.get("/payment-methods")
async def list_payment_methods(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(PaymentMethod)
        .where(PaymentMethod.user_id == current_user.id, PaymentMethod.is_active == True)  # noqa: E712
        .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at)
    )
    return success([_method_dict(m) for m in result.scalars().all()])


@router.post("/payment-methods", status_code=status.HTTP_201_CREATED)
async def add_payment_method(
    data: PaymentMethodCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """The first method saved becomes the default."""
    has_any = await db.scalar(
        select(PaymentMethod.id).where(
            PaymentMethod.user_id == current_user.id, PaymentMethod.is_active == True  # noqa: E712
        ).limit(1)
    )
    method = PaymentMethod(
        user_id=current_user.id,
        type=PaymentMethodType(data.type),
        label=data.label,
        details=data.details,
        is_default=False,
    )
    db.add(method)
    await db.flush()
    if data.is_default or not has_any:
        await ledger.set_default_payment_method(db, method)
    await db.flush()
    return success(_method_dict(method), "Payment method added")


@router.post("/payment-methods/{method_id}/default")
async def set_default_payment_method(
    method_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    method = await _method_or_404(db, method_id, current_user)
    await ledger.set_default_payment_method(db, method)
    await db.flush()
    return success(_method_dict(method), "Default payment method updated")


@router.delete("/payment-methods/{method_id}")
async def remove_payment_method(
    method_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Deactivates the method; if it was the default, the oldest remaining one takes over."""
    method = await _method_or_404(db, method_id, current_user)
    was_default = method.is_default
    method.is_active = False
    method.is_default = False
    await db.flush()

    if was_default:
        replacement = (await db.execute(
            select(PaymentMethod)
            .where(PaymentMethod.user_id == current_user.id, PaymentMethod.is_active == True)  # noqa: E712
            .order_by(PaymentMethod.created_at)
            .limit(1)
        )).scalar_one_or_none()
        if replacement:
            replacement.is_default = True
            await db.flush()
    return success(None, "Payment method removed")
