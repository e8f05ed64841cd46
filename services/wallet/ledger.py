"""
services/wallet/ledger.py
Wallet balance arithmetic and the Transaction ledger.

Every balance change writes exactly one Transaction row. Callers own the
database transaction: nothing here commits.
"""

import logging
import random
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.models.models import (
    PaymentMethod,
    PayoutMethod,
    PayoutRequest,
    PayoutStatus,
    StudentWallet,
    TeacherWallet,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

# Per-request amount range for each payout method, in DEFAULT_CURRENCY
METHOD_LIMITS = {
    PayoutMethod.BANK_TRANSFER: (Decimal("10000"), Decimal("1000000")),
    PayoutMethod.MOBILE_MONEY: (Decimal("1000"), Decimal("100000")),
    PayoutMethod.PAYPAL: (Decimal("1000"), Decimal("100000")),
}

REQUIRED_PAYOUT_FIELDS = {
    PayoutMethod.BANK_TRANSFER: ("bank_name", "account_number", "account_name"),
    PayoutMethod.MOBILE_MONEY: ("mobile_provider", "mobile_number"),
    PayoutMethod.PAYPAL: ("paypal_email",),
}


class LedgerError(ValueError):
    """A wallet operation that cannot be applied. `errors` is keyed by request field."""

    def __init__(self, message: str, field: str = "amount", errors: Optional[dict] = None):
        super().__init__(message)
        self.errors = errors or {field: [message]}


class InsufficientBalanceError(LedgerError):
    pass


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _stamp() -> str:
    return datetime.now(timezone.utc).strftime("%y%m%d-%H%M%S")


def generate_transaction_uuid() -> str:
    return f"TXN-{_stamp()}-{random.randint(0, 999999):06d}"


def generate_payout_uuid() -> str:
    return f"POUT-{_stamp()}-{random.randint(0, 9999):04d}"


def _record(
    db: AsyncSession,
    transaction_type: TransactionType,
    amount: Decimal,
    currency: str,
    description: str,
    student_id: Optional[UUID] = None,
    teacher_id: Optional[UUID] = None,
    booking_id: Optional[UUID] = None,
    status: TransactionStatus = TransactionStatus.COMPLETED,
    gateway_reference: Optional[str] = None,
) -> Transaction:
    txn = Transaction(
        transaction_uuid=generate_transaction_uuid(),
        transaction_type=transaction_type,
        amount=money(amount),
        currency=currency,
        status=status,
        description=description,
        student_id=student_id,
        teacher_id=teacher_id,
        booking_id=booking_id,
        gateway_reference=gateway_reference,
    )
    db.add(txn)
    return txn


# ── Wallet lookup ─────────────────────────────────────────────

async def get_student_wallet(db: AsyncSession, user_id: UUID) -> StudentWallet:
    """Return the student's wallet (row-locked on PostgreSQL), creating it on first use."""
    wallet = (await db.execute(
        select(StudentWallet).where(StudentWallet.user_id == user_id).with_for_update()
    )).scalar_one_or_none()
    if not wallet:
        wallet = StudentWallet(
            user_id=user_id,
            balance=Decimal("0.00"),
            total_spent=Decimal("0.00"),
            total_refunded=Decimal("0.00"),
            currency=settings.DEFAULT_CURRENCY,
        )
        db.add(wallet)
        await db.flush()
    return wallet


async def get_teacher_wallet(db: AsyncSession, user_id: UUID) -> TeacherWallet:
    wallet = (await db.execute(
        select(TeacherWallet).where(TeacherWallet.user_id == user_id).with_for_update()
    )).scalar_one_or_none()
    if not wallet:
        wallet = TeacherWallet(
            user_id=user_id,
            balance=Decimal("0.00"),
            total_earned=Decimal("0.00"),
            total_withdrawn=Decimal("0.00"),
            pending_payouts=Decimal("0.00"),
            currency=settings.DEFAULT_CURRENCY,
            auto_withdrawal_threshold=money(settings.AUTO_WITHDRAWAL_DEFAULT_THRESHOLD),
        )
        db.add(wallet)
        await db.flush()
    return wallet


# ── Student wallet ────────────────────────────────────────────

def has_sufficient_balance(wallet: StudentWallet | TeacherWallet, amount) -> bool:
    return money(wallet.balance) >= money(amount)


def add_funds(
    db: AsyncSession,
    wallet: StudentWallet,
    amount,
    description: str = "Wallet top-up",
    gateway_reference: Optional[str] = None,
) -> Transaction:
    amount = money(amount)
    if amount <= 0:
        raise LedgerError("Amount must be greater than zero")
    wallet.balance = money(wallet.balance) + amount
    return _record(
        db, TransactionType.CREDIT, amount, wallet.currency, description,
        student_id=wallet.user_id, gateway_reference=gateway_reference,
    )


def start_topup(db: AsyncSession, wallet: StudentWallet, amount, order_id: str) -> Transaction:
    """Pending credit awaiting gateway confirmation; the balance is untouched until completed."""
    amount = money(amount)
    if amount <= 0:
        raise LedgerError("Amount must be greater than zero")
    return _record(
        db, TransactionType.CREDIT, amount, wallet.currency, "Wallet top-up",
        student_id=wallet.user_id, status=TransactionStatus.PENDING, gateway_reference=order_id,
    )


def complete_topup(wallet: StudentWallet, txn: Transaction, payment_id: str) -> None:
    if txn.status != TransactionStatus.PENDING:
        raise LedgerError("This top-up has already been processed", field="razorpay_order_id")
    wallet.balance = money(wallet.balance) + money(txn.amount)
    txn.status = TransactionStatus.COMPLETED
    txn.description = f"Wallet top-up (payment {payment_id})"


def deduct_funds(
    db: AsyncSession,
    wallet: StudentWallet,
    amount,
    description: str,
    booking_id: Optional[UUID] = None,
    teacher_id: Optional[UUID] = None,
) -> Transaction:
    amount = money(amount)
    if amount <= 0:
        raise LedgerError("Amount must be greater than zero")
    if not has_sufficient_balance(wallet, amount):
        raise InsufficientBalanceError("Insufficient wallet balance")
    wallet.balance = money(wallet.balance) - amount
    wallet.total_spent = money(wallet.total_spent) + amount
    return _record(
        db, TransactionType.DEBIT, amount, wallet.currency, description,
        student_id=wallet.user_id, teacher_id=teacher_id, booking_id=booking_id,
    )


def add_refund(
    db: AsyncSession,
    wallet: StudentWallet,
    amount,
    description: str,
    booking_id: Optional[UUID] = None,
) -> Transaction:
    amount = money(amount)
    if amount <= 0:
        raise LedgerError("Refund amount must be greater than zero")
    wallet.balance = money(wallet.balance) + amount
    wallet.total_refunded = money(wallet.total_refunded) + amount
    return _record(
        db, TransactionType.REFUND, amount, wallet.currency, description,
        student_id=wallet.user_id, booking_id=booking_id,
    )


async def set_default_payment_method(db: AsyncSession, method: PaymentMethod) -> None:
    others = await db.execute(
        select(PaymentMethod).where(
            PaymentMethod.user_id == method.user_id,
            PaymentMethod.id != method.id,
            PaymentMethod.is_default == True,  # noqa: E712
        )
    )
    for other in others.scalars().all():
        other.is_default = False
    method.is_default = True


# ── Teacher wallet ────────────────────────────────────────────

def add_earnings(
    db: AsyncSession,
    wallet: TeacherWallet,
    amount,
    description: str,
    booking_id: Optional[UUID] = None,
    student_id: Optional[UUID] = None,
) -> Transaction:
    amount = money(amount)
    if amount <= 0:
        raise LedgerError("Earnings amount must be greater than zero")
    wallet.balance = money(wallet.balance) + amount
    wallet.total_earned = money(wallet.total_earned) + amount
    return _record(
        db, TransactionType.SESSION_PAYMENT, amount, wallet.currency, description,
        teacher_id=wallet.user_id, student_id=student_id, booking_id=booking_id,
    )


def hold_pending_payout(wallet: TeacherWallet, amount) -> None:
    amount = money(amount)
    if not has_sufficient_balance(wallet, amount):
        raise InsufficientBalanceError("Insufficient balance for this withdrawal")
    wallet.balance = money(wallet.balance) - amount
    wallet.pending_payouts = money(wallet.pending_payouts) + amount


def can_auto_withdraw(wallet: TeacherWallet) -> bool:
    return bool(wallet.auto_withdrawal_enabled) and money(wallet.balance) >= money(
        wallet.auto_withdrawal_threshold or 0
    )


# ── Withdrawals ───────────────────────────────────────────────

def calculate_withdrawal_fee(method: PayoutMethod | str, amount) -> Decimal:
    method = PayoutMethod(method)
    config = settings.withdrawal_fee_config(method.value)
    if not config:
        return Decimal("0.00")
    fee_type, fee_amount = config
    if fee_type == "percentage":
        return money(money(amount) * Decimal(str(fee_amount)) / 100)
    return money(fee_amount)


async def withdrawn_since(db: AsyncSession, teacher_id: UUID, since: datetime) -> Decimal:
    total = await db.scalar(
        select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.teacher_id == teacher_id,
            Transaction.transaction_type == TransactionType.WITHDRAWAL,
            Transaction.status == TransactionStatus.COMPLETED,
            Transaction.created_at >= since,
        )
    )
    return money(total or 0)


async def validate_withdrawal(
    db: AsyncSession, teacher_id: UUID, amount, method: PayoutMethod | str
) -> list[str]:
    """Return human-readable limit violations; empty when the withdrawal is allowed."""
    amount = money(amount)
    method = PayoutMethod(method)
    currency = settings.DEFAULT_CURRENCY
    errors: list[str] = []

    low, high = METHOD_LIMITS[method]
    if not low <= amount <= high:
        errors.append(
            f"{method.value.replace('_', ' ').title()} withdrawals must be between "
            f"{currency} {low:,.0f} and {currency} {high:,.0f}"
        )

    minimum = money(settings.WITHDRAWAL_MINIMUM_AMOUNT)
    if amount < minimum:
        errors.append(f"Minimum withdrawal amount is {currency} {minimum:,.0f}")

    now = datetime.now(timezone.utc)
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    start_of_month = start_of_day.replace(day=1)

    daily_limit = money(settings.WITHDRAWAL_DAILY_LIMIT)
    today = await withdrawn_since(db, teacher_id, start_of_day)
    if today + amount > daily_limit:
        errors.append(f"Daily withdrawal limit exceeded. Remaining: {currency} {daily_limit - today:,.0f}")

    monthly_limit = money(settings.WITHDRAWAL_MONTHLY_LIMIT)
    this_month = await withdrawn_since(db, teacher_id, start_of_month)
    if this_month + amount > monthly_limit:
        errors.append(
            f"Monthly withdrawal limit exceeded. Remaining: {currency} {monthly_limit - this_month:,.0f}"
        )

    return errors


def payment_details_for(method: PayoutMethod | str, data: dict) -> dict:
    method = PayoutMethod(method)
    missing = [f for f in REQUIRED_PAYOUT_FIELDS[method] if not data.get(f)]
    if missing:
        raise LedgerError(
            "Missing payout details",
            errors={f: [f"The {f.replace('_', ' ')} field is required for {method.value}."] for f in missing},
        )
    return {f: str(data[f]) for f in REQUIRED_PAYOUT_FIELDS[method]}


async def create_payout_request(
    db: AsyncSession,
    teacher: User,
    amount,
    method: PayoutMethod | str,
    details: dict,
    notes: Optional[str] = None,
) -> PayoutRequest:
    """
    Validate limits, then hold the requested amount in pending_payouts.
    The stored amount is net of the method fee; the gross amount is held.
    """
    gross = money(amount)
    method = PayoutMethod(method)

    limit_errors = await validate_withdrawal(db, teacher.id, gross, method)
    if limit_errors:
        raise LedgerError(", ".join(limit_errors), errors={"amount": limit_errors})

    payment_details = payment_details_for(method, details)
    fee = calculate_withdrawal_fee(method, gross)

    wallet = await get_teacher_wallet(db, teacher.id)
    hold_pending_payout(wallet, gross)

    payout = PayoutRequest(
        request_uuid=generate_payout_uuid(),
        teacher_id=teacher.id,
        amount=gross - fee,
        fee_amount=fee,
        currency=wallet.currency,
        payment_method=method,
        payment_details=payment_details,
        status=PayoutStatus.PENDING,
        request_date=date.today(),
        notes=notes,
    )
    db.add(payout)
    await db.flush()
    logger.info(f"Payout {payout.request_uuid} requested by teacher {teacher.id}: {gross} {wallet.currency}")
    return payout


def append_note(payout: PayoutRequest, text: str) -> None:
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
    line = f"[{stamp}] {text}"
    payout.notes = f"{payout.notes}\n{line}" if payout.notes else line


async def approve_payout(db: AsyncSession, payout: PayoutRequest, admin: User) -> Transaction:
    if payout.status != PayoutStatus.PENDING:
        raise LedgerError(f"Only pending payout requests can be approved (current: {payout.status.value})", field="status")

    gross = money(payout.amount) + money(payout.fee_amount)
    wallet = await get_teacher_wallet(db, payout.teacher_id)
    if money(wallet.pending_payouts) - gross < 0:
        raise LedgerError("Pending payouts would become negative; wallet is out of sync", field="status")

    wallet.pending_payouts = money(wallet.pending_payouts) - gross
    wallet.total_withdrawn = money(wallet.total_withdrawn) + gross

    payout.status = PayoutStatus.APPROVED
    payout.processed_by_id = admin.id
    payout.processed_date = datetime.now(timezone.utc)

    txn = _record(
        db, TransactionType.WITHDRAWAL, gross, payout.currency,
        f"Withdrawal {payout.request_uuid} via {payout.payment_method.value}",
        teacher_id=payout.teacher_id,
    )
    await db.flush()
    payout.transaction_id = txn.id
    return txn


async def decline_payout(db: AsyncSession, payout: PayoutRequest, admin: User, reason: str) -> None:
    if payout.status != PayoutStatus.PENDING:
        raise LedgerError(f"Only pending payout requests can be declined (current: {payout.status.value})", field="status")

    gross = money(payout.amount) + money(payout.fee_amount)
    wallet = await get_teacher_wallet(db, payout.teacher_id)
    wallet.balance = money(wallet.balance) + gross
    wallet.pending_payouts = max(Decimal("0.00"), money(wallet.pending_payouts) - gross)

    payout.status = PayoutStatus.DECLINED
    payout.processed_by_id = admin.id
    payout.processed_date = datetime.now(timezone.utc)
    append_note(payout, f"Declined: {reason}")


def mark_payout_paid(payout: PayoutRequest, external_reference: Optional[str] = None) -> None:
    if payout.status != PayoutStatus.APPROVED:
        raise LedgerError(f"Only approved payout requests can be marked paid (current: {payout.status.value})", field="status")
    payout.status = PayoutStatus.PAID
    if external_reference:
        payout.external_reference = external_reference
