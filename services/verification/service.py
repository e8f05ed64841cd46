"""
services/verification/service.py
Teacher verification rules: document roll-up, approval gate and the
status shown to admins.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import HTTPException
from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.models.models import (
    Document,
    DocumentStatus,
    TeacherProfile,
    VerificationCall,
    VerificationRequest,
    VerificationStatus,
    VideoStatus,
)


async def get_request_or_404(db: AsyncSession, request_id: UUID) -> VerificationRequest:
    vr = await db.get(VerificationRequest, request_id)
    if not vr:
        raise HTTPException(status_code=404, detail="Verification request not found")
    return vr


async def latest_request(db: AsyncSession, teacher_id: UUID) -> Optional[VerificationRequest]:
    result = await db.execute(
        select(VerificationRequest)
        .where(VerificationRequest.teacher_id == teacher_id)
        .order_by(
            case((VerificationRequest.status == VerificationStatus.REJECTED, 1), else_=0),
            VerificationRequest.created_at.desc(),
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def documents_for(db: AsyncSession, vr: VerificationRequest) -> list[Document]:
    """Documents filed under this application only."""
    result = await db.execute(
        select(Document)
        .where(Document.verification_request_id == vr.id)
        .order_by(Document.created_at)
    )
    return list(result.scalars().all())


async def carry_over_documents(db: AsyncSession, previous: VerificationRequest, vr: VerificationRequest) -> None:
    """Move the pending and verified documents of a rejected application onto its replacement."""
    await db.execute(
        update(Document)
        .where(
            Document.verification_request_id == previous.id,
            Document.status != DocumentStatus.REJECTED,
        )
        .values(verification_request_id=vr.id)
        .execution_options(synchronize_session="fetch")
    )


async def latest_call(db: AsyncSession, vr: VerificationRequest) -> Optional[VerificationCall]:
    result = await db.execute(
        select(VerificationCall)
        .where(VerificationCall.verification_request_id == vr.id)
        .order_by(VerificationCall.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


def docs_status(documents: list[Document]) -> DocumentStatus:
    """pending if none; rejected if any rejected; verified if all verified; otherwise pending."""
    if not documents:
        return DocumentStatus.PENDING
    statuses = {d.status for d in documents}
    if DocumentStatus.REJECTED in statuses:
        return DocumentStatus.REJECTED
    if statuses == {DocumentStatus.VERIFIED}:
        return DocumentStatus.VERIFIED
    return DocumentStatus.PENDING


def approval_blockers(vr: VerificationRequest, documents: list[Document]) -> list[str]:
    """Reasons the request cannot be approved yet, in the order they should be addressed."""
    reasons = []
    if vr.status == VerificationStatus.REJECTED:
        reasons.append("Teacher application has been rejected.")
    if settings.VERIFICATION_REQUIRE_VIDEO and vr.video_status != VideoStatus.PASSED:
        reasons.append("Video verification call must be completed and passed.")
    if settings.VERIFICATION_REQUIRE_DOCUMENTS:
        if not documents:
            reasons.append("Teacher must submit at least one document before approval.")
        else:
            pending = sum(1 for d in documents if d.status == DocumentStatus.PENDING)
            rejected = sum(1 for d in documents if d.status == DocumentStatus.REJECTED)
            if pending:
                reasons.append(f"Cannot approve: {pending} document(s) still pending review.")
            if rejected:
                reasons.append(
                    f"Cannot approve: {rejected} document(s) have been rejected and need resubmission."
                )
    return reasons


def display_status(vr: VerificationRequest, documents: list[Document]) -> str:
    if vr.status in (VerificationStatus.REJECTED, VerificationStatus.LIVE_VIDEO):
        return vr.status.value
    if vr.status == VerificationStatus.VERIFIED or not approval_blockers(vr, documents):
        return VerificationStatus.VERIFIED.value
    return VerificationStatus.PENDING.value


def verification_methods(vr: VerificationRequest, documents: list[Document]) -> list[str]:
    methods = []
    if vr.video_status == VideoStatus.PASSED:
        methods.append("video verification")
    if documents and all(d.status == DocumentStatus.VERIFIED for d in documents):
        methods.append("document verification")
    return methods or ["manual review"]


async def set_profile_verified(db: AsyncSession, teacher_id: UUID, verified: bool) -> None:
    profile = (await db.execute(
        select(TeacherProfile).where(TeacherProfile.user_id == teacher_id)
    )).scalar_one_or_none()
    if profile:
        profile.verified = verified


def refresh_docs_status(vr: VerificationRequest, documents: list[Document]) -> None:
    vr.docs_status = docs_status(documents)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
