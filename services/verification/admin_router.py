"""
services/verification/admin_router.py
Admin review of teacher applications: documents, video call, decision.

Approval is gated by service.approval_blockers(); every action is written
to AdminAuditLog with entity_type "verification_request".
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.admin.audit import log_admin_action
from services.notification.service import notify_users
from services.verification import service
from shared.middleware.auth import require_admin
from shared.models.models import (
    AdminAuditLog,
    CallStatus,
    Document,
    DocumentStatus,
    User,
    VerificationCall,
    VerificationRequest,
    VerificationResult,
    VerificationStatus,
    VideoPlatform,
    VideoStatus,
)
from shared.schemas.schemas import (
    CompleteVideoVerificationRequest,
    DocumentRejectRequest,
    RequestVideoVerificationRequest,
    VerificationRejectRequest,
)
from shared.utils.responses import FieldValidationError, paginate, success

router = APIRouter(prefix="/admin/verification", tags=["Admin Verification"])

ENTITY = "verification_request"


def _call_dict(call: VerificationCall) -> dict:
    return {
        "id": call.id,
        "scheduled_at": call.scheduled_at,
        "platform": call.platform.value,
        "meeting_link": call.meeting_link,
        "notes": call.notes,
        "status": call.status.value,
        "verification_result": call.verification_result.value if call.verification_result else None,
        "verifier_id": call.verifier_id,
        "verifier_notes": call.verifier_notes,
        "started_at": call.started_at,
        "completed_at": call.completed_at,
    }


async def _summary(db: AsyncSession, vr: VerificationRequest, teacher: Optional[User] = None) -> dict:
    teacher = teacher or await db.get(User, vr.teacher_id)
    documents = await service.documents_for(db, vr)
    blockers = service.approval_blockers(vr, documents)
    return {
        "id": vr.id,
        "teacher": {"id": teacher.id, "name": teacher.name, "email": teacher.email} if teacher else None,
        "status": vr.status.value,
        "display_status": service.display_status(vr, documents),
        "docs_status": service.docs_status(documents).value,
        "video_status": vr.video_status.value,
        "documents_count": len(documents),
        "submitted_at": vr.submitted_at,
        "reviewed_at": vr.reviewed_at,
        "rejection_reason": vr.rejection_reason,
        "can_approve": not blockers and vr.status != VerificationStatus.VERIFIED,
        "blockers": blockers,
        "created_at": vr.created_at,
    }


async def _latest_call_or_409(db: AsyncSession, vr: VerificationRequest, allowed: tuple) -> VerificationCall:
    call = await service.latest_call(db, vr)
    if not call or call.status not in allowed:
        raise HTTPException(status_code=409, detail="No video verification call in a suitable state")
    return call


async def _notify_teacher(db: AsyncSession, vr: VerificationRequest, event: str, title: str, message: str, **data):
    await notify_users(db, [vr.teacher_id], event=event, title=title, message=message,
                       data=data, audience="teacher")


# ── Queue ─────────────────────────────────────────────────────

@router.get("")
async def list_requests(
    status_filter: Optional[VerificationStatus] = Query(None, alias="status"),
    search: Optional[str] = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Oldest submissions first."""
    query = select(VerificationRequest).join(User, User.id == VerificationRequest.teacher_id)
    if status_filter:
        query = query.where(VerificationRequest.status == status_filter)
    if search:
        query = query.where(or_(User.name.ilike(f"%{search}%"), User.email.ilike(f"%{search}%")))
    query = query.order_by(VerificationRequest.submitted_at.asc(), VerificationRequest.created_at.asc())

    rows, meta = await paginate(db, query, page, page_size)
    return success([await _summary(db, vr) for vr in rows], meta=meta)


@router.get("/{request_id}")
async def show_request(
    request_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    vr = await service.get_request_or_404(db, request_id)
    documents = await service.documents_for(db, vr)
    calls = (await db.execute(
        select(VerificationCall)
        .where(VerificationCall.verification_request_id == vr.id)
        .order_by(VerificationCall.created_at.desc())
    )).scalars().all()
    audit = (await db.execute(
        select(AdminAuditLog)
        .where(AdminAuditLog.entity_type == ENTITY, AdminAuditLog.entity_id == str(vr.id))
        .order_by(AdminAuditLog.created_at.desc())
    )).scalars().all()

    body = await _summary(db, vr)
    body["documents"] = [
        {
            "id": d.id,
            "document_type": d.document_type.value,
            "name": d.name,
            "file_url": d.file_url,
            "status": d.status.value,
            "rejection_reason": d.rejection_reason,
            "verified_by_id": d.verified_by_id,
            "verified_at": d.verified_at,
        }
        for d in documents
    ]
    body["video_calls"] = [_call_dict(c) for c in calls]
    body["audit_trail"] = [
        {"action": a.action, "admin_id": a.admin_id, "notes": a.notes, "created_at": a.created_at}
        for a in audit
    ]
    return success(body)


# ── Decision ──────────────────────────────────────────────────

@router.post("/{request_id}/approve")
async def approve_request(
    request_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    vr = await service.get_request_or_404(db, request_id)
    if vr.status == VerificationStatus.VERIFIED:
        raise HTTPException(status_code=409, detail="Teacher is already verified")

    documents = await service.documents_for(db, vr)
    blockers = service.approval_blockers(vr, documents)
    if blockers:
        raise FieldValidationError({"status": blockers}, message=blockers[0])

    methods = service.verification_methods(vr, documents)
    vr.status = VerificationStatus.VERIFIED
    vr.video_status = VideoStatus.PASSED
    vr.docs_status = service.docs_status(documents)
    vr.reviewed_by_id = current_user.id
    vr.reviewed_at = service.utcnow()
    vr.rejection_reason = None
    await service.set_profile_verified(db, vr.teacher_id, True)

    log_admin_action(
        db, current_user, "verification.approved", ENTITY, vr.id,
        notes=f"Teacher verification approved after {' and '.join(methods)}",
        payload={"teacher_id": str(vr.teacher_id), "methods": methods},
        request=request,
    )
    await _notify_teacher(
        db, vr, "verification.approved",
        "You're verified!",
        "Your teacher application has been approved. Students can now book sessions with you.",
    )
    await db.flush()
    return success(await _summary(db, vr), "Teacher verified")


@router.post("/{request_id}/reject")
async def reject_request(
    request_id: UUID,
    data: VerificationRejectRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    vr = await service.get_request_or_404(db, request_id)
    if vr.status == VerificationStatus.REJECTED:
        raise HTTPException(status_code=409, detail="Application is already rejected")

    vr.status = VerificationStatus.REJECTED
    vr.rejection_reason = data.rejection_reason
    vr.reviewed_by_id = current_user.id
    vr.reviewed_at = service.utcnow()
    await service.set_profile_verified(db, vr.teacher_id, False)

    log_admin_action(
        db, current_user, "verification.rejected", ENTITY, vr.id,
        notes=data.rejection_reason, payload={"teacher_id": str(vr.teacher_id)}, request=request,
    )
    await _notify_teacher(
        db, vr, "verification.rejected",
        "Application not approved",
        f"Your teacher application was not approved: {data.rejection_reason}",
        reason=data.rejection_reason,
    )
    await db.flush()
    return success(await _summary(db, vr), "Application rejected")


# ── Video Call ────────────────────────────────────────────────

@router.post("/{request_id}/request-video")
async def request_video(
    request_id: UUID,
    data: RequestVideoVerificationRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    vr = await service.get_request_or_404(db, request_id)
    if vr.status in (VerificationStatus.VERIFIED, VerificationStatus.REJECTED):
        raise HTTPException(status_code=409, detail=f"Cannot schedule a call for a {vr.status.value} application")

    call = VerificationCall(
        verification_request_id=vr.id,
        scheduled_at=data.scheduled_call_at,
        platform=VideoPlatform(data.video_platform),
        meeting_link=str(data.meeting_link) if data.meeting_link else None,
        notes=data.notes,
        status=CallStatus.SCHEDULED,
        verifier_id=current_user.id,
    )
    db.add(call)
    vr.status = VerificationStatus.PENDING
    vr.video_status = VideoStatus.SCHEDULED

    when = data.scheduled_call_at.strftime("%Y-%m-%d %H:%M UTC")
    log_admin_action(
        db, current_user, "verification.video_requested", ENTITY, vr.id,
        notes=f"Video verification scheduled for {when} on {data.video_platform}",
        payload={"scheduled_at": data.scheduled_call_at.isoformat(), "platform": data.video_platform},
        request=request,
    )
    await _notify_teacher(
        db, vr, "verification.video_requested",
        "Video verification scheduled",
        f"Your verification call is scheduled for {when}."
        + (f" Join here: {call.meeting_link}" if call.meeting_link else ""),
        scheduled_at=when, meeting_link=call.meeting_link or "",
    )
    await db.flush()
    return success(_call_dict(call), "Video verification requested")


@router.post("/{request_id}/start-video")
async def start_video(
    request_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    vr = await service.get_request_or_404(db, request_id)
    call = await _latest_call_or_409(db, vr, (CallStatus.SCHEDULED,))

    call.status = CallStatus.LIVE
    call.started_at = service.utcnow()
    call.verifier_id = current_user.id
    vr.status = VerificationStatus.LIVE_VIDEO

    log_admin_action(db, current_user, "verification.video_started", ENTITY, vr.id,
                     notes="Video verification call started", request=request)
    await db.flush()
    return success(_call_dict(call), "Video call started")


@router.post("/{request_id}/complete-video")
async def complete_video(
    request_id: UUID,
    data: CompleteVideoVerificationRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Record the call outcome. The request returns to pending for the final decision."""
    vr = await service.get_request_or_404(db, request_id)
    call = await _latest_call_or_409(db, vr, (CallStatus.SCHEDULED, CallStatus.LIVE))

    result = VerificationResult(data.verification_result)
    now = service.utcnow()
    call.status = CallStatus.COMPLETED
    call.verification_result = result
    call.verifier_id = current_user.id
    call.verifier_notes = data.notes
    call.started_at = call.started_at or now
    call.completed_at = now

    vr.video_status = VideoStatus.PASSED if result == VerificationResult.PASSED else VideoStatus.FAILED
    vr.status = VerificationStatus.PENDING

    log_admin_action(
        db, current_user, "verification.video_completed", ENTITY, vr.id,
        notes=f"Video verification {result.value}" + (f": {data.notes}" if data.notes else ""),
        payload={"result": result.value}, request=request,
    )
    await _notify_teacher(
        db, vr, f"verification.video_{result.value}",
        "Video verification " + ("passed" if result == VerificationResult.PASSED else "not passed"),
        "Your video verification call has been reviewed: " + result.value + ".",
        result=result.value,
    )
    await db.flush()
    return success(_call_dict(call), "Video verification recorded")


# ── Documents ─────────────────────────────────────────────────

async def _document_or_404(db: AsyncSession, document_id: UUID) -> Document:
    document = await db.get(Document, document_id)
    if not document:
        raise HTTPException(status_code=404, detail="Document not found")
    return document


async def _refresh_request_for(db: AsyncSession, document: Document) -> Optional[VerificationRequest]:
    if document.verification_request_id:
        vr = await db.get(VerificationRequest, document.verification_request_id)
    else:
        vr = await service.latest_request(db, document.teacher_id)
    if vr:
        await db.flush()
        service.refresh_docs_status(vr, await service.documents_for(db, vr))
    return vr


@router.post("/documents/{document_id}/verify")
async def verify_document(
    document_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    document = await _document_or_404(db, document_id)
    document.status = DocumentStatus.VERIFIED
    document.rejection_reason = None
    document.verified_by_id = current_user.id
    document.verified_at = service.utcnow()

    vr = await _refresh_request_for(db, document)
    log_admin_action(
        db, current_user, "verification.document_verified", ENTITY, vr.id if vr else None,
        notes=f"Document '{document.name}' verified", payload={"document_id": str(document.id)},
        request=request,
    )
    await db.flush()
    return success({"id": document.id, "status": document.status.value}, "Document verified")


@router.post("/documents/{document_id}/reject")
async def reject_document(
    document_id: UUID,
    data: DocumentRejectRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    document = await _document_or_404(db, document_id)
    document.status = DocumentStatus.REJECTED
    document.rejection_reason = data.reason
    document.verified_by_id = current_user.id
    document.verified_at = service.utcnow()

    vr = await _refresh_request_for(db, document)
    log_admin_action(
        db, current_user, "verification.document_rejected", ENTITY, vr.id if vr else None,
        notes=f"Document '{document.name}' rejected: {data.reason}",
        payload={"document_id": str(document.id)}, request=request,
    )
    await notify_users(
        db, [document.teacher_id], event="verification.document_rejected",
        title="Document needs attention",
        message=f"Your document '{document.name}' was rejected: {data.reason}. Please upload a replacement.",
        data={"document_name": document.name, "reason": data.reason}, audience="teacher",
    )
    await db.flush()
    return success(
        {"id": document.id, "status": document.status.value, "rejection_reason": document.rejection_reason},
        "Document rejected",
    )
