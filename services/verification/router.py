"""
services/verification/router.py
Teacher side of verification: view status, upload documents, (re)submit.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.notification.service import notify_users, resolve_recipients
from services.verification import service
from shared.middleware.auth import require_teacher
from shared.models.models import (
    Document,
    DocumentStatus,
    DocumentType,
    User,
    UserRole,
    VerificationRequest,
    VerificationStatus,
)
from shared.schemas.schemas import DocumentCreateRequest
from shared.utils.responses import success

router = APIRouter(prefix="/verification", tags=["Verification"])


def _document_dict(d: Document) -> dict:
    return {
        "id": d.id,
        "document_type": d.document_type.value,
        "name": d.name,
        "file_url": d.file_url,
        "status": d.status.value,
        "rejection_reason": d.rejection_reason,
        "verified_at": d.verified_at,
        "created_at": d.created_at,
    }


async def _current_request(db: AsyncSession, teacher: User) -> VerificationRequest:
    vr = await service.latest_request(db, teacher.id)
    if not vr:
        vr = VerificationRequest(teacher_id=teacher.id, status=VerificationStatus.PENDING)
        db.add(vr)
        await db.flush()
    return vr


async def _notify_admins(db: AsyncSession, teacher: User, event: str, title: str, message: str):
    admins = await resolve_recipients(db, roles=[UserRole.SUPER_ADMIN.value])
    await notify_users(db, admins, event=event, title=title, message=message,
                       data={"teacher_name": teacher.name}, audience="admin")


@router.get("/me")
async def my_verification(
    current_user: User = Depends(require_teacher),
    db: AsyncSession = Depends(get_db),
):
    vr = await _current_request(db, current_user)
    documents = await service.documents_for(db, vr)
    call = await service.latest_call(db, vr)
    return success({
        "id": vr.id,
        "status": vr.status.value,
        "docs_status": service.docs_status(documents).value,
        "video_status": vr.video_status.value,
        "submitted_at": vr.submitted_at,
        "rejection_reason": vr.rejection_reason,
        "outstanding": service.approval_blockers(vr, documents),
        "documents": [_document_dict(d) for d in documents],
        "video_call": {
            "scheduled_at": call.scheduled_at,
            "platform": call.platform.value,
            "meeting_link": call.meeting_link,
            "status": call.status.value,
        } if call else None,
    })


@router.post("/documents", status_code=status.HTTP_201_CREATED)
async def upload_document(
    data: DocumentCreateRequest,
    current_user: User = Depends(require_teacher),
    db: AsyncSession = Depends(get_db),
):
    """Register an already-uploaded document URL for review."""
    vr = await _current_request(db, current_user)
    document = Document(
        teacher_id=current_user.id,
        verification_request_id=vr.id,
        document_type=DocumentType(data.document_type),
        name=data.name,
        file_url=str(data.file_url),
        status=DocumentStatus.PENDING,
    )
    db.add(document)
    await db.flush()
    service.refresh_docs_status(vr, await service.documents_for(db, vr))
    return success(_document_dict(document), "Document submitted for review")


@router.post("/submit")
async def submit_for_review(
    current_user: User = Depends(require_teacher),
    db: AsyncSession = Depends(get_db),
):
    """
    Submit (or resubmit) for admin review. A rejected application starts a
    fresh request that takes over its pending and verified documents.
    """
    vr = await _current_request(db, current_user)
    if vr.status == VerificationStatus.VERIFIED:
        return success({"id": vr.id, "status": vr.status.value}, "You are already verified")

    if vr.status == VerificationStatus.REJECTED:
        previous = vr
        vr = VerificationRequest(teacher_id=current_user.id, status=VerificationStatus.PENDING)
        db.add(vr)
        await db.flush()
        await service.carry_over_documents(db, previous, vr)

    documents = await service.documents_for(db, vr)
    service.refresh_docs_status(vr, documents)
    vr.submitted_at = service.utcnow()
    await db.flush()

    await _notify_admins(
        db, current_user, "verification.submitted",
        "Teacher verification submitted",
        f"{current_user.name} submitted their application with {len(documents)} document(s).",
    )
    return success({"id": vr.id, "status": vr.status.value}, "Application submitted for review")
