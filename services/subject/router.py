"""
services/subject/router.py
Subject catalogue and the verified teachers who teach each subject.
"""

import re
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.admin.audit import log_admin_action
from shared.middleware.auth import require_admin
from shared.models.models import Subject, TeacherProfile, TeacherSubject, User, UserRole
from shared.schemas.schemas import SubjectCreate, SubjectResponse, SubjectUpdate
from shared.utils.responses import FieldValidationError, page_meta, success

router = APIRouter(prefix="/subjects", tags=["Subjects"])


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


async def _get_subject_or_404(db: AsyncSession, subject_id: UUID) -> Subject:
    subject = await db.get(Subject, subject_id)
    if not subject:
        raise HTTPException(status_code=404, detail="Subject not found")
    return subject


@router.get("")
async def list_subjects(
    q: Optional[str] = Query(None, max_length=100),
    include_inactive: bool = Query(False),
    db: AsyncSession = Depends(get_db),
):
    query = select(Subject)
    if not include_inactive:
        query = query.where(Subject.is_active == True)  # noqa: E712
    if q:
        query = query.where(Subject.name.ilike(f"%{q}%"))
    result = await db.execute(query.order_by(Subject.name))
    return success([SubjectResponse.model_validate(s) for s in result.scalars().all()])


@router.get("/{subject_id}/teachers")
async def subject_teachers(
    subject_id: UUID,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """Verified, active teachers for a subject, lowest rate first."""
    await _get_subject_or_404(db, subject_id)
    query = (
        select(User, TeacherProfile)
        .join(TeacherProfile, TeacherProfile.user_id == User.id)
        .join(TeacherSubject, TeacherSubject.teacher_id == User.id)
        .where(
            TeacherSubject.subject_id == subject_id,
            TeacherProfile.verified == True,  # noqa: E712
            User.is_active == True,  # noqa: E712
            User.deleted_at.is_(None),
            User.role == UserRole.TEACHER,
        )
        .order_by(TeacherProfile.hourly_rate, User.name)
    )
    total = await db.scalar(select(func.count()).select_from(query.order_by(None).subquery())) or 0
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
    return success([
        {
            "id": user.id,
            "name": user.name,
            "avatar_url": user.avatar_url,
            "bio": profile.bio,
            "experience_years": profile.experience_years,
            "hourly_rate": profile.hourly_rate,
            "timezone": profile.timezone,
        }
        for user, profile in result.all()
    ], meta=page_meta(total, page, page_size))


# ── Admin ─────────────────────────────────────────────────────

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_subject(
    data: SubjectCreate,
    request: Request,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    slug = data.slug or slugify(data.name)
    if await db.scalar(select(Subject.id).where(Subject.slug == slug)):
        raise FieldValidationError({"slug": ["A subject with this slug already exists."]})

    subject = Subject(name=data.name, slug=slug, description=data.description)
    db.add(subject)
    await db.flush()
    log_admin_action(db, admin, "create_subject", "subject", subject.id, notes=subject.name, request=request)
    return success(SubjectResponse.model_validate(subject), "Subject created")


@router.patch("/{subject_id}")
async def update_subject(
    subject_id: UUID,
    data: SubjectUpdate,
    request: Request,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    subject = await _get_subject_or_404(db, subject_id)
    updates = data.model_dump(exclude_unset=True)
    for field, value in updates.items():
        setattr(subject, field, value)
    log_admin_action(db, admin, "update_subject", "subject", subject.id, payload=updates, request=request)
    await db.flush()
    return success(SubjectResponse.model_validate(subject), "Subject updated")
