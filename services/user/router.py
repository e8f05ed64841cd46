"""
services/user/router.py
Account profile, role profiles, teacher availability and guardian-child links.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import get_current_user, require_guardian, require_student, require_teacher
from shared.models.models import (
    StudentProfile,
    Subject,
    TeacherAvailability,
    TeacherProfile,
    TeacherSubject,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    AvailabilityUpdate,
    LinkChildRequest,
    StudentProfileUpdate,
    TeacherProfileResponse,
    TeacherProfileUpdate,
    UserResponse,
    UserUpdateRequest,
)
from shared.utils.responses import FieldValidationError, success

router = APIRouter(prefix="/users", tags=["Users"])


async def _teacher_profile(db: AsyncSession, user: User) -> TeacherProfile:
    profile = await db.scalar(select(TeacherProfile).where(TeacherProfile.user_id == user.id))
    if not profile:
        profile = TeacherProfile(user_id=user.id)
        db.add(profile)
        await db.flush()
    return profile


async def _student_profile(db: AsyncSession, user_id: UUID) -> StudentProfile:
    profile = await db.scalar(select(StudentProfile).where(StudentProfile.user_id == user_id))
    if not profile:
        profile = StudentProfile(user_id=user_id)
        db.add(profile)
        await db.flush()
    return profile


async def _teacher_profile_response(db: AsyncSession, profile: TeacherProfile) -> TeacherProfileResponse:
    subject_ids = (await db.execute(
        select(TeacherSubject.subject_id).where(TeacherSubject.teacher_id == profile.user_id)
    )).scalars().all()
    response = TeacherProfileResponse.model_validate(profile)
    response.subject_ids = list(subject_ids)
    return response


def _window_dict(w: TeacherAvailability) -> dict:
    return {
        "id": w.id,
        "day_of_week": w.day_of_week,
        "start_time": w.start_time.strftime("%H:%M"),
        "end_time": w.end_time.strftime("%H:%M"),
        "is_available": w.is_available,
    }


# ── Account ───────────────────────────────────────────────────

@router.get("/me")
async def get_me(current_user: User = Depends(get_current_user)):
    """Return the currently authenticated user's profile."""
    return success(UserResponse.model_validate(current_user))


@router.patch("/me")
async def update_me(
    data: UserUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Update user profile fields (name, phone, avatar_url, fcm_token).
    Only fields present in the request body are updated.
    """
    updates = data.model_dump(exclude_unset=True, exclude_none=True)

    # Phone uniqueness check
    if "phone" in updates:
        existing = await db.scalar(
            select(User.id).where(User.phone == updates["phone"], User.id != current_user.id)
        )
        if existing:
            raise FieldValidationError({"phone": ["This phone number is already in use."]})

    for field, value in updates.items():
        setattr(current_user, field, value)

    await db.flush()
    return success(UserResponse.model_validate(current_user), "Profile updated")


# ── Teacher Profile ───────────────────────────────────────────

@router.get("/me/teacher-profile")
async def get_teacher_profile(
    current_user: User = Depends(require_teacher),
    db: AsyncSession = Depends(get_db),
):
    profile = await _teacher_profile(db, current_user)
    return success(await _teacher_profile_response(db, profile))


@router.put("/me/teacher-profile")
async def update_teacher_profile(
    data: TeacherProfileUpdate,
    current_user: User = Depends(require_teacher),
    db: AsyncSession = Depends(get_db),
):
    """subject_ids, when given, replaces the full list of subjects taught."""
    profile = await _teacher_profile(db, current_user)
    updates = data.model_dump(exclude_unset=True)
    subject_ids = updates.pop("subject_ids", None)

    if subject_ids is not None:
        subject_ids = list(dict.fromkeys(subject_ids))
        found = set((await db.execute(
            select(Subject.id).where(Subject.id.in_(subject_ids), Subject.is_active == True)  # noqa: E712
        )).scalars().all())
        unknown = [str(s) for s in subject_ids if s not in found]
        if unknown:
            raise FieldValidationError({"subject_ids": [f"Unknown or inactive subject(s): {', '.join(unknown)}"]})

        await db.execute(delete(TeacherSubject).where(TeacherSubject.teacher_id == current_user.id))
        for subject_id in subject_ids:
            db.add(TeacherSubject(teacher_id=current_user.id, subject_id=subject_id))

    for field, value in updates.items():
        if value is not None:
            setattr(profile, field, value)

    await db.flush()
    return success(await _teacher_profile_response(db, profile), "Teacher profile updated")


# ── Student Profile ───────────────────────────────────────────

@router.put("/me/student-profile")
async def update_student_profile(
    data: StudentProfileUpdate,
    current_user: User = Depends(require_student),
    db: AsyncSession = Depends(get_db),
):
    profile = await _student_profile(db, current_user.id)
    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(profile, field, value)
    await db.flush()
    return success({
        "user_id": profile.user_id,
        "guardian_id": profile.guardian_id,
        "grade_level": profile.grade_level,
        "learning_goals": profile.learning_goals,
    }, "Student profile updated")


# ── Availability ──────────────────────────────────────────────

@router.get("/me/availability")
async def get_availability(
    current_user: User = Depends(require_teacher),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(TeacherAvailability)
        .where(TeacherAvailability.teacher_id == current_user.id)
        .order_by(TeacherAvailability.day_of_week, TeacherAvailability.start_time)
    )
    return success([_window_dict(w) for w in result.scalars().all()])


@router.put("/me/availability")
async def replace_availability(
    data: AvailabilityUpdate,
    current_user: User = Depends(require_teacher),
    db: AsyncSession = Depends(get_db),
):
    """Replaces the whole weekly schedule. Windows on the same day may not overlap."""
    by_day: dict[int, list] = {}
    for window in data.windows:
        by_day.setdefault(window.day_of_week, []).append(window)
    for day, windows in by_day.items():
        windows.sort(key=lambda w: w.start_time)
        for earlier, later in zip(windows, windows[1:]):
            if later.start_time < earlier.end_time:
                raise FieldValidationError({"windows": [f"Availability windows overlap on day {day}."]})

    await db.execute(delete(TeacherAvailability).where(TeacherAvailability.teacher_id == current_user.id))
    for window in data.windows:
        db.add(TeacherAvailability(teacher_id=current_user.id, **window.model_dump()))
    await db.flush()

    result = await db.execute(
        select(TeacherAvailability)
        .where(TeacherAvailability.teacher_id == current_user.id)
        .order_by(TeacherAvailability.day_of_week, TeacherAvailability.start_time)
    )
    return success([_window_dict(w) for w in result.scalars().all()], "Availability updated")


# ── Guardian: Children ────────────────────────────────────────

@router.get("/me/children")
async def list_children(
    current_user: User = Depends(require_guardian),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(User, StudentProfile)
        .join(StudentProfile, StudentProfile.user_id == User.id)
        .where(StudentProfile.guardian_id == current_user.id, User.deleted_at.is_(None))
        .order_by(User.name)
    )
    return success([
        {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "grade_level": profile.grade_level,
            "learning_goals": profile.learning_goals,
        }
        for user, profile in result.all()
    ])


@router.post("/me/children", status_code=status.HTTP_201_CREATED)
async def link_child(
    data: LinkChildRequest,
    current_user: User = Depends(require_guardian),
    db: AsyncSession = Depends(get_db),
):
    """Link an existing student account to this guardian."""
    student = await db.scalar(
        select(User).where(User.email == data.student_email.lower(), User.deleted_at.is_(None))
    )
    if not student or student.role != UserRole.STUDENT:
        raise FieldValidationError({"student_email": ["No student account exists with this email."]})

    profile = await _student_profile(db, student.id)
    if profile.guardian_id and profile.guardian_id != current_user.id:
        raise HTTPException(status_code=409, detail="This student is already linked to another guardian")

    profile.guardian_id = current_user.id
    await db.flush()
    return success({"id": student.id, "name": student.name, "email": student.email}, "Child linked")


@router.delete("/me/children/{student_id}")
async def unlink_child(
    student_id: UUID,
    current_user: User = Depends(require_guardian),
    db: AsyncSession = Depends(get_db),
):
    profile = await db.scalar(
        select(StudentProfile).where(
            StudentProfile.user_id == student_id,
            StudentProfile.guardian_id == current_user.id,
        )
    )
    if not profile:
        raise HTTPException(status_code=404, detail="Child not found")
    profile.guardian_id = None
    await db.flush()
    return success(None, "Child unlinked")
