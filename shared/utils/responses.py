"""
shared/utils/responses.py
Response envelope helpers shared by every router.

Success:    {"success": true, "data": ..., "message": "..."}
Failure:    {"success": false, "message": "...", "detail": ...}
Validation: {"success": false, "message": "...", "errors": {"field": ["..."]}}
"""

from typing import Any, Optional

from fastapi import HTTPException, status
from fastapi.encoders import jsonable_encoder
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Select

VALIDATION_MESSAGE = "The given data was invalid."


class FieldValidationError(HTTPException):
    """Business-rule validation failure reported against specific fields."""

    def __init__(self, errors: dict[str, list[str] | str], message: str = VALIDATION_MESSAGE):
        self.errors = {
            field: msgs if isinstance(msgs, list) else [msgs]
            for field, msgs in errors.items()
        }
        super().__init__(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=message)


def success(data: Any = None, message: Optional[str] = None, **extra) -> dict:
    body = {"success": True, "data": jsonable_encoder(data)}
    if message:
        body["message"] = message
    body.update(jsonable_encoder(extra))
    return body


def page_meta(total: int, page: int, page_size: int) -> dict:
    return {
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": -(-total // page_size),  # ceiling division
    }


async def paginate(db: AsyncSession, query: Select, page: int, page_size: int) -> tuple[list, dict]:
    """Run a select with offset/limit. Returns (rows, meta)."""
    total = await db.scalar(select(func.count()).select_from(query.order_by(None).subquery()))
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
    return list(result.scalars().all()), page_meta(total or 0, page, page_size)
