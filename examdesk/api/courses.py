import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from examdesk.core.auth import get_current_user
from examdesk.core.database import get_db
from examdesk.core.responses import ok, paginated
from examdesk.models.orm import MaterialType
from examdesk.services import materials as materials_service

router = APIRouter(dependencies=[Depends(get_current_user)])


@router.get("")
async def list_courses(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=50),
                       type: Optional[MaterialType] = None, search: Optional[str] = None,
                       db: AsyncSession = Depends(get_db)):
    items, total = await materials_service.list_published(db, page, limit, type, search)
    return paginated(items, page, limit, total)


@router.get("/{material_id}")
async def get_course(material_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    return ok(await materials_service.get_published(db, material_id))
