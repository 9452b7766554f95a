import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, Field, ValidationInfo, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from examdesk.api.deps import get_generator
from examdesk.clients.material_generator import MaterialGeneratorClient
from examdesk.core.auth import TokenData, require_roles
from examdesk.core.database import get_db
from examdesk.core.responses import ok, paginated
from examdesk.models.orm import MaterialType, UserRole
from examdesk.services import materials as materials_service
from examdesk.services.materials import GenerateRequest

router = APIRouter(dependencies=[Depends(require_roles(UserRole.GURU))])
guru = require_roles(UserRole.GURU)


class MaterialUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    is_published: Optional[bool] = None

    @field_validator("title", "is_published")
    @classmethod
    def not_null(cls, v, info: ValidationInfo):
        if v is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return v


class ExamFromMaterial(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    settings: Optional[Dict[str, Any]] = None


@router.get("/templates")
async def templates(generator: MaterialGeneratorClient = Depends(get_generator)):
    return ok(await materials_service.templates(generator))


@router.post("/generate", status_code=201)
async def generate(payload: GenerateRequest = Body(...), user: TokenData = Depends(guru),
                   db: AsyncSession = Depends(get_db), generator: MaterialGeneratorClient = Depends(get_generator)):
    data = await materials_service.generate(db, generator, user.user_id, payload)
    return ok(data, "Material generated successfully")


@router.get("")
async def list_materials(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=50),
                         type: Optional[MaterialType] = None, is_published: Optional[bool] = None,
                         search: Optional[str] = None, user: TokenData = Depends(guru),
                         db: AsyncSession = Depends(get_db)):
    items, total = await materials_service.list_materials(db, user.user_id, page, limit, type, is_published, search)
    return paginated(items, page, limit, total)


@router.get("/{material_id}")
async def get_material(material_id: uuid.UUID, user: TokenData = Depends(guru), db: AsyncSession = Depends(get_db)):
    return ok(await materials_service.get_material(db, material_id, user.user_id))


@router.put("/{material_id}")
async def update_material(material_id: uuid.UUID, payload: MaterialUpdate, user: TokenData = Depends(guru),
                          db: AsyncSession = Depends(get_db)):
    changes = payload.model_dump(exclude_unset=True)
    data = await materials_service.update_material(db, material_id, user.user_id, changes)
    return ok(data, "Material updated successfully")


@router.delete("/{material_id}")
async def delete_material(material_id: uuid.UUID, user: TokenData = Depends(guru),
                          db: AsyncSession = Depends(get_db)):
    await materials_service.delete_material(db, material_id, user.user_id)
    return ok(message="Material deleted successfully")


@router.post("/{material_id}/publish")
async def publish_material(material_id: uuid.UUID, user: TokenData = Depends(guru),
                           db: AsyncSession = Depends(get_db)):
    data = await materials_service.set_published(db, material_id, user.user_id, True)
    return ok(data, "Material published successfully")


@router.post("/{material_id}/unpublish")
async def unpublish_material(material_id: uuid.UUID, user: TokenData = Depends(guru),
                             db: AsyncSession = Depends(get_db)):
    data = await materials_service.set_published(db, material_id, user.user_id, False)
    return ok(data, "Material unpublished successfully")


@router.post("/{material_id}/create-exam", status_code=201)
async def create_exam(material_id: uuid.UUID, payload: Optional[ExamFromMaterial] = None,
                      user: TokenData = Depends(guru), db: AsyncSession = Depends(get_db)):
    payload = payload or ExamFromMaterial()
    data = await materials_service.create_exam_from_material(db, material_id, user.user_id, payload.title,
                                                             payload.settings)
    return ok(data, "Exam created from material successfully")
