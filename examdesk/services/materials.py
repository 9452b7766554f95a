"""
Teaching materials generated by the external document generator.

A generation request is one of four variants, discriminated on ``type``.
``BUILDERS`` maps every ``MaterialType`` to the coroutine that calls the
generator and shapes the stored row; ``generate`` dispatches through it.
"""
import logging
import uuid
from typing import Annotated, Any, Awaitable, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from examdesk.clients.material_generator import MaterialGeneratorClient
from examdesk.core.database import paginate
from examdesk.core.errors import BadRequestError, ForbiddenError, NotFoundError
from examdesk.models.orm import (
    DEFAULT_EXAM_SETTINGS, Difficulty, Exam, ExamQuestion, ExamStatus, Material, MaterialType, Question,
    QuestionType, User,
)

logger = logging.getLogger(__name__)

Kurikulum = Literal["kurikulum_merdeka", "kurikulum_2013"]


# ---------- requests ----------

class PPTRequest(BaseModel):
    type: Literal["PPT"] = "PPT"
    kurikulum: Kurikulum = "kurikulum_merdeka"
    jenjang: str = Field(..., min_length=1)
    template: str = "minimalis"
    topic: str = Field(..., min_length=1)
    detail_level: Literal["ringkas", "lengkap"] = "lengkap"
    include_examples: bool = True


class RPPRequest(BaseModel):
    type: Literal["RPP"] = "RPP"
    kurikulum: Kurikulum = "kurikulum_merdeka"
    jenjang: str = Field(..., min_length=1)
    topic: str = Field(..., min_length=1)
    tujuan_pembelajaran: List[str] = Field(..., min_length=1)
    karakteristik_siswa: Optional[str] = None
    alokasi_waktu: str = "2 x 45 menit"


class LKPDRequest(BaseModel):
    type: Literal["LKPD"] = "LKPD"
    kurikulum: Kurikulum = "kurikulum_merdeka"
    jenjang: str = Field(..., min_length=1)
    topik_lkpd: str = Field(..., min_length=1)
    mata_pelajaran: str = Field(..., min_length=1)
    kelas: str = Field(..., min_length=1)
    jenis_lkpd: Literal["proyek", "eksperimen", "diskusi", "latihan"] = "latihan"
    fitur_tambahan: Optional[Dict[str, Any]] = None


class QuestionsRequest(BaseModel):
    type: Literal["QUESTIONS"] = "QUESTIONS"
    topic: str = Field(..., min_length=1)
    jenjang: str = Field(..., min_length=1)
    jumlah_soal: int = Field(10, gt=0, le=50)
    tipe_soal: List[Literal["pilihan_ganda", "esai"]] = Field(..., min_length=1)
    tingkat_kesulitan: List[Difficulty] = Field(..., min_length=1)
    include_hots: bool = True


GenerateRequest = Annotated[
    Union[PPTRequest, RPPRequest, LKPDRequest, QuestionsRequest],
    Field(discriminator="type"),
]


class GeneratedMaterial(BaseModel):
    title: str
    content: Dict[str, Any]
    file_url: Optional[str]
    preview_url: Optional[str]
    params: Dict[str, Any] = Field(default_factory=dict)


# ---------- builders ----------

async def build_ppt(client: MaterialGeneratorClient, request: PPTRequest) -> GeneratedMaterial:
    result = await client.generate_ppt(request.model_dump(exclude={"type"}))
    return GeneratedMaterial(
        title=f"PPT - {request.topic}",
        content={"total_slides": result.get("total_slides"), "template_used": result.get("template_used")},
        file_url=result.get("url"),
        preview_url=result.get("preview_url"),
        params=request.model_dump(include={"template", "kurikulum", "jenjang", "detail_level"}),
    )


async def build_rpp(client: MaterialGeneratorClient, request: RPPRequest) -> GeneratedMaterial:
    payload = request.model_dump(exclude={"type"})
    payload["karakteristik_siswa"] = request.karakteristik_siswa or ""
    result = await client.generate_rpp(payload)
    return GeneratedMaterial(
        title=f"RPP - {request.topic}",
        content={},
        file_url=result.get("url"),
        preview_url=result.get("preview_url"),
        params=request.model_dump(include={"kurikulum", "jenjang", "tujuan_pembelajaran", "alokasi_waktu"}),
    )


async def build_lkpd(client: MaterialGeneratorClient, request: LKPDRequest) -> GeneratedMaterial:
    result = await client.generate_lkpd(request.model_dump(exclude={"type"}, exclude_none=True))
    return GeneratedMaterial(
        title=f"LKPD - {request.topik_lkpd}",
        content={"jenis_lkpd": result.get("jenis_lkpd", request.jenis_lkpd)},
        file_url=result.get("url"),
        preview_url=result.get("preview_url"),
        params=request.model_dump(include={"kurikulum", "jenjang", "mata_pelajaran", "kelas", "jenis_lkpd"}),
    )


async def build_questions(client: MaterialGeneratorClient, request: QuestionsRequest) -> GeneratedMaterial:
    result = await client.generate_questions(request.model_dump(exclude={"type"}, mode="json"))
    return GeneratedMaterial(
        title=f"Soal - {request.topic}",
        content={"jumlah_soal": result.get("jumlah_soal"), "questions": result.get("content") or []},
        file_url=result.get("url"),
        preview_url=result.get("preview_url"),
        params=request.model_dump(include={"jenjang", "tipe_soal", "tingkat_kesulitan", "include_hots"}, mode="json"),
    )


Builder = Callable[[MaterialGeneratorClient, Any], Awaitable[GeneratedMaterial]]

BUILDERS: Dict[MaterialType, Builder] = {
    MaterialType.PPT: build_ppt,
    MaterialType.RPP: build_rpp,
    MaterialType.LKPD: build_lkpd,
    MaterialType.QUESTIONS: build_questions,
}


async def generate(db: AsyncSession, client: MaterialGeneratorClient, teacher_id: uuid.UUID, request) -> dict:
    material_type = MaterialType(request.type)
    built = await BUILDERS[material_type](client, request)
    material = Material(
        teacher_id=teacher_id,
        type=material_type,
        title=built.title,
        content=built.content,
        file_url=built.file_url,
        preview_url=built.preview_url,
        params=built.params,
        is_published=False,
    )
    db.add(material)
    await db.flush()
    logger.info("Material %s (%s) generated for %s", material.id, material_type.value, teacher_id)
    return material.to_dict()


# ---------- CRUD ----------

async def get_owned_material(db: AsyncSession, material_id: uuid.UUID, teacher_id: uuid.UUID) -> Material:
    material = await db.scalar(select(Material).where(Material.id == material_id, Material.teacher_id == teacher_id))
    if not material:
        raise NotFoundError("Material")
    return material


async def list_materials(db: AsyncSession, teacher_id: uuid.UUID, page: int = 1, limit: int = 20,
                         type: Optional[MaterialType] = None, is_published: Optional[bool] = None,
                         search: Optional[str] = None):
    stmt = select(Material).where(Material.teacher_id == teacher_id)
    if type:
        stmt = stmt.where(Material.type == type)
    if is_published is not None:
        stmt = stmt.where(Material.is_published == is_published)
    if search:
        stmt = stmt.where(Material.title.ilike(f"%{search}%"))
    rows, total = await paginate(db, stmt.order_by(Material.created_at.desc()), page, limit)
    return [row[0].to_dict() for row in rows], total


async def get_material(db: AsyncSession, material_id: uuid.UUID, teacher_id: uuid.UUID) -> dict:
    return (await get_owned_material(db, material_id, teacher_id)).to_dict()


async def update_material(db: AsyncSession, material_id: uuid.UUID, teacher_id: uuid.UUID,
                          changes: Dict[str, Any]) -> dict:
    material = await get_owned_material(db, material_id, teacher_id)
    for key, value in changes.items():
        setattr(material, key, value)
    await db.flush()
    return material.to_dict()


async def set_published(db: AsyncSession, material_id: uuid.UUID, teacher_id: uuid.UUID, published: bool) -> dict:
    material = await get_owned_material(db, material_id, teacher_id)
    material.is_published = published
    await db.flush()
    logger.info("Material %s %s", material_id, "published" if published else "unpublished")
    return material.to_dict()


async def delete_material(db: AsyncSession, material_id: uuid.UUID, teacher_id: uuid.UUID) -> None:
    material = await get_owned_material(db, material_id, teacher_id)
    await db.delete(material)
    await db.flush()
    logger.info("Material %s deleted", material_id)


async def templates(client: MaterialGeneratorClient) -> List[Dict[str, Any]]:
    return await client.get_templates()


# ---------- exam from generated questions ----------

QUESTION_TYPES = {"pilihan_ganda": QuestionType.PG, "pg": QuestionType.PG, "esai": QuestionType.ESSAY,
                  "essay": QuestionType.ESSAY}


def question_from_generated(teacher_id: uuid.UUID, item: Dict[str, Any]) -> Question:
    """Map one generated item (Indonesian field names) onto a question row."""
    qtype = QUESTION_TYPES.get(str(item.get("tipe", "")).lower())
    if qtype is None:
        qtype = QuestionType.PG if item.get("opsi") else QuestionType.ESSAY
    try:
        difficulty = Difficulty(str(item.get("tingkat_kesulitan", "")).lower())
    except ValueError:
        difficulty = None
    return Question(
        teacher_id=teacher_id,
        type=qtype,
        prompt=item.get("pertanyaan") or "",
        options=item.get("opsi") if qtype == QuestionType.PG else None,
        answer_key=item.get("kunci_jawaban"),
        rubric=item.get("rubrik_penilaian") if qtype == QuestionType.ESSAY else None,
        difficulty=difficulty,
        category=item.get("kategori_bloom"),
        is_hots=bool(item.get("is_hots", False)),
    )


async def create_exam_from_material(db: AsyncSession, material_id: uuid.UUID, teacher_id: uuid.UUID,
                                    title: Optional[str] = None,
                                    settings: Optional[Dict[str, Any]] = None) -> dict:
    material = await get_owned_material(db, material_id, teacher_id)
    if material.type != MaterialType.QUESTIONS:
        raise BadRequestError("Only QUESTIONS materials can be turned into an exam")
    items = [item for item in (material.content or {}).get("questions") or [] if item.get("pertanyaan")]
    if not items:
        raise BadRequestError("Material has no generated questions")

    exam = Exam(
        teacher_id=teacher_id,
        title=title or material.title,
        status=ExamStatus.DRAFT,
        settings={**DEFAULT_EXAM_SETTINGS, **(settings or {})},
    )
    db.add(exam)
    questions = [question_from_generated(teacher_id, item) for item in items]
    db.add_all(questions)
    await db.flush()
    db.add_all([
        ExamQuestion(exam_id=exam.id, question_id=question.id, position=index, points=1.0)
        for index, question in enumerate(questions)
    ])
    await db.flush()
    logger.info("Exam %s created from material %s with %d questions", exam.id, material_id, len(questions))
    data = exam.to_dict()
    data["question_count"] = len(questions)
    return data


# ---------- courses (student view) ----------

async def list_published(db: AsyncSession, page: int = 1, limit: int = 20, type: Optional[MaterialType] = None,
                         search: Optional[str] = None):
    stmt = (
        select(Material, User.name)
        .join(User, User.id == Material.teacher_id)
        .where(Material.is_published.is_(True))
    )
    if type:
        stmt = stmt.where(Material.type == type)
    if search:
        stmt = stmt.where(Material.title.ilike(f"%{search}%"))
    rows, total = await paginate(db, stmt.order_by(Material.created_at.desc()), page, limit)
    return [{**material.to_dict(), "teacher_name": name} for material, name in rows], total


async def get_published(db: AsyncSession, material_id: uuid.UUID) -> dict:
    row = (await db.execute(
        select(Material, User.name).join(User, User.id == Material.teacher_id).where(Material.id == material_id)
    )).first()
    if not row:
        raise NotFoundError("Material")
    material, name = row
    if not material.is_published:
        raise ForbiddenError("This material is not available")
    return {**material.to_dict(), "teacher_name": name}
