import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Query, UploadFile
from pydantic import BaseModel, Field, HttpUrl, ValidationInfo, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from examdesk.api.deps import get_app_settings, get_hub, get_proctoring, get_storage
from examdesk.clients.proctoring import ProctoringClient
from examdesk.clients.storage import ObjectStorage
from examdesk.core.auth import TokenData, get_current_user, require_roles
from examdesk.core.config import Settings
from examdesk.core.database import get_db
from examdesk.core.errors import BadRequestError
from examdesk.core.realtime import RealtimeHub
from examdesk.core.responses import ok, paginated
from examdesk.models.orm import ExamStatus, UserRole
from examdesk.services import exams as exams_service
from examdesk.services import participation

router = APIRouter()
guru = require_roles(UserRole.GURU)
murid = require_roles(UserRole.MURID)


class ExamSettings(BaseModel):
    enable_proctoring: bool = True
    allow_late_submission: bool = False
    shuffle_questions: bool = False
    show_results: bool = True


class ExamCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[int] = Field(None, gt=0)
    settings: Optional[ExamSettings] = None


class ExamUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[int] = Field(None, gt=0)
    settings: Optional[ExamSettings] = None

    @field_validator("title", "settings")
    @classmethod
    def not_null(cls, v, info: ValidationInfo):
        if v is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return v


class StatusUpdate(BaseModel):
    status: ExamStatus


class QuestionLink(BaseModel):
    question_id: uuid.UUID
    order: Optional[int] = Field(None, ge=0)
    points: Optional[float] = Field(None, gt=0)


class AddQuestions(BaseModel):
    questions: List[QuestionLink] = Field(..., min_length=1)


class AnswerSubmit(BaseModel):
    question_id: uuid.UUID
    answer_text: Optional[str] = None
    answer_file_url: Optional[HttpUrl] = None


class BatchSubmit(BaseModel):
    answers: List[AnswerSubmit] = Field(..., min_length=1)


def _answer_dict(answer: AnswerSubmit) -> dict:
    return {
        "question_id": answer.question_id,
        "answer_text": answer.answer_text,
        "answer_file_url": str(answer.answer_file_url) if answer.answer_file_url else None,
    }


# ---------- shared ----------

@router.get("")
async def list_exams(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=50),
                     status: Optional[ExamStatus] = None, search: Optional[str] = None,
                     user: TokenData = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    items, total = await exams_service.list_exams(db, user, page, limit, status, search)
    return paginated(items, page, limit, total)


@router.get("/my-exams")
async def my_exams(status: Optional[ExamStatus] = None, user: TokenData = Depends(murid),
                   db: AsyncSession = Depends(get_db)):
    return ok(await participation.student_exams(db, user.user_id, status))


@router.post("", status_code=201)
async def create_exam(payload: ExamCreate, user: TokenData = Depends(guru), db: AsyncSession = Depends(get_db)):
    data = await exams_service.create_exam(db, user.user_id, payload.model_dump())
    return ok(data, "Exam created successfully")


@router.get("/{exam_id}")
async def get_exam(exam_id: uuid.UUID, user: TokenData = Depends(get_current_user),
                   db: AsyncSession = Depends(get_db)):
    return ok(await exams_service.get_exam(db, exam_id, user))


# ---------- teacher ----------

@router.put("/{exam_id}")
async def update_exam(exam_id: uuid.UUID, payload: ExamUpdate, user: TokenData = Depends(guru),
                      db: AsyncSession = Depends(get_db)):
    changes = payload.model_dump(exclude_unset=True)
    data = await exams_service.update_exam(db, exam_id, user.user_id, changes)
    return ok(data, "Exam updated successfully")


@router.delete("/{exam_id}")
async def delete_exam(exam_id: uuid.UUID, user: TokenData = Depends(guru), db: AsyncSession = Depends(get_db)):
    await exams_service.delete_exam(db, exam_id, user.user_id)
    return ok(message="Exam deleted successfully")


@router.patch("/{exam_id}/status")
async def update_status(exam_id: uuid.UUID, payload: StatusUpdate, user: TokenData = Depends(guru),
                        db: AsyncSession = Depends(get_db), hub: RealtimeHub = Depends(get_hub)):
    data = await exams_service.transition(db, hub, exam_id, user.user_id, payload.status)
    return ok(data, f"Exam status updated to {payload.status.value}")


@router.post("/{exam_id}/publish")
async def publish_exam(exam_id: uuid.UUID, user: TokenData = Depends(guru), db: AsyncSession = Depends(get_db),
                       hub: RealtimeHub = Depends(get_hub)):
    return ok(await exams_service.publish_exam(db, hub, exam_id, user.user_id), "Exam published successfully")


@router.post("/{exam_id}/end")
async def end_exam(exam_id: uuid.UUID, user: TokenData = Depends(guru), db: AsyncSession = Depends(get_db),
                   hub: RealtimeHub = Depends(get_hub)):
    return ok(await exams_service.end_exam(db, hub, exam_id, user.user_id), "Exam ended successfully")


@router.post("/{exam_id}/questions")
async def add_questions(exam_id: uuid.UUID, payload: AddQuestions, user: TokenData = Depends(guru),
                        db: AsyncSession = Depends(get_db)):
    items = [link.model_dump() for link in payload.questions]
    data = await exams_service.add_questions(db, exam_id, user.user_id, items)
    return ok(data, "Questions added successfully")


@router.delete("/{exam_id}/questions/{question_id}")
async def remove_question(exam_id: uuid.UUID, question_id: uuid.UUID, user: TokenData = Depends(guru),
                          db: AsyncSession = Depends(get_db)):
    await exams_service.remove_question(db, exam_id, user.user_id, question_id)
    return ok(message="Question removed from exam")


@router.get("/{exam_id}/participants")
async def list_participants(exam_id: uuid.UUID, user: TokenData = Depends(guru),
                            db: AsyncSession = Depends(get_db)):
    return ok(await exams_service.list_participants(db, exam_id, user.user_id))


# ---------- student ----------

@router.post("/{exam_id}/join")
async def join_exam(exam_id: uuid.UUID, user: TokenData = Depends(murid), db: AsyncSession = Depends(get_db),
                    proctoring: ProctoringClient = Depends(get_proctoring)):
    data = await participation.join_exam(db, exam_id, user.user_id, proctoring)
    message = "Already joined this exam" if data["already_joined"] else "Joined exam successfully"
    return ok(data, message)


@router.post("/{exam_id}/submit")
async def submit_answer(exam_id: uuid.UUID, payload: AnswerSubmit, user: TokenData = Depends(murid),
                        db: AsyncSession = Depends(get_db)):
    answer = _answer_dict(payload)
    data = await participation.submit_answer(db, exam_id, user.user_id, answer["question_id"],
                                             answer["answer_text"], answer["answer_file_url"])
    return ok(data, "Answer saved")


@router.post("/{exam_id}/submit-batch")
async def submit_batch(exam_id: uuid.UUID, payload: BatchSubmit, user: TokenData = Depends(murid),
                       db: AsyncSession = Depends(get_db)):
    answers = [_answer_dict(answer) for answer in payload.answers]
    data = await participation.batch_submit(db, exam_id, user.user_id, answers)
    return ok(data, f"{len(data)} answers saved")


@router.post("/{exam_id}/attachments", status_code=201)
async def upload_attachment(exam_id: uuid.UUID, file: UploadFile = File(...), user: TokenData = Depends(murid),
                            db: AsyncSession = Depends(get_db), storage: ObjectStorage = Depends(get_storage),
                            settings: Settings = Depends(get_app_settings)):
    content_type = file.content_type or "application/octet-stream"
    if content_type not in settings.ALLOWED_UPLOAD_TYPES:
        raise BadRequestError(f"File type {content_type} is not allowed")
    data = await file.read()
    if len(data) > settings.MAX_UPLOAD_SIZE:
        raise BadRequestError("File is too large")
    result = await participation.upload_attachment(db, storage, exam_id, user.user_id, file.filename,
                                                   content_type, data)
    return ok(result, "File uploaded")


@router.post("/{exam_id}/finish")
async def finish_exam(exam_id: uuid.UUID, user: TokenData = Depends(murid), db: AsyncSession = Depends(get_db),
                      proctoring: ProctoringClient = Depends(get_proctoring)):
    data = await participation.finish_exam(db, exam_id, user.user_id, proctoring)
    return ok(data, "Exam submitted successfully")


@router.get("/{exam_id}/status")
async def exam_status(exam_id: uuid.UUID, user: TokenData = Depends(murid), db: AsyncSession = Depends(get_db)):
    return ok(await participation.student_status(db, exam_id, user.user_id))
