import os

os.environ["ENVIRONMENT"] = "testing"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["PROMETHEUS_ENABLED"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"

import uuid
from typing import Any, Dict, List, Optional

import httpx
import pytest

from examdesk.clients.storage import ObjectStorage
from examdesk.core.auth import create_access_token, hash_password
from examdesk.core.config import Settings
from examdesk.core.database import build_engine, init_db
from examdesk.core.errors import ExternalServiceError
from examdesk.main import create_app
from examdesk.models.orm import User, UserRole

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"
PASSWORD = "Secret123"


class FakeGenerator:
    def __init__(self):
        self.calls: List[tuple] = []
        self.templates = [{"id": "minimalis", "name": "Minimalis", "description": "Clean"}]
        self.questions = [
            {"nomor": 1, "tipe": "pilihan_ganda", "pertanyaan": "2 + 2 = ?", "opsi": {"A": "3", "B": "4"},
             "kunci_jawaban": "B", "pembahasan": "", "tingkat_kesulitan": "mudah", "kategori_bloom": "C1",
             "is_hots": False},
            {"nomor": 2, "tipe": "esai", "pertanyaan": "Jelaskan fotosintesis", "kunci_jawaban": "Cahaya",
             "pembahasan": "", "rubrik_penilaian": {"isi": 1.0}, "tingkat_kesulitan": "sedang",
             "kategori_bloom": "C2", "is_hots": True},
        ]

    async def get_templates(self):
        self.calls.append(("templates", None))
        return self.templates

    async def _generate(self, kind: str, payload: Dict[str, Any], **extra):
        self.calls.append((kind, payload))
        return {"success": True, "url": f"https://files.test/{kind}.docx",
                "preview_url": f"https://files.test/{kind}.pdf", **extra}

    async def generate_ppt(self, payload):
        return await self._generate("ppt", payload, total_slides=12, template_used=payload["template"])

    async def generate_rpp(self, payload):
        return await self._generate("rpp", payload)

    async def generate_lkpd(self, payload):
        return await self._generate("lkpd", payload, jenis_lkpd=payload["jenis_lkpd"])

    async def generate_questions(self, payload):
        return await self._generate("questions", payload, jumlah_soal=len(self.questions), content=self.questions)

    async def close(self):
        pass


class FakeScorer:
    def __init__(self):
        self.score = 80.0
        self.fail = False
        self.calls: List[tuple] = []

    def _result(self):
        if self.fail:
            raise ExternalServiceError("Essay scorer unreachable")
        return {
            "score": self.score,
            "rubric_breakdown": {"isi": self.score},
            "feedback": {"overall": "Good work", "strengths": ["clear"], "improvements": ["detail"]},
        }

    async def score_text(self, student_answer, answer_key, rubric=None, question=None):
        self.calls.append(("text", student_answer))
        return self._result()

    async def score_image(self, image_url, answer_key, rubric=None, question=None):
        self.calls.append(("image", image_url))
        return self._result()

    async def close(self):
        pass


class FakeProctoring:
    def __init__(self):
        self.fail = False
        self.started: List[tuple] = []
        self.ended: List[str] = []
        self.browser_events: List[tuple] = []

    async def start_session(self, student_id, exam_id, student_name, exam_name):
        if self.fail:
            raise ExternalServiceError("Proctoring service unreachable")
        self.started.append((student_id, exam_id))
        return f"session-{len(self.started)}"

    async def end_session(self, session_id):
        if self.fail:
            raise ExternalServiceError("Proctoring service unreachable")
        self.ended.append(session_id)

    async def get_session(self, session_id):
        if self.fail:
            raise ExternalServiceError("Proctoring service error: 404")
        return {"session_id": session_id, "status": "active"}

    async def get_session_events(self, session_id):
        if self.fail:
            raise ExternalServiceError("Proctoring service error: 500")
        return [{"type": "TAB_SWITCH"}]

    async def report_browser_event(self, session_id, event_type, details):
        if self.fail:
            raise ExternalServiceError("Proctoring service unreachable")
        self.browser_events.append((session_id, event_type, details))

    async def close(self):
        pass


class FakeStorage:
    build_key = staticmethod(ObjectStorage.build_key)

    def __init__(self):
        self.objects: Dict[str, bytes] = {}

    async def upload(self, data: bytes, key: str, content_type: Optional[str] = None) -> str:
        self.objects[key] = data
        return f"https://storage.test/{key}"

    async def close(self):
        pass


@pytest.fixture
def settings():
    return Settings(
        ENVIRONMENT="testing",
        DATABASE_URL=TEST_DB_URL,
        PROMETHEUS_ENABLED=False,
        RATE_LIMIT_ENABLED=False,
        SUSPICIOUS_VIOLATION_THRESHOLD=3,
        ESSAY_FALLBACK_SCORE=50.0,
    )


@pytest.fixture
async def engine():
    engine = build_engine(TEST_DB_URL)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def fakes():
    return {
        "generator": FakeGenerator(),
        "scorer": FakeScorer(),
        "proctoring": FakeProctoring(),
        "storage": FakeStorage(),
    }


@pytest.fixture
async def app(settings, engine, fakes):
    app = create_app(settings, engine=engine, **fakes)
    yield app
    await app.state.scoring.close()


@pytest.fixture
def session_factory(app):
    return app.state.session_factory


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def make_user(session_factory, settings):
    """Insert a user directly and return (user, auth headers)."""

    async def _make(role: UserRole = UserRole.GURU, name: Optional[str] = None):
        async with session_factory() as session:
            user = User(
                name=name or f"{role.value.title()} {uuid.uuid4().hex[:6]}",
                email=f"{uuid.uuid4().hex[:10]}@example.com",
                password_hash=hash_password(PASSWORD),
                role=role,
            )
            session.add(user)
            await session.commit()
        token = create_access_token(str(user.id), user.email, role.value, settings)
        return user, {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
async def teacher(make_user):
    return await make_user(UserRole.GURU, "Bu Sari")


@pytest.fixture
async def student(make_user):
    return await make_user(UserRole.MURID, "Andi")


@pytest.fixture
def exam_builder(client):
    """Create questions and a linked exam through the API, optionally started."""

    async def _build(headers, questions: Optional[List[dict]] = None, start: bool = False,
                     settings: Optional[dict] = None) -> dict:
        questions = questions if questions is not None else [
            {"type": "PG", "prompt": "Ibu kota Indonesia?", "options": {"A": "Jakarta", "B": "Bandung"},
             "answer_key": "A"},
            {"type": "ESSAY", "prompt": "Jelaskan siklus air", "answer_key": "Evaporasi, kondensasi",
             "rubric": {"isi": 0.7, "bahasa": 0.3}},
        ]
        question_ids = []
        for q in questions:
            r = await client.post("/api/questions", json=q, headers=headers)
            assert r.status_code == 201, r.text
            question_ids.append(r.json()["data"]["id"])
        body = {"title": "Ujian IPA", "duration": 60}
        if settings is not None:
            body["settings"] = settings
        r = await client.post("/api/exams", json=body, headers=headers)
        assert r.status_code == 201, r.text
        exam_id = r.json()["data"]["id"]
        if question_ids:
            r = await client.post(f"/api/exams/{exam_id}/questions",
                                  json={"questions": [{"question_id": qid} for qid in question_ids]},
                                  headers=headers)
            assert r.status_code == 200, r.text
        if start:
            r = await client.patch(f"/api/exams/{exam_id}/status", json={"status": "ONGOING"}, headers=headers)
            assert r.status_code == 200, r.text
        return {"exam_id": exam_id, "question_ids": question_ids}

    return _build
