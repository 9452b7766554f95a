import pytest

from examdesk.models.orm import ExamStatus
from examdesk.services.exams import can_transition


@pytest.mark.parametrize("current,target,allowed", [
    (ExamStatus.DRAFT, ExamStatus.ONGOING, True),
    (ExamStatus.DRAFT, ExamStatus.FINISHED, False),
    (ExamStatus.ONGOING, ExamStatus.FINISHED, True),
    (ExamStatus.ONGOING, ExamStatus.DRAFT, False),
    (ExamStatus.FINISHED, ExamStatus.PUBLISHED, True),
    (ExamStatus.FINISHED, ExamStatus.ONGOING, True),
    (ExamStatus.PUBLISHED, ExamStatus.ONGOING, False),
    (ExamStatus.PUBLISHED, ExamStatus.DRAFT, False),
])
def test_transition_table(current, target, allowed):
    assert can_transition(current, target) is allowed


async def test_create_exam_defaults(client, teacher):
    _, headers = teacher
    r = await client.post("/api/exams", json={"title": "UTS Matematika"}, headers=headers)
    assert r.status_code == 201
    body = r.json()
    assert body["success"] is True
    exam = body["data"]
    assert exam["status"] == "DRAFT"
    assert exam["settings"] == {
        "enable_proctoring": True,
        "allow_late_submission": False,
        "shuffle_questions": False,
        "show_results": True,
    }


async def test_student_cannot_create_exam(client, student):
    _, headers = student
    r = await client.post("/api/exams", json={"title": "Nope"}, headers=headers)
    assert r.status_code == 403
    assert r.json() == {"success": False, "error": "Insufficient role", "code": "FORBIDDEN"}


async def test_missing_token_is_unauthorized(client):
    r = await client.get("/api/exams")
    assert r.status_code == 401
    assert r.json()["error"] == "Invalid or expired token"


async def test_start_requires_questions(client, teacher, exam_builder):
    _, headers = teacher
    built = await exam_builder(headers, questions=[])
    r = await client.patch(f"/api/exams/{built['exam_id']}/status", json={"status": "ONGOING"}, headers=headers)
    assert r.status_code == 400
    assert r.json()["error"] == "Cannot start exam without questions"


async def test_full_lifecycle(client, teacher, exam_builder):
    _, headers = teacher
    built = await exam_builder(headers)
    exam_id = built["exam_id"]

    r = await client.post(f"/api/exams/{exam_id}/publish", headers=headers)
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "ONGOING"
    assert r.json()["data"]["start_time"] is not None

    r = await client.patch(f"/api/exams/{exam_id}/status", json={"status": "DRAFT"}, headers=headers)
    assert r.status_code == 400
    assert r.json()["error"] == "Cannot transition from ONGOING to DRAFT"

    r = await client.put(f"/api/exams/{exam_id}", json={"title": "Changed"}, headers=headers)
    assert r.status_code == 400
    assert r.json()["error"] == "Cannot update exam that is currently ONGOING"

    r = await client.delete(f"/api/exams/{exam_id}", headers=headers)
    assert r.status_code == 400

    r = await client.post(f"/api/exams/{exam_id}/end", headers=headers)
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "FINISHED"
    assert r.json()["data"]["end_time"] is not None

    r = await client.put(f"/api/exams/{exam_id}", json={"title": "Renamed"}, headers=headers)
    assert r.status_code == 200
    assert r.json()["data"]["title"] == "Renamed"

    r = await client.patch(f"/api/exams/{exam_id}/status", json={"status": "PUBLISHED"}, headers=headers)
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "PUBLISHED"

    r = await client.patch(f"/api/exams/{exam_id}/status", json={"status": "ONGOING"}, headers=headers)
    assert r.status_code == 400


async def test_start_broadcasts_to_exam_room(app, client, teacher, exam_builder):
    _, headers = teacher
    built = await exam_builder(headers)

    class Socket:
        def __init__(self):
            self.messages = []

        async def send_json(self, data):
            self.messages.append(data)

    socket = Socket()
    app.state.hub.join("exam", socket, f"exam:{built['exam_id']}")

    await client.patch(f"/api/exams/{built['exam_id']}/status", json={"status": "ONGOING"}, headers=headers)
    await client.patch(f"/api/exams/{built['exam_id']}/status", json={"status": "FINISHED"}, headers=headers)

    assert [m["event"] for m in socket.messages] == ["exam:start", "exam:end"]
    assert socket.messages[0]["data"]["exam_id"] == built["exam_id"]
    assert "started_at" in socket.messages[0]["data"]
    assert "ended_at" in socket.messages[1]["data"]


async def test_other_teacher_sees_not_found(client, teacher, make_user, exam_builder):
    _, headers = teacher
    built = await exam_builder(headers)
    _, other = await make_user()
    r = await client.get(f"/api/exams/{built['exam_id']}", headers=other)
    assert r.status_code == 404
    assert r.json()["error"] == "Exam not found"
    r = await client.patch(f"/api/exams/{built['exam_id']}/status", json={"status": "ONGOING"}, headers=other)
    assert r.status_code == 404


async def test_owner_detail_includes_questions_in_order(client, teacher, exam_builder):
    _, headers = teacher
    built = await exam_builder(headers)
    r = await client.get(f"/api/exams/{built['exam_id']}", headers=headers)
    assert r.status_code == 200
    questions = r.json()["data"]["questions"]
    assert [q["id"] for q in questions] == built["question_ids"]
    assert questions[0]["answer_key"] == "A"


async def test_student_view_hides_keys_and_drafts(client, teacher, student, exam_builder):
    _, headers = teacher
    _, student_headers = student
    draft = await exam_builder(headers)
    r = await client.get(f"/api/exams/{draft['exam_id']}", headers=student_headers)
    assert r.status_code == 404

    live = await exam_builder(headers, start=True)
    r = await client.get(f"/api/exams/{live['exam_id']}", headers=student_headers)
    assert r.status_code == 200
    for question in r.json()["data"]["questions"]:
        assert "answer_key" not in question
        assert "rubric" not in question

    r = await client.get("/api/exams", headers=student_headers)
    assert [e["id"] for e in r.json()["data"]] == [live["exam_id"]]


async def test_finished_exam_requires_participation(client, teacher, student, exam_builder):
    _, headers = teacher
    _, student_headers = student
    built = await exam_builder(headers, start=True)
    await client.post(f"/api/exams/{built['exam_id']}/end", headers=headers)
    r = await client.get(f"/api/exams/{built['exam_id']}", headers=student_headers)
    assert r.status_code == 403
    assert r.json()["error"] == "This exam is not available"


async def test_add_questions_checks_ownership_and_ignores_duplicates(client, teacher, make_user, exam_builder):
    _, headers = teacher
    built = await exam_builder(headers)
    exam_id = built["exam_id"]

    r = await client.post(f"/api/exams/{exam_id}/questions",
                          json={"questions": [{"question_id": built["question_ids"][0]}]}, headers=headers)
    assert r.status_code == 200
    assert len(r.json()["data"]) == 2

    _, other = await make_user()
    r = await client.post("/api/questions", json={"type": "PG", "prompt": "x?", "answer_key": "A"}, headers=other)
    foreign_id = r.json()["data"]["id"]
    r = await client.post(f"/api/exams/{exam_id}/questions",
                          json={"questions": [{"question_id": foreign_id}]}, headers=headers)
    assert r.status_code == 404
    assert r.json()["error"] == f"Question {foreign_id} not found"


async def test_remove_question_only_in_draft(client, teacher, exam_builder):
    _, headers = teacher
    built = await exam_builder(headers)
    exam_id, first = built["exam_id"], built["question_ids"][0]
    r = await client.delete(f"/api/exams/{exam_id}/questions/{first}", headers=headers)
    assert r.status_code == 200
    r = await client.delete(f"/api/exams/{exam_id}/questions/{first}", headers=headers)
    assert r.status_code == 404

    await client.post(f"/api/exams/{exam_id}/publish", headers=headers)
    r = await client.delete(f"/api/exams/{exam_id}/questions/{built['question_ids'][1]}", headers=headers)
    assert r.status_code == 400


async def test_list_exams_paginates_and_filters(client, teacher, exam_builder):
    _, headers = teacher
    for _ in range(3):
        await exam_builder(headers, questions=[])
    await exam_builder(headers, start=True)

    r = await client.get("/api/exams", params={"limit": 2}, headers=headers)
    body = r.json()
    assert len(body["data"]) == 2
    assert body["pagination"] == {"page": 1, "limit": 2, "total": 4, "totalPages": 2}

    r = await client.get("/api/exams", params={"status": "ONGOING"}, headers=headers)
    assert r.json()["pagination"]["total"] == 1


async def test_validation_errors_use_envelope(client, teacher):
    _, headers = teacher
    r = await client.post("/api/exams", json={"title": ""}, headers=headers)
    assert r.status_code == 400
    body = r.json()
    assert body["success"] is False
    assert body["error"] == "Validation failed"
    assert body["details"][0]["field"] == "title"


async def test_delete_draft_exam(client, teacher, exam_builder):
    _, headers = teacher
    built = await exam_builder(headers)
    r = await client.delete(f"/api/exams/{built['exam_id']}", headers=headers)
    assert r.status_code == 200
    r = await client.get(f"/api/exams/{built['exam_id']}", headers=headers)
    assert r.status_code == 404


@pytest.mark.parametrize("field", ["title", "settings"])
async def test_update_exam_rejects_null_for_required_fields(client, teacher, exam_builder, field):
    _, headers = teacher
    built = await exam_builder(headers)
    r = await client.put(f"/api/exams/{built['exam_id']}", json={field: None}, headers=headers)
    assert r.status_code == 400
    assert r.json()["details"][0]["field"] == field

    r = await client.get(f"/api/exams/{built['exam_id']}", headers=headers)
    assert r.json()["data"]["title"] == "Ujian IPA"
    assert r.json()["data"]["settings"]["enable_proctoring"] is True


async def test_update_exam_clears_optional_fields(client, teacher, exam_builder):
    _, headers = teacher
    built = await exam_builder(headers)
    r = await client.put(f"/api/exams/{built['exam_id']}", json={"duration": None, "description": None},
                         headers=headers)
    assert r.status_code == 200
    assert r.json()["data"]["duration"] is None


@pytest.mark.parametrize("field", ["type", "prompt", "is_hots"])
async def test_update_question_rejects_null_for_required_fields(client, teacher, exam_builder, field):
    _, headers = teacher
    built = await exam_builder(headers)
    question_id = built["question_ids"][0]
    r = await client.put(f"/api/questions/{question_id}", json={field: None}, headers=headers)
    assert r.status_code == 400
    assert r.json()["details"][0]["field"] == field

    r = await client.put(f"/api/questions/{question_id}", json={"category": None, "difficulty": None},
                         headers=headers)
    assert r.status_code == 200
    assert r.json()["data"]["type"] == "PG"
