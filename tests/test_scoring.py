import asyncio
import uuid

import pytest
from sqlalchemy import select

from examdesk.models.orm import (
    Answer, AnswerStatus, ExamParticipant, ExamStatistic, ParticipantStatus, ScoringJob, ScoringJobStatus, UserRole,
)
from examdesk.services.scoring import score_multiple_choice


@pytest.mark.parametrize("submitted,key,expected", [
    ("A", "A", 100.0),
    (" a ", "A", 100.0),
    ("Jakarta", "jakarta ", 100.0),
    ("B", "A", 0.0),
    (None, "A", 0.0),
    ("", "A", 0.0),
])
def test_score_multiple_choice(submitted, key, expected):
    assert score_multiple_choice(submitted, key) == expected


@pytest.fixture
def sit_exam(client, exam_builder):
    """Join, answer and finish as the given student."""

    async def _sit(student_headers, exam_id, answers):
        await client.post(f"/api/exams/{exam_id}/join", headers=student_headers)
        if answers:
            r = await client.post(f"/api/exams/{exam_id}/submit-batch", json={"answers": answers},
                                  headers=student_headers)
            assert r.status_code == 200, r.text
        r = await client.post(f"/api/exams/{exam_id}/finish", headers=student_headers)
        assert r.status_code == 200, r.text
        return r.json()["data"]["id"]

    return _sit


async def _trigger_and_wait(app, client, headers, exam_id, json=None):
    r = await client.post(f"/api/scoring/exams/{exam_id}/trigger", json=json, headers=headers)
    assert r.status_code == 202, r.text
    await app.state.scoring.drain()
    return r.json()["data"]


async def test_pg_and_essay_scoring_flow(app, client, session_factory, teacher, student, exam_builder, sit_exam):
    _, headers = teacher
    _, student_headers = student
    built = await exam_builder(headers, start=True)
    exam_id = built["exam_id"]
    pg, essay = built["question_ids"]
    participant_id = await sit_exam(student_headers, exam_id, [
        {"question_id": pg, "answer_text": " a "},
        {"question_id": essay, "answer_text": "Air menguap lalu mengembun"},
    ])

    data = await _trigger_and_wait(app, client, headers, exam_id)
    assert data == {"triggered": 1, "jobs": [{"participant_id": participant_id, "status": "pending"}]}

    async with session_factory() as session:
        answers = {a.question_id: a for a in (await session.scalars(select(Answer))).all()}
        pg_answer, essay_answer = answers[uuid.UUID(pg)], answers[uuid.UUID(essay)]
        assert pg_answer.final_score == 100.0
        assert pg_answer.ai_score == 100.0
        assert pg_answer.status == AnswerStatus.SCORED
        assert essay_answer.final_score == 80.0
        assert essay_answer.feedback == "Good work"
        assert essay_answer.feedback_detail["strengths"] == ["clear"]
        assert essay_answer.feedback_detail["needs_manual_review"] is False

        participant = await session.get(ExamParticipant, uuid.UUID(participant_id))
        assert participant.score == 90.0
        assert participant.status == ParticipantStatus.SCORED

        job = await session.scalar(select(ScoringJob))
        assert job.status == ScoringJobStatus.DONE
        assert job.attempts == 1

        stats = await session.get(ExamStatistic, uuid.UUID(exam_id))
        assert stats.avg_score == 90.0
        assert stats.scored_count == 1
        assert stats.submitted_count == 1

    r = await client.get(f"/api/scoring/exams/{exam_id}/status", headers=headers)
    assert r.json()["data"] == {"pending": 0, "processing": 0, "done": 1, "failed": 0}


async def test_wrong_answer_and_fallback(app, client, session_factory, teacher, student, exam_builder, sit_exam,
                                         fakes):
    _, headers = teacher
    _, student_headers = student
    built = await exam_builder(headers, start=True)
    exam_id = built["exam_id"]
    pg, essay = built["question_ids"]
    participant_id = await sit_exam(student_headers, exam_id, [
        {"question_id": pg, "answer_text": "B"},
        {"question_id": essay, "answer_text": "Tidak tahu"},
    ])
    fakes["scorer"].fail = True

    await _trigger_and_wait(app, client, headers, exam_id)

    async with session_factory() as session:
        essay_answer = await session.scalar(select(Answer).where(Answer.question_id == uuid.UUID(essay)))
        assert essay_answer.final_score == 50.0
        assert essay_answer.feedback_detail["needs_manual_review"] is True
        participant = await session.get(ExamParticipant, uuid.UUID(participant_id))
        assert participant.score == 25.0


async def test_image_answers_use_image_scoring(app, client, teacher, student, exam_builder, sit_exam, fakes):
    _, headers = teacher
    _, student_headers = student
    built = await exam_builder(headers, start=True)
    essay = built["question_ids"][1]
    await sit_exam(student_headers, built["exam_id"], [
        {"question_id": essay, "answer_file_url": "https://storage.test/answers/photo.jpg"},
    ])
    await _trigger_and_wait(app, client, headers, built["exam_id"])
    assert fakes["scorer"].calls == [("image", "https://storage.test/answers/photo.jpg")]


async def test_pg_without_key_waits_for_teacher(app, client, session_factory, teacher, student, exam_builder,
                                                sit_exam):
    _, headers = teacher
    _, student_headers = student
    built = await exam_builder(headers, start=True, questions=[
        {"type": "PG", "prompt": "Tanpa kunci?", "options": {"A": "Ya", "B": "Tidak"}},
        {"type": "PG", "prompt": "1 + 1?", "options": {"A": "2", "B": "3"}, "answer_key": "A"},
    ])
    keyless, keyed = built["question_ids"]
    participant_id = await sit_exam(student_headers, built["exam_id"], [
        {"question_id": keyless, "answer_text": "A"},
        {"question_id": keyed, "answer_text": "A"},
    ])
    await _trigger_and_wait(app, client, headers, built["exam_id"])

    async with session_factory() as session:
        pending = await session.scalar(select(Answer).where(Answer.question_id == uuid.UUID(keyless)))
        assert pending.status == AnswerStatus.PENDING
        assert pending.final_score is None
        participant = await session.get(ExamParticipant, uuid.UUID(participant_id))
        assert participant.score == 100.0


async def test_trigger_skips_unsubmitted_and_filters_ids(app, client, session_factory, make_user, teacher,
                                                         exam_builder, sit_exam):
    _, headers = teacher
    built = await exam_builder(headers, start=True)
    exam_id, pg = built["exam_id"], built["question_ids"][0]

    _, first = await make_user(UserRole.MURID)
    _, second = await make_user(UserRole.MURID)
    _, still_working = await make_user(UserRole.MURID)
    first_id = await sit_exam(first, exam_id, [{"question_id": pg, "answer_text": "A"}])
    await sit_exam(second, exam_id, [{"question_id": pg, "answer_text": "B"}])
    await client.post(f"/api/exams/{exam_id}/join", headers=still_working)

    data = await _trigger_and_wait(app, client, headers, exam_id, json={"participant_ids": [first_id]})
    assert data["triggered"] == 1

    data = await _trigger_and_wait(app, client, headers, exam_id)
    assert data["triggered"] == 2

    async with session_factory() as session:
        stats = await session.get(ExamStatistic, uuid.UUID(exam_id))
        assert stats.total_participants == 3
        assert stats.submitted_count == 2
        assert stats.scored_count == 2
        assert stats.max_score == 100.0
        assert stats.min_score == 0.0
        assert stats.avg_score == 50.0


async def test_trigger_with_no_submissions(client, teacher, exam_builder):
    _, headers = teacher
    built = await exam_builder(headers, start=True)
    r = await client.post(f"/api/scoring/exams/{built['exam_id']}/trigger", headers=headers)
    assert r.status_code == 202
    assert r.json()["data"] == {"triggered": 0, "jobs": []}


async def test_trigger_requires_ownership(client, teacher, make_user, exam_builder):
    _, headers = teacher
    built = await exam_builder(headers, start=True)
    _, other = await make_user()
    r = await client.post(f"/api/scoring/exams/{built['exam_id']}/trigger", headers=other)
    assert r.status_code == 404


async def test_failed_job_does_not_stop_others(app, client, session_factory, make_user, teacher, exam_builder,
                                               sit_exam, fakes):
    _, headers = teacher
    built = await exam_builder(headers, start=True)
    exam_id, essay = built["exam_id"], built["question_ids"][1]
    _, first = await make_user(UserRole.MURID)
    _, second = await make_user(UserRole.MURID)
    broken_id = await sit_exam(first, exam_id, [{"question_id": essay, "answer_text": "explode"}])
    healthy_id = await sit_exam(second, exam_id, [{"question_id": essay, "answer_text": "fine"}])

    original = fakes["scorer"].score_text

    async def flaky(student_answer, *args, **kwargs):
        if student_answer == "explode":
            raise RuntimeError("scorer crashed")
        return await original(student_answer, *args, **kwargs)

    fakes["scorer"].score_text = flaky
    await _trigger_and_wait(app, client, headers, exam_id)

    async with session_factory() as session:
        jobs = {job.participant_id: job for job in (await session.scalars(select(ScoringJob))).all()}
        assert jobs[uuid.UUID(broken_id)].status == ScoringJobStatus.FAILED
        assert "scorer crashed" in jobs[uuid.UUID(broken_id)].error
        assert jobs[uuid.UUID(healthy_id)].status == ScoringJobStatus.DONE
        healthy = await session.get(ExamParticipant, uuid.UUID(healthy_id))
        assert healthy.score == 80.0

    r = await client.get(f"/api/scoring/exams/{exam_id}/status", headers=headers)
    assert r.json()["data"]["failed"] == 1
    assert r.json()["data"]["done"] == 1


async def test_resume_picks_up_pending_jobs(app, session_factory, client, teacher, student, exam_builder, sit_exam):
    _, headers = teacher
    _, student_headers = student
    built = await exam_builder(headers, start=True)
    exam_id = built["exam_id"]
    participant_id = await sit_exam(student_headers, exam_id, [
        {"question_id": built["question_ids"][0], "answer_text": "A"},
    ])
    async with session_factory() as session:
        session.add(ScoringJob(exam_id=uuid.UUID(exam_id), participant_id=uuid.UUID(participant_id),
                               status=ScoringJobStatus.PROCESSING, attempts=1))
        await session.commit()

    assert await app.state.scoring.resume() == 1
    await app.state.scoring.drain()

    async with session_factory() as session:
        job = await session.scalar(select(ScoringJob))
        assert job.status == ScoringJobStatus.DONE
        assert job.attempts == 2
        participant = await session.get(ExamParticipant, uuid.UUID(participant_id))
        assert participant.score == 100.0


async def test_override_recomputes_aggregates(app, client, session_factory, teacher, student, exam_builder,
                                              sit_exam):
    _, headers = teacher
    _, student_headers = student
    built = await exam_builder(headers, start=True)
    exam_id = built["exam_id"]
    pg, essay = built["question_ids"]
    participant_id = await sit_exam(student_headers, exam_id, [
        {"question_id": pg, "answer_text": "A"},
        {"question_id": essay, "answer_text": "Jawaban"},
    ])
    await _trigger_and_wait(app, client, headers, exam_id)

    r = await client.get(f"/api/scoring/exams/{exam_id}/participants/{participant_id}", headers=headers)
    answers = {a["question_id"]: a for a in r.json()["data"]["answers"]}
    essay_answer_id = answers[essay]["id"]

    r = await client.put(f"/api/scoring/answers/{essay_answer_id}",
                         json={"final_score": 60, "feedback": "Kurang lengkap"}, headers=headers)
    assert r.status_code == 200
    assert r.json()["data"]["final_score"] == 60
    assert r.json()["data"]["ai_score"] == 80

    async with session_factory() as session:
        participant = await session.get(ExamParticipant, uuid.UUID(participant_id))
        assert participant.score == 80.0
        stats = await session.get(ExamStatistic, uuid.UUID(exam_id))
        assert stats.avg_score == 80.0

    r = await client.get(f"/api/scoring/exams/{exam_id}", headers=headers)
    data = r.json()["data"]
    assert data["statistics"]["average"] == 80.0
    assert data["participants"][0]["student_name"] == "Andi"


async def test_override_rules(app, client, make_user, teacher, student, exam_builder, sit_exam):
    _, headers = teacher
    _, student_headers = student
    built = await exam_builder(headers, start=True)
    exam_id = built["exam_id"]
    participant_id = await sit_exam(student_headers, exam_id, [
        {"question_id": built["question_ids"][0], "answer_text": "A"},
    ])
    r = await client.get(f"/api/scoring/exams/{exam_id}/participants/{participant_id}", headers=headers)
    answer_id = r.json()["data"]["answers"][0]["id"]

    r = await client.put(f"/api/scoring/answers/{answer_id}", json={"final_score": 101}, headers=headers)
    assert r.status_code == 400

    _, other = await make_user()
    r = await client.put(f"/api/scoring/answers/{answer_id}", json={"final_score": 10}, headers=other)
    assert r.status_code == 403

    r = await client.put(f"/api/scoring/answers/{uuid.uuid4()}", json={"final_score": 10}, headers=headers)
    assert r.status_code == 404


async def test_participant_from_other_exam_is_not_found(client, teacher, student, exam_builder, sit_exam):
    _, headers = teacher
    _, student_headers = student
    first = await exam_builder(headers, start=True)
    second = await exam_builder(headers, start=True)
    participant_id = await sit_exam(student_headers, first["exam_id"], [])
    r = await client.get(f"/api/scoring/exams/{second['exam_id']}/participants/{participant_id}", headers=headers)
    assert r.status_code == 404


async def test_retrigger_while_processing_leaves_the_running_job(app, client, session_factory, teacher, student,
                                                                 exam_builder, sit_exam, fakes):
    _, headers = teacher
    _, student_headers = student
    built = await exam_builder(headers, start=True)
    exam_id, essay = built["exam_id"], built["question_ids"][1]
    participant_id = await sit_exam(student_headers, exam_id, [{"question_id": essay, "answer_text": "Jawaban"}])

    entered, release = asyncio.Event(), asyncio.Event()
    original = fakes["scorer"].score_text

    async def slow(*args, **kwargs):
        entered.set()
        await release.wait()
        return await original(*args, **kwargs)

    fakes["scorer"].score_text = slow
    r = await client.post(f"/api/scoring/exams/{exam_id}/trigger", headers=headers)
    assert r.json()["data"]["triggered"] == 1
    await asyncio.wait_for(entered.wait(), timeout=5)

    r = await client.post(f"/api/scoring/exams/{exam_id}/trigger", headers=headers)
    assert r.status_code == 202
    assert r.json()["data"] == {"triggered": 0, "jobs": [{"participant_id": participant_id, "status": "processing"}]}

    release.set()
    await app.state.scoring.drain()

    assert fakes["scorer"].calls == [("text", "Jawaban")]
    async with session_factory() as session:
        job = await session.scalar(select(ScoringJob))
        assert job.status == ScoringJobStatus.DONE
        assert job.attempts == 1


async def test_retrigger_after_done_runs_again(app, client, session_factory, teacher, student, exam_builder,
                                               sit_exam):
    _, headers = teacher
    _, student_headers = student
    built = await exam_builder(headers, start=True)
    await sit_exam(student_headers, built["exam_id"], [{"question_id": built["question_ids"][0], "answer_text": "A"}])

    await _trigger_and_wait(app, client, headers, built["exam_id"])
    data = await _trigger_and_wait(app, client, headers, built["exam_id"])
    assert data["triggered"] == 1

    async with session_factory() as session:
        job = await session.scalar(select(ScoringJob))
        assert job.status == ScoringJobStatus.DONE
        assert job.attempts == 2


async def test_status_requires_ownership(client, teacher, make_user, exam_builder):
    _, headers = teacher
    built = await exam_builder(headers, start=True)
    _, other = await make_user()
    r = await client.get(f"/api/scoring/exams/{built['exam_id']}/status", headers=other)
    assert r.status_code == 404


async def test_two_pg_and_an_essay_average(app, client, session_factory, teacher, student, exam_builder, sit_exam):
    _, headers = teacher
    _, student_headers = student
    built = await exam_builder(headers, start=True, questions=[
        {"type": "PG", "prompt": "Ibu kota Jawa Barat?", "options": {"A": "Semarang", "B": "Bandung"},
         "answer_key": "B"},
        {"type": "PG", "prompt": "Gunung tertinggi di Jawa?", "options": {"A": "Merapi", "C": "Semeru"},
         "answer_key": "C"},
        {"type": "ESSAY", "prompt": "Jelaskan fotosintesis.", "answer_key": "Cahaya diubah menjadi energi kimia",
         "rubric": {"isi": 1.0}},
    ])
    first, second, essay = built["question_ids"]
    participant_id = await sit_exam(student_headers, built["exam_id"], [
        {"question_id": first, "answer_text": "B"},
        {"question_id": second, "answer_text": "A"},
        {"question_id": essay, "answer_text": "Tumbuhan memakai cahaya matahari"},
    ])
    await _trigger_and_wait(app, client, headers, built["exam_id"])

    async with session_factory() as session:
        scores = {a.question_id: a.final_score for a in (await session.scalars(select(Answer))).all()}
        assert scores == {uuid.UUID(first): 100.0, uuid.UUID(second): 0.0, uuid.UUID(essay): 80.0}
        participant = await session.get(ExamParticipant, uuid.UUID(participant_id))
        assert participant.score == pytest.approx(60.0)
