import json

import httpx
import pytest
from botocore.stub import Stubber
from pydantic import SecretStr

from examdesk.clients.essay_scorer import EssayScorerClient
from examdesk.clients.material_generator import MaterialGeneratorClient
from examdesk.clients.proctoring import ProctoringClient
from examdesk.clients.storage import ObjectStorage
from examdesk.core.errors import ExternalServiceError


class Recorder:
    """MockTransport handler replaying canned responses and keeping the requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return httpx.Response(status, json=body)


async def test_templates_are_cached():
    handler = Recorder((200, {"templates": [{"id": "minimalis"}]}))
    client = MaterialGeneratorClient("http://generator.test", transport=httpx.MockTransport(handler))
    assert await client.get_templates() == [{"id": "minimalis"}]
    assert await client.get_templates() == [{"id": "minimalis"}]
    assert len(handler.requests) == 1
    await client.close()


async def test_get_retries_then_succeeds():
    handler = Recorder((503, {}), (200, {"session_id": "s1", "status": "active"}))
    client = ProctoringClient("http://proctoring.test", transport=httpx.MockTransport(handler))
    assert await client.get_session("s1") == {"session_id": "s1", "status": "active"}
    assert len(handler.requests) == 2
    await client.close()


async def test_post_is_not_retried():
    handler = Recorder((500, {"error": "boom"}))
    client = MaterialGeneratorClient("http://generator.test", transport=httpx.MockTransport(handler))
    with pytest.raises(ExternalServiceError) as exc:
        await client.generate_ppt({"topic": "Tata Surya"})
    assert exc.value.message == "Material generator error: 500"
    assert len(handler.requests) == 1
    assert json.loads(handler.requests[0].content) == {"topic": "Tata Surya"}
    await client.close()


async def test_start_session_requires_an_id():
    handler = Recorder((200, {"session_id": "abc"}), (200, {}))
    client = ProctoringClient("http://proctoring.test", transport=httpx.MockTransport(handler))
    assert await client.start_session("u1", "e1", "Andi", "UTS") == "abc"
    with pytest.raises(ExternalServiceError):
        await client.start_session("u1", "e1", "Andi", "UTS")
    await client.close()


async def test_score_text_unwraps_result():
    handler = Recorder((200, {"success": True, "result": {"score": 72}}), (200, {"success": False}))
    client = EssayScorerClient("http://scorer.test", transport=httpx.MockTransport(handler))
    assert await client.score_text("jawaban", "kunci", {"isi": 1.0}, "soal") == {"score": 72}
    body = json.loads(handler.requests[0].content)
    assert body == {"student_answer": "jawaban", "answer_key": "kunci", "rubric": {"isi": 1.0}, "question": "soal"}
    with pytest.raises(ExternalServiceError):
        await client.score_text("jawaban", "kunci")
    await client.close()


async def test_unreachable_service():
    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    client = ProctoringClient("http://proctoring.test", transport=httpx.MockTransport(refuse))
    with pytest.raises(ExternalServiceError) as exc:
        await client.report_browser_event("s1", "TAB_SWITCH", {})
    assert exc.value.message == "Proctoring service unreachable"
    await client.close()


def test_storage_keys_and_urls(settings):
    key = ObjectStorage.build_key("answers/e1", "Foto.JPG")
    assert key.startswith("answers/e1/")
    assert key.endswith(".jpg")
    assert ObjectStorage.build_key("answers/e1", "noext").count(".") == 0

    storage = ObjectStorage(settings.model_copy(update={"S3_ENDPOINT_URL": "http://minio.test:9000/"}))
    assert storage.public_url("a/b.png") == f"http://minio.test:9000/{settings.S3_BUCKET_NAME}/a/b.png"


@pytest.fixture
def s3_storage(settings):
    storage = ObjectStorage(settings.model_copy(update={
        "S3_ENDPOINT_URL": "http://minio.test:9000",
        "S3_ACCESS_KEY_ID": "minio",
        "S3_SECRET_ACCESS_KEY": SecretStr("minio-secret"),
    }))
    yield storage
    storage.s3_client.close()


async def test_storage_exists(s3_storage):
    params = {"Bucket": s3_storage.bucket, "Key": "answers/e1/a.png"}
    with Stubber(s3_storage.s3_client) as stub:
        stub.add_response("head_object", {"ContentLength": 3}, params)
        stub.add_client_error("head_object", service_error_code="404", http_status_code=404)
        stub.add_client_error("head_object", service_error_code="AccessDenied", http_status_code=403)
        assert await s3_storage.exists("answers/e1/a.png") is True
        assert await s3_storage.exists("answers/e1/missing.png") is False
        with pytest.raises(ExternalServiceError):
            await s3_storage.exists("answers/e1/a.png")
        stub.assert_no_pending_responses()


async def test_storage_delete(s3_storage):
    with Stubber(s3_storage.s3_client) as stub:
        stub.add_response("delete_object", {}, {"Bucket": s3_storage.bucket, "Key": "materials/m1.pptx"})
        stub.add_client_error("delete_object", service_error_code="AccessDenied", http_status_code=403)
        await s3_storage.delete("materials/m1.pptx")
        with pytest.raises(ExternalServiceError) as exc:
            await s3_storage.delete("materials/m1.pptx")
        assert exc.value.message == "File delete failed"
        stub.assert_no_pending_responses()


async def test_storage_signed_url(s3_storage):
    url = await s3_storage.signed_url("answers/e1/a.png", expires=60)
    assert url.startswith("http://")
    assert "minio.test:9000" in url
    assert "answers/e1/a.png?" in url
    assert "Signature" in url
