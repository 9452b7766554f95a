import json
import logging
from typing import Any, Dict, Optional

import httpx

from examdesk.clients.http import ServiceClient
from examdesk.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)


class EssayScorerClient(ServiceClient):
    """Automated essay scoring. Text answers go straight in; images are OCR'd upstream."""

    service_name = "Essay scorer"

    async def score_text(self, student_answer: str, answer_key: str,
                         rubric: Optional[Dict[str, float]] = None, question: Optional[str] = None) -> Dict[str, Any]:
        response = await self._post("/api/score/text", json={
            "student_answer": student_answer,
            "answer_key": answer_key,
            "rubric": rubric,
            "question": question,
        })
        if not response.get("success"):
            raise ExternalServiceError("AI scoring failed")
        return response["result"]

    async def score_image(self, image_url: str, answer_key: str,
                          rubric: Optional[Dict[str, float]] = None, question: Optional[str] = None) -> Dict[str, Any]:
        """Fetch the answer image and forward it; returns the scoring result."""
        try:
            async with httpx.AsyncClient(timeout=self.client.timeout) as fetcher:
                image = await fetcher.get(image_url)
                image.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"Failed to fetch image: {e}")
        form = {"answer_key": answer_key}
        if question:
            form["question"] = question
        if rubric:
            form["rubric_json"] = json.dumps(rubric)
        response = await self._post(
            "/api/score/image",
            data=form,
            files={"file": ("answer.jpg", image.content, image.headers.get("content-type", "image/jpeg"))},
        )
        result = response.get("scoring_result")
        if not result:
            raise ExternalServiceError(response.get("error") or "AI image scoring failed")
        logger.info("Image essay scored: %s", result.get("score"))
        return result
