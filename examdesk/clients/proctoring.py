import logging
from typing import Any, Dict, List

from examdesk.clients.http import ServiceClient
from examdesk.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)


class ProctoringClient(ServiceClient):
    """Cheating-detection service: sessions and browser events."""

    service_name = "Proctoring service"

    async def start_session(self, student_id: str, exam_id: str, student_name: str, exam_name: str) -> str:
        logger.info("Starting proctoring session for student %s exam %s", student_id, exam_id)
        response = await self._post("/api/sessions/start", json={
            "student_id": student_id,
            "exam_id": exam_id,
            "student_name": student_name,
            "exam_name": exam_name,
        })
        session_id = response.get("session_id") if isinstance(response, dict) else response
        if not session_id:
            raise ExternalServiceError("Proctoring service returned no session id")
        return str(session_id)

    async def end_session(self, session_id: str) -> None:
        logger.info("Ending proctoring session %s", session_id)
        await self._post(f"/api/sessions/{session_id}/end")

    async def get_session(self, session_id: str) -> Dict[str, Any]:
        return await self._get(f"/api/sessions/{session_id}")

    async def get_session_events(self, session_id: str) -> List[Dict[str, Any]]:
        return await self._get(f"/api/sessions/{session_id}/events")

    async def report_browser_event(self, session_id: str, event_type: str, details: Dict[str, Any]) -> None:
        await self._post("/api/browser-event", json={
            "session_id": session_id,
            "event_type": event_type,
            "details": details,
        })
