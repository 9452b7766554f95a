import logging
from typing import Any, Dict, List

from cachetools import TTLCache

from examdesk.clients.http import ServiceClient

logger = logging.getLogger(__name__)


class MaterialGeneratorClient(ServiceClient):
    """Client for the document generator (slides, lesson plans, worksheets, question sets)."""

    service_name = "Material generator"

    def __init__(self, base_url: str, timeout: float = 60.0, template_ttl: int = 300, transport=None):
        super().__init__(base_url, timeout, transport)
        self._templates: TTLCache = TTLCache(maxsize=1, ttl=template_ttl)

    async def get_templates(self) -> List[Dict[str, Any]]:
        if "templates" not in self._templates:
            response = await self._get("/api/templates")
            self._templates["templates"] = response.get("templates", [])
        return self._templates["templates"]

    async def generate_ppt(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        logger.info("Generating PPT for topic %s", payload.get("topic"))
        return await self._post("/api/generate/ppt", json=payload)

    async def generate_rpp(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        logger.info("Generating RPP for topic %s", payload.get("topic"))
        return await self._post("/api/generate/rpp", json=payload)

    async def generate_lkpd(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        logger.info("Generating LKPD for topic %s", payload.get("topik_lkpd"))
        return await self._post("/api/generate/lkpd", json=payload)

    async def generate_questions(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        logger.info("Generating %s questions for topic %s", payload.get("jumlah_soal"), payload.get("topic"))
        return await self._post("/api/generate/questions", json=payload)
