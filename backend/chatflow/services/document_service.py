# /chatflow/services/document_service.py

import httpx
import logging
import tenacity
from typing import Any, Dict, Optional

from chatflow.config.settings import settings
from chatflow.errors import CollaboratorError

# Client for the external document renderer. The renderer accepts a template
# name plus data and answers with a URL to the generated file (e.g. a PDF
# order receipt); rendering itself happens outside this service.

logger = logging.getLogger(__name__)


class DocumentService:
    def __init__(self, renderer_url: Optional[str]):
        self.renderer_url = renderer_url.rstrip("/") if renderer_url else None
        self.http_client = httpx.AsyncClient(timeout=20.0)

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=1, min=1, max=5),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _render(self, payload: Dict[str, Any]) -> httpx.Response:
        return await self.http_client.post(f"{self.renderer_url}/render", json=payload)

    async def generate(self, template: str, data: Dict[str, Any]) -> str:
        if not self.renderer_url:
            raise CollaboratorError("documents", "DOCUMENT_RENDERER_URL is not configured")
        try:
            response = await self._render({"template": template, "data": data})
            response.raise_for_status()
            url = response.json().get("url")
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Document rendering failed for template '{template}': {e}")
            raise CollaboratorError("documents", str(e)) from e
        if not url:
            raise CollaboratorError("documents", "renderer returned no file URL")
        logger.info(f"Document '{template}' rendered: {url}")
        return url

    async def cleanup(self):
        await self.http_client.aclose()


# Globally accessible instance
document_service = DocumentService(settings.document_renderer_url)
