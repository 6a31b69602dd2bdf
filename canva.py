"""
Canva design API client.

Thin async wrapper around the Canva Connect REST API used by the
``create_design`` tool.  Without an API key the client hands out local
placeholder ids (``demo-<uuid>``) so the tool stays usable offline.
"""

import logging
import os
import uuid

import httpx
from pydantic import BaseModel

from errors import RemoteApiError

log = logging.getLogger("affinity_mcp.canva")

API_BASE = os.environ.get("CANVA_API_BASE", "https://api.canva.com/rest/v1")
DEFAULT_PRESET = "doc"


def _default_api_key() -> str | None:
    return os.environ.get("AFFINITY_MCP_API_KEY") or os.environ.get("CANVA_API_KEY") or None


class CreateDesignResult(BaseModel):
    design_id: str
    url: str | None = None


class CanvaClient:
    def __init__(
        self,
        api_key: str | None = None,
        *,
        base_url: str = API_BASE,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self.api_key = api_key if api_key is not None else _default_api_key()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    @staticmethod
    def _design_payload(title: str, template_id: str | None, width: int | None, height: int | None) -> dict:
        if width and height:
            design_type = {"type": "custom", "width": width, "height": height}
        else:
            design_type = {"type": "preset", "name": DEFAULT_PRESET}
        payload = {"title": title, "design_type": design_type}
        if template_id:
            payload["brand_template_id"] = template_id
        return payload

    async def create_design(
        self,
        title: str,
        template_id: str | None = None,
        width: int | None = None,
        height: int | None = None,
    ) -> CreateDesignResult:
        """Create a design and return its id and edit URL."""
        if not self.api_key:
            design_id = f"demo-{uuid.uuid4()}"
            log.debug("No Canva API key configured; returning placeholder %s", design_id)
            return CreateDesignResult(design_id=design_id)

        client = await self._get_http_client()
        try:
            response = await client.post(
                f"{self.base_url}/designs",
                json=self._design_payload(title, template_id, width, height),
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as e:
            raise RemoteApiError(f"Canva request failed: {e}") from e

        if response.status_code >= 400:
            try:
                message = response.json().get("message") or response.text
            except (ValueError, AttributeError):
                message = response.text
            raise RemoteApiError(
                f"Canva API returned {response.status_code}: {message}",
                status_code=response.status_code,
            )

        try:
            design = response.json()["design"]
            design_id = str(design["id"])
        except (ValueError, KeyError, TypeError):
            raise RemoteApiError("Canva API returned an unexpected payload", status_code=response.status_code)

        urls = design.get("urls") or {}
        return CreateDesignResult(design_id=design_id, url=urls.get("edit_url") or design.get("url"))
