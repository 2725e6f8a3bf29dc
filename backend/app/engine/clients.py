"""
HTTP clients for the extraction / classification / splitting services and
the outbound HTTP node.

The AI services are plain JSON-over-HTTP endpoints; each client posts the
document reference plus its definition and expects a JSON answer.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

import httpx

from app.core.config import settings
from app.core.logging import get_logger
from app.engine.errors import ExternalServiceError
from app.engine.interfaces import DocumentRecord

logger = get_logger(__name__)


class ServiceClient:
    """Authenticated JSON POSTs to one service endpoint."""

    def __init__(self, url: str, api_key: str = "", timeout: int | None = None) -> None:
        self.url = url
        self.api_key = api_key
        self.timeout = timeout or settings.SERVICE_TIMEOUT

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, payload: dict[str, Any]) -> Any:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, headers=self._headers(), json=payload)
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"Service call to {self.url} failed: {exc}") from exc

        if response.status_code >= 400:
            raise ExternalServiceError(
                f"Service {self.url} returned {response.status_code}",
                status_code=response.status_code,
                response_body=response.text[:2000],
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ExternalServiceError(
                f"Service {self.url} returned invalid JSON",
                status_code=response.status_code,
                response_body=response.text[:2000],
            ) from exc


class ExtractionClient(ServiceClient):
    async def extract(self, document: DocumentRecord, schema: dict[str, Any]) -> dict[str, Any]:
        data = await self._post({"document": asdict(document), "schema": schema})
        return {
            "header": (data or {}).get("header") or {},
            "tables": (data or {}).get("tables") or {},
        }


class ClassificationClient(ServiceClient):
    async def classify(self, document: DocumentRecord, labels: list[dict[str, Any]]) -> str:
        data = await self._post({"document": asdict(document), "labels": labels})
        label = (data or {}).get("label")
        if not label:
            raise ExternalServiceError("Classification service returned no label")
        return str(label)


class SplittingClient(ServiceClient):
    async def split(self, document: DocumentRecord, instructions: Any) -> list[dict[str, Any]]:
        data = await self._post({"document": asdict(document), "instructions": instructions})
        parts = (data or {}).get("documents")
        if not isinstance(parts, list):
            raise ExternalServiceError("Splitting service returned no document list")
        return parts


class HttpxClient:
    """Backs the HTTP node; returns the status and a decoded body."""

    def __init__(self, timeout: int | None = None) -> None:
        self.timeout = timeout or settings.HTTP_NODE_TIMEOUT

    async def request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        body: Any = None,
    ) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.request(
                method,
                url,
                headers=headers or None,
                json=body if method not in ("GET", "DELETE") else None,
            )

        try:
            payload: Any = response.json()
        except ValueError:
            payload = response.text

        logger.debug("HTTP node response", url=url, status=response.status_code)
        return {"status": response.status_code, "body": payload}


def build_service_clients() -> dict[str, Any]:
    """Default service clients from settings, keyed by Collaborators field."""
    return {
        "extraction": ExtractionClient(settings.EXTRACTION_SERVICE_URL, settings.SERVICE_API_KEY),
        "classification": ClassificationClient(settings.CLASSIFICATION_SERVICE_URL, settings.SERVICE_API_KEY),
        "splitting": SplittingClient(settings.SPLITTING_SERVICE_URL, settings.SERVICE_API_KEY),
        "http": HttpxClient(),
    }
