"""
OCR/LLM analysis backend.

The pipeline only needs `analyze(image_bytes, mime_type) -> ExtractedMetadata`.
Network, quota and server errors surface as TransientBackendError so the job
queue retries them with backoff.
"""

import time
from abc import ABC, abstractmethod
from typing import Optional

import httpx
import structlog
from pydantic import ValidationError as PydanticValidationError

from smart_upload.config import settings
from smart_upload.errors import ExtractionError, TransientBackendError
from smart_upload.observability import metrics
from smart_upload.schemas.metadata import ExtractedMetadata

logger = structlog.get_logger(__name__)


class AnalysisBackend(ABC):
    """Turns one page image into partial structured metadata."""

    name = "backend"

    @abstractmethod
    async def analyze(self, image_bytes: bytes, mime_type: str) -> ExtractedMetadata:
        ...

    async def close(self) -> None:
        return None


class StubAnalysisBackend(AnalysisBackend):
    """Returns empty metadata. Lets the pipeline run without an AI provider."""

    name = "stub"

    async def analyze(self, image_bytes: bytes, mime_type: str) -> ExtractedMetadata:
        return ExtractedMetadata(source=self.name)


class HttpAnalysisBackend(AnalysisBackend):
    """
    Posts the page image to an HTTP analysis service and parses the JSON
    answer as ExtractedMetadata.

    429 and 5xx responses, timeouts and connection errors are transient;
    other 4xx responses and unparseable bodies are extraction errors.
    """

    name = "http"

    def __init__(
        self,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = endpoint or settings.ANALYSIS_ENDPOINT
        if not self.endpoint:
            raise ValueError("ANALYSIS_ENDPOINT is required for the http analysis backend")
        headers = {}
        key = api_key or settings.ANALYSIS_API_KEY
        if key:
            headers["Authorization"] = f"Bearer {key}"
        self._client = httpx.AsyncClient(
            timeout=timeout or settings.ANALYSIS_TIMEOUT_SECONDS,
            headers=headers,
            transport=transport,
        )

    async def analyze(self, image_bytes: bytes, mime_type: str) -> ExtractedMetadata:
        started = time.perf_counter()
        try:
            response = await self._client.post(
                self.endpoint,
                files={"file": ("page", image_bytes, mime_type)},
            )
        except httpx.TimeoutException as e:
            raise TransientBackendError(f"Analysis backend timed out: {e}") from e
        except httpx.RequestError as e:
            raise TransientBackendError(f"Analysis backend unreachable: {e}") from e
        finally:
            metrics.analysis_latency_seconds.labels(backend=self.name).observe(
                time.perf_counter() - started
            )

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning("analysis_backend_unavailable", status_code=response.status_code)
            raise TransientBackendError(
                f"Analysis backend returned HTTP {response.status_code}: {response.text[:200]}"
            )
        if response.status_code >= 400:
            raise ExtractionError(
                f"Analysis backend rejected the page: HTTP {response.status_code}: {response.text[:200]}"
            )

        try:
            result = ExtractedMetadata.model_validate(response.json())
        except (ValueError, PydanticValidationError) as e:
            raise ExtractionError(f"Unparseable analysis response: {e}") from e

        result.source = result.source or self.name
        logger.info(
            "page_analyzed",
            backend=self.name,
            title_confidence=result.title_confidence,
            part_labels=len(result.part_labels),
            cutting_instructions=len(result.cutting_instructions),
        )
        return result

    async def close(self) -> None:
        await self._client.aclose()


def build_analysis_backend(kind: Optional[str] = None) -> AnalysisBackend:
    kind = kind or settings.ANALYSIS_BACKEND
    if kind == "http":
        return HttpAnalysisBackend()
    if kind == "stub":
        return StubAnalysisBackend()
    raise ValueError(f"Unknown analysis backend: {kind}")
