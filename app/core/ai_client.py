import asyncio
from typing import Dict, Any, Optional, List

import httpx
from httpx import TimeoutException, HTTPStatusError

from app.core.config import settings
from app.core.exceptions import APIClientError, APITimeoutError, ConfigurationError
from app.schemas.ai_service import (
    CaseInsightsResponse,
    DocumentExtractResponse,
    EmbeddingResponse,
    RegulationExtractResponse,
)
from app.utils.logging import get_logger

LOGGER = get_logger(__name__)


class BaseServiceClient:
    """Base client for HTTP/JSON service interactions.

    Handles common logic for HTTP requests, retries, timeout management,
    and error logging.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 60,
        max_retries: int = 3,
        retry_delay: float = 2
    ):
        """Initialize the client.

        Args:
            base_url: Base URL for the API
            timeout: Request timeout in seconds
            max_retries: Maximum number of attempts
            retry_delay: Base delay for exponential backoff
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.logger = LOGGER

    async def call_api(
        self,
        endpoint: str = "",
        method: str = "POST",
        payload: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        """Call the API with retry logic.

        Args:
            endpoint: API endpoint (appended to base_url)
            method: HTTP method (POST, GET, etc.)
            payload: JSON payload
            files: Multipart files; when set the request is sent as form data
            data: Multipart form fields sent alongside ``files``
            headers: Additional headers

        Returns:
            Parsed JSON response

        Raises:
            APIClientError: If the API call fails after retries
            APITimeoutError: If the API call times out after retries
        """
        url = f"{self.base_url}{endpoint}" if endpoint else self.base_url

        self.logger.debug(
            f"Calling service API: {url}",
            extra={"method": method, "timeout": self.timeout}
        )

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for attempt in range(self.max_retries):
                try:
                    if method.upper() == "GET":
                        response = await client.get(url, headers=headers, params=payload)
                    elif files is not None:
                        response = await client.post(url, headers=headers, files=files, data=data)
                    else:
                        response = await client.post(url, headers=headers, json=payload)

                    response.raise_for_status()
                    return response.json()

                except HTTPStatusError as e:
                    await self._handle_http_error(e, attempt, url)

                except TimeoutException as e:
                    await self._handle_timeout_error(e, attempt, url)

                except httpx.HTTPError as e:
                    await self._handle_generic_error(e, attempt, url)

        raise APIClientError(f"Failed to call API {url} after {self.max_retries} attempts")

    async def _handle_http_error(self, error: HTTPStatusError, attempt: int, url: str):
        """Handle HTTP status errors."""
        status_code = error.response.status_code
        error_body = error.response.text

        self.logger.warning(
            f"API HTTP error (Attempt {attempt + 1}/{self.max_retries})",
            extra={
                "url": url,
                "status_code": status_code,
                "error_body": error_body[:500]
            }
        )

        # 4xx are final except rate limiting
        if 400 <= status_code < 500 and status_code != 429:
            raise APIClientError(f"API Client Error {status_code}: {error_body[:500]}", error) from error

        if attempt < self.max_retries - 1:
            await self._wait_before_retry(attempt)
        else:
            raise APIClientError(f"API HTTP Error {status_code} after retries", error) from error

    async def _handle_timeout_error(self, error: TimeoutException, attempt: int, url: str):
        """Handle timeout errors."""
        self.logger.warning(
            f"API Timeout (Attempt {attempt + 1}/{self.max_retries})",
            extra={"url": url}
        )

        if attempt < self.max_retries - 1:
            await self._wait_before_retry(attempt)
        else:
            raise APITimeoutError(f"API Timeout after {self.max_retries} attempts", error) from error

    async def _handle_generic_error(self, error: Exception, attempt: int, url: str):
        """Handle transport errors."""
        self.logger.warning(
            f"API Generic Error (Attempt {attempt + 1}/{self.max_retries})",
            extra={"url": url, "error": str(error)}
        )

        if attempt < self.max_retries - 1:
            await self._wait_before_retry(attempt)
        else:
            raise APIClientError(f"API Error: {str(error)}", error) from error

    async def _wait_before_retry(self, attempt: int):
        """Exponential backoff wait."""
        wait_time = self.retry_delay * (2 ** attempt)
        await asyncio.sleep(wait_time)


class AIServiceClient(BaseServiceClient):
    """Thin client for the external AI/extraction microservice.

    Translates service responses into typed models for the rest of the
    pipeline. Callers enforce their own overall deadline with
    ``asyncio.wait_for``.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        base_url = base_url if base_url is not None else settings.ai.url
        if not base_url:
            raise ConfigurationError(
                "AI_SERVICE_URL is not configured. Please set it in your environment."
            )
        super().__init__(
            base_url=base_url,
            timeout=timeout if timeout is not None else settings.ai.request_timeout_seconds,
            max_retries=max_retries if max_retries is not None else settings.ai.max_retries,
            retry_delay=retry_delay if retry_delay is not None else settings.ai.retry_delay,
        )

    async def generate_embeddings(self, texts: List[str]) -> EmbeddingResponse:
        """Generate one embedding per text in a single batch call."""
        data = await self.call_api("/embed/", payload={"texts": texts, "normalize": True})
        return EmbeddingResponse.model_validate(data)

    async def generate_embedding(self, text: str) -> List[float]:
        """Generate a single embedding vector."""
        response = await self.generate_embeddings([text])
        if not response.embeddings or not response.embeddings[0]:
            raise APIClientError("AI service returned an empty embeddings array")
        return response.embeddings[0]

    async def extract_regulation_content(
        self,
        source_url: str,
        if_none_match: Optional[str] = None,
        if_modified_since: Optional[str] = None,
        max_chars: Optional[int] = None,
    ) -> RegulationExtractResponse:
        """Conditionally fetch and extract a regulation source."""
        payload: Dict[str, Any] = {"source_url": source_url}
        if if_none_match:
            payload["if_none_match"] = if_none_match
        if if_modified_since:
            payload["if_modified_since"] = if_modified_since
        if max_chars is not None:
            payload["max_chars"] = max_chars

        data = await self.call_api("/regulations/extract", payload=payload)
        return RegulationExtractResponse.model_validate(data)

    async def extract_document_content(
        self,
        content: bytes,
        file_name: str,
        content_type: Optional[str] = None,
        max_chars: Optional[int] = None,
    ) -> DocumentExtractResponse:
        """Upload document bytes for text extraction."""
        files = {
            "file": (
                file_name or "document",
                content,
                content_type or "application/octet-stream",
            )
        }
        form = {"max_chars": str(max_chars)} if max_chars is not None else None

        data = await self.call_api("/documents/extract", files=files, data=form)
        return DocumentExtractResponse.model_validate(data)

    async def generate_document_case_insights(
        self,
        case_text: str,
        document_text: str,
        top_k: int,
    ) -> CaseInsightsResponse:
        """Summarize a document against its case context."""
        data = await self.call_api(
            "/documents/case-insights",
            payload={
                "case_text": case_text,
                "document_text": document_text,
                "top_k": top_k,
            },
        )
        return CaseInsightsResponse.model_validate(data)
