"""Conditional fetch of regulation sources through the AI service."""

import asyncio
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import Optional

from app.core.ai_client import AIServiceClient
from app.core.config import settings
from app.schemas.enums import ChangeStatus, ErrorCode
from app.schemas.regulations import ChangeDetectionResult
from app.services.documents.text_chunker import normalize_whitespace
from app.utils.hashing import sha256_text
from app.utils.logging import get_logger

LOGGER = get_logger(__name__)


def format_http_date(value: Optional[datetime]) -> Optional[str]:
    """Format a timestamp as an RFC 7231 HTTP date (``Sun, 06 Nov 1994 08:49:37 GMT``)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return format_datetime(value.astimezone(timezone.utc), usegmt=True)


def parse_http_date(value: Optional[str]) -> Optional[datetime]:
    """Parse an HTTP date header value; unparsable input yields None."""
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ChangeDetector:
    """Decides whether a regulation source changed since the last check.

    Stateless: the caller supplies the previous validators and persists
    whatever comes back.
    """

    def __init__(self, ai_client: AIServiceClient, timeout: Optional[float] = None):
        self.ai_client = ai_client
        self.timeout = timeout if timeout is not None else settings.ai.request_timeout_seconds

    async def fetch(
        self,
        source_url: str,
        prior_etag: Optional[str] = None,
        prior_last_modified: Optional[datetime] = None,
        prior_content_hash: Optional[str] = None,
    ) -> ChangeDetectionResult:
        """Fetch a source conditionally and classify the outcome.

        Args:
            source_url: Regulation source URL
            prior_etag: ETag seen on the previous check
            prior_last_modified: Last-Modified seen on the previous check
            prior_content_hash: Hash of the last known content

        Returns:
            ``unchanged``, ``changed`` or ``error`` with the fetched content
            and fresh validators
        """
        try:
            response = await asyncio.wait_for(
                self.ai_client.extract_regulation_content(
                    source_url=source_url,
                    if_none_match=prior_etag,
                    if_modified_since=format_http_date(prior_last_modified),
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            LOGGER.error(
                "Regulation extraction timed out",
                extra={"source_url": source_url, "timeout": self.timeout}
            )
            return ChangeDetectionResult(status=ChangeStatus.ERROR, error_code=ErrorCode.TIMEOUT.value)
        except Exception as e:
            LOGGER.error(
                f"Regulation extraction call failed: {str(e)}",
                exc_info=True,
                extra={"source_url": source_url}
            )
            return ChangeDetectionResult(
                status=ChangeStatus.ERROR,
                error_code=ErrorCode.SERVICE_ERROR.value,
                warnings=[str(e) or type(e).__name__],
            )

        if response.status == "error":
            LOGGER.warning(
                "Regulation extraction returned an error status",
                extra={
                    "source_url": source_url,
                    "error_code": response.error_code,
                    "warnings": response.warnings,
                }
            )
            return ChangeDetectionResult(
                status=ChangeStatus.ERROR,
                error_code=response.error_code or ErrorCode.EXTRACTION_ERROR.value,
                warnings=list(response.warnings),
            )

        last_modified = parse_http_date(response.last_modified)

        if response.status == "not_modified":
            return ChangeDetectionResult(
                status=ChangeStatus.UNCHANGED,
                etag=response.etag,
                last_modified=last_modified,
                warnings=list(response.warnings),
            )

        text = normalize_whitespace(response.extracted_text or "")
        content_hash = None
        if text:
            content_hash = response.normalized_text_hash or sha256_text(text)

        status = ChangeStatus.CHANGED
        if content_hash is not None and content_hash == prior_content_hash:
            status = ChangeStatus.UNCHANGED

        return ChangeDetectionResult(
            status=status,
            error_code=None if text else ErrorCode.EMPTY_CONTENT.value,
            text=text,
            raw_content=response.raw_html,
            content_hash=content_hash,
            etag=response.etag,
            last_modified=last_modified,
            warnings=list(response.warnings),
        )
