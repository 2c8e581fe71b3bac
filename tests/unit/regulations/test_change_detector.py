"""Unit tests for conditional regulation source fetching."""

import asyncio
from datetime import datetime, timezone

import pytest

from app.schemas.ai_service import RegulationExtractResponse
from app.schemas.enums import ChangeStatus, ErrorCode
from app.services.regulations.change_detector import (
    ChangeDetector,
    format_http_date,
    parse_http_date,
)
from app.utils.hashing import sha256_text

SOURCE_URL = "https://laws.example.gov/reg/1"


@pytest.fixture
def detector(mock_ai_client):
    return ChangeDetector(mock_ai_client, timeout=1)


class TestHttpDates:

    def test_format(self):
        value = datetime(1994, 11, 6, 8, 49, 37, tzinfo=timezone.utc)
        assert format_http_date(value) == "Sun, 06 Nov 1994 08:49:37 GMT"

    def test_format_naive_is_utc(self):
        assert format_http_date(datetime(1994, 11, 6, 8, 49, 37)) == "Sun, 06 Nov 1994 08:49:37 GMT"

    def test_format_none(self):
        assert format_http_date(None) is None

    def test_parse(self):
        parsed = parse_http_date("Sun, 06 Nov 1994 08:49:37 GMT")
        assert parsed == datetime(1994, 11, 6, 8, 49, 37, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [None, "", "not a date"])
    def test_parse_invalid(self, value):
        assert parse_http_date(value) is None


class TestFetch:

    @pytest.mark.asyncio
    async def test_sends_prior_validators(self, detector, mock_ai_client):
        mock_ai_client.extract_regulation_content.return_value = RegulationExtractResponse(status="not_modified")
        prior = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

        await detector.fetch(SOURCE_URL, prior_etag='"v1"', prior_last_modified=prior)

        mock_ai_client.extract_regulation_content.assert_awaited_once_with(
            source_url=SOURCE_URL,
            if_none_match='"v1"',
            if_modified_since="Tue, 02 Jan 2024 03:04:05 GMT",
        )

    @pytest.mark.asyncio
    async def test_not_modified_is_unchanged(self, detector, mock_ai_client):
        mock_ai_client.extract_regulation_content.return_value = RegulationExtractResponse(
            status="not_modified",
            etag='"v2"',
            last_modified="Tue, 02 Jan 2024 03:04:05 GMT",
        )

        result = await detector.fetch(SOURCE_URL, prior_etag='"v1"')

        assert result.status == ChangeStatus.UNCHANGED
        assert result.etag == '"v2"'
        assert result.last_modified == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert result.text is None

    @pytest.mark.asyncio
    async def test_new_content_is_changed_and_normalized(self, detector, mock_ai_client):
        mock_ai_client.extract_regulation_content.return_value = RegulationExtractResponse(
            status="ok",
            extracted_text="  Article 1.\n\n  Licensed   entities must report.  ",
            raw_html="<p>Article 1.</p>",
            etag='"v3"',
        )

        result = await detector.fetch(SOURCE_URL, prior_content_hash="older")

        assert result.status == ChangeStatus.CHANGED
        assert result.text == "Article 1. Licensed entities must report."
        assert result.content_hash == sha256_text("Article 1. Licensed entities must report.")
        assert result.raw_content == "<p>Article 1.</p>"
        assert result.etag == '"v3"'

    @pytest.mark.asyncio
    async def test_same_content_twice_is_unchanged(self, detector, mock_ai_client):
        mock_ai_client.extract_regulation_content.return_value = RegulationExtractResponse(
            status="ok", extracted_text="Article 1. Text."
        )

        first = await detector.fetch(SOURCE_URL)
        second = await detector.fetch(SOURCE_URL, prior_content_hash=first.content_hash)

        assert first.status == ChangeStatus.CHANGED
        assert second.status == ChangeStatus.UNCHANGED
        assert second.content_hash == first.content_hash

    @pytest.mark.asyncio
    async def test_service_hash_is_preferred(self, detector, mock_ai_client):
        mock_ai_client.extract_regulation_content.return_value = RegulationExtractResponse(
            status="ok", extracted_text="Article 1.", normalized_text_hash="service-hash"
        )

        result = await detector.fetch(SOURCE_URL, prior_content_hash="service-hash")

        assert result.status == ChangeStatus.UNCHANGED

    @pytest.mark.asyncio
    async def test_empty_content_has_no_hash(self, detector, mock_ai_client):
        mock_ai_client.extract_regulation_content.return_value = RegulationExtractResponse(
            status="ok", extracted_text="   "
        )

        result = await detector.fetch(SOURCE_URL)

        assert result.status == ChangeStatus.CHANGED
        assert result.text == ""
        assert result.content_hash is None
        assert result.error_code == ErrorCode.EMPTY_CONTENT.value

    @pytest.mark.asyncio
    async def test_error_status(self, detector, mock_ai_client):
        mock_ai_client.extract_regulation_content.return_value = RegulationExtractResponse(
            status="error", error_code="fetch_failed", warnings=["HTTP 503"]
        )

        result = await detector.fetch(SOURCE_URL)

        assert result.status == ChangeStatus.ERROR
        assert result.error_code == "fetch_failed"
        assert result.warnings == ["HTTP 503"]

    @pytest.mark.asyncio
    async def test_error_status_without_code(self, detector, mock_ai_client):
        mock_ai_client.extract_regulation_content.return_value = RegulationExtractResponse(status="error")

        result = await detector.fetch(SOURCE_URL)

        assert result.error_code == ErrorCode.EXTRACTION_ERROR.value

    @pytest.mark.asyncio
    async def test_call_failure_is_error(self, detector, mock_ai_client):
        mock_ai_client.extract_regulation_content.side_effect = RuntimeError("connection refused")

        result = await detector.fetch(SOURCE_URL)

        assert result.status == ChangeStatus.ERROR
        assert result.error_code == ErrorCode.SERVICE_ERROR.value
        assert result.warnings == ["connection refused"]

    @pytest.mark.asyncio
    async def test_timeout_is_error(self, detector, mock_ai_client):
        async def slow(**_kwargs):
            await asyncio.sleep(5)

        mock_ai_client.extract_regulation_content.side_effect = slow
        detector.timeout = 0.01

        result = await detector.fetch(SOURCE_URL)

        assert result.status == ChangeStatus.ERROR
        assert result.error_code == ErrorCode.TIMEOUT.value
