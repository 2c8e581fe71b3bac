"""Unit tests for the AI service HTTP client."""

import json
from unittest.mock import patch

import httpx
import pytest

from app.core.ai_client import AIServiceClient
from app.core.exceptions import APIClientError, APITimeoutError, ConfigurationError

REAL_ASYNC_CLIENT = httpx.AsyncClient
BASE_URL = "http://ai-service.test"


def mock_transport(handler):
    """Route every ``httpx.AsyncClient`` the client opens through ``handler``."""
    def factory(*args, **kwargs):
        return REAL_ASYNC_CLIENT(*args, transport=httpx.MockTransport(handler), **kwargs)

    return patch("app.core.ai_client.httpx.AsyncClient", side_effect=factory)


@pytest.fixture
def client():
    return AIServiceClient(base_url=BASE_URL + "/", timeout=5, max_retries=3, retry_delay=0)


def test_missing_url_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        AIServiceClient(base_url="")


@pytest.mark.asyncio
async def test_retries_server_errors_then_succeeds(client):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(503, text="overloaded")
        return httpx.Response(200, json={"embeddings": [[0.1, 0.2]], "dimension": 2})

    with mock_transport(handler):
        response = await client.generate_embeddings(["Article 1"])

    assert len(calls) == 3
    assert str(calls[0].url) == f"{BASE_URL}/embed/"
    assert json.loads(calls[0].content) == {"texts": ["Article 1"], "normalize": True}
    assert response.embeddings == [[0.1, 0.2]]


@pytest.mark.asyncio
async def test_client_errors_are_final(client):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(422, text="texts must not be empty")

    with mock_transport(handler), pytest.raises(APIClientError, match="422"):
        await client.generate_embeddings([])

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_rate_limit_is_retried(client):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(429, text="slow down")

    with mock_transport(handler), pytest.raises(APIClientError):
        await client.generate_embeddings(["a"])

    assert len(calls) == 3


@pytest.mark.asyncio
async def test_timeouts_raise_after_retries(client):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with mock_transport(handler), pytest.raises(APITimeoutError):
        await client.extract_regulation_content("https://laws.example.gov/reg/1")


@pytest.mark.asyncio
async def test_empty_single_embedding_is_an_error(client):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"embeddings": []})

    with mock_transport(handler), pytest.raises(APIClientError):
        await client.generate_embedding("query")


@pytest.mark.asyncio
async def test_regulation_extract_sends_only_given_validators(client):
    payloads = []

    def handler(request: httpx.Request) -> httpx.Response:
        payloads.append(json.loads(request.content))
        return httpx.Response(200, json={"status": "not_modified", "etag": '"v1"', "unknown": 1})

    with mock_transport(handler):
        response = await client.extract_regulation_content(
            "https://laws.example.gov/reg/1", if_none_match='"v1"'
        )

    assert payloads == [{"source_url": "https://laws.example.gov/reg/1", "if_none_match": '"v1"'}]
    assert response.status == "not_modified"
    assert response.etag == '"v1"'


@pytest.mark.asyncio
async def test_document_extract_uploads_multipart(client):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={"status": "ok", "extracted_text": "Article 1", "extraction_method": "pdf_text"},
        )

    with mock_transport(handler):
        response = await client.extract_document_content(b"%PDF-1.4", "contract.pdf", "application/pdf")

    request = requests[0]
    assert request.url.path == "/documents/extract"
    assert request.headers["content-type"].startswith("multipart/form-data")
    body = request.read()
    assert b'filename="contract.pdf"' in body
    assert b"%PDF-1.4" in body
    assert response.extracted_text == "Article 1"


@pytest.mark.asyncio
async def test_case_insights_payload(client):
    payloads = []

    def handler(request: httpx.Request) -> httpx.Response:
        payloads.append(json.loads(request.content))
        return httpx.Response(200, json={"status": "ok", "summary": "s", "highlights": []})

    with mock_transport(handler):
        response = await client.generate_document_case_insights("case", "document", top_k=5)

    assert payloads == [{"case_text": "case", "document_text": "document", "top_k": 5}]
    assert response.summary == "s"
