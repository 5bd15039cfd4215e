"""Tests for the LLM client -- Anthropic wrapper and the generation gateway."""

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from app.clients import llm_client
from app.clients.llm_client import (
    ANTHROPIC_MESSAGES_URL,
    CallUsage,
    GenerationGateway,
    UsageTotals,
    chat_anthropic,
    estimate_cost,
)
from app.config import settings
from app.errors import GenerationFatalError, GenerationUnavailableError


@pytest.fixture(autouse=True)
def reset_client(monkeypatch):
    """Each test gets a freshly created (mocked) shared client."""
    monkeypatch.setattr(llm_client, "_client", None)


def _response(status: int, data: dict) -> httpx.Response:
    return httpx.Response(status, json=data, request=httpx.Request("POST", ANTHROPIC_MESSAGES_URL))


def _ok(text: str = "[]", input_tokens: int = 10, output_tokens: int = 20) -> httpx.Response:
    return _response(200, {
        "content": [{"type": "text", "text": text}],
        "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens},
    })


def _error(status: int, message: str = "nope") -> httpx.Response:
    return _response(status, {"error": {"type": "error", "message": message}})


def _mock_client(*responses) -> AsyncMock:
    client = AsyncMock()
    client.post.side_effect = list(responses)
    return client


def _sent_models(client: AsyncMock) -> list[str]:
    return [c.kwargs["json"]["model"] for c in client.post.call_args_list]


# ---------------------------------------------------------------------------
# chat_anthropic
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@patch("app.clients.llm_client.httpx.AsyncClient")
async def test_chat_anthropic_success(mock_client_cls):
    """Successful call returns text and token usage."""
    client = _mock_client(_ok("Hello!", 11, 22))
    mock_client_cls.return_value = client

    result = await chat_anthropic("key", "claude-sonnet-4-5", "sys", "hi", max_tokens=100)

    assert result == {"text": "Hello!", "usage": {"input_tokens": 11, "output_tokens": 22}}
    call = client.post.call_args
    assert call.args[0] == ANTHROPIC_MESSAGES_URL
    assert call.kwargs["headers"]["x-api-key"] == "key"
    body = call.kwargs["json"]
    assert body["system"] == "sys"
    assert body["max_tokens"] == 100
    assert body["messages"] == [{"role": "user", "content": "hi"}]


@pytest.mark.asyncio
@patch("app.clients.llm_client.httpx.AsyncClient")
async def test_chat_anthropic_http_error_raises_status_error(mock_client_cls):
    mock_client_cls.return_value = _mock_client(_error(400, "bad model"))
    with pytest.raises(httpx.HTTPStatusError, match="bad model"):
        await chat_anthropic("key", "m", "sys", "hi")


@pytest.mark.asyncio
@patch("app.clients.llm_client.httpx.AsyncClient")
async def test_chat_anthropic_without_text_block(mock_client_cls):
    mock_client_cls.return_value = _mock_client(_response(200, {"content": []}))
    with pytest.raises(ValueError, match="No text block"):
        await chat_anthropic("key", "m", "sys", "hi")


# ---------------------------------------------------------------------------
# GenerationGateway
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@patch("app.clients.llm_client.httpx.AsyncClient")
async def test_gateway_uses_stage_model_and_records_usage(mock_client_cls):
    client = _mock_client(_ok("generated", 1000, 500))
    mock_client_cls.return_value = client
    gateway = GenerationGateway()

    text = await gateway.complete("sys", "user", "generate")

    assert text == "generated"
    assert _sent_models(client) == [settings.LLM_GENERATE_MODEL]
    body = client.post.call_args.kwargs["json"]
    assert body["max_tokens"] == settings.LLM_GENERATE_MAX_TOKENS
    assert body["temperature"] == settings.LLM_GENERATE_TEMPERATURE
    assert gateway.usage.input_tokens == 1000
    assert gateway.usage.output_tokens == 500
    assert gateway.usage.calls[0].stage == "generate"


@pytest.mark.asyncio
@patch("app.clients.llm_client.httpx.AsyncClient")
async def test_gateway_retries_overload_then_succeeds(mock_client_cls):
    client = _mock_client(_error(529, "Overloaded"), _ok("ok"))
    mock_client_cls.return_value = client

    text = await GenerationGateway().complete("sys", "user", "fix")

    assert text == "ok"
    assert client.post.call_count == 2


@pytest.mark.asyncio
@patch("app.clients.llm_client.httpx.AsyncClient")
async def test_gateway_switches_to_fallback_for_last_attempt(mock_client_cls):
    client = _mock_client(_error(529), _error(429), _ok("from fallback"))
    mock_client_cls.return_value = client

    text = await GenerationGateway(max_attempts=3).complete("sys", "user", "generate")

    assert text == "from fallback"
    primary, fallback = settings.LLM_GENERATE_MODEL, settings.LLM_GENERATE_FALLBACK_MODEL
    assert _sent_models(client) == [primary, primary, fallback]


@pytest.mark.asyncio
@patch("app.clients.llm_client.httpx.AsyncClient")
async def test_gateway_client_error_is_fatal(mock_client_cls):
    client = _mock_client(_error(400, "prompt too long"))
    mock_client_cls.return_value = client

    with pytest.raises(GenerationFatalError) as exc_info:
        await GenerationGateway().complete("sys", "user", "edit")

    assert exc_info.value.status == 400
    assert client.post.call_count == 1


@pytest.mark.asyncio
@patch("app.clients.llm_client.httpx.AsyncClient")
async def test_gateway_gives_up_after_max_attempts(mock_client_cls):
    client = _mock_client(_error(500), _error(502), _error(503))
    mock_client_cls.return_value = client

    with pytest.raises(GenerationUnavailableError) as exc_info:
        await GenerationGateway(max_attempts=3).complete("sys", "user", "fix")

    assert exc_info.value.attempts == 3
    assert client.post.call_count == 3
    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
@patch("app.clients.llm_client.httpx.AsyncClient")
async def test_gateway_retries_network_errors(mock_client_cls):
    request = httpx.Request("POST", ANTHROPIC_MESSAGES_URL)
    client = _mock_client(httpx.ConnectError("refused", request=request), _ok("ok"))
    mock_client_cls.return_value = client

    assert await GenerationGateway().complete("sys", "user", "fix") == "ok"


@pytest.mark.asyncio
@patch("app.clients.llm_client.httpx.AsyncClient")
async def test_gateway_malformed_response_is_fatal(mock_client_cls):
    mock_client_cls.return_value = _mock_client(_response(200, {"content": []}))
    with pytest.raises(GenerationFatalError):
        await GenerationGateway().complete("sys", "user", "fix")


@pytest.mark.asyncio
async def test_gateway_rejects_unknown_stage():
    with pytest.raises(ValueError, match="Unknown generation stage"):
        await GenerationGateway().complete("sys", "user", "questionnaire")


# ---------------------------------------------------------------------------
# Cost accounting
# ---------------------------------------------------------------------------


def test_estimate_cost_by_model_prefix():
    assert estimate_cost("claude-sonnet-4-5", 1_000_000, 0) == Decimal("3.000000")
    assert estimate_cost("claude-haiku-4-5", 0, 1_000_000) == Decimal("5.000000")


def test_estimate_cost_unknown_model_uses_default_rate():
    assert estimate_cost("mystery", 1, 1) == Decimal("0.000003") + Decimal("0.000015")


def test_usage_totals_to_dict():
    totals = UsageTotals()
    totals.add(CallUsage("generate", "m", 10, 20, Decimal("0.5"), 100))
    totals.add(CallUsage("fix", "m", 1, 2, Decimal("0.25"), 50))
    assert totals.to_dict() == {
        "calls": 2,
        "input_tokens": 11,
        "output_tokens": 22,
        "cost_usd": "0.750000",
    }
