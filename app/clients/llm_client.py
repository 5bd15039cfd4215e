"""LLM client -- generation gateway over the Anthropic Messages API.

``GenerationGateway.complete()`` is the single entry point the pipeline
uses to ask for code: it resolves the model for a call site ("stage"),
retries overloads / server errors / network failures with exponential
backoff, switches to the stage's fallback model for the final attempt,
and records token usage and a cost estimate for every successful call.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal

import httpx

from app.config import get_stage_limits, get_stage_model, settings
from app.errors import GenerationFatalError, GenerationUnavailableError
from shipwright_kit.backoff import RetryDelay

logger = logging.getLogger(__name__)

# ── Shared HTTP client (connection pooling) ─────────────────────────────────

_client: httpx.AsyncClient | None = None


def _get_client() -> httpx.AsyncClient:
    """Return (or create) the shared httpx client for LLM API calls."""
    global _client
    if _client is None:
        _client = httpx.AsyncClient(timeout=settings.LLM_TIMEOUT_S)
    return _client


async def close_client() -> None:
    """Close the shared LLM HTTP client.  Called during app shutdown."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None

# ---------------------------------------------------------------------------
# Retry classification
# ---------------------------------------------------------------------------

_OVERLOAD_STATUS_CODES = frozenset({429, 529})


def _is_retryable_status(status: int) -> bool:
    return status in _OVERLOAD_STATUS_CODES or status >= 500

# ---------------------------------------------------------------------------
# Cost estimates
# ---------------------------------------------------------------------------

# Cost-per-token estimates (USD) keyed by model prefix
_MODEL_PRICING: dict[str, tuple[Decimal, Decimal]] = {
    # (input $/token, output $/token)
    "claude-opus-4":     (Decimal("0.000015"), Decimal("0.000075")),
    "claude-sonnet-4":   (Decimal("0.000003"), Decimal("0.000015")),
    "claude-haiku-4":    (Decimal("0.000001"), Decimal("0.000005")),
    "claude-3-5-haiku":  (Decimal("0.0000008"), Decimal("0.000004")),
    "claude-3-haiku":    (Decimal("0.00000025"), Decimal("0.00000125")),
}
_DEFAULT_INPUT_RATE = Decimal("0.000003")
_DEFAULT_OUTPUT_RATE = Decimal("0.000015")


def _get_token_rates(model: str) -> tuple[Decimal, Decimal]:
    """Return (input_rate, output_rate) per token for the given model."""
    for prefix, rates in _MODEL_PRICING.items():
        if model.startswith(prefix):
            return rates
    return (_DEFAULT_INPUT_RATE, _DEFAULT_OUTPUT_RATE)


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> Decimal:
    """Return the USD cost estimate for one call."""
    in_rate, out_rate = _get_token_rates(model)
    return in_rate * input_tokens + out_rate * output_tokens


@dataclass(frozen=True)
class CallUsage:
    """Token usage of one successful generation call."""

    stage: str
    model: str
    input_tokens: int
    output_tokens: int
    cost_usd: Decimal
    duration_ms: int


@dataclass
class UsageTotals:
    """Running totals across the calls made through one gateway."""

    calls: list[CallUsage] = field(default_factory=list)

    def add(self, usage: CallUsage) -> None:
        self.calls.append(usage)

    @property
    def input_tokens(self) -> int:
        return sum(c.input_tokens for c in self.calls)

    @property
    def output_tokens(self) -> int:
        return sum(c.output_tokens for c in self.calls)

    @property
    def cost_usd(self) -> Decimal:
        return sum((c.cost_usd for c in self.calls), Decimal(0))

    def to_dict(self) -> dict:
        return {
            "calls": len(self.calls),
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cost_usd": f"{self.cost_usd:.6f}",
        }

# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------

ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_API_VERSION = "2023-06-01"


def _anthropic_headers(api_key: str) -> dict:
    """Return standard Anthropic API headers."""
    return {
        "x-api-key": api_key,
        "anthropic-version": ANTHROPIC_API_VERSION,
        "Content-Type": "application/json",
    }


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json().get("error", {}).get("message", response.text)
    except ValueError:
        return response.text


async def chat_anthropic(
    api_key: str,
    model: str,
    system_prompt: str,
    user_prompt: str,
    max_tokens: int = 4096,
    temperature: float = 0.0,
) -> dict:
    """Send one request to the Anthropic Messages API (no retries).

    Returns ``{"text": ..., "usage": {"input_tokens", "output_tokens"}}``.

    Raises
    ------
    httpx.HTTPStatusError
        For any HTTP error status; the caller classifies it.
    ValueError
        If the response carries no text block.
    """
    body: dict = {
        "model": model,
        "max_tokens": max_tokens,
        "temperature": temperature,
        "system": system_prompt,
        "messages": [{"role": "user", "content": user_prompt}],
    }

    client = _get_client()
    response = await client.post(
        ANTHROPIC_MESSAGES_URL,
        headers=_anthropic_headers(api_key),
        json=body,
    )
    if response.status_code >= 400:
        raise httpx.HTTPStatusError(
            f"Anthropic API {response.status_code}: {_error_message(response)}",
            request=response.request,
            response=response,
        )

    data = response.json()
    text_parts = [
        block["text"] for block in data.get("content", []) if block.get("type") == "text"
    ]
    if not text_parts:
        raise ValueError("No text block in Anthropic API response")

    usage = data.get("usage", {})
    return {
        "text": "\n".join(text_parts),
        "usage": {
            "input_tokens": usage.get("input_tokens", 0),
            "output_tokens": usage.get("output_tokens", 0),
        },
    }

# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class GenerationGateway:
    """Retrying, model-resolving front door to the generation service.

    One gateway is created per job so ``usage`` reflects that job's spend.
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        max_attempts: int | None = None,
        backoff: RetryDelay | None = None,
    ) -> None:
        self._api_key = api_key if api_key is not None else settings.ANTHROPIC_API_KEY
        self._max_attempts = max_attempts or settings.LLM_MAX_ATTEMPTS
        self._backoff = backoff or RetryDelay(
            initial_s=settings.LLM_BACKOFF_INITIAL_S,
            max_s=max(settings.LLM_BACKOFF_MAX_S, settings.LLM_BACKOFF_INITIAL_S),
        )
        self.usage = UsageTotals()

    async def complete(self, system_prompt: str, user_prompt: str, stage: str) -> str:
        """Return the generated text for one prompt at call site *stage*.

        Raises
        ------
        GenerationFatalError
            On a client error (4xx other than 429) or a malformed response.
        GenerationUnavailableError
            When every attempt hit an overload, server or network error.
        """
        model, fallback = get_stage_model(stage)
        max_tokens, temperature = get_stage_limits(stage)
        last_error = ""

        for attempt in range(1, self._max_attempts + 1):
            started = asyncio.get_running_loop().time()
            try:
                result = await chat_anthropic(
                    self._api_key, model, system_prompt, user_prompt,
                    max_tokens=max_tokens, temperature=temperature,
                )
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                if not _is_retryable_status(status):
                    raise GenerationFatalError(str(exc), status=status, model=model) from exc
                last_error = str(exc)
                kind = "overloaded" if status in _OVERLOAD_STATUS_CODES else "server error"
                logger.warning(
                    "Generation %s %d on %s (attempt %d/%d)",
                    kind, status, model, attempt, self._max_attempts,
                )
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "Generation request %s on %s (attempt %d/%d)",
                    type(exc).__name__, model, attempt, self._max_attempts,
                )
            except ValueError as exc:
                raise GenerationFatalError(str(exc), model=model) from exc
            else:
                elapsed_ms = int((asyncio.get_running_loop().time() - started) * 1000)
                self._record(stage, model, result["usage"], elapsed_ms)
                return result["text"]

            if attempt >= self._max_attempts:
                break
            if attempt == self._max_attempts - 1 and fallback and fallback != model:
                logger.info("Switching stage %s to fallback model %s", stage, fallback)
                model = fallback
            wait = self._backoff.for_attempt(attempt)
            logger.info("Retrying generation in %.1fs", wait)
            await asyncio.sleep(wait)

        raise GenerationUnavailableError(
            f"Generation service unavailable after {self._max_attempts} attempts: {last_error}",
            attempts=self._max_attempts,
            model=model,
        )

    def _record(self, stage: str, model: str, usage: dict, elapsed_ms: int) -> None:
        input_tokens = int(usage.get("input_tokens", 0))
        output_tokens = int(usage.get("output_tokens", 0))
        call = CallUsage(
            stage=stage,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=estimate_cost(model, input_tokens, output_tokens),
            duration_ms=elapsed_ms,
        )
        self.usage.add(call)
        logger.info(
            "Generation %s via %s: %d in / %d out tokens, ~$%.4f, %dms",
            stage, model, input_tokens, output_tokens, call.cost_usd, elapsed_ms,
        )
