"""LLM client — multi-provider support (OpenAI, Anthropic, Google).

Four capabilities live here:
  - call_llm_structured(): schema-constrained generation on any provider
  - call_vision_structured(): image + instruction → pydantic model (OpenAI)
  - embed_text(): text → embedding vector (OpenAI)
  - call_llm_tool_turn(): one assistant turn with tool calling (OpenAI)

Includes built-in cost tracking: every LLM call records token usage and
calculates cost based on per-model pricing. Use reset_usage(), get_usage_log(),
and get_usage_summary() to access the accumulated data.

Error handling:
  - 400-level errors (bad request, auth) are NOT retried — they won't fix themselves.
  - 429 (rate limit) and 5xx (server errors) ARE retried with exponential backoff.
  - All errors are extracted into clean, readable messages.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time as _time
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

import config
from schemas.image_analysis import MARKET_SEGMENTS
from schemas.orchestration import ModelTurn, ToolCall, ToolSpec, TranscriptEntry

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Cost tracking
# ---------------------------------------------------------------------------

# Pricing per 1M tokens: { model_prefix: (input_$/1M, output_$/1M) }
# Models are matched longest-prefix-first, so "gpt-4o-mini" matches before "gpt-4o".
MODEL_PRICING: dict[str, tuple[float, float]] = {
    # OpenAI
    "gpt-4o-mini":            (0.15,   0.60),
    "gpt-4o":                 (2.50,  10.00),
    "gpt-4.1-mini":           (0.40,   1.60),
    "gpt-4.1-nano":           (0.10,   0.40),
    "gpt-4.1":                (2.00,   8.00),
    "text-embedding-3-small": (0.02,   0.00),
    "text-embedding-3-large": (0.13,   0.00),
    # Anthropic
    "claude-opus-4":          (15.00, 75.00),
    "claude-sonnet-4":        (3.00,  15.00),
    "claude-3-5-haiku":       (0.80,   4.00),
    # Google
    "gemini-2.5-pro":         (1.25,  10.00),
    "gemini-2.5-flash":       (0.15,   0.60),
}

# Fallback pricing if a model isn't in the table (conservative estimate)
_FALLBACK_PRICING = (2.50, 10.00)

_usage_lock = threading.Lock()
_usage_log: list[dict[str, Any]] = []


def _get_pricing(model: str) -> tuple[float, float]:
    """Find pricing for a model by longest-prefix match."""
    best_match = ""
    for prefix in MODEL_PRICING:
        if model.startswith(prefix) and len(prefix) > len(best_match):
            best_match = prefix
    if best_match:
        return MODEL_PRICING[best_match]
    logger.warning("No pricing found for model '%s' — using fallback $%.2f/$%.2f per 1M", model, *_FALLBACK_PRICING)
    return _FALLBACK_PRICING


def _record_usage(provider: str, model: str, input_tokens: int, output_tokens: int):
    """Record a single LLM call's token usage and cost."""
    in_price, out_price = _get_pricing(model)
    cost = (input_tokens * in_price + output_tokens * out_price) / 1_000_000
    entry = {
        "provider": provider,
        "model": model,
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "cost": cost,
        "timestamp": _time.time(),
    }
    with _usage_lock:
        _usage_log.append(entry)
    logger.info(
        "Token usage: %s/%s — in=%d out=%d cost=$%.4f",
        provider, model, input_tokens, output_tokens, cost,
    )


def reset_usage():
    """Clear all accumulated usage data (call at run start)."""
    with _usage_lock:
        _usage_log.clear()


def get_usage_log() -> list[dict[str, Any]]:
    """Return a copy of the full usage log."""
    with _usage_lock:
        return list(_usage_log)


def get_usage_summary() -> dict[str, Any]:
    """Return aggregated cost and token totals."""
    with _usage_lock:
        entries = list(_usage_log)
    total_input = sum(e["input_tokens"] for e in entries)
    total_output = sum(e["output_tokens"] for e in entries)
    total_cost = sum(e["cost"] for e in entries)
    return {
        "total_input_tokens": total_input,
        "total_output_tokens": total_output,
        "total_tokens": total_input + total_output,
        "total_cost": round(total_cost, 4),
        "calls": len(entries),
    }


T = TypeVar("T", bound=BaseModel)


# ---------------------------------------------------------------------------
# Error helpers
# ---------------------------------------------------------------------------

class LLMError(Exception):
    """Clean error from an LLM call with a human-readable message."""

    def __init__(self, message: str, provider: str = "", model: str = "", cause: Exception | None = None):
        self.provider = provider
        self.model = model
        self.cause = cause
        super().__init__(message)


def _is_retryable(exc: BaseException) -> bool:
    """Return True if the error is transient and worth retrying.

    We retry on:
      - Rate limits (429)
      - Server errors (500, 502, 503, 529)
      - Connection / timeout errors
    We do NOT retry on:
      - 400 Bad Request (invalid params, won't fix itself)
      - 401/403 Auth errors (key is wrong)
      - 404 (model doesn't exist)
      - Pydantic validation errors (need different approach)
    """
    from openai import (
        APIConnectionError,
        APITimeoutError,
        InternalServerError,
        RateLimitError,
    )
    if isinstance(exc, (RateLimitError, InternalServerError, APIConnectionError, APITimeoutError)):
        return True

    from anthropic import (
        APIConnectionError as AnthropicConnError,
        APITimeoutError as AnthropicTimeout,
        InternalServerError as AnthropicInternal,
        RateLimitError as AnthropicRateLimit,
    )
    if isinstance(exc, (AnthropicRateLimit, AnthropicInternal, AnthropicConnError, AnthropicTimeout)):
        return True

    return isinstance(exc, (ConnectionError, TimeoutError))


def _extract_error_message(exc: Exception, provider: str, model: str) -> str:
    """Pull out a clean, human-readable error message from an API exception."""

    msg = str(exc)

    from openai import BadRequestError, AuthenticationError, NotFoundError, PermissionDeniedError
    if isinstance(exc, BadRequestError):
        body = getattr(exc, "body", None)
        if isinstance(body, dict):
            inner = body.get("error", {})
            if isinstance(inner, dict):
                msg = inner.get("message", msg)
        return f"[{provider}/{model}] Bad request: {msg}"
    if isinstance(exc, AuthenticationError):
        return f"[{provider}] Authentication failed — check your OPENAI_API_KEY."
    if isinstance(exc, NotFoundError):
        return f"[{provider}] Model '{model}' not found. Check the model name in config.py or .env."
    if isinstance(exc, PermissionDeniedError):
        return f"[{provider}] Permission denied — your API key may not have access to '{model}'."

    from anthropic import BadRequestError as AnthropicBadReq, AuthenticationError as AnthropicAuth
    if isinstance(exc, AnthropicBadReq):
        return f"[{provider}/{model}] Bad request: {msg}"
    if isinstance(exc, AnthropicAuth):
        return f"[{provider}] Authentication failed — check your ANTHROPIC_API_KEY."

    if isinstance(exc, ValidationError):
        n_errors = exc.error_count()
        return (
            f"[{provider}/{model}] Response JSON didn't match the expected schema "
            f"({n_errors} validation error{'s' if n_errors != 1 else ''})."
        )

    # Generic fallback — truncate very long messages
    if len(msg) > 300:
        msg = msg[:300] + "..."
    return f"[{provider}/{model}] {msg}"


def _raise_provider_error(exc: Exception, provider: str, model: str, what: str):
    """Re-raise transient errors as-is (tenacity retries them), wrap the rest in LLMError."""
    if isinstance(exc, LLMError):
        raise exc
    clean_msg = _extract_error_message(exc, provider, model)
    logger.error("%s failed: %s", what, clean_msg)
    if _is_retryable(exc):
        raise exc
    raise LLMError(clean_msg, provider=provider, model=model, cause=exc) from exc


# ---------------------------------------------------------------------------
# Provider clients (lazy-init singletons)
# ---------------------------------------------------------------------------

_openai_client = None
_anthropic_client = None
_google_client = None


def _get_openai():
    global _openai_client
    if _openai_client is None:
        if not config.OPENAI_API_KEY:
            raise LLMError(
                "OPENAI_API_KEY is not set. Add it to your .env file.",
                provider="openai",
            )
        from openai import OpenAI
        _openai_client = OpenAI(api_key=config.OPENAI_API_KEY)
    return _openai_client


def _get_anthropic():
    global _anthropic_client
    if _anthropic_client is None:
        if not config.ANTHROPIC_API_KEY:
            raise LLMError(
                "ANTHROPIC_API_KEY is not set. Add it to your .env file.",
                provider="anthropic",
            )
        import anthropic
        _anthropic_client = anthropic.Anthropic(api_key=config.ANTHROPIC_API_KEY)
    return _anthropic_client


def _get_google():
    global _google_client
    if _google_client is None:
        if not config.GOOGLE_API_KEY:
            raise LLMError(
                "GOOGLE_API_KEY is not set. Add it to your .env file.",
                provider="google",
            )
        from google import genai
        _google_client = genai.Client(api_key=config.GOOGLE_API_KEY)
    return _google_client


# ---------------------------------------------------------------------------
# Provider-specific call implementations
# ---------------------------------------------------------------------------

def _call_openai(
    system_prompt: str,
    user_prompt: str,
    model: str,
    temperature: float,
    max_tokens: int,
    json_mode: bool = False,
) -> str:
    client = _get_openai()

    kwargs: dict = {
        "model": model,
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
        "temperature": temperature,
        "max_completion_tokens": max_tokens,
    }
    if json_mode:
        kwargs["response_format"] = {"type": "json_object"}

    response = client.chat.completions.create(**kwargs)
    content = response.choices[0].message.content or ""

    usage = response.usage
    if usage:
        _record_usage("openai", model, usage.prompt_tokens or 0, usage.completion_tokens or 0)
    logger.info("OpenAI [%s]: %d chars", model, len(content))
    return content


def _call_anthropic(
    system_prompt: str,
    user_prompt: str,
    model: str,
    temperature: float,
    max_tokens: int,
    json_mode: bool = False,
) -> str:
    client = _get_anthropic()

    effective_system = system_prompt
    if json_mode:
        effective_system += (
            "\n\nIMPORTANT: Respond ONLY with a valid JSON object. No markdown fences, no explanation, no preamble."
            " Start your response with the opening brace '{' of the JSON object immediately."
        )

    response = client.messages.create(
        model=model,
        max_tokens=max_tokens,
        temperature=temperature,
        system=effective_system,
        messages=[{"role": "user", "content": user_prompt}],
    )
    content = "".join(getattr(block, "text", "") for block in response.content)

    in_tok = response.usage.input_tokens or 0
    out_tok = response.usage.output_tokens or 0
    _record_usage("anthropic", model, in_tok, out_tok)
    logger.info("Anthropic [%s]: %d chars", model, len(content))
    return content


def _call_google(
    system_prompt: str,
    user_prompt: str,
    model: str,
    temperature: float,
    max_tokens: int,
    json_mode: bool = False,
) -> str:
    from google.genai import types

    client = _get_google()
    cfg = types.GenerateContentConfig(
        system_instruction=system_prompt,
        temperature=temperature,
        max_output_tokens=max_tokens,
    )
    if json_mode:
        cfg.response_mime_type = "application/json"

    response = client.models.generate_content(model=model, contents=user_prompt, config=cfg)
    content = response.text or ""

    meta = getattr(response, "usage_metadata", None)
    if meta:
        in_tok = getattr(meta, "prompt_token_count", 0) or 0
        out_tok = getattr(meta, "candidates_token_count", 0) or 0
        _record_usage("google", model, in_tok, out_tok)
    logger.info("Google [%s]: %d chars", model, len(content))
    return content


# Provider dispatch
_PROVIDERS = {
    "openai": _call_openai,
    "anthropic": _call_anthropic,
    "google": _call_google,
}


# ---------------------------------------------------------------------------
# Public API — structured generation
# ---------------------------------------------------------------------------

def _schema_instruction(response_model: type[BaseModel]) -> str:
    schema = response_model.model_json_schema()
    return (
        "\n\nYou MUST respond with valid JSON that conforms to this schema:\n"
        f"```json\n{json.dumps(schema, indent=2)}\n```\n"
        "Respond ONLY with the JSON object. No markdown fences, no explanation."
    )


@retry(
    retry=retry_if_exception(_is_retryable),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=30),
    reraise=True,
)
def call_llm_structured(
    system_prompt: str,
    user_prompt: str,
    response_model: type[T],
    provider: str = "openai",
    model: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 4_000,
) -> T:
    """Call an LLM and parse into a Pydantic model. Provider-agnostic.

    Injects the JSON schema into the system prompt so every provider
    knows the exact structure required.

    Retries on transient errors (rate limits, server errors).
    Raises LLMError immediately for bad requests or auth errors, and
    after the lenient re-parse and JSON repair pass both fail.
    """
    model = model or config.DEFAULT_MODEL
    call_fn = _PROVIDERS.get(provider)
    if not call_fn:
        raise LLMError(
            f"Unknown provider: '{provider}'. Available: {list(_PROVIDERS.keys())}",
            provider=provider,
            model=model,
        )

    logger.info(
        "LLM structured call: provider=%s, model=%s, schema=%s",
        provider, model, response_model.__name__,
    )

    try:
        raw = call_fn(
            system_prompt + _schema_instruction(response_model),
            user_prompt,
            model,
            temperature,
            max_tokens,
            json_mode=True,
        )
    except Exception as exc:
        _raise_provider_error(exc, provider, model, "LLM structured call")

    return _parse_structured(
        raw,
        response_model,
        provider=provider,
        model=model,
        repair_fn=lambda bad: call_fn(
            _REPAIR_SYSTEM,
            _repair_user_prompt(response_model, bad),
            model,
            0.0,
            min(max(4_000, max_tokens), 32_000),
            json_mode=True,
        ),
    )


_REPAIR_SYSTEM = (
    "You are a strict JSON repair engine.\n"
    "Fix malformed JSON so it is valid and conforms to the provided schema.\n"
    "Return ONLY a single JSON object and preserve original meaning.\n"
)

# Keep repair requests bounded so huge malformed payloads do not blow context.
_REPAIR_MAX_CHARS = 160_000


def _repair_user_prompt(response_model: type[BaseModel], raw: str) -> str:
    schema_json = json.dumps(response_model.model_json_schema(), indent=2)
    return (
        "Schema:\n"
        f"```json\n{schema_json}\n```\n\n"
        "Malformed JSON to repair:\n"
        f"```json\n{raw}\n```\n"
    )


def _log_validation_errors(exc: Exception, label: str):
    if isinstance(exc, ValidationError):
        for err in exc.errors():
            logger.error(
                "%s: field=%s type=%s msg=%s",
                label,
                " → ".join(str(loc) for loc in err["loc"]),
                err["type"],
                err["msg"],
            )


def _parse_structured(raw: str, response_model: type[T], *, provider: str, model: str, repair_fn=None) -> T:
    """Validate a raw JSON reply: strict → lenient coercion → optional LLM repair."""
    raw = _strip_markdown_fences(raw)
    try:
        return response_model.model_validate_json(raw)
    except Exception as exc:
        _log_validation_errors(exc, "Schema validation error")

        logger.info("Attempting lenient re-parse with coercion...")
        try:
            data = _safe_json_loads(raw)
            _coerce_llm_output(data)
            parsed = response_model.model_validate(data)
            logger.info("Lenient re-parse succeeded!")
            return parsed
        except Exception as exc2:
            _log_validation_errors(exc2, "Lenient re-parse also failed")

        if repair_fn is not None and 20 <= len(raw) <= _REPAIR_MAX_CHARS:
            try:
                logger.info("Attempting LLM JSON repair pass...")
                repaired = _safe_json_loads(_strip_markdown_fences(repair_fn(raw)))
                _coerce_llm_output(repaired)
                parsed = response_model.model_validate(repaired)
                logger.info("LLM JSON repair pass succeeded!")
                return parsed
            except Exception as exc3:
                logger.warning("LLM JSON repair pass failed: %s", exc3)

        clean_msg = _extract_error_message(exc, provider, model)
        logger.error("Response parsing failed: %s", clean_msg)
        logger.debug("Raw response snippet: %s", raw[:500] if raw else "(empty response)")
        raise LLMError(clean_msg, provider=provider, model=model, cause=exc) from exc


def _strip_markdown_fences(text: str) -> str:
    text = (text or "").strip()
    if text.startswith("```"):
        first_newline = text.find("\n")
        if first_newline != -1:
            text = text[first_newline + 1:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


def _safe_json_loads(raw: str) -> dict:
    """Parse JSON with fallback repair for common LLM quirks.

    Handles: trailing commas, preamble/postamble around the object.
    """
    cleaned = raw.strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    # Remove trailing commas before } or ]
    fixed = re.sub(r',\s*([}\]])', r'\1', cleaned)
    try:
        return json.loads(fixed)
    except json.JSONDecodeError:
        pass

    match = re.search(r'\{.*\}', cleaned, re.DOTALL)
    if match:
        try:
            return json.loads(re.sub(r',\s*([}\]])', r'\1', match.group(0)))
        except json.JSONDecodeError:
            pass

    # Give up — raise the original error
    return json.loads(cleaned)


_SEGMENT_LOOKUP = {s.lower().replace("-", "").replace(" ", ""): s for s in MARKET_SEGMENTS}


def _coerce_llm_output(obj):
    """Recursively fix common LLM output quirks in-place.

    - Normalises marketSegment casing ("premium" → "Premium", "midrange" → "Mid-range")
    - Trims contentIdeas to exactly 3 when the model over-delivers
    - Drops null sourceLinks / tiktokLinks so list defaults apply
    """
    if isinstance(obj, dict):
        for value in obj.values():
            _coerce_llm_output(value)

        segment = obj.get("marketSegment")
        if isinstance(segment, str):
            key = segment.lower().replace("-", "").replace(" ", "")
            if key in _SEGMENT_LOOKUP:
                obj["marketSegment"] = _SEGMENT_LOOKUP[key]

        ideas = obj.get("contentIdeas")
        if isinstance(ideas, list) and len(ideas) > 3:
            logger.info("Trimming contentIdeas: model returned %d, keeping 3", len(ideas))
            obj["contentIdeas"] = ideas[:3]

        for key in ("sourceLinks", "tiktokLinks"):
            if key in obj and obj[key] is None:
                del obj[key]

    elif isinstance(obj, list):
        for item in obj:
            _coerce_llm_output(item)


# ---------------------------------------------------------------------------
# Public API — vision
# ---------------------------------------------------------------------------

@retry(
    retry=retry_if_exception(_is_retryable),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=30),
    reraise=True,
)
def call_vision_structured(
    image: str,
    media_type: str,
    instruction: str,
    response_model: type[T],
    system_prompt: str = "",
    model: str | None = None,
    temperature: float = 0.2,
    max_tokens: int = 2_000,
) -> T:
    """Send one image (data URL or http URL) plus an instruction; parse the reply.

    No repair pass: a reply that does not validate raises LLMError.
    """
    model = model or config.OPENAI_VISION
    client = _get_openai()
    logger.info(
        "Vision call: model=%s, media_type=%s, schema=%s",
        model, media_type, response_model.__name__,
    )

    try:
        response = client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": system_prompt + _schema_instruction(response_model)},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": instruction},
                        {"type": "image_url", "image_url": {"url": image}},
                    ],
                },
            ],
            temperature=temperature,
            max_completion_tokens=max_tokens,
            response_format={"type": "json_object"},
        )
    except Exception as exc:
        _raise_provider_error(exc, "openai", model, "Vision call")

    usage = response.usage
    if usage:
        _record_usage("openai", model, usage.prompt_tokens or 0, usage.completion_tokens or 0)

    return _parse_structured(
        response.choices[0].message.content or "",
        response_model,
        provider="openai",
        model=model,
    )


# ---------------------------------------------------------------------------
# Public API — embeddings
# ---------------------------------------------------------------------------

@retry(
    retry=retry_if_exception(_is_retryable),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=30),
    reraise=True,
)
def embed_text(text: str, model: str | None = None) -> list[float]:
    """Return the embedding vector for one string."""
    model = model or config.EMBEDDING_MODEL
    client = _get_openai()
    try:
        response = client.embeddings.create(model=model, input=text)
    except Exception as exc:
        _raise_provider_error(exc, "openai", model, "Embedding call")

    usage = getattr(response, "usage", None)
    if usage:
        _record_usage("openai", model, getattr(usage, "prompt_tokens", 0) or 0, 0)
    return list(response.data[0].embedding)


# ---------------------------------------------------------------------------
# Public API — tool calling
# ---------------------------------------------------------------------------

def _transcript_to_openai_messages(
    system_prompt: str,
    user_prompt: str,
    transcript: list[TranscriptEntry],
) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]
    for entry in transcript:
        assistant: dict[str, Any] = {"role": "assistant", "content": entry.turn.text or None}
        if entry.turn.tool_calls:
            assistant["tool_calls"] = [
                {
                    "id": call.call_id,
                    "type": "function",
                    "function": {"name": call.tool_name, "arguments": json.dumps(call.input)},
                }
                for call in entry.turn.tool_calls
            ]
        messages.append(assistant)
        for call in entry.turn.tool_calls:
            messages.append({
                "role": "tool",
                "tool_call_id": call.call_id,
                "content": json.dumps(entry.tool_outputs.get(call.call_id, {})),
            })
    return messages


def _parse_tool_arguments(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Tool call arguments were not valid JSON: %.200s", raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}


@retry(
    retry=retry_if_exception(_is_retryable),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=30),
    reraise=True,
)
def call_llm_tool_turn(
    system_prompt: str,
    user_prompt: str,
    transcript: list[TranscriptEntry],
    tools: list[ToolSpec],
    model: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 4_000,
) -> ModelTurn:
    """Run ONE assistant turn with tools bound; the caller owns the loop."""
    model = model or config.OPENAI_FRONTIER
    client = _get_openai()

    try:
        response = client.chat.completions.create(
            model=model,
            messages=_transcript_to_openai_messages(system_prompt, user_prompt, transcript),
            tools=[
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters,
                    },
                }
                for tool in tools
            ],
            temperature=temperature,
            max_completion_tokens=max_tokens,
        )
    except Exception as exc:
        _raise_provider_error(exc, "openai", model, "Tool turn")

    usage = response.usage
    if usage:
        _record_usage("openai", model, usage.prompt_tokens or 0, usage.completion_tokens or 0)

    message = response.choices[0].message
    calls = [
        ToolCall(
            call_id=call.id,
            tool_name=call.function.name,
            input=_parse_tool_arguments(call.function.arguments),
        )
        for call in (message.tool_calls or [])
    ]
    logger.info(
        "Tool turn [%s]: %d chars text, %d tool call(s)",
        model, len(message.content or ""), len(calls),
    )
    return ModelTurn(text=message.content or "", tool_calls=calls)
