"""Trend Orchestrator — Web Server.

FastAPI backend exposing the orchestration as an NDJSON event stream.

    POST /api/chat     analyze one or more images, or refine a strategy
    GET  /api/health   provider keys + configured models

Usage:
    python server.py
    # Then POST to http://localhost:8000/api/chat
"""

from __future__ import annotations

import asyncio
import json
import logging
import queue as queue_mod
import threading
from contextlib import asynccontextmanager
from typing import Any, Callable, Literal, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

import config
from pipeline.capabilities import Capabilities, default_capabilities
from pipeline.image_input import normalize_image_input, resolve_image_url
from pipeline.llm import get_usage_summary, reset_usage
from pipeline.trend_orchestrator import orchestrate_trend_match, refine_trend_strategy
from schemas.orchestration import OrchestrationStep
from schemas.trend_strategy import TrendStrategy

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)

INVALID_BODY_MESSAGE = (
    "Invalid request body. Expected { prompt?: string, images: Array<{ data: string; "
    "mediaType: string; imageUrl?: string }> } or { mode: 'refine', feedback, currentStrategy }."
)

NDJSON_HEADERS = {
    "cache-control": "no-cache, no-transform",
    "connection": "keep-alive",
}


def _check_api_keys() -> list[str]:
    """Check which provider API keys are configured. Returns list of warnings."""
    warnings = []
    if not config.OPENAI_API_KEY:
        warnings.append("OPENAI_API_KEY is not set — vision, embeddings and the research loop will fail!")
    if not config.EXA_SEARCH_API_KEY:
        warnings.append("EXA_SEARCH_API_KEY is not set — trend research will find nothing")

    key_map = {
        "openai": config.OPENAI_API_KEY,
        "anthropic": config.ANTHROPIC_API_KEY,
        "google": config.GOOGLE_API_KEY,
    }
    for step in ("trend_synthesis", "strategy_synthesis", "strategy_refiner"):
        provider = config.get_step_llm_config(step)["provider"]
        if not key_map.get(provider):
            warnings.append(f"{step} uses '{provider}' but {provider.upper()}_API_KEY is not set")
    return warnings


@asynccontextmanager
async def lifespan(app: FastAPI):
    key_warnings = _check_api_keys()
    if key_warnings:
        logger.warning("=" * 60)
        logger.warning("API KEY WARNINGS:")
        for w in key_warnings:
            logger.warning("  • %s", w)
        logger.warning("Copy .env.example to .env and add your keys:")
        logger.warning("  cp .env.example .env")
        logger.warning("=" * 60)
    else:
        logger.info("API keys: all providers configured")
    yield


app = FastAPI(title="Trend Orchestrator", version="1.0.0", lifespan=lifespan)


def get_capabilities() -> Capabilities:
    return default_capabilities()


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

def _require_http_url(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if not value.strip().lower().startswith(("http://", "https://")):
        raise ValueError("imageUrl must be an absolute http(s) URL")
    return value.strip()


class ImagePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    data: str = Field(..., min_length=1)
    media_type: str = Field(..., alias="mediaType", min_length=1)
    image_url: Optional[str] = Field(default=None, alias="imageUrl")

    check_image_url = field_validator("image_url")(_require_http_url)


class AnalyzeRequest(BaseModel):
    prompt: Optional[str] = None
    images: list[ImagePayload] = Field(..., min_length=1)

    @model_validator(mode="before")
    @classmethod
    def _single_image(cls, data: Any) -> Any:
        # A lone ``image`` object is shorthand for a one-item ``images`` list.
        if isinstance(data, dict) and "images" not in data and "image" in data:
            data = {**data, "images": [data["image"]]}
        return data


class RefineRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    mode: Literal["refine"]
    feedback: str = Field(..., min_length=1)
    current_strategy: TrendStrategy = Field(..., alias="currentStrategy")
    image_url: Optional[str] = Field(default=None, alias="imageUrl")

    check_image_url = field_validator("image_url")(_require_http_url)


# ---------------------------------------------------------------------------
# NDJSON streaming
# ---------------------------------------------------------------------------

Send = Callable[[dict], None]
_END = object()


class EventChannel:
    """Bounded hand-off between the orchestration thread and the response.

    send() blocks while the queue is full, so a slow client holds back the
    next research turn. Once the client is gone, send() drops events.
    """

    def __init__(self, maxsize: int = config.STREAM_QUEUE_SIZE):
        self.queue: queue_mod.Queue = queue_mod.Queue(maxsize=max(1, maxsize))
        self.cancelled = threading.Event()

    def send(self, event: Any):
        while not self.cancelled.is_set():
            try:
                self.queue.put(event, timeout=0.5)
                return
            except queue_mod.Full:
                continue

    def next_event(self) -> Any:
        while not self.cancelled.is_set():
            try:
                return self.queue.get(timeout=0.5)
            except queue_mod.Empty:
                continue
        return _END


def _run_stream(runner: Callable[[Send], None], channel: EventChannel):
    try:
        runner(channel.send)
    except Exception as exc:
        logger.exception("Stream run failed")
        channel.send({"type": "error", "message": str(exc) or "Unknown stream error."})
    finally:
        channel.send(_END)


async def _ndjson_events(channel: EventChannel):
    loop = asyncio.get_running_loop()
    try:
        while True:
            event = await loop.run_in_executor(None, channel.next_event)
            if event is _END:
                break
            yield json.dumps(event, ensure_ascii=False) + "\n"
    finally:
        channel.cancelled.set()


def _stream(runner: Callable[[Send], None]) -> StreamingResponse:
    channel = EventChannel()
    worker = threading.Thread(
        target=_run_stream,
        args=(runner, channel),
        name="trend-orchestration",
        daemon=True,
    )
    worker.start()
    return StreamingResponse(
        _ndjson_events(channel),
        media_type="application/x-ndjson",
        headers=NDJSON_HEADERS,
    )


def _log_usage(mode: str):
    usage = get_usage_summary()
    logger.info(
        "%s run: %d LLM call(s), %d tokens, $%.4f",
        mode, usage["calls"], usage["total_tokens"], usage["total_cost"],
    )


def _analyze_runner(req: AnalyzeRequest, capabilities: Capabilities) -> Callable[[Send], None]:
    def run(send: Send):
        # Reset the LLM cost tracker for this run
        reset_usage()
        results = []
        send({"type": "status", "message": "Request accepted. Starting orchestration pipeline."})
        if req.prompt:
            logger.info("Analyze request prompt: %.200s", req.prompt)

        for image_index, image in enumerate(req.images, start=1):
            image_url = resolve_image_url(image.data, image.image_url)
            send({
                "type": "status",
                "imageIndex": image_index,
                "message": "Starting trend orchestration...",
            })

            def on_step(step: OrchestrationStep, image_index: int = image_index):
                send({"type": "step", "imageIndex": image_index, **step.to_wire()})

            strategy = orchestrate_trend_match(
                capabilities,
                normalize_image_input(image.data, image.media_type),
                image.media_type,
                image_url=image_url,
                on_step=on_step,
            )
            item = {"imageUrl": image_url, "strategy": strategy.to_wire()}
            results.append(item)
            send({"type": "image-complete", "imageIndex": image_index, **item})

        send({"type": "complete", "count": len(results), "items": results})
        _log_usage("analyze")

    return run


def _refine_runner(req: RefineRequest, capabilities: Capabilities) -> Callable[[Send], None]:
    def run(send: Send):
        reset_usage()
        send({"type": "status", "message": "Refinement started."})
        strategy = refine_trend_strategy(
            capabilities,
            req.feedback,
            req.current_strategy,
            image_url=req.image_url,
        )
        send({"type": "refine-complete", "strategy": strategy.to_wire()})
        _log_usage("refine")

    return run


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.post("/api/chat")
async def api_chat(request: Request):
    """Analyze images or refine a strategy, streaming progress as NDJSON."""
    try:
        body = await request.json()
    except ValueError:
        body = None

    try:
        refine = RefineRequest.model_validate(body)
    except ValidationError:
        refine = None
    if refine is not None:
        return _stream(_refine_runner(refine, get_capabilities()))

    try:
        analyze = AnalyzeRequest.model_validate(body)
    except ValidationError as exc:
        logger.info("Rejected /api/chat body: %s", exc.errors()[:3])
        return JSONResponse({"error": INVALID_BODY_MESSAGE}, status_code=400)
    return _stream(_analyze_runner(analyze, get_capabilities()))


@app.get("/api/health")
async def api_health():
    """Check system health — API keys, models, limits."""
    providers = {
        "openai": bool(config.OPENAI_API_KEY),
        "anthropic": bool(config.ANTHROPIC_API_KEY),
        "google": bool(config.GOOGLE_API_KEY),
        "exa": bool(config.EXA_SEARCH_API_KEY),
    }
    warnings = _check_api_keys()
    return {
        "ok": not warnings,
        "providers": providers,
        "steps": {
            step: {k: v for k, v in config.get_step_llm_config(step).items() if k in ("provider", "model")}
            for step in config.STEP_LLM_CONFIG
        },
        "embedding_model": config.EMBEDDING_MODEL,
        "research_max_turns": config.RESEARCH_MAX_TURNS,
        "warnings": warnings,
    }


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn
    print("\n  Trend Orchestrator API")
    print("  http://localhost:8000/api/health\n")
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info")
