"""Trend Lab configuration — LLM providers, per-step model assignments, limits."""

import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
ROOT_DIR = Path(__file__).parent
OUTPUT_DIR = ROOT_DIR / os.getenv("OUTPUT_DIR", "outputs")

# ---------------------------------------------------------------------------
# Provider API Keys
# ---------------------------------------------------------------------------
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY", "")
EXA_SEARCH_API_KEY = os.getenv("EXA_SEARCH_API_KEY", "")

# ---------------------------------------------------------------------------
# Model names (centralized so they're easy to update)
# ---------------------------------------------------------------------------
OPENAI_FRONTIER = "gpt-4o"
OPENAI_MINI = "gpt-4o-mini"
OPENAI_VISION = "gpt-4.1-mini"
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")

# ---------------------------------------------------------------------------
# Per-Step Model Assignments
#
# Each orchestration step can specify: provider, model, temperature, max_tokens.
# Structured steps accept "openai", "anthropic", "google".
# image_analysis and research_loop need vision / tool calling — OpenAI only.
# Override any step via env: STRATEGY_SYNTHESIS_PROVIDER=anthropic
#                            STRATEGY_SYNTHESIS_MODEL=claude-sonnet-4-5
# ---------------------------------------------------------------------------

DEFAULT_PROVIDER = os.getenv("DEFAULT_PROVIDER", "openai")
DEFAULT_MODEL = os.getenv("DEFAULT_MODEL", OPENAI_FRONTIER)

STEP_LLM_CONFIG: dict[str, dict] = {
    # Visual DNA extraction — cheap vision model is plenty for tagging
    "image_analysis": {
        "provider": "openai",
        "model": os.getenv("IMAGE_ANALYSIS_MODEL", OPENAI_VISION),
        "temperature": 0.2,
        "max_tokens": 2_000,
    },
    # Bounded tool-calling research agent
    "research_loop": {
        "provider": "openai",
        "model": os.getenv("RESEARCH_LOOP_MODEL", OPENAI_FRONTIER),
        "temperature": 0.7,
        "max_tokens": 4_000,
    },
    # Turns the recent-source pool into normalized trend items
    "trend_synthesis": {
        "provider": os.getenv("TREND_SYNTHESIS_PROVIDER", DEFAULT_PROVIDER),
        "model": os.getenv("TREND_SYNTHESIS_MODEL", OPENAI_MINI),
        "temperature": 0.3,
        "max_tokens": 6_000,
    },
    # Final TrendStrategy — the creative output, needs the strong model
    "strategy_synthesis": {
        "provider": os.getenv("STRATEGY_SYNTHESIS_PROVIDER", DEFAULT_PROVIDER),
        "model": os.getenv("STRATEGY_SYNTHESIS_MODEL", OPENAI_FRONTIER),
        "temperature": 0.9,
        "max_tokens": 6_000,
    },
    # Single-shot edit of an existing strategy
    "strategy_refiner": {
        "provider": os.getenv("STRATEGY_REFINER_PROVIDER", DEFAULT_PROVIDER),
        "model": os.getenv("STRATEGY_REFINER_MODEL", OPENAI_MINI),
        "temperature": 0.7,
        "max_tokens": 6_000,
    },
}


def get_step_llm_config(step: str) -> dict:
    """Return the LLM config for a specific orchestration step, with defaults."""
    defaults = {
        "provider": DEFAULT_PROVIDER,
        "model": DEFAULT_MODEL,
        "temperature": 0.7,
        "max_tokens": 4_000,
    }
    step_conf = STEP_LLM_CONFIG.get(step, {})
    return {**defaults, **step_conf}


# ---------------------------------------------------------------------------
# Orchestration limits
# ---------------------------------------------------------------------------

# Hard cap on research agent turns (one model message per turn).
RESEARCH_MAX_TURNS = int(os.getenv("RESEARCH_MAX_TURNS", "6"))

# Trend evidence older than this never reaches synthesis.
RECENCY_WINDOW_DAYS = 365

# Max normalized trend items returned by one research call.
TREND_ITEM_CAP = 15

# Trend-text blobs handed to the final synthesis after re-ranking.
RERANK_TOP_K = int(os.getenv("RERANK_TOP_K", "5"))

# Source links kept per content idea after the diversity pass.
IDEA_MAX_SOURCE_LINKS = 3

# Worker threads for search / embedding fan-out.
FAN_OUT_MAX_WORKERS = int(os.getenv("FAN_OUT_MAX_WORKERS", "8"))

# ---------------------------------------------------------------------------
# Exa search
# ---------------------------------------------------------------------------
EXA_BASE_URL = os.getenv("EXA_BASE_URL", "https://api.exa.ai")
EXA_NUM_RESULTS = 10
EXA_ANSWER_NUM_RESULTS = 15
EXA_TIMEOUT_SECONDS = float(os.getenv("EXA_TIMEOUT_SECONDS", "30"))
SNIPPET_MAX_CHARS = 500

# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

# Events buffered between the orchestration thread and the HTTP stream.
# 1 = one step in flight; a slow client holds back the next research turn.
STREAM_QUEUE_SIZE = int(os.getenv("STREAM_QUEUE_SIZE", "1"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
