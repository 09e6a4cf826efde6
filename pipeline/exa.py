"""Exa trend-search client.

Two entry points:
  - search(): raw neural search over Exa's /search endpoint, optionally
    date-filtered server side. Returns provider rows untouched.
  - answer(): Exa's OpenAI-compatible chat endpoint with an output schema,
    used as the raw-search fallback when source synthesis yields nothing.

Both raise SearchError on any failure; callers decide whether to swallow.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import requests

import config

logger = logging.getLogger(__name__)


class SearchError(Exception):
    """Trend-search provider failure (HTTP, timeout, malformed body)."""


def _require_key() -> str:
    if not config.EXA_SEARCH_API_KEY:
        raise SearchError("EXA_SEARCH_API_KEY is not set. Add it to your .env file.")
    return config.EXA_SEARCH_API_KEY


def search(
    query: str,
    start_published_date: str | None = None,
    include_domains: list[str] | None = None,
    num_results: int = config.EXA_NUM_RESULTS,
) -> list[dict[str, Any]]:
    """POST /search and return the raw ``results`` rows."""
    body: dict[str, Any] = {
        "query": query,
        "type": "neural",
        "numResults": num_results,
        "text": True,
    }
    if start_published_date:
        body["startPublishedDate"] = start_published_date
    if include_domains:
        body["includeDomains"] = list(include_domains)

    try:
        resp = requests.post(
            f"{config.EXA_BASE_URL}/search",
            headers={
                "content-type": "application/json",
                "x-api-key": _require_key(),
            },
            json=body,
            timeout=config.EXA_TIMEOUT_SECONDS,
        )
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as exc:
        raise SearchError(f"Exa search failed for '{query}': {exc}") from exc

    results = data.get("results") if isinstance(data, dict) else None
    rows = [row for row in (results or []) if isinstance(row, dict)]
    logger.info(
        "Exa search: %d rows for '%s' (date_filtered=%s)",
        len(rows), query, bool(start_published_date),
    )
    return rows


_answer_client = None


def _get_answer_client():
    global _answer_client
    if _answer_client is None:
        from openai import OpenAI
        _answer_client = OpenAI(base_url=config.EXA_BASE_URL, api_key=_require_key())
    return _answer_client


def answer(system_prompt: str, query: str, output_schema: dict[str, Any]) -> dict[str, Any]:
    """Ask Exa's answer model for schema-shaped JSON grounded in live search."""
    try:
        response = _get_answer_client().chat.completions.create(
            model="exa",
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": query},
            ],
            extra_body={
                "outputSchema": output_schema,
                "numResults": config.EXA_ANSWER_NUM_RESULTS,
            },
        )
        content = response.choices[0].message.content if response.choices else None
        parsed = json.loads(content or '{"trends": []}')
    except SearchError:
        raise
    except Exception as exc:
        raise SearchError(f"Exa answer failed for '{query}': {exc}") from exc

    if not isinstance(parsed, dict):
        raise SearchError(f"Exa answer for '{query}' was not a JSON object")
    return parsed
