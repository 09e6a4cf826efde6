"""Trend research tool — recent, URL-attributed trend signals for one query.

Flow for research_trends():
  1. Expand the query into a few recency-flavoured variants.
  2. Search every variant in parallel (date-filtered first, unfiltered retry).
  3. Merge + dedupe the surviving rows into a recent-source pool.
  4. Ask the structured model to turn the pool into trend items, using
     ONLY pool URLs; post-filter for URL membership and recency.
  5. If that yields nothing, fall back to Exa's answer mode with the same
     URL allow-list and filters.

Sub-call failures never escape: a failed variant contributes no rows,
a failed synthesis drops to the fallback, a failed fallback returns [].
"""

from __future__ import annotations

import json
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable
from urllib.parse import urlsplit

from pydantic import ValidationError

import config
from pipeline.capabilities import Capabilities
from prompts.trend_orchestrator_system import (
    RAW_SEARCH_SYSTEM_TEMPLATE,
    TREND_SYNTHESIS_SYSTEM,
    TREND_SYNTHESIS_USER_TEMPLATE,
)
from schemas.trend_research import RecentSource, ResearchTrendsOutput, TrendItem, TrendSynthesis

logger = logging.getLogger(__name__)

RECENCY_WINDOW = timedelta(days=config.RECENCY_WINDOW_DAYS)

_SCHEME_RE = re.compile(r"^([a-z][a-z0-9+.\-]*):", re.IGNORECASE)
_HTTP_RE = re.compile(r"^https?://", re.IGNORECASE)
_HOST_RE = re.compile(r"^[a-z0-9\-._~%]+$", re.IGNORECASE)
_DEFAULT_PORTS = {"http": 80, "https": 443}

# Provider field names for a row's publish date, most current first.
# Exa has shipped each of these at some point; keep older names until
# no stored payloads use them.
PUBLISHED_DATE_FIELDS: tuple[str, ...] = (
    "publishedDate",
    "published_date",
    "published_at",
    "createdDate",
)

_SNIPPET_FIELDS: tuple[str, ...] = ("text", "highlight")


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string into an aware UTC datetime (naive → UTC)."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_iso(moment: datetime) -> str:
    """``2026-03-01T08:30:00.000Z`` — millisecond precision, always UTC."""
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def normalize_iso_date(value: Any) -> str | None:
    parsed = parse_timestamp(value)
    return to_iso(parsed) if parsed else None


def is_within_last_year(value: Any, now: datetime | None = None) -> bool:
    """True iff 0 <= now - value <= 365 days. Future and unparseable dates fail."""
    moment = parse_timestamp(value)
    if moment is None:
        return False
    age = (now or _utcnow()) - moment
    return timedelta(0) <= age <= RECENCY_WINDOW


def recency_cutoff(now: datetime | None = None) -> datetime:
    return (now or _utcnow()) - RECENCY_WINDOW


# ---------------------------------------------------------------------------
# URLs
# ---------------------------------------------------------------------------

def normalize_external_url(value: Any) -> str | None:
    """Absolute http(s) URL, lowercase scheme/host, '/' for an empty path.

    Protocol-less hosts get https://; any other scheme is rejected.
    Idempotent: normalizing a normalized URL returns it unchanged.
    """
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed:
        return None

    if not _HTTP_RE.match(trimmed):
        scheme = _SCHEME_RE.match(trimmed)
        if scheme and trimmed[scheme.end():].startswith("//"):
            return None
        trimmed = f"https://{trimmed}"

    try:
        parts = urlsplit(trimmed)
        port = parts.port
    except ValueError:
        return None

    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    if scheme not in _DEFAULT_PORTS or not host or not _HOST_RE.match(host):
        return None

    netloc = host
    if parts.username or parts.password:
        userinfo = parts.username or ""
        if parts.password:
            userinfo += f":{parts.password}"
        netloc = f"{userinfo}@{host}"
    if port is not None and port != _DEFAULT_PORTS[scheme]:
        netloc += f":{port}"

    url = f"{scheme}://{netloc}{parts.path or '/'}"
    if parts.query:
        url += f"?{parts.query}"
    if parts.fragment:
        url += f"#{parts.fragment}"
    return url


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def build_query_variants(search_query: str, now: datetime | None = None) -> list[str]:
    """The query itself plus recency/context suffixes, deduped, order kept."""
    year = (now or _utcnow()).year
    candidates = [
        search_query,
        f"{search_query} tiktok microtrend {year}",
        f"{search_query} tiktok emerging sound {year}",
        f"{search_query} creator trend report {year}",
        f"{search_query} tiktok aesthetic breakdown {year - 1} {year}",
    ]
    return [q for q in dict.fromkeys(c.strip() for c in candidates) if q]


# ---------------------------------------------------------------------------
# Raw rows → recent sources
# ---------------------------------------------------------------------------

def extract_published_date(row: dict[str, Any]) -> str | None:
    """First parseable publish date across PUBLISHED_DATE_FIELDS, in order."""
    for field in PUBLISHED_DATE_FIELDS:
        normalized = normalize_iso_date(row.get(field))
        if normalized:
            return normalized
    return None


def to_recent_source(
    row: Any,
    server_date_filtered: bool,
    now: datetime | None = None,
) -> RecentSource | None:
    """Validate one raw search row. None if the URL or date is unusable.

    A row with no publish date is kept only when the server already
    applied the date filter; it is then treated as observed now.
    """
    if not isinstance(row, dict):
        return None
    url = normalize_external_url(row.get("url"))
    if not url:
        return None

    now = now or _utcnow()
    title = row.get("title")
    title = title.strip() if isinstance(title, str) and title.strip() else url

    text = next((row[f] for f in _SNIPPET_FIELDS if isinstance(row.get(f), str)), "")
    snippet = text.strip()[:config.SNIPPET_MAX_CHARS] or "No snippet provided."

    observed = extract_published_date(row)
    if observed is None and server_date_filtered:
        observed = to_iso(now)
    if observed is None or not is_within_last_year(observed, now):
        return None

    return RecentSource(url=url, title=title, published_at=observed, snippet=snippet)


def search_recent_sources(
    capabilities: Capabilities,
    query: str,
    cutoff_iso: str,
    now: datetime | None = None,
) -> list[RecentSource]:
    """Date-filtered search first; unfiltered retry only if nothing usable came back."""
    attempts = ((cutoff_iso, True), (None, False))
    for start_date, server_filtered in attempts:
        try:
            rows = capabilities.search(
                query,
                start_published_date=start_date,
                num_results=config.EXA_NUM_RESULTS,
            )
        except Exception as exc:
            logger.warning(
                "Search attempt failed for '%s' (date_filtered=%s): %s",
                query, server_filtered, exc,
            )
            continue

        sources = [
            source
            for source in (to_recent_source(row, server_filtered, now) for row in rows or [])
            if source is not None
        ]
        if sources:
            return sources
    return []


def dedupe_sources(sources: Iterable[RecentSource]) -> list[RecentSource]:
    """One source per URL: latest publishedAt wins, a tie goes to the longer snippet."""
    best: dict[str, RecentSource] = {}
    for source in sources:
        existing = best.get(source.url)
        if existing is None:
            best[source.url] = source
            continue
        existing_time = parse_timestamp(existing.published_at)
        candidate_time = parse_timestamp(source.published_at)
        if candidate_time > existing_time:
            best[source.url] = source
        elif candidate_time == existing_time and len(source.snippet) > len(existing.snippet):
            best[source.url] = source
    return list(best.values())


# ---------------------------------------------------------------------------
# Trend items
# ---------------------------------------------------------------------------

def normalize_trend_item(
    item: TrendItem,
    allowed_urls: set[str],
    now: datetime | None = None,
) -> TrendItem | None:
    url = normalize_external_url(item.source_url)
    observed = normalize_iso_date(item.observed_at_iso)
    if not url or not observed:
        return None
    if url not in allowed_urls:
        return None
    if not is_within_last_year(observed, now):
        return None
    return item.model_copy(update={"source_url": url, "observed_at_iso": observed})


def finalize_trend_items(
    items: Iterable[TrendItem],
    allowed_urls: set[str],
    now: datetime | None = None,
) -> list[TrendItem]:
    """Normalize, drop disallowed/stale items, dedupe on (url, name), cap."""
    kept: list[TrendItem] = []
    seen: set[tuple[str, str]] = set()
    for item in items:
        normalized = normalize_trend_item(item, allowed_urls, now)
        if normalized is None:
            continue
        key = (normalized.source_url, normalized.trend_name.strip().lower())
        if key in seen:
            continue
        seen.add(key)
        kept.append(normalized)
        if len(kept) >= config.TREND_ITEM_CAP:
            break
    return kept


def trend_output_json_schema() -> dict[str, Any]:
    """Flat JSON schema for ``{"trends": [TrendItem]}`` (no $refs, for Exa)."""
    return {
        "type": "object",
        "properties": {
            "trends": {"type": "array", "items": TrendItem.model_json_schema()},
        },
        "required": ["trends"],
    }


def _coerce_trend_items(raw_trends: Any) -> list[TrendItem]:
    items: list[TrendItem] = []
    for raw in raw_trends if isinstance(raw_trends, list) else []:
        try:
            items.append(TrendItem.model_validate(raw))
        except ValidationError:
            continue
    return items


def _sources_prompt(query: str, cutoff_iso: str, sources: list[RecentSource]) -> str:
    sources_json = json.dumps(
        [s.model_dump(by_alias=True) for s in sources],
        indent=2,
        ensure_ascii=False,
    )
    return TREND_SYNTHESIS_USER_TEMPLATE.format(
        query=query,
        cutoff_iso=cutoff_iso,
        sources_json=sources_json,
    )


def _synthesize_from_sources(
    capabilities: Capabilities,
    query: str,
    cutoff_iso: str,
    sources: list[RecentSource],
    allowed_urls: set[str],
    now: datetime,
) -> list[TrendItem]:
    try:
        synthesis = capabilities.structured(
            "trend_synthesis",
            TREND_SYNTHESIS_SYSTEM,
            _sources_prompt(query, cutoff_iso, sources),
            TrendSynthesis,
        )
    except Exception as exc:
        logger.warning("Trend synthesis failed for '%s', using raw search fallback: %s", query, exc)
        return []
    return finalize_trend_items(synthesis.trends, allowed_urls, now)


def _raw_search_fallback(
    capabilities: Capabilities,
    query: str,
    cutoff_iso: str,
    allowed_urls: set[str],
    now: datetime,
) -> list[TrendItem]:
    system_prompt = RAW_SEARCH_SYSTEM_TEMPLATE.format(
        cutoff_iso=cutoff_iso,
        allowed_urls="\n".join(sorted(allowed_urls)),
    )
    try:
        parsed = capabilities.answer(system_prompt, query, trend_output_json_schema())
    except Exception as exc:
        logger.warning("Raw search fallback failed for '%s': %s", query, exc)
        return []
    return finalize_trend_items(_coerce_trend_items(parsed.get("trends")), allowed_urls, now)


# ---------------------------------------------------------------------------
# Public tool
# ---------------------------------------------------------------------------

def research_trends(
    capabilities: Capabilities,
    search_query: str,
    now: datetime | None = None,
) -> ResearchTrendsOutput:
    """Recent trend signals for one query. Never raises on sub-call failure."""
    now = now or _utcnow()
    cutoff_iso = to_iso(recency_cutoff(now))
    variants = build_query_variants(search_query, now)
    start = time.time()

    per_variant: dict[int, list[RecentSource]] = {}
    workers = max(1, min(len(variants), config.FAN_OUT_MAX_WORKERS))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="trend-search") as pool:
        futures = {
            pool.submit(search_recent_sources, capabilities, variant, cutoff_iso, now): idx
            for idx, variant in enumerate(variants)
        }
        for future in as_completed(futures):
            idx = futures[future]
            try:
                per_variant[idx] = future.result()
            except Exception as exc:
                logger.warning("Query variant '%s' failed: %s", variants[idx], exc)
                per_variant[idx] = []

    pooled = dedupe_sources(
        source for idx in range(len(variants)) for source in per_variant.get(idx, [])
    )
    logger.info(
        "Trend research '%s': %d variants → %d recent sources (%.1fs)",
        search_query, len(variants), len(pooled), time.time() - start,
    )
    if not pooled:
        return ResearchTrendsOutput(trends=[])

    allowed_urls = {source.url for source in pooled}
    trends = _synthesize_from_sources(capabilities, search_query, cutoff_iso, pooled, allowed_urls, now)
    if not trends:
        trends = _raw_search_fallback(capabilities, search_query, cutoff_iso, allowed_urls, now)

    logger.info("Trend research '%s': %d trend items", search_query, len(trends))
    return ResearchTrendsOutput(trends=trends)
