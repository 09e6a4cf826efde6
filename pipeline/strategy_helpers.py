"""Post-processing for synthesized strategies.

ensure_diverse_idea_links() runs after every synthesis and refinement so
each content idea carries 1-3 links, preferably led by a link no other
idea leads with. Everything here is pure and deterministic.
"""

from __future__ import annotations

import re

import config
from pipeline.trend_research import normalize_external_url
from schemas.image_analysis import ImageAnalysis
from schemas.trend_strategy import TikTokLink, TrendStrategy

URL_RE = re.compile(r"(https?://[^\s\"'<>)]+|www\.[^\s\"'<>)]+)", re.IGNORECASE)
_TRAILING_PUNCT_RE = re.compile(r"[.,!?;:]+$")

DEFAULT_LINK_CONTEXT = "Supporting source"
EVIDENCE_LINK_CONTEXT = "Mentioned in source evidence"


def clean_url_token(token: str) -> str:
    return _TRAILING_PUNCT_RE.sub("", token.strip())


def _normalize_link_url(value: str) -> str | None:
    cleaned = clean_url_token(value or "")
    return normalize_external_url(cleaned) if cleaned else None


def extract_urls(text: str | None) -> list[str]:
    """Normalized URLs mentioned in free text, first-seen order."""
    if not text:
        return []
    normalized = (_normalize_link_url(match) for match in URL_RE.findall(text))
    return [url for url in dict.fromkeys(normalized) if url]


def normalize_links(links: list[TikTokLink], default_context: str = DEFAULT_LINK_CONTEXT) -> list[TikTokLink]:
    """Normalize URLs, drop unusable ones, default blank contexts, dedupe by URL."""
    unique: dict[str, TikTokLink] = {}
    for link in links:
        url = _normalize_link_url(link.url)
        if not url or url in unique:
            continue
        context = (link.trend_context or "").strip() or default_context
        unique[url] = TikTokLink(url=url, trend_context=context)
    return list(unique.values())


def ensure_diverse_idea_links(strategy: TrendStrategy) -> TrendStrategy:
    """Give every idea 1-3 links, steering first links apart where the pool allows.

    The pool is the strategy's top-level tiktok_links. Per idea, in order:
    merge declared links with URLs found in source_evidence; inject a pool
    link if the merge is empty; if the first link already leads an earlier
    idea, put one unused pool link in front (the original stays second).
    Best-effort: a one-link pool still yields one link per idea. An idea
    with no links of its own and an empty pool stays linkless; callers
    seed the pool before calling.
    """
    pool = normalize_links(strategy.tiktok_links)
    used_first: set[str] = set()
    ideas = []

    for idea in strategy.content_ideas:
        evidence = [
            TikTokLink(url=url, trend_context=EVIDENCE_LINK_CONTEXT)
            for url in extract_urls(idea.source_evidence)
        ]
        links = normalize_links(list(idea.source_links) + evidence)

        if not links and pool:
            links = [next((l for l in pool if l.url not in used_first), pool[0])]

        if links and links[0].url in used_first:
            present = {link.url for link in links}
            extra = next(
                (l for l in pool if l.url not in used_first and l.url not in present),
                None,
            )
            # front, not appended: first links must differ across ideas whenever the pool allows
            if extra is not None:
                links.insert(0, extra)

        links = links[: config.IDEA_MAX_SOURCE_LINKS]
        if links:
            used_first.add(links[0].url)
        ideas.append(idea.model_copy(update={"source_links": links}))

    return strategy.model_copy(update={"content_ideas": ideas})


def build_fallback_research_queries(analysis: ImageAnalysis) -> list[str]:
    """Broader queries derived from the analysis, for the no-evidence escalation."""
    keywords = " ".join(analysis.visual_keywords[:4])
    candidates = [
        f"{analysis.aesthetic_style} TikTok microtrend",
        f"{analysis.brand_archetype} creator trend TikTok",
        f"{keywords} viral TikTok format",
        f"{analysis.market_segment} audience TikTok trend report",
    ]
    return [q for q in dict.fromkeys(c.strip() for c in candidates) if q]
