"""Semantic re-ranker — keep the trend evidence closest to the image's brief.

Every researchTrends output is flattened to text, embedded alongside the
strategic brief, and scored by cosine similarity. The top-k blobs feed
the synthesis prompt, so one verbose tool result can't crowd out more
relevant ones.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor

import numpy as np

import config
from pipeline.capabilities import Capabilities
from schemas.trend_research import ResearchTrendsOutput

logger = logging.getLogger(__name__)


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """dot(a, b) / (|a| * |b|); 0.0 if either vector is empty or zero-length."""
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.size == 0 or vb.size == 0 or va.shape != vb.shape:
        return 0.0
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def research_output_to_text(output: ResearchTrendsOutput) -> str:
    """Flatten one researchTrends output into an embedding-ready blob."""
    return json.dumps(output.model_dump(mode="json", by_alias=True), ensure_ascii=False)


def _safe_embed(capabilities: Capabilities, text: str) -> list[float] | None:
    try:
        return capabilities.embed(text)
    except Exception as exc:
        logger.warning("Embedding failed (%d chars), scoring as 0: %s", len(text), exc)
        return None


def rank_trend_evidence(
    capabilities: Capabilities,
    strategic_brief: str,
    trend_texts: list[str],
    top_k: int = config.RERANK_TOP_K,
) -> list[str]:
    """Top-k trend blobs by similarity to the brief. Ties keep input order."""
    if not trend_texts:
        return []

    workers = max(1, min(len(trend_texts) + 1, config.FAN_OUT_MAX_WORKERS))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rerank-embed") as pool:
        brief_future = pool.submit(_safe_embed, capabilities, strategic_brief)
        blob_futures = [pool.submit(_safe_embed, capabilities, text) for text in trend_texts]
        brief_vector = brief_future.result()
        blob_vectors = [f.result() for f in blob_futures]

    scored = []
    for idx, vector in enumerate(blob_vectors):
        score = 0.0
        if brief_vector is not None and vector is not None:
            score = cosine_similarity(brief_vector, vector)
        scored.append((score, idx))

    # sorted() is stable, so equal scores keep their original order
    ranked = sorted(scored, key=lambda pair: pair[0], reverse=True)
    logger.info(
        "Re-ranked %d trend blobs, top scores: %s",
        len(trend_texts),
        ", ".join(f"{score:.3f}" for score, _ in ranked[:top_k]),
    )
    return [trend_texts[idx] for _, idx in ranked[:top_k]]
