"""Trend orchestrator — image in, evidence-backed TrendStrategy out.

Pipeline for orchestrate_trend_match():
  1. Research loop (analyzeImage + researchTrends, streamed step by step)
  2. Fallback escalation when the loop found no trend items
  3. Semantic re-rank of every researchTrends output against the brief
  4. Structured synthesis into a TrendStrategy
  5. Link repair + ensure_diverse_idea_links

refine_trend_strategy() is the single-shot edit path: no research, one
structured call, then the same link post-processing.
"""

from __future__ import annotations

import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Optional

import config
from pipeline.capabilities import Capabilities
from pipeline.image_analysis import analysis_to_strategic_brief, analyze_image
from pipeline.reranker import rank_trend_evidence, research_output_to_text
from pipeline.research_loop import StepCallback, find_analysis, research_results, run_research
from pipeline.strategy_helpers import (
    build_fallback_research_queries,
    ensure_diverse_idea_links,
    normalize_links,
)
from pipeline.trend_research import research_trends
from prompts.trend_orchestrator_system import (
    FALLBACK_STEP_TEXT,
    FORMATTER_SYSTEM_PROMPT,
    FORMATTER_USER_TEMPLATE,
    NO_EVIDENCE_MESSAGE,
    REFINER_SYSTEM_PROMPT,
    REFINER_USER_TEMPLATE,
)
from schemas.image_analysis import ImageAnalysis
from schemas.orchestration import OrchestrationStep, ResearchTrendsResult
from schemas.trend_research import ResearchTrendsOutput
from schemas.trend_strategy import TikTokLink, TrendStrategy

logger = logging.getLogger(__name__)


class OrchestrationError(Exception):
    """Base for failures that end an orchestration without a strategy."""


class NoEvidenceError(OrchestrationError):
    """No recent trend evidence survived the loop and the fallback escalation."""


class SynthesisError(OrchestrationError):
    """The structured model could not produce a valid TrendStrategy."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


def count_trend_items(results: list[ResearchTrendsResult]) -> int:
    return sum(len(result.output.trends) for result in results)


def _run_fallback_queries(
    capabilities: Capabilities,
    queries: list[str],
    now: Optional[datetime],
) -> list[ResearchTrendsResult]:
    """researchTrends for every query in parallel; a failed query contributes nothing."""
    outputs: dict[int, ResearchTrendsOutput] = {}
    workers = max(1, min(len(queries), config.FAN_OUT_MAX_WORKERS))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="trend-fallback") as pool:
        futures = {
            pool.submit(research_trends, capabilities, query, now): idx
            for idx, query in enumerate(queries)
        }
        for future in as_completed(futures):
            idx = futures[future]
            try:
                outputs[idx] = future.result()
            except Exception as exc:
                logger.warning("Fallback query '%s' failed: %s", queries[idx], exc)

    return [
        ResearchTrendsResult(
            call_id=f"fallback-{idx + 1}",
            input={"searchQuery": queries[idx]},
            output=outputs[idx],
        )
        for idx in range(len(queries))
        if idx in outputs
    ]


def _seed_links_from_evidence(
    ranked_outputs: list[ResearchTrendsOutput],
    limit: int = config.RERANK_TOP_K,
) -> list[TikTokLink]:
    """Top-level links built from ranked trend items, best evidence first."""
    links: dict[str, TikTokLink] = {}
    for output in ranked_outputs:
        for item in output.trends:
            if item.source_url not in links:
                links[item.source_url] = TikTokLink(url=item.source_url, trend_context=item.trend_name)
            if len(links) >= limit:
                return list(links.values())
    return list(links.values())


def synthesize_strategy(
    capabilities: Capabilities,
    strategic_brief: str,
    transcript_text: str,
    ranked_evidence: list[str],
) -> TrendStrategy:
    """One structured call. Provider retries live in the capability, not here."""
    user_prompt = FORMATTER_USER_TEMPLATE.format(
        strategic_brief=strategic_brief,
        transcript_text=transcript_text or "(the research agent returned no closing notes)",
        ranked_evidence="\n\n".join(ranked_evidence),
    )
    try:
        strategy = capabilities.structured(
            "strategy_synthesis",
            FORMATTER_SYSTEM_PROMPT,
            user_prompt,
            TrendStrategy,
        )
    except Exception as exc:
        raise SynthesisError(f"Strategy synthesis failed: {exc}", cause=exc) from exc
    if not isinstance(strategy, TrendStrategy):
        raise SynthesisError(f"Strategy synthesis returned {type(strategy).__name__}")
    return strategy


def orchestrate_trend_match(
    capabilities: Capabilities,
    image: str,
    media_type: str,
    image_url: Optional[str] = None,
    on_step: Optional[StepCallback] = None,
    now: Optional[datetime] = None,
) -> TrendStrategy:
    """Full image → strategy run. Raises AnalysisError, NoEvidenceError or SynthesisError."""
    start = time.time()
    run = run_research(capabilities, image, media_type, image_url=image_url, on_step=on_step, now=now)
    steps: list[OrchestrationStep] = list(run.steps)
    results = research_results(steps)

    analyze_output = find_analysis(steps)
    analysis: ImageAnalysis = (
        analyze_output.analysis
        if analyze_output is not None
        else analyze_image(capabilities, image, media_type)
    )
    strategic_brief = analysis_to_strategic_brief(analysis)

    if count_trend_items(results) == 0:
        fallback_step = OrchestrationStep(step_number=len(steps) + 1, text=FALLBACK_STEP_TEXT)
        steps.append(fallback_step)
        if on_step is not None:
            on_step(fallback_step)

        queries = build_fallback_research_queries(analysis)
        logger.info("No trends from the research loop; escalating with %d queries", len(queries))
        results.extend(_run_fallback_queries(capabilities, queries, now))

        if count_trend_items(results) == 0:
            raise NoEvidenceError(NO_EVIDENCE_MESSAGE)

    evidence = [result.output for result in results if result.output.trends]
    by_text = {research_output_to_text(output): output for output in evidence}
    ranked = rank_trend_evidence(capabilities, strategic_brief, list(by_text))

    strategy = synthesize_strategy(capabilities, strategic_brief, run.transcript_text, ranked)
    if not normalize_links(strategy.tiktok_links):
        seeded = _seed_links_from_evidence([by_text[text] for text in ranked])
        logger.info("Synthesized strategy had no usable tiktokLinks; seeded %d from evidence", len(seeded))
        strategy = strategy.model_copy(update={"tiktok_links": seeded})

    strategy = ensure_diverse_idea_links(strategy)
    logger.info(
        "Trend orchestration complete: %d step(s), %d trend item(s), %d ranked blob(s) (%.1fs)",
        len(steps), count_trend_items(results), len(ranked), time.time() - start,
    )
    return strategy


def refine_trend_strategy(
    capabilities: Capabilities,
    feedback: str,
    current_strategy: TrendStrategy,
    image_url: Optional[str] = None,
) -> TrendStrategy:
    """Single-shot edit of an existing strategy. Never leaves it linkless."""
    user_prompt = REFINER_USER_TEMPLATE.format(
        current_strategy_json=json.dumps(current_strategy.to_wire(), indent=2, ensure_ascii=False),
        feedback=feedback,
        image_url=image_url or "n/a",
    )
    try:
        refined = capabilities.structured(
            "strategy_refiner",
            REFINER_SYSTEM_PROMPT,
            user_prompt,
            TrendStrategy,
        )
    except Exception as exc:
        raise SynthesisError(f"Strategy refinement failed: {exc}", cause=exc) from exc

    if not normalize_links(refined.tiktok_links):
        refined = refined.model_copy(update={"tiktok_links": list(current_strategy.tiktok_links)})
    return ensure_diverse_idea_links(refined)
