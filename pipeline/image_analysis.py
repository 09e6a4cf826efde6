"""Image analysis adapter — vision call in, ImageAnalysis + strategic brief out."""

from __future__ import annotations

import logging
import time

from pydantic import ValidationError

from pipeline.capabilities import Capabilities
from pipeline.llm import LLMError
from prompts.trend_orchestrator_system import IMAGE_ANALYSIS_INSTRUCTION
from schemas.image_analysis import ImageAnalysis

logger = logging.getLogger(__name__)

BRIEF_SEPARATOR = " | "


class AnalysisError(LLMError):
    """The vision provider's reply did not validate as an ImageAnalysis."""


def analyze_image(
    capabilities: Capabilities,
    image: str,
    media_type: str,
    prompt: str | None = None,
) -> ImageAnalysis:
    """Run the vision capability once. Not retried here; failures propagate."""
    start = time.time()
    try:
        analysis = capabilities.vision(
            image,
            media_type,
            prompt or IMAGE_ANALYSIS_INSTRUCTION,
            ImageAnalysis,
        )
    except AnalysisError:
        raise
    except ValidationError as exc:
        raise AnalysisError(f"Image analysis did not match the expected shape: {exc}", cause=exc) from exc
    except LLMError as exc:
        raise AnalysisError(
            f"Image analysis failed: {exc}",
            provider=exc.provider,
            model=exc.model,
            cause=exc,
        ) from exc

    if not isinstance(analysis, ImageAnalysis):
        raise AnalysisError(
            f"Image analysis returned {type(analysis).__name__}, expected ImageAnalysis"
        )

    logger.info(
        "Image analysis: aesthetic=%s archetype=%s segment=%s (%.1fs)",
        analysis.aesthetic_style,
        analysis.brand_archetype,
        analysis.market_segment,
        time.time() - start,
    )
    return analysis


def analysis_to_strategic_brief(analysis: ImageAnalysis) -> str:
    """Flatten an analysis into one prompt/embedding-ready line. Deterministic."""
    return BRIEF_SEPARATOR.join([
        f"CORE AESTHETIC: {analysis.aesthetic_style}",
        f"BRAND PERSONALITY: {analysis.brand_archetype}",
        f"VISUAL LANGUAGE: {analysis.short_description} with a {', '.join(analysis.color_palette)} palette.",
        f"STYLE MARKERS: {', '.join(analysis.visual_keywords)}",
        f"MARKET POSITION: {analysis.market_segment} targeting {analysis.target_audience}",
        f"TEXT / BRAND TEXT: {analysis.text}",
    ])


def embed_image_analysis(capabilities: Capabilities, analysis: ImageAnalysis) -> list[float]:
    return capabilities.embed(analysis_to_strategic_brief(analysis))
