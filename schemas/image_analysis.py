"""Image analysis schema — the visual/brand DNA extracted from one image.

Produced by the vision step, flattened into the strategic brief that
drives both the research prompts and the embedding re-ranker.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


MarketSegment = Literal["Budget", "Mid-range", "Premium", "Luxury"]
MARKET_SEGMENTS: tuple[str, ...] = ("Budget", "Mid-range", "Premium", "Luxury")


class ImageAnalysis(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    title: str = ""
    short_description: str = Field(..., alias="shortDescription")
    aesthetic_style: str = Field(
        ...,
        alias="aestheticStyle",
        description="e.g. Minimalist, Maximalist, Y2K, Industrial, Cinematic",
    )
    color_palette: list[str] = Field(..., alias="colorPalette")
    brand_archetype: str = Field(
        ...,
        alias="brandArchetype",
        description="e.g. The Rebel, The Caregiver, The Explorer, The Luxury Minimalist",
    )
    visual_keywords: list[str] = Field(
        ...,
        alias="visualKeywords",
        min_length=1,
        description="5-10 tags describing the style, e.g. ['matte', 'grainy', 'symmetrical']",
    )
    target_audience: str = Field(..., alias="targetAudience")
    market_segment: MarketSegment = Field(..., alias="marketSegment")
    text: str = Field(default="", description="Any text visible in the image")
