"""Trend research schemas — recent sources and the trend items synthesized from them.

RecentSource is one surviving raw search hit (URL + publish date + snippet).
TrendItem is one normalized, URL-attributed trend signal. Both are
transient: produced per research call, ranked, then dropped after synthesis.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class RecentSource(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    url: str
    title: str
    published_at: str = Field(..., alias="publishedAt", description="ISO 8601, UTC")
    snippet: str


class TrendItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    trend_name: str
    visual_vibe: str = Field(..., description="Lighting, framing, and editing style")
    audio_or_slang: str = Field(
        ...,
        description=(
            "Specific currently trending TikTok song in format "
            "'Song Title - Artist (version/remix if relevant)'"
        ),
    )
    source_url: str
    observed_at_iso: str = Field(
        ...,
        description=(
            "ISO 8601 date for when this trend signal was observed or published "
            "(must be within the last 12 months)."
        ),
    )
    why_its_viral: str


class TrendSynthesis(BaseModel):
    """Structured-generation target for turning a source pool into trend items."""

    trends: list[TrendItem] = Field(default_factory=list)


class ResearchTrendsInput(BaseModel):
    search_query: str = Field(..., alias="searchQuery", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class ResearchTrendsOutput(BaseModel):
    model_config = ConfigDict(frozen=True)

    trends: list[TrendItem] = Field(default_factory=list)
