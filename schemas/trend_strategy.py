"""Trend strategy schema — the final creative artifact.

Wire names follow the client contract (camelCase for the top level and
sourceLinks, snake_case inside each idea), so every model is populated
by field name in Python and dumped with ``by_alias=True``.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class TikTokLink(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    trend_context: str = Field(default="", alias="trendContext")


class TikTokScript(BaseModel):
    hook: str = Field(..., description="The first 1.5 seconds that stop the scroll")
    visual_direction: str = Field(
        ...,
        description="Camera angle, lighting type (e.g. high-contrast), and editing pace",
    )
    audio_spec: str = Field(
        ...,
        description="A real track: 'Song Title - Artist (optional remix note)'",
    )


class ContentIdea(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str
    tiktok_script: TikTokScript
    source_evidence: str = ""
    source_links: list[TikTokLink] = Field(
        default_factory=list,
        alias="sourceLinks",
        description="1-3 links backing this idea",
    )
    cultural_context: str = Field(
        ..., description="Why does this specific sub-culture care about this?"
    )


class TrendStrategy(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    strategic_brief: str = Field(..., alias="strategicBrief")
    content_ideas: list[ContentIdea] = Field(
        ..., alias="contentIdeas", min_length=3, max_length=3
    )
    tiktok_links: list[TikTokLink] = Field(
        default_factory=list,
        alias="tiktokLinks",
        description="At least one TikTok-style link backing the strategy",
    )
    reasoning: str = ""

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
