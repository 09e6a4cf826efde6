"""Orchestration schemas — research-agent turns, tool traffic and emitted steps.

Tool results are a tagged union keyed by ``toolName`` so downstream code
(fallback counting, re-ranking) never has to sniff untyped payloads.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from schemas.image_analysis import ImageAnalysis
from schemas.trend_research import ResearchTrendsOutput


ANALYZE_IMAGE_TOOL = "analyzeImage"
RESEARCH_TRENDS_TOOL = "researchTrends"


class _WireModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


# ---------------------------------------------------------------------------
# Tool calls and results
# ---------------------------------------------------------------------------

class ToolCall(_WireModel):
    call_id: str = Field(..., alias="toolCallId")
    tool_name: str = Field(..., alias="toolName")
    input: dict[str, Any] = Field(default_factory=dict)


class AnalyzeImageOutput(_WireModel):
    analysis: ImageAnalysis
    strategic_brief: str = Field(..., alias="strategicBrief")


class AnalyzeImageResult(_WireModel):
    call_id: str = Field(..., alias="toolCallId")
    tool_name: Literal["analyzeImage"] = Field(ANALYZE_IMAGE_TOOL, alias="toolName")
    output: AnalyzeImageOutput


class ResearchTrendsResult(_WireModel):
    call_id: str = Field(..., alias="toolCallId")
    tool_name: Literal["researchTrends"] = Field(RESEARCH_TRENDS_TOOL, alias="toolName")
    input: dict[str, Any] = Field(default_factory=dict)
    output: ResearchTrendsOutput


ToolResult = Annotated[
    Union[AnalyzeImageResult, ResearchTrendsResult],
    Field(discriminator="tool_name"),
]


# ---------------------------------------------------------------------------
# Model turns
# ---------------------------------------------------------------------------

class ModelTurn(_WireModel):
    """One assistant message from the tool-calling model."""

    text: str = ""
    reasoning_text: Optional[str] = Field(default=None, alias="reasoningText")
    tool_calls: list[ToolCall] = Field(default_factory=list, alias="toolCalls")


class ToolSpec(_WireModel):
    """A tool offered to the model: name, description, JSON-schema parameters."""

    name: str
    description: str
    parameters: dict[str, Any]


class TranscriptEntry(_WireModel):
    """A completed turn plus the raw outputs fed back to the model."""

    turn: ModelTurn
    tool_outputs: dict[str, Any] = Field(default_factory=dict, alias="toolOutputs")


# ---------------------------------------------------------------------------
# Emitted steps
# ---------------------------------------------------------------------------

class OrchestrationStep(_WireModel):
    step_number: int = Field(..., alias="stepNumber", ge=1)
    text: Optional[str] = None
    reasoning_text: Optional[str] = Field(default=None, alias="reasoningText")
    tool_calls: list[ToolCall] = Field(default_factory=list, alias="toolCalls")
    tool_results: list[ToolResult] = Field(default_factory=list, alias="toolResults")

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ResearchRun(_WireModel):
    """What the research loop hands back to the orchestrator."""

    transcript_text: str = Field(default="", alias="transcriptText")
    steps: list[OrchestrationStep] = Field(default_factory=list)
    stop_state: str = Field(default="done", alias="stopState")
