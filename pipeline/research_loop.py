"""Research loop — bounded tool-calling agent over analyzeImage + researchTrends.

The loop is an explicit state machine:

    RUNNING ──(turn with tool calls)──▶ AWAITING_TOOL_RESULTS ──▶ RUNNING
       │                                                          │
       └──(turn without tool calls)──▶ DONE      (turn cap) ──▶ STEP_LIMIT_REACHED

Each model turn becomes exactly one OrchestrationStep, handed to on_step
before the next turn starts. Steps are accumulated in a local list and
returned with the run, so concurrent orchestrations share nothing.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import ValidationError

import config
from pipeline.capabilities import Capabilities
from pipeline.image_analysis import analysis_to_strategic_brief, analyze_image
from pipeline.trend_research import research_trends
from prompts.trend_orchestrator_system import (
    ANALYZE_IMAGE_TOOL_DESCRIPTION,
    RESEARCH_SYSTEM_PROMPT,
    RESEARCH_TRENDS_TOOL_DESCRIPTION,
    RESEARCH_USER_PROMPT_TEMPLATE,
)
from schemas.image_analysis import ImageAnalysis
from schemas.orchestration import (
    ANALYZE_IMAGE_TOOL,
    RESEARCH_TRENDS_TOOL,
    AnalyzeImageOutput,
    AnalyzeImageResult,
    OrchestrationStep,
    ResearchRun,
    ResearchTrendsResult,
    ToolCall,
    ToolSpec,
    TranscriptEntry,
)
from schemas.trend_research import ResearchTrendsInput

logger = logging.getLogger(__name__)

StepCallback = Callable[[OrchestrationStep], None]


class LoopState(str, Enum):
    RUNNING = "running"
    AWAITING_TOOL_RESULTS = "awaiting_tool_results"
    DONE = "done"
    STEP_LIMIT_REACHED = "step_limit_reached"


def research_tool_specs() -> list[ToolSpec]:
    return [
        ToolSpec(
            name=ANALYZE_IMAGE_TOOL,
            description=ANALYZE_IMAGE_TOOL_DESCRIPTION,
            parameters={"type": "object", "properties": {}, "additionalProperties": False},
        ),
        ToolSpec(
            name=RESEARCH_TRENDS_TOOL,
            description=RESEARCH_TRENDS_TOOL_DESCRIPTION,
            parameters={
                "type": "object",
                "properties": {
                    "searchQuery": {
                        "type": "string",
                        "description": "Niche visual or audio signal to search for",
                    },
                },
                "required": ["searchQuery"],
                "additionalProperties": False,
            },
        ),
    ]


class ResearchToolbox:
    """Executes the two research tools for one orchestration.

    The image analysis is computed once and reused if the model calls
    analyzeImage again.
    """

    def __init__(
        self,
        capabilities: Capabilities,
        image: str,
        media_type: str,
        now: Optional[datetime] = None,
    ):
        self.capabilities = capabilities
        self.image = image
        self.media_type = media_type
        self.now = now
        self._analysis: Optional[ImageAnalysis] = None

    def analyze(self) -> AnalyzeImageOutput:
        if self._analysis is None:
            self._analysis = analyze_image(self.capabilities, self.image, self.media_type)
        return AnalyzeImageOutput(
            analysis=self._analysis,
            strategic_brief=analysis_to_strategic_brief(self._analysis),
        )

    def execute(self, call: ToolCall) -> tuple[dict[str, Any], Any]:
        """Run one tool call -> (payload fed back to the model, typed result or None)."""
        if call.tool_name == ANALYZE_IMAGE_TOOL:
            output = self.analyze()
            result = AnalyzeImageResult(call_id=call.call_id, output=output)
            return output.model_dump(mode="json", by_alias=True), result

        if call.tool_name == RESEARCH_TRENDS_TOOL:
            try:
                args = ResearchTrendsInput.model_validate(call.input)
            except ValidationError as exc:
                logger.warning("researchTrends called with invalid input %s: %s", call.input, exc)
                return {"error": "researchTrends requires a non-empty 'searchQuery' string."}, None
            output = research_trends(self.capabilities, args.search_query, now=self.now)
            result = ResearchTrendsResult(
                call_id=call.call_id,
                input=args.model_dump(by_alias=True),
                output=output,
            )
            return output.model_dump(mode="json"), result

        logger.warning("Model requested unknown tool '%s'; ignoring", call.tool_name)
        return {"error": f"Unknown tool '{call.tool_name}'."}, None


def _image_reference(image_url: Optional[str]) -> str:
    return image_url or "attached to this conversation (call analyzeImage to inspect it)"


def run_research(
    capabilities: Capabilities,
    image: str,
    media_type: str,
    image_url: Optional[str] = None,
    on_step: Optional[StepCallback] = None,
    max_turns: int = config.RESEARCH_MAX_TURNS,
    now: Optional[datetime] = None,
) -> ResearchRun:
    """Drive the agent until it answers without tool calls or hits max_turns.

    Tool calls within a turn run sequentially, in the order the model
    emitted them. AnalysisError from the analyzeImage tool propagates.
    """
    toolbox = ResearchToolbox(capabilities, image, media_type, now=now)
    tools = research_tool_specs()
    user_prompt = RESEARCH_USER_PROMPT_TEMPLATE.format(
        year=(now or datetime.now(timezone.utc)).year,
        image_ref=_image_reference(image_url),
    )

    transcript: list[TranscriptEntry] = []
    steps: list[OrchestrationStep] = []
    final_text = ""
    state = LoopState.RUNNING
    start = time.time()

    while state is LoopState.RUNNING:
        if len(steps) >= max_turns:
            state = LoopState.STEP_LIMIT_REACHED
            logger.warning("Research loop hit the %d-turn cap", max_turns)
            break

        turn = capabilities.tool_turn(RESEARCH_SYSTEM_PROMPT, user_prompt, transcript, tools)
        final_text = turn.text

        if not turn.tool_calls:
            step = OrchestrationStep(
                step_number=len(steps) + 1,
                text=turn.text or None,
                reasoning_text=turn.reasoning_text,
            )
            state = LoopState.DONE
        else:
            state = LoopState.AWAITING_TOOL_RESULTS
            outputs: dict[str, Any] = {}
            results = []
            for call in turn.tool_calls:
                payload, result = toolbox.execute(call)
                outputs[call.call_id] = payload
                if result is not None:
                    results.append(result)
            transcript.append(TranscriptEntry(turn=turn, tool_outputs=outputs))
            step = OrchestrationStep(
                step_number=len(steps) + 1,
                text=turn.text or None,
                reasoning_text=turn.reasoning_text,
                tool_calls=turn.tool_calls,
                tool_results=results,
            )
            state = LoopState.RUNNING

        steps.append(step)
        logger.info(
            "Research step %d: %d tool call(s), %d result(s)",
            step.step_number, len(step.tool_calls), len(step.tool_results),
        )
        if on_step is not None:
            on_step(step)

    logger.info(
        "Research loop finished: %s after %d step(s) (%.1fs)",
        state.value, len(steps), time.time() - start,
    )
    return ResearchRun(transcript_text=final_text, steps=steps, stop_state=state.value)


def find_analysis(steps: list[OrchestrationStep]) -> Optional[AnalyzeImageOutput]:
    """The first analyzeImage output seen in the run, if the model ever asked for one."""
    for step in steps:
        for result in step.tool_results:
            if isinstance(result, AnalyzeImageResult):
                return result.output
    return None


def research_results(steps: list[OrchestrationStep]) -> list[ResearchTrendsResult]:
    return [
        result
        for step in steps
        for result in step.tool_results
        if isinstance(result, ResearchTrendsResult)
    ]
