"""Capability bundle — the external providers the orchestrator talks to.

Every orchestration entry point takes a Capabilities value instead of
reaching for module-level clients, so tests hand in stubs and concurrent
requests never share mutable provider state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Protocol, TypeVar

from pydantic import BaseModel

import config
from schemas.orchestration import ModelTurn, ToolSpec, TranscriptEntry

T = TypeVar("T", bound=BaseModel)


class VisionFn(Protocol):
    def __call__(self, image: str, media_type: str, instruction: str, response_model: type[T]) -> T: ...


class StructuredFn(Protocol):
    def __call__(self, step: str, system_prompt: str, user_prompt: str, response_model: type[T]) -> T: ...


class ToolTurnFn(Protocol):
    def __call__(
        self,
        system_prompt: str,
        user_prompt: str,
        transcript: list[TranscriptEntry],
        tools: list[ToolSpec],
    ) -> ModelTurn: ...


class SearchFn(Protocol):
    def __call__(
        self,
        query: str,
        start_published_date: str | None = None,
        include_domains: list[str] | None = None,
        num_results: int = ...,
    ) -> list[dict[str, Any]]: ...


@dataclass(frozen=True)
class Capabilities:
    vision: VisionFn
    embed: Callable[[str], list[float]]
    search: SearchFn
    answer: Callable[[str, str, dict[str, Any]], dict[str, Any]]
    structured: StructuredFn
    tool_turn: ToolTurnFn


def default_capabilities() -> Capabilities:
    """Wire the real providers, reading per-step model config from config.py."""
    from pipeline import exa
    from pipeline.llm import (
        call_llm_structured,
        call_llm_tool_turn,
        call_vision_structured,
        embed_text,
    )
    from prompts.trend_orchestrator_system import IMAGE_ANALYSIS_SYSTEM

    def vision(image, media_type, instruction, response_model):
        conf = config.get_step_llm_config("image_analysis")
        return call_vision_structured(
            image,
            media_type,
            instruction,
            response_model,
            system_prompt=IMAGE_ANALYSIS_SYSTEM,
            model=conf["model"],
            temperature=conf["temperature"],
            max_tokens=conf["max_tokens"],
        )

    def structured(step, system_prompt, user_prompt, response_model):
        conf = config.get_step_llm_config(step)
        return call_llm_structured(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            response_model=response_model,
            provider=conf["provider"],
            model=conf["model"],
            temperature=conf["temperature"],
            max_tokens=conf["max_tokens"],
        )

    def tool_turn(system_prompt, user_prompt, transcript, tools):
        conf = config.get_step_llm_config("research_loop")
        return call_llm_tool_turn(
            system_prompt,
            user_prompt,
            transcript,
            tools,
            model=conf["model"],
            temperature=conf["temperature"],
            max_tokens=conf["max_tokens"],
        )

    return Capabilities(
        vision=vision,
        embed=embed_text,
        search=exa.search,
        answer=exa.answer,
        structured=structured,
        tool_turn=tool_turn,
    )
