"""Analyze-and-tag services invoked for every newly synchronised message."""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..core.interfaces import AnalysisError, AnalysisService
from ..core.models import MessageAnalysis, PersistedMessage
from .fallback import analyze_heuristically
from .llm import LLMClient, LLMError
from .prompts import build_analysis_prompt

LOGGER = logging.getLogger(__name__)

KNOWN_CATEGORIES = frozenset(
    {
        "general",
        "meeting",
        "finance",
        "project",
        "newsletter",
        "notification",
        "personal",
    }
)


class MessageTags(BaseModel):
    """Structured tags returned by the LLM."""

    priority: int = Field(ge=0, le=10, description="0 (low) to 10 (critical)")
    urgent: bool = Field(default=False)
    category: str = Field(default="general")
    action_items: list[str] = Field(default_factory=list)

    @field_validator("category")
    @classmethod
    def _normalise_category(cls, value: str) -> str:
        cleaned = value.strip().lower()
        return cleaned if cleaned in KNOWN_CATEGORIES else "general"

    @field_validator("action_items")
    @classmethod
    def _drop_blank_items(cls, value: list[str]) -> list[str]:
        return [item.strip() for item in value if item and item.strip()][:5]

    def to_analysis(self) -> MessageAnalysis:
        """Convert into the engine's analysis record."""
        return MessageAnalysis(
            priority=self.priority,
            urgent=self.urgent,
            category=self.category,
            action_items=tuple(self.action_items),
        )


class HeuristicAnalysisService(AnalysisService):
    """Keyword based tagging that never leaves the process."""

    async def analyze(self, message: PersistedMessage) -> MessageAnalysis:
        """Return heuristic tags for ``message``."""
        return analyze_heuristically(message)


class LlmAnalysisService(AnalysisService):
    """Tag messages with an LLM, falling back to heuristics on failure."""

    def __init__(self, client: LLMClient, *, fallback: bool = True) -> None:
        self._client = client
        self._fallback = fallback

    async def analyze(self, message: PersistedMessage) -> MessageAnalysis:
        """Return LLM tags for ``message`` or heuristic tags if the call fails."""
        prompt = build_analysis_prompt(message)
        try:
            raw = await self._client.generate(prompt)
            tags = MessageTags.model_validate_json(raw)
        except (LLMError, ValidationError) as exc:
            if not self._fallback:
                raise AnalysisError(
                    f"LLM analysis failed for {message.message_id}: {exc}"
                ) from exc
            LOGGER.warning(
                "LLM analysis via %s failed for %s; using heuristics: %s",
                self._client.provider_id,
                message.message_id,
                exc,
            )
            return analyze_heuristically(message)

        LOGGER.debug(
            "Tagged %s priority=%s urgent=%s category=%s",
            message.message_id,
            tags.priority,
            tags.urgent,
            tags.category,
        )
        return tags.to_analysis()


__all__ = ["HeuristicAnalysisService", "LlmAnalysisService", "MessageTags"]
