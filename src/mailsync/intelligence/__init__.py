"""Message analysis: LLM tagging with deterministic fallbacks."""

from ..core.config import LlmSettings
from ..core.interfaces import AnalysisError, AnalysisService
from .analysis import HeuristicAnalysisService, LlmAnalysisService, MessageTags
from .fallback import analyze_heuristically, classify
from .llm import LLMClient, LLMError, OllamaClient
from .priority import score_priority


def build_analysis_service(settings: LlmSettings) -> AnalysisService:
    """Return the analysis service selected by ``settings``."""
    if not settings.enabled:
        return HeuristicAnalysisService()
    return LlmAnalysisService(OllamaClient(settings))


__all__ = [
    "AnalysisError",
    "HeuristicAnalysisService",
    "LLMClient",
    "LLMError",
    "LlmAnalysisService",
    "MessageTags",
    "OllamaClient",
    "analyze_heuristically",
    "build_analysis_service",
    "classify",
    "score_priority",
]
