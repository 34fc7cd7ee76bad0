"""Hunk review: prompt preparation, the inference pipeline and finding post-processing."""

from .critic import Critic, CriticConfig
from .parse import assign_finding_ids, parse_findings_response
from .pipeline import PipelineConfig, PipelineResult, ReviewPipeline
from .prepare import PrepareConfig, Prepared, PromptBuilder

__all__ = [
    "Critic",
    "CriticConfig",
    "PipelineConfig",
    "PipelineResult",
    "PrepareConfig",
    "Prepared",
    "PromptBuilder",
    "ReviewPipeline",
    "assign_finding_ids",
    "parse_findings_response",
]
