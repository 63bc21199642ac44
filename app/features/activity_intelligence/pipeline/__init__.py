"""
Intelligence pipeline for the activity intelligence feature.

Exposes the five-phase pipeline plus the AI call interface it depends on.
MEDDPICC and deal health helpers are deterministic and importable directly.
"""

from .agents import IntelligenceAgents, OpenAIIntelligenceAgents
from .service import IntelligencePipeline, PipelineResult

__all__ = [
    "IntelligenceAgents",
    "IntelligencePipeline",
    "OpenAIIntelligenceAgents",
    "PipelineResult",
]
