"""
Activity intelligence feature package.

This vertical slice keeps the queue store, the routing and reprocessing
services, the worker, the five-phase pipeline and the HTTP router
co-located so the whole ordering/commit protocol can be read in one place.
"""

# Re-export the primary building blocks for easy access.
from .domain import Activity, EngineConfig, QueueEntry  # noqa: F401
from .bootstrap import IntelligenceEngine, build_engine, build_engine_from_settings  # noqa: F401
from .api.router import router as intelligence_router  # noqa: F401
