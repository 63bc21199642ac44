"""
Engine wiring.

Builds the queue, decision, batch and pipeline services once per process
and hands them out as one IntelligenceEngine. Nothing here is a module
level singleton: the API keeps its engine on app.state and each worker
job builds its own.
"""

from dataclasses import dataclass

from app.config import Settings
from app.features.activity_intelligence.domain import Clock, EngineConfig, utc_now
from app.features.activity_intelligence.jobs.queue_worker import QueueWorker
from app.features.activity_intelligence.pipeline import (
    IntelligenceAgents,
    IntelligencePipeline,
    OpenAIIntelligenceAgents,
)
from app.features.activity_intelligence.repository.intelligence_repository import (
    IntelligenceRepository,
)
from app.features.activity_intelligence.repository.queue_repository import QueueRepository
from app.features.activity_intelligence.services import (
    ActivityTriggerService,
    BatchReprocessingController,
    HistoricalDecisionService,
)
from app.services.openai_service import OpenAIService


@dataclass
class IntelligenceEngine:
    config: EngineConfig
    queue: QueueRepository
    repository: IntelligenceRepository
    pipeline: IntelligencePipeline
    batch_controller: BatchReprocessingController
    decision_service: HistoricalDecisionService
    trigger: ActivityTriggerService
    worker: QueueWorker


def build_engine(
    config: EngineConfig,
    *,
    queue=None,
    repository=None,
    agents: IntelligenceAgents | None = None,
    clock: Clock = utc_now,
) -> IntelligenceEngine:
    """Assemble an engine; tests pass in-memory queue/repository/agents."""
    if queue is None:
        queue = QueueRepository(
            max_retries=config.max_retries, processing_node=config.processing_node
        )
    if repository is None:
        repository = IntelligenceRepository()
    if agents is None:
        agents = OpenAIIntelligenceAgents(OpenAIService())

    pipeline = IntelligencePipeline(repository, agents, config, clock)
    batch_controller = BatchReprocessingController(queue, repository, pipeline, config, clock)
    decision_service = HistoricalDecisionService(
        repository, batch_controller, pipeline, config, clock
    )

    return IntelligenceEngine(
        config=config,
        queue=queue,
        repository=repository,
        pipeline=pipeline,
        batch_controller=batch_controller,
        decision_service=decision_service,
        trigger=ActivityTriggerService(queue, repository, clock),
        worker=QueueWorker(queue, decision_service, batch_controller, config, clock),
    )


def build_engine_from_settings(settings: Settings) -> IntelligenceEngine:
    return build_engine(settings.get_engine_config())
