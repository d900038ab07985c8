"""Component factory for Continuum.

Creates and wires every component of the continuity pipeline (storage,
suppression, audit, insight store, assignment, bridge, promotion, continuity loop)
so the Coordinator and the CLI receive fully-initialized dependencies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from continuum.core.config import (
    AgentRegistry,
    AppConfig,
    load_agent_registry,
    load_config,
)
from continuum.core.events import EventBus
from continuum.db.base import BaseRepository
from continuum.db.engine import DatabaseEngine
from continuum.db.memory import InMemoryRepository
from continuum.db.repository import Repository
from continuum.memory.insight_store import InsightStore
from continuum.orchestrator.assignment import AssignmentEngine
from continuum.orchestrator.continuity_loop import ContinuityLoop
from continuum.orchestrator.insight_promotion import InsightPromoter
from continuum.orchestrator.insight_task_bridge import InsightTaskBridge
from continuum.orchestrator.pacing import PacingControls
from continuum.orchestrator.scheduler import ContinuityScheduler
from continuum.security.audit_ledger import AuditLedger
from continuum.security.mutation_alert import MutationAlertMonitor
from continuum.security.review_gate import ReviewGate
from continuum.tools.notifications import AlertDispatcher, NotificationSink, create_sink
from continuum.tools.suppression_ledger import SuppressionLedger
from continuum.tools.task_board import RepositoryTaskBoard, TaskBoard

logger = logging.getLogger("continuum.factory")

MEMORY_BACKEND = "memory"


@dataclass
class ComponentBundle:
    """Container for all initialized components.

    The factory builds the bundle once; the Coordinator owns it afterwards.
    ``db_engine`` is None on the in-memory backend.
    """

    config: AppConfig
    registry: AgentRegistry
    repository: BaseRepository
    events: EventBus
    board: TaskBoard
    suppression: SuppressionLedger
    sink: NotificationSink
    dispatcher: AlertDispatcher
    audit_ledger: AuditLedger
    alert_monitor: MutationAlertMonitor
    insight_store: InsightStore
    pacing: PacingControls
    assignment: AssignmentEngine
    bridge: InsightTaskBridge
    promoter: InsightPromoter
    review_gate: ReviewGate
    continuity_loop: ContinuityLoop
    scheduler: ContinuityScheduler
    db_engine: Optional[DatabaseEngine] = None


class ComponentFactory:
    """Factory for creating and wiring all Continuum components.

    Usage:
        bundle = ComponentFactory.create(config_dir=Path("config"), backend="memory")
        coordinator = Coordinator(bundle)
    """

    @staticmethod
    def create(
        config_dir: Optional[Path] = None,
        env: Optional[str] = None,
        backend: Optional[str] = None,
        initialize_schema: bool = True,
        sink: Optional[NotificationSink] = None,
        config: Optional[AppConfig] = None,
    ) -> ComponentBundle:
        """Create and wire all components.

        Args:
            config_dir: Path to config/ directory. Default: project root/config.
            env: Environment name for config overlay (e.g., "test").
            backend: Overrides database.backend ("postgresql" or "memory").
            initialize_schema: Whether to run schema.sql on startup (PostgreSQL only).
            sink: Notification sink to use instead of the configured one.
            config: Preloaded config; skips the YAML cascade.

        Returns:
            ComponentBundle with every component ready to use.
        """
        logger.info("Initializing components...")

        # --- Config ---
        config = config or load_config(config_dir=config_dir, env=env)
        registry = load_agent_registry(config_dir=config_dir)
        logger.info("Config loaded (%d agents registered)", len(registry.agents))

        # --- Storage ---
        db_engine: Optional[DatabaseEngine] = None
        backend = (backend or config.database.backend).lower()
        if backend == MEMORY_BACKEND:
            repository: BaseRepository = InMemoryRepository()
            logger.info("Using in-memory storage backend")
        else:
            db_engine = DatabaseEngine(config.database)
            if initialize_schema:
                db_engine.initialize_schema()
            repository = Repository(db_engine)

        events = EventBus()
        board = RepositoryTaskBoard(repository)

        # --- Suppression + notifications ---
        suppression = SuppressionLedger(repository, config.suppression)
        sink = sink or create_sink(config.notifications)
        dispatcher = AlertDispatcher(sink, suppression)

        # --- Audit ---
        audit_ledger = AuditLedger(config.audit.ledger_path, config.audit.max_in_memory)
        loaded = audit_ledger.load()
        logger.info("Audit ledger ready (%d entries loaded)", loaded)
        alert_monitor = MutationAlertMonitor(audit_ledger, config.audit, dispatcher)

        # --- Pipeline ---
        insight_store = InsightStore(repository, config.insights, events)
        pacing = PacingControls(repository)
        assignment = AssignmentEngine(registry, pacing)
        bridge = InsightTaskBridge(
            store=insight_store,
            board=board,
            assignment=assignment,
            repository=repository,
            config=config.bridge,
            events=events,
        )
        promoter = InsightPromoter(insight_store, board, assignment, repository, bridge, events)
        review_gate = ReviewGate(board, audit_ledger, alert_monitor, assignment)
        continuity_loop = ContinuityLoop(
            config=config.continuity,
            board=board,
            store=insight_store,
            bridge=bridge,
            assignment=assignment,
            repository=repository,
            pacing=pacing,
            dispatcher=dispatcher,
        )
        scheduler = ContinuityScheduler(
            continuity_loop, suppression, interval_seconds=config.continuity.interval_seconds
        )

        logger.info("All components initialized")

        return ComponentBundle(
            config=config,
            registry=registry,
            repository=repository,
            events=events,
            board=board,
            suppression=suppression,
            sink=sink,
            dispatcher=dispatcher,
            audit_ledger=audit_ledger,
            alert_monitor=alert_monitor,
            insight_store=insight_store,
            pacing=pacing,
            assignment=assignment,
            bridge=bridge,
            promoter=promoter,
            review_gate=review_gate,
            continuity_loop=continuity_loop,
            scheduler=scheduler,
            db_engine=db_engine,
        )

    @staticmethod
    def close(bundle: ComponentBundle) -> None:
        """Cleanly shut down all components."""
        bundle.scheduler.stop()
        bundle.bridge.stop()
        close_sink = getattr(bundle.sink, "close", None)
        if close_sink is not None:
            close_sink()
        if bundle.db_engine is not None:
            bundle.db_engine.close()
        logger.info("All components shut down")
