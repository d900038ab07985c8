"""Shared fixtures for Continuum tests.

All tests use REAL dependencies: no mocks, no placeholders. Unit tests run
against the in-memory backend; PostgreSQL tests use a skip marker when the
database is unavailable.
"""

from __future__ import annotations

import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable

import pytest
from dotenv import load_dotenv

# Load .env from project root so DATABASE_URL is available
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

from continuum.core.config import (
    AgentRegistry,
    AppConfig,
    AuditConfig,
    BridgeConfig,
    ContinuityConfig,
    DatabaseConfig,
    InsightsConfig,
    SuppressionConfig,
    load_agent_registry,
    load_config,
)
from continuum.core.events import EventBus
from continuum.db.memory import InMemoryRepository
from continuum.memory.insight_store import InsightStore
from continuum.orchestrator.assignment import AssignmentEngine
from continuum.orchestrator.continuity_loop import ContinuityLoop
from continuum.orchestrator.insight_promotion import InsightPromoter
from continuum.orchestrator.insight_task_bridge import InsightTaskBridge
from continuum.orchestrator.pacing import PacingControls
from continuum.security.audit_ledger import AuditLedger
from continuum.security.mutation_alert import MutationAlertMonitor
from continuum.security.review_gate import ReviewGate
from continuum.tools.notifications import AlertDispatcher, MemoryNotificationSink
from continuum.tools.suppression_ledger import SuppressionLedger
from continuum.tools.task_board import RepositoryTaskBoard


# ---------------------------------------------------------------------------
# Service availability checks
# ---------------------------------------------------------------------------

def _get_db_config() -> DatabaseConfig:
    """Build a DatabaseConfig from environment or defaults."""
    db_url = os.getenv("DATABASE_URL")
    if db_url and db_url.startswith("postgresql://"):
        from urllib.parse import urlparse
        parsed = urlparse(db_url)
        return DatabaseConfig(
            host=parsed.hostname or "localhost",
            port=parsed.port or 5432,
            dbname=(parsed.path[1:] if parsed.path and len(parsed.path) > 1 else "continuum"),
            user=parsed.username or "continuum",
            password=parsed.password or "continuum",
        )
    return DatabaseConfig()


def _postgres_available() -> bool:
    """Check if PostgreSQL is reachable."""
    try:
        import psycopg
        config = _get_db_config()
        conn = psycopg.connect(config.connection_string, connect_timeout=5)
        conn.close()
        return True
    except Exception:
        return False


requires_postgres = pytest.mark.skipif(
    not _postgres_available(),
    reason="PostgreSQL not available",
)


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config_dir() -> Path:
    return Path(__file__).parent.parent / "config"


@pytest.fixture
def app_config(config_dir: Path) -> AppConfig:
    return load_config(config_dir=config_dir)


@pytest.fixture
def agent_registry(config_dir: Path) -> AgentRegistry:
    return load_agent_registry(config_dir=config_dir)


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def db_config() -> DatabaseConfig:
    return _get_db_config()


@pytest.fixture
def db_engine(db_config):
    """Real PostgreSQL engine: creates schema, clears tables, yields, closes."""
    from continuum.db.engine import DatabaseEngine
    engine = DatabaseEngine(db_config)
    engine.initialize_schema()
    engine.execute(
        "TRUNCATE reflections, insights, triage_decisions, promotion_audits, tasks, suppression_ledger, "
        "continuity_audit, agent_pauses, settings"
    )
    yield engine
    engine.close()


@pytest.fixture
def pg_repository(db_engine):
    from continuum.db.repository import Repository
    return Repository(db_engine)


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


# ---------------------------------------------------------------------------
# Component fixtures (in-memory backend)
# ---------------------------------------------------------------------------

@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def board(repository) -> RepositoryTaskBoard:
    return RepositoryTaskBoard(repository)


@pytest.fixture
def insight_store(repository, events) -> InsightStore:
    return InsightStore(repository, InsightsConfig(), events)


@pytest.fixture
def pacing(repository) -> PacingControls:
    return PacingControls(repository)


@pytest.fixture
def assignment(agent_registry, pacing) -> AssignmentEngine:
    return AssignmentEngine(agent_registry, pacing)


@pytest.fixture
def bridge(insight_store, board, assignment, repository, events) -> InsightTaskBridge:
    return InsightTaskBridge(
        store=insight_store,
        board=board,
        assignment=assignment,
        repository=repository,
        config=BridgeConfig(),
        events=events,
    )


@pytest.fixture
def suppression(repository) -> SuppressionLedger:
    return SuppressionLedger(repository, SuppressionConfig(window_seconds=1800))


@pytest.fixture
def sink() -> MemoryNotificationSink:
    return MemoryNotificationSink()


@pytest.fixture
def dispatcher(sink, suppression) -> AlertDispatcher:
    return AlertDispatcher(sink, suppression)


@pytest.fixture
def audit_config(tmp_path: Path) -> AuditConfig:
    return AuditConfig(data_dir=str(tmp_path / "data"))


@pytest.fixture
def audit_ledger(audit_config) -> AuditLedger:
    return AuditLedger(audit_config.ledger_path, audit_config.max_in_memory)


@pytest.fixture
def alert_monitor(audit_ledger, audit_config, dispatcher) -> MutationAlertMonitor:
    return MutationAlertMonitor(audit_ledger, audit_config, dispatcher)


@pytest.fixture
def review_gate(board, audit_ledger, alert_monitor, assignment) -> ReviewGate:
    return ReviewGate(board, audit_ledger, alert_monitor, assignment)


@pytest.fixture
def promoter(insight_store, board, assignment, repository, bridge, events) -> InsightPromoter:
    return InsightPromoter(insight_store, board, assignment, repository, bridge, events)


@pytest.fixture
def continuity_config() -> ContinuityConfig:
    return ContinuityConfig(agents=["link", "pixel"], min_ready=1, max_promote_per_cycle=2)


@pytest.fixture
def continuity_loop(
    continuity_config, board, insight_store, bridge, assignment, repository, pacing, dispatcher
) -> ContinuityLoop:
    return ContinuityLoop(
        config=continuity_config,
        board=board,
        store=insight_store,
        bridge=bridge,
        assignment=assignment,
        repository=repository,
        pacing=pacing,
        dispatcher=dispatcher,
    )


# ---------------------------------------------------------------------------
# Payload factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_reflection() -> Callable[..., dict[str, Any]]:
    """Build a valid reflection payload; keyword overrides replace fields."""

    def _make(**overrides: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "author": "link",
            "role_type": "agent",
            "confidence": 7,
            "pain": "Sweeper job floods the ops channel with duplicate notices",
            "impact": "On-call misses the one notice that matters",
            "evidence": ["logs/sweeper-2026-03-01.txt"],
            "went_well": "Sweeper itself finished on time",
            "suspected_why": "No dedup between sweeper runs",
            "proposed_fix": "Gate sweeper notices through the suppression ledger",
            "severity": "high",
            "tags": ["stage:ops", "family:noise", "unit:sweeper"],
        }
        payload.update(overrides)
        return payload

    return _make
