"""PostgreSQL data access layer for Continuum.

All SQL queries live here. Components never write raw SQL; they call
Repository methods that return Pydantic models. Atomicity comes from the
database itself: advisory transaction locks serialize insight merges per
cluster, ON CONFLICT upserts keep the suppression ledger race-free, and
task linking is a compare-and-set UPDATE.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Optional

from continuum.core.exceptions import DuplicateReflectionError
from continuum.core.models import (
    ContinuityAction,
    Insight,
    InsightFilter,
    InsightMetadata,
    InsightStatus,
    PauseEntry,
    PromotionAudit,
    Reflection,
    SuppressionLedgerEntry,
    Task,
    TaskStatus,
    TaskUpdate,
    TriageDecision,
)
from continuum.db.base import BaseRepository, MergeFn
from continuum.db.engine import DatabaseEngine

logger = logging.getLogger("continuum.db.repository")

_INSIGHT_COLUMNS = (
    "id", "cluster_key", "workflow_stage", "failure_family", "impacted_unit",
    "title", "status", "score", "priority", "reflection_ids", "independent_count",
    "evidence_refs", "authors", "promotion_readiness", "recurring_candidate",
    "cooldown_until", "cooldown_reason", "severity_max", "task_id", "metadata",
    "created_at", "updated_at",
)

_TASK_COLUMNS = (
    "id", "title", "description", "status", "priority", "assignee", "reviewer",
    "tags", "done_criteria", "created_by", "metadata", "created_at", "updated_at",
)


class Repository(BaseRepository):
    """Data access layer wrapping DatabaseEngine with typed methods."""

    def __init__(self, engine: DatabaseEngine):
        self.engine = engine

    # -------------------------------------------------------------------
    # Reflections + insights
    # -------------------------------------------------------------------

    def ingest(
        self,
        reflection: Reflection,
        cluster_key: str,
        dedup_since: datetime,
        merge_fn: MergeFn,
    ) -> Insight:
        with self.engine.transaction() as cur:
            cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))",
                        [f"reflection:{reflection.content_hash}"])
            cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", [f"insight:{cluster_key}"])

            cur.execute(
                """SELECT id FROM reflections
                   WHERE content_hash = %s AND created_at >= %s
                   ORDER BY created_at DESC LIMIT 1""",
                [reflection.content_hash, dedup_since],
            )
            dup = cur.fetchone()
            if dup is not None:
                raise DuplicateReflectionError(reflection.content_hash, dup["id"])

            cur.execute(
                """INSERT INTO reflections (id, author, role_type, confidence, pain, impact,
                       evidence, went_well, suspected_why, proposed_fix, severity, tags,
                       task_id, team_id, metadata, content_hash, created_at)
                   VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)""",
                [
                    reflection.id,
                    reflection.author,
                    reflection.role_type.value,
                    reflection.confidence,
                    reflection.pain,
                    reflection.impact,
                    json.dumps(reflection.evidence),
                    reflection.went_well,
                    reflection.suspected_why,
                    reflection.proposed_fix,
                    reflection.severity.value if reflection.severity else None,
                    json.dumps(reflection.tags),
                    reflection.task_id,
                    reflection.team_id,
                    reflection.metadata.model_dump_json(exclude_none=True),
                    reflection.content_hash,
                    reflection.created_at,
                ],
            )

            cur.execute("SELECT * FROM insights WHERE cluster_key = %s FOR UPDATE", [cluster_key])
            row = cur.fetchone()
            existing = _row_to_insight(row) if row else None

            ids = (existing.reflection_ids if existing else []) + [reflection.id]
            cur.execute("SELECT * FROM reflections WHERE id = ANY(%s) ORDER BY created_at", [ids])
            cluster_reflections = [_row_to_reflection(r) for r in cur.fetchall()]

            insight = merge_fn(existing, cluster_reflections)

            placeholders = ", ".join(["%s"] * len(_INSIGHT_COLUMNS))
            updates = ", ".join(
                f"{col} = EXCLUDED.{col}"
                for col in _INSIGHT_COLUMNS
                if col not in ("id", "cluster_key", "created_at", "task_id")
            )
            cur.execute(
                f"""INSERT INTO insights ({", ".join(_INSIGHT_COLUMNS)})
                    VALUES ({placeholders})
                    ON CONFLICT (cluster_key) DO UPDATE SET {updates},
                        task_id = COALESCE(insights.task_id, EXCLUDED.task_id)
                    RETURNING *""",
                _insight_params(insight),
            )
            return _row_to_insight(cur.fetchone())

    def get_reflection(self, reflection_id: str) -> Optional[Reflection]:
        row = self.engine.fetch_one("SELECT * FROM reflections WHERE id = %s", [reflection_id])
        if row is None:
            return None
        return _row_to_reflection(row)

    def list_reflections(self, reflection_ids: list[str]) -> list[Reflection]:
        if not reflection_ids:
            return []
        rows = self.engine.fetch_all(
            "SELECT * FROM reflections WHERE id = ANY(%s) ORDER BY created_at",
            [list(reflection_ids)],
        )
        return [_row_to_reflection(r) for r in rows]

    def get_insight(self, insight_id: str) -> Optional[Insight]:
        row = self.engine.fetch_one("SELECT * FROM insights WHERE id = %s", [insight_id])
        if row is None:
            return None
        return _row_to_insight(row)

    def get_insight_by_cluster_key(self, cluster_key: str) -> Optional[Insight]:
        row = self.engine.fetch_one("SELECT * FROM insights WHERE cluster_key = %s", [cluster_key])
        if row is None:
            return None
        return _row_to_insight(row)

    def list_insights(self, insight_filter: InsightFilter) -> list[Insight]:
        clauses: list[str] = []
        params: list[Any] = []
        if insight_filter.status is not None:
            clauses.append("status = %s")
            params.append(insight_filter.status.value)
        if insight_filter.priority is not None:
            clauses.append("priority = %s")
            params.append(insight_filter.priority.value)
        if insight_filter.workflow_stage:
            clauses.append("workflow_stage = %s")
            params.append(insight_filter.workflow_stage)
        if insight_filter.failure_family:
            clauses.append("failure_family = %s")
            params.append(insight_filter.failure_family)
        if insight_filter.impacted_unit:
            clauses.append("impacted_unit = %s")
            params.append(insight_filter.impacted_unit)
        if insight_filter.recurring_candidate is not None:
            clauses.append("recurring_candidate = %s")
            params.append(insight_filter.recurring_candidate)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([insight_filter.limit, insight_filter.offset])
        rows = self.engine.fetch_all(
            f"""SELECT * FROM insights {where}
                ORDER BY score DESC, updated_at DESC
                LIMIT %s OFFSET %s""",
            params,
        )
        return [_row_to_insight(r) for r in rows]

    def insight_counts(self) -> dict[str, dict[str, int]]:
        by_status = self.engine.fetch_all(
            "SELECT status AS key, COUNT(*) AS n FROM insights GROUP BY status"
        )
        by_priority = self.engine.fetch_all(
            "SELECT priority AS key, COUNT(*) AS n FROM insights GROUP BY priority"
        )
        return {
            "status": {r["key"]: int(r["n"]) for r in by_status},
            "priority": {r["key"]: int(r["n"]) for r in by_priority},
        }

    def update_insight_status(
        self,
        insight_id: str,
        status: InsightStatus,
        now: datetime,
        cooldown_until: Optional[datetime] = None,
        cooldown_reason: Optional[str] = None,
        metadata: Optional[InsightMetadata] = None,
    ) -> Optional[Insight]:
        row = self.engine.fetch_one(
            """UPDATE insights SET
                   status = %s,
                   updated_at = %s,
                   cooldown_until = COALESCE(%s, cooldown_until),
                   cooldown_reason = COALESCE(%s, cooldown_reason),
                   metadata = COALESCE(%s::jsonb, metadata)
               WHERE id = %s
               RETURNING *""",
            [
                status.value,
                now,
                cooldown_until,
                cooldown_reason,
                metadata.model_dump_json(exclude_none=True) if metadata else None,
                insight_id,
            ],
        )
        if row is None:
            return None
        return _row_to_insight(row)

    def link_insight_task(self, insight_id: str, task_id: str, now: datetime) -> bool:
        affected = self.engine.execute(
            """UPDATE insights SET task_id = %s, status = %s, updated_at = %s
               WHERE id = %s AND task_id IS NULL""",
            [task_id, InsightStatus.TASK_CREATED.value, now, insight_id],
        )
        return affected == 1

    def list_unbridged_promoted(self) -> list[Insight]:
        rows = self.engine.fetch_all(
            """SELECT * FROM insights
               WHERE status = %s AND task_id IS NULL
               ORDER BY score DESC, created_at ASC""",
            [InsightStatus.PROMOTED.value],
        )
        return [_row_to_insight(r) for r in rows]

    def create_triage_decision(self, decision: TriageDecision) -> TriageDecision:
        self.engine.execute(
            """INSERT INTO triage_decisions (id, insight_id, action, reviewer, rationale,
                   outcome_task_id, previous_status, new_status, timestamp)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)""",
            [
                decision.id,
                decision.insight_id,
                decision.action.value,
                decision.reviewer,
                decision.rationale,
                decision.outcome_task_id,
                decision.previous_status.value,
                decision.new_status.value,
                decision.timestamp,
            ],
        )
        return decision

    def list_triage_decisions(self, insight_id: Optional[str] = None) -> list[TriageDecision]:
        if insight_id:
            rows = self.engine.fetch_all(
                "SELECT * FROM triage_decisions WHERE insight_id = %s ORDER BY timestamp",
                [insight_id],
            )
        else:
            rows = self.engine.fetch_all("SELECT * FROM triage_decisions ORDER BY timestamp")
        return [TriageDecision(**r) for r in rows]

    def list_recurring_insights(self) -> list[Insight]:
        rows = self.engine.fetch_all(
            """SELECT i.* FROM insights i
               LEFT JOIN promotion_audits pa ON pa.insight_id = i.id
               WHERE i.recurring_candidate AND i.task_id IS NULL
                 AND i.status IN (%s, %s) AND pa.id IS NULL
               ORDER BY i.score DESC, i.created_at ASC""",
            [InsightStatus.CANDIDATE.value, InsightStatus.PROMOTED.value],
        )
        return [_row_to_insight(r) for r in rows]

    # -------------------------------------------------------------------
    # Promotion audits
    # -------------------------------------------------------------------

    def create_promotion_audit(self, audit: PromotionAudit) -> bool:
        affected = self.engine.execute(
            """INSERT INTO promotion_audits (id, insight_id, task_id, promoted_by, contract,
                   insight_snapshot, created_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s)
               ON CONFLICT (insight_id) DO NOTHING""",
            [
                audit.id,
                audit.insight_id,
                audit.task_id,
                audit.promoted_by,
                audit.contract.model_dump_json(),
                json.dumps(audit.insight_snapshot),
                audit.created_at,
            ],
        )
        return affected == 1

    def get_promotion_audit(self, insight_id: str) -> Optional[PromotionAudit]:
        row = self.engine.fetch_one(
            "SELECT * FROM promotion_audits WHERE insight_id = %s", [insight_id]
        )
        return _row_to_promotion_audit(row) if row else None

    def list_promotion_audits(self, limit: int = 50) -> list[PromotionAudit]:
        rows = self.engine.fetch_all(
            "SELECT * FROM promotion_audits ORDER BY created_at DESC LIMIT %s", [limit]
        )
        return [_row_to_promotion_audit(r) for r in rows]

    # -------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------

    def create_task(self, task: Task) -> Task:
        placeholders = ", ".join(["%s"] * len(_TASK_COLUMNS))
        self.engine.execute(
            f"INSERT INTO tasks ({', '.join(_TASK_COLUMNS)}) VALUES ({placeholders})",
            _task_params(task),
        )
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        row = self.engine.fetch_one("SELECT * FROM tasks WHERE id = %s", [task_id])
        if row is None:
            return None
        return _row_to_task(row)

    def list_tasks(
        self,
        statuses: Optional[list[TaskStatus]] = None,
        assignee: Optional[str] = None,
    ) -> list[Task]:
        clauses: list[str] = []
        params: list[Any] = []
        if statuses:
            clauses.append("status = ANY(%s)")
            params.append([s.value for s in statuses])
        if assignee:
            clauses.append("LOWER(assignee) = LOWER(%s)")
            params.append(assignee)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.engine.fetch_all(f"SELECT * FROM tasks {where} ORDER BY created_at", params)
        return [_row_to_task(r) for r in rows]

    def update_task(self, task_id: str, update: TaskUpdate, now: datetime) -> Optional[Task]:
        with self.engine.transaction() as cur:
            cur.execute("SELECT * FROM tasks WHERE id = %s FOR UPDATE", [task_id])
            row = cur.fetchone()
            if row is None:
                return None
            task = _row_to_task(row).with_update(update, now)
            cur.execute(
                """UPDATE tasks SET title = %s, description = %s, status = %s, priority = %s,
                       assignee = %s, reviewer = %s, tags = %s, done_criteria = %s,
                       metadata = %s, updated_at = %s
                   WHERE id = %s""",
                [
                    task.title,
                    task.description,
                    task.status.value,
                    task.priority.value,
                    task.assignee,
                    task.reviewer,
                    json.dumps(task.tags),
                    json.dumps(task.done_criteria),
                    task.metadata.model_dump_json(exclude_none=True),
                    task.updated_at,
                    task_id,
                ],
            )
            return task

    def delete_task(self, task_id: str) -> bool:
        return self.engine.execute("DELETE FROM tasks WHERE id = %s", [task_id]) == 1

    # -------------------------------------------------------------------
    # Suppression ledger
    # -------------------------------------------------------------------

    def suppression_upsert(
        self, entry: SuppressionLedgerEntry, window_start: datetime
    ) -> SuppressionLedgerEntry:
        row = self.engine.fetch_one(
            """INSERT INTO suppression_ledger (dedup_key, category, channel, sender,
                   content_preview, hit_count, suppressed, first_seen_at, last_seen_at)
               VALUES (%s, %s, %s, %s, %s, 1, FALSE, %s, %s)
               ON CONFLICT (dedup_key) DO UPDATE SET
                   hit_count = CASE WHEN suppression_ledger.last_seen_at >= %s
                                    THEN suppression_ledger.hit_count + 1 ELSE 1 END,
                   suppressed = suppression_ledger.last_seen_at >= %s,
                   first_seen_at = CASE WHEN suppression_ledger.last_seen_at >= %s
                                        THEN suppression_ledger.first_seen_at
                                        ELSE EXCLUDED.first_seen_at END,
                   last_seen_at = EXCLUDED.last_seen_at,
                   sender = EXCLUDED.sender,
                   content_preview = EXCLUDED.content_preview
               RETURNING *""",
            [
                entry.dedup_key,
                entry.category,
                entry.channel,
                entry.sender,
                entry.content_preview,
                entry.first_seen_at,
                entry.last_seen_at,
                window_start,
                window_start,
                window_start,
            ],
        )
        return SuppressionLedgerEntry(**row)

    def suppression_prune(self, cutoff: datetime) -> int:
        return self.engine.execute(
            "DELETE FROM suppression_ledger WHERE last_seen_at < %s", [cutoff]
        )

    def list_suppression_entries(self) -> list[SuppressionLedgerEntry]:
        rows = self.engine.fetch_all("SELECT * FROM suppression_ledger ORDER BY last_seen_at DESC")
        return [SuppressionLedgerEntry(**r) for r in rows]

    # -------------------------------------------------------------------
    # Continuity audit
    # -------------------------------------------------------------------

    def create_continuity_action(self, action: ContinuityAction) -> ContinuityAction:
        self.engine.execute(
            """INSERT INTO continuity_audit (id, kind, agent, detail, insight_id, task_id, timestamp)
               VALUES (%s, %s, %s, %s, %s, %s, %s)""",
            [
                action.id,
                action.kind.value,
                action.agent,
                action.detail,
                action.insight_id,
                action.task_id,
                action.timestamp,
            ],
        )
        return action

    def list_continuity_actions(
        self,
        agent: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[ContinuityAction]:
        clauses: list[str] = []
        params: list[Any] = []
        if agent:
            clauses.append("agent = %s")
            params.append(agent)
        if since:
            clauses.append("timestamp >= %s")
            params.append(since)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        rows = self.engine.fetch_all(
            f"SELECT * FROM continuity_audit {where} ORDER BY timestamp DESC LIMIT %s",
            params,
        )
        return [ContinuityAction(**r) for r in rows]

    # -------------------------------------------------------------------
    # Pause + settings
    # -------------------------------------------------------------------

    def upsert_pause(self, entry: PauseEntry) -> PauseEntry:
        self.engine.execute(
            """INSERT INTO agent_pauses (scope, paused, paused_at, paused_until, reason, paused_by)
               VALUES (%s, %s, %s, %s, %s, %s)
               ON CONFLICT (scope) DO UPDATE SET
                   paused = EXCLUDED.paused,
                   paused_at = EXCLUDED.paused_at,
                   paused_until = EXCLUDED.paused_until,
                   reason = EXCLUDED.reason,
                   paused_by = EXCLUDED.paused_by""",
            [entry.scope, entry.paused, entry.paused_at, entry.paused_until,
             entry.reason, entry.paused_by],
        )
        return entry

    def get_pause(self, scope: str) -> Optional[PauseEntry]:
        row = self.engine.fetch_one("SELECT * FROM agent_pauses WHERE scope = %s", [scope])
        if row is None:
            return None
        return PauseEntry(**row)

    def list_pauses(self) -> list[PauseEntry]:
        rows = self.engine.fetch_all("SELECT * FROM agent_pauses ORDER BY scope")
        return [PauseEntry(**r) for r in rows]

    def get_setting(self, key: str) -> Optional[dict[str, Any]]:
        row = self.engine.fetch_one("SELECT value FROM settings WHERE key = %s", [key])
        if row is None:
            return None
        value = row["value"]
        return json.loads(value) if isinstance(value, str) else value

    def set_setting(self, key: str, value: dict[str, Any], now: datetime) -> None:
        self.engine.execute(
            """INSERT INTO settings (key, value, updated_at) VALUES (%s, %s, %s)
               ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = EXCLUDED.updated_at""",
            [key, json.dumps(value, default=str), now],
        )


# ---------------------------------------------------------------------------
# Row -> model converters
# ---------------------------------------------------------------------------

def _json_value(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row_to_reflection(row: dict) -> Reflection:
    return Reflection(
        id=row["id"],
        author=row["author"],
        role_type=row["role_type"],
        confidence=row["confidence"],
        pain=row["pain"],
        impact=row["impact"],
        evidence=_json_value(row.get("evidence"), []),
        went_well=row["went_well"],
        suspected_why=row["suspected_why"],
        proposed_fix=row["proposed_fix"],
        severity=row.get("severity"),
        tags=_json_value(row.get("tags"), []),
        task_id=row.get("task_id"),
        team_id=row.get("team_id"),
        metadata=_json_value(row.get("metadata"), {}),
        content_hash=row["content_hash"],
        created_at=row["created_at"],
    )


def _row_to_insight(row: dict) -> Insight:
    data = dict(row)
    for key in ("reflection_ids", "evidence_refs", "authors"):
        data[key] = _json_value(data.get(key), [])
    data["metadata"] = _json_value(data.get("metadata"), {})
    return Insight(**data)


def _row_to_promotion_audit(row: dict) -> PromotionAudit:
    data = dict(row)
    data["contract"] = _json_value(data.get("contract"), {})
    data["insight_snapshot"] = _json_value(data.get("insight_snapshot"), {})
    return PromotionAudit(**data)


def _insight_params(insight: Insight) -> list[Any]:
    return [
        insight.id,
        insight.cluster_key,
        insight.workflow_stage,
        insight.failure_family,
        insight.impacted_unit,
        insight.title,
        insight.status.value,
        insight.score,
        insight.priority.value,
        json.dumps(insight.reflection_ids),
        insight.independent_count,
        json.dumps(insight.evidence_refs),
        json.dumps(insight.authors),
        insight.promotion_readiness.value,
        insight.recurring_candidate,
        insight.cooldown_until,
        insight.cooldown_reason,
        insight.severity_max.value if insight.severity_max else None,
        insight.task_id,
        insight.metadata.model_dump_json(exclude_none=True),
        insight.created_at,
        insight.updated_at,
    ]


def _row_to_task(row: dict) -> Task:
    data = dict(row)
    data["tags"] = _json_value(data.get("tags"), [])
    data["done_criteria"] = _json_value(data.get("done_criteria"), [])
    data["metadata"] = _json_value(data.get("metadata"), {})
    return Task(**data)


def _task_params(task: Task) -> list[Any]:
    return [
        task.id,
        task.title,
        task.description,
        task.status.value,
        task.priority.value,
        task.assignee,
        task.reviewer,
        json.dumps(task.tags),
        json.dumps(task.done_criteria),
        task.created_by,
        task.metadata.model_dump_json(exclude_none=True),
        task.created_at,
        task.updated_at,
    ]
