"""All Pydantic data models for Continuum.

Defines the data contracts shared by the insight store, the bridge, the
continuity loop, the suppression ledger and the review audit trail. Every
table row and every record handed between components has a model here.
"""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:16]}"


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class RoleType(str, enum.Enum):
    HUMAN = "human"
    AGENT = "agent"
    TEAM = "team"


class Severity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_RANK: dict[Severity, int] = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class Priority(str, enum.Enum):
    P0 = "P0"
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"


class InsightStatus(str, enum.Enum):
    CANDIDATE = "candidate"
    PROMOTED = "promoted"
    PENDING_TRIAGE = "pending_triage"
    TASK_CREATED = "task_created"


class PromotionReadiness(str, enum.Enum):
    NOT_READY = "not_ready"
    READY = "ready"
    PROMOTED = "promoted"
    OVERRIDE = "override"


class TaskStatus(str, enum.Enum):
    BACKLOG = "backlog"
    TODO = "todo"
    DOING = "doing"
    VALIDATING = "validating"
    BLOCKED = "blocked"
    DONE = "done"


class ContinuityActionKind(str, enum.Enum):
    BACKLOG_ASSIGNED = "backlog-assigned"
    INSIGHT_PROMOTED = "insight-promoted"
    NO_CANDIDATES = "no-candidates"


class AlertType(str, enum.Enum):
    UNAUTHORIZED_APPROVAL = "unauthorized_approval"
    FLIP_ATTEMPT = "flip_attempt"


class TriageAction(str, enum.Enum):
    APPROVE = "approve"
    DISMISS = "dismiss"


class IntensityPreset(str, enum.Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


TEAM_SCOPE = "__team__"


# ---------------------------------------------------------------------------
# Metadata bags (typed known keys, unknown keys pass through)
# ---------------------------------------------------------------------------

class ReflectionMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    promotion_override: Optional[bool] = None


class InsightMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    lane: Optional[str] = None
    promotion_override: Optional[bool] = None
    scoring_version: Optional[str] = None
    decision_trace: Optional[dict[str, Any]] = None
    triage: Optional[dict[str, Any]] = None


class TaskMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    source: Optional[str] = None
    source_insight: Optional[str] = None
    insight_id: Optional[str] = None
    source_reflection: Optional[str] = None
    source_reflections: Optional[list[str]] = None
    cluster_key: Optional[str] = None
    severity: Optional[str] = None
    lane: Optional[str] = None
    reviewer_approved: Optional[bool] = None
    review_state: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[str] = None
    review_last_activity_at: Optional[str] = None
    entered_validating_at: Optional[str] = None
    review_delta_note: Optional[str] = None
    approval_rejected: Optional[bool] = None
    wip_override: Optional[str] = None
    blocked_by: Optional[list[str]] = None
    assignment_decision: Optional[dict[str, Any]] = None

    def get(self, key: str, default: Any = None) -> Any:
        value = getattr(self, key, None)
        return default if value is None else value


# ---------------------------------------------------------------------------
# Reflections and insights
# ---------------------------------------------------------------------------

class Reflection(BaseModel):
    id: str = Field(default_factory=lambda: new_id("ref"))
    author: str
    role_type: RoleType = RoleType.AGENT
    confidence: float
    pain: str
    impact: str
    evidence: list[str]
    went_well: str
    suspected_why: str
    proposed_fix: str
    severity: Optional[Severity] = None
    tags: list[str] = Field(default_factory=list)
    task_id: Optional[str] = None
    team_id: Optional[str] = None
    metadata: ReflectionMetadata = Field(default_factory=ReflectionMetadata)
    content_hash: str = ""
    created_at: datetime = Field(default_factory=_now)


class Insight(BaseModel):
    id: str = Field(default_factory=lambda: new_id("ins"))
    cluster_key: str
    workflow_stage: str
    failure_family: str
    impacted_unit: str
    title: str
    status: InsightStatus = InsightStatus.CANDIDATE
    score: float = 0.0
    priority: Priority = Priority.P3
    reflection_ids: list[str] = Field(default_factory=list)
    independent_count: int = 0
    evidence_refs: list[str] = Field(default_factory=list)
    authors: list[str] = Field(default_factory=list)
    promotion_readiness: PromotionReadiness = PromotionReadiness.NOT_READY
    recurring_candidate: bool = False
    cooldown_until: Optional[datetime] = None
    cooldown_reason: Optional[str] = None
    severity_max: Optional[Severity] = None
    task_id: Optional[str] = None
    metadata: InsightMetadata = Field(default_factory=InsightMetadata)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class InsightFilter(BaseModel):
    status: Optional[InsightStatus] = None
    priority: Optional[Priority] = None
    workflow_stage: Optional[str] = None
    failure_family: Optional[str] = None
    impacted_unit: Optional[str] = None
    recurring_candidate: Optional[bool] = None
    limit: int = Field(default=50, ge=1, le=200)
    offset: int = Field(default=0, ge=0)


class TriageDecision(BaseModel):
    id: str = Field(default_factory=lambda: new_id("tri"))
    insight_id: str
    action: TriageAction
    reviewer: str
    rationale: str = ""
    outcome_task_id: Optional[str] = None
    previous_status: InsightStatus
    new_status: InsightStatus
    timestamp: datetime = Field(default_factory=_now)


class PromotionContract(BaseModel):
    """Commitments a manual promotion must name before a task is opened."""

    model_config = ConfigDict(str_strip_whitespace=True)

    owner: str = Field(min_length=1)
    reviewer: str = Field(min_length=1)
    eta: str = Field(min_length=1)
    acceptance_check: str = Field(min_length=1)
    artifact_proof_requirement: str = Field(min_length=1)
    next_checkpoint_eta: str = Field(min_length=1)


class PromotionAudit(BaseModel):
    id: str = Field(default_factory=lambda: new_id("paudit"))
    insight_id: str
    task_id: str
    promoted_by: str
    contract: PromotionContract
    insight_snapshot: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)


class RecurringCandidate(BaseModel):
    insight_id: str
    cluster_key: str
    failure_family: str
    impacted_unit: str
    title: str
    reflection_count: int
    score: float
    priority: Priority
    severity_max: Optional[Severity] = None
    suggested_owner: Optional[str] = None
    suggested_lane: Optional[str] = None
    reason: str = ""


# ---------------------------------------------------------------------------
# Tasks (board collaborator records)
# ---------------------------------------------------------------------------

class Task(BaseModel):
    id: str = Field(default_factory=lambda: new_id("task"))
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.TODO
    priority: Priority = Priority.P2
    assignee: Optional[str] = None
    reviewer: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    done_criteria: list[str] = Field(default_factory=list)
    created_by: str = "system"
    metadata: TaskMetadata = Field(default_factory=TaskMetadata)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def with_update(self, update: TaskUpdate, now: Optional[datetime] = None) -> Task:
        """Return a copy with the update's non-null fields applied.

        Metadata keys are merged into the existing bag rather than replacing it.
        """
        changes = update.model_dump(exclude_none=True, exclude={"metadata"})
        merged_meta = self.metadata.model_dump()
        merged_meta.update(update.metadata)
        changes["metadata"] = TaskMetadata(**merged_meta)
        changes["updated_at"] = now or _now()
        return self.model_copy(update=changes)


class TaskUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[Priority] = None
    assignee: Optional[str] = None
    reviewer: Optional[str] = None
    tags: Optional[list[str]] = None
    done_criteria: Optional[list[str]] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Suppression
# ---------------------------------------------------------------------------

class SuppressionLedgerEntry(BaseModel):
    dedup_key: str
    category: str
    channel: str
    sender: Optional[str] = None
    content_preview: str = ""
    hit_count: int = 1
    suppressed: bool = False
    first_seen_at: datetime = Field(default_factory=_now)
    last_seen_at: datetime = Field(default_factory=_now)


class SuppressionCheckResult(BaseModel):
    is_duplicate: bool
    dedup_key: str
    existing: Optional[SuppressionLedgerEntry] = None


class SuppressionStats(BaseModel):
    total_entries: int = 0
    total_suppressed: int = 0
    total_hits: int = 0
    active_entries: int = 0
    window_seconds: int = 0
    by_category: dict[str, int] = Field(default_factory=dict)
    by_channel: dict[str, int] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Audit and alerts
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    timestamp: datetime = Field(default_factory=_now)
    task_id: str
    actor: str
    field: str
    before: Any = None
    after: Any = None
    context: str = ""


class MutationAlert(BaseModel):
    type: AlertType
    actor: str
    task_id: str
    task_title: str = ""
    expected_reviewer: Optional[str] = None
    from_value: Any = None
    to_value: Any = None
    message: str = ""
    throttled: bool = False
    timestamp: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------

class AgentRole(BaseModel):
    name: str
    role: str
    affinity_tags: list[str] = Field(default_factory=list)
    protected_domains: list[str] = Field(default_factory=list)
    wip_cap: int = 1


class AssignmentScore(BaseModel):
    agent: str
    score: float
    affinity: float
    wip_penalty: float
    throughput: float
    wip_count: int
    wip_cap: int
    over_cap: bool


class AssignmentSuggestion(BaseModel):
    suggested: Optional[str] = None
    scores: list[AssignmentScore] = Field(default_factory=list)
    protected_match: Optional[str] = None
    reason: str = ""


class WipCheck(BaseModel):
    agent: str
    allowed: bool
    wip_count: int
    wip_cap: int
    message: Optional[str] = None


# ---------------------------------------------------------------------------
# Continuity, pause and intensity
# ---------------------------------------------------------------------------

class ContinuityAction(BaseModel):
    id: str = Field(default_factory=lambda: new_id("cl"))
    kind: ContinuityActionKind
    agent: str
    detail: str = ""
    insight_id: Optional[str] = None
    task_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)


class PauseEntry(BaseModel):
    scope: str
    paused: bool = True
    paused_at: datetime = Field(default_factory=_now)
    paused_until: Optional[datetime] = None
    reason: Optional[str] = None
    paused_by: Optional[str] = None


class IntensityLimits(BaseModel):
    wip_limit: int
    max_pulls_per_hour: int
    batch_interval_seconds: int


class IntensityState(BaseModel):
    preset: IntensityPreset = IntensityPreset.NORMAL
    limits: IntensityLimits
    updated_at: datetime = Field(default_factory=_now)
    updated_by: Optional[str] = None
