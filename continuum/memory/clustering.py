"""Cluster keys, scoring and priority for insights.

Pure functions only. A cluster key is ``stage::family::unit``; reflections
that share one merge into the same insight.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional

from continuum.core.models import (
    SEVERITY_RANK,
    Priority,
    PromotionReadiness,
    Reflection,
    Severity,
)

SCORING_ENGINE_VERSION = "1.1.0"
HYSTERESIS_BUFFER = 0.3
PRIORITY_THRESHOLDS = {Priority.P0: 8.0, Priority.P1: 5.0, Priority.P2: 3.0}
MAX_SCORE = 10.0
MAX_PART_LENGTH = 64

_RESERVED_PREFIXES = ("stage:", "family:", "unit:", "team:")
_GENERIC_TAGS = {
    "performance", "data-loss", "runtime-error", "access", "ui", "config",
    "deployment", "testing", "uncategorized", "memory", "latency", "timeout",
}
_STOPWORDS = {
    "this", "that", "with", "from", "into", "onto", "when", "then", "than",
    "over", "under", "only", "just", "some", "much", "very", "more", "most",
    "less", "have", "has", "had", "been", "were", "was", "are", "and", "the",
    "for", "but", "not", "too", "yet",
}

# First match wins.
_FAMILY_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"truncat|cut.?off|missing.?text|incomplete"), "data-loss"),
    (re.compile(r"crash|exception|error|fail"), "runtime-error"),
    (re.compile(r"slow|timeout|latency|performance"), "performance"),
    (re.compile(r"auth|permission|denied|forbidden"), "access"),
    (re.compile(r"ui|display|render|layout|style"), "ui"),
    (re.compile(r"config|setting|env"), "config"),
    (re.compile(r"deploy|release|build|ci"), "deployment"),
    (re.compile(r"test|coverage|flak"), "testing"),
]


@dataclass(frozen=True)
class ClusterKey:
    workflow_stage: str
    failure_family: str
    impacted_unit: str

    def __str__(self) -> str:
        return f"{self.workflow_stage}::{self.failure_family}::{self.impacted_unit}"


def sanitize_cluster_part(part: Optional[str]) -> str:
    if not part:
        return ""
    text = part.strip().lower()
    text = re.sub(r":+", "-", text)
    text = re.sub(r"\s+", "-", text)
    text = re.sub(r"[^a-z0-9._-]", "", text)
    return text[:MAX_PART_LENGTH]


def infer_failure_family(pain: str) -> str:
    lower = pain.lower()
    for pattern, family in _FAMILY_PATTERNS:
        if pattern.search(lower):
            return family
    return "uncategorized"


def _unit_from_tags(tags: list[str]) -> Optional[str]:
    candidates = [t.strip() for t in tags if t and t.strip()]
    candidates = [t for t in candidates if not t.startswith(_RESERVED_PREFIXES)]
    if not candidates:
        return None
    for tag in candidates:
        if tag.lower() not in _GENERIC_TAGS:
            return tag
    return candidates[0]


def _topic_from_pain(pain: str) -> Optional[str]:
    words = re.sub(r"[^a-z0-9\s-]", " ", pain.lower()).split()
    meaningful = [w for w in words if len(w) >= 4 and w not in _STOPWORDS]
    if not meaningful:
        return None
    return "topic-" + "-".join(meaningful[:3])


def _tag_value(tags: list[str], prefix: str) -> Optional[str]:
    for tag in tags:
        if tag.startswith(prefix):
            return tag[len(prefix):]
    return None


def extract_cluster_key(reflection: Reflection) -> ClusterKey:
    """Derive the cluster key from tags, falling back to pain-text inference."""
    tags = reflection.tags
    stage = _tag_value(tags, "stage:") or "unknown"
    family = _tag_value(tags, "family:") or infer_failure_family(reflection.pain)

    explicit_unit = _tag_value(tags, "unit:")
    unit = explicit_unit or _unit_from_tags(tags) or reflection.team_id or "unknown"
    if not explicit_unit and unit == "unknown":
        unit = _topic_from_pain(reflection.pain) or unit

    return ClusterKey(
        workflow_stage=sanitize_cluster_part(stage) or "unknown",
        failure_family=sanitize_cluster_part(family) or "uncategorized",
        impacted_unit=sanitize_cluster_part(unit) or "unknown",
    )


def parse_cluster_key(cluster_key: str) -> ClusterKey:
    parts = cluster_key.split("::")
    if len(parts) != 3:
        raise ValueError(f"Malformed cluster key: {cluster_key!r}")
    return ClusterKey(*parts)


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def _severity_boost(reflections: list[Reflection]) -> float:
    boost = 0.0
    for r in reflections:
        if r.severity == Severity.CRITICAL:
            boost = max(boost, 2.0)
        elif r.severity == Severity.HIGH:
            boost = max(boost, 1.0)
    return boost


def _volume_boost(reflections: list[Reflection]) -> float:
    return min((len(reflections) - 1) * 0.5, 2.0)


def compute_score(reflections: list[Reflection]) -> float:
    """Max confidence plus severity and volume boosts, capped at 10."""
    if not reflections:
        return 0.0
    max_conf = max(r.confidence for r in reflections)
    raw = max_conf + _severity_boost(reflections) + _volume_boost(reflections)
    return min(MAX_SCORE, round(raw, 1))


def max_severity(reflections: list[Reflection]) -> Optional[Severity]:
    ranked = [r.severity for r in reflections if r.severity is not None]
    if not ranked:
        return None
    return max(ranked, key=lambda s: SEVERITY_RANK[s])


def score_to_priority(score: float) -> Priority:
    for priority, threshold in PRIORITY_THRESHOLDS.items():
        if score >= threshold:
            return priority
    return Priority.P3


def score_to_priority_with_hysteresis(score: float, previous: Optional[Priority]) -> Priority:
    """Priority that only moves once the score clears a threshold by the buffer.

    Upgrades need ``threshold + buffer``; downgrades need ``threshold - buffer``.
    Inside the buffer zone the previous priority is kept.
    """
    if previous is None:
        return score_to_priority(score)

    buf = HYSTERESIS_BUFFER
    order = [Priority.P0, Priority.P1, Priority.P2]
    prev_idx = order.index(previous) if previous in order else len(order)

    for priority in order[:prev_idx]:
        if score >= PRIORITY_THRESHOLDS[priority] + buf:
            return priority
    if prev_idx == len(order):
        return Priority.P3
    if score >= PRIORITY_THRESHOLDS[previous] - buf:
        return previous
    return score_to_priority(score)


def build_decision_trace(
    reflections: list[Reflection],
    cluster_key: str,
    readiness: PromotionReadiness,
    previous_priority: Optional[Priority],
    score: float,
) -> dict[str, Any]:
    contributors: list[dict[str, Any]] = []
    if reflections:
        contributors.append({
            "factor": "max_confidence",
            "value": max(r.confidence for r in reflections),
            "description": "Highest reflection confidence",
        })
    severity = _severity_boost(reflections)
    if severity > 0:
        contributors.append({
            "factor": "severity_boost",
            "value": severity,
            "description": "Max severity boost (high=+1, critical=+2)",
        })
    volume = _volume_boost(reflections) if reflections else 0.0
    if volume > 0:
        contributors.append({
            "factor": "volume_boost",
            "value": volume,
            "description": f"{len(reflections)} reflections (+0.5 each, max +2)",
        })
    contributors.sort(key=lambda c: c["value"], reverse=True)

    with_hysteresis = score_to_priority_with_hysteresis(score, previous_priority)
    return {
        "version": SCORING_ENGINE_VERSION,
        "dedupe_cluster_id": cluster_key,
        "promotion_band": readiness.value,
        "top_contributors": contributors,
        "hysteresis_applied": with_hysteresis != score_to_priority(score),
        "previous_priority": previous_priority.value if previous_priority else None,
        "raw_score": score,
    }
