"""Custom exception hierarchy for Continuum.

All exceptions inherit from ContinuumError so callers can catch broadly
or narrowly as needed.
"""

from __future__ import annotations

from typing import Optional


class ContinuumError(Exception):
    """Base exception for all Continuum errors."""


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

class DatabaseError(ContinuumError):
    """Failed database operation."""


class SchemaInitError(DatabaseError):
    """Failed to initialize database schema."""


class ConnectionError(DatabaseError):
    """Failed to connect to database."""


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

class ValidationError(ContinuumError):
    """Input failed validation."""


class ReflectionValidationError(ValidationError):
    """Reflection payload is missing fields or carries invalid values."""

    def __init__(self, errors: list[dict[str, str]], message: str = "Invalid reflection"):
        self.errors = errors
        detail = "; ".join(f"{e['field']}: {e['message']}" for e in errors)
        super().__init__(f"{message}: {detail}" if detail else message)


class DuplicateReflectionError(ValidationError):
    """Same author filed the same pain inside the dedup window."""

    def __init__(self, content_hash: str, existing_id: str):
        self.content_hash = content_hash
        self.existing_id = existing_id
        super().__init__(f"Duplicate reflection (matches {existing_id})")


class InsightNotFoundError(ContinuumError):
    """No insight with the requested id."""

    def __init__(self, insight_id: str):
        self.insight_id = insight_id
        super().__init__(f"Insight {insight_id} not found")


# ---------------------------------------------------------------------------
# Bridge / task board
# ---------------------------------------------------------------------------

class BridgeError(ContinuumError):
    """Insight-to-task bridging failed."""


class PromotionRejectedError(BridgeError):
    """Manual promotion refused because the insight already has a task."""

    def __init__(self, insight_id: str, task_id: Optional[str], message: str = ""):
        self.insight_id = insight_id
        self.task_id = task_id
        super().__init__(message or f"Insight {insight_id} already promoted to task {task_id}")


class TaskBoardError(ContinuumError):
    """Task board operation failed."""


class TaskNotFoundError(TaskBoardError):
    """No task with the requested id."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")


# ---------------------------------------------------------------------------
# Review mutations
# ---------------------------------------------------------------------------

class MutationRejectedError(ContinuumError):
    """A task mutation was refused at the review boundary."""


class UnauthorizedMutationError(MutationRejectedError):
    """Someone other than the assigned reviewer tried to approve a task."""

    def __init__(self, task_id: str, actor: str, expected_reviewer: str | None):
        self.task_id = task_id
        self.actor = actor
        self.expected_reviewer = expected_reviewer
        super().__init__(
            f"{actor} is not the assigned reviewer for {task_id} "
            f"(expected {expected_reviewer or 'none'})"
        )


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

class NotificationError(ContinuumError):
    """Delivering an outbound notification failed."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigError(ContinuumError):
    """Invalid or missing configuration."""
