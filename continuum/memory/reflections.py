"""Reflection intake: payload validation and content hashing.

A reflection is a structured postmortem filed by an agent, a human or a
team. Validation collects every field error at once so the caller can
report them together instead of failing on the first.
"""

from __future__ import annotations

import hashlib
import re
from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints
from pydantic import ValidationError as PydanticValidationError

from continuum.core.exceptions import ReflectionValidationError
from continuum.core.models import Reflection, ReflectionMetadata, RoleType, Severity

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]

_WHITESPACE_RE = re.compile(r"\s+")


class ReflectionInput(BaseModel):
    """Shape of an incoming reflection payload."""

    model_config = ConfigDict(extra="ignore")

    author: NonEmptyStr
    role_type: RoleType = RoleType.AGENT
    confidence: float = Field(ge=0, le=10)
    pain: NonEmptyStr
    impact: NonEmptyStr
    evidence: list[NonEmptyStr] = Field(min_length=1)
    went_well: NonEmptyStr
    suspected_why: NonEmptyStr
    proposed_fix: NonEmptyStr
    severity: Optional[Severity] = None
    tags: list[str] = Field(default_factory=list)
    task_id: Optional[str] = None
    team_id: Optional[str] = None
    metadata: ReflectionMetadata = Field(default_factory=ReflectionMetadata)


def compute_content_hash(author: str, pain: str) -> str:
    """Stable hash of who reported what, insensitive to case and spacing."""
    canonical = _WHITESPACE_RE.sub(" ", f"{author}\n{pain}".strip().lower())
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def validate_reflection(payload: dict[str, Any] | ReflectionInput) -> Reflection:
    """Validate a raw payload and build a Reflection ready for ingestion.

    Raises:
        ReflectionValidationError: with one ``{field, message}`` per problem.
    """
    if isinstance(payload, ReflectionInput):
        data = payload
    else:
        try:
            data = ReflectionInput.model_validate(payload)
        except PydanticValidationError as e:
            errors = [
                {
                    "field": ".".join(str(part) for part in err["loc"]) or "payload",
                    "message": err["msg"],
                }
                for err in e.errors()
            ]
            raise ReflectionValidationError(errors) from e

    tags = [t.strip() for t in data.tags if t and t.strip()]
    return Reflection(
        author=data.author,
        role_type=data.role_type,
        confidence=data.confidence,
        pain=data.pain,
        impact=data.impact,
        evidence=list(data.evidence),
        went_well=data.went_well,
        suspected_why=data.suspected_why,
        proposed_fix=data.proposed_fix,
        severity=data.severity,
        tags=tags,
        task_id=data.task_id,
        team_id=data.team_id,
        metadata=data.metadata,
        content_hash=compute_content_hash(data.author, data.pain),
    )
