"""Tests for continuum/memory/reflections.py: reflection validation and hashing."""

import pytest

from continuum.core.exceptions import ReflectionValidationError
from continuum.core.models import RoleType, Severity
from continuum.memory.reflections import compute_content_hash, validate_reflection


class TestValidateReflection:
    def test_valid_payload(self, make_reflection):
        reflection = validate_reflection(make_reflection(tags=[" stage:ops ", "", "unit:sweeper"]))
        assert reflection.id.startswith("ref-")
        assert reflection.severity == Severity.HIGH
        assert reflection.role_type == RoleType.AGENT
        assert reflection.tags == ["stage:ops", "unit:sweeper"]
        assert reflection.content_hash == compute_content_hash("link", reflection.pain)

    def test_collects_every_error(self, make_reflection):
        payload = make_reflection(pain="   ", confidence=11, evidence=[])
        del payload["impact"]
        with pytest.raises(ReflectionValidationError) as exc:
            validate_reflection(payload)
        fields = {e["field"] for e in exc.value.errors}
        assert {"pain", "confidence", "evidence", "impact"} <= fields

    def test_rejects_unknown_severity(self, make_reflection):
        with pytest.raises(ReflectionValidationError) as exc:
            validate_reflection(make_reflection(severity="urgent"))
        assert exc.value.errors[0]["field"] == "severity"

    def test_severity_is_optional(self, make_reflection):
        payload = make_reflection()
        del payload["severity"]
        assert validate_reflection(payload).severity is None

    def test_unknown_fields_ignored(self, make_reflection):
        reflection = validate_reflection(make_reflection(mood="grumpy"))
        assert not hasattr(reflection, "mood")


class TestContentHash:
    def test_case_and_whitespace_insensitive(self):
        assert compute_content_hash("Link", "Sweeper  floods\nchannel") == compute_content_hash(
            "link", "sweeper floods channel"
        )

    def test_author_matters(self):
        assert compute_content_hash("link", "x") != compute_content_hash("pixel", "x")
