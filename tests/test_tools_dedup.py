"""Tests for continuum/tools/dedup.py: alert content normalization."""

from continuum.tools.dedup import (
    DEDUP_KEY_LENGTH,
    MAX_NORMALIZED_LENGTH,
    compute_dedup_key,
    normalize_content,
)


class TestNormalizeContent:
    def test_lowercases_and_collapses_whitespace(self):
        assert normalize_content("  Sweeper   FAILED\n\tagain ") == "sweeper failed again"

    def test_strips_generated_ids(self):
        text = normalize_content("Task task-9f2c1 stalled after msg-77aa")
        assert "task-" not in text
        assert "msg-" not in text
        assert text == "task stalled after"

    def test_strips_uuid_and_epoch(self):
        text = normalize_content(
            "run 123e4567-e89b-12d3-a456-426614174000 failed at 1772442000123"
        )
        assert text == "run failed at"

    def test_truncates(self):
        assert len(normalize_content("x" * 1000)) == MAX_NORMALIZED_LENGTH


class TestComputeDedupKey:
    def test_same_alert_with_different_ids_collides(self):
        a = compute_dedup_key("continuity-loop", "ops", "Stalled task-aaa1 at 1772442000")
        b = compute_dedup_key("continuity-loop", "ops", "stalled  task-bbb2 at 1772449999")
        assert a == b
        assert len(a) == DEDUP_KEY_LENGTH

    def test_category_and_channel_are_part_of_key(self):
        base = compute_dedup_key("c", "ops", "same text")
        assert compute_dedup_key("other", "ops", "same text") != base
        assert compute_dedup_key("c", "general", "same text") != base
