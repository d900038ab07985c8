"""Tests for continuum/orchestrator/classification.py: feature vs bug lanes."""

import pytest

from continuum.core.config import BridgeConfig
from continuum.core.models import Insight, Severity
from continuum.orchestrator.classification import InsightClassifier


@pytest.fixture
def classifier():
    config = BridgeConfig()
    return InsightClassifier(config.feature_keywords, config.bug_keywords)


def _insight(title, severity=Severity.HIGH, cluster_key="ops::noise::sweeper"):
    return Insight(
        cluster_key=cluster_key,
        workflow_stage="ops",
        failure_family="noise",
        impacted_unit="sweeper",
        title=title,
        severity_max=severity,
    )


class TestInsightClassifier:
    def test_feature_wording(self, classifier):
        assert classifier.is_feature_request(_insight("noise: Please add a digest mode for sweeper"))

    def test_bug_vocabulary_wins(self, classifier):
        assert not classifier.is_feature_request(
            _insight("noise: Feature request: fix broken digest", severity=Severity.LOW)
        )

    def test_bug_prefix_matches_longer_word(self, classifier):
        assert classifier.has_bug_vocabulary("Regression in sweeper")
        assert classifier.has_bug_vocabulary("Nightly run failed")

    def test_no_mid_word_match(self, classifier):
        assert not classifier.has_bug_vocabulary("prefix handling")
        assert not classifier.has_bug_vocabulary("debugger output")

    def test_cluster_key_is_considered(self, classifier):
        insight = _insight("noise: digest", cluster_key="ops::crash::sweeper")
        assert not classifier.is_feature_request(insight)

    def test_severity_fallback(self, classifier):
        assert classifier.is_feature_request(_insight("noise: digest", severity=None))
        assert classifier.is_feature_request(_insight("noise: digest", severity=Severity.LOW))
        assert not classifier.is_feature_request(_insight("noise: digest", severity=Severity.HIGH))

    def test_empty_vocabularies(self):
        classifier = InsightClassifier([], ["", "  "])
        assert not classifier.has_bug_vocabulary("bug")
        assert not classifier.has_feature_vocabulary("feature")
