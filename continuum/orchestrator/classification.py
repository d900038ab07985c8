"""Feature-request vs bug classification for promoted insights."""

from __future__ import annotations

import re
from typing import Iterable, Optional

from continuum.core.models import Insight, Severity


def _vocabulary_pattern(words: Iterable[str]) -> Optional[re.Pattern[str]]:
    # Leading word boundary only, so "regress" also matches "regression".
    terms = [re.escape(w.strip().lower()) for w in words if w and w.strip()]
    if not terms:
        return None
    return re.compile(r"\b(?:" + "|".join(terms) + ")", re.IGNORECASE)


class InsightClassifier:
    def __init__(self, feature_keywords: Iterable[str], bug_keywords: Iterable[str]):
        self._feature_re = _vocabulary_pattern(feature_keywords)
        self._bug_re = _vocabulary_pattern(bug_keywords)

    def has_bug_vocabulary(self, text: str) -> bool:
        return bool(self._bug_re and self._bug_re.search(text))

    def has_feature_vocabulary(self, text: str) -> bool:
        return bool(self._feature_re and self._feature_re.search(text))

    def is_feature_request(self, insight: Insight) -> bool:
        """Bug vocabulary always wins; otherwise feature wording or a low/absent
        severity marks the insight as a feature request."""
        texts = (insight.title, insight.cluster_key.replace("::", " "))
        if any(self.has_bug_vocabulary(t) for t in texts):
            return False
        if any(self.has_feature_vocabulary(t) for t in texts):
            return True
        return insight.severity_max in (None, Severity.LOW)
