"""Content normalization for alert deduplication.

Two operational alerts that differ only in generated identifiers or raw
epoch timestamps must collapse to the same dedup key.
"""

from __future__ import annotations

import hashlib
import re

MAX_NORMALIZED_LENGTH = 300
DEDUP_KEY_LENGTH = 20

_GENERATED_ID_RE = re.compile(r"\b(?:msg-|task-|tcomment-|ins-|ref-|cl-)\S+")
_UUID_RE = re.compile(r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b")
_EPOCH_RE = re.compile(r"\d{10,}")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_content(content: str) -> str:
    """Canonical form of alert text used for dedup key computation."""
    text = content.strip().lower()
    text = _GENERATED_ID_RE.sub("", text)
    text = _UUID_RE.sub("", text)
    text = _EPOCH_RE.sub("", text)
    text = _WHITESPACE_RE.sub(" ", text).strip()
    return text[:MAX_NORMALIZED_LENGTH]


def compute_dedup_key(category: str, channel: str, content: str) -> str:
    raw = f"{category}:{channel}:{normalize_content(content)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:DEDUP_KEY_LENGTH]
