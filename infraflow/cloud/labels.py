"""Resource labels and tags.

Every resource the flow creates carries ``<domain>/cluster=<technical id>``
so it can be discovered again (find-or-create, orphan recovery, dangling
load balancer sweeps).  The domain prefix is configurable per operator.
"""

from __future__ import annotations

import hashlib
from typing import Any, Dict, List, Mapping, Optional

CLUSTER_LABEL = "cluster"


def cluster_label_key(domain: str) -> str:
    """Return the label key that marks cluster ownership, e.g. ``infraflow.io/cluster``."""
    return f"{domain}/{CLUSTER_LABEL}"


def build_labels(
    domain: str,
    technical_id: str,
    extra: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    labels = {cluster_label_key(domain): technical_id}
    if extra:
        labels.update(extra)
    return labels


class LabelSelector(Dict[str, str]):
    """Equality-based selector over resource labels."""

    def matches(self, labels: Optional[Mapping[str, Any]]) -> bool:
        """True if *labels* contains every selector entry.  Extra labels are ignored."""
        if not labels:
            return not self
        for key, want in self.items():
            value = labels.get(key)
            if not isinstance(value, str) or value != want:
                return False
        return True


# ---------------------------------------------------------------------------
# EC2-style tag conversion
# ---------------------------------------------------------------------------


def to_tags(labels: Mapping[str, str], name: str = "") -> List[Dict[str, str]]:
    """Convert labels to ``[{"Key": ..., "Value": ...}]``, adding ``Name`` if given."""
    tags = [{"Key": k, "Value": v} for k, v in sorted(labels.items())]
    if name:
        tags.insert(0, {"Key": "Name", "Value": name})
    return tags


def from_tags(tags: Optional[List[Mapping[str, str]]]) -> Dict[str, str]:
    return {t.get("Key", ""): t.get("Value", "") for t in (tags or []) if t.get("Key")}


def shorten_name(name: str, limit: int) -> str:
    """Deterministically shorten *name* to at most *limit* characters.

    Long names keep a readable prefix and end in an 8-character hash of the
    full name, so the same input always yields the same output.
    """
    if len(name) <= limit:
        return name
    digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[:8]
    prefix = name[: limit - len(digest) - 1].rstrip("-")
    return f"{prefix}-{digest}"
