import hashlib
import json
from typing import Any, Optional


def content_hash(*parts: Any) -> str:
    """First 16 hex chars of sha256 over a stable JSON encoding of ``parts``."""
    blob = json.dumps(list(parts), sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()[:16]


def plan_cache_key(
    prefix: str,
    version: str,
    day: int,
    profile: dict,
    targets: dict,
    meal_targets: Optional[dict] = None,
) -> str:
    digest = content_hash(profile, targets, meal_targets or {})
    return f"{prefix}:{version}:meals:day{day}:{digest}"
