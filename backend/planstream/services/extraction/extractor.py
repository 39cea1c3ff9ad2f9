"""Shape-tolerant reader for day plans.

Cached values and model output have come in several shapes over time: a bare
list of meals, ``{"meals": [...]}``, ``{"mealPlan": [...]}``, a day record
``{"dayNumber": 2, "meals": [...]}`` and the same wrapped once more under
``data``/``plan``/``result``. ``extract_meals`` accepts all of them and returns
either the meal list or a stable reason code. It is used for both cache reads
and model output so anything accepted from the model can be read back later.

Writes always go through ``canonicalize``.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from planstream.logging import get_logger

logger = get_logger(__name__)

OK = "ok"
CACHE_MISS = "cache_miss"
INVALID_TYPE = "invalid_type"
MEALS_EMPTY = "meals_empty"
OBJECT_NO_MEALS = "object_no_meals"
ARRAY_MISSING_ITEMS = "array_missing_items"

REASON_CODES = (OK, CACHE_MISS, INVALID_TYPE, MEALS_EMPTY, OBJECT_NO_MEALS, ARRAY_MISSING_ITEMS)

_LIST_KEYS = ("meals", "mealPlan")
_WRAPPER_KEYS = ("meals", "mealPlan", "data", "plan", "result")
_MAX_DEPTH = 2


@dataclass(frozen=True)
class Extraction:
    valid: bool
    meals: list = field(default_factory=list)
    reason: str = OK
    provenance: Optional[str] = None


def _find_meal_list(value: dict, depth: int = 0, path: str = "") -> tuple[Optional[list], Optional[str]]:
    for key in _LIST_KEYS:
        candidate = value.get(key)
        if isinstance(candidate, list):
            return candidate, f"{path}{key}"

    days = value.get("days")
    if depth == 0 and isinstance(days, list) and len(days) == 1 and isinstance(days[0], dict):
        found, where = _find_meal_list(days[0], depth + 1, f"{path}days[0].")
        if found is not None:
            return found, where

    if depth >= _MAX_DEPTH - 1:
        return None, None
    for key in _WRAPPER_KEYS:
        inner = value.get(key)
        if isinstance(inner, dict):
            found, where = _find_meal_list(inner, depth + 1, f"{path}{key}.")
            if found is not None:
                return found, where
    return None, None


def _check_meals(meals: list) -> Optional[str]:
    if not meals:
        return MEALS_EMPTY
    for meal in meals:
        if not isinstance(meal, dict) or not isinstance(meal.get("items"), list):
            return ARRAY_MISSING_ITEMS
    return None


def extract_meals(value: Any, log: Any = None, source: str = "cache") -> Extraction:
    """Resolve ``value`` to a validated meal list, or a rejection reason.

    Every meal is checked, not only the first: each must be a mapping whose
    ``items`` is a list. Never raises and never mutates ``value``.
    """
    log = log or logger

    if value is None:
        log.debug("extract.miss source=%s", source)
        return Extraction(valid=False, reason=CACHE_MISS)

    if isinstance(value, list):
        meals, provenance = value, "bare_array"
    elif isinstance(value, dict):
        meals, where = _find_meal_list(value)
        if meals is None:
            log.warning(
                "extract.rejected source=%s reason=%s keys=%s",
                source,
                OBJECT_NO_MEALS,
                sorted(str(k) for k in value)[:10],
            )
            return Extraction(valid=False, reason=OBJECT_NO_MEALS)
        if where in _LIST_KEYS and "dayNumber" in value:
            provenance = "day_record"
        else:
            provenance = f"wrapped:{where}"
    else:
        log.warning("extract.rejected source=%s reason=%s type=%s", source, INVALID_TYPE, type(value).__name__)
        return Extraction(valid=False, reason=INVALID_TYPE)

    problem = _check_meals(meals)
    if problem is not None:
        log.warning("extract.rejected source=%s reason=%s provenance=%s", source, problem, provenance)
        return Extraction(valid=False, reason=problem, provenance=provenance)

    log.info("extract.ok source=%s provenance=%s meals=%s", source, provenance, len(meals))
    return Extraction(valid=True, meals=list(meals), reason=OK, provenance=provenance)


def canonicalize(meals: list) -> dict:
    """The only shape ever written to the cache."""
    return {"meals": list(meals)}
