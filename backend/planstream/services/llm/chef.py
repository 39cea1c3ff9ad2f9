import copy
import json
import time
from typing import Any, Callable

from planstream.errors import LLM_VALIDATION_FAILED, ModelError
from planstream.logging import get_logger
from planstream.services.llm.model_client import ModelClient, ModelPrompt
from planstream.services.llm.prompts import CHEF_FALLBACK, CHEF_PROMPT_VERSION, CHEF_TEMPLATE
from planstream.services.llm.retry import retry_with_backoff

logger = get_logger(__name__)


def _valid_recipe(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and isinstance(value.get("description"), str)
        and isinstance(value.get("instructions"), list)
        and len(value["instructions"]) > 0
    )


def generate_instructions(
    client: ModelClient,
    meal: dict,
    *,
    trace_id: str,
    base_delay_s: float,
    sleep: Callable[[float], None] = time.sleep,
    log: Any = None,
) -> dict:
    """Description and steps for one meal; ``CHEF_FALLBACK`` when generation fails."""
    log = log or logger
    prompt = ModelPrompt(
        name="chef_instructions",
        version=CHEF_PROMPT_VERSION,
        instructions=CHEF_TEMPLATE,
        request=json.dumps({"meal": meal.get("name"), "items": meal.get("items", [])}, default=str),
        trace_id=trace_id,
    )

    def _attempt(attempt: int) -> dict:
        result = client.call(prompt, attempt)
        if not _valid_recipe(result):
            raise ModelError(
                LLM_VALIDATION_FAILED,
                "recipe missing description or instructions",
                model=client.model_for_attempt(attempt),
            )
        return result

    try:
        recipe = retry_with_backoff(
            _attempt,
            max_attempts=client.primary_attempts + 1,
            base_delay_s=base_delay_s,
            sleep=sleep,
            label=f"chef:{meal.get('name')}",
            log=log,
        )
    except ModelError as exc:
        log.warning("chef.fallback meal=%s error=%s", meal.get("name"), exc.message)
        return copy.deepcopy(CHEF_FALLBACK)
    return {"description": recipe["description"], "instructions": list(recipe["instructions"])}
