# bugflow/engine/path_utils.py
# dot-path access into an execution context
import logging
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Union
from uuid import UUID

logger = logging.getLogger(__name__)

# what a context may hold once normalized: null | bool | number | string | list | map
ContextValue = Union[None, bool, int, float, str, List["ContextValue"], Dict[str, "ContextValue"]]


def get_value_by_path(data: Any, path: str) -> Any:
    """
    Resolve a dot path such as "bug.severity" (a leading "$." is accepted).

    Maps are traversed by key, lists by integer segment, any other object by
    public attribute. A missing segment resolves to None.
    """
    if path in ("", "$"):
        return data
    current = data
    for key in path.removeprefix("$.").split("."):
        if not key:
            continue
        if current is None:
            return None
        if isinstance(current, Mapping):
            if key not in current:
                return None
            current = current[key]
        elif isinstance(current, (list, tuple)):
            if not key.lstrip("-").isdigit():
                return None
            index = int(key)
            if not -len(current) <= index < len(current):
                return None
            current = current[index]
        elif key.startswith("_"):
            return None
        else:
            current = getattr(current, key, None)
    return current


def to_context_value(value: Any) -> ContextValue:
    """Normalize an arbitrary Python value into the JSON-shaped context union."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Enum):
        return to_context_value(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Mapping):
        return {str(k): to_context_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value, key=str) if isinstance(value, (set, frozenset)) else value
        return [to_context_value(v) for v in items]
    if hasattr(value, "model_dump"):
        return to_context_value(value.model_dump())
    logger.debug(f"[to_context_value] falling back to str() for {type(value).__name__}")
    return str(value)


def normalize_context(context: Mapping[str, Any] | None) -> Dict[str, ContextValue]:
    if not context:
        return {}
    return {str(k): to_context_value(v) for k, v in context.items()}
