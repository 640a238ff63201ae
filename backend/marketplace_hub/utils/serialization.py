from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
import math
import uuid


def to_jsonable(value: Any):
    """
    Recursively convert DTO dicts into JSON-serializable primitives before they hit JSON/JSONB columns
    or API responses. Decimal is kept exact as a string (money).
    """
    if isinstance(value, Decimal):
        if value.is_nan() or value.is_infinite():
            return None
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
    return value
