import uuid
from typing import Optional

from .errors import InvalidInput


def new_uuid() -> str:
    return str(uuid.uuid4())


def clean_text(value: Optional[str], field: str, max_length: int) -> str:
    """Strip ``value`` and reject blanks or oversize input."""
    text = (value or "").strip()
    if not text:
        raise InvalidInput(f"{field} is required", {"field": field})
    if len(text) > max_length:
        raise InvalidInput(f"{field} is too long", {"field": field, "maxLength": max_length})
    return text
