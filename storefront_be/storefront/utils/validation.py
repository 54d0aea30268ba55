import html
import re
from typing import Dict, Iterable, Optional, Type, TypeVar

import pydantic

from storefront.services.errors import ValidationError

ModelT = TypeVar("ModelT", bound=pydantic.BaseModel)

_TAG_RE = re.compile(r"<[^>]*>")
_SCRIPT_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
URL_PATTERN = re.compile(r"^https?://[^\s<>\"']+$", re.IGNORECASE)


def sanitize_text(value: str) -> str:
    """Strip markup and escape what is left so stored text is safe to render."""
    value = _SCRIPT_RE.sub("", value)
    value = _TAG_RE.sub("", value)
    return html.escape(value.strip(), quote=True)


def clean_text(value: str, max_length: int, required_message: Optional[str] = None) -> str:
    """Sanitize ``value`` and bound the length of what will actually be stored.

    Escaping grows the text (``&`` becomes ``&amp;``), so the limit is checked
    on the cleaned value.
    """
    cleaned = sanitize_text(value)
    if not cleaned and required_message:
        raise ValueError(required_message)
    if len(cleaned) > max_length:
        raise ValueError(f"Must be at most {max_length} characters after escaping")
    return cleaned


def is_url(value: str) -> bool:
    return bool(URL_PATTERN.match(value))


def _field_name(loc: Iterable) -> str:
    # FastAPI prefixes request locations ("body", "query", "path"); callers only care about the field
    parts = [str(p) for p in loc if p not in ("body", "query", "path", "header")]
    return ".".join(parts) or "__root__"


def field_errors(errors: Iterable[dict]) -> Dict[str, str]:
    fields: Dict[str, list] = {}
    for err in errors:
        msg = err.get("msg", "Invalid value")
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        fields.setdefault(_field_name(err.get("loc", ())), []).append(msg)
    return {name: ", ".join(msgs) for name, msgs in fields.items()}


def validate_payload(schema: Type[ModelT], data) -> ModelT:
    """Validate raw input against ``schema`` or raise ValidationError with a field map."""
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object", {"__root__": "Expected an object"})
    try:
        return schema.model_validate(data)
    except pydantic.ValidationError as exc:
        raise ValidationError("Validation failed", field_errors(exc.errors())) from exc
