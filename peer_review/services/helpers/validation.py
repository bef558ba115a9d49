"""Small input guards shared by the lifecycle services."""

from peer_review.core.exceptions import ValidationError

MIN_REASON_LENGTH = 10


def require_min_length(value: str | None, field: str, min_length: int = MIN_REASON_LENGTH, label: str | None = None) -> str:
    """Return *value* stripped, or raise ValidationError when it is shorter than *min_length*."""
    text = (value or "").strip()
    if len(text) < min_length:
        name = label or field.replace("_", " ").capitalize()
        raise ValidationError(
            f"{name} must be at least {min_length} characters",
            details={field: f"min_length={min_length}"},
        )
    return text


def require_choice(value, field: str, choices) -> str:
    """Raise ValidationError unless *value* is one of *choices*."""
    if not isinstance(value, str) or value not in choices:
        allowed = sorted(getattr(c, "value", c) for c in choices)
        raise ValidationError(f"Invalid {field}: {value!r}", details={field: f"must be one of {allowed}"})
    return value
