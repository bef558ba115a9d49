"""Shared blueprint helpers.

parse_date:      returns None on bad input
parse_date_input: raises ValueError on bad input (blueprints answer 400)
json_body:       request JSON as a dict, or a 400 error tuple
current_actor:   identity resolved by the JWT middleware
"""
import logging
from datetime import date, datetime

from flask import g, request

from peer_review.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY (European format)
    """
    if not value:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None


def parse_date_input(value):
    """Parse a date string, raising ValueError on bad input.

    Same as parse_date() but raises ValueError instead of returning None.

    Supports: YYYY-MM-DD, DD.MM.YYYY, date objects.
    """
    if not value:
        return None
    if isinstance(value, date):
        return value
    parsed = parse_date(value)
    if parsed is None:
        raise ValueError("Invalid date format. Use YYYY-MM-DD or DD.MM.YYYY.")
    return parsed


def json_body():
    """Return ``(data, None)`` or ``(None, error_response)`` for a non-object body."""
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        return None, api_error(E.BAD_REQUEST, "Request body must be a JSON object")
    return data, None


def convert_dates(data: dict, fields) -> tuple[dict | None, tuple | None]:
    """Replace date strings in *fields* with ``date`` objects; 400 on bad input."""
    converted = dict(data)
    for field in fields:
        if field not in converted:
            continue
        try:
            converted[field] = parse_date_input(converted[field])
        except ValueError as exc:
            return None, api_error(E.BAD_REQUEST, f"{field}: {exc}", details={field: "invalid date"})
    return converted, None


def current_actor():
    return getattr(g, "actor", None)
