"""
Reply validation for response nodes.

Rules run in a fixed order and the first failing rule decides:
required → min length → max length → pattern → type format.
"""
from __future__ import annotations

import math
import re

import structlog

from models.schemas import ExpectedResponse, ResponseType

logger = structlog.get_logger()

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^[\+]?[1-9][\d]{0,15}$")
_PHONE_SEPARATORS = re.compile(r"[\s\-\(\)]")

GENERIC_ERROR = "Sorry, that's not a valid response. Please try again."


def _is_number(text: str) -> bool:
    stripped = text.strip()
    if not stripped:
        return False
    try:
        return not math.isnan(float(stripped))
    except ValueError:
        return False


def validate_response(text: str, expected: ExpectedResponse, has_media: bool = False) -> bool:
    """Return True when ``text`` satisfies ``expected``."""
    if expected.type == ResponseType.MEDIA:
        return has_media

    rules = expected.validation
    if rules.required and not text.strip():
        return False
    if rules.min_length and len(text) < rules.min_length:
        return False
    if rules.max_length and len(text) > rules.max_length:
        return False
    if rules.pattern:
        try:
            if not re.search(rules.pattern, text):
                return False
        except re.error as e:
            logger.warning("invalid_validation_pattern", pattern=rules.pattern, error=str(e))
            return False

    if expected.type == ResponseType.NUMBER:
        return _is_number(text)
    if expected.type == ResponseType.EMAIL:
        return bool(EMAIL_RE.match(text))
    if expected.type == ResponseType.PHONE:
        return bool(PHONE_RE.match(_PHONE_SEPARATORS.sub("", text)))
    return True


def validation_error_message(expected: ExpectedResponse) -> str:
    """Re-prompt text for an invalid reply."""
    if expected.type == ResponseType.CHOICE and expected.choices:
        options = ", ".join(c.value for c in expected.choices)
        return f"Please choose one of the following options: {options}"
    if expected.validation.min_length:
        return f"Please enter at least {expected.validation.min_length} characters."
    if expected.validation.pattern:
        return "Please enter a valid format."
    return GENERIC_ERROR
