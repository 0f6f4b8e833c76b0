"""
Trigger matching — decides whether an inbound message starts a flow.

Pure functions over (flow, message): nothing here touches the store or the
channel. Trigger nodes are evaluated in declaration order and the first
match wins, so a flow fires at most once per inbound message.
"""
from __future__ import annotations

import re
from typing import Optional

import structlog

from models.schemas import Flow, InboundMessage, TriggerConfig, TriggerNode, TriggerType

logger = structlog.get_logger()

# JS-style flag letters accepted from the flow editor
_REGEX_FLAGS = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
}


def _compile(pattern: str, flags: str) -> Optional[re.Pattern]:
    value = 0
    for letter in flags or "":
        value |= _REGEX_FLAGS.get(letter, 0)
    try:
        return re.compile(pattern, value)
    except re.error as e:
        logger.warning("invalid_trigger_regex", pattern=pattern, error=str(e))
        return None


def trigger_matches(config: TriggerConfig, message: InboundMessage) -> bool:
    """Evaluate a single trigger config against a message."""
    text = (message.body or "").lower()
    needle = config.text.lower()
    kind = config.trigger_type

    if kind == TriggerType.TEXT_EQUALS:
        return text == needle
    if kind == TriggerType.TEXT_CONTAINS:
        return needle in text
    if kind == TriggerType.TEXT_STARTS_WITH:
        return text.startswith(needle)
    if kind == TriggerType.TEXT_ENDS_WITH:
        return text.endswith(needle)
    if kind == TriggerType.TEXT_REGEX:
        regex = _compile(config.pattern, config.flags)
        return bool(regex and regex.search(message.body or ""))
    if kind == TriggerType.ANY_MESSAGE:
        return True
    if kind == TriggerType.MEDIA_RECEIVED:
        if not message.has_media:
            return False
        return not config.media_type or config.media_type == message.type
    return False


def first_matching_trigger(flow: Flow, message: InboundMessage) -> Optional[TriggerNode]:
    """Return the first trigger node of ``flow`` that fires for ``message``."""
    for node in flow.trigger_nodes():
        if trigger_matches(node.config, message):
            return node
    return None


def match_trigger(flow: Flow, message: InboundMessage) -> bool:
    return first_matching_trigger(flow, message) is not None
