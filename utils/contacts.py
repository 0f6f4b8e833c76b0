"""
Contact helpers — phone normalization and sender identity.

WhatsApp chat ids are ``<digits>@c.us`` for people and ``<id>@g.us`` for
groups. Ten-digit numbers are assumed to be Indian mobiles and get the
``91`` country prefix.
"""
from __future__ import annotations

import re

from models.schemas import InboundMessage

DEFAULT_COUNTRY_CODE = "91"


def contact_number(raw: str) -> str:
    """Digits-only phone number with the default country prefix applied."""
    digits = re.sub(r"\D", "", raw.split("@", 1)[0])
    if len(digits) == 10 and not digits.startswith(DEFAULT_COUNTRY_CODE):
        digits = DEFAULT_COUNTRY_CODE + digits
    return digits


def format_chat_id(raw: str) -> str:
    """Normalize a phone number or chat id to ``<digits>@c.us``."""
    if raw.endswith("@g.us"):
        return raw
    return f"{contact_number(raw)}@c.us"


def is_group_chat(message: InboundMessage) -> bool:
    return message.is_group or message.from_number.endswith("@g.us")


def get_contact_name(message: InboundMessage) -> str:
    """Saved contact name, else the sender's push name, else the number."""
    return message.contact_name or message.push_name or contact_number(message.from_number)
