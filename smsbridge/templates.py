"""Merge-field rendering for outbound SMS bodies."""

from __future__ import annotations

import re
from typing import Any, Dict, Mapping, Optional

from smsbridge.config import TRACKED_LINK_TOKEN

CONTACT_FIELD_RE = re.compile(r"\[C_([^\]]+)\]")
CUSTOM_OBJECT_FIELD_RE = re.compile(r"\{\{CustomObject<(\d+)>\.Field<(\d+)>\}\}")


def field_value(item: Mapping[str, Any], path: Optional[str]) -> Optional[str]:
    """Read a contact field from a notify item.

    Field references may be plain (``C_MobilePhone``) or qualified with an
    entity prefix separated by ``__`` (``Contact__C_MobilePhone``).
    """
    if not path:
        return None
    parts = path.split("__")
    name = parts[-1]
    for candidate in (path, name, f"C_{name}" if not name.startswith("C_") else name[2:]):
        value = item.get(candidate)
        if value not in (None, ""):
            return str(value)
    return None


def render_message(
    template: Optional[str],
    contact: Mapping[str, Any],
    custom_object_fields: Optional[Dict[str, Any]] = None,
) -> str:
    """Replace ``[C_Field]`` and ``{{CustomObject<id>.Field<id>}}`` merge fields.

    Unknown contact fields render empty. Custom-object references without
    a value are left untouched. ``[tracked-link]`` is kept for the gateway.
    """
    if not template:
        return ""

    def _contact(match: re.Match) -> str:
        name = match.group(1)
        value = contact.get(f"C_{name}")
        if value in (None, ""):
            value = contact.get(name)
        return "" if value is None else str(value)

    message = CONTACT_FIELD_RE.sub(_contact, template)
    if custom_object_fields:

        def _custom(match: re.Match) -> str:
            value = custom_object_fields.get(match.group(2))
            return match.group(0) if value is None else str(value)

        message = CUSTOM_OBJECT_FIELD_RE.sub(_custom, message)
    return message


def has_tracked_link(message: Optional[str]) -> bool:
    return bool(message) and TRACKED_LINK_TOKEN in message  # type: ignore[operator]
