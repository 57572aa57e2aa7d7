"""Text helpers for prompts and model output."""

import re
from collections.abc import Mapping
from typing import Any

_SLOT = re.compile(r"\{\{\s*(\w+)\s*\}\}")
_FENCE = re.compile(r"^\s*```[\w-]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


def fill_slots(template: str, slots: Mapping[str, Any]) -> str:
    """Replace ``{{name}}`` placeholders with values from ``slots``.

    Unknown placeholders are left untouched; ``None`` values become empty strings.
    """

    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in slots:
            return match.group(0)
        value = slots[name]
        return "" if value is None else str(value)

    return _SLOT.sub(replace, template)


def strip_code_fences(text: str) -> str:
    """Remove a markdown code fence wrapping the whole text, if any."""
    match = _FENCE.match(text)
    if match:
        return match.group(1).strip()
    return text.strip()
