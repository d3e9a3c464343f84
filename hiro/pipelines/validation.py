"""
Pipeline input validation.

Validators return {"valid": bool, "errors": [str, ...]} so route handlers
can report every problem at once.
"""

import re

_HEX_COLOR = re.compile(r"^#[0-9A-F]{6}$", re.IGNORECASE)


def _result(errors: list) -> dict:
    return {"valid": not errors, "errors": errors}


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_score_range(lead_score_min, lead_score_max) -> dict:
    errors = []
    if not _is_number(lead_score_min) or not _is_number(lead_score_max):
        return _result(["Lead scores must be numbers"])
    if not 0 <= lead_score_min <= 100:
        errors.append("lead_score_min must be between 0 and 100")
    if not 0 <= lead_score_max <= 100:
        errors.append("lead_score_max must be between 0 and 100")
    if lead_score_min > lead_score_max:
        errors.append("lead_score_min must be less than or equal to lead_score_max")
    return _result(errors)


def _validate_id_list(ids, label: str, max_items: int, hint: str = "") -> dict:
    if not isinstance(ids, list):
        return _result([f"{label} must be an array"])
    errors = []
    if not ids:
        errors.append(f"{label} array cannot be empty")
    if len(ids) > max_items:
        errors.append(f"{label} array cannot exceed {max_items} items{hint}")
    if any(not isinstance(i, str) for i in ids):
        errors.append(f"All {label} must be strings")
    return _result(errors)


def validate_contact_ids(contact_ids) -> dict:
    return _validate_id_list(contact_ids, "contact_ids", 1000, " (use batch processing)")


def validate_pipeline_ids(pipeline_ids) -> dict:
    return _validate_id_list(pipeline_ids, "pipeline_ids", 100)


def validate_pipeline_name(name) -> dict:
    if not isinstance(name, str):
        return _result(["Pipeline name must be a string"])
    errors = []
    trimmed = name.strip()
    if not trimmed:
        errors.append("Pipeline name cannot be empty")
    if len(trimmed) > 100:
        errors.append("Pipeline name cannot exceed 100 characters")
    return _result(errors)


def validate_stage_order(order) -> dict:
    if not _is_number(order):
        return _result(["Stage order must be a number"])
    errors = []
    if order < 0:
        errors.append("Stage order cannot be negative")
    if isinstance(order, float) and not order.is_integer():
        errors.append("Stage order must be an integer")
    return _result(errors)


def detect_score_range_overlaps(stages: list) -> list:
    """Overlapping ranges among active stages (WON/LOST/ARCHIVED ignored).

    Returns:
        [{"stage1": name, "stage2": name, "overlap": "lo-hi"}, ...]
    """
    active = [s for s in stages if s.get("type") not in ("WON", "LOST", "ARCHIVED")]
    overlaps = []
    for i, first in enumerate(active):
        for second in active[i + 1:]:
            if (first["lead_score_min"] <= second["lead_score_max"]
                    and first["lead_score_max"] >= second["lead_score_min"]):
                start = max(first["lead_score_min"], second["lead_score_min"])
                end = min(first["lead_score_max"], second["lead_score_max"])
                overlaps.append({"stage1": first["name"], "stage2": second["name"],
                                 "overlap": f"{start}-{end}"})
    return overlaps


_SCRIPT_TAG = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE)
_HTML_TAG = re.compile(r"<[^>]+>")
_JS_PROTOCOL = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER = re.compile(r"on\w+=", re.IGNORECASE)


def sanitize_input(value: str) -> str:
    """Strip script blocks, tags, javascript: URLs and inline event handlers."""
    value = _SCRIPT_TAG.sub("", value.strip())
    value = _HTML_TAG.sub("", value)
    value = _JS_PROTOCOL.sub("", value)
    return _EVENT_HANDLER.sub("", value)


def validate_color(color) -> dict:
    if not isinstance(color, str):
        return _result(["Color must be a string"])
    if not _HEX_COLOR.match(color):
        return _result(["Color must be a valid hex color code (e.g., #3b82f6)"])
    return _result([])
