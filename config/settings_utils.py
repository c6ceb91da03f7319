from __future__ import annotations

from dataclasses import fields
from typing import Any


def _coerce_bool(value: Any) -> tuple[bool, bool]:
    """Coerce common bool spellings.

    Returns (ok, parsed_value). When ok is False, parsed_value is undefined.
    """
    if isinstance(value, bool):
        return True, value

    if isinstance(value, (int, float)):
        if value in (0, 1):
            return True, bool(value)
        return False, False

    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in ("1", "true", "yes", "on", "y"):
            return True, True
        if normalized in ("0", "false", "no", "off", "n"):
            return True, False

    return False, False


def _coerce_number(current: Any, value: Any) -> tuple[bool, Any]:
    """Coerce ``value`` to the numeric type of ``current``.

    Numeric strings are accepted so env and JSON sources behave alike.
    """
    target = int if isinstance(current, int) else float
    if isinstance(value, bool):
        return False, None
    if isinstance(value, (int, float)):
        return True, target(value)
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value.strip())
        except ValueError:
            return False, None
        return True, target(parsed)
    return False, None


def _safe_dataclass_from_dict(dc_instance: Any, data: dict[str, Any]) -> list[str]:
    """Apply dict values onto a dataclass instance with type checking.

    Returns the list of warnings for values that were rejected; rejected
    values leave the field untouched.
    """
    warnings_list: list[str] = []
    if not isinstance(data, dict):
        return [f"Expected dict, got {type(data).__name__}"]

    dc_fields = {f.name: f for f in fields(dc_instance)}

    for key, value in data.items():
        if key not in dc_fields:
            warnings_list.append(f"Unknown field '{key}' - ignored")
            continue

        current_value = getattr(dc_instance, key)

        # bool is an int subtype, so it must be checked first
        if isinstance(current_value, bool):
            ok, parsed = _coerce_bool(value)
            if ok:
                setattr(dc_instance, key, parsed)
            else:
                warnings_list.append(
                    f"Bad value for bool field '{key}': {value!r}"
                )
        elif isinstance(current_value, (int, float)):
            ok, parsed = _coerce_number(current_value, value)
            if ok:
                setattr(dc_instance, key, parsed)
            else:
                warnings_list.append(
                    f"Bad value for numeric field '{key}': {value!r}"
                )
        elif isinstance(current_value, str) and isinstance(value, str):
            setattr(dc_instance, key, value)
        elif isinstance(current_value, (list, tuple)) and isinstance(value, (list, tuple)):
            setattr(dc_instance, key, type(current_value)(value))
        else:
            warnings_list.append(
                f"Type mismatch for '{key}': "
                f"expected {type(current_value).__name__}, "
                f"got {type(value).__name__}"
            )

    return warnings_list
