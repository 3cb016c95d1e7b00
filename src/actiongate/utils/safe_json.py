"""Strict JSON parsing for gate state files.

``json.loads`` keeps the last value of a duplicated key. A hand-edited
ledger with two ``"status"`` keys could then show one value to a reviewer
and another to the gate, so duplicate keys are rejected at every nesting
level. ``NaN`` / ``Infinity`` are rejected as well.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Union


def _reject_duplicate_keys(pairs: list[tuple[str, object]]) -> dict:
    seen: dict = {}
    for key, value in pairs:
        if key in seen:
            raise ValueError(f"Duplicate JSON key: {key!r}")
        seen[key] = value
    return seen


def _reject_non_standard_constant(constant: str) -> object:
    raise ValueError(f"Non-standard JSON constant not allowed: {constant!r}")


def safe_json_loads(s: str) -> object:
    """Parse *s*, rejecting duplicate keys and non-standard constants.

    Raises:
        ValueError: On malformed JSON (``json.JSONDecodeError`` is a
            ``ValueError``), duplicate keys, or NaN/Infinity.
    """
    return json.loads(
        s,
        object_pairs_hook=_reject_duplicate_keys,
        parse_constant=_reject_non_standard_constant,
    )


def load_json_object(path: Union[str, Path]) -> dict:
    """Read *path* and return its top-level JSON object.

    Raises:
        FileNotFoundError: If *path* does not exist.
        ValueError: If the content is not strict JSON or not an object.
    """
    text = Path(path).read_text(encoding="utf-8")
    data = safe_json_loads(text)
    if not isinstance(data, dict):
        raise ValueError(
            f"Expected a JSON object in {path}, got {type(data).__name__}"
        )
    return data
