"""JSON merge patch (RFC 7386) helpers.

A merge patch lists only the keys that changed; nested dicts recurse, any
other value (lists included) replaces the target wholesale, and ``None``
removes a key.
"""

from __future__ import annotations

import copy
from typing import Any


def create_merge_patch(original: dict[str, Any], modified: dict[str, Any]) -> dict[str, Any]:
    """Return the smallest merge patch turning ``original`` into ``modified``.

    An empty dict means the two documents are equal.
    """
    patch: dict[str, Any] = {}
    for key in original:
        if key not in modified:
            patch[key] = None
    for key, new in modified.items():
        if key not in original:
            patch[key] = copy.deepcopy(new)
            continue
        old = original[key]
        if isinstance(old, dict) and isinstance(new, dict):
            sub = create_merge_patch(old, new)
            if sub:
                patch[key] = sub
        elif old != new or type(old) is not type(new):
            patch[key] = copy.deepcopy(new)
    return patch


def apply_merge_patch(target: Any, patch: Any) -> Any:
    """Apply ``patch`` to ``target`` and return the result; inputs are not modified."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    out = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            out.pop(key, None)
        else:
            out[key] = apply_merge_patch(out.get(key), value)
    return out
