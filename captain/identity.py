from __future__ import annotations

import time
from typing import Any, Iterable


def normalize_id(value: Any) -> str:
    """Canonical string form of an identifier.

    Locally created records carry millisecond-timestamp integers while the
    remote store issues strings, so both collapse to the same text here.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(int(value))
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def identities_match(a: Any, b: Any) -> bool:
    if a == b:
        return True
    if a is None or b is None:
        return False
    return normalize_id(a) == normalize_id(b)


def contains_id(ids: Iterable[Any], candidate: Any) -> bool:
    return any(identities_match(existing, candidate) for existing in ids)


def fresh_id(existing: Iterable[Any] = ()) -> str:
    taken = {normalize_id(x) for x in existing}
    candidate = int(time.time() * 1000)
    while str(candidate) in taken:
        candidate += 1
    return str(candidate)
