from typing import Any, Optional


def resolve_id(ref: Any) -> Optional[str]:
    """Normalize a reference that may be a bare id or an embedded record.

    Accepts ``"ten_1"``, ``{"id": "ten_1"}``, ``{"_id": "ten_1"}``,
    ``{"tenant_id": "ten_1"}`` or any object with an ``id`` attribute.
    Returns ``None`` for empty references so callers never compare against
    a half-resolved value.
    """
    if ref is None:
        return None
    if isinstance(ref, str):
        ref = ref.strip()
        return ref or None
    if isinstance(ref, (int,)) and not isinstance(ref, bool):
        return str(ref)
    if isinstance(ref, dict):
        for key in ("id", "_id", "tenant_id", "user_id", "subscription_id", "plan_id"):
            if key in ref:
                return resolve_id(ref[key])
        return None
    for attr in ("id", "tenant_id", "user_id"):
        if hasattr(ref, attr):
            return resolve_id(getattr(ref, attr))
    raise TypeError(f"Cannot resolve an id from {type(ref).__name__}")
