from __future__ import annotations

KEY_PREFIX = "dm"
_SEPARATOR = ":"


def _check_participant(user_id: str) -> None:
    if not isinstance(user_id, str) or not user_id:
        raise ValueError("participant id must be a non-empty string")
    if _SEPARATOR in user_id:
        raise ValueError(f"participant id must not contain {_SEPARATOR!r}")


def conversation_key(user_a: str, user_b: str) -> str:
    """Return the order-independent key addressing the pair's messages and channel."""

    _check_participant(user_a)
    _check_participant(user_b)
    low, high = sorted((user_a, user_b))
    return _SEPARATOR.join((KEY_PREFIX, low, high))


def key_participants(key: str) -> tuple[str, str]:
    parts = key.split(_SEPARATOR) if isinstance(key, str) else []
    if len(parts) != 3 or parts[0] != KEY_PREFIX or not parts[1] or not parts[2]:
        raise ValueError(f"malformed conversation key: {key!r}")
    return parts[1], parts[2]


def partner_of(key: str, self_id: str) -> str:
    first, second = key_participants(key)
    if first == self_id:
        return second
    if second == self_id:
        return first
    raise ValueError(f"{self_id!r} is not a participant of {key!r}")
