"""
Audit masking — one-way redaction of identifying fields.

A denylisted, non-empty value keeps its first two characters and the rest is
replaced by a fixed marker: "SW1A 1AA" → "SW***". Values of two characters or
fewer become the bare marker. A denylisted key holding a dict or list has every
scalar inside it masked. Masking an already masked value returns it unchanged,
so replays and re-masking are safe.
"""

from __future__ import annotations

from typing import Any, FrozenSet, Iterable, Optional

MASK_MARKER = "***"
KEEP_CHARS = 2

DEFAULT_DENYLIST: FrozenSet[str] = frozenset({
    "email",
    "phone",
    "full_name",
    "address_line_1",
    "address_line_2",
    "postcode",
    "city",
    "title_number",
    "uprn",
    "ppuk_reference",
})


def build_denylist(extra: Optional[Iterable[str]] = None) -> FrozenSet[str]:
    if not extra:
        return DEFAULT_DENYLIST
    return DEFAULT_DENYLIST | frozenset(f.lower() for f in extra)


def mask_value(value: Any) -> Any:
    """Mask a single value. None and empty strings pass through."""
    if value is None:
        return None
    text = value if isinstance(value, str) else str(value)
    if text == "" or is_masked(text):
        return text
    if len(text) <= KEEP_CHARS:
        return MASK_MARKER
    return text[:KEEP_CHARS] + MASK_MARKER


def is_masked(text: str) -> bool:
    return text.endswith(MASK_MARKER) and len(text) <= KEEP_CHARS + len(MASK_MARKER)


def mask_state(state: Any, denylist: FrozenSet[str] = DEFAULT_DENYLIST) -> Any:
    """
    Return a copy of *state* with every denylisted key masked, at any depth.

    Dict keys are matched case-insensitively. Lists are walked element by
    element. The input is never modified.
    """
    if isinstance(state, dict):
        masked = {}
        for key, value in state.items():
            if isinstance(key, str) and key.lower() in denylist:
                masked[key] = _mask_all(value)
            else:
                masked[key] = mask_state(value, denylist)
        return masked
    if isinstance(state, list):
        return [mask_state(item, denylist) for item in state]
    return state


def _mask_all(value: Any) -> Any:
    # Everything under a denylisted key is identifying, whatever its shape.
    if isinstance(value, dict):
        return {key: _mask_all(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_mask_all(item) for item in value]
    return mask_value(value)


def _has_raw(value: Any) -> bool:
    if isinstance(value, dict):
        return any(_has_raw(item) for item in value.values())
    if isinstance(value, list):
        return any(_has_raw(item) for item in value)
    return value is not None and value != "" and mask_value(value) != value


def contains_unmasked(state: Any, denylist: FrozenSet[str] = DEFAULT_DENYLIST) -> bool:
    """True if any denylisted key at any depth holds a value that is not masked."""
    if isinstance(state, dict):
        for key, value in state.items():
            if isinstance(key, str) and key.lower() in denylist:
                if _has_raw(value):
                    return True
            elif contains_unmasked(value, denylist):
                return True
        return False
    if isinstance(state, list):
        return any(contains_unmasked(item, denylist) for item in state)
    return False
