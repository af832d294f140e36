"""Canonical model naming -- ``{family}-{version}`` regardless of provider spelling."""

from __future__ import annotations

import re

MODEL_DEFAULT = "(default)"

_DEFAULT_ALIASES = frozenset({"default", "auto", "unknown", ""})

# (T), (Thinking), [1m] ... thinking variants aggregate with the base model
_SUFFIX = re.compile(r"\s*(?:\(([^)]+)\)|\[([^\]]+)\])\s*$")

# Ordered; the first pattern that matches rewrites the name.
_REWRITES: tuple[tuple[re.Pattern[str], str], ...] = (
    # claude-3-5-haiku-20241022 -> haiku-3.5
    (re.compile(r"^claude-(\d+)-(\d+)-([a-z]+)-\d{8}$"), r"\3-\1.\2"),
    # claude-sonnet-4-20250514 -> sonnet-4
    (re.compile(r"^claude-([a-z]+)-(\d+)-\d{8}$"), r"\1-\2"),
    # claude-opus-4-5-20251101 -> opus-4.5
    (re.compile(r"^claude-([a-z]+)-(\d+)-(\d+)-\d{8}$"), r"\1-\2.\3"),
    # 3-5-haiku-20241022 -> haiku-3.5
    (re.compile(r"^(\d+)-(\d+)-([a-z]+)-\d{8}$"), r"\3-\1.\2"),
    # claude-4-sonnet-high-thinking -> sonnet-4
    (re.compile(r"^claude-(\d+(?:\.\d+)?)-([a-z]+)-high-thinking$"), r"\2-\1"),
    (re.compile(r"^claude-(\d+(?:\.\d+)?)-([a-z]+)-thinking$"), r"\2-\1"),
    # claude-4.5-opus -> opus-4.5
    (re.compile(r"^claude-(\d+(?:\.\d+)?)-([a-z]+)$"), r"\2-\1"),
    # 4-sonnet -> sonnet-4
    (re.compile(r"^(\d+(?:\.\d+)?)-([a-z]+)$"), r"\2-\1"),
)

_BARE_VERSION = re.compile(r"^\d+(\.\d+)?$")


def normalize_model_name(model: str | None) -> str:
    if model is None:
        return MODEL_DEFAULT

    normalized = model.strip().lower()
    if normalized in _DEFAULT_ALIASES:
        return MODEL_DEFAULT

    suffix = _SUFFIX.search(normalized)
    if suffix:
        normalized = normalized[: suffix.start()].strip()

    for pattern, template in _REWRITES:
        m = pattern.match(normalized)
        if m:
            normalized = m.expand(template)
            break

    # Cursor reports bare "4" for its default Sonnet
    if _BARE_VERSION.match(normalized):
        normalized = f"sonnet-{normalized}"

    return normalized
