from __future__ import annotations

import logging
import re
from dataclasses import dataclass

_UNSAFE_FILENAME_CHARS = re.compile(r"[^\w.\- ]+")


@dataclass
class SanitizationStats:
    nul_removed: int = 0
    surrogates_replaced: int = 0
    newlines_normalized: int = 0
    unsafe_replaced: int = 0

    @property
    def changed(self) -> bool:
        return (
            self.nul_removed > 0
            or self.surrogates_replaced > 0
            or self.newlines_normalized > 0
            or self.unsafe_replaced > 0
        )


def sanitize_text(
    value: str,
    *,
    strip: bool,
    normalize_newlines: bool = True,
) -> tuple[str, SanitizationStats]:
    stats = SanitizationStats()
    chars: list[str] = []
    index = 0
    length = len(value)

    while index < length:
        char = value[index]

        if char == "\x00":
            stats.nul_removed += 1
            index += 1
            continue

        if 0xD800 <= ord(char) <= 0xDFFF:
            chars.append("\uFFFD")
            stats.surrogates_replaced += 1
            index += 1
            continue

        if normalize_newlines and char == "\r":
            chars.append("\n")
            stats.newlines_normalized += 1
            index += 2 if index + 1 < length and value[index + 1] == "\n" else 1
            continue

        chars.append(char)
        index += 1

    sanitized = "".join(chars)
    if strip:
        sanitized = sanitized.strip()
    return sanitized, stats


def sanitize_filename(value: str) -> tuple[str, SanitizationStats]:
    """Strip control/path characters so a user-supplied name is safe to store and display.

    Directory components are dropped; anything outside word characters, dots,
    dashes and spaces collapses to ``_``.
    """
    cleaned, stats = sanitize_text(value, strip=True, normalize_newlines=False)
    basename = re.split(r"[\\/]", cleaned)[-1]
    replaced, count = _UNSAFE_FILENAME_CHARS.subn("_", basename)
    stats.unsafe_replaced = count + (1 if basename != cleaned else 0)
    return replaced.strip(), stats


def log_sanitization_stats(
    logger: logging.Logger,
    *,
    location: str,
    stats: SanitizationStats,
) -> None:
    if not stats.changed:
        return
    logger.debug(
        (
            "Sanitized text for %s "
            "(nul_removed=%d, surrogates_replaced=%d, newlines_normalized=%d, unsafe_replaced=%d)."
        ),
        location,
        stats.nul_removed,
        stats.surrogates_replaced,
        stats.newlines_normalized,
        stats.unsafe_replaced,
    )


__all__ = [
    "SanitizationStats",
    "log_sanitization_stats",
    "sanitize_filename",
    "sanitize_text",
]
