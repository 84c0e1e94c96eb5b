from __future__ import annotations

import logging
import mimetypes
from pathlib import Path

from attachflow.features.shared.text_sanitize import log_sanitization_stats, sanitize_filename

from .errors import AttachmentValidationError
from .schemas import AllowList, FileMeta

logger = logging.getLogger(__name__)

_FALLBACK_MIME_TYPE = "application/octet-stream"


def normalize_filename(filename: str) -> str:
    cleaned, stats = sanitize_filename(filename or "")
    log_sanitization_stats(logger, location="attachments.normalize_filename", stats=stats)
    return cleaned


def file_extension(filename: str) -> str:
    return Path(filename).suffix.lower()


def resolve_mime_type(mime_type: str | None, filename: str) -> str:
    declared = (mime_type or "").split(";", 1)[0].strip().lower()
    if declared:
        return declared
    guessed, _ = mimetypes.guess_type(filename)
    return (guessed or _FALLBACK_MIME_TYPE).lower()


def is_mime_type_allowed(mime_type: str, allowed: frozenset[str]) -> bool:
    if mime_type in allowed:
        return True
    major = mime_type.split("/", 1)[0]
    return f"{major}/*" in allowed


def _format_size(size_bytes: int) -> str:
    mib = size_bytes / (1024 * 1024)
    return f"{mib:.1f} MiB"


def validate_file(meta: FileMeta, allow_list: AllowList) -> tuple[str, str, str]:
    """Check a candidate file against the allow-list.

    Returns ``(normalized_name, mime_type, extension)``; raises
    ``AttachmentValidationError`` describing the first failed check.
    """
    name = normalize_filename(meta.name)
    if not name:
        raise AttachmentValidationError("File is missing a filename.", filename=meta.name)

    if meta.size_bytes <= 0:
        raise AttachmentValidationError(f"File '{name}' is empty.", filename=name)

    if meta.size_bytes > allow_list.max_size_bytes:
        raise AttachmentValidationError(
            (
                f"File '{name}' is {_format_size(meta.size_bytes)}; "
                f"the maximum is {_format_size(allow_list.max_size_bytes)}."
            ),
            filename=name,
        )

    extension = file_extension(name)
    mime_type = resolve_mime_type(meta.mime_type, name)

    if not is_mime_type_allowed(mime_type, allow_list.allowed_mime_types):
        raise AttachmentValidationError(
            f"Unsupported file type '{mime_type}' for '{name}'.",
            filename=name,
        )
    if extension not in allow_list.allowed_extensions:
        raise AttachmentValidationError(
            f"Unsupported file extension '{extension or '(none)'}' for '{name}'.",
            filename=name,
        )
    return name, mime_type, extension
