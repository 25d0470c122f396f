from __future__ import annotations

import os
import re
import threading
import time
from datetime import date, datetime
from typing import Callable

from src.datatypes import NamingPattern

__all__ = [
    "INVALID_LABEL_PATTERN",
    "batch_archive_name",
    "batch_member_name",
    "next_timestamp_ms",
    "prepare_filename",
    "sanitise_label",
]


INVALID_LABEL_PATTERN = re.compile(r'[<>:"/\\|?*\x00-\x1f]')

_stamp_lock = threading.Lock()
_last_stamp_ms = 0


def sanitise_label(label: str, fallback: str = "mockflow") -> str:
    """Return a filesystem-safe label while preserving user intent when possible."""

    cleaned = INVALID_LABEL_PATTERN.sub("_", label)
    if os.name == "nt":
        cleaned = cleaned.rstrip(" .")
    cleaned = cleaned.strip()
    return cleaned or fallback


def next_timestamp_ms(clock: Callable[[], float] = time.time) -> int:
    """
    Return the current unix epoch in milliseconds, strictly increasing per process.

    Two exports landing in the same millisecond get consecutive stamps so their
    filenames never collide.
    """

    global _last_stamp_ms
    stamp = int(clock() * 1000)
    with _stamp_lock:
        if stamp <= _last_stamp_ms:
            stamp = _last_stamp_ms + 1
        _last_stamp_ms = stamp
    return stamp


def prepare_filename(product: str, extension: str, *, timestamp_ms: int | None = None) -> str:
    """Return the canonical download filename ``{product}-export-{epoch-ms}.{ext}``."""

    stamp = next_timestamp_ms() if timestamp_ms is None else int(timestamp_ms)
    return f"{sanitise_label(product)}-export-{stamp}.{extension.lstrip('.')}"


def batch_archive_name(product: str, day: date | None = None) -> str:
    """Return the ZIP name used for batch exports, e.g. ``mockflow-batch-2024-05-01.zip``."""

    stamp = (day or date.today()).isoformat()
    return f"{sanitise_label(product)}-batch-{stamp}.zip"


def batch_member_name(
    pattern: NamingPattern,
    name: str,
    index: int,
    extension: str,
    *,
    now: datetime | None = None,
) -> str:
    """Return the archive member name for the *index*-th (0-based) mockup."""

    ext = extension.lstrip(".")
    label = sanitise_label(name, fallback=f"mockup-{index + 1}")
    if pattern is NamingPattern.NUMBERED:
        return f"mockup-{index + 1:03d}.{ext}"
    if pattern is NamingPattern.NAME_TIMESTAMP:
        moment = (now or datetime.now()).replace(microsecond=0)
        return f"{label}-{moment.isoformat().replace(':', '-')}.{ext}"
    return f"{label}.{ext}"
