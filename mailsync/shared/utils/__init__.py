"""Shared utilities: datetime and id generators."""

from mailsync.shared.utils.datetime import (
    ensure_utc,
    from_timestamp_ms_utc,
    from_timestamp_utc,
    utc_now,
)
from mailsync.shared.utils.generators import generate_cuid

__all__ = [
    "generate_cuid",
    "utc_now",
    "ensure_utc",
    "from_timestamp_utc",
    "from_timestamp_ms_utc",
]
