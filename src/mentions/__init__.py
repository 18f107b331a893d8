"""Webmention persistence: SQLite store and idempotent upsert."""
from mentions.storage import DuplicateWebmentionError, MENTION_TYPES, WebmentionStore, serialize_mention
from mentions.upsert import upsert_mention

__all__ = [
    "DuplicateWebmentionError",
    "MENTION_TYPES",
    "WebmentionStore",
    "serialize_mention",
    "upsert_mention",
]
