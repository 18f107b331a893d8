"""SQLite-backed storage for verified webmentions."""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from jsonschema import ValidationError, validate
from schema import WEBMENTION_PAYLOAD_SCHEMA

logger = logging.getLogger(__name__)

MENTION_TYPES = ("mention", "like", "repost", "reply")

_COLUMNS = "id, source_url, target_url, post_id, type, payload, verified_at, created_at"


class DuplicateWebmentionError(Exception):
    """Raised when create() hits the (source_url, target_url) unique constraint."""

    def __init__(self, source_url: str, target_url: str):
        super().__init__(f"Webmention already exists: source={source_url}, target={target_url}")
        self.source_url = source_url
        self.target_url = target_url


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _validate_fields(mention_type: str, payload: Dict[str, Any]) -> None:
    if mention_type not in MENTION_TYPES:
        raise ValueError(f"Unknown webmention type: {mention_type!r}")
    try:
        validate(instance=payload, schema=WEBMENTION_PAYLOAD_SCHEMA)
    except ValidationError as e:
        raise ValueError(f"Invalid webmention payload: {e.message}") from e


def _row_to_record(row: sqlite3.Row) -> Dict[str, Any]:
    try:
        payload = json.loads(row["payload"]) if row["payload"] else {}
    except json.JSONDecodeError:
        logger.error(f"Invalid payload JSON for webmention {row['id']}")
        payload = {}
    return {
        "id": row["id"],
        "source_url": row["source_url"],
        "target_url": row["target_url"],
        "post_id": row["post_id"],
        "type": row["type"],
        "payload": payload,
        "verified_at": row["verified_at"],
        "created_at": row["created_at"],
    }


class WebmentionStore:
    """Persistent webmention storage backed by SQLite.

    Uniqueness of (source_url, target_url) is enforced by the schema, so two
    concurrent creates for the same pair cannot both succeed; the loser gets
    a DuplicateWebmentionError.
    """

    def __init__(self, storage_path: str):
        self.storage_path = storage_path
        os.makedirs(self.storage_path, mode=0o755, exist_ok=True)
        self.db_path = os.path.join(self.storage_path, "webmentions.db")
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS webmentions (
                    id TEXT PRIMARY KEY,
                    source_url TEXT NOT NULL,
                    target_url TEXT NOT NULL,
                    post_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    verified_at TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE(source_url, target_url)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_webmentions_post_id "
                "ON webmentions(post_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_webmentions_created_at "
                "ON webmentions(created_at)"
            )

    def get(self, mention_id: str) -> Optional[Dict[str, Any]]:
        """Get a webmention by ID."""
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM webmentions WHERE id = ?",
                (mention_id,),
            ).fetchone()
        return _row_to_record(row) if row else None

    def find_by_pair(self, source_url: str, target_url: str) -> Optional[Dict[str, Any]]:
        """Get the webmention for a (source, target) pair, if any."""
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM webmentions WHERE source_url = ? AND target_url = ?",
                (source_url, target_url),
            ).fetchone()
        return _row_to_record(row) if row else None

    def create(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a new webmention.

        Args:
            fields: source_url, target_url, post_id, type, payload and
                optionally verified_at / created_at.

        Raises:
            DuplicateWebmentionError: The pair already exists.
            ValueError: Unknown type or payload failing schema validation.
        """
        payload = fields.get("payload") or {}
        _validate_fields(fields["type"], payload)

        now = _utcnow()
        record = {
            "id": uuid.uuid4().hex,
            "source_url": fields["source_url"],
            "target_url": fields["target_url"],
            "post_id": str(fields["post_id"]),
            "type": fields["type"],
            "payload": payload,
            "verified_at": fields.get("verified_at") or now,
            "created_at": fields.get("created_at") or now,
        }

        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO webmentions ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        record["id"],
                        record["source_url"],
                        record["target_url"],
                        record["post_id"],
                        record["type"],
                        json.dumps(payload),
                        record["verified_at"],
                        record["created_at"],
                    ),
                )
        except sqlite3.IntegrityError as e:
            logger.info(
                f"Webmention create collided with existing pair: "
                f"source={record['source_url']}, target={record['target_url']}: {e}"
            )
            raise DuplicateWebmentionError(record["source_url"], record["target_url"]) from e

        logger.debug(f"Created webmention {record['id']}: source={record['source_url']}")
        return record

    def update(self, mention_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Update type, payload and verified_at of an existing webmention.

        post_id, source_url, target_url and created_at are never touched.

        Returns:
            The updated record, or None if no record has that ID.
        """
        payload = fields.get("payload") or {}
        _validate_fields(fields["type"], payload)
        verified_at = fields.get("verified_at") or _utcnow()

        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE webmentions SET type = ?, payload = ?, verified_at = ? WHERE id = ?",
                (fields["type"], json.dumps(payload), verified_at, mention_id),
            )
            if cursor.rowcount == 0:
                return None
        return self.get(mention_id)

    def list_by_post(self, post_id: str) -> List[Dict[str, Any]]:
        """Return all webmentions for a post, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM webmentions WHERE post_id = ? "
                "ORDER BY created_at DESC",
                (str(post_id),),
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def count_group_by_type(self) -> Dict[str, int]:
        """Return the number of webmentions per type, zero-filled."""
        counts = {mention_type: 0 for mention_type in MENTION_TYPES}
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT type, COUNT(*) AS n FROM webmentions GROUP BY type"
            ).fetchall()
        for row in rows:
            counts[row["type"]] = row["n"]
        return counts

    def list_recent(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Return the most recently created webmentions."""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM webmentions ORDER BY created_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [_row_to_record(row) for row in rows]


def serialize_mention(record: Dict[str, Any], include_target: bool = True) -> Dict[str, Any]:
    """Convert a stored record to the camelCase shape used by the API and events.

    Payload fields are flattened onto the top level and omitted when absent.
    """
    payload = record.get("payload") or {}
    data: Dict[str, Any] = {
        "id": record["id"],
        "sourceUrl": record["source_url"],
    }
    if include_target:
        data["targetUrl"] = record["target_url"]
        data["postId"] = record["post_id"]
    data["type"] = record["type"]
    if payload.get("author"):
        data["author"] = payload["author"]
    if payload.get("content"):
        data["content"] = payload["content"]
    if payload.get("published_at"):
        data["publishedAt"] = payload["published_at"]
    data["verifiedAt"] = record["verified_at"]
    data["createdAt"] = record["created_at"]
    return data
