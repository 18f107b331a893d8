"""
Idempotent persistence of verified webmentions.

A (source, target) pair maps to at most one record. Re-verifying a pair
refreshes its type, payload and verified_at; post_id and created_at keep
the values from first creation.

Two requests for the same pair can both see "absent" and both try to
create. The store's unique index lets exactly one insert win; the loser
re-reads the winner's record and applies its own result as an update.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from mentions.storage import DuplicateWebmentionError

logger = logging.getLogger(__name__)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def upsert_mention(
    store: Any,
    source_url: str,
    target_url: str,
    post_id: str,
    mention_type: str,
    payload: Dict[str, Any],
) -> Dict[str, Any]:
    """Create or refresh the webmention for (source_url, target_url).

    Args:
        store: Object providing find_by_pair / create / update.
        source_url: The mentioning page.
        target_url: The local post URL.
        post_id: Local post ID resolved from target_url (used on create only).
        mention_type: mention, like, repost or reply.
        payload: Extracted metadata (author, content, published_at).

    Returns:
        The stored record.

    Raises:
        sqlite3.Error and other storage exceptions propagate unchanged.
    """
    now = _utcnow()
    fields = {"type": mention_type, "payload": payload, "verified_at": now}

    existing = store.find_by_pair(source_url, target_url)
    if existing is None:
        try:
            record = store.create({
                "source_url": source_url,
                "target_url": target_url,
                "post_id": post_id,
                "created_at": now,
                **fields,
            })
            logger.info(
                f"Stored new webmention {record['id']}: source={source_url}, "
                f"target={target_url}, type={mention_type}"
            )
            return record
        except DuplicateWebmentionError:
            logger.info(
                f"Concurrent create for source={source_url}, target={target_url}; retrying as update"
            )
            existing = store.find_by_pair(source_url, target_url)
            if existing is None:
                raise

    record = store.update(existing["id"], fields)
    if record is None:
        raise LookupError(f"Webmention {existing['id']} disappeared during update")

    logger.info(
        f"Refreshed webmention {record['id']}: source={source_url}, "
        f"target={target_url}, type={mention_type}"
    )
    return record
