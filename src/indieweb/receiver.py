"""
Webmention receiver: verification and storage of incoming webmentions.

When a webmention is received (POST /api/webmentions with source + target),
the target is checked against this site's posts, the source page is
fetched and must contain the target URL, microformats2 metadata (author,
content, mention type) is extracted and the result is upserted into the
store. Subscribers are told about every stored mention through the
webmentions.received event.

The backlink check is plain substring containment of the target URL in the
fetched body. It does not look for an anchor and does not normalise
trailing slashes or query strings.

References:
    - W3C Webmention: https://www.w3.org/TR/webmention/
    - Microformats2: https://microformats.org/wiki/microformats2
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

import requests

from config import get_site_url, get_webmention_timeouts
from events import CoreEvents
from indieweb.microformats import extract_hentry
from indieweb.webmention import (
    _build_session,
    _declared_charset,
    _decode_body,
    _read_bounded_response,
    MAX_DISCOVERY_RESPONSE_BYTES,
)
from mentions.storage import serialize_mention
from mentions.upsert import upsert_mention

logger = logging.getLogger(__name__)

MAX_URL_LENGTH = 2048
SOURCE_FETCH_TIMEOUT = 10.0

# /post/<slug> or /posts/<slug>, optional trailing slash
POST_PATH_PATTERN = re.compile(r"^/posts?/([^/]+)/?$")

REASON_MISSING_URL = "Missing source or target URL"
REASON_INVALID_URL = "Invalid URL format"
REASON_FOREIGN_TARGET = "Target URL does not belong to this site"
REASON_NOT_A_POST = "Target URL does not point to a post"
REASON_POST_NOT_FOUND = "Target post not found"
REASON_NO_BACKLINK = "Source does not link to target"


@dataclass
class InboundResult:
    """Outcome of processing one inbound webmention.

    Attributes:
        ok: Whether the webmention was verified and stored
        id: Stored webmention ID (when ok)
        reason: Human-readable rejection reason (when not ok)
    """
    ok: bool
    id: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def rejected(cls, reason: str) -> "InboundResult":
        return cls(ok=False, reason=reason)


class SourceVerificationError(Exception):
    """The source page could not be fetched or does not reference the target."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def _is_valid_url(url: str) -> bool:
    """Check if a string is an absolute HTTP(S) URL of reasonable length."""
    if not url or len(url) > MAX_URL_LENGTH:
        return False
    try:
        parsed = urlparse(url)
        return parsed.scheme in ("http", "https") and bool(parsed.netloc)
    except ValueError:
        return False


def _belongs_to_site(url: str, site_url: str) -> bool:
    """True when url starts with the site origin on a path boundary."""
    if not url.lower().startswith(site_url.lower()):
        return False
    rest = url[len(site_url):]
    return rest == "" or rest[0] in "/?#"


def _extract_post_slug(url: str) -> Optional[str]:
    match = POST_PATH_PATTERN.match(urlparse(url).path)
    return match.group(1) if match else None


class WebmentionReceiver:
    """Verifies, classifies and stores incoming webmentions.

    Args:
        site_url: This site's origin, e.g. https://mysite.test
        store: Webmention store (find_by_pair / create / update)
        post_resolver: Object with find_by_slug(slug) -> post dict or None
        event_bus: EventBus used to announce stored webmentions
        verify_timeout: Timeout in seconds for fetching the source page
    """

    def __init__(
        self,
        site_url: str,
        store: Any,
        post_resolver: Any,
        event_bus: Any,
        verify_timeout: float = SOURCE_FETCH_TIMEOUT,
    ):
        self.site_url = site_url.rstrip("/")
        self.store = store
        self.post_resolver = post_resolver
        self.event_bus = event_bus
        self.verify_timeout = verify_timeout

    @classmethod
    def from_config(cls, config: Dict[str, Any], store: Any, post_resolver: Any, event_bus: Any) -> "WebmentionReceiver":
        timeouts = get_webmention_timeouts(config)
        return cls(
            site_url=get_site_url(config),
            store=store,
            post_resolver=post_resolver,
            event_bus=event_bus,
            verify_timeout=timeouts["verify"],
        )

    def process_inbound(self, source_url: str, target_url: str) -> InboundResult:
        """Verify and store a webmention.

        Validation and verification problems come back as a rejected
        InboundResult. Storage errors are raised.
        """
        if not source_url or not target_url:
            return InboundResult.rejected(REASON_MISSING_URL)

        if not _is_valid_url(source_url) or not _is_valid_url(target_url):
            return InboundResult.rejected(REASON_INVALID_URL)

        if not _belongs_to_site(target_url, self.site_url):
            logger.info(f"Rejected webmention: target {target_url} is not on {self.site_url}")
            return InboundResult.rejected(REASON_FOREIGN_TARGET)

        slug = _extract_post_slug(target_url)
        if not slug:
            logger.info(f"Rejected webmention: target {target_url} is not a post URL")
            return InboundResult.rejected(REASON_NOT_A_POST)

        post = self.post_resolver.find_by_slug(slug)
        if not post:
            logger.info(f"Rejected webmention: no post with slug {slug!r}")
            return InboundResult.rejected(REASON_POST_NOT_FOUND)

        logger.info(f"Verifying webmention: source={source_url}, target={target_url}")

        try:
            mention_type, payload = self._verify_source(source_url, target_url)
        except SourceVerificationError as e:
            return InboundResult.rejected(e.reason)
        except Exception as e:
            logger.error(
                f"Webmention verification failed: source={source_url}, target={target_url}, error={e}",
                exc_info=True,
            )
            return InboundResult.rejected(f"Failed to process source: {e}")

        record = upsert_mention(
            self.store,
            source_url=source_url,
            target_url=target_url,
            post_id=str(post["id"]),
            mention_type=mention_type,
            payload=payload,
        )

        self.event_bus.emit(CoreEvents.WEBMENTION_RECEIVED, serialize_mention(record))
        return InboundResult(ok=True, id=record["id"])

    def _verify_source(self, source_url: str, target_url: str) -> Tuple[str, Dict[str, Any]]:
        """Fetch the source and classify it.

        Returns:
            (mention_type, payload)

        Raises:
            SourceVerificationError: Fetch failed or the target is not referenced.
        """
        session = _build_session()
        try:
            try:
                response = session.get(
                    source_url,
                    headers={"Accept": "text/html, application/xhtml+xml, */*"},
                    timeout=self.verify_timeout,
                    allow_redirects=True,
                    stream=True,
                )
            except requests.exceptions.RequestException as e:
                logger.warning(f"Webmention source fetch failed: source={source_url}, error={e}")
                raise SourceVerificationError(f"Failed to fetch source: {e}") from e

            if not response.ok:
                logger.info(f"Source returned {response.status_code}: {source_url}")
                response.close()
                raise SourceVerificationError(f"Failed to fetch source: {response.status_code}")

            body = _read_bounded_response(response, MAX_DISCOVERY_RESPONSE_BYTES)
        finally:
            session.close()

        html_body = _decode_body(body, _declared_charset(response))

        if target_url not in html_body:
            logger.info(f"Source does not link to target: source={source_url}, target={target_url}")
            raise SourceVerificationError(REASON_NO_BACKLINK)

        entry = extract_hentry(html_body, source_url)
        if entry is None:
            logger.debug(f"No h-entry found on {source_url}; storing as plain mention")
            return "mention", {}

        logger.info(f"Webmention verified: source={source_url}, target={target_url}, type={entry.type}")
        return entry.type, entry.to_payload()
