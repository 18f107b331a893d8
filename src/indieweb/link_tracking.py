"""
Outbound link extraction for webmention sending.

Candidate targets are every http(s) URL that appears anywhere in a post's
rendered HTML, found by pattern match rather than by walking anchors, so
links in attributes and in plain text are both picked up. Candidates are
de-duplicated in encounter order and capped; links back to this site are
then dropped.

References:
    - W3C Webmention: https://www.w3.org/TR/webmention/ (Section 4: Sending)
"""

import html
import logging
import re
from typing import List
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

MAX_CANDIDATES = 25

# Maximum HTML size to scan for links (5 MB).
MAX_HTML_PARSE_BYTES = 5_242_880

URL_PATTERN = re.compile(r"""https?://[^\s"'<>`]+""", re.IGNORECASE)

_TRAILING_PUNCTUATION = ".,;:!?)]}"


def _clean_url(raw: str) -> str:
    url = html.unescape(raw)
    return url.rstrip(_TRAILING_PUNCTUATION)


def origin_of(url: str) -> str:
    """Return scheme://netloc in lowercase, or an empty string."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return ""
    if not parsed.scheme or not parsed.netloc:
        return ""
    return f"{parsed.scheme}://{parsed.netloc}".lower()


def extract_candidate_urls(
    html_content: str,
    site_url: str,
    max_candidates: int = MAX_CANDIDATES,
) -> List[str]:
    """Extract external URLs a post should send webmentions to.

    Args:
        html_content: Rendered HTML of the post.
        site_url: This site's origin; URLs on it are skipped.
        max_candidates: Cap applied to the de-duplicated URL list before
                        self-links are removed.

    Returns:
        External absolute URLs in encounter order.
    """
    if not html_content:
        return []

    if len(html_content) > MAX_HTML_PARSE_BYTES:
        logger.warning(
            f"HTML content too large for link extraction ({len(html_content)} bytes), "
            f"truncating to {MAX_HTML_PARSE_BYTES} bytes"
        )
        html_content = html_content[:MAX_HTML_PARSE_BYTES]

    seen = set()
    candidates: List[str] = []
    for match in URL_PATTERN.finditer(html_content):
        url = _clean_url(match.group(0))
        if not url or url in seen:
            continue
        seen.add(url)
        candidates.append(url)

    if len(candidates) > max_candidates:
        logger.info(f"Found {len(candidates)} outbound URLs, keeping the first {max_candidates}")
        candidates = candidates[:max_candidates]

    site_origin = origin_of(site_url)
    external = []
    for url in candidates:
        url_origin = origin_of(url)
        if not url_origin:
            continue
        if url_origin == site_origin:
            logger.debug(f"Skipping self-link: {url}")
            continue
        external.append(url)

    return external
