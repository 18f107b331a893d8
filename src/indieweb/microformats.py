"""
h-entry extraction from webmention source pages.

Only the handful of microformats2 properties the webmention pipeline needs
are read: author (name, url, photo), plain-text content, published date and
the in-reply-to / like-of / repost-of link lists used for classification.
This is not a general microformats2 parser. Only the first h-entry in
document order is considered, and nested entries are never merged.

References:
    - h-entry: https://microformats.org/wiki/h-entry
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

logger = logging.getLogger(__name__)

# Maximum lengths for stored fields to prevent database bloat
_MAX_NAME_LENGTH = 200
_MAX_URL_LENGTH = 2048
_MAX_CONTENT_LENGTH = 10_000


@dataclass
class Author:
    name: Optional[str] = None
    url: Optional[str] = None
    photo: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        data = {}
        if self.name:
            data["name"] = self.name[:_MAX_NAME_LENGTH]
        if self.url:
            data["url"] = self.url[:_MAX_URL_LENGTH]
        if self.photo:
            data["photo"] = self.photo[:_MAX_URL_LENGTH]
        return data


@dataclass
class HEntry:
    """The parts of an h-entry the webmention pipeline stores.

    Attributes:
        type: reply, like, repost or mention
        author: Author block from p-author, if any
        content: e-content with markup stripped
        published_at: Parsed dt-published datetime
        in_reply_to / like_of / repost_of: every matching link on the entry
    """
    type: str = "mention"
    author: Optional[Author] = None
    content: Optional[str] = None
    published_at: Optional[datetime] = None
    in_reply_to: List[str] = field(default_factory=list)
    like_of: List[str] = field(default_factory=list)
    repost_of: List[str] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        """Return the JSON-serialisable blob stored with the webmention."""
        payload: Dict[str, Any] = {}
        if self.author is not None:
            author = self.author.to_dict()
            if author:
                payload["author"] = author
        if self.content:
            payload["content"] = self.content[:_MAX_CONTENT_LENGTH]
        if self.published_at is not None:
            payload["published_at"] = self.published_at.isoformat()
        return payload


def _has_class(tag: Tag, class_name: str) -> bool:
    return class_name in (tag.get("class") or [])


def _first_with_class(root: Tag, class_name: str, include_self: bool = False) -> Optional[Tag]:
    if include_self and _has_class(root, class_name):
        return root
    return root.find(class_=class_name)


def _all_with_class(root: Tag, class_name: str) -> List[Tag]:
    return root.find_all(class_=class_name)


def _text(tag: Tag) -> str:
    return " ".join(tag.get_text().split())


def _url_value(tag: Tag, source_url: str) -> Optional[str]:
    """u-* property value: href, then src, then text."""
    value = tag.get("href") or tag.get("src") or _text(tag)
    if not value:
        return None
    return urljoin(source_url, value.strip())


# date, optional time with fraction, optional zone (Z, +HH, +HHMM, +HH:MM)
_DATETIME_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2})"
    r"(?:[T ](\d{2}:\d{2}(?::\d{2})?)(?:[.,](\d+))?)?"
    r"\s*(Z|[+-]\d{2}(?::?\d{2})?)?$",
    re.IGNORECASE,
)


def _parse_datetime(value: str) -> Optional[datetime]:
    """Parse a dt-published value.

    Values are normalised before datetime.fromisoformat, which on older
    interpreters accepts only +HH:MM offsets and 3 or 6 digit fractions.
    """
    value = value.strip()
    if not value:
        return None
    match = _DATETIME_RE.match(value)
    if match is None:
        logger.debug(f"Unparseable dt-published value: {value!r}")
        return None

    date_part, time_part, fraction, zone = match.groups()
    normalised = date_part
    if time_part:
        if len(time_part) == 5:
            time_part += ":00"
        normalised += "T" + time_part
        if fraction:
            normalised += "." + fraction[:6].ljust(6, "0")
        if zone:
            if zone.upper() == "Z":
                zone = "+00:00"
            else:
                digits = zone[1:].replace(":", "")
                zone = f"{zone[0]}{digits[:2]}:{digits[2:4] or '00'}"
            normalised += zone

    try:
        return datetime.fromisoformat(normalised)
    except ValueError:
        logger.debug(f"Unparseable dt-published value: {value!r}")
        return None


def _extract_author(entry: Tag, source_url: str) -> Optional[Author]:
    author_el = _first_with_class(entry, "p-author")
    if author_el is None:
        return None

    author = Author()

    # Without p-name the author element's own text is the implied name
    name_el = _first_with_class(author_el, "p-name", include_self=True)
    author.name = _text(name_el if name_el is not None else author_el) or None

    anchor = author_el if author_el.name == "a" and author_el.get("href") else author_el.find("a", href=True)
    if anchor is not None:
        author.url = urljoin(source_url, anchor["href"].strip())

    img = author_el if author_el.name == "img" and author_el.get("src") else author_el.find("img", src=True)
    if img is not None:
        author.photo = urljoin(source_url, img["src"].strip())

    return author


def extract_hentry(html: str, source_url: str) -> Optional[HEntry]:
    """Extract the first h-entry from an HTML document.

    Args:
        html: The fetched source page.
        source_url: URL of the page, used to absolutise relative links.

    Returns:
        HEntry, or None when the page has no h-entry (callers then treat
        the webmention as a plain mention without metadata).
    """
    if not html:
        return None

    try:
        soup = BeautifulSoup(html, "html.parser")
        entry = soup.find(class_="h-entry")
        if entry is None:
            return None

        result = HEntry()
        result.author = _extract_author(entry, source_url)

        content_el = _first_with_class(entry, "e-content")
        if content_el is not None:
            result.content = _text(content_el) or None

        published_el = _first_with_class(entry, "dt-published")
        if published_el is not None:
            raw = published_el.get("datetime") or _text(published_el)
            result.published_at = _parse_datetime(raw)

        for class_name, links in (
            ("u-in-reply-to", result.in_reply_to),
            ("u-like-of", result.like_of),
            ("u-repost-of", result.repost_of),
        ):
            for tag in _all_with_class(entry, class_name):
                url = _url_value(tag, source_url)
                if url:
                    links.append(url)

        result.type = classify(result)
        return result
    except Exception as e:
        logger.warning(f"h-entry extraction failed for {source_url}: {e}")
        return None


def classify(entry: HEntry) -> str:
    """Reply beats like beats repost; anything else is a mention."""
    if entry.in_reply_to:
        return "reply"
    if entry.like_of:
        return "like"
    if entry.repost_of:
        return "repost"
    return "mention"
