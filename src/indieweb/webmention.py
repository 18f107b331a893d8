"""
Webmention protocol implementation: endpoint discovery and sending.

Webmention is a W3C standard for notifying a URL when you link to it.
The protocol is simple:

    POST {webmention-endpoint}
    Content-Type: application/x-www-form-urlencoded

    source={your-post-url}&target={linked-url}

Discovery tries the cheapest signal first: a HEAD request for a Link
header, then a GET for the Link header again and finally the HTML body
for <link rel="webmention"> or <a rel="webmention">.

Usage:
    >>> from indieweb.webmention import discover_webmention_endpoint, post_webmention
    >>> endpoint = discover_webmention_endpoint("https://other.example.com/article")
    >>> if endpoint:
    ...     result = post_webmention(endpoint, "https://mysite.test/posts/hello", "https://other.example.com/article")

References:
    - W3C Webmention: https://www.w3.org/TR/webmention/
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urljoin

import requests
from bs4 import BeautifulSoup, UnicodeDammit


logger = logging.getLogger(__name__)

WEBMENTION_USER_AGENT = "Webmention (Mentionable; +https://mentionable.local)"
MAX_DISCOVERY_RESPONSE_BYTES = 1_048_576  # 1 MB
MAX_REDIRECTS = 20  # W3C Webmention recommendation

DISCOVERY_HEAD_TIMEOUT = 5.0
DISCOVERY_GET_TIMEOUT = 10.0
SEND_TIMEOUT = 10.0

# <URL>; rel="webmention"  or  <URL>; rel=webmention  (rel may hold several tokens)
LINK_HEADER_RE = re.compile(
    r'<([^>]*)>\s*;[^,]*?\brel\s*=\s*(?:"([^"]*)"|([^\s;,]+))',
    re.IGNORECASE,
)

# charset parameter of a Content-Type header
CHARSET_RE = re.compile(r"""charset\s*=\s*["']?([\w.:-]+)""", re.IGNORECASE)


def _build_session() -> requests.Session:
    """Build a requests Session with webmention-appropriate settings.

    Configures User-Agent and redirect limits per the W3C Webmention recommendation.
    """
    session = requests.Session()
    session.headers["User-Agent"] = WEBMENTION_USER_AGENT
    session.max_redirects = MAX_REDIRECTS
    return session


def _read_bounded_response(response: requests.Response, max_bytes: int) -> bytes:
    """Read a streamed response body, stopping once max_bytes is exceeded."""
    chunks = []
    bytes_read = 0
    try:
        for chunk in response.iter_content(chunk_size=8192, decode_unicode=False):
            chunks.append(chunk)
            bytes_read += len(chunk)
            if bytes_read > max_bytes:
                logger.warning(f"Response body exceeded {max_bytes} bytes, truncating: {response.url}")
                break
    finally:
        response.close()
    return b"".join(chunks)


def _declared_charset(response: requests.Response) -> Optional[str]:
    """Charset from the Content-Type header, or None when the header names none.

    requests.Response.encoding cannot be used for this: it reports
    ISO-8859-1 for any charset-less text/* response.
    """
    content_type = response.headers.get("Content-Type", "")
    if not isinstance(content_type, str):
        return None
    match = CHARSET_RE.search(content_type)
    return match.group(1) if match else None


def _decode_body(body: bytes, declared_charset: Optional[str] = None) -> str:
    """Decode an HTML body.

    A charset from the Content-Type header wins; otherwise a byte order
    mark or <meta charset> is honoured, then UTF-8 is tried before
    guessing.
    """
    dammit = UnicodeDammit(
        body,
        known_definite_encodings=[declared_charset] if declared_charset else [],
        user_encodings=["utf-8"],
        is_html=True,
    )
    if dammit.unicode_markup is None:
        return body.decode("utf-8", errors="replace")
    return dammit.unicode_markup


@dataclass
class WebmentionResult:
    """Result of a webmention send attempt.

    Attributes:
        success: Whether the webmention was accepted
        status_code: HTTP status code from the response (0 for connection errors)
        message: Human-readable status message
        target: Target URL the webmention was sent for
        endpoint: Webmention endpoint URL used for this send
        location: Optional status URL returned by some endpoints
    """
    success: bool
    status_code: int
    message: str
    target: Optional[str] = None
    endpoint: Optional[str] = None
    location: Optional[str] = None


def _endpoint_from_link_header(link_header: str, base_url: str) -> Optional[str]:
    """Return the absolute webmention endpoint advertised in a Link header."""
    if not link_header:
        return None
    for match in LINK_HEADER_RE.finditer(link_header):
        rel = match.group(2) if match.group(2) is not None else match.group(3)
        if "webmention" not in rel.lower().split():
            continue
        try:
            return urljoin(base_url, match.group(1))
        except ValueError as e:
            logger.warning(f"Ignoring malformed webmention Link header value {match.group(1)!r}: {e}")
    return None


def _has_webmention_rel(tag) -> bool:
    rels = tag.get("rel") or []
    if isinstance(rels, str):
        rels = rels.split()
    return tag.has_attr("href") and "webmention" in (r.lower() for r in rels)


def _endpoint_from_html(html_body: str, base_url: str) -> Optional[str]:
    """Return the absolute endpoint from <link rel=webmention>, else <a rel=webmention>."""
    soup = BeautifulSoup(html_body, "html.parser")
    for tag_name in ("link", "a"):
        tag = soup.find(lambda t: t.name == tag_name and _has_webmention_rel(t))
        if tag is None:
            continue
        try:
            return urljoin(base_url, tag["href"])
        except ValueError as e:
            logger.warning(f"Ignoring malformed webmention href {tag['href']!r}: {e}")
    return None


def _response_url(response: requests.Response, fallback: str) -> str:
    url = getattr(response, "url", None)
    return url if isinstance(url, str) and url else fallback


def discover_webmention_endpoint(
    target_url: str,
    head_timeout: float = DISCOVERY_HEAD_TIMEOUT,
    get_timeout: float = DISCOVERY_GET_TIMEOUT,
) -> Optional[str]:
    """Discover the webmention endpoint for a target URL.

    1. HEAD the URL and check the Link header for rel="webmention"
    2. GET the URL (2xx only) and check the Link header again
    3. Parse the HTML for <link rel="webmention">, then <a rel="webmention">

    Every failure is treated as "no endpoint": this function never raises.

    Args:
        target_url: The URL to discover the webmention endpoint for.
        head_timeout: Timeout for the HEAD request in seconds.
        get_timeout: Timeout for the GET request in seconds.

    Returns:
        The absolute webmention endpoint URL, or None if not found.
    """
    session = _build_session()
    try:
        return _discover(session, target_url, head_timeout, get_timeout)
    finally:
        session.close()


def _discover(
    session: requests.Session,
    target_url: str,
    head_timeout: float,
    get_timeout: float,
) -> Optional[str]:
    try:
        head = session.head(target_url, timeout=head_timeout, allow_redirects=True)
        try:
            endpoint = _endpoint_from_link_header(
                head.headers.get("Link", ""), _response_url(head, target_url)
            )
        finally:
            head.close()
        if endpoint:
            logger.debug(f"Webmention endpoint found in HEAD Link header: {target_url} -> {endpoint}")
            return endpoint
    except requests.exceptions.RequestException as e:
        logger.warning(f"HEAD failed during webmention discovery: {target_url}, error={e}")

    try:
        response = session.get(
            target_url,
            headers={"Accept": "text/html"},
            timeout=get_timeout,
            allow_redirects=True,
            stream=True,
        )
    except requests.exceptions.RequestException as e:
        logger.warning(f"GET failed during webmention discovery: {target_url}, error={e}")
        return None

    if not response.ok:
        logger.info(f"Target returned {response.status_code} during webmention discovery: {target_url}")
        response.close()
        return None

    base_url = _response_url(response, target_url)

    # Check Link header before reading the body
    endpoint = _endpoint_from_link_header(response.headers.get("Link", ""), base_url)
    if endpoint:
        response.close()
        logger.debug(f"Webmention endpoint found in GET Link header: {target_url} -> {endpoint}")
        return endpoint

    try:
        body = _read_bounded_response(response, MAX_DISCOVERY_RESPONSE_BYTES)
        endpoint = _endpoint_from_html(_decode_body(body, _declared_charset(response)), base_url)
    except requests.exceptions.RequestException as e:
        logger.warning(f"Failed reading body during webmention discovery: {target_url}, error={e}")
        return None
    except Exception as e:
        logger.warning(f"Failed parsing HTML during webmention discovery: {target_url}, error={e}")
        return None

    if endpoint:
        logger.debug(f"Webmention endpoint found in HTML: {target_url} -> {endpoint}")
        return endpoint

    logger.info(f"No webmention endpoint found for: {target_url}")
    return None


def post_webmention(
    endpoint: str,
    source_url: str,
    target_url: str,
    timeout: float = SEND_TIMEOUT,
) -> WebmentionResult:
    """POST a webmention to an already discovered endpoint.

    Args:
        endpoint: The receiver's webmention endpoint.
        source_url: The URL of the page that mentions the target.
        target_url: The URL being mentioned.
        timeout: Request timeout in seconds.

    Returns:
        WebmentionResult with success status and details.
    """
    logger.info(f"Sending webmention: source={source_url}, target={target_url}, endpoint={endpoint}")

    session = _build_session()
    try:
        response = session.post(
            endpoint,
            data={"source": source_url, "target": target_url},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=timeout,
        )

        if response.ok:
            location = response.headers.get("Location")
            logger.info(
                f"Webmention accepted: source={source_url}, target={target_url}, "
                f"status_code={response.status_code}, location={location}"
            )
            return WebmentionResult(
                success=True,
                status_code=response.status_code,
                message="Webmention accepted",
                target=target_url,
                endpoint=endpoint,
                location=location,
            )

        error_msg = _parse_error_response(response)
        logger.warning(
            f"Webmention rejected: source={source_url}, target={target_url}, "
            f"status_code={response.status_code}, error={error_msg}"
        )
        return WebmentionResult(
            success=False,
            status_code=response.status_code,
            message=error_msg,
            target=target_url,
            endpoint=endpoint,
        )

    except requests.exceptions.TooManyRedirects:
        logger.error(f"Too many redirects sending webmention: endpoint={endpoint}")
        return WebmentionResult(
            success=False, status_code=0, message="Too many redirects", target=target_url, endpoint=endpoint
        )
    except requests.exceptions.Timeout:
        logger.error(f"Webmention request timed out: endpoint={endpoint}")
        return WebmentionResult(
            success=False, status_code=0, message="Request timed out", target=target_url, endpoint=endpoint
        )
    except requests.exceptions.RequestException as e:
        logger.error(f"Webmention request failed: endpoint={endpoint}, error={e}")
        return WebmentionResult(
            success=False, status_code=0, message=f"Request failed: {e}", target=target_url, endpoint=endpoint
        )
    finally:
        session.close()


def _parse_error_response(response: requests.Response) -> str:
    """Parse error message from an HTTP response."""
    try:
        data = response.json()
        if isinstance(data, dict) and "error" in data:
            return data.get("error_description", data["error"])
    except ValueError:
        pass
    try:
        text = response.text.strip()
        if text and len(text) < 200:
            return f"HTTP {response.status_code}: {text}"
    except (AttributeError, TypeError):
        pass
    return f"HTTP {response.status_code}: {response.reason}"
