"""
Blog Content API Client.

This module provides a read-only client for the blogging platform's posts
API. The webmention pipeline uses it to resolve a target URL's slug to a
local post and to load a post's rendered HTML before sending outbound
webmentions.

Endpoints used:
    GET {api_url}/api/posts?slug=<slug>&limit=1
    GET {api_url}/api/posts/<id>?render=1

Both answer with the platform's envelope: {"data": ..., "meta": ..., "error": ...}.
"""
import logging
import requests
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ContentAPIClient:
    """
    Client for the blog's posts API.

    Attributes:
        api_url: Base URL of the blog (e.g., https://mysite.test)
        api_key: Optional API key sent as a bearer token
        timeout: Request timeout in seconds
    """

    def __init__(self, api_url: str, api_key: str = "", timeout: int = 10):
        self.api_url = api_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout
        self.enabled = bool(api_url)

        if self.enabled:
            logger.info(f"ContentAPIClient initialized for {self.api_url}")
        else:
            logger.warning("ContentAPIClient disabled - missing api_url")

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ContentAPIClient":
        """
        Create a ContentAPIClient from configuration dictionary.

        Falls back to site.url when content_api.url is not set.

        Args:
            config: Configuration dictionary with content_api settings

        Returns:
            Configured ContentAPIClient instance
        """
        from config import read_secret_file

        content_api_config = config.get("content_api", {})

        api_url = content_api_config.get("url") or config.get("site", {}).get("url", "")
        api_key = content_api_config.get("key", "")

        # Support reading API key from file (for Docker secrets)
        api_key_file = content_api_config.get("key_file")
        if api_key_file:
            api_key = read_secret_file(api_key_file) or api_key

        return cls(
            api_url=api_url,
            api_key=api_key,
            timeout=content_api_config.get("timeout", 10),
        )

    def _build_url(self, endpoint: str) -> str:
        """Build full API URL for an endpoint."""
        return f"{self.api_url}/api/{endpoint}"

    def _make_request(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        """
        Make a request to the posts API.

        Args:
            endpoint: API endpoint (e.g., "posts")
            params: Optional query parameters

        Returns:
            The envelope's data member, or None if the request failed or
            the resource does not exist
        """
        if not self.enabled:
            logger.warning("Content API client is not enabled")
            return None

        url = self._build_url(endpoint)
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = requests.get(url, params=params or {}, headers=headers, timeout=self.timeout)
            if response.status_code == 404:
                logger.debug(f"Content API returned 404: {url}")
                return None
            response.raise_for_status()
            body = response.json()
        except requests.exceptions.Timeout:
            logger.error(f"Timeout requesting content API: {url}")
            return None
        except requests.exceptions.HTTPError as e:
            logger.error(f"HTTP error from content API: {e}")
            return None
        except requests.exceptions.RequestException as e:
            logger.error(f"Request error from content API: {e}")
            return None
        except ValueError as e:
            logger.error(f"Invalid JSON from content API: {url}: {e}")
            return None

        if not isinstance(body, dict):
            logger.error(f"Unexpected content API response shape from {url}")
            return None
        return body.get("data")

    def find_by_slug(self, slug: str) -> Optional[Dict[str, Any]]:
        """
        Resolve a post slug to a post.

        Args:
            slug: Post slug

        Returns:
            Post dictionary (at least id and slug) or None if not found
        """
        data = self._make_request("posts", {"slug": slug, "limit": 1})
        if isinstance(data, list):
            data = data[0] if data else None
        if isinstance(data, dict) and data.get("id") and data.get("slug", slug) == slug:
            return data
        return None

    def get_post_by_id(self, post_id: str) -> Optional[Dict[str, Any]]:
        """
        Retrieve a post with its rendered HTML.

        Args:
            post_id: Local post ID

        Returns:
            Post dictionary with id, slug and html, or None if not found
        """
        data = self._make_request(f"posts/{post_id}", {"render": 1})
        if isinstance(data, dict) and data.get("id"):
            return data
        return None
