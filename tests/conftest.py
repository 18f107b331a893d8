"""
Pytest configuration and shared fixtures for all tests.

This module provides shared fixtures for the test suite, including:
- Rate limit cache cleanup between tests
- Environment isolation for SITE_URL / INTERNAL_API_TOKEN
- A site configuration pointing at https://mysite.test
- Fake post resolver and webmention store fixtures
"""

import pytest

from config import get_default_config
from events import EventBus
from mentions import WebmentionStore
from server import clear_rate_limit_caches

SITE_URL = "https://mysite.test"


class FakePostResolver:
    """In-memory stand-in for the content API client."""

    def __init__(self, posts=None):
        self.posts = {post["id"]: post for post in (posts or [])}
        self.slug_lookups = []
        self.id_lookups = []

    def add(self, post):
        self.posts[post["id"]] = post

    def find_by_slug(self, slug):
        self.slug_lookups.append(slug)
        for post in self.posts.values():
            if post.get("slug") == slug:
                return post
        return None

    def get_post_by_id(self, post_id):
        self.id_lookups.append(post_id)
        return self.posts.get(post_id)


@pytest.fixture(autouse=True)
def clear_caches():
    """Clear rate limiting caches before and after each test."""
    clear_rate_limit_caches()
    yield
    clear_rate_limit_caches()


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Keep host environment variables from leaking into configuration."""
    monkeypatch.delenv("SITE_URL", raising=False)
    monkeypatch.delenv("INTERNAL_API_TOKEN", raising=False)
    monkeypatch.delenv("MENTIONABLE_DEBUG", raising=False)


@pytest.fixture
def site_config(tmp_path):
    """Default configuration for https://mysite.test with storage under tmp_path."""
    config = get_default_config()
    config["site"]["url"] = SITE_URL
    config["webmention"]["storage_directory"] = str(tmp_path / "webmentions")
    return config


@pytest.fixture
def store(tmp_path):
    """Temporary WebmentionStore."""
    return WebmentionStore(str(tmp_path / "webmentions"))


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def posts():
    """Resolver that knows one published post, hello-world (id 42)."""
    return FakePostResolver([
        {
            "id": "42",
            "slug": "hello-world",
            "html": "<p>Hello</p>",
        }
    ])
