"""
Tests for the Flask HTTP surface.

Covers:
- POST /api/webmentions (form and JSON bodies, validation, errors, rate limiting)
- GET /api/webmentions (per-post listing and statistics)
- POST /webhook/post (schema validation, token check, event emission)
- GET /health and the Link: rel="webmention" header

Running Tests:
    $ PYTHONPATH=src python -m pytest tests/test_app.py -v
"""
import sqlite3
from unittest.mock import MagicMock, patch

import pytest

from events import CoreEvents
from server import create_app
from server.app import PostWebhookValidationError, validate_post_webhook

SITE = "https://mysite.test"
SOURCE = "https://alice.example/notes/1"
TARGET = f"{SITE}/posts/hello-world"
LINK_HEADER = f'<{SITE}/api/webmentions>; rel="webmention"'


def _source_session(body):
    response = MagicMock()
    response.status_code = 200
    response.ok = True
    response.url = SOURCE
    response.headers = {"Content-Type": "text/html"}
    response.iter_content.return_value = [body.encode("utf-8")]
    session = MagicMock()
    session.get.return_value = response
    return session


# =========================================================================
# Fixtures
# =========================================================================

@pytest.fixture
def make_app(site_config, store, posts, event_bus):
    """Build a test app; keyword overrides are merged into the config sections."""
    def _make(**sections):
        for section, values in sections.items():
            site_config.setdefault(section, {}).update(values)
        app = create_app(
            config=site_config,
            store=store,
            post_resolver=posts,
            event_bus=event_bus,
            dispatcher=MagicMock(),
        )
        app.config["TESTING"] = True
        return app
    return _make


@pytest.fixture
def client(make_app):
    return make_app().test_client()


def _seed(store, source, mention_type="mention", created_at="2024-01-01T00:00:00+00:00", payload=None, post_id="42"):
    return store.create({
        "source_url": source,
        "target_url": TARGET,
        "post_id": post_id,
        "type": mention_type,
        "payload": payload or {},
        "created_at": created_at,
    })


# =========================================================================
# POST /api/webmentions
# =========================================================================

class TestReceiveWebmention:
    def test_form_webmention_returns_202(self, client, store):
        body = f'<div class="h-entry"><a class="u-like-of" href="{TARGET}">liked</a></div>'

        with patch("indieweb.receiver._build_session", return_value=_source_session(body)):
            response = client.post(
                "/api/webmentions",
                data={"source": SOURCE, "target": TARGET},
                content_type="application/x-www-form-urlencoded",
            )

        assert response.status_code == 202
        data = response.get_json()
        assert data["success"] is True
        assert data["message"] == "WebMention processed successfully"
        assert store.get(data["id"])["type"] == "like"

    def test_json_webmention_returns_202(self, client):
        body = f'<a href="{TARGET}">x</a>'

        with patch("indieweb.receiver._build_session", return_value=_source_session(body)):
            response = client.post("/api/webmentions", json={"source": SOURCE, "target": TARGET})

        assert response.status_code == 202
        assert response.get_json()["id"]

    def test_missing_source_returns_400(self, client):
        response = client.post(
            "/api/webmentions",
            data={"target": TARGET},
            content_type="application/x-www-form-urlencoded",
        )

        assert response.status_code == 400
        assert response.get_json() == {"error": "Missing source or target URL"}

    def test_unsupported_content_type_returns_400(self, client):
        response = client.post(
            "/api/webmentions",
            data=f"source={SOURCE}&target={TARGET}",
            content_type="text/plain",
        )

        assert response.status_code == 400
        assert response.get_json()["error"] == (
            "Invalid content type. Use application/x-www-form-urlencoded or application/json"
        )

    def test_foreign_target_returns_400(self, client):
        with patch("indieweb.receiver._build_session") as build_session:
            response = client.post("/api/webmentions", json={
                "source": SOURCE,
                "target": "https://evil.test/posts/hello-world",
            })

        assert response.status_code == 400
        assert response.get_json() == {"error": "Target URL does not belong to this site"}
        build_session.assert_not_called()

    def test_storage_error_returns_500(self, client, store):
        body = f'<a href="{TARGET}">x</a>'

        with patch("indieweb.receiver._build_session", return_value=_source_session(body)), \
             patch.object(store, "find_by_pair", side_effect=sqlite3.OperationalError("disk I/O error")):
            response = client.post("/api/webmentions", json={"source": SOURCE, "target": TARGET})

        assert response.status_code == 500
        assert response.get_json() == {"error": "Internal server error"}

    def test_receiving_disabled_returns_404(self, make_app):
        client = make_app(webmention={"receive": {"enabled": False}}).test_client()

        response = client.post("/api/webmentions", json={"source": SOURCE, "target": TARGET})

        assert response.status_code == 404

    def test_rate_limit_returns_429(self, make_app):
        client = make_app(security={"rate_limit_requests": 2}).test_client()

        statuses = [
            client.post("/api/webmentions", json={"source": "", "target": ""}).status_code
            for _ in range(3)
        ]

        assert statuses == [400, 400, 429]

    def test_rate_limit_can_be_disabled(self, make_app):
        client = make_app(security={"rate_limit_enabled": False, "rate_limit_requests": 1}).test_client()

        statuses = [
            client.post("/api/webmentions", json={"source": "", "target": ""}).status_code
            for _ in range(3)
        ]

        assert statuses == [400, 400, 400]


# =========================================================================
# GET /api/webmentions
# =========================================================================

class TestListWebmentions:
    def test_by_post_newest_first_without_target(self, client, store):
        _seed(store, "https://a.example/old", created_at="2024-01-01T00:00:00+00:00")
        _seed(store, "https://a.example/new", mention_type="reply",
              created_at="2024-02-01T00:00:00+00:00", payload={"content": "Nice"})
        _seed(store, "https://a.example/elsewhere", post_id="7")

        response = client.get("/api/webmentions?postId=42")

        assert response.status_code == 200
        mentions = response.get_json()["webmentions"]
        assert [m["sourceUrl"] for m in mentions] == ["https://a.example/new", "https://a.example/old"]
        assert mentions[0]["type"] == "reply"
        assert mentions[0]["content"] == "Nice"
        assert "targetUrl" not in mentions[0]
        assert "postId" not in mentions[0]

    def test_unknown_post_returns_empty_list(self, client):
        response = client.get("/api/webmentions?postId=nope")

        assert response.status_code == 200
        assert response.get_json() == {"webmentions": []}

    def test_stats(self, client, store):
        _seed(store, "https://a.example/1", mention_type="like")
        _seed(store, "https://a.example/2", mention_type="like")
        _seed(store, "https://a.example/3", mention_type="repost")

        response = client.get("/api/webmentions?stats=1")

        assert response.status_code == 200
        stats = response.get_json()["stats"]
        assert stats["total"] == 3
        assert stats["byType"] == {"mention": 0, "like": 2, "repost": 1, "reply": 0}
        assert len(stats["recent"]) == 3
        assert stats["recent"][0]["targetUrl"] == TARGET

    def test_stats_recent_capped_at_ten(self, client, store):
        for i in range(12):
            _seed(store, f"https://a.example/{i}", created_at=f"2024-01-{i + 1:02d}T00:00:00+00:00")

        stats = client.get("/api/webmentions?stats=1").get_json()["stats"]

        assert stats["total"] == 12
        assert len(stats["recent"]) == 10

    def test_neither_parameter_returns_400(self, client):
        response = client.get("/api/webmentions")

        assert response.status_code == 400
        assert response.get_json() == {"error": "Specify postId or stats parameter"}


# =========================================================================
# POST /webhook/post
# =========================================================================

class TestPostWebhook:
    def test_published_emits_event(self, client, event_bus):
        received = []
        event_bus.on(CoreEvents.POST_PUBLISHED, received.append)

        response = client.post("/webhook/post", json={
            "event": "published",
            "post": {"id": "42", "slug": "hello-world"},
        })

        assert response.status_code == 202
        assert received == [{"postId": "42", "slug": "hello-world"}]

    def test_updated_emits_update_event(self, client, event_bus):
        published, updated = [], []
        event_bus.on(CoreEvents.POST_PUBLISHED, published.append)
        event_bus.on(CoreEvents.POST_UPDATED, updated.append)

        response = client.post("/webhook/post", json={"event": "updated", "post": {"id": "42"}})

        assert response.status_code == 202
        assert published == []
        assert updated == [{"postId": "42", "slug": None}]

    def test_invalid_payload_returns_400(self, client, event_bus):
        received = []
        event_bus.on(CoreEvents.POST_PUBLISHED, received.append)

        response = client.post("/webhook/post", json={"event": "deleted", "post": {"id": "42"}})

        assert response.status_code == 400
        assert "Schema validation failed" in response.get_json()["details"]
        assert received == []

    def test_non_json_returns_400(self, client):
        response = client.post("/webhook/post", data="event=published", content_type="text/plain")

        assert response.status_code == 400

    def test_token_required_when_configured(self, make_app):
        client = make_app(security={"internal_api_token": "s3cret"}).test_client()
        payload = {"event": "published", "post": {"id": "42"}}

        assert client.post("/webhook/post", json=payload).status_code == 401
        assert client.post("/webhook/post", json=payload,
                           headers={"X-Internal-Token": "wrong"}).status_code == 401
        assert client.post("/webhook/post", json=payload,
                           headers={"X-Internal-Token": "s3cret"}).status_code == 202

    def test_token_from_environment(self, make_app, monkeypatch):
        monkeypatch.setenv("INTERNAL_API_TOKEN", "env-token")
        client = make_app().test_client()

        response = client.post("/webhook/post", json={"event": "published", "post": {"id": "42"}})

        assert response.status_code == 401


def test_validate_post_webhook():
    validate_post_webhook({"event": "published", "post": {"id": "abc"}})

    with pytest.raises(PostWebhookValidationError) as exc_info:
        validate_post_webhook({"event": "published", "post": {"id": ""}})
    assert "post.id" in str(exc_info.value)

    with pytest.raises(PostWebhookValidationError):
        validate_post_webhook(None)


# =========================================================================
# Health and endpoint advertisement
# =========================================================================

class TestHealthAndDiscovery:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.get_json() == {"status": "healthy"}

    def test_every_response_advertises_endpoint(self, client):
        assert client.get("/health").headers["Link"] == LINK_HEADER
        assert client.get("/api/webmentions").headers["Link"] == LINK_HEADER
        assert client.get("/no-such-page").headers["Link"] == LINK_HEADER


def test_default_dispatcher_registered(site_config, store, posts, event_bus):
    create_app(config=site_config, store=store, post_resolver=posts, event_bus=event_bus)

    assert event_bus.subscriber_count(CoreEvents.POST_PUBLISHED) == 1
    assert event_bus.subscriber_count(CoreEvents.POST_UPDATED) == 1
