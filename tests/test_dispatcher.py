"""
Tests for outbound webmention dispatch.

Discovery and sending are patched at the indieweb.dispatcher module level,
so these tests exercise scheduling, candidate selection, failure isolation
and event reporting without any network access.

Running Tests:
    $ PYTHONPATH=src python -m pytest tests/test_dispatcher.py -v
"""
import threading
from unittest.mock import patch

import pytest

from events import CoreEvents
from indieweb.dispatcher import OutboundDispatcher
from indieweb.webmention import WebmentionResult

SITE = "https://mysite.test"


def _accepted(endpoint, source_url, target_url, timeout=None):
    return WebmentionResult(success=True, status_code=202, message="Webmention accepted",
                            target=target_url, endpoint=endpoint)


@pytest.fixture
def sent(event_bus):
    payloads = []
    event_bus.on(CoreEvents.WEBMENTION_SENT, payloads.append)
    return payloads


@pytest.fixture
def dispatcher(posts, event_bus):
    dispatcher = OutboundDispatcher(SITE, posts, event_bus)
    yield dispatcher
    dispatcher.shutdown(wait=True)


class TestDispatch:
    def test_sends_to_external_links_with_endpoints(self, dispatcher, posts, sent):
        posts.add({
            "id": "7",
            "slug": "links",
            "html": (
                '<a href="https://a.example/1">a</a>'
                '<a href="https://b.example/2">b</a>'
                '<a href="https://c.example/3">c</a>'
                f'<a href="{SITE}/posts/other">self</a>'
            ),
        })
        endpoints = {
            "https://a.example/1": "https://a.example/wm",
            "https://b.example/2": "https://b.example/wm",
        }
        discovered = []

        def discover(target, head_timeout=None, get_timeout=None):
            discovered.append(target)
            return endpoints.get(target)

        with patch("indieweb.dispatcher.discover_webmention_endpoint", side_effect=discover), \
             patch("indieweb.dispatcher.post_webmention", side_effect=_accepted) as post:
            results = dispatcher.dispatch("7")

        assert sorted(discovered) == ["https://a.example/1", "https://b.example/2", "https://c.example/3"]
        assert len(results) == 2
        assert all(r.success for r in results)
        sources = {call.args[1] for call in post.call_args_list}
        assert sources == {f"{SITE}/posts/links"}

        assert len(sent) == 2
        by_target = {event["target"]: event for event in sent}
        assert by_target["https://a.example/1"] == {
            "postId": "7",
            "source": f"{SITE}/posts/links",
            "target": "https://a.example/1",
            "endpoint": "https://a.example/wm",
            "success": True,
            "statusCode": 202,
            "message": "Webmention accepted",
        }

    def test_one_failing_target_does_not_stop_others(self, dispatcher, posts, sent):
        posts.add({
            "id": "8",
            "slug": "mixed",
            "html": '<a href="https://bad.example/">x</a><a href="https://good.example/">y</a>',
        })

        def send(endpoint, source_url, target_url, timeout=None):
            if "bad" in target_url:
                raise RuntimeError("connection reset")
            return _accepted(endpoint, source_url, target_url)

        with patch("indieweb.dispatcher.discover_webmention_endpoint",
                   side_effect=lambda target, **kwargs: target + "wm"), \
             patch("indieweb.dispatcher.post_webmention", side_effect=send):
            results = dispatcher.dispatch("8")

        assert len(results) == 2
        outcome = {r.target: r.success for r in results}
        assert outcome == {"https://bad.example/": False, "https://good.example/": True}

        failed = next(e for e in sent if e["target"] == "https://bad.example/")
        assert failed["success"] is False
        assert failed["statusCode"] is None
        assert "connection reset" in failed["message"]

    def test_crashing_discovery_is_isolated(self, dispatcher, posts, sent):
        posts.add({
            "id": "9",
            "slug": "crash",
            "html": '<a href="https://crash.example/">x</a><a href="https://fine.example/">y</a>',
        })

        def discover(target, **kwargs):
            if "crash" in target:
                raise RuntimeError("parser exploded")
            return "https://fine.example/wm"

        with patch("indieweb.dispatcher.discover_webmention_endpoint", side_effect=discover), \
             patch("indieweb.dispatcher.post_webmention", side_effect=_accepted):
            results = dispatcher.dispatch("9")

        assert [r.target for r in results] == ["https://fine.example/"]
        assert [e["target"] for e in sent] == ["https://fine.example/"]

    def test_candidates_capped(self, dispatcher, posts):
        posts.add({
            "id": "10",
            "slug": "many",
            "html": "".join(f'<a href="https://ext{i}.example/">x</a>' for i in range(40)),
        })
        discovered = []

        def discover(target, **kwargs):
            discovered.append(target)
            return None

        with patch("indieweb.dispatcher.discover_webmention_endpoint", side_effect=discover), \
             patch("indieweb.dispatcher.post_webmention") as post:
            results = dispatcher.dispatch("10")

        assert results == []
        assert len(discovered) == 25
        post.assert_not_called()

    def test_source_url_falls_back_to_post_url(self, dispatcher, posts):
        posts.add({"id": "11", "url": "https://mysite.test/p/11", "html": '<a href="https://a.example/">a</a>'})

        with patch("indieweb.dispatcher.discover_webmention_endpoint", return_value="https://a.example/wm"), \
             patch("indieweb.dispatcher.post_webmention", side_effect=_accepted) as post:
            dispatcher.dispatch("11")

        assert post.call_args.args[1] == "https://mysite.test/p/11"

    def test_missing_post(self, dispatcher, sent):
        with patch("indieweb.dispatcher.discover_webmention_endpoint") as discover:
            assert dispatcher.dispatch("404") == []

        discover.assert_not_called()
        assert sent == []

    def test_post_without_links(self, dispatcher, posts):
        with patch("indieweb.dispatcher.discover_webmention_endpoint") as discover:
            assert dispatcher.dispatch("42") == []

        discover.assert_not_called()


class TestScheduling:
    def test_publish_event_does_not_wait_for_delivery(self, dispatcher, posts, event_bus, sent):
        posts.add({"id": "12", "slug": "slow", "html": '<a href="https://slow.example/">x</a>'})
        release = threading.Event()
        started = threading.Event()

        def slow_send(endpoint, source_url, target_url, timeout=None):
            started.set()
            release.wait(timeout=5)
            return _accepted(endpoint, source_url, target_url)

        dispatcher.register()
        with patch("indieweb.dispatcher.discover_webmention_endpoint", return_value="https://slow.example/wm"), \
             patch("indieweb.dispatcher.post_webmention", side_effect=slow_send):
            event_bus.emit(CoreEvents.POST_PUBLISHED, {"postId": "12"})

            # emit() has returned while the send is still blocked
            assert started.wait(timeout=5)
            assert sent == []

            release.set()
            assert dispatcher.wait(timeout=5) is True

        assert len(sent) == 1
        assert sent[0]["postId"] == "12"

    def test_updated_event_also_dispatches(self, dispatcher, posts, event_bus):
        posts.add({"id": "13", "slug": "upd", "html": '<a href="https://a.example/">x</a>'})
        dispatcher.register()

        with patch("indieweb.dispatcher.discover_webmention_endpoint", return_value=None) as discover:
            event_bus.emit(CoreEvents.POST_UPDATED, {"postId": "13"})
            assert dispatcher.wait(timeout=5)

        discover.assert_called_once()

    def test_event_without_post_id_ignored(self, dispatcher, event_bus):
        dispatcher.register()

        with patch.object(dispatcher, "schedule") as schedule:
            event_bus.emit(CoreEvents.POST_PUBLISHED, {})

        schedule.assert_not_called()

    def test_disabled_dispatcher_schedules_nothing(self, posts, event_bus):
        dispatcher = OutboundDispatcher(SITE, posts, event_bus, enabled=False)
        try:
            assert dispatcher.schedule("42") is None
            assert dispatcher.wait(timeout=0) is True
        finally:
            dispatcher.shutdown()

    def test_background_failure_is_logged_not_raised(self, dispatcher, posts):
        with patch.object(posts, "get_post_by_id", side_effect=RuntimeError("api down")):
            future = dispatcher.schedule("42")
            assert dispatcher.wait(timeout=5)

        assert future.result() == []

    def test_shutdown_unsubscribes(self, posts, event_bus):
        dispatcher = OutboundDispatcher(SITE, posts, event_bus)
        dispatcher.register()
        assert event_bus.subscriber_count(CoreEvents.POST_PUBLISHED) == 1

        dispatcher.shutdown()

        assert event_bus.subscriber_count(CoreEvents.POST_PUBLISHED) == 0
        assert event_bus.subscriber_count(CoreEvents.POST_UPDATED) == 0


def test_from_config(site_config, posts, event_bus):
    site_config["webmention"]["send"] = {"enabled": False, "max_candidates": 5, "max_workers": 2}
    site_config["webmention"]["timeouts"]["send"] = 4

    dispatcher = OutboundDispatcher.from_config(site_config, posts, event_bus)
    try:
        assert dispatcher.site_url == SITE
        assert dispatcher.enabled is False
        assert dispatcher.max_candidates == 5
        assert dispatcher.max_workers == 2
        assert dispatcher.send_timeout == 4.0
        assert dispatcher.head_timeout == 5.0
    finally:
        dispatcher.shutdown()
