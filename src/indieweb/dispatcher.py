"""
Outbound webmention dispatch.

Subscribes to post publish/update events and, for each event, schedules a
background job that loads the post's rendered HTML, picks out external
URLs, discovers each one's webmention endpoint and sends a webmention to
it. The event handler only schedules; the publisher never waits for
delivery.

Each candidate target is handled in its own worker with its own request
timeouts, so one slow or failing host cannot hold up the others. One
webmentions.sent event is emitted per delivery attempt.

Usage:
    >>> dispatcher = OutboundDispatcher.from_config(config, post_resolver, event_bus)
    >>> dispatcher.register()
    >>> event_bus.emit(CoreEvents.POST_PUBLISHED, {"postId": "abc"})
    >>> dispatcher.wait(timeout=30)   # tests / shutdown only
"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed, wait as wait_futures
from typing import Any, Callable, Dict, List, Optional, Set

from config import get_site_url, get_webmention_timeouts
from events import CoreEvents
from indieweb.link_tracking import MAX_CANDIDATES, extract_candidate_urls
from indieweb.webmention import (
    DISCOVERY_GET_TIMEOUT,
    DISCOVERY_HEAD_TIMEOUT,
    SEND_TIMEOUT,
    WebmentionResult,
    discover_webmention_endpoint,
    post_webmention,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 5


class OutboundDispatcher:
    """Sends webmentions for links in published or updated posts.

    Attributes:
        site_url: This site's origin, used for self-link filtering and the source URL
        post_resolver: Object with get_post_by_id(post_id) -> post dict or None
        event_bus: EventBus to subscribe on and report results to
        enabled: When False, events are acknowledged but nothing is sent
    """

    def __init__(
        self,
        site_url: str,
        post_resolver: Any,
        event_bus: Any,
        enabled: bool = True,
        max_candidates: int = MAX_CANDIDATES,
        max_workers: int = DEFAULT_MAX_WORKERS,
        head_timeout: float = DISCOVERY_HEAD_TIMEOUT,
        get_timeout: float = DISCOVERY_GET_TIMEOUT,
        send_timeout: float = SEND_TIMEOUT,
    ):
        self.site_url = site_url.rstrip("/")
        self.post_resolver = post_resolver
        self.event_bus = event_bus
        self.enabled = enabled
        self.max_candidates = max_candidates
        self.max_workers = max_workers
        self.head_timeout = head_timeout
        self.get_timeout = get_timeout
        self.send_timeout = send_timeout

        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="webmention-dispatch")
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()
        self._unsubscribers: List[Callable[[], None]] = []

    @classmethod
    def from_config(cls, config: Dict[str, Any], post_resolver: Any, event_bus: Any) -> "OutboundDispatcher":
        send_config = config.get("webmention", {}).get("send", {})
        timeouts = get_webmention_timeouts(config)
        return cls(
            site_url=get_site_url(config),
            post_resolver=post_resolver,
            event_bus=event_bus,
            enabled=send_config.get("enabled", True),
            max_candidates=send_config.get("max_candidates", MAX_CANDIDATES),
            max_workers=send_config.get("max_workers", DEFAULT_MAX_WORKERS),
            head_timeout=timeouts["discovery_head"],
            get_timeout=timeouts["discovery_get"],
            send_timeout=timeouts["send"],
        )

    def register(self) -> None:
        """Subscribe to post publish and update events."""
        for event in (CoreEvents.POST_PUBLISHED, CoreEvents.POST_UPDATED):
            self._unsubscribers.append(self.event_bus.on(event, self._on_post_event))
        logger.info(f"Outbound webmention dispatcher registered (enabled={self.enabled})")

    def unregister(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _on_post_event(self, payload: Optional[Dict[str, Any]]) -> None:
        post_id = (payload or {}).get("postId")
        if not post_id:
            logger.warning(f"Post event without postId ignored: {payload}")
            return
        self.schedule(str(post_id))

    def schedule(self, post_id: str) -> Optional[Future]:
        """Queue outbound delivery for a post and return immediately."""
        if not self.enabled:
            logger.debug(f"Outbound webmentions disabled; not scheduling post {post_id}")
            return None

        future = self._executor.submit(self._run, post_id)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        logger.info(f"Scheduled outbound webmentions for post {post_id}")
        return future

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every scheduled dispatch has finished.

        Returns:
            True if all finished, False if the timeout expired first.
        """
        with self._lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait_futures(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        self.unregister()
        self._executor.shutdown(wait=wait)

    def _run(self, post_id: str) -> List[WebmentionResult]:
        try:
            return self.dispatch(post_id)
        except Exception as e:
            logger.error(f"Outbound webmention dispatch failed for post {post_id}: {e}", exc_info=True)
            return []

    def _source_url(self, post: Dict[str, Any]) -> Optional[str]:
        slug = post.get("slug")
        if slug:
            return f"{self.site_url}/posts/{slug}"
        return post.get("url")

    def dispatch(self, post_id: str) -> List[WebmentionResult]:
        """Send webmentions for every external link in a post.

        Returns:
            One WebmentionResult per attempted delivery (targets without a
            discoverable endpoint are not attempted).
        """
        post = self.post_resolver.get_post_by_id(post_id)
        if not post:
            logger.warning(f"Post {post_id} not found; no outbound webmentions sent")
            return []

        html_content = post.get("html") or ""
        if not html_content.strip():
            logger.debug(f"Post {post_id} has no rendered content; nothing to send")
            return []

        source_url = self._source_url(post)
        if not source_url:
            logger.warning(f"Post {post_id} has neither slug nor url; cannot build source URL")
            return []

        targets = extract_candidate_urls(html_content, self.site_url, self.max_candidates)
        if not targets:
            logger.info(f"No outbound links in post {post_id}")
            return []

        logger.info(f"Sending webmentions for post {post_id} to up to {len(targets)} targets")

        results: List[WebmentionResult] = []
        with ThreadPoolExecutor(max_workers=max(1, min(self.max_workers, len(targets)))) as executor:
            futures = {
                executor.submit(self._deliver, post_id, source_url, target): target
                for target in targets
            }
            for future in as_completed(futures):
                target = futures[future]
                try:
                    result = future.result()
                except Exception as e:
                    logger.error(f"Webmention delivery crashed: target={target}, error={e}", exc_info=True)
                    continue
                if result is not None:
                    results.append(result)

        success_count = sum(1 for r in results if r.success)
        logger.info(
            f"Outbound webmentions for post {post_id}: {success_count} accepted, "
            f"{len(results) - success_count} failed, {len(targets) - len(results)} without endpoint"
        )
        return results

    def _deliver(self, post_id: str, source_url: str, target_url: str) -> Optional[WebmentionResult]:
        endpoint = discover_webmention_endpoint(
            target_url, head_timeout=self.head_timeout, get_timeout=self.get_timeout
        )
        if not endpoint:
            return None

        try:
            result = post_webmention(endpoint, source_url, target_url, timeout=self.send_timeout)
        except Exception as e:
            logger.error(f"Webmention send failed: target={target_url}, endpoint={endpoint}, error={e}")
            result = WebmentionResult(
                success=False,
                status_code=0,
                message=f"Send failed: {e}",
                target=target_url,
                endpoint=endpoint,
            )

        self.event_bus.emit(CoreEvents.WEBMENTION_SENT, {
            "postId": post_id,
            "source": source_url,
            "target": target_url,
            "endpoint": endpoint,
            "success": result.success,
            "statusCode": result.status_code or None,
            "message": result.message,
        })
        return result
