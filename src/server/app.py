"""
Webmention HTTP Surface - Flask Application.

This module exposes the webmention pipeline over HTTP:

    POST /api/webmentions          receive a webmention (form or JSON)
    GET  /api/webmentions?postId=  verified webmentions for one post
    GET  /api/webmentions?stats=1  totals per type and the latest mentions
    POST /webhook/post             publish/update notification from the blog
    GET  /health                   liveness probe

Every response advertises the receiving endpoint through a
Link: <...>; rel="webmention" header so senders can discover it from any
page served through this app.

Architecture:
    create_app() wires one EventBus, one WebmentionStore, one post resolver,
    one WebmentionReceiver and one OutboundDispatcher together and keeps
    them in app.config. Tests inject their own collaborators through the
    factory arguments.

Error Handling:
    - 202: Webmention verified and stored / webhook accepted
    - 400: Validation or verification failure ({"error": reason})
    - 401: Missing or wrong X-Internal-Token on /webhook/post
    - 404: Receiving disabled
    - 429: Per-IP rate limit exceeded
    - 500: Storage or other unexpected failure
"""
import logging
import os
import time
from collections import defaultdict
from typing import Any, Dict, Optional

from flask import Flask, current_app, jsonify, request
from flask_cors import CORS
from jsonschema import Draft7Validator

from config import get_site_url, load_config, read_secret_file
from content import ContentAPIClient
from events import CoreEvents, EventBus
from indieweb.dispatcher import OutboundDispatcher
from indieweb.receiver import WebmentionReceiver
from mentions.storage import WebmentionStore, serialize_mention
from schema import POST_WEBHOOK_SCHEMA

# Logging is configured in mentionable.main() - this module uses the configured logger
logger = logging.getLogger(__name__)

WEBMENTION_ENDPOINT_PATH = "/api/webmentions"
RECENT_MENTIONS_LIMIT = 10

# Request rate limiting per IP (in-memory, per worker process)
_request_rate_cache: Dict[str, list] = defaultdict(list)
REQUEST_RATE_LIMIT = 60  # Max requests per IP per window
REQUEST_RATE_WINDOW_SECONDS = 60  # 1 minute window

post_webhook_validator = Draft7Validator(POST_WEBHOOK_SCHEMA)


class PostWebhookValidationError(Exception):
    """Raised when a /webhook/post payload fails schema validation."""
    pass


def clear_rate_limit_caches() -> None:
    """
    Clear all rate limiting caches.

    This is primarily useful for testing to ensure clean state between tests.
    """
    _request_rate_cache.clear()


def check_request_rate_limit(client_ip: str, limit: int, window_seconds: int) -> bool:
    """
    Check if request rate limit has been exceeded for a client IP.

    Returns:
        True if limit exceeded (should reject), False if allowed
    """
    cutoff_time = time.time() - window_seconds
    _request_rate_cache[client_ip] = [
        ts for ts in _request_rate_cache[client_ip] if ts > cutoff_time
    ]
    return len(_request_rate_cache[client_ip]) >= limit


def record_request(client_ip: str, window_seconds: int) -> None:
    """Record a request for rate limiting."""
    _request_rate_cache[client_ip].append(time.time())

    # Periodic cleanup of stale IPs to prevent memory growth
    if len(_request_rate_cache) > 10000:
        cutoff_time = time.time() - window_seconds
        stale_ips = [
            ip for ip, timestamps in _request_rate_cache.items()
            if not timestamps or max(timestamps) < cutoff_time
        ]
        for ip in stale_ips:
            del _request_rate_cache[ip]


def validate_post_webhook(payload: Any) -> None:
    """Validate a publish/update webhook payload against the JSON schema.

    Raises:
        PostWebhookValidationError: With the path to the failing field.
    """
    errors = sorted(post_webhook_validator.iter_errors(payload), key=lambda e: list(e.path))
    if errors:
        first = errors[0]
        path_str = ".".join(str(p) for p in first.path)
        raise PostWebhookValidationError(
            f"Schema validation failed: {first.message} at path: {path_str}"
        )


def _read_source_and_target():
    """Parse source/target from a form or JSON body.

    Returns:
        (source, target), or None when the content type is unsupported.
    """
    content_type = request.content_type or ""
    if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        source = request.form.get("source", "")
        target = request.form.get("target", "")
    elif "application/json" in content_type:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            data = {}
        source = data.get("source") or ""
        target = data.get("target") or ""
    else:
        return None

    source = source.strip() if isinstance(source, str) else ""
    target = target.strip() if isinstance(target, str) else ""
    return source, target


def _client_ip() -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr or "unknown"


def create_app(
    config: Optional[Dict[str, Any]] = None,
    store: Optional[Any] = None,
    post_resolver: Optional[Any] = None,
    event_bus: Optional[EventBus] = None,
    dispatcher: Optional[OutboundDispatcher] = None,
) -> Flask:
    """Factory function to create and configure the Flask application.

    Args:
        config: Optional configuration dictionary (if None, loaded from config.yml)
        store: Optional webmention store (default: SQLite under webmention.storage_directory)
        post_resolver: Optional post resolver (default: ContentAPIClient from config)
        event_bus: Optional EventBus shared with the rest of the process
        dispatcher: Optional OutboundDispatcher; when omitted one is built and registered

    Returns:
        Configured Flask application instance

    Example:
        >>> app = create_app(config, event_bus=EventBus())
        >>> client = app.test_client()
    """
    app = Flask(__name__)

    if config is None:
        config = load_config()

    cors_config = config.get("cors", {})
    if cors_config.get("enabled", False):
        cors_origins = cors_config.get("origins", [])
        if cors_origins:
            CORS(app, origins=cors_origins)
            logger.info(f"CORS enabled for origins: {cors_origins}")
        else:
            logger.warning("CORS enabled but no origins configured")
    else:
        logger.info("CORS is disabled in configuration")

    site_url = get_site_url(config)
    webmention_config = config.get("webmention", {})

    if event_bus is None:
        event_bus = EventBus()
    if store is None:
        storage_dir = webmention_config.get("storage_directory", "./data/webmentions")
        store = WebmentionStore(storage_dir)
    if post_resolver is None:
        post_resolver = ContentAPIClient.from_config(config)
    if dispatcher is None:
        dispatcher = OutboundDispatcher.from_config(config, post_resolver, event_bus)
        dispatcher.register()

    receiver = WebmentionReceiver.from_config(config, store, post_resolver, event_bus)

    app.config["SITE_URL"] = site_url
    app.config["EVENT_BUS"] = event_bus
    app.config["WEBMENTION_STORE"] = store
    app.config["WEBMENTION_RECEIVER"] = receiver
    app.config["OUTBOUND_DISPATCHER"] = dispatcher
    app.config["RECEIVE_ENABLED"] = webmention_config.get("receive", {}).get("enabled", True)

    security_config = config.get("security", {})
    app.config["RATE_LIMIT_ENABLED"] = security_config.get("rate_limit_enabled", True)
    app.config["RATE_LIMIT_REQUESTS"] = security_config.get("rate_limit_requests", REQUEST_RATE_LIMIT)
    app.config["RATE_LIMIT_WINDOW"] = security_config.get("rate_limit_window_seconds", REQUEST_RATE_WINDOW_SECONDS)

    # Internal API token for the publish webhook
    # Priority: config value > config file > environment variable
    internal_token = security_config.get("internal_api_token")
    if not internal_token:
        token_file = security_config.get("internal_api_token_file")
        if token_file:
            internal_token = read_secret_file(token_file)
    if not internal_token:
        internal_token = os.environ.get("INTERNAL_API_TOKEN")
    app.config["INTERNAL_API_TOKEN"] = internal_token
    if internal_token:
        logger.info("Internal API token configured for /webhook/post")

    endpoint_link = f'<{site_url}{WEBMENTION_ENDPOINT_PATH}>; rel="webmention"'

    @app.after_request
    def add_webmention_link_header(response):
        """Advertise the webmention endpoint on every response."""
        response.headers.setdefault("Link", endpoint_link)
        return response

    @app.route(WEBMENTION_ENDPOINT_PATH, methods=["POST"])
    def receive_webmention():
        """W3C Webmention receiving endpoint.

        Accepts application/x-www-form-urlencoded (W3C default) and
        application/json bodies carrying source and target.

        Returns:
            - 202 {"success": true, "message": ..., "id": ...}
            - 400 {"error": reason}
            - 500 {"error": "Internal server error"} on storage failure
        """
        if not current_app.config["RECEIVE_ENABLED"]:
            return jsonify({"error": "Webmention receiving is disabled"}), 404

        if current_app.config["RATE_LIMIT_ENABLED"]:
            client_ip = _client_ip()
            window = current_app.config["RATE_LIMIT_WINDOW"]
            if check_request_rate_limit(client_ip, current_app.config["RATE_LIMIT_REQUESTS"], window):
                logger.warning(f"Rate limit exceeded for webmention endpoint: ip={client_ip}")
                return jsonify({"error": "Rate limit exceeded"}), 429
            record_request(client_ip, window)

        parsed = _read_source_and_target()
        if parsed is None:
            return jsonify({
                "error": "Invalid content type. Use application/x-www-form-urlencoded or application/json"
            }), 400
        source, target = parsed

        try:
            result = current_app.config["WEBMENTION_RECEIVER"].process_inbound(source, target)
        except Exception as e:
            logger.error(f"Error processing webmention: source={source}, target={target}: {e}", exc_info=True)
            return jsonify({"error": "Internal server error"}), 500

        if not result.ok:
            logger.info(f"Webmention rejected: source={source}, target={target}, reason={result.reason}")
            return jsonify({"error": result.reason}), 400

        return jsonify({
            "success": True,
            "message": "WebMention processed successfully",
            "id": result.id,
        }), 202

    @app.route(WEBMENTION_ENDPOINT_PATH, methods=["GET"])
    def get_webmentions():
        """List webmentions for a post (?postId=) or site statistics (?stats=1)."""
        store = current_app.config["WEBMENTION_STORE"]
        post_id = request.args.get("postId", "").strip()
        stats = request.args.get("stats", "").strip()

        try:
            if stats:
                by_type = store.count_group_by_type()
                recent = store.list_recent(RECENT_MENTIONS_LIMIT)
                return jsonify({
                    "stats": {
                        "total": sum(by_type.values()),
                        "byType": by_type,
                        "recent": [serialize_mention(r) for r in recent],
                    }
                }), 200

            if post_id:
                mentions = store.list_by_post(post_id)
                return jsonify({
                    "webmentions": [serialize_mention(m, include_target=False) for m in mentions]
                }), 200
        except Exception as e:
            logger.error(f"Error reading webmentions: {e}", exc_info=True)
            return jsonify({"error": "Failed to get webmentions"}), 500

        return jsonify({"error": "Specify postId or stats parameter"}), 400

    @app.route("/webhook/post", methods=["POST"])
    def receive_post_webhook():
        """Publish/update notification from the content subsystem.

        Request Format:
            POST /webhook/post
            Content-Type: application/json
            X-Internal-Token: <token>   (when configured)

            {"event": "published", "post": {"id": "abc123", "slug": "hello-world"}}

        The event is re-emitted on the event bus and outbound delivery is
        scheduled in the background; the response does not wait for it.
        """
        internal_token = current_app.config.get("INTERNAL_API_TOKEN")
        if internal_token and request.headers.get("X-Internal-Token") != internal_token:
            logger.warning("Rejected /webhook/post with missing or invalid X-Internal-Token")
            return jsonify({"status": "error", "message": "Unauthorized"}), 401

        if not request.is_json:
            return jsonify({"status": "error", "message": "Content-Type must be application/json"}), 400

        payload = request.get_json(silent=True)
        try:
            validate_post_webhook(payload)
        except PostWebhookValidationError as e:
            logger.error(f"Invalid post webhook payload: {e}")
            return jsonify({"status": "error", "message": "Invalid post webhook payload", "details": str(e)}), 400

        post = payload["post"]
        event_name = CoreEvents.POST_PUBLISHED if payload["event"] == "published" else CoreEvents.POST_UPDATED
        logger.info(f"Received post webhook: event={payload['event']}, post_id={post['id']}")

        current_app.config["EVENT_BUS"].emit(event_name, {"postId": post["id"], "slug": post.get("slug")})
        return jsonify({"status": "accepted", "post_id": post["id"]}), 202

    @app.route("/health", methods=["GET"])
    def health_check():
        """Health check endpoint for monitoring and load balancers."""
        return jsonify({"status": "healthy"}), 200

    return app
