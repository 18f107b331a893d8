"""HTTP surface for the webmention pipeline.

Exported:
    create_app: Flask application factory
    clear_rate_limit_caches: Reset per-IP rate limiting state (tests)
"""
from server.app import PostWebhookValidationError, clear_rate_limit_caches, create_app

__all__ = ["PostWebhookValidationError", "clear_rate_limit_caches", "create_app"]
