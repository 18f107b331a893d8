"""Schema Package - JSON Schema Loading and Validation.

This package provides centralized loading and access to JSON schemas
used throughout Mentionable for validating data structures.

Schemas are loaded once at import time and exposed as module-level
constants, so there is a single source of truth for each definition.

Available Schemas:
    WEBMENTION_PAYLOAD_SCHEMA: Metadata blob stored with each verified
        webmention (author, content, published_at).
    POST_WEBHOOK_SCHEMA: Publish/update notification posted by the
        content subsystem.

Usage:
    from schema import WEBMENTION_PAYLOAD_SCHEMA
    validate(instance=payload, schema=WEBMENTION_PAYLOAD_SCHEMA)
"""
from .schema import (
    WEBMENTION_PAYLOAD_SCHEMA,
    POST_WEBHOOK_SCHEMA,
    get_webmention_payload_schema,
    get_post_webhook_schema,
)

__all__ = [
    "WEBMENTION_PAYLOAD_SCHEMA",
    "POST_WEBHOOK_SCHEMA",
    "get_webmention_payload_schema",
    "get_post_webhook_schema",
]
