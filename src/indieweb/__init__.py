"""
IndieWeb Module for Mentionable.

This module implements the W3C Webmention pipeline for the blog:
receiving, verifying and classifying inbound mentions, and discovering
endpoints and delivering outbound mentions when posts are published.

Features:
    - Endpoint discovery via Link header (HEAD, then GET) and HTML markup
    - h-entry extraction for author, content, published date and mention type
    - Source verification and idempotent storage of inbound webmentions
    - Background outbound delivery on post publish/update events

Usage:
    >>> from indieweb import WebmentionReceiver, OutboundDispatcher
    >>> receiver = WebmentionReceiver.from_config(config, store, posts, bus)
    >>> result = receiver.process_inbound(source, target)
    >>> dispatcher = OutboundDispatcher.from_config(config, posts, bus)
    >>> dispatcher.register()
"""

from indieweb.webmention import (
    WebmentionResult,
    discover_webmention_endpoint,
    post_webmention,
)
from indieweb.microformats import Author, HEntry, extract_hentry
from indieweb.link_tracking import extract_candidate_urls
from indieweb.receiver import InboundResult, WebmentionReceiver
from indieweb.dispatcher import OutboundDispatcher

__all__ = [
    "Author",
    "HEntry",
    "InboundResult",
    "OutboundDispatcher",
    "WebmentionReceiver",
    "WebmentionResult",
    "discover_webmention_endpoint",
    "extract_candidate_urls",
    "extract_hentry",
    "post_webmention",
]
