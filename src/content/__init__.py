"""Content subsystem client.

Resolves target slugs to local posts and loads rendered post HTML.
"""
from content.content_api import ContentAPIClient

__all__ = ["ContentAPIClient"]
