"""Mentionable Package.

Entry point for the webmention service: receives and verifies inbound
webmentions and sends outbound ones when posts are published.

Exported Functions:
    main: Entry point for the mentionable console command
"""
from .mentionable import main

__all__ = ["main"]
