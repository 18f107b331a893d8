"""
Mentionable Core Module.

This module provides the main entry point for the webmention service.
It wires the event bus, the webmention store, the content API client and
the outbound dispatcher together, then embeds Gunicorn to serve the Flask
application.

Functions:
    configure_logging(debug) -> None:
        Root logger setup: rotating file (10MB x 3) plus stdout.
    build_components(config) -> Dict[str, Any]:
        Construct the shared collaborators handed to create_app().
    main() -> None:
        Entry point for the console script.

Example:
    Run via console script:
        $ poetry run mentionable
        Starting Gunicorn for Mentionable
        Gunicorn server is ready to accept webmentions
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Any, Dict

logger = logging.getLogger(__name__)

LOG_FILE = "mentionable.log"


def configure_logging(debug: bool = False) -> None:
    """Configure the root logger with a rotating file and a stdout handler."""
    log_level = logging.DEBUG if debug else logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Clear any existing handlers to avoid duplicates (e.g., from gunicorn)
    root_logger.handlers.clear()

    log_handler = RotatingFileHandler(
        LOG_FILE,
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=3
    )
    log_handler.setLevel(log_level)

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    log_handler.setFormatter(formatter)
    root_logger.addHandler(log_handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)


def build_components(config: Dict[str, Any]) -> Dict[str, Any]:
    """Build the process-wide collaborators from configuration.

    Returns:
        Dict with event_bus, store, post_resolver and dispatcher, ready to
        be passed to create_app() as keyword arguments.
    """
    from content import ContentAPIClient
    from events import EventBus
    from indieweb.dispatcher import OutboundDispatcher
    from mentions import WebmentionStore

    event_bus = EventBus()

    webmention_config = config.get("webmention", {})
    storage_dir = webmention_config.get("storage_directory", "./data/webmentions")
    logger.info(f"Opening webmention store in {storage_dir}")
    store = WebmentionStore(storage_dir)

    post_resolver = ContentAPIClient.from_config(config)
    if post_resolver.enabled:
        logger.info(f"  - Content API client enabled for {post_resolver.api_url}")
    else:
        logger.warning("  - Content API client disabled (no content_api.url or site.url configured)")

    dispatcher = OutboundDispatcher.from_config(config, post_resolver, event_bus)
    dispatcher.register()

    receive_enabled = webmention_config.get("receive", {}).get("enabled", True)
    logger.info(f"  - Webmention receiving {'enabled' if receive_enabled else 'disabled'}")
    logger.info(f"  - Webmention sending {'enabled' if dispatcher.enabled else 'disabled'}")

    return {
        "event_bus": event_bus,
        "store": store,
        "post_resolver": post_resolver,
        "dispatcher": dispatcher,
    }


def main(debug: bool = False) -> None:
    """Main entry point for the mentionable console command.

    Args:
        debug: Enable debug logging and disable the worker timeout for
               breakpoint debugging. Can also be set via --debug or the
               MENTIONABLE_DEBUG environment variable.

    Architecture:
        Docker -> poetry run mentionable -> main() -> Gunicorn -> Flask app

    Gunicorn Configuration (src/server/gunicorn_config.py):
        - Single worker so rate limiting and outbound dispatch share a process
        - All logs to stdout/stderr for Docker visibility
        - 30s worker timeout, 2s keepalive
    """
    from gunicorn.app.base import BaseApplication
    from config import load_config
    from server import create_app

    if not debug:
        debug = os.environ.get("MENTIONABLE_DEBUG", "").lower() in ("true", "1", "yes")
        if len(sys.argv) > 1 and "--debug" in sys.argv:
            debug = True

    configure_logging(debug)
    if debug:
        logger.info("Debug mode enabled: verbose logging and worker timeout disabled for breakpoint debugging")

    logger.info("Loading configuration from config.yml")
    config = load_config()

    components = build_components(config)
    app = create_app(config=config, **components)

    config_path = os.path.join(os.path.dirname(__file__), "..", "server", "gunicorn_config.py")

    class StandaloneApplication(BaseApplication):
        """Custom Gunicorn application for embedding within the mentionable entry point."""

        def __init__(self, app, options=None):
            self.options = options or {}
            self.application = app
            super().__init__()

        def load_config(self):
            config_file = self.options.get("config")
            if config_file:
                self.cfg.set("config", config_file)
                with open(config_file, "r") as f:
                    config_code = f.read()
                config_namespace = {}
                exec(config_code, config_namespace)
                for key, value in config_namespace.items():
                    if key in self.cfg.settings and value is not None:
                        self.cfg.set(key.lower(), value)

                def worker_exit_hook(server, worker):
                    """Let in-flight outbound deliveries finish before the worker exits."""
                    worker.log.info(f"Waiting for outbound webmentions in worker {worker.pid}")
                    components["dispatcher"].shutdown(wait=True)

                self.cfg.set("worker_exit", worker_exit_hook)

                if self.options.get("debug"):
                    self.cfg.set("timeout", 0)

        def load(self):
            return self.application

    options = {
        "config": config_path,
        "debug": debug,
    }
    StandaloneApplication(app, options).run()


# Allow running as a script for development/testing
if __name__ == "__main__":
    main()
