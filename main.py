"""Run the signage media server.

Configuration is loaded once, logging is configured from its ``logging``
section, and the app factory purges interrupted uploads before the server
starts accepting requests.

Socket.IO runs in ``threading`` mode, which serves through Werkzeug.  That
server is meant for a single display computer on a private network; set
``ALLOW_UNSAFE_WERKZEUG`` to ``false`` to refuse to start it anywhere else.
"""
import logging
from typing import Any, Dict

import config_manager
from app import create_app, socketio
from config_manager import MediaSettings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(level_name: str) -> None:
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)


def run_options(settings: MediaSettings) -> Dict[str, Any]:
    """Keyword arguments for ``socketio.run``."""

    return {
        "host": settings.host,
        "port": settings.port,
        "debug": settings.debug,
        "allow_unsafe_werkzeug": settings.allow_unsafe_werkzeug,
    }


def main() -> None:
    config = config_manager.load_config()
    settings = MediaSettings.from_config(config)
    configure_logging(settings.log_level)
    app = create_app(config)
    options = run_options(settings)
    logger.info("server.start host=%s port=%d debug=%s", options["host"], options["port"], options["debug"])
    socketio.run(app, **options)


if __name__ == "__main__":
    main()
