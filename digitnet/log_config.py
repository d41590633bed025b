"""
log_config.py
~~~~~~~~~~~~~

Logging setup shared by the CLI and the API server.
"""

import logging
from typing import Optional

from digitnet.config import Settings

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(settings: Optional[Settings] = None) -> None:
    """
    Set up logging based on environment.

    - In production: Show fewer logs (less noise) but keep important logs
    - In development: Show more detailed logs for debugging
    """
    if settings is None:
        settings = Settings.from_env()
    log_level = getattr(logging, settings.log_level, logging.INFO)

    logging.basicConfig(level=log_level, format=LOG_FORMAT)

    if settings.is_production:
        # Silence noisy third-party logs but keep ours visible
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug', 'matplotlib']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('digitnet').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)
        logging.getLogger('matplotlib').setLevel(logging.WARNING)
