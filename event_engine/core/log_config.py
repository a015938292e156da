import logging
import os

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level: str = None):
    """Configures root logging once for the worker process and the API."""
    level = level or os.getenv("LOG_LEVEL", "INFO")
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # Tortoise is chatty at DEBUG; keep it at INFO unless asked otherwise
    logging.getLogger("tortoise").setLevel(logging.INFO)
