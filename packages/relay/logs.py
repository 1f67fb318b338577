import logging
import os

from pythonjsonlogger import json as jsonlogger

_FORMAT = '%(asctime)s %(name)s %(levelname)s %(message)s'


def json_logger(name: str) -> logging.Logger:
    """Logger writing one JSON object per line to stderr, level from LOG_LEVEL."""
    logger = logging.getLogger(name)
    if not any(getattr(h, "_relay_json", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(jsonlogger.JsonFormatter(_FORMAT))
        handler._relay_json = True
        logger.addHandler(handler)
    logger.setLevel(os.getenv("LOG_LEVEL", "INFO"))
    return logger
