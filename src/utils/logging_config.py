"""Structured logger setup shared across the engine components."""

import logging
import os

from pythonjsonlogger import jsonlogger

SERVICE_NAME = "sentiment-engine"


def get_logger(name: str) -> logging.Logger:
    """
    Configure a JSON logger once and reuse it.

    Identifiers (model_id, agent_id, department) travel in ``extra`` so log
    pipelines can filter on them without parsing messages. The level comes
    from ``SENTIMENT_LOG_LEVEL`` (default INFO).
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    handler = logging.StreamHandler()
    formatter = jsonlogger.JsonFormatter(
        "%(levelname)s %(name)s %(message)s %(asctime)s",
        static_fields={"service": SERVICE_NAME},
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.setLevel(os.environ.get("SENTIMENT_LOG_LEVEL", "INFO").upper())
    logger.propagate = False
    return logger
